"""Position state store — keyed mirrored positions with per-key serialization.

One PositionRecord per (trader, market), created lazily on first apply.
Every mutation goes through apply(), which is idempotent on trade id:
a trade id at or below the key's watermark is a no-op.

Averaging (volume-weighted):
  - BUY (delta > 0): avg = (size * avg + delta * price) / (size + delta)
  - SELL (delta < 0): size shrinks, avg unchanged
  - Flattened position (size ~ 0): avg resets to 0
"""

from __future__ import annotations

import asyncio
import datetime as dt
from collections import defaultdict

from copybot.storage.database import Database
from copybot.storage.models import PositionRecord
from copybot.observability.logger import get_logger
from copybot.observability.metrics import metrics

log = get_logger(__name__)

_DUST = 1e-9

PositionKey = tuple[str, str]


class PositionStore:
    """Keyed position state, persisted through the Database on every apply."""

    def __init__(self, db: Database):
        self._db = db
        self._records: dict[PositionKey, PositionRecord] = {}
        self._locks: dict[PositionKey, asyncio.Lock] = defaultdict(asyncio.Lock)

    def warm(self) -> int:
        """Load every persisted position into memory. Returns count."""
        for record in self._db.get_positions():
            self._records[record.key] = record
        log.info("position_store.warmed", positions=len(self._records))
        return len(self._records)

    def _load(self, key: PositionKey) -> PositionRecord | None:
        record = self._records.get(key)
        if record is None:
            record = self._db.load_position(*key)
            if record is not None:
                self._records[key] = record
        return record

    async def get(self, trader: str, market_id: str) -> PositionRecord | None:
        key = (trader, market_id)
        async with self._locks[key]:
            record = self._load(key)
            return record.model_copy() if record else None

    async def apply(
        self,
        trader: str,
        market_id: str,
        trade_id: int,
        delta: float,
        price: float = 0.0,
    ) -> PositionRecord:
        """Apply a filled copy to the key's position.

        Returns the current record unchanged when trade_id <= watermark.
        """
        key = (trader, market_id)
        async with self._locks[key]:
            current = self._load(key) or PositionRecord(
                trader_address=trader, market_id=market_id
            )
            if trade_id <= current.last_processed_trade_id:
                log.debug(
                    "position_store.duplicate",
                    trader=trader,
                    market_id=market_id,
                    trade_id=trade_id,
                    watermark=current.last_processed_trade_id,
                )
                metrics.incr("position_store.duplicates")
                return current.model_copy()

            net_size, avg_price = _apply_delta(
                current.net_size, current.avg_price, delta, price
            )
            updated = PositionRecord(
                trader_address=trader,
                market_id=market_id,
                net_size=net_size,
                avg_price=avg_price,
                last_processed_trade_id=trade_id,
                updated_at=dt.datetime.now(dt.timezone.utc).isoformat(),
            )
            self._db.save_position(updated)
            self._records[key] = updated

            log.info(
                "position_store.applied",
                trader=trader,
                market_id=market_id,
                trade_id=trade_id,
                delta=round(delta, 6),
                net_size=round(net_size, 6),
                avg_price=round(avg_price, 6),
            )
            return updated.model_copy()

    def watermark(self, trader: str, market_id: str) -> int:
        record = self._load((trader, market_id))
        return record.last_processed_trade_id if record else 0

    def deployed_capital(self) -> float:
        """Capital currently deployed across all mirrored positions."""
        return sum(max(r.notional, 0.0) for r in self._records.values())

    def snapshot(self, trader: str | None = None) -> list[PositionRecord]:
        records = [
            r.model_copy() for r in self._records.values()
            if trader is None or r.trader_address == trader
        ]
        return sorted(records, key=lambda r: (r.trader_address, r.market_id))


def _apply_delta(
    net_size: float, avg_price: float, delta: float, price: float
) -> tuple[float, float]:
    if delta > 0:
        new_size = net_size + delta
        new_avg = (net_size * avg_price + delta * price) / new_size
        return new_size, new_avg

    new_size = max(net_size + delta, 0.0)
    if new_size <= _DUST:
        return 0.0, 0.0
    return new_size, avg_price
