"""Aggregator — buffer undersized copy sizes until they are tradable.

At most one PendingAggregate per (market, side) within an aggregator.
The engine creates one aggregator per (trader, market) pipeline, so the
scope is effectively (trader, market, side).

offer():
  - existing + new size >= min_tradable_size  → Flush (aggregate cleared)
  - otherwise                                 → Buffered (aggregate extended)

A hold timer per aggregate enforces max_hold_secs. On expiry the configured
policy runs exactly once for that accumulation cycle:
  - drop  (default): discard; an undersized order would be rejected anyway
  - flush: force-flush the undersized total
Either way the owning pipeline is told through the on_expire callback. The
persisted row is only removed when the pipeline calls settle_expired().
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Union

from copybot.config import AggregationConfig, ExpiryPolicy
from copybot.storage.database import Database
from copybot.storage.models import PendingAggregateRecord
from copybot.observability.logger import get_logger
from copybot.observability.metrics import metrics

log = get_logger(__name__)

AggregateKey = tuple[str, str]  # (market_id, side)


@dataclass(frozen=True)
class Flush:
    market_id: str
    side: str
    total_size: float
    contributing_ids: tuple[int, ...]
    avg_price: float = 0.0
    forced: bool = False


@dataclass(frozen=True)
class Buffered:
    market_id: str
    side: str
    accumulated_size: float
    contributing_ids: tuple[int, ...]


OfferResult = Union[Flush, Buffered]


@dataclass
class PendingAggregate:
    trader_address: str
    market_id: str
    side: str
    accumulated_size: float = 0.0
    weighted_price: float = 0.0
    opened_at: float = 0.0
    contributing_trade_ids: list[int] = field(default_factory=list)

    @property
    def key(self) -> AggregateKey:
        return (self.market_id, self.side)

    def add(self, size: float, price: float, trade_id: int) -> None:
        total = self.accumulated_size + size
        if total > 0:
            self.weighted_price = (
                self.accumulated_size * self.weighted_price + size * price
            ) / total
        self.accumulated_size = total
        self.contributing_trade_ids.append(trade_id)

    def to_flush(self, forced: bool = False) -> Flush:
        return Flush(
            market_id=self.market_id,
            side=self.side,
            total_size=round(self.accumulated_size, 6),
            contributing_ids=tuple(self.contributing_trade_ids),
            avg_price=self.weighted_price,
            forced=forced,
        )

    def to_record(self) -> PendingAggregateRecord:
        return PendingAggregateRecord(
            trader_address=self.trader_address,
            market_id=self.market_id,
            side=self.side,
            accumulated_size=self.accumulated_size,
            weighted_price=self.weighted_price,
            opened_at=self.opened_at,
            contributing_trade_ids=list(self.contributing_trade_ids),
        )

    @classmethod
    def from_record(cls, record: PendingAggregateRecord) -> PendingAggregate:
        return cls(
            trader_address=record.trader_address,
            market_id=record.market_id,
            side=record.side,
            accumulated_size=record.accumulated_size,
            weighted_price=record.weighted_price,
            opened_at=record.opened_at,
            contributing_trade_ids=list(record.contributing_trade_ids),
        )


ExpiryCallback = Callable[[PendingAggregate, Union[Flush, None]], Awaitable[None]]


class Aggregator:
    """Buffers undersized sizes per (market, side) with a max hold timer."""

    def __init__(
        self,
        config: AggregationConfig,
        trader_address: str = "",
        db: Database | None = None,
        on_expire: ExpiryCallback | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config
        self._trader = trader_address
        self._db = db
        self._on_expire = on_expire
        self._clock = clock
        self._pending: dict[AggregateKey, PendingAggregate] = {}
        self._timers: dict[AggregateKey, asyncio.Task] = {}

    @property
    def min_size(self) -> float:
        return self._config.min_tradable_size

    def offer(
        self,
        market: str,
        side: str,
        size: float,
        trade_id: int,
        price: float = 0.0,
        trader: str | None = None,
    ) -> OfferResult:
        """Offer a sized trade. Must be called from a running event loop."""
        key = (market, getattr(side, "value", side))
        agg = self._pending.get(key)

        if agg is not None and trade_id in agg.contributing_trade_ids:
            log.debug("aggregator.duplicate_ignored", market_id=market, side=key[1], trade_id=trade_id)
            return Buffered(
                market_id=market,
                side=key[1],
                accumulated_size=agg.accumulated_size,
                contributing_ids=tuple(agg.contributing_trade_ids),
            )

        if agg is None:
            agg = PendingAggregate(
                trader_address=trader or self._trader,
                market_id=market,
                side=key[1],
                opened_at=self._clock(),
            )
            is_new = True
        else:
            is_new = False
        agg.add(size, price, trade_id)

        if agg.accumulated_size >= self.min_size:
            if not is_new:
                self._clear(key)
                metrics.incr("aggregator.flushed")
                log.info(
                    "aggregator.flush",
                    market_id=market,
                    side=key[1],
                    total_size=round(agg.accumulated_size, 6),
                    trades=len(agg.contributing_trade_ids),
                )
            return agg.to_flush()

        self._pending[key] = agg
        if is_new:
            self._start_timer(key, self._config.max_hold_secs)
        self._persist(agg)
        metrics.incr("aggregator.buffered")
        log.info(
            "aggregator.buffered",
            market_id=market,
            side=key[1],
            accumulated=round(agg.accumulated_size, 6),
            min_size=self.min_size,
            trades=len(agg.contributing_trade_ids),
        )
        return Buffered(
            market_id=market,
            side=key[1],
            accumulated_size=agg.accumulated_size,
            contributing_ids=tuple(agg.contributing_trade_ids),
        )

    # ── Hold timers ──────────────────────────────────────────────────

    def _start_timer(self, key: AggregateKey, delay: float) -> None:
        old = self._timers.pop(key, None)
        if old is not None:
            old.cancel()
        self._timers[key] = asyncio.get_running_loop().create_task(
            self._hold(key, max(delay, 0.0))
        )

    async def _hold(self, key: AggregateKey, delay: float) -> None:
        await asyncio.sleep(delay)
        self._timers.pop(key, None)
        agg = self._pending.pop(key, None)
        if agg is None:
            return
        # row kept until settle_expired(); a shutdown before that restores it
        await self._expire(agg)

    async def _expire(self, agg: PendingAggregate) -> None:
        policy = self._config.expiry_policy
        held = self._clock() - agg.opened_at
        metrics.incr("aggregator.expired")
        log.warning(
            "aggregator.expired",
            market_id=agg.market_id,
            side=agg.side,
            size=round(agg.accumulated_size, 6),
            trade_ids=agg.contributing_trade_ids,
            held_secs=round(held, 3),
            policy=policy.value,
        )
        flush = agg.to_flush(forced=True) if policy == ExpiryPolicy.FLUSH else None
        if self._on_expire is None:
            self.settle_expired(agg)
            return
        await self._on_expire(agg, flush)

    def settle_expired(self, agg: PendingAggregate) -> None:
        """Drop the persisted row of an expired aggregate once it has been handled."""
        if agg.key in self._pending:
            # a newer aggregate for the same market and side owns the row now
            return
        self._delete_persisted(agg)

    def _clear(self, key: AggregateKey) -> None:
        agg = self._pending.pop(key, None)
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        if agg is not None:
            self._delete_persisted(agg)

    # ── Persistence ──────────────────────────────────────────────────

    def _persist(self, agg: PendingAggregate) -> None:
        if self._db is not None:
            self._db.save_pending_aggregate(agg.to_record())

    def _delete_persisted(self, agg: PendingAggregate) -> None:
        if self._db is not None:
            self._db.delete_pending_aggregate(agg.trader_address, agg.market_id, agg.side)

    def persist_all(self) -> int:
        """Save every open aggregate (shutdown path)."""
        for agg in self._pending.values():
            self._persist(agg)
        return len(self._pending)

    def snapshot(self) -> list[PendingAggregateRecord]:
        return [agg.to_record() for agg in self._pending.values()]

    def restore(self, records: list[PendingAggregateRecord]) -> int:
        """Resume persisted aggregates with their remaining hold time.

        An aggregate already past max_hold_secs expires immediately.
        """
        now = self._clock()
        for record in records:
            agg = PendingAggregate.from_record(record)
            self._pending[agg.key] = agg
            remaining = self._config.max_hold_secs - (now - agg.opened_at)
            self._start_timer(agg.key, remaining)
            log.info(
                "aggregator.restored",
                market_id=agg.market_id,
                side=agg.side,
                size=round(agg.accumulated_size, 6),
                remaining_secs=round(max(remaining, 0.0), 3),
            )
        return len(records)

    def consumed_ids(self) -> set[int]:
        out: set[int] = set()
        for agg in self._pending.values():
            out.update(agg.contributing_trade_ids)
        return out

    def pending(self, market: str, side: str) -> PendingAggregate | None:
        return self._pending.get((market, getattr(side, "value", side)))

    def __len__(self) -> int:
        return len(self._pending)

    async def close(self) -> None:
        """Cancel hold timers without expiring. Persist first if needed."""
        timers = list(self._timers.values())
        self._timers.clear()
        for t in timers:
            t.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
