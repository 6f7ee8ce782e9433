"""Fill tracker — execution quality of filled copy orders.

Tracks:
  - Slippage vs the source trade price (positive = adverse, either side)
  - Time from registration to confirmed fill
  - Unfilled (FAILED) orders

recent_slippage_bps() feeds the Adaptive sizing strategy.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Any

from copybot.observability.logger import get_logger
from copybot.observability.metrics import metrics

log = get_logger(__name__)


@dataclass
class FillRecord:
    """Record of a copy order fill."""
    order_id: str
    market_id: str
    side: str
    expected_price: float
    fill_price: float
    size: float
    slippage_bps: float  # adverse slippage in basis points
    time_to_fill_secs: float
    strategy: str
    filled: bool = True
    timestamp: float = 0.0

    def __post_init__(self):
        if self.timestamp == 0.0:
            self.timestamp = time.time()

    def to_dict(self) -> dict[str, Any]:
        return self.__dict__


@dataclass
class ExecutionQuality:
    """Aggregate execution quality metrics."""
    total_orders: int = 0
    total_fills: int = 0
    unfilled: int = 0
    avg_slippage_bps: float = 0.0
    median_time_to_fill_secs: float = 0.0
    strategy_stats: dict[str, dict[str, float]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return self.__dict__


def adverse_slippage_bps(side: str, expected: float, fill_price: float) -> float:
    if expected <= 0:
        return 0.0
    diff = fill_price - expected if side == "BUY" else expected - fill_price
    return diff / expected * 10_000


class FillTracker:
    """Track and analyse copy order fills."""

    def __init__(self, window: int = 20, history_size: int = 1000):
        self._window = window
        self._fills: deque[FillRecord] = deque(maxlen=history_size)
        self._pending: dict[str, dict[str, Any]] = {}
        self._lock = Lock()

    def register_order(
        self,
        order_id: str,
        market_id: str,
        side: str,
        expected_price: float,
        size: float,
        strategy: str,
    ) -> None:
        with self._lock:
            self._pending[order_id] = {
                "market_id": market_id,
                "side": side,
                "expected_price": expected_price,
                "size": size,
                "strategy": strategy,
                "submitted_at": time.time(),
            }

    def record_fill(self, order_id: str, fill_price: float) -> FillRecord | None:
        with self._lock:
            pending = self._pending.pop(order_id, None)
        if not pending:
            log.warning("fill_tracker.unknown_order", order_id=order_id[:8])
            return None

        slip = adverse_slippage_bps(pending["side"], pending["expected_price"], fill_price)
        record = FillRecord(
            order_id=order_id,
            market_id=pending["market_id"],
            side=pending["side"],
            expected_price=pending["expected_price"],
            fill_price=fill_price,
            size=pending["size"],
            slippage_bps=round(slip, 1),
            time_to_fill_secs=round(time.time() - pending["submitted_at"], 3),
            strategy=pending["strategy"],
        )
        with self._lock:
            self._fills.append(record)

        metrics.histogram("fills.slippage_bps", record.slippage_bps)
        metrics.histogram("fills.latency_secs", record.time_to_fill_secs)
        log.info(
            "fill_tracker.recorded",
            order_id=order_id[:8],
            fill_price=fill_price,
            slippage_bps=record.slippage_bps,
            time_secs=record.time_to_fill_secs,
        )
        return record

    def record_unfilled(self, order_id: str) -> None:
        with self._lock:
            pending = self._pending.pop(order_id, None)
            if pending is None:
                return
            self._fills.append(FillRecord(
                order_id=order_id,
                market_id=pending["market_id"],
                side=pending["side"],
                expected_price=pending["expected_price"],
                fill_price=0.0,
                size=pending["size"],
                slippage_bps=0.0,
                time_to_fill_secs=round(time.time() - pending["submitted_at"], 3),
                strategy=pending["strategy"],
                filled=False,
            ))
        log.info("fill_tracker.unfilled", order_id=order_id[:8])

    def recent_slippage_bps(self) -> float:
        """Mean adverse slippage over the last `window` fills."""
        with self._lock:
            filled = [f for f in self._fills if f.filled]
        recent = filled[-self._window:]
        if not recent:
            return 0.0
        return sum(f.slippage_bps for f in recent) / len(recent)

    def get_quality(self, lookback_hours: float = 24.0) -> ExecutionQuality:
        cutoff = time.time() - lookback_hours * 3600
        with self._lock:
            recent = [f for f in self._fills if f.timestamp >= cutoff]
        if not recent:
            return ExecutionQuality()

        filled = [f for f in recent if f.filled]
        times = sorted(f.time_to_fill_secs for f in filled) or [0.0]

        by_strategy: dict[str, dict[str, float]] = {}
        for f in filled:
            s = by_strategy.setdefault(f.strategy, {"fills": 0, "avg_slippage_bps": 0.0})
            s["fills"] += 1
            s["avg_slippage_bps"] += f.slippage_bps
        for s in by_strategy.values():
            s["avg_slippage_bps"] = round(s["avg_slippage_bps"] / s["fills"], 1)

        return ExecutionQuality(
            total_orders=len(recent),
            total_fills=len(filled),
            unfilled=len(recent) - len(filled),
            avg_slippage_bps=round(
                sum(f.slippage_bps for f in filled) / len(filled), 1
            ) if filled else 0.0,
            median_time_to_fill_secs=times[len(times) // 2],
            strategy_stats=by_strategy,
        )

    def get_recent_fills(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            return [f.to_dict() for f in list(self._fills)[-limit:]]
