"""Order builder — turns a flushed copy size into a CopyOrder intent.

CopyOrder status machine:
  PENDING   → SUBMITTED | FAILED
  SUBMITTED → RETRYING | FILLED | FAILED
  RETRYING  → SUBMITTED | FAILED
  FILLED, FAILED are terminal.

Only SUBMITTED → RETRYING → SUBMITTED may cycle, and at most
max_retries times. Size is frozen once the order leaves PENDING.
"""

from __future__ import annotations

import datetime as dt
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from copybot.config import ExecutionConfig
from copybot.storage.models import OrderRecord
from copybot.observability.logger import get_logger

log = get_logger(__name__)

MIN_PRICE = 0.001
MAX_PRICE = 0.999


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    RETRYING = "RETRYING"
    FILLED = "FILLED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.FILLED, OrderStatus.FAILED)


_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.SUBMITTED, OrderStatus.FAILED}),
    OrderStatus.SUBMITTED: frozenset({OrderStatus.RETRYING, OrderStatus.FILLED, OrderStatus.FAILED}),
    OrderStatus.RETRYING: frozenset({OrderStatus.SUBMITTED, OrderStatus.FAILED}),
    OrderStatus.FILLED: frozenset(),
    OrderStatus.FAILED: frozenset(),
}


class InvalidTransition(ValueError):
    pass


@dataclass
class CopyOrder:
    """A sized copy intent and its execution state."""
    order_id: str
    market_id: str
    side: str           # "BUY" | "SELL"
    size: float
    limit_price: float
    strategy_used: str
    status: OrderStatus = OrderStatus.PENDING
    trader_address: str = ""
    source_trade_ids: tuple[int, ...] = ()
    max_retries: int | None = None
    attempts: int = 0
    retries: int = 0
    venue_order_id: str = ""
    relay_tx_id: str = ""
    fill_price: float = 0.0
    reference_price: float = 0.0  # source trade price; slippage is measured against it
    failure_code: str = ""
    requires_operator: bool = False
    created_at: str = field(default_factory=lambda: dt.datetime.now(dt.timezone.utc).isoformat())
    updated_at: str = ""

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "size" and getattr(self, "status", OrderStatus.PENDING) != OrderStatus.PENDING:
            raise AttributeError("CopyOrder.size cannot change after submission")
        super().__setattr__(name, value)

    @property
    def highest_trade_id(self) -> int:
        return max(self.source_trade_ids) if self.source_trade_ids else 0

    @property
    def expected_price(self) -> float:
        """Price the copy should fill at: the source price, else the limit."""
        return self.reference_price or self.limit_price

    @property
    def signed_delta(self) -> float:
        return self.size if self.side == "BUY" else -self.size

    def transition(self, new_status: OrderStatus) -> None:
        if new_status not in _TRANSITIONS[self.status]:
            raise InvalidTransition(f"{self.status.value} -> {new_status.value}")
        if new_status == OrderStatus.RETRYING:
            if self.max_retries is not None and self.retries >= self.max_retries:
                raise InvalidTransition(
                    f"retry budget of {self.max_retries} exhausted for {self.order_id}"
                )
            self.retries += 1
        if new_status == OrderStatus.SUBMITTED:
            self.attempts += 1
        log.debug(
            "copy_order.transition",
            order_id=self.order_id[:8],
            from_status=self.status.value,
            to_status=new_status.value,
            retries=self.retries,
        )
        self.status = new_status
        self.updated_at = dt.datetime.now(dt.timezone.utc).isoformat()

    def fail(self, code: str) -> None:
        self.failure_code = code
        self.transition(OrderStatus.FAILED)

    def to_record(self) -> OrderRecord:
        return OrderRecord(
            order_id=self.order_id,
            trader_address=self.trader_address,
            market_id=self.market_id,
            side=self.side,
            size=self.size,
            limit_price=self.limit_price,
            strategy_used=self.strategy_used,
            status=self.status.value,
            attempts=self.attempts,
            retries=self.retries,
            venue_order_id=self.venue_order_id,
            relay_tx_id=self.relay_tx_id,
            fill_price=self.fill_price,
            failure_code=self.failure_code,
            source_trade_ids=list(self.source_trade_ids),
            created_at=self.created_at,
            updated_at=self.updated_at or self.created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return self.to_record().model_dump()


def limit_price_for(side: str, reference_price: float, slippage_tolerance: float) -> float:
    """Marketable limit: pay up to tolerance on BUY, accept down to it on SELL."""
    if side == "BUY":
        price = reference_price * (1 + slippage_tolerance)
    else:
        price = reference_price * (1 - slippage_tolerance)
    return round(min(max(price, MIN_PRICE), MAX_PRICE), 4)


def build_copy_order(
    trader_address: str,
    market_id: str,
    side: str,
    size: float,
    reference_price: float,
    strategy_used: str,
    source_trade_ids: tuple[int, ...] | list[int],
    config: ExecutionConfig,
) -> CopyOrder:
    """Build a CopyOrder intent for a flushed size."""
    side = getattr(side, "value", side)
    order = CopyOrder(
        order_id=str(uuid.uuid4()),
        market_id=market_id,
        side=side,
        size=round(size, 6),
        limit_price=limit_price_for(side, reference_price, config.slippage_tolerance),
        reference_price=reference_price,
        strategy_used=strategy_used,
        trader_address=trader_address,
        source_trade_ids=tuple(sorted(source_trade_ids)),
        max_retries=config.retry_max_attempts,
    )
    log.info(
        "order_builder.built",
        order_id=order.order_id[:8],
        market_id=market_id,
        side=side,
        size=order.size,
        limit_price=order.limit_price,
        strategy=strategy_used,
        trade_ids=list(order.source_trade_ids),
    )
    return order
