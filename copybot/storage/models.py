"""Storage models — Pydantic records persisted by the Database."""

from __future__ import annotations

import datetime as dt

from pydantic import BaseModel, Field


def _now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


class PositionRecord(BaseModel):
    """Mirrored position for one (trader, market) key.

    last_processed_trade_id is the watermark used for exactly-once
    consumption of the trader's feed on this market.
    """
    trader_address: str
    market_id: str
    net_size: float = 0.0
    avg_price: float = 0.0
    last_processed_trade_id: int = 0
    updated_at: str = Field(default_factory=_now_iso)

    @property
    def key(self) -> tuple[str, str]:
        return (self.trader_address, self.market_id)

    @property
    def notional(self) -> float:
        return self.net_size * self.avg_price


class PendingAggregateRecord(BaseModel):
    """Undersized trades buffered for one (trader, market, side)."""
    trader_address: str
    market_id: str
    side: str
    accumulated_size: float = 0.0
    weighted_price: float = 0.0
    opened_at: float = 0.0  # unix seconds
    contributing_trade_ids: list[int] = Field(default_factory=list)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.trader_address, self.market_id, self.side)


class OrderRecord(BaseModel):
    """Latest known state of a copy order (status query surface)."""
    order_id: str
    trader_address: str
    market_id: str
    side: str
    size: float
    limit_price: float
    strategy_used: str = ""
    status: str = "PENDING"
    attempts: int = 0
    retries: int = 0
    venue_order_id: str = ""
    relay_tx_id: str = ""
    fill_price: float = 0.0
    failure_code: str = ""
    source_trade_ids: list[int] = Field(default_factory=list)
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)
