"""Shared configuration loader and Pydantic settings.

Supports:
  - YAML file loading with env var overrides for wallet + trader addresses
  - All subsystem configs: feed, strategy, aggregation, execution,
    wallet, storage, observability, alerts
"""

from __future__ import annotations

import os
import re
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator


_PROJECT_ROOT = Path(__file__).resolve().parent.parent

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


class StrategyKind(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"
    ADAPTIVE = "ADAPTIVE"


class WalletType(str, Enum):
    EOA = "EOA"
    SAFE = "SAFE"


class ExpiryPolicy(str, Enum):
    DROP = "drop"
    FLUSH = "flush"


class OverflowPolicy(str, Enum):
    BLOCK = "block"
    DROP_OLDEST = "drop_oldest"


def is_valid_address(addr: str) -> bool:
    return bool(_ADDRESS_RE.match(addr.strip()))


def parse_addresses(raw: str | list[str]) -> list[str]:
    """Parse a comma-separated (or JSON-ish list) string of trader addresses."""
    if isinstance(raw, list):
        items = raw
    else:
        items = raw.strip().strip("[]").replace('"', "").replace("'", "").split(",")
    out: list[str] = []
    for item in items:
        addr = item.strip().lower()
        if not addr:
            continue
        if not is_valid_address(addr):
            raise ValueError(f"Invalid trader address: {addr}")
        if addr not in out:
            out.append(addr)
    return out


class FeedConfig(BaseModel):
    ws_url: str = "wss://ws-live-data.polymarket.com"
    data_api_url: str = "https://data-api.polymarket.com"
    tracked_traders: list[str] = Field(default_factory=list)
    reconnect_base_delay_secs: float = 1.0
    reconnect_max_delay_secs: float = 60.0
    resume_supported: bool = False
    reconcile_limit: int = 100
    queue_size: int = 256
    overflow_policy: OverflowPolicy = OverflowPolicy.BLOCK
    too_old_hours: float = 24.0

    @field_validator("tracked_traders", mode="before")
    @classmethod
    def _normalise_traders(cls, v: Any) -> list[str]:
        if v is None:
            return []
        return parse_addresses(v)


class StrategyConfig(BaseModel):
    strategy: StrategyKind = StrategyKind.PERCENTAGE
    ratio: float = Field(default=0.1, gt=0.0, le=1.0)
    fixed_size: float = Field(default=10.0, ge=0.0)
    # Adaptive
    adaptive_base_ratio: float = Field(default=0.1, gt=0.0, le=1.0)
    capital_ceiling: float = Field(default=1000.0, gt=0.0)
    # USDC the bot may deploy across all positions; defaults to capital_ceiling
    capital_budget: float | None = Field(default=None, gt=0.0)
    utilization_exponent: float = Field(default=1.0, gt=0.0)
    slippage_sensitivity: float = Field(default=20.0, ge=0.0)
    # Caps and multipliers
    max_order_size: float = Field(default=100.0, gt=0.0)
    max_position_size: float | None = None
    trade_multiplier: float = Field(default=1.0, ge=0.0)
    tiered_multipliers: str = ""


class AggregationConfig(BaseModel):
    enabled: bool = True
    min_tradable_size: float = Field(default=1.0, ge=0.0)
    max_hold_secs: float = Field(default=300.0, gt=0.0)
    expiry_policy: ExpiryPolicy = ExpiryPolicy.DROP


class ExecutionConfig(BaseModel):
    dry_run: bool = True
    retry_max_attempts: int = Field(default=3, ge=0)
    retry_backoff_base: float = 1.0
    retry_backoff_max: float = 30.0
    retry_jitter: float = 0.5
    max_outstanding_orders: int = Field(default=4, ge=1)
    slippage_tolerance: float = 0.01
    fill_poll_interval_secs: float = 1.0
    fill_timeout_secs: float = 30.0


class WalletConfig(BaseModel):
    wallet_type: WalletType = WalletType.EOA
    address: str = ""
    allowance_ok: bool = True
    chain_id: int = 137
    clob_url: str = "https://clob.polymarket.com"
    relayer_url: str = "https://relayer-v2.polymarket.com"
    confirmation_poll_interval_secs: float = 2.0
    confirmation_timeout_secs: float = 60.0


class StorageConfig(BaseModel):
    sqlite_path: str = "data/copybot.db"


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = "logs/copybot.log"


class AlertsConfig(BaseModel):
    """Alerting configuration."""
    enabled: bool = False
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    min_alert_interval_secs: int = 60
    history_size: int = 500


class BotConfig(BaseModel):
    feed: FeedConfig = Field(default_factory=FeedConfig)
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    aggregation: AggregationConfig = Field(default_factory=AggregationConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    wallet: WalletConfig = Field(default_factory=WalletConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    """Wallet and trader addresses may come from the environment (.env)."""
    users = os.environ.get("USER_ADDRESSES", "").strip()
    if users:
        raw.setdefault("feed", {})["tracked_traders"] = users
    proxy = os.environ.get("PROXY_WALLET", "").strip()
    if proxy:
        raw.setdefault("wallet", {})["address"] = proxy.lower()
    wallet_type = os.environ.get("WALLET_TYPE", "").strip().upper()
    if wallet_type:
        raw.setdefault("wallet", {})["wallet_type"] = wallet_type
    return raw


def load_config(path: str | Path | None = None) -> BotConfig:
    """Load config from YAML file, falling back to defaults."""
    if path is None:
        path = _PROJECT_ROOT / "config.yaml"
    path = Path(path)
    raw: dict[str, Any] = {}
    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    return BotConfig(**_apply_env_overrides(raw))


def is_live_trading_enabled() -> bool:
    """Check if live trading is explicitly enabled via env var."""
    return os.environ.get("ENABLE_LIVE_TRADING", "").lower() == "true"


def get_private_key() -> str:
    """Signing key for the operator wallet. Never logged."""
    key = os.environ.get("PRIVATE_KEY", "").strip()
    if key and not key.startswith("0x"):
        key = "0x" + key
    return key
