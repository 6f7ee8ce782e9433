"""Sizing strategy engine — how much of a source trade to copy.

Strategies form a closed set with one compute() entry point:
  - Percentage: size × ratio                     (ratio in (0, 1])
  - Fixed:      constant (capped at source size after the multiplier)
  - Adaptive:   size × base_ratio × f(u, slip)
                f = (1 - u)^exponent / (1 + sensitivity × slip_bps / 10_000)
                u = deployed capital / capital ceiling, clamped to [0, 1]

Then, in order:
  - Flat or tiered trade multiplier (tier chosen by source size)
  - max_order_size cap
  - BUY: max_position_size cap on the resulting net position
  - BUY: 99% of the available capital (budget minus deployed), in shares
    at the source price
  - SELL: never more than the currently held size

Result is non-negative; 0 means skip the trade.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Union

from copybot.config import StrategyConfig, StrategyKind
from copybot.storage.models import PositionRecord
from copybot.observability.logger import get_logger

if TYPE_CHECKING:
    from copybot.connectors.trade_feed import TradeEvent

log = get_logger(__name__)

_PRECISION = 6
_BALANCE_SHARE = 0.99  # headroom for fees and rounding


@dataclass(frozen=True)
class Percentage:
    ratio: float

    def __post_init__(self):
        if not 0.0 < self.ratio <= 1.0:
            raise ValueError(f"Percentage ratio must be in (0, 1], got {self.ratio}")


@dataclass(frozen=True)
class Fixed:
    size: float

    def __post_init__(self):
        if self.size < 0:
            raise ValueError(f"Fixed size must be non-negative, got {self.size}")


@dataclass(frozen=True)
class Adaptive:
    base_ratio: float
    capital_ceiling: float
    utilization_exponent: float = 1.0
    slippage_sensitivity: float = 20.0

    def __post_init__(self):
        if not 0.0 < self.base_ratio <= 1.0:
            raise ValueError(f"Adaptive base ratio must be in (0, 1], got {self.base_ratio}")
        if self.capital_ceiling <= 0:
            raise ValueError("Adaptive capital ceiling must be positive")


Strategy = Union[Percentage, Fixed, Adaptive]


@dataclass(frozen=True)
class MultiplierTier:
    min: float
    max: float | None
    multiplier: float


@dataclass(frozen=True)
class SizingConfig:
    """A strategy variant plus the caps applied after it."""
    strategy: Strategy
    max_order_size: float = 100.0
    max_position_size: float | None = None
    trade_multiplier: float = 1.0
    tiers: tuple[MultiplierTier, ...] = field(default_factory=tuple)
    capital_budget: float | None = None

    @property
    def kind(self) -> StrategyKind:
        return strategy_kind(self.strategy)


@dataclass(frozen=True)
class SizingContext:
    """Live inputs read by compute. Captured before the call."""
    deployed_capital: float = 0.0
    recent_slippage_bps: float = 0.0
    available_capital: float | None = None  # None: no balance cap


def strategy_kind(strategy: Strategy) -> StrategyKind:
    match strategy:
        case Percentage():
            return StrategyKind.PERCENTAGE
        case Fixed():
            return StrategyKind.FIXED
        case Adaptive():
            return StrategyKind.ADAPTIVE
    raise TypeError(f"Unknown strategy: {strategy!r}")


def parse_tiered_multipliers(raw: str) -> tuple[MultiplierTier, ...]:
    """Parse "1-10:2.0,10-100:1.0,100+:0.5" into sorted, non-overlapping tiers."""
    raw = (raw or "").strip()
    if not raw:
        return ()

    tiers: list[MultiplierTier] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        if ":" not in part:
            raise ValueError(f"Invalid tier (missing multiplier): {part}")
        range_str, mult_str = (s.strip() for s in part.split(":", 1))
        multiplier = float(mult_str)
        if multiplier < 0:
            raise ValueError(f"Invalid multiplier in tier: {part}")

        if range_str.endswith("+"):
            lo = float(range_str[:-1])
            hi = None
        elif "-" in range_str:
            lo_s, hi_s = range_str.split("-", 1)
            lo, hi = float(lo_s), float(hi_s)
            if hi <= lo:
                raise ValueError(f"max must be > min in tier: {part}")
        else:
            raise ValueError(f"Invalid range format in tier: {part}")
        if lo < 0:
            raise ValueError(f"Invalid minimum in tier: {part}")
        tiers.append(MultiplierTier(min=lo, max=hi, multiplier=multiplier))

    tiers.sort(key=lambda t: t.min)
    for cur, nxt in zip(tiers, tiers[1:]):
        if cur.max is None:
            raise ValueError("Tier with open upper bound must be last")
        if cur.max > nxt.min:
            raise ValueError(f"Overlapping tiers: {cur.min}-{cur.max} and {nxt.min}")
    return tuple(tiers)


def get_trade_multiplier(config: SizingConfig, source_size: float) -> float:
    """Tiered multiplier for the source size, else the flat multiplier."""
    if config.tiers:
        for tier in config.tiers:
            if source_size >= tier.min and (tier.max is None or source_size < tier.max):
                return tier.multiplier
        return config.tiers[-1].multiplier
    return config.trade_multiplier


def build_strategy_config(cfg: StrategyConfig) -> SizingConfig:
    """Convert the strategy section of BotConfig into a SizingConfig."""
    strategy: Strategy
    match cfg.strategy:
        case StrategyKind.PERCENTAGE:
            strategy = Percentage(ratio=cfg.ratio)
        case StrategyKind.FIXED:
            strategy = Fixed(size=cfg.fixed_size)
        case StrategyKind.ADAPTIVE:
            strategy = Adaptive(
                base_ratio=cfg.adaptive_base_ratio,
                capital_ceiling=cfg.capital_ceiling,
                utilization_exponent=cfg.utilization_exponent,
                slippage_sensitivity=cfg.slippage_sensitivity,
            )
        case _:
            raise ValueError(f"Unknown strategy kind: {cfg.strategy}")

    return SizingConfig(
        strategy=strategy,
        max_order_size=cfg.max_order_size,
        max_position_size=cfg.max_position_size,
        trade_multiplier=cfg.trade_multiplier,
        tiers=parse_tiered_multipliers(cfg.tiered_multipliers),
        capital_budget=cfg.capital_budget if cfg.capital_budget is not None else cfg.capital_ceiling,
    )


def adaptive_factor(strategy: Adaptive, context: SizingContext) -> float:
    """Monotone-decreasing in both utilization and recent slippage."""
    utilization = min(max(context.deployed_capital / strategy.capital_ceiling, 0.0), 1.0)
    slip = max(context.recent_slippage_bps, 0.0)
    factor = (1.0 - utilization) ** strategy.utilization_exponent
    factor /= 1.0 + strategy.slippage_sensitivity * slip / 10_000
    return min(max(factor, 0.0), 1.0)


def _base_size(strategy: Strategy, source_size: float, context: SizingContext) -> float:
    match strategy:
        case Percentage(ratio=ratio):
            return source_size * ratio
        case Fixed(size=size):
            return size
        case Adaptive():
            return source_size * strategy.base_ratio * adaptive_factor(strategy, context)
    raise TypeError(f"Unknown strategy: {strategy!r}")


def compute(
    strategy_config: SizingConfig,
    trade_event: TradeEvent,
    position_record: PositionRecord | None,
    context: SizingContext | None = None,
) -> float:
    """Desired copy size for one source trade. Deterministic for fixed inputs."""
    context = context or SizingContext()
    source_size = max(trade_event.size, 0.0)
    if source_size == 0:
        return 0.0

    base = _base_size(strategy_config.strategy, source_size, context)
    multiplier = get_trade_multiplier(strategy_config, source_size)
    desired = base * multiplier
    capped_by = "strategy"
    if isinstance(strategy_config.strategy, Fixed) and desired > source_size:
        desired = source_size
        capped_by = "source_size"

    if desired > strategy_config.max_order_size:
        desired = strategy_config.max_order_size
        capped_by = "max_order_size"

    held = position_record.net_size if position_record else 0.0
    if trade_event.side == "SELL":
        if desired > held:
            desired = max(held, 0.0)
            capped_by = "held_position"
    elif strategy_config.max_position_size is not None:
        allowed = max(strategy_config.max_position_size - held, 0.0)
        if desired > allowed:
            desired = allowed
            capped_by = "max_position_size"
    if (
        trade_event.side == "BUY"
        and context.available_capital is not None
        and trade_event.price > 0
    ):
        affordable = max(context.available_capital * _BALANCE_SHARE, 0.0) / trade_event.price
        if desired > affordable:
            desired = affordable
            capped_by = "available_capital"

    desired = round(max(desired, 0.0), _PRECISION)
    log.debug(
        "sizing.computed",
        strategy=strategy_config.kind.value,
        source_size=source_size,
        base=round(base, _PRECISION),
        multiplier=multiplier,
        desired=desired,
        capped_by=capped_by,
    )
    return desired
