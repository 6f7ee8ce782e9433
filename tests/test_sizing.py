"""Tests for the sizing strategy engine."""

from __future__ import annotations

import time

import pytest

from copybot.config import StrategyConfig, StrategyKind
from copybot.connectors.trade_feed import Side, TradeEvent
from copybot.policy.sizing import (
    Adaptive,
    Fixed,
    Percentage,
    SizingConfig,
    SizingContext,
    adaptive_factor,
    build_strategy_config,
    compute,
    get_trade_multiplier,
    parse_tiered_multipliers,
)
from copybot.storage.models import PositionRecord


def _event(size: float = 10.0, side: Side = Side.BUY, trade_id: int = 5) -> TradeEvent:
    return TradeEvent(
        trader_address="0xaaa",
        market_id="123",
        side=side,
        price=0.5,
        size=size,
        trade_id=trade_id,
        observed_at=time.time(),
    )


def _position(net_size: float) -> PositionRecord:
    return PositionRecord(trader_address="0xaaa", market_id="123", net_size=net_size, avg_price=0.5)


class TestPercentage:
    def test_half_of_source_size(self):
        cfg = SizingConfig(strategy=Percentage(ratio=0.5))
        assert compute(cfg, _event(size=10), None) == 5.0

    def test_ratio_must_be_in_range(self):
        with pytest.raises(ValueError):
            Percentage(ratio=0.0)
        with pytest.raises(ValueError):
            Percentage(ratio=1.5)

    def test_max_order_size_cap(self):
        cfg = SizingConfig(strategy=Percentage(ratio=1.0), max_order_size=25.0)
        assert compute(cfg, _event(size=100), None) == 25.0


class TestFixed:
    def test_constant_size(self):
        cfg = SizingConfig(strategy=Fixed(size=10.0))
        assert compute(cfg, _event(size=50), None) == 10.0

    def test_capped_at_source_size(self):
        cfg = SizingConfig(strategy=Fixed(size=10.0))
        assert compute(cfg, _event(size=3), None) == 3.0

    def test_source_cap_applies_after_multiplier(self):
        cfg = SizingConfig(strategy=Fixed(size=10.0), trade_multiplier=3.0)
        assert compute(cfg, _event(size=2), None) == 2.0
        assert compute(cfg, _event(size=50), None) == 30.0

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            Fixed(size=-1.0)


class TestAdaptive:
    STRATEGY = Adaptive(base_ratio=0.5, capital_ceiling=1000.0, utilization_exponent=1.0, slippage_sensitivity=20.0)

    def test_idle_capital_no_slippage_is_base(self):
        cfg = SizingConfig(strategy=self.STRATEGY)
        assert compute(cfg, _event(size=10), None, SizingContext()) == 5.0

    def test_decreases_with_utilization(self):
        cfg = SizingConfig(strategy=self.STRATEGY)
        sizes = [
            compute(cfg, _event(size=10), None, SizingContext(deployed_capital=c))
            for c in (0.0, 250.0, 500.0, 900.0, 1000.0)
        ]
        assert sizes == sorted(sizes, reverse=True)
        assert sizes[-1] == 0.0

    def test_decreases_with_slippage(self):
        cfg = SizingConfig(strategy=self.STRATEGY)
        sizes = [
            compute(cfg, _event(size=10), None, SizingContext(recent_slippage_bps=s))
            for s in (0.0, 10.0, 50.0, 200.0)
        ]
        assert all(a > b for a, b in zip(sizes, sizes[1:]))

    def test_negative_slippage_ignored(self):
        assert adaptive_factor(self.STRATEGY, SizingContext(recent_slippage_bps=-30.0)) == 1.0

    def test_over_ceiling_clamps_to_zero(self):
        assert adaptive_factor(self.STRATEGY, SizingContext(deployed_capital=5000.0)) == 0.0


class TestCaps:
    def test_sell_never_exceeds_held(self):
        cfg = SizingConfig(strategy=Percentage(ratio=0.5))
        assert compute(cfg, _event(size=10, side=Side.SELL), _position(3.0)) == 3.0

    def test_sell_without_position_skips(self):
        cfg = SizingConfig(strategy=Percentage(ratio=0.5))
        assert compute(cfg, _event(size=10, side=Side.SELL), None) == 0.0

    def test_buy_respects_max_position(self):
        cfg = SizingConfig(strategy=Percentage(ratio=0.5), max_position_size=20.0)
        assert compute(cfg, _event(size=10), _position(18.0)) == 2.0

    def test_buy_at_max_position_skips(self):
        cfg = SizingConfig(strategy=Percentage(ratio=0.5), max_position_size=20.0)
        assert compute(cfg, _event(size=10), _position(20.0)) == 0.0

    def test_zero_source_size(self):
        cfg = SizingConfig(strategy=Percentage(ratio=0.5))
        assert compute(cfg, _event(size=0.0), None) == 0.0

    def test_buy_capped_at_available_capital(self):
        cfg = SizingConfig(strategy=Percentage(ratio=1.0))
        ctx = SizingContext(available_capital=2.0)
        # 99% of 2 USDC at 0.5 per share
        assert compute(cfg, _event(size=10), None, ctx) == pytest.approx(3.96)

    def test_no_capital_left_skips_buy(self):
        cfg = SizingConfig(strategy=Fixed(size=5.0))
        assert compute(cfg, _event(size=10), None, SizingContext(available_capital=0.0)) == 0.0

    def test_sell_ignores_available_capital(self):
        cfg = SizingConfig(strategy=Percentage(ratio=0.5))
        ctx = SizingContext(available_capital=0.0)
        assert compute(cfg, _event(size=10, side=Side.SELL), _position(8.0), ctx) == 5.0


class TestMultipliers:
    def test_flat_multiplier(self):
        cfg = SizingConfig(strategy=Percentage(ratio=0.5), trade_multiplier=2.0)
        assert compute(cfg, _event(size=10), None) == 10.0

    def test_parse_tiers(self):
        tiers = parse_tiered_multipliers("10-100:1.0, 1-10:2.0, 100+:0.5")
        assert [t.min for t in tiers] == [1.0, 10.0, 100.0]
        assert tiers[-1].max is None

    def test_tier_selection(self):
        cfg = SizingConfig(
            strategy=Percentage(ratio=1.0),
            max_order_size=10_000.0,
            tiers=parse_tiered_multipliers("1-10:2.0,10-100:1.0,100+:0.5"),
        )
        assert get_trade_multiplier(cfg, 5) == 2.0
        assert get_trade_multiplier(cfg, 10) == 1.0
        assert get_trade_multiplier(cfg, 500) == 0.5
        assert compute(cfg, _event(size=200), None) == 100.0

    def test_empty_tiers(self):
        assert parse_tiered_multipliers("") == ()

    @pytest.mark.parametrize("raw", [
        "1-10",
        "10-1:2.0",
        "1-10:2.0,5-20:1.0",
        "1+:2.0,10-20:1.0",
        "abc:1.0",
    ])
    def test_invalid_tiers(self, raw):
        with pytest.raises(ValueError):
            parse_tiered_multipliers(raw)


class TestDeterminism:
    def test_same_inputs_same_output(self):
        cfg = SizingConfig(
            strategy=Adaptive(base_ratio=0.3, capital_ceiling=500.0),
            max_position_size=50.0,
        )
        ctx = SizingContext(deployed_capital=120.0, recent_slippage_bps=15.0)
        event = _event(size=17.3)
        position = _position(4.0)
        first = compute(cfg, event, position, ctx)
        for _ in range(20):
            assert compute(cfg, event, position, ctx) == first


class TestBuildStrategyConfig:
    def test_fixed(self):
        cfg = build_strategy_config(StrategyConfig(strategy=StrategyKind.FIXED, fixed_size=7.0))
        assert cfg.strategy == Fixed(size=7.0)
        assert cfg.kind == StrategyKind.FIXED
        assert cfg.capital_budget == 1000.0  # falls back to the capital ceiling

    def test_explicit_capital_budget(self):
        cfg = build_strategy_config(StrategyConfig(capital_budget=250.0))
        assert cfg.capital_budget == 250.0

    def test_adaptive_with_tiers(self):
        cfg = build_strategy_config(StrategyConfig(
            strategy=StrategyKind.ADAPTIVE,
            adaptive_base_ratio=0.2,
            capital_ceiling=2000.0,
            tiered_multipliers="1-10:2.0,10+:1.0",
        ))
        assert isinstance(cfg.strategy, Adaptive)
        assert cfg.strategy.capital_ceiling == 2000.0
        assert len(cfg.tiers) == 2
