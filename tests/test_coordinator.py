"""Tests for the execution coordinator and wallet adapter.

Covers:
  - Rate-limited submission retried and filled on the second attempt
  - Transient rejection of a posted order sends the intent again
  - Permanent venue rejection: FAILED, position untouched, failure alert
  - Safe wallet: confirmation timeouts retried by re-polling the same relay tx
  - Wallet misconfiguration marks the order for operator action
  - Dry run simulation
"""

from __future__ import annotations

import pytest

from copybot.config import ExecutionConfig, StorageConfig, WalletConfig, WalletType
from copybot.connectors.polymarket_clob import (
    RelayState,
    RelayStatus,
    VenueOrderState,
    VenueResponse,
)
from copybot.connectors.trade_feed import Side, TradeEvent
from copybot.errors import PermanentVenueError, TransientVenueError
from copybot.execution.admission import AdmissionControl
from copybot.execution.coordinator import ExecutionCoordinator
from copybot.execution.fill_tracker import FillTracker
from copybot.execution.order_builder import CopyOrder, OrderStatus, build_copy_order
from copybot.execution.wallet import WalletAdapter, WalletContext
from copybot.observability.alerts import AlertManager
from copybot.policy.sizing import Adaptive, SizingConfig, SizingContext, compute
from copybot.storage.database import Database
from copybot.storage.position_store import PositionStore

PRIVATE_KEY = "0x" + "11" * 32
SAFE_ADDRESS = "0x" + "ab" * 20
MARKET = "71321045679252212594626385532706912750332728571942532289631379312455583992563"


class FakeVenue:
    """Scripted stand-in for the CLOB and relayer."""

    def __init__(self, post_results=(), order_states=(), relay_states=()):
        self.post_results = list(post_results)
        self.order_states = list(order_states)
        self.relay_states = list(relay_states)
        self.posted: list[dict] = []
        self.relayed: list[dict] = []
        self.relay_polls = 0
        self.status_polls = 0

    async def post_order(self, payload):
        self.posted.append(payload)
        result = self.post_results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def get_order_status(self, order_id):
        self.status_polls += 1
        state = self.order_states.pop(0) if self.order_states else VenueOrderState.PENDING
        if isinstance(state, VenueResponse):
            return state
        return VenueResponse(order_id=order_id, status=state, fill_price=0.5)

    async def get_relay_nonce(self, address):
        return 7

    async def submit_relayed(self, request):
        self.relayed.append(request)
        return f"relay-{len(self.relayed)}"

    async def get_relay_status(self, relay_tx_id):
        self.relay_polls += 1
        state = self.relay_states.pop(0) if self.relay_states else RelayState.PENDING
        return RelayStatus(relay_tx_id=relay_tx_id, state=state, tx_hash="0xfeed")

    async def close(self):
        pass


def _exec_config(**kw) -> ExecutionConfig:
    defaults = dict(
        dry_run=False,
        retry_max_attempts=5,
        retry_backoff_base=0.0,
        retry_backoff_max=0.0,
        retry_jitter=0.0,
        fill_poll_interval_secs=0.0,
        fill_timeout_secs=0.0,
    )
    defaults.update(kw)
    return ExecutionConfig(**defaults)


def _setup(venue, wallet_cfg=None, exec_cfg=None, private_key=PRIVATE_KEY, dry_run=False, fills=None):
    wallet_cfg = wallet_cfg or WalletConfig()
    exec_cfg = exec_cfg or _exec_config()
    db = Database(StorageConfig(sqlite_path=":memory:"))
    db.connect()
    store = PositionStore(db)
    alerts = AlertManager()
    coordinator = ExecutionCoordinator(
        wallet=WalletAdapter(venue, wallet_cfg, private_key),
        venue=venue,
        admission=AdmissionControl(2),
        store=store,
        fills=fills or FillTracker(),
        alerts=alerts,
        config=exec_cfg,
        wallet_ctx=WalletContext.from_config(wallet_cfg),
        db=db,
        dry_run=dry_run,
    )
    return coordinator, store, alerts, db


def _order(exec_cfg=None, side="BUY") -> CopyOrder:
    return build_copy_order(
        trader_address="0xaaa",
        market_id=MARKET,
        side=side,
        size=5.0,
        reference_price=0.5,
        strategy_used="PERCENTAGE",
        source_trade_ids=[5],
        config=exec_cfg or _exec_config(),
    )


def _titles(alerts: AlertManager) -> list[str]:
    return [a["title"] for a in alerts.get_history()]


class TestEoaPath:
    @pytest.mark.asyncio
    async def test_rate_limited_then_filled(self):
        venue = FakeVenue(post_results=[
            TransientVenueError("RATE_LIMITED", "slow down"),
            VenueResponse(order_id="v-1", status=VenueOrderState.FILLED, fill_price=0.5),
        ])
        coordinator, store, alerts, db = _setup(venue)
        order = _order()

        status = await coordinator.submit(order)

        assert status == OrderStatus.FILLED
        assert order.retries == 1
        assert order.attempts == 2
        assert len(venue.posted) == 2
        # Same intent resubmitted: identical signed payload
        assert venue.posted[0] == venue.posted[1]
        position = await store.get("0xaaa", MARKET)
        assert position.net_size == 5.0
        assert position.last_processed_trade_id == 5
        assert db.get_orders()[0].status == "FILLED"

    @pytest.mark.asyncio
    async def test_insufficient_allowance_fails(self):
        venue = FakeVenue(post_results=[
            PermanentVenueError("INSUFFICIENT_ALLOWANCE", "not enough allowance"),
        ])
        coordinator, store, alerts, db = _setup(venue)
        order = _order()

        status = await coordinator.submit(order)

        assert status == OrderStatus.FAILED
        assert order.failure_code == "INSUFFICIENT_ALLOWANCE"
        assert order.retries == 0
        assert len(venue.posted) == 1
        assert await store.get("0xaaa", MARKET) is None
        failed = [a for a in alerts.get_history() if a["title"] == "Copy order failed"]
        assert len(failed) == 1
        assert failed[0]["data"]["reason_code"] == "INSUFFICIENT_ALLOWANCE"
        assert failed[0]["data"]["trade_ids"] == [5]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        venue = FakeVenue(post_results=[TransientVenueError("TIMEOUT")] * 3)
        cfg = _exec_config(retry_max_attempts=2)
        coordinator, store, alerts, db = _setup(venue, exec_cfg=cfg)
        order = _order(cfg)

        status = await coordinator.submit(order)

        assert status == OrderStatus.FAILED
        assert order.failure_code == "MAX_RETRIES"
        assert order.retries == 2
        assert len(venue.posted) == 3
        assert "Retry budget exhausted" in _titles(alerts)
        assert await store.get("0xaaa", MARKET) is None

    @pytest.mark.asyncio
    async def test_fill_timeout_repolls_known_order(self):
        venue = FakeVenue(
            post_results=[VenueResponse(order_id="v-9", status=VenueOrderState.PENDING)],
            order_states=[VenueOrderState.PENDING, VenueOrderState.PENDING, VenueOrderState.FILLED],
        )
        coordinator, store, alerts, db = _setup(venue)
        order = _order()

        status = await coordinator.submit(order)

        assert status == OrderStatus.FILLED
        assert len(venue.posted) == 1
        assert order.venue_order_id == "v-9"

    @pytest.mark.asyncio
    async def test_venue_rejection_on_poll(self):
        venue = FakeVenue(
            post_results=[VenueResponse(order_id="v-2", status=VenueOrderState.REJECTED, reason_code="MARKET_CLOSED")],
        )
        coordinator, store, alerts, db = _setup(venue)
        order = _order()
        assert await coordinator.submit(order) == OrderStatus.FAILED
        assert order.failure_code == "MARKET_CLOSED"


    @pytest.mark.asyncio
    async def test_transient_rejection_resubmits(self):
        venue = FakeVenue(post_results=[
            VenueResponse(order_id="v-1", status=VenueOrderState.REJECTED, reason_code="NONCE_CONFLICT"),
            VenueResponse(order_id="v-2", status=VenueOrderState.FILLED, fill_price=0.5),
        ])
        cfg = _exec_config(retry_max_attempts=3)
        coordinator, store, alerts, db = _setup(venue, exec_cfg=cfg)
        order = _order(cfg)

        assert await coordinator.submit(order) == OrderStatus.FILLED
        assert len(venue.posted) == 2
        assert venue.status_polls == 0
        assert order.venue_order_id == "v-2"
        assert order.retries == 1

    @pytest.mark.asyncio
    async def test_transient_rejection_seen_on_repoll_resubmits(self):
        venue = FakeVenue(
            post_results=[
                VenueResponse(order_id="v-1", status=VenueOrderState.PENDING),
                VenueResponse(order_id="v-2", status=VenueOrderState.FILLED, fill_price=0.5),
            ],
            order_states=[
                VenueResponse(order_id="v-1", status=VenueOrderState.REJECTED, reason_code="NONCE_CONFLICT"),
            ],
        )
        coordinator, store, alerts, db = _setup(venue)
        order = _order()

        # attempt 1 times out, attempt 2 re-polls and sees the rejection, attempt 3 resubmits
        assert await coordinator.submit(order) == OrderStatus.FILLED
        assert len(venue.posted) == 2
        assert venue.status_polls == 1
        assert order.retries == 2
        assert (await store.get("0xaaa", MARKET)).net_size == 5.0
    @pytest.mark.asyncio
    async def test_non_numeric_market_is_invalid(self):
        venue = FakeVenue()
        coordinator, store, alerts, db = _setup(venue)
        order = _order()
        order.market_id = "not-a-token"
        assert await coordinator.submit(order) == OrderStatus.FAILED
        assert order.failure_code == "INVALID_ORDER"
        assert venue.posted == []


class TestSafePath:
    def _wallet(self, **kw) -> WalletConfig:
        defaults = dict(
            wallet_type=WalletType.SAFE,
            address=SAFE_ADDRESS,
            confirmation_timeout_secs=0.0,
            confirmation_poll_interval_secs=0.0,
        )
        defaults.update(kw)
        return WalletConfig(**defaults)

    @pytest.mark.asyncio
    async def test_confirmation_times_out_twice_then_fills(self):
        venue = FakeVenue(relay_states=[RelayState.PENDING, RelayState.PENDING, RelayState.CONFIRMED])
        coordinator, store, alerts, db = _setup(venue, wallet_cfg=self._wallet())
        order = _order()

        status = await coordinator.submit(order)

        assert status == OrderStatus.FILLED
        # one signature, the same relay tx polled across attempts
        assert len(venue.relayed) == 1
        assert venue.relay_polls == 3
        assert order.relay_tx_id == "relay-1"
        assert order.retries == 2
        # relayer reports no price: the fill is booked at the source price
        assert order.fill_price == 0.5
        position = await store.get("0xaaa", MARKET)
        assert position.net_size == 5.0

    @pytest.mark.asyncio
    async def test_relay_acceptance_alone_is_not_a_fill(self):
        venue = FakeVenue(relay_states=[])
        cfg = _exec_config(retry_max_attempts=1)
        coordinator, store, alerts, db = _setup(venue, wallet_cfg=self._wallet(), exec_cfg=cfg)
        order = _order(cfg)

        status = await coordinator.submit(order)

        assert status == OrderStatus.FAILED
        assert order.failure_code == "MAX_RETRIES"
        assert len(venue.relayed) == 1
        assert await store.get("0xaaa", MARKET) is None

    @pytest.mark.asyncio
    async def test_abandoned_relay_is_resigned(self):
        venue = FakeVenue(relay_states=[RelayState.ABANDONED, RelayState.CONFIRMED])
        coordinator, store, alerts, db = _setup(venue, wallet_cfg=self._wallet())
        order = _order()

        assert await coordinator.submit(order) == OrderStatus.FILLED
        assert len(venue.relayed) == 2
        assert order.relay_tx_id == "relay-2"

    @pytest.mark.asyncio
    async def test_relay_failed_is_permanent(self):
        venue = FakeVenue(relay_states=[RelayState.FAILED])
        coordinator, store, alerts, db = _setup(venue, wallet_cfg=self._wallet())
        order = _order()

        assert await coordinator.submit(order) == OrderStatus.FAILED
        assert order.failure_code == "RELAY_FAILED"
        assert order.retries == 0

    @pytest.mark.asyncio
    async def test_relay_request_is_signed_by_owner(self):
        venue = FakeVenue()
        wallet_cfg = self._wallet()
        adapter = WalletAdapter(venue, wallet_cfg, PRIVATE_KEY)
        request = await adapter.build_relay_request(_order(), WalletContext.from_config(wallet_cfg))
        assert request["proxyWallet"] == SAFE_ADDRESS
        assert request["nonce"] == "7"
        assert request["signature"].startswith("0x")
        assert request["from"].startswith("0x")


class TestWalletErrors:
    @pytest.mark.asyncio
    async def test_allowance_not_set(self):
        venue = FakeVenue()
        coordinator, store, alerts, db = _setup(venue, wallet_cfg=WalletConfig(allowance_ok=False))
        order = _order()

        status = await coordinator.submit(order)

        assert status == OrderStatus.FAILED
        assert order.failure_code == "ALLOWANCE_NOT_SET"
        assert order.requires_operator is True
        assert order.attempts == 0
        assert venue.posted == []

    @pytest.mark.asyncio
    async def test_missing_signer(self):
        venue = FakeVenue()
        coordinator, store, alerts, db = _setup(venue, private_key="")
        order = _order()
        assert await coordinator.submit(order) == OrderStatus.FAILED
        assert order.failure_code == "NO_SIGNER"
        assert order.requires_operator is True


class TestDryRun:
    @pytest.mark.asyncio
    async def test_simulated_fill(self):
        venue = FakeVenue()
        coordinator, store, alerts, db = _setup(venue, dry_run=True, private_key="")
        order = _order()

        status = await coordinator.submit(order)

        assert status == OrderStatus.FILLED
        assert order.fill_price == order.reference_price == 0.5
        assert venue.posted == []
        position = await store.get("0xaaa", MARKET)
        assert position.net_size == 5.0


class TestFillQuality:
    @pytest.mark.asyncio
    async def test_slippage_measured_against_source_price(self):
        fills = FillTracker()
        venue = FakeVenue(post_results=[
            VenueResponse(order_id="v-1", status=VenueOrderState.FILLED, fill_price=0.504),
        ])
        coordinator, store, alerts, db = _setup(venue, fills=fills)
        order = _order()  # source price 0.5, limit 0.505

        assert await coordinator.submit(order) == OrderStatus.FILLED
        assert fills.recent_slippage_bps() == pytest.approx(80.0)

        sizing = SizingConfig(strategy=Adaptive(base_ratio=1.0, capital_ceiling=1e9))
        event = TradeEvent("0xaaa", MARKET, Side.BUY, 0.5, 10.0, 6, 0.0)
        calm = compute(sizing, event, None, SizingContext())
        after = compute(sizing, event, None, SizingContext(recent_slippage_bps=fills.recent_slippage_bps()))
        assert after < calm
