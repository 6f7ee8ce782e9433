"""Execution coordinator — drive a CopyOrder to a terminal status.

  PENDING --signed & sent--> SUBMITTED --confirmed fill--> FILLED
  SUBMITTED --transient--> RETRYING --backoff--> SUBMITTED   (bounded)
  SUBMITTED --permanent / retries exhausted--> FAILED

Transient vs permanent comes from the venue error code. Every attempt
passes through admission control again; the slot is released while the
order sleeps in RETRYING. On FILLED the position store is updated with the
highest contributing trade id. On FAILED an alert is raised and position
state is left untouched.

In dry-run mode the order is simulated as filled at the source price.
Fill quality is always measured against the source price, not the limit.
"""

from __future__ import annotations

import asyncio
import time

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from copybot.config import ExecutionConfig
from copybot.connectors.polymarket_clob import VenueClient, VenueOrderState, VenueResponse
from copybot.errors import (
    TransientVenueError,
    VenueError,
    WalletError,
    classify_venue_error,
    is_retryable,
)
from copybot.execution.admission import AdmissionControl
from copybot.execution.fill_tracker import FillTracker
from copybot.execution.order_builder import CopyOrder, OrderStatus
from copybot.execution.wallet import WalletAdapter, WalletContext
from copybot.observability.alerts import AlertManager
from copybot.observability.logger import get_logger
from copybot.observability.metrics import metrics
from copybot.storage.database import Database
from copybot.storage.position_store import PositionStore

log = get_logger(__name__)


class ExecutionCoordinator:
    """Submit CopyOrders through the wallet adapter with bounded retries."""

    def __init__(
        self,
        wallet: WalletAdapter,
        venue: VenueClient,
        admission: AdmissionControl,
        store: PositionStore,
        fills: FillTracker,
        alerts: AlertManager,
        config: ExecutionConfig,
        wallet_ctx: WalletContext,
        db: Database | None = None,
        dry_run: bool = True,
    ):
        self._wallet = wallet
        self._venue = venue
        self._admission = admission
        self._store = store
        self._fills = fills
        self._alerts = alerts
        self._config = config
        self._ctx = wallet_ctx
        self._db = db
        self._dry_run = dry_run

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    async def submit(self, order: CopyOrder, ctx: WalletContext | None = None) -> OrderStatus:
        """Run the order to FILLED or FAILED and return that status."""
        ctx = ctx or self._ctx
        self._fills.register_order(
            order.order_id, order.market_id, order.side, order.expected_price,
            order.size, order.strategy_used,
        )
        self._persist(order)

        if self._dry_run:
            return await self._simulate(order, ctx)

        try:
            self._wallet.preflight(ctx)
        except WalletError as e:
            order.requires_operator = True
            await self._fail(order, e.code, e.message)
            return order.status

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._config.retry_max_attempts + 1),
            wait=wait_exponential_jitter(
                initial=self._config.retry_backoff_base,
                max=self._config.retry_backoff_max,
                jitter=self._config.retry_jitter,
            ),
            retry=retry_if_exception(is_retryable),
            before_sleep=lambda state: self._before_retry(order, state),
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    await self._attempt(order, ctx)
        except WalletError as e:
            order.requires_operator = True
            await self._fail(order, e.code, e.message)
        except VenueError as e:
            if e.retryable:
                metrics.incr("orders.retries_exhausted")
                await self._alerts.retries_exhausted(
                    component="coordinator",
                    key=f"{order.trader_address}:{order.market_id}",
                    reason_code=e.code,
                    attempts=order.attempts,
                )
                await self._fail(order, "MAX_RETRIES", f"last error {e.code}")
            else:
                await self._fail(order, e.code, e.message)
        except Exception as e:
            log.exception("coordinator.unexpected_error", order_id=order.order_id[:8])
            await self._fail(order, "INTERNAL_ERROR", repr(e))
        else:
            await self._on_filled(order)
        return order.status

    async def _simulate(self, order: CopyOrder, ctx: WalletContext) -> OrderStatus:
        async with self._admission.slot(ctx.key):
            order.transition(OrderStatus.SUBMITTED)
            order.venue_order_id = f"dry-{order.order_id[:8]}"
            order.fill_price = order.expected_price
        log.info(
            "coordinator.dry_run",
            order_id=order.order_id[:8],
            market_id=order.market_id,
            side=order.side,
            size=order.size,
            price=order.limit_price,
        )
        metrics.incr("orders.simulated")
        await self._on_filled(order)
        return order.status

    async def _attempt(self, order: CopyOrder, ctx: WalletContext) -> None:
        async with self._admission.slot(ctx.key):
            order.transition(OrderStatus.SUBMITTED)
            self._persist(order)
            log.info(
                "coordinator.submitted",
                order_id=order.order_id[:8],
                attempt=order.attempts,
                wallet=ctx.wallet_type.value,
            )
            with metrics.timed("orders.submit_secs"):
                resp = await self._wallet.prepare_and_submit(order, ctx)
            await self._await_fill(order, resp)

    async def _await_fill(self, order: CopyOrder, resp: VenueResponse) -> None:
        deadline = time.monotonic() + self._config.fill_timeout_secs
        while True:
            if resp.status == VenueOrderState.FILLED:
                order.fill_price = resp.fill_price or order.expected_price
                return
            if resp.status == VenueOrderState.REJECTED:
                err = classify_venue_error(resp.reason_code or "ORDER_REJECTED", f"venue rejected {resp.order_id}")
                if err.retryable:
                    # The venue order is dead; the next attempt must send the intent again
                    log.info("coordinator.rejected_resubmit", order_id=order.order_id[:8], code=err.code)
                    order.venue_order_id = ""
                raise err
            if time.monotonic() >= deadline:
                raise TransientVenueError("FILL_TIMEOUT", f"order {resp.order_id} not filled in time")
            await asyncio.sleep(self._config.fill_poll_interval_secs)
            resp = await self._venue.get_order_status(order.venue_order_id or resp.order_id)

    def _before_retry(self, order: CopyOrder, state: RetryCallState) -> None:
        err = state.outcome.exception() if state.outcome else None
        code = err.code if isinstance(err, VenueError) else "UNKNOWN"
        order.transition(OrderStatus.RETRYING)
        self._persist(order)
        metrics.incr("orders.retries")
        log.warning(
            "coordinator.retry",
            order_id=order.order_id[:8],
            code=code,
            retry=order.retries,
            max_retries=self._config.retry_max_attempts,
            sleep_secs=round(state.next_action.sleep, 3) if state.next_action else 0.0,
        )

    async def _on_filled(self, order: CopyOrder) -> None:
        order.transition(OrderStatus.FILLED)
        self._persist(order)
        self._fills.record_fill(order.order_id, order.fill_price)
        await self._store.apply(
            order.trader_address,
            order.market_id,
            order.highest_trade_id,
            order.signed_delta,
            order.fill_price,
        )
        metrics.incr("orders.filled")
        log.info(
            "coordinator.filled",
            order_id=order.order_id[:8],
            market_id=order.market_id,
            side=order.side,
            size=order.size,
            fill_price=order.fill_price,
            retries=order.retries,
        )

    async def _fail(self, order: CopyOrder, code: str, detail: str = "") -> None:
        order.fail(code)
        self._persist(order)
        self._fills.record_unfilled(order.order_id)
        metrics.incr("orders.failed")
        log.error(
            "coordinator.failed",
            order_id=order.order_id[:8],
            market_id=order.market_id,
            code=code,
            detail=detail[:200],
            trade_ids=list(order.source_trade_ids),
        )
        await self._alerts.order_failed(
            trader=order.trader_address,
            market_id=order.market_id,
            trade_ids=list(order.source_trade_ids),
            reason_code=code,
            order_id=order.order_id,
            detail=detail,
        )

    def _persist(self, order: CopyOrder) -> None:
        if self._db is not None:
            self._db.record_order(order.to_record())
