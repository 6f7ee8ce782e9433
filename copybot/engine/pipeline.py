"""Per-key pipeline — one sequential worker per (trader, market).

  ingest → size → aggregate → build order → execute

Events for the key are consumed one at a time from a bounded queue, in
the order the ingestor emitted them. Aggregate expiry comes back through
the same queue, so the pipeline is the only writer for its key.

A trade id at or below the consumed mark is a duplicate and is ignored.
The consumed mark starts from the store watermark (filled copies) and the
ids already buffered in restored aggregates.

A wallet error pauses the pipeline until the operator resumes it; queued
events are kept, not dropped.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Union

from copybot.config import AggregationConfig, ExecutionConfig, OverflowPolicy
from copybot.connectors.trade_feed import TradeEvent
from copybot.execution.aggregator import Aggregator, Buffered, Flush, PendingAggregate
from copybot.execution.coordinator import ExecutionCoordinator
from copybot.execution.fill_tracker import FillTracker
from copybot.execution.order_builder import CopyOrder, build_copy_order
from copybot.observability.alerts import AlertManager
from copybot.observability.logger import get_logger, key_context, short_addr
from copybot.observability.metrics import metrics
from copybot.policy.sizing import SizingConfig, SizingContext, compute
from copybot.storage.database import Database
from copybot.storage.position_store import PositionStore

log = get_logger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


@dataclass(frozen=True)
class _Expired:
    aggregate: PendingAggregate
    flush: Flush | None


class _Stop:
    pass


_STOP = _Stop()

QueueItem = Union[TradeEvent, _Expired, _Stop]


class KeyPipeline:
    """Sequential copy pipeline for a single (trader, market) key."""

    def __init__(
        self,
        trader_address: str,
        market_id: str,
        *,
        sizing: SizingConfig,
        aggregation: AggregationConfig,
        execution: ExecutionConfig,
        store: PositionStore,
        fills: FillTracker,
        coordinator: ExecutionCoordinator,
        alerts: AlertManager,
        db: Database | None = None,
        queue_size: int = 256,
        overflow_policy: OverflowPolicy = OverflowPolicy.BLOCK,
        on_consumed: Callable[[str, int], None] | None = None,
        history_size: int = 50,
    ):
        self.trader_address = trader_address
        self.market_id = market_id
        self._sizing = sizing
        self._aggregation = aggregation
        self._execution = execution
        self._store = store
        self._fills = fills
        self._coordinator = coordinator
        self._alerts = alerts
        self._overflow = overflow_policy
        self._on_consumed = on_consumed

        self._queue: asyncio.Queue[QueueItem] = asyncio.Queue(maxsize=queue_size)
        self._aggregator = Aggregator(
            aggregation,
            trader_address=trader_address,
            db=db,
            on_expire=self._on_expire,
        )
        self._resume = asyncio.Event()
        self._resume.set()
        self._task: asyncio.Task[None] | None = None
        self._consumed = store.watermark(trader_address, market_id)
        self._orders: deque[CopyOrder] = deque(maxlen=history_size)
        self.state = PipelineState.IDLE
        self.pause_reason = ""
        self.processed = 0
        self.duplicates = 0

    @property
    def key(self) -> tuple[str, str]:
        return (self.trader_address, self.market_id)

    @property
    def aggregator(self) -> Aggregator:
        return self._aggregator

    @property
    def consumed_mark(self) -> int:
        return self._consumed

    @property
    def recent_orders(self) -> list[CopyOrder]:
        return list(self._orders)

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    # ── Lifecycle ────────────────────────────────────────────────────

    def restore(self, records: list[Any]) -> int:
        """Resume persisted aggregates and fold their ids into the consumed mark."""
        restored = self._aggregator.restore(records)
        ids = self._aggregator.consumed_ids()
        if ids:
            self._consumed = max(self._consumed, max(ids))
        return restored

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self.state = PipelineState.RUNNING if self._resume.is_set() else PipelineState.PAUSED
        self._task = asyncio.get_running_loop().create_task(self._run())
        log.info(
            "pipeline.started",
            trader=short_addr(self.trader_address),
            market_id=self.market_id,
            consumed_mark=self._consumed,
        )

    def pause(self, reason: str = "operator") -> None:
        self._resume.clear()
        self.pause_reason = reason
        if self.state != PipelineState.STOPPED:
            self.state = PipelineState.PAUSED
        log.warning(
            "pipeline.paused",
            trader=short_addr(self.trader_address),
            market_id=self.market_id,
            reason=reason,
        )

    def resume(self) -> None:
        self.pause_reason = ""
        if self.state == PipelineState.PAUSED:
            self.state = PipelineState.RUNNING
        self._resume.set()
        log.info("pipeline.resumed", trader=short_addr(self.trader_address), market_id=self.market_id)

    async def stop(self, drain: bool = True) -> None:
        """Stop consuming. With drain, queued events are processed first.

        Open aggregates are persisted, never discarded. An expiry still
        queued keeps its stored row and is restored on the next start.
        """
        if self._task is not None and not self._task.done():
            if drain and self._resume.is_set():
                await self._queue.put(_STOP)
                await self._task
            else:
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
        saved = self._aggregator.persist_all()
        await self._aggregator.close()
        self.state = PipelineState.STOPPED
        log.info(
            "pipeline.stopped",
            trader=short_addr(self.trader_address),
            market_id=self.market_id,
            aggregates_saved=saved,
            dropped_queued=self._queue.qsize(),
        )

    # ── Input ────────────────────────────────────────────────────────

    async def put(self, event: TradeEvent) -> None:
        if self._overflow == OverflowPolicy.DROP_OLDEST and self._queue.full():
            self._drop_oldest_event()
        await self._queue.put(event)

    def _drop_oldest_event(self) -> None:
        """Remove the oldest queued trade. Control items keep their place.

        With only control items queued nothing is dropped and put() waits.
        """
        items: list[QueueItem] = []
        while not self._queue.empty():
            items.append(self._queue.get_nowait())
        taken = len(items)
        index = next((i for i, item in enumerate(items) if isinstance(item, TradeEvent)), None)
        dropped = items.pop(index) if index is not None else None
        for item in items:
            self._queue.put_nowait(item)
        for _ in range(taken):
            self._queue.task_done()
        if isinstance(dropped, TradeEvent):
            metrics.incr("pipeline.overflow_dropped")
            log.warning(
                "pipeline.overflow_dropped",
                trader=short_addr(self.trader_address),
                market_id=self.market_id,
                trade_id=dropped.trade_id,
            )

    async def join(self) -> None:
        """Wait until every queued item has been processed."""
        await self._queue.join()

    async def _on_expire(self, agg: PendingAggregate, flush: Flush | None) -> None:
        await self._queue.put(_Expired(agg, flush))

    # ── Worker ───────────────────────────────────────────────────────

    async def _run(self) -> None:
        while True:
            await self._resume.wait()
            item = await self._queue.get()
            try:
                if isinstance(item, _Stop):
                    return
                # paused while this worker was waiting for the item
                await self._resume.wait()
                with key_context(self.trader_address, self.market_id):
                    if isinstance(item, _Expired):
                        await self._handle_expired(item)
                    else:
                        await self.process(item)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # keep the key alive; the failing item is reported, not retried
                metrics.incr("pipeline.errors")
                log.exception(
                    "pipeline.item_error",
                    trader=short_addr(self.trader_address),
                    market_id=self.market_id,
                    error=str(e),
                )
            finally:
                self._queue.task_done()

    async def process(self, event: TradeEvent) -> CopyOrder | None:
        """Run one trade through size → aggregate → execute."""
        if event.trade_id <= self._consumed:
            self.duplicates += 1
            metrics.incr("pipeline.duplicates")
            log.debug(
                "pipeline.duplicate_ignored",
                trader=short_addr(event.trader_address),
                market_id=event.market_id,
                trade_id=event.trade_id,
                consumed_mark=self._consumed,
            )
            return None
        self.processed += 1

        position = await self._store.get(event.trader_address, event.market_id)
        deployed = self._store.deployed_capital()
        budget = self._sizing.capital_budget
        context = SizingContext(
            deployed_capital=deployed,
            recent_slippage_bps=self._fills.recent_slippage_bps(),
            available_capital=None if budget is None else max(budget - deployed, 0.0),
        )
        size = compute(self._sizing, event, position, context)

        if size <= 0:
            self._mark(event.trade_id)
            metrics.incr("pipeline.skipped")
            log.info(
                "pipeline.skipped",
                trader=short_addr(event.trader_address),
                market_id=event.market_id,
                trade_id=event.trade_id,
                side=event.side.value,
                reason="zero_size",
            )
            return None

        if self._aggregation.enabled:
            result = self._aggregator.offer(
                event.market_id, event.side.value, size, event.trade_id, price=event.price,
            )
            self._mark(event.trade_id)
            if isinstance(result, Buffered):
                return None
            return await self._execute(result.side, result.total_size, result.avg_price, result.contributing_ids)

        if size < self._aggregation.min_tradable_size:
            self._mark(event.trade_id)
            metrics.incr("pipeline.skipped")
            log.info(
                "pipeline.skipped",
                trader=short_addr(event.trader_address),
                market_id=event.market_id,
                trade_id=event.trade_id,
                size=size,
                reason="below_min_size",
            )
            return None

        self._mark(event.trade_id)
        return await self._execute(event.side.value, size, event.price, (event.trade_id,))

    async def _handle_expired(self, item: _Expired) -> CopyOrder | None:
        agg = item.aggregate
        self._aggregator.settle_expired(agg)
        await self._alerts.aggregate_expired(
            trader=agg.trader_address,
            market_id=agg.market_id,
            side=agg.side,
            size=agg.accumulated_size,
            trade_ids=list(agg.contributing_trade_ids),
            policy=self._aggregation.expiry_policy.value,
        )
        if item.flush is None:
            return None
        flush = item.flush
        return await self._execute(flush.side, flush.total_size, flush.avg_price, flush.contributing_ids)

    async def _execute(
        self,
        side: str,
        size: float,
        reference_price: float,
        trade_ids: tuple[int, ...],
    ) -> CopyOrder:
        order = build_copy_order(
            trader_address=self.trader_address,
            market_id=self.market_id,
            side=side,
            size=size,
            reference_price=reference_price,
            strategy_used=self._sizing.kind.value,
            source_trade_ids=trade_ids,
            config=self._execution,
        )
        self._orders.append(order)
        status = await self._coordinator.submit(order)
        metrics.incr(f"pipeline.orders_{status.value.lower()}")

        if order.requires_operator:
            self.pause(order.failure_code)
            await self._alerts.pipeline_paused(self.trader_address, self.market_id, order.failure_code)
        return order

    def _mark(self, trade_id: int) -> None:
        if trade_id > self._consumed:
            self._consumed = trade_id
            if self._on_consumed is not None:
                self._on_consumed(self.trader_address, trade_id)

    def status(self) -> dict[str, Any]:
        return {
            "trader": self.trader_address,
            "market_id": self.market_id,
            "state": self.state.value,
            "pause_reason": self.pause_reason,
            "queued": self.queued,
            "consumed_mark": self._consumed,
            "processed": self.processed,
            "duplicates": self.duplicates,
            "pending_aggregates": [r.model_dump() for r in self._aggregator.snapshot()],
            "recent_orders": [o.to_dict() for o in self._orders],
        }
