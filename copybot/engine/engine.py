"""Copy engine — wires the feed, pipelines and execution together.

  feed ──► router ──► KeyPipeline(trader, market) ──► coordinator ──► venue
                              │                            │
                              └──────── PositionStore ◄────┘

Independent keys run fully concurrently; the admission control inside the
coordinator is the single global rate-limiting point.

Shutdown (SIGINT/SIGTERM or stop()):
  1. stop feed consumption
  2. drain pipelines so in-flight orders reach FILLED/FAILED
  3. persist open aggregates (never discarded)
  4. close connections
"""

from __future__ import annotations

import asyncio
import json
import signal
import time
from collections import defaultdict
from typing import Any

from copybot.config import BotConfig, get_private_key, is_live_trading_enabled, load_config
from copybot.connectors.polymarket_clob import VenueClient
from copybot.connectors.polymarket_data import DataAPIClient
from copybot.connectors.trade_feed import TradeEvent, TradeFeedIngestor
from copybot.engine.pipeline import KeyPipeline
from copybot.execution.admission import AdmissionControl
from copybot.execution.coordinator import ExecutionCoordinator
from copybot.execution.fill_tracker import FillTracker
from copybot.execution.wallet import WalletAdapter, WalletContext
from copybot.observability.alerts import AlertManager
from copybot.observability.logger import get_logger, short_addr
from copybot.observability.metrics import metrics
from copybot.policy.sizing import build_strategy_config
from copybot.storage.database import Database
from copybot.storage.position_store import PositionStore

log = get_logger(__name__)

STATE_INTERVAL_SECS = 30.0

PipelineKey = tuple[str, str]


class CopyEngine:
    """Mirror tracked traders onto the operator wallet."""

    def __init__(
        self,
        config: BotConfig | None = None,
        *,
        db: Database | None = None,
        venue: VenueClient | None = None,
        data_api: DataAPIClient | None = None,
        alerts: AlertManager | None = None,
        ingestor: TradeFeedIngestor | None = None,
        private_key: str | None = None,
    ):
        self.config = config or load_config()
        cfg = self.config

        self._db = db or Database(cfg.storage)
        self._alerts = alerts or AlertManager(cfg.alerts)
        self._venue = venue or VenueClient(cfg.wallet)
        self._data_api = data_api or DataAPIClient(cfg.feed.data_api_url)
        self.ingestor = ingestor or TradeFeedIngestor(cfg.feed, self._data_api, self._alerts)

        self.store = PositionStore(self._db)
        self.fills = FillTracker()
        self.admission = AdmissionControl(cfg.execution.max_outstanding_orders)
        self.wallet_ctx = WalletContext.from_config(cfg.wallet)
        self._wallet = WalletAdapter(
            self._venue,
            cfg.wallet,
            private_key if private_key is not None else get_private_key(),
        )
        self.dry_run = cfg.execution.dry_run or not is_live_trading_enabled()
        self.coordinator = ExecutionCoordinator(
            wallet=self._wallet,
            venue=self._venue,
            admission=self.admission,
            store=self.store,
            fills=self.fills,
            alerts=self._alerts,
            config=cfg.execution,
            wallet_ctx=self.wallet_ctx,
            db=self._db,
            dry_run=self.dry_run,
        )
        self._sizing = build_strategy_config(cfg.strategy)

        self._pipelines: dict[PipelineKey, KeyPipeline] = {}
        self._paused: set[str] = set()
        self._tasks: list[asyncio.Task[Any]] = []
        self._stop_event = asyncio.Event()
        self._running = False
        self._started_at = 0.0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def pipelines(self) -> dict[PipelineKey, KeyPipeline]:
        return dict(self._pipelines)

    # ── Pipelines ────────────────────────────────────────────────────

    def pipeline_for(self, trader: str, market_id: str) -> KeyPipeline:
        """Return the key's pipeline, creating and starting it on first use."""
        key = (trader, market_id)
        pipeline = self._pipelines.get(key)
        if pipeline is None:
            pipeline = KeyPipeline(
                trader,
                market_id,
                sizing=self._sizing,
                aggregation=self.config.aggregation,
                execution=self.config.execution,
                store=self.store,
                fills=self.fills,
                coordinator=self.coordinator,
                alerts=self._alerts,
                db=self._db,
                queue_size=self.config.feed.queue_size,
                overflow_policy=self.config.feed.overflow_policy,
                on_consumed=self.ingestor.ack,
            )
            if trader in self._paused:
                pipeline.pause("operator")
            self._pipelines[key] = pipeline
            pipeline.start()
            metrics.gauge("engine.pipelines", len(self._pipelines))
        return pipeline

    async def route(self, event: TradeEvent) -> None:
        if event.trader_address not in self.ingestor.traders:
            log.debug("engine.untracked_event", trader=short_addr(event.trader_address))
            return
        await self.pipeline_for(*event.key).put(event)

    async def _route_loop(self) -> None:
        while True:
            event = await self.ingestor.events.get()
            await self.route(event)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def startup(self) -> None:
        """Open storage, warm positions and resume persisted aggregates."""
        self._db.connect()
        self.store.warm()

        acks: dict[str, int] = defaultdict(int)
        for record in self.store.snapshot():
            acks[record.trader_address] = max(acks[record.trader_address], record.last_processed_trade_id)

        grouped: dict[PipelineKey, list[Any]] = defaultdict(list)
        for record in self._db.load_pending_aggregates():
            grouped[(record.trader_address, record.market_id)].append(record)
        for (trader, market_id), records in grouped.items():
            pipeline = self.pipeline_for(trader, market_id)
            pipeline.restore(records)
            acks[trader] = max(acks[trader], pipeline.consumed_mark)

        self.ingestor.seed_acks(dict(acks))
        self._running = True
        self._started_at = time.time()
        log.info(
            "engine.started",
            traders=len(self.ingestor.traders),
            dry_run=self.dry_run,
            wallet=self.wallet_ctx.wallet_type.value,
            restored_aggregates=sum(len(r) for r in grouped.values()),
        )
        self._persist_engine_state()

    async def run(self) -> None:
        """Run until a shutdown signal or stop()."""
        await self.startup()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except (NotImplementedError, RuntimeError):
                pass  # Windows or non-main thread

        self._tasks = [
            asyncio.create_task(self.ingestor.run()),
            asyncio.create_task(self._route_loop()),
            asyncio.create_task(self._state_loop()),
        ]
        try:
            await self._stop_event.wait()
        finally:
            await self.shutdown()

    def stop(self) -> None:
        log.info("engine.stop_requested")
        self._stop_event.set()

    def _handle_signal(self, sig: signal.Signals) -> None:
        log.info("engine.signal_received", signal=sig.name)
        self.stop()

    async def _state_loop(self) -> None:
        while True:
            await asyncio.sleep(STATE_INTERVAL_SECS)
            self._persist_engine_state()

    async def shutdown(self) -> None:
        if not self._running:
            return
        log.info("engine.shutting_down", pipelines=len(self._pipelines))

        await self.ingestor.stop()
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        # remaining routed events are drained; in-flight orders finish
        await asyncio.gather(*(p.stop(drain=True) for p in self._pipelines.values()))

        self._running = False
        self._persist_engine_state()
        await self._alerts.close()
        await self._venue.close()
        await self._data_api.close()
        self._db.close()
        log.info("engine.stopped", uptime_secs=round(time.time() - self._started_at, 1))

    def _persist_engine_state(self) -> None:
        try:
            self._db.set_engine_state("engine_status", json.dumps(self.status(), default=str))
        except Exception as e:
            log.warning("engine.persist_state_error", error=str(e))

    # ── Control surface ──────────────────────────────────────────────

    async def start_trader(self, trader: str) -> None:
        """Begin copying a trader."""
        trader = trader.lower()
        self._paused.discard(trader)
        await self.ingestor.add_trader(trader)
        for pipeline in self._for_trader(trader):
            pipeline.resume()
        log.info("engine.trader_started", trader=short_addr(trader))

    async def stop_trader(self, trader: str) -> None:
        """Stop copying a trader. Open aggregates are persisted."""
        trader = trader.lower()
        await self.ingestor.remove_trader(trader)
        pipelines = self._for_trader(trader)
        await asyncio.gather(*(p.stop(drain=True) for p in pipelines))
        for p in pipelines:
            self._pipelines.pop(p.key, None)
        metrics.gauge("engine.pipelines", len(self._pipelines))
        log.info("engine.trader_stopped", trader=short_addr(trader), pipelines=len(pipelines))

    def pause(self, trader: str) -> None:
        trader = trader.lower()
        self._paused.add(trader)
        for pipeline in self._for_trader(trader):
            pipeline.pause("operator")

    def resume(self, trader: str) -> None:
        trader = trader.lower()
        self._paused.discard(trader)
        for pipeline in self._for_trader(trader):
            pipeline.resume()

    def _for_trader(self, trader: str) -> list[KeyPipeline]:
        return [p for (t, _), p in self._pipelines.items() if t == trader]

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "dry_run": self.dry_run,
            "live_trading": is_live_trading_enabled(),
            "wallet": {
                "type": self.wallet_ctx.wallet_type.value,
                "address": self.wallet_ctx.address,
            },
            "feed": {
                "state": self.ingestor.state.value,
                "reconnects": self.ingestor.reconnects,
                "traders": sorted(self.ingestor.traders),
                "counters": metrics.by_prefix("feed"),
            },
            "paused_traders": sorted(self._paused),
            "positions": [r.model_dump() for r in self.store.snapshot()],
            "pipelines": [p.status() for p in self._pipelines.values()],
            "admission": self.admission.stats,
            "orders": metrics.by_prefix("orders"),
            "execution_quality": self.fills.get_quality().to_dict(),
            "metrics": metrics.snapshot(),
        }
