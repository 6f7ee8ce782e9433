"""Trade feed — live trades of tracked wallets from Polymarket's real-time stream.

Maintains one logical subscription per tracked trader against the RTDS
websocket and emits normalized TradeEvents on a bounded output channel.

  - Malformed messages are dropped, logged and counted; never emitted
  - Trades older than too_old_hours are skipped
  - Per (trader, market) key, emitted trade ids never decrease. Payloads
    without a trade id get one derived from timestamp and tx hash, and a
    fill already emitted under the same tx hash is dropped
  - Reconnects forever with exponential backoff (bounded delay) and
    resubscribes to the same trader set
  - After reconnect: resume from the last acknowledged trade id when the
    stream supports it, otherwise reconcile from Data API trade history
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import time
from collections import OrderedDict
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable

import websockets

from copybot.config import FeedConfig, OverflowPolicy
from copybot.connectors.polymarket_data import DataAPIClient
from copybot.errors import MalformedMessageError
from copybot.observability.alerts import AlertManager
from copybot.observability.logger import get_logger, short_addr
from copybot.observability.metrics import metrics

log = get_logger(__name__)

RTDS_URL = "wss://ws-live-data.polymarket.com"

_MS_THRESHOLD = 1_000_000_000_000
_ID_SLOTS = 1_000  # derived ids per millisecond
_SEEN_TX_LIMIT = 10_000


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


@dataclass(frozen=True)
class TradeEvent:
    """A normalized trade by a tracked wallet. Immutable."""
    trader_address: str
    market_id: str
    side: Side
    price: float
    size: float
    trade_id: int
    observed_at: float
    title: str = ""
    transaction_hash: str = ""
    derived_id: bool = False

    @property
    def key(self) -> tuple[str, str]:
        return (self.trader_address, self.market_id)

    @property
    def usdc_size(self) -> float:
        return self.size * self.price


class FeedState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


# ── Parsing ──────────────────────────────────────────────────────────

def _explicit_trade_id(payload: dict[str, Any]) -> int | None:
    for field_name in ("tradeId", "trade_id", "id"):
        raw = payload.get(field_name)
        if isinstance(raw, bool):
            continue
        if isinstance(raw, int):
            return raw
        if isinstance(raw, str) and raw.strip().isdigit():
            return int(raw.strip())
    return None


def derive_trade_id(observed_at: float, transaction_hash: str, market_id: str) -> int:
    """Ordered id for payloads without one: ms timestamp, then a tx-hash slot.

    RTDS activity and Data API /trades items carry no trade id, only a
    timestamp and a transaction hash. The same fill seen on both paths
    derives the same id, so the consumed-id marks dedupe it.
    """
    ts_ms = int(round(observed_at * 1000))
    digest = hashlib.sha256(f"{transaction_hash.lower()}:{market_id}".encode()).digest()
    return ts_ms * _ID_SLOTS + int.from_bytes(digest[:4], "big") % _ID_SLOTS


def _timestamp_secs(raw: Any) -> float:
    try:
        ts = float(raw)
    except (TypeError, ValueError) as e:
        raise MalformedMessageError(f"bad timestamp: {raw!r}") from e
    return ts / 1000.0 if ts > _MS_THRESHOLD else ts


def parse_trade_payload(payload: Any) -> TradeEvent:
    """Normalize one trade payload (stream or Data API shape)."""
    if not isinstance(payload, dict):
        raise MalformedMessageError("trade payload is not an object")

    trader = str(payload.get("proxyWallet") or payload.get("trader_address") or "").strip().lower()
    if not trader:
        raise MalformedMessageError("missing proxyWallet")
    market = str(payload.get("asset") or payload.get("market_id") or "").strip()
    if not market:
        raise MalformedMessageError("missing asset")

    side_raw = str(payload.get("side", "")).strip().upper()
    try:
        side = Side(side_raw)
    except ValueError as e:
        raise MalformedMessageError(f"bad side: {side_raw!r}") from e

    try:
        price = float(payload["price"])
        size = float(payload["size"])
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedMessageError(f"bad price/size: {e}") from e
    if not 0.0 <= price <= 1.0:
        raise MalformedMessageError(f"price out of range: {price}")
    if size <= 0:
        raise MalformedMessageError(f"non-positive size: {size}")

    raw_ts = payload.get("timestamp")
    tx_hash = str(payload.get("transactionHash") or "").strip()
    trade_id = _explicit_trade_id(payload)
    derived = trade_id is None
    if derived:
        if raw_ts in (None, "") or not tx_hash:
            raise MalformedMessageError("no trade id and no timestamp/transactionHash to derive one")
        observed_at = _timestamp_secs(raw_ts)
        trade_id = derive_trade_id(observed_at, tx_hash, market)
    else:
        observed_at = time.time() if raw_ts in (None, "") else _timestamp_secs(raw_ts)

    return TradeEvent(
        trader_address=trader,
        market_id=market,
        side=side,
        price=price,
        size=size,
        trade_id=trade_id,
        observed_at=observed_at,
        title=str(payload.get("title", "")),
        transaction_hash=tx_hash,
        derived_id=derived,
    )


def parse_trade_message(msg: Any, tracked: set[str] | None = None) -> TradeEvent | None:
    """Parse a raw stream message.

    Returns None for control messages, other topics and untracked traders.
    Raises MalformedMessageError for trade messages that cannot be normalized.
    """
    if isinstance(msg, (bytes, bytearray)):
        msg = msg.decode("utf-8", errors="replace")
    if isinstance(msg, str):
        if not msg.strip():
            return None
        try:
            msg = json.loads(msg)
        except ValueError as e:
            raise MalformedMessageError(f"invalid JSON: {e}") from e
    if not isinstance(msg, dict):
        raise MalformedMessageError("message is not an object")

    if msg.get("action") == "subscribed" or msg.get("status") == "subscribed":
        return None
    if msg.get("topic") != "activity" or msg.get("type") != "trades":
        return None

    payload = msg.get("payload")
    if isinstance(payload, dict):
        proxy = str(payload.get("proxyWallet", "")).lower()
        if tracked is not None and proxy and proxy not in tracked:
            return None
    event = parse_trade_payload(payload)
    if tracked is not None and event.trader_address not in tracked:
        return None
    return event


def is_too_old(event: TradeEvent, too_old_hours: float, now: float | None = None) -> bool:
    now = time.time() if now is None else now
    return (now - event.observed_at) > too_old_hours * 3600


# ── Ingestor ─────────────────────────────────────────────────────────

class TradeFeedIngestor:
    """Subscribe to tracked traders and emit TradeEvents on `events`."""

    def __init__(
        self,
        config: FeedConfig,
        data_api: DataAPIClient | None = None,
        alerts: AlertManager | None = None,
        connect: Callable[..., Any] | None = None,
    ):
        self._config = config
        self._data_api = data_api
        self._alerts = alerts
        self._connect = connect or websockets.connect
        self._traders: set[str] = set(config.tracked_traders)
        self.events: asyncio.Queue[TradeEvent] = asyncio.Queue(maxsize=config.queue_size)
        self._last_emitted: dict[tuple[str, str], int] = {}
        self._last_ms: dict[tuple[str, str], int] = {}
        self._acks: dict[str, int] = {}
        self._seen_tx: OrderedDict[tuple[str, str, str, str, float], None] = OrderedDict()
        self._running = False
        self._ws: Any = None
        self._delay = config.reconnect_base_delay_secs
        self.state = FeedState.DISCONNECTED
        self.reconnects = 0

    @property
    def traders(self) -> set[str]:
        return set(self._traders)

    # ── Control surface ──────────────────────────────────────────────

    async def add_trader(self, trader: str) -> None:
        trader = trader.lower()
        if trader in self._traders:
            return
        self._traders.add(trader)
        log.info("ingestor.trader_added", trader=short_addr(trader))
        if self._ws is not None and self.state == FeedState.CONNECTED:
            await self._ws.send(json.dumps(self._subscribe_message([trader])))

    async def remove_trader(self, trader: str) -> None:
        trader = trader.lower()
        if trader not in self._traders:
            return
        self._traders.discard(trader)
        log.info("ingestor.trader_removed", trader=short_addr(trader))
        if self._ws is not None and self.state == FeedState.CONNECTED:
            msg = self._subscribe_message([trader])
            msg["action"] = "unsubscribe"
            await self._ws.send(json.dumps(msg))

    def ack(self, trader: str, trade_id: int) -> None:
        """Record that the engine has consumed `trade_id` for `trader`."""
        if trade_id > self._acks.get(trader, 0):
            self._acks[trader] = trade_id

    def seed_acks(self, acks: dict[str, int]) -> None:
        for trader, trade_id in acks.items():
            self.ack(trader, trade_id)

    def last_ack(self, trader: str) -> int:
        return self._acks.get(trader, 0)

    # ── Emission ─────────────────────────────────────────────────────

    async def emit(self, event: TradeEvent) -> bool:
        """Put an event on the output channel. False if dropped."""
        if event.trader_address not in self._traders:
            return False
        if is_too_old(event, self._config.too_old_hours):
            metrics.incr("feed.too_old")
            log.debug("ingestor.too_old", trader=short_addr(event.trader_address), trade_id=event.trade_id)
            return False

        fingerprint = self._fingerprint(event)
        if fingerprint is not None and fingerprint in self._seen_tx:
            metrics.incr("feed.duplicate_tx")
            log.debug("ingestor.duplicate_tx", trader=short_addr(event.trader_address), tx=event.transaction_hash[:10])
            return False

        last = self._last_emitted.get(event.key)
        if (
            last is not None
            and event.derived_id
            and event.trade_id <= last
            and event.trade_id // _ID_SLOTS == self._last_ms.get(event.key)
        ):
            # Same millisecond as the previous fill: keep arrival order
            event = replace(event, trade_id=last + 1)
        if last is not None and event.trade_id < last:
            metrics.incr("feed.out_of_order")
            log.warning(
                "ingestor.out_of_order_dropped",
                trader=short_addr(event.trader_address),
                market_id=event.market_id,
                trade_id=event.trade_id,
                last_emitted=last,
            )
            return False
        self._last_emitted[event.key] = event.trade_id
        if event.derived_id:
            self._last_ms[event.key] = int(round(event.observed_at * 1000))

        if self._config.overflow_policy == OverflowPolicy.DROP_OLDEST and self.events.full():
            dropped = self.events.get_nowait()
            metrics.incr("feed.overflow_dropped")
            log.warning("ingestor.overflow_dropped", trade_id=dropped.trade_id, market_id=dropped.market_id)
        await self.events.put(event)
        if fingerprint is not None:
            self._seen_tx[fingerprint] = None
            if len(self._seen_tx) > _SEEN_TX_LIMIT:
                self._seen_tx.popitem(last=False)
        metrics.incr("feed.events")
        return True

    @staticmethod
    def _fingerprint(event: TradeEvent) -> tuple[str, str, str, str, float] | None:
        if not event.transaction_hash:
            return None
        return (
            event.trader_address,
            event.transaction_hash.lower(),
            event.market_id,
            event.side.value,
            event.size,
        )

    async def handle_raw(self, raw: Any) -> TradeEvent | None:
        try:
            event = parse_trade_message(raw, self._traders)
        except MalformedMessageError as e:
            metrics.incr("feed.malformed")
            log.warning("ingestor.malformed_dropped", error=str(e), raw=str(raw)[:200])
            return None
        if event is None:
            return None
        return event if await self.emit(event) else None

    # ── Reconciliation ───────────────────────────────────────────────

    async def reconcile(self) -> int:
        """Emit history trades newer than the last ack, per trader, in id order."""
        if self._data_api is None:
            return 0
        emitted = 0
        for trader in sorted(self._traders):
            since = self.last_ack(trader)
            if since <= 0:
                continue
            try:
                items = await self._data_api.get_trades(trader, limit=self._config.reconcile_limit)
            except Exception as e:
                log.error("ingestor.reconcile_failed", trader=short_addr(trader), error=str(e))
                if self._alerts is not None:
                    await self._alerts.retries_exhausted(
                        component="ingestor.reconcile",
                        key=trader,
                        reason_code=type(e).__name__,
                        attempts=3,
                    )
                continue

            events: list[TradeEvent] = []
            for item in items:
                try:
                    event = parse_trade_payload({"proxyWallet": trader, **item})
                except MalformedMessageError as e:
                    metrics.incr("feed.malformed")
                    log.warning("ingestor.malformed_dropped", error=str(e), source="reconcile")
                    continue
                if event.trade_id > since:
                    events.append(event)

            for event in sorted(events, key=lambda e: e.trade_id):
                if await self.emit(event):
                    emitted += 1
            log.info("ingestor.reconciled", trader=short_addr(trader), since=since, emitted=len(events))
        return emitted

    # ── Connection loop ──────────────────────────────────────────────

    def _subscribe_message(self, traders: list[str]) -> dict[str, Any]:
        subscriptions = []
        for trader in traders:
            sub: dict[str, Any] = {"topic": "activity", "type": "trades"}
            filters: dict[str, Any] = {"user": trader}
            if self._config.resume_supported and self.last_ack(trader) > 0:
                filters["after_trade_id"] = self.last_ack(trader)
            sub["filters"] = json.dumps(filters)
            subscriptions.append(sub)
        return {"action": "subscribe", "subscriptions": subscriptions}

    async def _set_state(self, state: FeedState, detail: str = "") -> None:
        if state == self.state:
            return
        self.state = state
        metrics.gauge("feed.connected", 1.0 if state == FeedState.CONNECTED else 0.0)
        if self._alerts is not None:
            await self._alerts.connectivity_changed(
                state.value, detail, traders=len(self._traders), reconnects=self.reconnects,
            )

    async def run(self) -> None:
        """Connect and stream until stop(). Never gives up on reconnecting."""
        self._running = True
        first = True
        while self._running:
            try:
                await self._set_state(FeedState.CONNECTING, self._config.ws_url)
                await self._session(reconnect=not first)
                if self._running:
                    raise ConnectionError("stream closed by server")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if not self._running:
                    break
                self._ws = None
                await self._set_state(FeedState.DISCONNECTED, str(e))
                log.warning("ingestor.disconnected", error=str(e), reconnect_delay=self._delay)
                await asyncio.sleep(self._delay)
                self._delay = min(self._delay * 2, self._config.reconnect_max_delay_secs)
                self.reconnects += 1
                metrics.incr("feed.reconnects")
            first = False
        self._ws = None
        await self._set_state(FeedState.DISCONNECTED, "stopped")

    async def _session(self, reconnect: bool) -> None:
        async with self._connect(self._config.ws_url) as ws:
            self._ws = ws
            self._delay = self._config.reconnect_base_delay_secs
            await ws.send(json.dumps(self._subscribe_message(sorted(self._traders))))
            await self._set_state(FeedState.CONNECTED)
            log.info("ingestor.subscribed", traders=len(self._traders), reconnect=reconnect)

            if not self._config.resume_supported:
                await self.reconcile()

            async for raw in ws:
                if not self._running:
                    break
                await self.handle_raw(raw)

    async def stop(self) -> None:
        self._running = False
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                log.debug("ingestor.close_error", error=str(e))
