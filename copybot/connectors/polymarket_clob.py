"""Polymarket venue connector — CLOB orders and the Safe relayer.

Handles:
  - Signed order submission (EOA path)
  - Order status polling
  - Relayed Safe transaction submission and status polling
  - Mapping HTTP failures and venue error codes onto VenueError

Only venue error *codes* decide transient vs permanent.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from copybot.config import WalletConfig
from copybot.errors import TransientVenueError, classify_venue_error
from copybot.observability.logger import get_logger

log = get_logger(__name__)

CLOB_BASE = "https://clob.polymarket.com"
RELAYER_BASE = "https://relayer-v2.polymarket.com"

_HEADERS = {
    "Accept": "application/json",
    "Content-Type": "application/json",
}


# ── Data Models ──────────────────────────────────────────────────────

class VenueOrderState(str, Enum):
    PENDING = "PENDING"
    FILLED = "FILLED"
    REJECTED = "REJECTED"


class RelayState(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    ABANDONED = "ABANDONED"


@dataclass
class VenueResponse:
    """Abstract venue answer for a submit or a status poll."""
    order_id: str
    status: VenueOrderState
    fill_price: float = 0.0
    reason_code: str = ""
    relay_tx_id: str = ""
    tx_hash: str = ""
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class RelayStatus:
    relay_tx_id: str
    state: RelayState
    tx_hash: str = ""
    fill_price: float = 0.0
    raw: dict[str, Any] = field(default_factory=dict)


_ORDER_STATES = {
    "MATCHED": VenueOrderState.FILLED,
    "FILLED": VenueOrderState.FILLED,
    "MINED": VenueOrderState.FILLED,
    "CONFIRMED": VenueOrderState.FILLED,
    "CANCELED": VenueOrderState.REJECTED,
    "CANCELLED": VenueOrderState.REJECTED,
    "REJECTED": VenueOrderState.REJECTED,
    "FAILED": VenueOrderState.REJECTED,
}

_RELAY_STATES = {
    "STATE_CONFIRMED": RelayState.CONFIRMED,
    "STATE_FAILED": RelayState.FAILED,
    "STATE_INVALID": RelayState.ABANDONED,
}


def parse_order_state(raw: str) -> VenueOrderState:
    """LIVE / DELAYED / UNMATCHED and anything unknown stay PENDING."""
    return _ORDER_STATES.get((raw or "").upper(), VenueOrderState.PENDING)


def parse_relay_state(raw: str) -> RelayState:
    """STATE_NEW / STATE_EXECUTED / STATE_MINED are still in flight."""
    return _RELAY_STATES.get((raw or "").upper(), RelayState.PENDING)


def _error_code(body: Any) -> str:
    if isinstance(body, dict):
        return str(body.get("errorCode") or body.get("error_code") or body.get("code") or "")
    return ""


# ── Client ───────────────────────────────────────────────────────────

class VenueClient:
    """Async client for CLOB order placement and the Safe relayer."""

    def __init__(
        self,
        config: WalletConfig | None = None,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        config = config or WalletConfig()
        self._clob = httpx.AsyncClient(
            base_url=config.clob_url.rstrip("/"),
            timeout=timeout,
            headers=_HEADERS,
            transport=transport,
        )
        self._relayer = httpx.AsyncClient(
            base_url=config.relayer_url.rstrip("/"),
            timeout=timeout,
            headers=_HEADERS,
            transport=transport,
        )

    async def close(self) -> None:
        await self._clob.aclose()
        await self._relayer.aclose()

    async def _request(
        self, client: httpx.AsyncClient, method: str, path: str, **kwargs: Any
    ) -> Any:
        try:
            resp = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientVenueError("TIMEOUT", str(e)) from e
        except httpx.TransportError as e:
            raise TransientVenueError("NETWORK_ERROR", str(e)) from e

        if resp.status_code == 429:
            raise TransientVenueError("RATE_LIMITED", resp.text[:200])
        if resp.status_code >= 500:
            raise TransientVenueError("SERVICE_UNAVAILABLE", f"HTTP {resp.status_code}")

        try:
            body = resp.json()
        except ValueError:
            body = {}

        if resp.status_code >= 400:
            code = _error_code(body) or "INVALID_ORDER"
            raise classify_venue_error(code, str(body)[:200])
        return body

    @retry(
        retry=retry_if_exception_type(TransientVenueError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=0.5, max=5),
        reraise=True,
    )
    async def _get(self, client: httpx.AsyncClient, path: str, params: dict[str, Any]) -> Any:
        return await self._request(client, "GET", path, params=params)

    # ── CLOB ─────────────────────────────────────────────────────────

    async def post_order(self, payload: dict[str, Any]) -> VenueResponse:
        """Submit one signed order. Never retried here."""
        body = await self._request(self._clob, "POST", "/order", json=payload)
        if not isinstance(body, dict):
            body = {}
        if body.get("success") is False:
            raise classify_venue_error(_error_code(body) or "ORDER_REJECTED", str(body.get("errorMsg", ""))[:200])

        order_id = str(body.get("orderID") or body.get("orderId") or body.get("id") or "")
        if not order_id:
            raise classify_venue_error("INVALID_ORDER", "venue response missing order id")
        resp = VenueResponse(
            order_id=order_id,
            status=parse_order_state(str(body.get("status", ""))),
            fill_price=float(body.get("price") or 0.0),
            raw=body,
        )
        log.info("venue.order_posted", order_id=order_id[:10], status=resp.status.value)
        return resp

    async def get_order_status(self, order_id: str) -> VenueResponse:
        body = await self._get(self._clob, f"/data/order/{order_id}", params={})
        if not isinstance(body, dict):
            body = {}
        state = parse_order_state(str(body.get("status", "")))
        return VenueResponse(
            order_id=order_id,
            status=state,
            fill_price=float(body.get("price") or body.get("avgPrice") or 0.0),
            reason_code=_error_code(body) if state == VenueOrderState.REJECTED else "",
            raw=body,
        )

    # ── Relayer (Safe wallets) ───────────────────────────────────────

    async def get_relay_nonce(self, address: str) -> int:
        body = await self._get(self._relayer, "/nonce", params={"address": address, "type": "SAFE"})
        try:
            return int(body.get("nonce", 0))
        except (AttributeError, TypeError, ValueError) as e:
            raise TransientVenueError("SERVICE_UNAVAILABLE", f"bad relayer nonce: {body}") from e

    async def submit_relayed(self, request: dict[str, Any]) -> str:
        """Submit a signed Safe transaction. Returns the relay tx id."""
        body = await self._request(self._relayer, "POST", "/submit", json=request)
        if not isinstance(body, dict):
            body = {}
        tx_id = str(body.get("transactionID") or "").strip()
        if not tx_id:
            raise classify_venue_error("RELAY_FAILED", f"relayer response missing transactionID: {body}")
        log.info(
            "venue.relay_submitted",
            relay_tx_id=tx_id,
            tx_hash=str(body.get("transactionHash", ""))[:12],
        )
        return tx_id

    async def get_relay_status(self, relay_tx_id: str) -> RelayStatus:
        body = await self._get(self._relayer, "/transaction", params={"id": relay_tx_id})
        item = body[0] if isinstance(body, list) and body else body
        if not isinstance(item, dict):
            item = {}
        return RelayStatus(
            relay_tx_id=relay_tx_id,
            state=parse_relay_state(str(item.get("state", ""))),
            tx_hash=str(item.get("transactionHash", "")),
            fill_price=float(item.get("price") or 0.0),
            raw=item,
        )
