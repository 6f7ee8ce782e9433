"""Polymarket Data API connector.

Used by the trade feed for reconciliation after a reconnect when the
stream cannot resume from a trade id.

Base URL: https://data-api.polymarket.com
Endpoints:
  - GET /trades?user={address}&limit=100
"""

from __future__ import annotations

from typing import Any

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential

from copybot.observability.logger import get_logger

log = get_logger(__name__)

DATA_API_BASE = "https://data-api.polymarket.com"

_TIMEOUT = httpx.Timeout(15.0, connect=10.0)
_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "polymarket-copybot/1.0",
}


class DataAPIClient:
    """Async client for Polymarket's Data API (trade history)."""

    def __init__(
        self,
        base_url: str = DATA_API_BASE,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base = base_url.rstrip("/")
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._base,
                timeout=_TIMEOUT,
                headers=_HEADERS,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=8), reraise=True)
    async def get_trades(
        self,
        address: str,
        *,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Fetch recent trades for a wallet, newest first, as raw payloads."""
        client = await self._ensure_client()
        params: dict[str, Any] = {
            "user": address.lower(),
            "limit": limit,
            "offset": offset,
        }
        resp = await client.get("/trades", params=params)
        resp.raise_for_status()
        data = resp.json()

        items = data if isinstance(data, list) else data.get("trades", data.get("data", []))
        trades = [item for item in items if isinstance(item, dict)]
        log.debug(
            "data_api.trades_fetched",
            address=address[:10],
            count=len(trades),
        )
        return trades
