"""Tests for venue / Data API connectors and error classification."""

from __future__ import annotations

import json

import httpx
import pytest

from copybot.config import WalletConfig
from copybot.connectors.polymarket_clob import (
    RelayState,
    VenueClient,
    VenueOrderState,
    parse_order_state,
    parse_relay_state,
)
from copybot.connectors.polymarket_data import DataAPIClient
from copybot.errors import (
    ConfirmationTimeout,
    PermanentVenueError,
    TransientVenueError,
    VenueError,
    classify_venue_error,
    is_retryable,
)


def _client(handler) -> VenueClient:
    return VenueClient(WalletConfig(), transport=httpx.MockTransport(handler))


class TestClassification:
    @pytest.mark.parametrize("code", ["TIMEOUT", "RATE_LIMITED", "NONCE_CONFLICT", "rate_limited"])
    def test_transient(self, code):
        err = classify_venue_error(code)
        assert isinstance(err, TransientVenueError)
        assert is_retryable(err)

    @pytest.mark.parametrize("code", ["INSUFFICIENT_BALANCE", "INSUFFICIENT_ALLOWANCE", "INVALID_ORDER"])
    def test_permanent(self, code):
        err = classify_venue_error(code, "rate limited please retry")
        assert isinstance(err, PermanentVenueError)
        assert not is_retryable(err)

    def test_unknown_code_is_permanent(self):
        err = classify_venue_error("SOMETHING_NEW")
        assert not err.retryable
        assert classify_venue_error("").code == "UNKNOWN"

    def test_confirmation_timeout_is_transient(self):
        err = ConfirmationTimeout("relay-1", 61.0)
        assert is_retryable(err)
        assert err.code == "CONFIRMATION_TIMEOUT"
        assert err.relay_tx_id == "relay-1"

    def test_non_venue_errors_not_retried(self):
        assert not is_retryable(ValueError("boom"))

    def test_state_parsing(self):
        assert parse_order_state("matched") == VenueOrderState.FILLED
        assert parse_order_state("LIVE") == VenueOrderState.PENDING
        assert parse_order_state("CANCELED") == VenueOrderState.REJECTED
        assert parse_relay_state("STATE_MINED") == RelayState.PENDING
        assert parse_relay_state("STATE_CONFIRMED") == RelayState.CONFIRMED
        assert parse_relay_state("STATE_FAILED") == RelayState.FAILED
        assert parse_relay_state("STATE_INVALID") == RelayState.ABANDONED


class TestPostOrder:
    @pytest.mark.asyncio
    async def test_matched(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/order"
            assert json.loads(request.content)["clientOrderId"] == "c-1"
            return httpx.Response(200, json={"success": True, "orderID": "0xabc", "status": "matched", "price": "0.51"})

        client = _client(handler)
        resp = await client.post_order({"clientOrderId": "c-1"})
        assert resp.order_id == "0xabc"
        assert resp.status == VenueOrderState.FILLED
        assert resp.fill_price == 0.51
        await client.close()

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        client = _client(lambda request: httpx.Response(429, text="Too Many Requests"))
        with pytest.raises(TransientVenueError) as exc:
            await client.post_order({})
        assert exc.value.code == "RATE_LIMITED"

    @pytest.mark.asyncio
    async def test_server_error(self):
        client = _client(lambda request: httpx.Response(503))
        with pytest.raises(TransientVenueError) as exc:
            await client.post_order({})
        assert exc.value.code == "SERVICE_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_rejection_by_code(self):
        client = _client(lambda request: httpx.Response(
            400, json={"errorCode": "INSUFFICIENT_ALLOWANCE", "error": "not enough allowance"},
        ))
        with pytest.raises(PermanentVenueError) as exc:
            await client.post_order({})
        assert exc.value.code == "INSUFFICIENT_ALLOWANCE"

    @pytest.mark.asyncio
    async def test_rejection_without_code(self):
        client = _client(lambda request: httpx.Response(400, json={"error": "bad"}))
        with pytest.raises(PermanentVenueError) as exc:
            await client.post_order({})
        assert exc.value.code == "INVALID_ORDER"

    @pytest.mark.asyncio
    async def test_unsuccessful_body(self):
        client = _client(lambda request: httpx.Response(
            200, json={"success": False, "errorCode": "NONCE_CONFLICT", "errorMsg": "nonce"},
        ))
        with pytest.raises(TransientVenueError) as exc:
            await client.post_order({})
        assert exc.value.code == "NONCE_CONFLICT"

    @pytest.mark.asyncio
    async def test_missing_order_id(self):
        client = _client(lambda request: httpx.Response(200, json={"success": True}))
        with pytest.raises(VenueError) as exc:
            await client.post_order({})
        assert exc.value.code == "INVALID_ORDER"

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = _client(handler)
        with pytest.raises(TransientVenueError) as exc:
            await client.post_order({})
        assert exc.value.code == "TIMEOUT"


class TestRelayer:
    @pytest.mark.asyncio
    async def test_submit_and_poll(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/submit":
                return httpx.Response(200, json={"transactionID": "tx-1", "state": "STATE_NEW"})
            if request.url.path == "/transaction":
                assert request.url.params["id"] == "tx-1"
                return httpx.Response(200, json=[{"state": "STATE_CONFIRMED", "transactionHash": "0xfeed"}])
            if request.url.path == "/nonce":
                return httpx.Response(200, json={"nonce": "12"})
            return httpx.Response(404)

        client = _client(handler)
        assert await client.get_relay_nonce("0xabc") == 12
        tx_id = await client.submit_relayed({"type": "SAFE"})
        assert tx_id == "tx-1"
        status = await client.get_relay_status(tx_id)
        assert status.state == RelayState.CONFIRMED
        assert status.tx_hash == "0xfeed"
        await client.close()

    @pytest.mark.asyncio
    async def test_submit_without_id(self):
        client = _client(lambda request: httpx.Response(200, json={}))
        with pytest.raises(PermanentVenueError) as exc:
            await client.submit_relayed({})
        assert exc.value.code == "RELAY_FAILED"

    @pytest.mark.asyncio
    async def test_order_status(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/data/order/0xabc"
            return httpx.Response(200, json={"status": "LIVE"})

        client = _client(handler)
        resp = await client.get_order_status("0xabc")
        assert resp.status == VenueOrderState.PENDING


class TestDataAPI:
    @pytest.mark.asyncio
    async def test_get_trades(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/trades"
            assert request.url.params["user"] == "0xabc"
            return httpx.Response(200, json=[{"id": 1}, {"id": 2}, "junk"])

        client = DataAPIClient("https://data-api.test", transport=httpx.MockTransport(handler))
        trades = await client.get_trades("0xABC", limit=10)
        assert [t["id"] for t in trades] == [1, 2]
        await client.close()
