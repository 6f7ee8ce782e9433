"""Wallet adapter — sign and submit a CopyOrder for the operator wallet.

EOA:  EIP-712 signed order, one venue submission.
Safe: SafeTx meta-transaction signed by the owner key, submitted to the
      relayer, then polled until confirmed on-chain. Confirmation polling
      has its own timeout; running out raises ConfirmationTimeout
      (transient) carrying the relay tx id so the next attempt resumes
      polling the same transaction instead of signing a new one.

A known venue order id / relay tx id always means "poll, don't re-sign".
Only an ABANDONED relay allows a fresh signature.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import time
from dataclasses import dataclass
from typing import Any, Callable

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_account.signers.local import LocalAccount

from copybot.config import WalletConfig, WalletType
from copybot.connectors.polymarket_clob import (
    RelayState,
    VenueClient,
    VenueOrderState,
    VenueResponse,
)
from copybot.errors import (
    ConfirmationTimeout,
    PermanentVenueError,
    TransientVenueError,
    WalletError,
)
from copybot.execution.order_builder import CopyOrder
from copybot.observability.logger import get_logger

log = get_logger(__name__)

CTF_EXCHANGE = "0x4bfb41d5b3570defd03c39a9a4d8de6bd8b8982e"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
USDC_DECIMALS = 6

_SIDE_CODES = {"BUY": 0, "SELL": 1}
_SIGNATURE_TYPES = {WalletType.EOA: 0, WalletType.SAFE: 2}

_ORDER_FIELDS = [
    {"name": "salt", "type": "uint256"},
    {"name": "maker", "type": "address"},
    {"name": "signer", "type": "address"},
    {"name": "taker", "type": "address"},
    {"name": "tokenId", "type": "uint256"},
    {"name": "makerAmount", "type": "uint256"},
    {"name": "takerAmount", "type": "uint256"},
    {"name": "expiration", "type": "uint256"},
    {"name": "nonce", "type": "uint256"},
    {"name": "feeRateBps", "type": "uint256"},
    {"name": "side", "type": "uint8"},
    {"name": "signatureType", "type": "uint8"},
]

_SAFE_TX_FIELDS = [
    {"name": "to", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "data", "type": "bytes"},
    {"name": "operation", "type": "uint8"},
    {"name": "safeTxGas", "type": "uint256"},
    {"name": "baseGas", "type": "uint256"},
    {"name": "gasPrice", "type": "uint256"},
    {"name": "gasToken", "type": "address"},
    {"name": "refundReceiver", "type": "address"},
    {"name": "nonce", "type": "uint256"},
]


@dataclass(frozen=True)
class WalletContext:
    """Operator wallet, derived from config. Never mutated by the engine."""
    wallet_type: WalletType
    address: str
    allowance_ok: bool = True

    @classmethod
    def from_config(cls, cfg: WalletConfig) -> WalletContext:
        return cls(
            wallet_type=cfg.wallet_type,
            address=cfg.address.lower(),
            allowance_ok=cfg.allowance_ok,
        )

    @property
    def key(self) -> str:
        return f"{self.wallet_type.value}:{self.address}"


def _to_units(amount: float) -> int:
    return int(round(amount * 10 ** USDC_DECIMALS))


def _salt(order_id: str) -> int:
    # Same order id -> same salt -> same signed order on re-sign
    return int.from_bytes(hashlib.sha256(order_id.encode()).digest()[:4], "big")


def _hex_signature(signed: Any) -> str:
    sig = signed.signature.hex()
    return sig if sig.startswith("0x") else "0x" + sig


class WalletAdapter:
    """Sign + submit CopyOrders through the EOA or Safe path."""

    def __init__(
        self,
        venue: VenueClient,
        config: WalletConfig,
        private_key: str = "",
        clock: Callable[[], float] = time.monotonic,
    ):
        self._venue = venue
        self._config = config
        self._private_key = private_key
        self._account: LocalAccount | None = None
        self._clock = clock

    # ── Checks ───────────────────────────────────────────────────────

    def _signer(self) -> LocalAccount:
        if self._account is not None:
            return self._account
        if not self._private_key:
            raise WalletError("NO_SIGNER", "PRIVATE_KEY is not configured")
        try:
            self._account = Account.from_key(self._private_key)
        except ValueError as e:
            raise WalletError("INVALID_KEY", "PRIVATE_KEY is not a valid secp256k1 key") from e
        return self._account

    def preflight(self, ctx: WalletContext) -> None:
        """Fail fast, before any signing, on wallet misconfiguration."""
        if not ctx.allowance_ok:
            raise WalletError("ALLOWANCE_NOT_SET", f"token allowance not set for {ctx.address}")
        if ctx.wallet_type == WalletType.SAFE and not ctx.address:
            raise WalletError("NO_SAFE_ADDRESS", "Safe wallet requires PROXY_WALLET")
        self._signer()

    # ── Entry point ──────────────────────────────────────────────────

    async def prepare_and_submit(self, order: CopyOrder, ctx: WalletContext) -> VenueResponse:
        self.preflight(ctx)
        match ctx.wallet_type:
            case WalletType.EOA:
                return await self._submit_eoa(order, ctx)
            case WalletType.SAFE:
                return await self._submit_safe(order, ctx)
        raise WalletError("UNSUPPORTED_WALLET", str(ctx.wallet_type))

    # ── EOA ──────────────────────────────────────────────────────────

    def build_order_typed_data(self, order: CopyOrder, ctx: WalletContext) -> dict[str, Any]:
        try:
            token_id = int(order.market_id)
        except ValueError as e:
            raise PermanentVenueError("INVALID_ORDER", f"market id {order.market_id} is not a token id") from e

        signer = self._signer()
        notional = _to_units(order.size * order.limit_price)
        shares = _to_units(order.size)
        maker_amount, taker_amount = (notional, shares) if order.side == "BUY" else (shares, notional)
        maker = ctx.address or signer.address.lower()

        return {
            "types": {
                "EIP712Domain": [
                    {"name": "name", "type": "string"},
                    {"name": "version", "type": "string"},
                    {"name": "chainId", "type": "uint256"},
                    {"name": "verifyingContract", "type": "address"},
                ],
                "Order": _ORDER_FIELDS,
            },
            "primaryType": "Order",
            "domain": {
                "name": "Polymarket CTF Exchange",
                "version": "1",
                "chainId": int(self._config.chain_id),
                "verifyingContract": CTF_EXCHANGE,
            },
            "message": {
                "salt": _salt(order.order_id),
                "maker": maker,
                "signer": signer.address.lower(),
                "taker": ZERO_ADDRESS,
                "tokenId": token_id,
                "makerAmount": maker_amount,
                "takerAmount": taker_amount,
                "expiration": 0,
                "nonce": 0,
                "feeRateBps": 0,
                "side": _SIDE_CODES[order.side],
                "signatureType": _SIGNATURE_TYPES[ctx.wallet_type],
            },
        }

    def sign_order(self, order: CopyOrder, ctx: WalletContext) -> dict[str, Any]:
        typed = self.build_order_typed_data(order, ctx)
        signed = self._signer().sign_message(encode_typed_data(full_message=typed))
        message = {k: str(v) for k, v in typed["message"].items()}
        message["side"] = order.side
        message["signature"] = _hex_signature(signed)
        return {
            "order": message,
            "owner": ctx.address,
            "orderType": "FOK",
            "clientOrderId": order.order_id,
        }

    async def _submit_eoa(self, order: CopyOrder, ctx: WalletContext) -> VenueResponse:
        if order.venue_order_id:
            log.info("wallet.repoll_order", order_id=order.order_id[:8], venue_order_id=order.venue_order_id[:10])
            return await self._venue.get_order_status(order.venue_order_id)

        payload = self.sign_order(order, ctx)
        resp = await self._venue.post_order(payload)
        order.venue_order_id = resp.order_id
        log.info(
            "wallet.eoa_submitted",
            order_id=order.order_id[:8],
            venue_order_id=resp.order_id[:10],
            status=resp.status.value,
        )
        return resp

    # ── Safe ─────────────────────────────────────────────────────────

    async def build_relay_request(self, order: CopyOrder, ctx: WalletContext) -> dict[str, Any]:
        signer = self._signer()
        order_typed = self.build_order_typed_data(order, ctx)
        # The Safe tx commits to the order's EIP-712 struct hash
        struct_hash = bytes(encode_typed_data(full_message=order_typed).body)
        commitment = "0x" + struct_hash.hex()
        nonce = await self._venue.get_relay_nonce(signer.address.lower())

        safe_tx = {
            "types": {
                "EIP712Domain": [
                    {"name": "chainId", "type": "uint256"},
                    {"name": "verifyingContract", "type": "address"},
                ],
                "SafeTx": _SAFE_TX_FIELDS,
            },
            "primaryType": "SafeTx",
            "domain": {
                "chainId": int(self._config.chain_id),
                "verifyingContract": ctx.address,
            },
            "message": {
                "to": CTF_EXCHANGE,
                "value": 0,
                "data": struct_hash,
                "operation": 0,
                "safeTxGas": 0,
                "baseGas": 0,
                "gasPrice": 0,
                "gasToken": ZERO_ADDRESS,
                "refundReceiver": ZERO_ADDRESS,
                "nonce": nonce,
            },
        }
        signed = signer.sign_message(encode_typed_data(full_message=safe_tx))
        return {
            "type": "SAFE",
            "from": signer.address.lower(),
            "to": CTF_EXCHANGE,
            "proxyWallet": ctx.address,
            "value": "0",
            "data": commitment,
            "nonce": str(nonce),
            "signature": _hex_signature(signed),
            "signatureParams": {
                "gasPrice": "0",
                "operation": "0",
                "safeTxnGas": "0",
                "baseGas": "0",
                "gasToken": ZERO_ADDRESS,
                "refundReceiver": ZERO_ADDRESS,
            },
            "metadata": json.dumps({"clientOrderId": order.order_id}),
        }

    async def _submit_safe(self, order: CopyOrder, ctx: WalletContext) -> VenueResponse:
        if order.relay_tx_id:
            log.info("wallet.resume_confirmation", order_id=order.order_id[:8], relay_tx_id=order.relay_tx_id)
        else:
            request = await self.build_relay_request(order, ctx)
            order.relay_tx_id = await self._venue.submit_relayed(request)
            log.info("wallet.safe_relayed", order_id=order.order_id[:8], relay_tx_id=order.relay_tx_id)
        return await self._await_confirmation(order)

    async def _await_confirmation(self, order: CopyOrder) -> VenueResponse:
        interval = self._config.confirmation_poll_interval_secs
        timeout = self._config.confirmation_timeout_secs
        started = self._clock()

        while True:
            status = await self._venue.get_relay_status(order.relay_tx_id)

            if status.state == RelayState.CONFIRMED:
                log.info(
                    "wallet.safe_confirmed",
                    order_id=order.order_id[:8],
                    relay_tx_id=order.relay_tx_id,
                    tx_hash=status.tx_hash[:12],
                )
                return VenueResponse(
                    order_id=order.venue_order_id or order.relay_tx_id,
                    status=VenueOrderState.FILLED,
                    fill_price=status.fill_price or order.expected_price,
                    relay_tx_id=order.relay_tx_id,
                    tx_hash=status.tx_hash,
                    raw=status.raw,
                )
            if status.state == RelayState.FAILED:
                raise PermanentVenueError("RELAY_FAILED", f"relay tx {order.relay_tx_id} failed on-chain")
            if status.state == RelayState.ABANDONED:
                abandoned = order.relay_tx_id
                order.relay_tx_id = ""
                raise TransientVenueError("RELAY_ABANDONED", f"relay tx {abandoned} abandoned; will re-sign")

            waited = self._clock() - started
            if waited >= timeout:
                log.warning(
                    "wallet.confirmation_timeout",
                    order_id=order.order_id[:8],
                    relay_tx_id=order.relay_tx_id,
                    waited_secs=round(waited, 2),
                )
                raise ConfirmationTimeout(order.relay_tx_id, waited)
            await asyncio.sleep(interval)
