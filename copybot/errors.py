"""Error taxonomy for the copy engine.

  - Transport errors (feed disconnect, venue timeout): recovered locally
  - Data errors (malformed message, duplicate trade): dropped and logged
  - Venue rejections: permanent, surfaced as a FAILED CopyOrder
  - Wallet / signing errors: permanent, pause the owning pipeline

Transient vs permanent is decided by venue error *code*, never message text.
"""

from __future__ import annotations


# Venue / relayer codes that a retry can fix
TRANSIENT_CODES = frozenset({
    "TIMEOUT",
    "RATE_LIMITED",
    "NONCE_CONFLICT",
    "SERVICE_UNAVAILABLE",
    "CONFIRMATION_TIMEOUT",
    "FILL_TIMEOUT",
    "NETWORK_ERROR",
    "RELAY_ABANDONED",
})

# Codes a retry can never fix
PERMANENT_CODES = frozenset({
    "INSUFFICIENT_BALANCE",
    "INSUFFICIENT_ALLOWANCE",
    "INVALID_ORDER",
    "INVALID_PRICE",
    "INVALID_SIZE",
    "MARKET_CLOSED",
    "ORDER_REJECTED",
    "RELAY_FAILED",
    "MAX_RETRIES",
})


class CopyBotError(Exception):
    """Base class for all engine errors."""


class FeedError(CopyBotError):
    """Trade feed transport failure."""


class MalformedMessageError(CopyBotError):
    """A feed message that cannot be normalised into a TradeEvent."""


class VenueError(CopyBotError):
    """Error returned by (or while talking to) the trading venue."""

    retryable = False

    def __init__(self, code: str, message: str = ""):
        self.code = code
        self.message = message or code
        super().__init__(f"{code}: {self.message}")


class TransientVenueError(VenueError):
    retryable = True


class PermanentVenueError(VenueError):
    retryable = False


class ConfirmationTimeout(TransientVenueError):
    """Safe relay tx was accepted but not confirmed in time."""

    def __init__(self, relay_tx_id: str, waited_secs: float):
        self.relay_tx_id = relay_tx_id
        self.waited_secs = waited_secs
        super().__init__(
            "CONFIRMATION_TIMEOUT",
            f"relay tx {relay_tx_id} unconfirmed after {waited_secs:.1f}s",
        )


class WalletError(CopyBotError):
    """Signing / wallet configuration error. Needs operator intervention."""

    def __init__(self, code: str, message: str = ""):
        self.code = code
        self.message = message or code
        super().__init__(f"{code}: {self.message}")


def classify_venue_error(code: str, message: str = "") -> VenueError:
    """Build the right VenueError subclass for a venue error code.

    Unknown codes are treated as permanent so a bad intent is never
    hammered against the venue.
    """
    normalised = (code or "").strip().upper()
    if normalised in TRANSIENT_CODES:
        return TransientVenueError(normalised, message)
    return PermanentVenueError(normalised or "UNKNOWN", message)


def is_retryable(err: BaseException) -> bool:
    return isinstance(err, VenueError) and err.retryable
