"""Structured logging with structlog.

Security: private keys, order signatures and API credentials are NEVER
logged. Besides the named fields below, any string value shaped like a
raw secp256k1 key (0x + 64 hex) is masked wherever it appears. Tx hashes
have the same shape, so log them truncated.

Pipeline workers bind their (trader, market) key with key_context(), so
every line emitted while processing an event carries the key without
threading it through each call.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterator

import structlog

if TYPE_CHECKING:
    from copybot.config import ObservabilityConfig

_CONFIGURED = False
_HANDLERS: list[logging.Handler] = []

_REDACTED = "***REDACTED***"

# Fields that must NEVER appear in logs
_REDACTED_FIELDS = frozenset({
    "private_key", "secret", "password", "api_secret",
    "passphrase", "api_passphrase", "token", "mnemonic",
    "signature", "telegram_bot_token",
})

_KEY_SHAPED = re.compile(r"0x[0-9a-fA-F]{64}(?![0-9a-fA-F])")


def _redact_processor(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    """Mask sensitive fields and key-shaped values."""
    for key, value in list(event_dict.items()):
        if key.lower() in _REDACTED_FIELDS:
            event_dict[key] = _REDACTED
        elif isinstance(value, str) and _KEY_SHAPED.search(value):
            event_dict[key] = _KEY_SHAPED.sub(_REDACTED, value)
    return event_dict


def configure_logging(
    level: str = "INFO",
    fmt: str = "json",
    log_file: str | None = None,
    force: bool = False,
) -> None:
    """Configure structured logging for the application.

    Loggers are created at import time with env defaults; force=True
    replaces that setup once the real config is loaded.
    """
    global _CONFIGURED
    if _CONFIGURED and not force:
        return

    log_level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(log_level)
    for handler in _HANDLERS:
        root.removeHandler(handler)
        handler.close()
    _HANDLERS.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(log_level)
    root.addHandler(console)
    _HANDLERS.append(console)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(str(log_path))
        fh.setLevel(log_level)
        root.addHandler(fh)
        _HANDLERS.append(fh)

    # websockets logs every frame at DEBUG
    logging.getLogger("websockets").setLevel(max(log_level, logging.INFO))
    logging.getLogger("httpx").setLevel(max(log_level, logging.WARNING))

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _redact_processor,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if fmt == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    )
    for handler in _HANDLERS:
        handler.setFormatter(formatter)

    _CONFIGURED = True


def configure_from(config: ObservabilityConfig) -> None:
    """Configure from the observability section of BotConfig."""
    configure_logging(
        level=config.log_level,
        fmt=config.log_format,
        log_file=config.log_file or None,
        force=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog bound logger."""
    if not _CONFIGURED:
        configure_logging(
            level=os.environ.get("LOG_LEVEL", "INFO"),
            fmt=os.environ.get("LOG_FORMAT", "console"),
        )
    return structlog.get_logger(name)


def short_addr(address: str) -> str:
    """0x1234...abcd form used in log lines."""
    if len(address) <= 12:
        return address
    return f"{address[:6]}...{address[-4:]}"


@contextmanager
def key_context(trader: str, market_id: str) -> Iterator[None]:
    """Bind a pipeline key to every log line emitted inside the block."""
    with structlog.contextvars.bound_contextvars(key=f"{short_addr(trader)}:{market_id}"):
        yield
