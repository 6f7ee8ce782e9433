"""Alerting — the engine's observability collaborator.

Receives:
  - Feed connectivity changes (connecting / connected / disconnected)
  - Terminal FAILED copy orders (key, trade ids, reason code)
  - Exhausted transport retry budgets
  - Pipelines paused on wallet errors
  - Expired aggregates

Every alert is logged. Telegram forwarding is optional.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from copybot.config import AlertsConfig
from copybot.observability.logger import get_logger, short_addr

log = get_logger(__name__)

_LEVELS = {"info": 0, "warning": 1, "critical": 2}


@dataclass
class Alert:
    """An alert to be sent."""
    level: str  # "info" | "warning" | "critical"
    title: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = 0.0
    channels_sent: list[str] = field(default_factory=list)

    def __post_init__(self):
        if self.timestamp == 0.0:
            self.timestamp = time.time()

    def to_dict(self) -> dict[str, Any]:
        return self.__dict__


class AlertManager:
    """Send alerts through configured channels."""

    def __init__(self, config: AlertsConfig | None = None):
        self.alerts_config = config or AlertsConfig()
        self._history: list[Alert] = []
        self._cooldowns: dict[str, float] = {}
        self._http: httpx.AsyncClient | None = None

    async def close(self) -> None:
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()
            self._http = None

    async def send(
        self,
        level: str,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
        cooldown_key: str | None = None,
        cooldown_secs: float | None = None,
    ) -> Alert:
        """Log an alert and forward it to configured channels.

        cooldown_key only throttles forwarding; the alert is always logged.
        """
        alert = Alert(level=level, title=title, message=message, data=data or {})

        log_fn = log.info if level == "info" else (
            log.warning if level == "warning" else log.critical
        )
        log_fn("alert.sent", level=level, title=title, message=message[:200], **alert.data)
        alert.channels_sent.append("log")

        self._history.append(alert)
        limit = self.alerts_config.history_size
        if len(self._history) > limit:
            self._history = self._history[-(limit // 2):]

        if cooldown_key:
            window = cooldown_secs if cooldown_secs is not None else self.alerts_config.min_alert_interval_secs
            last_sent = self._cooldowns.get(cooldown_key, 0.0)
            if time.time() - last_sent < window:
                log.debug("alerts.cooldown", key=cooldown_key)
                return alert
            self._cooldowns[cooldown_key] = time.time()

        cfg = self.alerts_config
        if cfg.enabled and cfg.telegram_bot_token and cfg.telegram_chat_id:
            try:
                await self._send_telegram(alert)
                alert.channels_sent.append("telegram")
            except httpx.HTTPError as e:
                log.error("alert.telegram_error", error=str(e))

        return alert

    async def _send_telegram(self, alert: Alert) -> None:
        """Send alert via Telegram Bot API."""
        token = self.alerts_config.telegram_bot_token
        url = f"https://api.telegram.org/bot{token}/sendMessage"
        prefix = {"info": "ℹ️", "warning": "⚠️", "critical": "🚨"}.get(alert.level, "📢")
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=10.0)
        resp = await self._http.post(
            url,
            json={
                "chat_id": self.alerts_config.telegram_chat_id,
                "text": f"{prefix} *{alert.title}*\n\n{alert.message}",
                "parse_mode": "Markdown",
            },
        )
        resp.raise_for_status()

    # ── Structured engine events ─────────────────────────────────────

    async def connectivity_changed(self, state: str, detail: str = "", **data: Any) -> Alert:
        level = "warning" if state == "disconnected" else "info"
        return await self.send(
            level=level,
            title=f"Trade feed {state}",
            message=detail or state,
            data={"feed_state": state, **data},
            cooldown_key=f"feed_{state}",
        )

    async def order_failed(
        self,
        trader: str,
        market_id: str,
        trade_ids: list[int],
        reason_code: str,
        order_id: str = "",
        detail: str = "",
    ) -> Alert:
        return await self.send(
            level="critical",
            title="Copy order failed",
            message=(
                f"Trader {short_addr(trader)} market {market_id}: {reason_code}"
                + (f" ({detail})" if detail else "")
            ),
            data={
                "trader": trader,
                "market_id": market_id,
                "trade_ids": list(trade_ids),
                "reason_code": reason_code,
                "order_id": order_id,
            },
        )

    async def retries_exhausted(self, component: str, key: str, reason_code: str, attempts: int) -> Alert:
        return await self.send(
            level="critical",
            title="Retry budget exhausted",
            message=f"{component} gave up on {key} after {attempts} attempts: {reason_code}",
            data={"component": component, "key": key, "reason_code": reason_code, "attempts": attempts},
        )

    async def pipeline_paused(self, trader: str, market_id: str, reason_code: str) -> Alert:
        return await self.send(
            level="critical",
            title="Pipeline paused",
            message=(
                f"Copying {short_addr(trader)} on {market_id} paused: {reason_code}. "
                "Operator action required (top up funds or fix allowance), then resume."
            ),
            data={"trader": trader, "market_id": market_id, "reason_code": reason_code},
        )

    async def aggregate_expired(
        self,
        trader: str,
        market_id: str,
        side: str,
        size: float,
        trade_ids: list[int],
        policy: str,
    ) -> Alert:
        return await self.send(
            level="info",
            title="Aggregate expired",
            message=(
                f"{side} {size:.4f} on {market_id} from {len(trade_ids)} trade(s) "
                f"of {short_addr(trader)} hit max hold; policy={policy}"
            ),
            data={
                "trader": trader,
                "market_id": market_id,
                "side": side,
                "size": size,
                "trade_ids": list(trade_ids),
                "policy": policy,
            },
        )

    def get_history(self, limit: int = 50) -> list[dict[str, Any]]:
        return [a.to_dict() for a in self._history[-limit:]]
