"""
Webhook alerting for operator-relevant controller events.

- Generic JSON, Slack and Discord payloads
- Rate limiting per alert type to prevent alert storms
- Batching of alerts raised within a short window
- Delivery off the control loops (event bus handlers + background task)
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import httpx

from vaultsync.core.event_bus import Event, EventType

if TYPE_CHECKING:
    from vaultsync.core.event_bus import EventBus

log = logging.getLogger("vaultsync")


class AlertSeverity(Enum):
    CRITICAL = auto()
    WARNING = auto()
    INFO = auto()


class AlertType(Enum):
    MODE_CHANGED = auto()
    BEST_CHAIN_CHANGED = auto()
    CHAIN_SWITCHED = auto()
    ACTION_FAILED = auto()
    INVARIANT_VIOLATION = auto()
    STARTUP = auto()
    SHUTDOWN = auto()


@dataclass
class Alert:
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.alert_type.name,
            "severity": self.severity.name,
            "title": self.title,
            "message": self.message,
            "timestamp_ms": self.timestamp_ms,
            "timestamp_iso": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.timestamp_ms / 1000)),
            "details": self.details,
        }


@dataclass
class AlertConfig:
    webhook_url: Optional[str] = None
    webhook_type: str = "generic"  # generic, slack, discord
    min_severity: AlertSeverity = AlertSeverity.WARNING
    rate_limit_seconds: float = 60.0
    batch_window_ms: int = 5000
    enabled: bool = True
    include_details: bool = True
    service_name: str = "vaultsync"


_COLORS = {
    AlertSeverity.CRITICAL: 0xFF0000,
    AlertSeverity.WARNING: 0xFFA500,
    AlertSeverity.INFO: 0x0000FF,
}


class WebhookFormatter:
    @staticmethod
    def format_generic(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        return alert.to_dict()

    @staticmethod
    def _fields(alert: Alert, config: AlertConfig) -> List[tuple]:
        fields = [("Type", alert.alert_type.name)]
        if config.include_details and alert.details:
            fields.extend((k, str(v)) for k, v in list(alert.details.items())[:5])
        return fields

    @staticmethod
    def format_slack(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        return {
            "username": config.service_name,
            "attachments": [{
                "color": f"#{_COLORS.get(alert.severity, 0x808080):06X}",
                "title": alert.title,
                "text": alert.message,
                "fields": [
                    {"title": k, "value": v, "short": True} for k, v in WebhookFormatter._fields(alert, config)
                ],
                "footer": f"{config.service_name} | {alert.severity.name}",
                "ts": alert.timestamp_ms // 1000,
            }],
        }

    @staticmethod
    def format_discord(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        return {
            "username": config.service_name,
            "embeds": [{
                "title": alert.title,
                "description": alert.message,
                "color": _COLORS.get(alert.severity, 0x808080),
                "fields": [
                    {"name": k, "value": v, "inline": True} for k, v in WebhookFormatter._fields(alert, config)
                ],
                "footer": {"text": f"{config.service_name} | {alert.severity.name}"},
                "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(alert.timestamp_ms / 1000)),
            }],
        }


class AlertManager:
    def __init__(self, config: Optional[AlertConfig] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        self.config = config or AlertConfig()
        self._client = client
        self._owns_client = client is None
        self._last_alert_times: Dict[AlertType, float] = {}
        self._pending: List[Alert] = []
        self._batch_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self.delivered = 0

    async def send_alert(self, alert: Alert) -> bool:
        """
        Queue an alert for batched delivery.

        Returns:
            True if queued, False if disabled, below threshold or rate limited
        """
        if not self.config.enabled or not self.config.webhook_url:
            log.debug(json.dumps({"event": "alert_not_sent", "title": alert.title}))
            return False
        if alert.severity.value > self.config.min_severity.value:
            return False

        now = time.monotonic()
        last = self._last_alert_times.get(alert.alert_type)
        if last is not None and now - last < self.config.rate_limit_seconds:
            log.debug(json.dumps({"event": "alert_rate_limited", "type": alert.alert_type.name}))
            return False

        async with self._lock:
            self._pending.append(alert)
            self._last_alert_times[alert.alert_type] = now
            if self._batch_task is None or self._batch_task.done():
                self._batch_task = asyncio.create_task(self._batch_deliver())
        return True

    async def _batch_deliver(self) -> None:
        await asyncio.sleep(self.config.batch_window_ms / 1000)
        await self.flush()

    async def flush(self) -> bool:
        async with self._lock:
            alerts = self._pending.copy()
            self._pending.clear()
        if not alerts:
            return True
        return await self._http_post(self._format_batch(alerts))

    def _format_alert(self, alert: Alert) -> Dict[str, Any]:
        formatters = {
            "generic": WebhookFormatter.format_generic,
            "slack": WebhookFormatter.format_slack,
            "discord": WebhookFormatter.format_discord,
        }
        return formatters.get(self.config.webhook_type, WebhookFormatter.format_generic)(alert, self.config)

    def _format_batch(self, alerts: List[Alert]) -> Dict[str, Any]:
        if len(alerts) == 1:
            return self._format_alert(alerts[0])
        if self.config.webhook_type == "slack":
            payload = self._format_alert(alerts[0])
            for alert in alerts[1:]:
                payload["attachments"].extend(self._format_alert(alert)["attachments"])
            return payload
        if self.config.webhook_type == "discord":
            payload = self._format_alert(alerts[0])
            for alert in alerts[1:]:
                payload["embeds"].extend(self._format_alert(alert)["embeds"])
            return payload
        return {"alerts": [a.to_dict() for a in alerts]}

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10.0)
        return self._client

    async def _http_post(self, payload: Dict[str, Any], retries: int = 2) -> bool:
        for attempt in range(retries + 1):
            try:
                resp = await self._http().post(self.config.webhook_url, json=payload)
                if resp.status_code < 300:
                    self.delivered += 1
                    return True
                log.warning(json.dumps({"event": "alert_delivery_failed", "status": resp.status_code}))
            except httpx.HTTPError as exc:
                log.warning(json.dumps({"event": "alert_delivery_error", "attempt": attempt + 1, "err": str(exc)}))
            if attempt < retries:
                await asyncio.sleep(1 * (attempt + 1))
        return False

    async def close(self) -> None:
        if self._batch_task and not self._batch_task.done():
            self._batch_task.cancel()
            await asyncio.gather(self._batch_task, return_exceptions=True)
        if self.config.webhook_url:
            await self.flush()
        if self._owns_client and self._client is not None:
            await self._client.aclose()

    # ─────────────────────────────────────────────────────────────────────
    # Event bus wiring
    # ─────────────────────────────────────────────────────────────────────

    def attach(self, bus: "EventBus") -> None:
        bus.subscribe(EventType.MODE_CHANGED, self.on_mode_changed, name="alerts.mode")
        bus.subscribe(EventType.BEST_CHAIN_CHANGED, self.on_best_chain_changed, name="alerts.best_chain")
        bus.subscribe(EventType.CHAIN_SWITCHED, self.on_chain_switched, name="alerts.switched")
        bus.subscribe(EventType.INVARIANT_VIOLATION, self.on_invariant_violation, name="alerts.invariant")
        for failed in (EventType.REBALANCE_FAILED, EventType.CHAIN_SWITCH_FAILED, EventType.ORACLE_SYNC_FAILED):
            bus.subscribe(failed, self.on_action_failed, name=f"alerts.{failed.name.lower()}")

    async def on_mode_changed(self, event: Event) -> None:
        data = event.data
        # Emergency is the mode operators must react to
        severity = AlertSeverity.CRITICAL if data.get("new_mode") == 2 else AlertSeverity.WARNING
        reason = data.get("reason")
        await self.send_alert(Alert(
            alert_type=AlertType.MODE_CHANGED,
            severity=severity,
            title=f"Vault mode: {data.get('mode_name')}",
            message=reason or "Mode changed (no on-chain reason found)",
            details={k: data.get(k) for k in ("previous_mode", "new_mode", "price") if data.get(k) is not None},
        ))

    async def on_best_chain_changed(self, event: Event) -> None:
        await self.send_alert(Alert(
            alert_type=AlertType.BEST_CHAIN_CHANGED,
            severity=AlertSeverity.INFO,
            title="Better chain available",
            message=f"{event.data.get('best')} scores above active chain {event.data.get('active')}",
            details=dict(event.data),
        ))

    async def on_chain_switched(self, event: Event) -> None:
        await self.send_alert(Alert(
            alert_type=AlertType.CHAIN_SWITCHED,
            severity=AlertSeverity.INFO,
            title="Active chain switched",
            message=f"{event.data.get('from_chain')} -> {event.data.get('to_chain')}",
            details=dict(event.data),
        ))

    async def on_action_failed(self, event: Event) -> None:
        await self.send_alert(Alert(
            alert_type=AlertType.ACTION_FAILED,
            severity=AlertSeverity.WARNING,
            title=f"{event.source or 'controller'} action failed",
            message=str(event.data.get("err", "unknown error")),
            details=dict(event.data),
        ))

    async def on_invariant_violation(self, event: Event) -> None:
        await self.send_alert(Alert(
            alert_type=AlertType.INVARIANT_VIOLATION,
            severity=AlertSeverity.CRITICAL,
            title="Balance reconciliation invariant violated",
            message=str(event.data.get("err")),
            details=dict(event.data),
        ))

    async def alert_startup(self, **details: Any) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.STARTUP,
            severity=AlertSeverity.INFO,
            title="Controller started",
            message=f"{self.config.service_name} started",
            details=details,
        ))

    async def alert_shutdown(self, reason: str = "normal") -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.SHUTDOWN,
            severity=AlertSeverity.INFO if reason == "normal" else AlertSeverity.WARNING,
            title="Controller shutdown",
            message=f"{self.config.service_name} shutting down: {reason}",
        ))
