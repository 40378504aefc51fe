"""
Prometheus metrics and a small HTTP endpoint.

Endpoints:
- /metrics - Prometheus text exposition (bearer token if configured)
- /status  - latest balance snapshot and controller states as JSON (bearer token if configured)
- /health  - liveness, never authenticated
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional
from urllib.parse import parse_qs, urlparse

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, Histogram, generate_latest

if TYPE_CHECKING:
    from vaultsync.control.controller_state import ControllerState
    from vaultsync.infra.retry import FailureKind
    from vaultsync.ledger.reconciliation_service import BalanceSnapshot

log = logging.getLogger("vaultsync")


class VaultMetrics:
    """Metrics for the reconciliation loop, watchers and controllers."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()

        # === Read path ===
        self.rpc_retries = Counter(
            'rpc_retries_total',
            'Remote calls retried after a rate-limited or transient failure',
            labelnames=['kind'],
            registry=reg
        )
        self.ticks_skipped = Counter(
            'ticks_skipped_total',
            'Polling ticks skipped because the tick raised',
            labelnames=['loop'],
            registry=reg
        )

        # === Reconciliation ===
        self.reconcile_passes = Counter(
            'reconcile_passes_total',
            'Reconciliation passes published',
            labelnames=['outcome'],
            registry=reg
        )
        self.vault_total = Gauge(
            'vault_total_usdc',
            'Authoritative vault total (USDC)',
            registry=reg
        )
        self.chain_balance = Gauge(
            'chain_balance_usdc',
            'Reconciled balance per chain (USDC)',
            labelnames=['chain'],
            registry=reg
        )
        self.chain_share_pct = Gauge(
            'chain_share_pct',
            'Share of the vault total per chain (%)',
            labelnames=['chain'],
            registry=reg
        )
        self.events_dropped = Counter(
            'ledger_events_dropped_total',
            'Log entries dropped because they failed to decode',
            registry=reg
        )
        self.invariant_violations = Counter(
            'invariant_violations_total',
            'Reconciled balances not summing to the authoritative total',
            registry=reg
        )

        # === Controllers ===
        self.actions = Counter(
            'actions_total',
            'Corrective actions by controller and outcome',
            labelnames=['controller', 'outcome'],
            registry=reg
        )
        self.action_latency_sec = Histogram(
            'action_latency_sec',
            'Submit to final confirmation (seconds)',
            labelnames=['controller'],
            buckets=[1, 2, 5, 10, 20, 30, 60, 120, 240],
            registry=reg
        )
        self.controller_state = Gauge(
            'controller_state',
            'Controller state (1=IDLE, 2=DECIDING, 3=EXECUTING, 4=COOLDOWN)',
            labelnames=['controller'],
            registry=reg
        )
        self.notifications = Counter(
            'notifications_total',
            'Deduplicated change notifications',
            labelnames=['watcher'],
            registry=reg
        )

        self.registry = reg
        self._known_chains: set = set()

    def record_retry(self, kind: "FailureKind") -> None:
        self.rpc_retries.labels(kind=kind.name.lower()).inc()

    def record_tick_skipped(self, loop: str, exc: BaseException) -> None:
        self.ticks_skipped.labels(loop=loop).inc()

    def record_snapshot(self, snapshot: "BalanceSnapshot") -> None:
        self.reconcile_passes.labels(outcome="degraded" if snapshot.degraded else "ok").inc()
        self.vault_total.set(snapshot.total)
        if snapshot.dropped_events:
            self.events_dropped.inc(snapshot.dropped_events)
        current = {cb.chain for cb in snapshot.balances}
        for chain in self._known_chains - current:
            self.chain_balance.labels(chain=chain).set(0)
            self.chain_share_pct.labels(chain=chain).set(0)
        for cb in snapshot.balances:
            self.chain_balance.labels(chain=cb.chain).set(cb.balance)
            self.chain_share_pct.labels(chain=cb.chain).set(cb.percentage)
        self._known_chains |= current

    def record_action(self, controller: str, outcome: str, latency_sec: float) -> None:
        self.actions.labels(controller=controller, outcome=outcome).inc()
        self.action_latency_sec.labels(controller=controller).observe(latency_sec)

    def set_controller_state(self, controller: str, previous: "ControllerState", state: "ControllerState") -> None:
        self.controller_state.labels(controller=controller).set(state.value)

    def record_notification(self, watcher: str) -> None:
        self.notifications.labels(watcher=watcher).inc()

    def render(self) -> bytes:
        return generate_latest(self.registry)


def _response(status: bytes, body: bytes, content_type: bytes = b"application/json") -> bytes:
    return (
        b"HTTP/1.1 " + status + b"\r\n"
        b"Content-Type: " + content_type + b"\r\n"
        b"Content-Length: " + str(len(body)).encode() + b"\r\n"
        b"Connection: close\r\n\r\n"
        + body
    )


async def start_metrics_server(
    metrics: VaultMetrics,
    port: int,
    status: Optional[Callable[[], Dict[str, Any]]] = None,
    auth_token: Optional[str] = None,
    host: str = "0.0.0.0",
) -> asyncio.AbstractServer:
    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            req = await reader.read(2048)
            lines = req.split(b"\r\n")
            path_raw = b"/"
            if lines and lines[0].count(b" ") >= 1:
                path_raw = lines[0].split(b" ")[1]
            headers = {}
            for line in lines[1:]:
                if b":" in line:
                    k, v = line.split(b":", 1)
                    headers[k.strip().lower()] = v.strip()
            parsed = urlparse(path_raw.decode("utf-8", errors="ignore"))

            if parsed.path == "/health":
                writer.write(_response(b"200 OK", json.dumps({"healthy": True}).encode()))
                return

            if auth_token:
                header_auth = headers.get(b"authorization", b"").decode("utf-8", errors="ignore")
                token = parse_qs(parsed.query).get("token", [""])[0]
                if header_auth != f"Bearer {auth_token}" and token != auth_token:
                    writer.write(_response(b"401 Unauthorized", b""))
                    return

            if parsed.path.startswith("/status") and status is not None:
                writer.write(_response(b"200 OK", json.dumps(status(), default=str).encode()))
                return

            writer.write(_response(b"200 OK", metrics.render(), CONTENT_TYPE_LATEST.encode()))
        except Exception as exc:
            log.warning(json.dumps({"event": "metrics_request_error", "err": str(exc)}))
            writer.write(_response(b"500 Internal Server Error", b""))
        finally:
            try:
                await writer.drain()
            finally:
                writer.close()

    server = await asyncio.start_server(handle, host, port)
    log.info(json.dumps({"event": "metrics_server_started", "port": port}))
    return server
