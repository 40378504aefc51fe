"""
Entry point wiring all components.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys

from vaultsync.app import announce, build_service
from vaultsync.config.config import Settings
from vaultsync.config.config_validator import validate_and_log
from vaultsync.core.event_bus import EventType
from vaultsync.infra.logging_cfg import build_logger
from vaultsync.monitoring.alerting import AlertConfig, AlertManager, AlertSeverity
from vaultsync.monitoring.metrics import VaultMetrics, start_metrics_server


async def main() -> None:
    log = build_logger("vaultsync", file_path=os.getenv("VS_LOG_FILE", "vaultsync.log") or None)
    cfg = Settings.load()
    build_logger("vaultsync", level=getattr(logging, cfg.log_level, logging.INFO))

    if not validate_and_log(cfg, log):
        log.error("Configuration validation failed, exiting")
        sys.exit(1)

    alerts = AlertManager(AlertConfig(
        webhook_url=cfg.alert_webhook_url,
        webhook_type=cfg.alert_webhook_type,
        min_severity=AlertSeverity.INFO,
        enabled=cfg.alert_enabled,
    ))

    metrics = VaultMetrics()
    service = build_service(cfg, metrics=metrics)
    alerts.attach(service.event_bus)

    srv = await start_metrics_server(metrics, cfg.metrics_port, status=service.status, auth_token=cfg.metrics_token)

    log.info(json.dumps({"event": "startup", "config": cfg.dump()}, default=str))
    await alerts.alert_startup(rpc_url=cfg.rpc_url, read_only=not cfg.can_sign)

    loop = asyncio.get_running_loop()
    run_task = asyncio.create_task(service.supervisor.run())
    await announce(service.event_bus, EventType.SERVICE_STARTED, read_only=not cfg.can_sign)

    def stop_all() -> None:
        if not run_task.done():
            run_task.cancel()
        srv.close()

    # Windows doesn't support add_signal_handler, so rely on KeyboardInterrupt handling
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_all)
        except NotImplementedError:
            pass

    try:
        await run_task
    except (asyncio.CancelledError, KeyboardInterrupt):
        log.info("Shutdown signal received, cleaning up...")
        await alerts.alert_shutdown("signal_received")
        if not run_task.done():
            run_task.cancel()
            try:
                await run_task
            except asyncio.CancelledError:
                pass
    finally:
        log.info("Closing servers and connections...")
        srv.close()
        await srv.wait_closed()
        await announce(service.event_bus, EventType.SERVICE_STOPPED)
        await service.close()
        await alerts.close()
        log.info("Shutdown complete")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nvaultsync stopped by user")
    sys.exit(0)


if __name__ == "__main__":
    run()
