"""
Service wiring and supervision of every polling loop.

build_service() turns Settings into components; Supervisor owns one task per
loop (plus the event bus) and stop() cancels all of them together.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from vaultsync.config.chain_overrides import load_chain_overrides
from vaultsync.control.best_chain_controller import BestChainConfig, BestChainController
from vaultsync.control.oracle_sync_controller import OracleSyncConfig, OracleSyncController
from vaultsync.control.rebalance_controller import RebalanceConfig, RebalanceController
from vaultsync.core.event_bus import EventBus, EventType
from vaultsync.infra.retry import RetryPolicy
from vaultsync.infra.rpc_client import AsyncRpc
from vaultsync.infra.tx_executor import AsyncTxExecutor
from vaultsync.ledger.events import ledger_schemas, mode_changed_schema
from vaultsync.ledger.mode_history import ModeHistoryReader
from vaultsync.ledger.reconciliation_service import ReconciliationConfig, ReconciliationService
from vaultsync.ledger.replayer import EventLogReplayer, ReplayConfig
from vaultsync.ledger.vault_reader import ContractAddresses, VaultReader
from vaultsync.monitoring.metrics import VaultMetrics
from vaultsync.watchers.change_watcher import ChangeWatcher, NotificationDeduper
from vaultsync.watchers.mode_watcher import ModeWatcher, ModeWatcherConfig
from vaultsync.watchers.polling import PollingConfig, PollingLoop

log = logging.getLogger("vaultsync")


class Supervisor:
    def __init__(self, loops: List[PollingLoop], event_bus: Optional[EventBus] = None) -> None:
        self.loops = list(loops)
        self.event_bus = event_bus
        self.tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self.tasks)

    def _spawn(self, create: Callable[..., asyncio.Task]) -> None:
        if self.event_bus is not None:
            self.tasks.append(create(self.event_bus.start(), name="vs:event_bus"))
        for loop in self.loops:
            self.tasks.append(create(loop.run(), name=f"vs:{loop.name}"))
        log.info(json.dumps({"event": "supervisor_started", "loops": [l.name for l in self.loops]}))

    async def start(self) -> None:
        """Start every loop as a background task."""
        if self.running:
            return
        self.tasks.clear()
        self._spawn(asyncio.create_task)

    async def run(self) -> None:
        """Run every loop until stop() or cancellation."""
        self.tasks.clear()
        async with asyncio.TaskGroup() as tg:
            self._spawn(tg.create_task)

    async def stop(self) -> None:
        for loop in self.loops:
            loop.stop()
        if self.event_bus is not None:
            await self.event_bus.drain(timeout=1.0)
            self.event_bus.stop()
        for task in self.tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        log.info(json.dumps({"event": "supervisor_stopped", "tasks": len(self.tasks)}))


@dataclass
class VaultService:
    rpc: AsyncRpc
    reader: VaultReader
    reconciliation: ReconciliationService
    mode_watcher: ModeWatcher
    best_chain: BestChainController
    active_chain_watcher: ChangeWatcher
    event_bus: EventBus
    metrics: VaultMetrics
    supervisor: Supervisor
    rebalance: Optional[RebalanceController] = None
    oracle_sync: Optional[OracleSyncController] = None
    executor: Optional[AsyncTxExecutor] = None

    def status(self) -> Dict[str, Any]:
        snap = self.reconciliation.snapshot
        controllers = {"best_chain": self.best_chain.state.name}
        if self.rebalance:
            controllers["rebalance"] = self.rebalance.state.name
        if self.oracle_sync:
            controllers["oracle_sync"] = self.oracle_sync.sm.state.name
        return {
            "balances": [
                {"chain": cb.chain, "balance": cb.balance, "percentage": cb.percentage} for cb in snap.balances
            ] if snap else [],
            "total": snap.total if snap else None,
            "active_chain": snap.active_chain if snap else None,
            "degraded": snap.degraded if snap else None,
            "updated_at": snap.updated_at if snap else None,
            "controllers": controllers,
            "auto_switch_suspended": self.best_chain.auto_switch_suspended,
        }

    async def close(self) -> None:
        await self.supervisor.stop()
        if self.executor is not None:
            await self.executor.close(wait=False)
        await self.rpc.close()


def build_service(
    cfg,
    metrics: Optional[VaultMetrics] = None,
    event_bus: Optional[EventBus] = None,
    rpc: Optional[AsyncRpc] = None,
    executor: Optional[AsyncTxExecutor] = None,
) -> VaultService:
    """Wire every component from Settings. Without a signing key the service is read-only."""
    metrics = metrics or VaultMetrics()
    bus = event_bus or EventBus()
    rpc = rpc or AsyncRpc(cfg.rpc_url, timeout=cfg.http_timeout)
    retry = RetryPolicy(max_retries=cfg.retry_max_attempts, base_delay_ms=cfg.retry_base_delay_ms)
    addresses = ContractAddresses(
        vault=cfg.vault_address, oracle=cfg.oracle_address, cross_chain=cfg.cross_chain_address
    )
    overrides = load_chain_overrides(cfg.chain_config_path)

    try:
        account: Optional[str] = cfg.resolve_account()
    except RuntimeError:
        account = None
    if executor is None and cfg.can_sign:
        executor = AsyncTxExecutor.from_settings(cfg, rpc, on_retry=metrics.record_retry)

    reader = VaultReader(rpc, addresses, retry=retry, on_retry=metrics.record_retry)
    replayer = EventLogReplayer(
        rpc,
        ledger_schemas(addresses.vault, addresses.cross_chain),
        ReplayConfig(
            window_blocks=cfg.log_window_blocks,
            inter_query_pause_sec=cfg.inter_query_pause_sec,
            account=account,
        ),
        retry=retry,
        on_retry=metrics.record_retry,
    )
    reconciliation = ReconciliationService(
        reader,
        replayer,
        ReconciliationConfig(
            fallback_chains=cfg.fallback_chains,
            excluded_chains=tuple(c for c, o in overrides.items() if not o.enabled),
        ),
        event_bus=bus,
        metrics=metrics,
    )
    mode_watcher = ModeWatcher(
        reader,
        ModeHistoryReader(rpc, mode_changed_schema(addresses.vault), retry=retry),
        ModeWatcherConfig(
            lookback_blocks=cfg.mode_lookback_blocks,
            max_context_age_sec=cfg.mode_context_max_age_sec,
        ),
        deduper=NotificationDeduper(window_sec=cfg.dedup_window_sec),
        event_bus=bus,
        metrics=metrics,
    )
    best_chain = BestChainController(
        reader,
        executor if cfg.auto_switch else None,
        addresses,
        BestChainConfig(
            auto_switch=cfg.auto_switch,
            cooldown_sec=cfg.switch_cooldown_sec,
            confirmation_timeout_sec=cfg.confirmation_timeout_sec,
            revert_backoff_sec=cfg.switch_revert_backoff_sec,
        ),
        deduper=NotificationDeduper(window_sec=cfg.dedup_window_sec),
        event_bus=bus,
        metrics=metrics,
    )

    async def _active_chain_changed(previous: str, current: str) -> None:
        metrics.record_notification("active_chain")
        await bus.emit(EventType.SIGNAL_CHANGED, source="active_chain", signal="active_chain",
                       previous=previous, current=current)

    active_chain_watcher = ChangeWatcher(
        "active_chain",
        reader.active_chain,
        on_change=_active_chain_changed,
        deduper=NotificationDeduper(window_sec=cfg.dedup_window_sec),
    )

    rebalance = None
    oracle_sync = None
    if executor is not None and account and cfg.auto_rebalance:
        rebalance = RebalanceController(
            reader,
            executor,
            addresses,
            RebalanceConfig(
                user_address=account,
                cooldown_sec=cfg.rebalance_cooldown_sec,
                confirmation_timeout_sec=cfg.confirmation_timeout_sec,
                default_sync_price=cfg.default_sync_price,
            ),
            overrides=overrides,
            event_bus=bus,
            metrics=metrics,
        )
    if executor is not None and cfg.oracle_sync:
        oracle_sync = OracleSyncController(
            reader,
            executor,
            addresses,
            OracleSyncConfig(confirmation_timeout_sec=cfg.confirmation_timeout_sec),
            event_bus=bus,
            metrics=metrics,
        )

    def _polling(interval: float) -> PollingConfig:
        return PollingConfig(
            interval_sec=interval, initial_delay_sec=cfg.initial_delay_sec, jitter_sec=cfg.poll_jitter_sec
        )

    skip = metrics.record_tick_skipped
    loops = [
        PollingLoop("reconcile", reconciliation.run_once, _polling(cfg.reconcile_interval_sec), on_skip=skip),
        PollingLoop("mode", mode_watcher.poll_once, _polling(cfg.mode_interval_sec), on_skip=skip),
        PollingLoop("best_chain", best_chain.tick, _polling(cfg.best_chain_interval_sec), on_skip=skip),
        PollingLoop(
            "active_chain", active_chain_watcher.poll_once, _polling(cfg.best_chain_interval_sec), on_skip=skip
        ),
    ]
    if rebalance is not None:
        loops.append(PollingLoop("rebalance", rebalance.tick, _polling(cfg.rebalance_interval_sec), on_skip=skip))
    if oracle_sync is not None:
        loops.append(
            PollingLoop("oracle_sync", oracle_sync.tick, _polling(cfg.oracle_sync_interval_sec), on_skip=skip)
        )

    log.info(json.dumps({
        "event": "service_built",
        "loops": [l.name for l in loops],
        "read_only": executor is None,
        "account": account,
    }))
    return VaultService(
        rpc=rpc,
        reader=reader,
        reconciliation=reconciliation,
        mode_watcher=mode_watcher,
        best_chain=best_chain,
        active_chain_watcher=active_chain_watcher,
        event_bus=bus,
        metrics=metrics,
        supervisor=Supervisor(loops, bus),
        rebalance=rebalance,
        oracle_sync=oracle_sync,
        executor=executor,
    )


async def announce(bus: EventBus, event_type: EventType, **data: Any) -> None:
    await bus.emit(event_type, source="service", **data)
