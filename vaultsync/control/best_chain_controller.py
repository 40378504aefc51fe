"""
BestChainController: keeps the vault on the best-scored chain.

Each tick reads bestChain() and activeChain(). The first tick only initialises.
While they differ, observers are notified once per (best, active) pair within
the dedup window and, with auto-switch on, switchToBestChain() is submitted
and its receipt awaited (bounded) before both values are re-read.

A reverted switch suspends auto-switching for ``revert_backoff_sec``; any
failed attempt leaves the pair unresolved so a later tick retries it.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Tuple, Union

from vaultsync.control.controller_state import ControllerState, ControllerStateMachine
from vaultsync.core.errors import ActionRevertedError
from vaultsync.core.event_bus import EventType
from vaultsync.infra.logging_cfg import event_logger
from vaultsync.watchers.change_watcher import NotificationDeduper, WatchedValue

if TYPE_CHECKING:
    from vaultsync.core.event_bus import EventBus
    from vaultsync.infra.tx_executor import AsyncTxExecutor
    from vaultsync.ledger.vault_reader import ContractAddresses, VaultReader
    from vaultsync.monitoring.metrics import VaultMetrics

log = logging.getLogger("vaultsync")

ChainPair = Tuple[str, str]  # (best, active)


@dataclass
class BestChainConfig:
    auto_switch: bool = True
    cooldown_sec: float = 30.0
    confirmation_timeout_sec: float = 120.0
    revert_backoff_sec: float = 300.0


@dataclass(frozen=True)
class BestChainResult:
    best: Optional[str] = None
    active: Optional[str] = None
    notified: bool = False
    switched: bool = False
    reason: str = ""
    tx_hash: Optional[str] = None


class BestChainController:
    NAME = "best_chain"

    def __init__(
        self,
        reader: "VaultReader",
        executor: Optional["AsyncTxExecutor"],
        addresses: "ContractAddresses",
        config: Optional[BestChainConfig] = None,
        deduper: Optional[NotificationDeduper] = None,
        on_best_chain: Optional[Callable[[str, str], Union[Awaitable[None], None]]] = None,
        event_bus: Optional["EventBus"] = None,
        metrics: Optional["VaultMetrics"] = None,
        log_event: Optional[Callable[..., None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.reader = reader
        self.executor = executor
        self.addresses = addresses
        self.cfg = config or BestChainConfig()
        self.deduper = deduper or NotificationDeduper(clock=clock)
        self.on_best_chain = on_best_chain
        self.event_bus = event_bus
        self.metrics = metrics
        self._log = log_event or event_logger(log, logging.INFO)
        self._clock = clock
        self.sm = ControllerStateMachine(
            self.NAME,
            cooldown_sec=self.cfg.cooldown_sec,
            clock=clock,
            on_state_change=metrics.set_controller_state if metrics else None,
        )
        self.watched: WatchedValue[ChainPair] = WatchedValue()
        self._suspended_until = 0.0

    @property
    def state(self) -> ControllerState:
        return self.sm.state

    @property
    def auto_switch_suspended(self) -> bool:
        return self._clock() < self._suspended_until

    @property
    def auto_switch_active(self) -> bool:
        return self.cfg.auto_switch and self.executor is not None and not self.auto_switch_suspended

    async def _read_pair(self) -> ChainPair:
        best = await self.reader.best_chain()
        active = await self.reader.active_chain()
        return best, active

    async def tick(self) -> BestChainResult:
        if not self.sm.try_begin():
            return BestChainResult(reason=f"busy:{self.sm.state.name}")
        try:
            pair = await self._read_pair()
        except BaseException:
            self.sm.reset("read_failed")
            raise

        best, active = pair
        first = not self.watched.initialized
        self.watched.observe(pair)
        if first:
            self.sm.reset("initialised")
            return BestChainResult(best=best, active=active, reason="initialised")

        if not best or best == active:
            self.deduper.forget(lambda key: key[0] == best)
            self.sm.reset("on_best_chain")
            return BestChainResult(best=best, active=active, reason="on_best_chain")

        notified = await self._notify(pair)
        if not self.auto_switch_active:
            self.sm.reset("auto_switch_off" if not self.auto_switch_suspended else "auto_switch_suspended")
            return BestChainResult(best=best, active=active, notified=notified, reason="notify_only")

        self.sm.transition(ControllerState.EXECUTING, f"{active}->{best}")
        tx_hash = await self._switch(pair)
        return BestChainResult(
            best=best, active=active, notified=notified, switched=True, reason="switched", tx_hash=tx_hash
        )

    async def _notify(self, pair: ChainPair) -> bool:
        if not self.deduper.should_notify(pair):
            return False
        best, active = pair
        self._log("best_chain_changed", best=best, active=active)
        if self.metrics:
            self.metrics.record_notification(self.NAME)
        if self.event_bus:
            await self.event_bus.emit(EventType.BEST_CHAIN_CHANGED, source=self.NAME, best=best, active=active)
        if self.on_best_chain:
            result = self.on_best_chain(best, active)
            if asyncio.iscoroutine(result):
                await result
        return True

    async def _switch(self, pair: ChainPair) -> str:
        best, active = pair
        started = time.monotonic()
        try:
            receipt = await self.executor.execute(
                self.addresses.cross_chain,
                "switchToBestChain()",
                [],
                timeout=self.cfg.confirmation_timeout_sec,
            )
        except asyncio.CancelledError:
            self.sm.reset("cancelled")
            raise
        except Exception as exc:
            self.sm.reset("switch_failed")
            if isinstance(exc, ActionRevertedError):
                self._suspended_until = self._clock() + self.cfg.revert_backoff_sec
            log.error(json.dumps({
                "event": "chain_switch_failed",
                "best": best,
                "active": active,
                "err": str(exc),
                "err_type": type(exc).__name__,
                "suspended_sec": self.cfg.revert_backoff_sec if self.auto_switch_suspended else 0,
            }))
            if self.metrics:
                self.metrics.record_action(self.NAME, "failed", time.monotonic() - started)
            if self.event_bus:
                await self.event_bus.emit(
                    EventType.CHAIN_SWITCH_FAILED, source=self.NAME, best=best, active=active, err=str(exc)
                )
            raise

        self.watched.last_acted_on = pair
        try:
            self.watched.last_observed = await self._read_pair()
        except Exception as exc:
            self._log("post_switch_poll_failed", err=str(exc))
        self.sm.start_cooldown("switched")
        self._log("chain_switched", from_chain=active, to_chain=best, tx=receipt.tx_hash)
        if self.metrics:
            self.metrics.record_action(self.NAME, "success", time.monotonic() - started)
        if self.event_bus:
            await self.event_bus.emit(
                EventType.CHAIN_SWITCHED, source=self.NAME, from_chain=active, to_chain=best, tx_hash=receipt.tx_hash
            )
        return receipt.tx_hash
