"""
OracleSyncController: pushes the active chain's price to the oracle once per active chain.

Whenever activeChain() differs from the chain last synced, chainPrices(active)
is read and oracle.setPrice() submitted and confirmed. The synced chain is
recorded only on success, so a failed sync is retried on the next tick.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from vaultsync.control.controller_state import ControllerState, ControllerStateMachine
from vaultsync.core.event_bus import EventType
from vaultsync.infra.logging_cfg import event_logger
from vaultsync.ledger.abi import PRICE_DECIMALS, to_units

if TYPE_CHECKING:
    from vaultsync.core.event_bus import EventBus
    from vaultsync.infra.tx_executor import AsyncTxExecutor
    from vaultsync.ledger.vault_reader import ContractAddresses, VaultReader
    from vaultsync.monitoring.metrics import VaultMetrics

log = logging.getLogger("vaultsync")


@dataclass
class OracleSyncConfig:
    cooldown_sec: float = 5.0
    confirmation_timeout_sec: float = 120.0


class OracleSyncController:
    NAME = "oracle_sync"

    def __init__(
        self,
        reader: "VaultReader",
        executor: "AsyncTxExecutor",
        addresses: "ContractAddresses",
        config: Optional[OracleSyncConfig] = None,
        event_bus: Optional["EventBus"] = None,
        metrics: Optional["VaultMetrics"] = None,
        log_event: Optional[Callable[..., None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.reader = reader
        self.executor = executor
        self.addresses = addresses
        self.cfg = config or OracleSyncConfig()
        self.event_bus = event_bus
        self.metrics = metrics
        self._log = log_event or event_logger(log, logging.INFO)
        self.sm = ControllerStateMachine(
            self.NAME,
            cooldown_sec=self.cfg.cooldown_sec,
            clock=clock,
            on_state_change=metrics.set_controller_state if metrics else None,
        )
        self.last_synced_chain: Optional[str] = None

    async def tick(self) -> Optional[float]:
        """Returns the price synced this tick, or None when nothing was done."""
        if not self.sm.try_begin():
            return None
        try:
            active = await self.reader.active_chain()
            if not active or active == self.last_synced_chain:
                self.sm.reset("in_sync")
                return None
            price = await self.reader.chain_price(active)
        except BaseException:
            self.sm.reset("read_failed")
            raise

        if price <= 0:
            self._log("oracle_sync_skipped", chain=active, reason="no_chain_price")
            self.sm.reset("no_chain_price")
            return None

        self.sm.transition(ControllerState.EXECUTING, f"sync:{active}")
        started = time.monotonic()
        try:
            receipt = await self.executor.execute(
                self.addresses.oracle,
                "setPrice(uint256)",
                [to_units(price, PRICE_DECIMALS)],
                timeout=self.cfg.confirmation_timeout_sec,
            )
        except asyncio.CancelledError:
            self.sm.reset("cancelled")
            raise
        except Exception as exc:
            self.sm.reset("sync_failed")
            log.error(json.dumps({"event": "oracle_sync_failed", "chain": active, "price": price, "err": str(exc)}))
            if self.metrics:
                self.metrics.record_action(self.NAME, "failed", time.monotonic() - started)
            if self.event_bus:
                await self.event_bus.emit(EventType.ORACLE_SYNC_FAILED, source=self.NAME, chain=active, err=str(exc))
            raise

        self.last_synced_chain = active
        self.sm.start_cooldown("synced")
        self._log("oracle_synced", chain=active, price=price, tx=receipt.tx_hash)
        if self.metrics:
            self.metrics.record_action(self.NAME, "success", time.monotonic() - started)
        if self.event_bus:
            await self.event_bus.emit(
                EventType.ORACLE_SYNCED, source=self.NAME, chain=active, price=price, tx_hash=receipt.tx_hash
            )
        return price
