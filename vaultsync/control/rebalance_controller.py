"""
RebalanceController: reacts to oracle price / risk profile changes with a price sync and a rebalance.

Tick:
    not IDLE                          -> skip (COOLDOWN lapses into IDLE lazily)
    IDLE -> DECIDING                  -> read (price, risk profile) and the vault total
    first observation                 -> initialise only
    pair unchanged and nothing pending, vault empty,
    or pair == last rebalanced pair   -> IDLE
    DECIDING -> EXECUTING             -> setPrice(active chain price), await receipt,
                                         rebalance(), await receipt
    success                           -> record pair, COOLDOWN
    failure                           -> IDLE, pair stays pending, error re-raised
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, Mapping, Optional, Tuple

from vaultsync.control.controller_state import ControllerState, ControllerStateMachine
from vaultsync.core.event_bus import EventType
from vaultsync.infra.logging_cfg import event_logger
from vaultsync.ledger.abi import PRICE_DECIMALS, to_units
from vaultsync.ledger.vault_reader import risk_profile_name
from vaultsync.watchers.change_watcher import WatchedValue

if TYPE_CHECKING:
    from vaultsync.config.chain_overrides import ChainOverride
    from vaultsync.core.event_bus import EventBus
    from vaultsync.infra.tx_executor import AsyncTxExecutor
    from vaultsync.ledger.vault_reader import ContractAddresses, VaultReader
    from vaultsync.monitoring.metrics import VaultMetrics

log = logging.getLogger("vaultsync")

PricePair = Tuple[float, int]


@dataclass
class RebalanceConfig:
    user_address: str
    cooldown_sec: float = 5.0
    confirmation_timeout_sec: float = 120.0
    default_sync_price: float = 1.0


@dataclass(frozen=True)
class RebalanceResult:
    executed: bool
    reason: str
    pair: Optional[PricePair] = None
    sync_price: Optional[float] = None
    tx_hash: Optional[str] = None


class RebalanceController:
    NAME = "rebalance"

    def __init__(
        self,
        reader: "VaultReader",
        executor: "AsyncTxExecutor",
        addresses: "ContractAddresses",
        config: RebalanceConfig,
        overrides: Optional[Mapping[str, "ChainOverride"]] = None,
        event_bus: Optional["EventBus"] = None,
        metrics: Optional["VaultMetrics"] = None,
        log_event: Optional[Callable[..., None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.reader = reader
        self.executor = executor
        self.addresses = addresses
        self.cfg = config
        self.overrides: Dict[str, "ChainOverride"] = dict(overrides or {})
        self.event_bus = event_bus
        self.metrics = metrics
        self._log = log_event or event_logger(log, logging.INFO)
        self.sm = ControllerStateMachine(
            self.NAME,
            cooldown_sec=config.cooldown_sec,
            clock=clock,
            on_state_change=metrics.set_controller_state if metrics else None,
        )
        self.watched: WatchedValue[PricePair] = WatchedValue()
        self._pending = False

    @property
    def state(self) -> ControllerState:
        return self.sm.state

    @property
    def last_rebalanced(self) -> Optional[PricePair]:
        return self.watched.last_acted_on

    async def tick(self) -> RebalanceResult:
        if not self.sm.try_begin():
            return RebalanceResult(executed=False, reason=f"busy:{self.sm.state.name}")

        try:
            price = await self.reader.oracle_price()
            profile = await self.reader.risk_profile(self.cfg.user_address)
            balance = await self.reader.total_deposits()
        except BaseException:
            self.sm.reset("read_failed")
            raise

        pair: PricePair = (price, profile)
        first = not self.watched.initialized
        edge = self.watched.observe(pair)
        if first:
            self.sm.reset("initialised")
            return RebalanceResult(executed=False, reason="initialised", pair=pair)
        if edge is not None:
            self._pending = True

        if not self._pending:
            self.sm.reset("unchanged")
            return RebalanceResult(executed=False, reason="unchanged", pair=pair)
        if pair == self.watched.last_acted_on:
            self._pending = False
            self.sm.reset("already_rebalanced")
            return RebalanceResult(executed=False, reason="already_rebalanced", pair=pair)
        if balance <= 0:
            # stays pending until the vault holds funds
            self.sm.reset("vault_empty")
            return RebalanceResult(executed=False, reason="vault_empty", pair=pair)

        self.sm.transition(ControllerState.EXECUTING, "pair_changed")
        return await self._execute(pair)

    async def _sync_price(self, active_chain: str) -> float:
        try:
            price = await self.reader.chain_price(active_chain)
        except Exception as exc:
            self._log("chain_price_unavailable", chain=active_chain, err=str(exc))
            price = 0.0
        if price > 0:
            return price
        override = self.overrides.get(active_chain)
        if override and override.default_sync_price:
            return override.default_sync_price
        return self.cfg.default_sync_price

    async def _execute(self, pair: PricePair) -> RebalanceResult:
        started = time.monotonic()
        timeout = self.cfg.confirmation_timeout_sec
        sync_price = None
        try:
            active = await self.reader.active_chain()
            sync_price = await self._sync_price(active)
            await self.executor.execute(
                self.addresses.oracle, "setPrice(uint256)", [to_units(sync_price, PRICE_DECIMALS)], timeout=timeout
            )
            receipt = await self.executor.execute(self.addresses.vault, "rebalance()", [], timeout=timeout)
        except asyncio.CancelledError:
            self.sm.reset("cancelled")
            raise
        except Exception as exc:
            self.sm.reset("action_failed")
            log.error(json.dumps({
                "event": "rebalance_failed",
                "price": pair[0],
                "profile": risk_profile_name(pair[1]),
                "err": str(exc),
                "err_type": type(exc).__name__,
            }))
            if self.metrics:
                self.metrics.record_action(self.NAME, "failed", time.monotonic() - started)
            if self.event_bus:
                await self.event_bus.emit(
                    EventType.REBALANCE_FAILED, source=self.NAME, price=pair[0], risk_profile=pair[1], err=str(exc)
                )
            raise

        self.watched.last_acted_on = pair
        self._pending = False
        self.sm.start_cooldown("rebalanced")
        self._log(
            "rebalance_executed",
            price=pair[0],
            profile=risk_profile_name(pair[1]),
            sync_price=sync_price,
            tx=receipt.tx_hash,
        )
        if self.metrics:
            self.metrics.record_action(self.NAME, "success", time.monotonic() - started)
        if self.event_bus:
            await self.event_bus.emit(
                EventType.REBALANCE_EXECUTED,
                source=self.NAME,
                price=pair[0],
                risk_profile=pair[1],
                sync_price=sync_price,
                tx_hash=receipt.tx_hash,
            )
        return RebalanceResult(
            executed=True, reason="rebalanced", pair=pair, sync_price=sync_price, tx_hash=receipt.tx_hash
        )
