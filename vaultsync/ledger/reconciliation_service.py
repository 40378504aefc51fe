"""
ReconciliationService: one reconciliation pass per tick, published as an immutable snapshot.

Pass:
    1. read totalDeposits(), activeChain(), getSupportedChains()
    2. replay the bounded event window
    3. reconcile() and check the sum invariant
    4. replace the published BalanceSnapshot as a whole and emit BALANCES_RECONCILED

If the total or the replay cannot be read, the pass degrades to attributing
the last known total to the active chain instead of raising. This is a display
view, not a ledger of record.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, List, Optional, Sequence, Tuple

from vaultsync.core.errors import InvariantViolationError
from vaultsync.core.event_bus import EventType
from vaultsync.infra.logging_cfg import event_logger
from vaultsync.ledger.reconciler import EPSILON, ChainBalance, active_chain_only, check_invariants, reconcile

if TYPE_CHECKING:
    from vaultsync.core.event_bus import EventBus
    from vaultsync.ledger.replayer import EventLogReplayer
    from vaultsync.ledger.vault_reader import VaultReader
    from vaultsync.monitoring.metrics import VaultMetrics

log = logging.getLogger("vaultsync")

DEFAULT_SUPPORTED_CHAINS: Tuple[str, ...] = ("Arc", "Ethereum", "Arbitrum", "Base", "Optimism")


@dataclass(frozen=True)
class BalanceSnapshot:
    balances: Tuple[ChainBalance, ...]
    total: float
    active_chain: str
    from_block: int = 0
    to_block: int = 0
    degraded: bool = False
    dropped_events: int = 0
    updated_at: float = field(default_factory=time.time)

    def balance_of(self, chain: str) -> float:
        for cb in self.balances:
            if cb.chain == chain:
                return cb.balance
        return 0.0


@dataclass
class ReconciliationConfig:
    fallback_chains: Sequence[str] = DEFAULT_SUPPORTED_CHAINS
    epsilon: float = EPSILON
    include_zero: bool = False
    # chains disabled in the per-chain YAML
    excluded_chains: Sequence[str] = ()


class ReconciliationService:
    """
    Usage:
        service = ReconciliationService(reader, replayer, event_bus=bus, metrics=metrics)
        snapshot = await service.run_once()     # from a PollingLoop tick
        service.snapshot                         # latest published view
    """

    def __init__(
        self,
        reader: "VaultReader",
        replayer: "EventLogReplayer",
        config: Optional[ReconciliationConfig] = None,
        event_bus: Optional["EventBus"] = None,
        metrics: Optional["VaultMetrics"] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.reader = reader
        self.replayer = replayer
        self.cfg = config or ReconciliationConfig()
        self.event_bus = event_bus
        self.metrics = metrics
        self._log = log_event or event_logger(log, logging.INFO)

        self._snapshot: Optional[BalanceSnapshot] = None
        self._last_total: float = 0.0
        self._last_active: Optional[str] = None

    @property
    def snapshot(self) -> Optional[BalanceSnapshot]:
        return self._snapshot

    @property
    def last_known_total(self) -> float:
        return self._last_total

    async def _supported_chains(self) -> List[str]:
        try:
            chains = await self.reader.supported_chains()
        except Exception as exc:
            self._log("supported_chains_fallback", err=str(exc))
            chains = []
        chains = chains or list(self.cfg.fallback_chains)
        return [c for c in chains if c not in self.cfg.excluded_chains]

    async def run_once(self) -> BalanceSnapshot:
        active = await self._active_chain()
        try:
            total = await self.reader.total_deposits()
            self._last_total = total
            chains = await self._supported_chains()
            replay = await self.replayer.replay()
        except Exception as exc:
            self._log("reconcile_degraded", err=str(exc), err_type=type(exc).__name__, total=self._last_total)
            snapshot = BalanceSnapshot(
                balances=tuple(active_chain_only(self._last_total, active)),
                total=self._last_total,
                active_chain=active,
                degraded=True,
            )
            await self._publish(snapshot)
            return snapshot

        balances = reconcile(
            replay.events,
            chains,
            total,
            active,
            epsilon=self.cfg.epsilon,
            include_zero=self.cfg.include_zero,
        )
        try:
            check_invariants(balances, total, epsilon=self.cfg.epsilon)
        except InvariantViolationError as exc:
            log.error(json.dumps({"event": "invariant_violation", "err": str(exc), "total": total}))
            if self.metrics:
                self.metrics.invariant_violations.inc()
            if self.event_bus:
                await self.event_bus.emit(
                    EventType.INVARIANT_VIOLATION, source="reconciliation", err=str(exc), total=total
                )

        snapshot = BalanceSnapshot(
            balances=tuple(balances),
            total=total,
            active_chain=active,
            from_block=replay.from_block,
            to_block=replay.to_block,
            dropped_events=replay.dropped,
        )
        await self._publish(snapshot)
        return snapshot

    async def _active_chain(self) -> str:
        try:
            active = await self.reader.active_chain()
        except Exception as exc:
            active = self._last_active or self.cfg.fallback_chains[0]
            self._log("active_chain_fallback", err=str(exc), using=active)
            return active
        if not active:
            active = self._last_active or self.cfg.fallback_chains[0]
        self._last_active = active
        return active

    async def _publish(self, snapshot: BalanceSnapshot) -> None:
        # single reference swap; readers never observe a partial pass
        self._snapshot = snapshot
        self._log(
            "balances_reconciled",
            total=snapshot.total,
            active_chain=snapshot.active_chain,
            degraded=snapshot.degraded,
            chains={cb.chain: round(cb.balance, 6) for cb in snapshot.balances},
        )
        if self.metrics:
            self.metrics.record_snapshot(snapshot)
        if self.event_bus:
            await self.event_bus.emit(
                EventType.BALANCES_RECONCILED,
                source="reconciliation",
                total=snapshot.total,
                active_chain=snapshot.active_chain,
                degraded=snapshot.degraded,
                balances=[(cb.chain, cb.balance, cb.percentage) for cb in snapshot.balances],
            )
