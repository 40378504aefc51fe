"""
ModeWatcher: reports vault mode transitions (Farming / Defensive / Emergency).

On a transition the latest ModeChanged log in a short block window is used for
context (reason, price, timestamp). Context is only attached when the log
matches the new mode and is recent; otherwise the transition is reported with
the polled mode alone.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Union

from vaultsync.core.event_bus import EventType
from vaultsync.infra.logging_cfg import event_logger
from vaultsync.ledger.events import ModeChange, mode_name
from vaultsync.watchers.change_watcher import NotificationDeduper, WatchedValue

if TYPE_CHECKING:
    from vaultsync.core.event_bus import EventBus
    from vaultsync.ledger.mode_history import ModeHistoryReader
    from vaultsync.ledger.vault_reader import VaultReader
    from vaultsync.monitoring.metrics import VaultMetrics

log = logging.getLogger("vaultsync")


@dataclass(frozen=True)
class ModeTransition:
    previous_mode: int
    new_mode: int
    previous_name: str
    new_name: str
    context: Optional[ModeChange] = None

    @property
    def reason(self) -> Optional[str]:
        return self.context.reason if self.context else None


@dataclass
class ModeWatcherConfig:
    lookback_blocks: int = 100
    max_context_age_sec: float = 300.0


class ModeWatcher:
    def __init__(
        self,
        reader: "VaultReader",
        history: "ModeHistoryReader",
        config: Optional[ModeWatcherConfig] = None,
        on_transition: Optional[Callable[[ModeTransition], Union[Awaitable[None], None]]] = None,
        deduper: Optional[NotificationDeduper] = None,
        event_bus: Optional["EventBus"] = None,
        metrics: Optional["VaultMetrics"] = None,
        log_event: Optional[Callable[..., None]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.reader = reader
        self.history = history
        self.cfg = config or ModeWatcherConfig()
        self.on_transition = on_transition
        self.deduper = deduper or NotificationDeduper()
        self.event_bus = event_bus
        self.metrics = metrics
        self._log = log_event or event_logger(log, logging.INFO)
        self._clock = clock
        self.watched: WatchedValue[int] = WatchedValue()

    async def _context_for(self, new_mode: int) -> Optional[ModeChange]:
        try:
            latest = await self.history.latest(self.cfg.lookback_blocks)
        except Exception as exc:
            self._log("mode_context_unavailable", err=str(exc))
            return None
        if latest is None or latest.new_mode != new_mode:
            return None
        if self._clock() - latest.timestamp > self.cfg.max_context_age_sec:
            return None
        return latest

    async def poll_once(self) -> Optional[ModeTransition]:
        mode = await self.reader.mode()
        edge = self.watched.observe(mode)
        if edge is None:
            return None
        previous, current = edge

        context = await self._context_for(current)
        key = (current, context.timestamp if context else None)
        if not self.deduper.should_notify(key):
            return None

        transition = ModeTransition(
            previous_mode=previous,
            new_mode=current,
            previous_name=mode_name(previous),
            new_name=mode_name(current),
            context=context,
        )
        self._log(
            "mode_changed",
            previous=transition.previous_name,
            current=transition.new_name,
            reason=transition.reason,
            price=context.price if context else None,
        )
        if self.metrics:
            self.metrics.record_notification("mode")
        if self.event_bus:
            await self.event_bus.emit(
                EventType.MODE_CHANGED,
                source="mode_watcher",
                previous_mode=previous,
                new_mode=current,
                mode_name=transition.new_name,
                reason=transition.reason,
                price=context.price if context else None,
                timestamp=context.timestamp if context else None,
            )
        if self.on_transition:
            result = self.on_transition(transition)
            if asyncio.iscoroutine(result):
                await result
        self.watched.last_acted_on = current
        return transition
