"""
ChangeWatcher: edge detection plus notification dedup over one polled value.

    first poll        -> initialise last_observed, never fire
    value unchanged   -> nothing
    value changed     -> dedup key; fire on_change(previous, current) unless the
                         key was already notified within the dedup window

last_observed is updated on every successful read. A read that raises leaves
the watcher untouched and the exception propagates to the PollingLoop, which
skips the tick.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Hashable, Optional, Tuple, TypeVar, Union

from vaultsync.infra.logging_cfg import event_logger

log = logging.getLogger("vaultsync")

T = TypeVar("T")


@dataclass
class WatchedValue(Generic[T]):
    last_observed: Optional[T] = None
    last_acted_on: Optional[T] = None
    initialized: bool = False

    def observe(self, value: T) -> Optional[Tuple[T, T]]:
        """Record ``value``; return (previous, current) on an edge after initialisation."""
        if not self.initialized:
            self.last_observed = value
            self.initialized = True
            return None
        previous = self.last_observed
        self.last_observed = value
        if previous != value:
            return previous, value
        return None


class NotificationDeduper:
    """
    Remembers recently notified keys for ``window_sec``.
    Memory is bounded: the oldest keys are evicted past ``max_keys``.
    """

    def __init__(self, window_sec: float = 300.0, max_keys: int = 1024, clock: Callable[[], float] = time.monotonic):
        self.window_sec = window_sec
        self.max_keys = max_keys
        self._clock = clock
        self._seen: "OrderedDict[Hashable, float]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, key: Hashable) -> bool:
        ts = self._seen.get(key)
        return ts is not None and self._clock() - ts < self.window_sec

    def record(self, key: Hashable) -> None:
        self._seen[key] = self._clock()
        self._seen.move_to_end(key)
        while len(self._seen) > self.max_keys:
            self._seen.popitem(last=False)

    def should_notify(self, key: Hashable) -> bool:
        """True (and records the key) unless ``key`` was notified within the window."""
        if key in self:
            return False
        self.record(key)
        return True

    def forget(self, predicate: Callable[[Hashable], bool]) -> int:
        stale = [k for k in self._seen if predicate(k)]
        for k in stale:
            del self._seen[k]
        return len(stale)

    def clear(self) -> None:
        self._seen.clear()


OnChange = Callable[[Any, Any], Union[Awaitable[None], None]]


def _default_key(previous: Any, current: Any) -> Hashable:
    return (current,)


class ChangeWatcher:
    """
    Usage:
        watcher = ChangeWatcher("best_chain", read_pair, on_change=notify,
                                dedup_key=lambda prev, cur: cur)
        loop = PollingLoop("best_chain", watcher.poll_once, PollingConfig(interval_sec=30))
    """

    def __init__(
        self,
        name: str,
        read_value: Callable[[], Awaitable[Any]],
        on_change: OnChange,
        dedup_key: Callable[[Any, Any], Hashable] = _default_key,
        deduper: Optional[NotificationDeduper] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.name = name
        self.read_value = read_value
        self.on_change = on_change
        self.dedup_key = dedup_key
        self.deduper = deduper or NotificationDeduper()
        self.watched: WatchedValue[Any] = WatchedValue()
        self._log = log_event or event_logger(log, logging.INFO)
        self.fired = 0
        self.suppressed = 0

    @property
    def last_observed(self) -> Any:
        return self.watched.last_observed

    async def poll_once(self) -> bool:
        """Read, detect, dedup and notify. Returns True if on_change fired."""
        value = await self.read_value()
        edge = self.watched.observe(value)
        if edge is None:
            return False
        previous, current = edge
        key = self.dedup_key(previous, current)
        if not self.deduper.should_notify(key):
            self.suppressed += 1
            self._log("change_suppressed", watcher=self.name, key=key)
            return False

        self._log("value_changed", watcher=self.name, previous=previous, current=current)
        result = self.on_change(previous, current)
        if asyncio.iscoroutine(result):
            await result
        self.watched.last_acted_on = current
        self.fired += 1
        return True
