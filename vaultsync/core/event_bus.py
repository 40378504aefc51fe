"""
Event Bus: fan-out of controller outcomes to observers (alerts, metrics, UI feeds).

Watchers and controllers publish; observers subscribe per event type or
globally. Delivery is asynchronous through a queue drained by start(), so a
slow or failing observer never blocks a control loop.

Features:
- Async or sync handlers
- Priority-ordered delivery
- Error isolation (one handler failure doesn't stop others)
- Bounded event history for inspection
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Coroutine, Deque, Dict, List, Optional, Union

from vaultsync.infra.logging_cfg import event_logger

log = logging.getLogger("vaultsync")


class EventType(Enum):
    """
    Event types carried by the bus.

    Naming convention: NOUN_VERB for state changes.
    """
    # Ledger
    BALANCES_RECONCILED = auto()   # New balance snapshot published
    INVARIANT_VIOLATION = auto()   # Reconciled balances do not sum to the total

    # Watched signals
    MODE_CHANGED = auto()          # Vault mode transition observed
    BEST_CHAIN_CHANGED = auto()    # bestChain differs from activeChain (deduplicated)
    SIGNAL_CHANGED = auto()        # Generic watched-value change

    # Actions
    REBALANCE_EXECUTED = auto()
    REBALANCE_FAILED = auto()
    CHAIN_SWITCHED = auto()
    CHAIN_SWITCH_FAILED = auto()
    ORACLE_SYNCED = auto()
    ORACLE_SYNC_FAILED = auto()

    # System
    SERVICE_STARTED = auto()
    SERVICE_STOPPED = auto()


@dataclass
class Event:
    type: EventType
    data: Dict[str, Any]
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    source: Optional[str] = None

    def __str__(self) -> str:
        return f"Event({self.type.name}, ts={self.timestamp_ms}, source={self.source})"


Handler = Union[
    Callable[[Event], Coroutine[Any, Any, None]],
    Callable[[Event], None],
]


@dataclass
class Subscription:
    """Internal subscription record."""
    handler: Handler
    priority: int = 0  # Higher = called first
    filter_fn: Optional[Callable[[Event], bool]] = None
    name: Optional[str] = None


class EventBus:
    """
    Usage:
        bus = EventBus()
        bus.subscribe(EventType.MODE_CHANGED, alerts.on_mode_changed)
        task = asyncio.create_task(bus.start())
        await bus.emit(EventType.MODE_CHANGED, source="mode_watcher", new_mode=1)
        bus.stop()
    """

    DEFAULT_HISTORY_SIZE = 500

    def __init__(
        self,
        history_size: int = DEFAULT_HISTORY_SIZE,
        queue_size: int = 0,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._log = log_event or event_logger(log, logging.DEBUG)
        self._subscribers: Dict[EventType, List[Subscription]] = {}
        self._global_subscribers: List[Subscription] = []
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max(0, queue_size))
        self._running = False
        self._history: Deque[Event] = deque(maxlen=history_size if history_size > 0 else None)
        self._history_enabled = history_size > 0
        self._stats = {
            "events_published": 0,
            "events_processed": 0,
            "events_dropped": 0,
            "handler_errors": 0,
        }

    # -------------------------------------------------------------------------
    # Subscription Management
    # -------------------------------------------------------------------------

    @staticmethod
    def _insert_by_priority(subs: List[Subscription], sub: Subscription) -> None:
        idx = len(subs)
        for i, existing in enumerate(subs):
            if existing.priority < sub.priority:
                idx = i
                break
        subs.insert(idx, sub)

    def subscribe(
        self,
        event_type: EventType,
        handler: Handler,
        priority: int = 0,
        filter_fn: Optional[Callable[[Event], bool]] = None,
        name: Optional[str] = None,
    ) -> Subscription:
        """
        Subscribe to a specific event type.

        Args:
            event_type: Type of events to receive
            handler: Async or sync function to handle events
            priority: Higher priority handlers called first (default 0)
            filter_fn: Optional predicate on the event
            name: Optional name for logging

        Returns:
            Subscription object (for unsubscribing)
        """
        sub = Subscription(handler=handler, priority=priority, filter_fn=filter_fn, name=name)
        subs = self._subscribers.setdefault(event_type, [])
        self._insert_by_priority(subs, sub)
        self._log(
            "event_bus_subscribe",
            event_type=event_type.name,
            handler_name=name or getattr(handler, "__name__", "handler"),
            priority=priority,
        )
        return sub

    def subscribe_all(self, handler: Handler, priority: int = 0, name: Optional[str] = None) -> Subscription:
        """Global subscribers see every event, before type-specific ones."""
        sub = Subscription(handler=handler, priority=priority, name=name)
        self._insert_by_priority(self._global_subscribers, sub)
        return sub

    def unsubscribe(self, event_type: Optional[EventType], subscription: Subscription) -> bool:
        subs = self._global_subscribers if event_type is None else self._subscribers.get(event_type, [])
        if subscription in subs:
            subs.remove(subscription)
            return True
        return False

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    async def publish(self, event: Event) -> bool:
        """Queue ``event`` for delivery. Returns False if the queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._stats["events_dropped"] += 1
            self._log("event_bus_queue_full", event_type=event.type.name)
            return False
        self._stats["events_published"] += 1
        return True

    async def emit(self, event_type: EventType, source: Optional[str] = None, **data: Any) -> bool:
        """Create and publish an event in one call."""
        return await self.publish(Event(type=event_type, data=data, source=source))

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Deliver queued events until stop() or cancellation."""
        self._running = True
        self._log("event_bus_started")
        try:
            while self._running:
                try:
                    event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue
                await self._process_event(event)
        finally:
            self._running = False
            self._log("event_bus_stopped")

    async def _process_event(self, event: Event) -> None:
        if self._history_enabled:
            self._history.append(event)

        handlers: List[Subscription] = [*self._global_subscribers, *self._subscribers.get(event.type, [])]
        for sub in handlers:
            if sub.filter_fn and not sub.filter_fn(event):
                continue
            try:
                if asyncio.iscoroutinefunction(sub.handler):
                    await sub.handler(event)
                else:
                    sub.handler(event)
            except Exception as e:
                self._stats["handler_errors"] += 1
                self._log(
                    "event_bus_handler_error",
                    event_type=event.type.name,
                    handler_name=sub.name or "unknown",
                    error=str(e),
                    error_type=type(e).__name__,
                )
        self._stats["events_processed"] += 1

    def stop(self) -> None:
        self._running = False

    async def drain(self, timeout: float = 5.0) -> int:
        """
        Deliver everything currently queued.

        Returns:
            Number of events processed
        """
        count = 0
        deadline = time.time() + timeout
        while not self._queue.empty() and time.time() < deadline:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            await self._process_event(event)
            count += 1
        return count

    # -------------------------------------------------------------------------
    # Query
    # -------------------------------------------------------------------------

    def get_history(self, event_type: Optional[EventType] = None, limit: int = 100) -> List[Event]:
        events = list(self._history)
        if event_type:
            events = [e for e in events if e.type == event_type]
        return events[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "queue_size": self._queue.qsize(),
            "history_size": len(self._history),
            "subscriber_count": sum(len(s) for s in self._subscribers.values()),
            "running": self._running,
        }

    def get_subscriber_count(self, event_type: EventType) -> int:
        return len(self._subscribers.get(event_type, []))
