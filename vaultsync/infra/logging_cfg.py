"""
Structured logging setup for the vault controller.

- Rich console output for operators
- JSON lines to a file, written by a background thread so the event loop never blocks
- Throttling for events that repeat while an RPC provider is degraded
"""

from __future__ import annotations

import atexit
import json
import logging
import queue
import sys
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from rich.logging import RichHandler

DEFAULT_THROTTLED_EVENTS = frozenset({"rpc_retry", "tick_skipped", "log_decode_failed"})


class JsonFormatter(logging.Formatter):
    """Compact JSON formatter for structured log ingestion."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": record.created,
            "ts_iso": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "name": record.name,
        }
        msg = record.getMessage()
        # Inline structured events instead of double-encoding them
        try:
            body = json.loads(msg)
        except (json.JSONDecodeError, TypeError):
            body = None
        if isinstance(body, dict):
            payload.update(body)
        else:
            payload["msg"] = msg
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"), default=str)


class AsyncQueueHandler(logging.Handler):
    """
    Non-blocking handler: records are queued and written by a daemon thread.
    Records are dropped (and counted) when the queue is full.
    """

    def __init__(self, target_handler: logging.Handler, max_queue_size: int = 10000):
        super().__init__()
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._target = target_handler
        self._shutdown = False
        self._dropped = 0
        self._thread = threading.Thread(target=self._worker, daemon=True, name="vs-log-writer")
        self._thread.start()
        atexit.register(self.close)

    @property
    def dropped(self) -> int:
        return self._dropped

    def emit(self, record: logging.LogRecord) -> None:
        if self._shutdown:
            return
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self._dropped += 1

    def _worker(self) -> None:
        while not self._shutdown or not self._queue.empty():
            try:
                record = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self._target.handle(record)
            except Exception:
                self.handleError(record)
            finally:
                self._queue.task_done()

    def close(self) -> None:
        if self._shutdown:
            return
        self._shutdown = True
        if self._thread.is_alive():
            self._thread.join(timeout=2.0)
        if self._dropped > 0:
            sys.stderr.write(f"[logging] dropped {self._dropped} log records (queue full)\n")
        self._target.close()
        super().close()


class ThrottledFilter(logging.Filter):
    """
    Lets the first occurrence of a throttled event through, then suppresses
    repeats with the same key for ``cooldown_sec``.
    """

    def __init__(self, cooldown_sec: float = 30.0, throttled_events: Optional[Set[str]] = None, clock=time.time):
        super().__init__()
        self._cooldown = cooldown_sec
        self._last_seen: Dict[str, float] = {}
        self._throttled_events = set(throttled_events or DEFAULT_THROTTLED_EVENTS)
        self._clock = clock

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            data = json.loads(record.getMessage())
        except (json.JSONDecodeError, TypeError):
            return True
        if not isinstance(data, dict):
            return True
        event = data.get("event", "")
        if event not in self._throttled_events:
            return True

        now = self._clock()
        key = f"{event}:{data.get('where', data.get('loop', ''))}"
        if now - self._last_seen.get(key, float("-inf")) < self._cooldown:
            return False
        self._last_seen[key] = now
        return True


def build_logger(
    name: str = "vaultsync",
    level: int = logging.INFO,
    file_path: Optional[str] = "vaultsync.log",
    async_file: bool = True,
    throttle: bool = True,
) -> logging.Logger:
    """
    Configure the service logger. Idempotent: a second call only adjusts levels.

    Args:
        name: Logger name
        level: Minimum log level
        file_path: JSON log file (None disables file logging)
        async_file: Write the file from a background thread
        throttle: Apply ThrottledFilter to the console handler
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        for h in logger.handlers:
            h.setLevel(level)
        return logger

    console = RichHandler(
        rich_tracebacks=False,
        show_time=True,
        show_level=True,
        show_path=False,
        markup=False,
    )
    console.setLevel(level)
    console.setFormatter(logging.Formatter("%(message)s"))
    if throttle:
        console.addFilter(ThrottledFilter(cooldown_sec=30.0))
    logger.addHandler(console)

    if file_path:
        file_handler = logging.FileHandler(file_path)
        file_handler.setFormatter(JsonFormatter())
        file_handler.setLevel(level)
        if async_file:
            handler: logging.Handler = AsyncQueueHandler(file_handler)
            handler.setLevel(level)
            logger.addHandler(handler)
        else:
            logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **data: Any) -> None:
    """
    Log a structured event.

    Usage:
        log_event(log, "rebalance_executed", price=1.02, profile="Balanced")
    """
    logger.log(level, json.dumps({"event": event, **data}, default=str))


def event_logger(logger: logging.Logger, level: int = logging.INFO):
    """Bind ``logger`` into the ``log_event(event, **fields)`` callback components accept."""

    def _emit(event: str, **data: Any) -> None:
        log_event(logger, event, level=level, **data)

    return _emit
