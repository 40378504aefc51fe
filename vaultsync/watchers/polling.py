"""
PollingLoop: fixed-interval timer that drives one tick coroutine.

A tick that raises is logged as ``tick_skipped`` and the loop carries on with
the next interval; cancellation always propagates so the supervisor can stop
every loop together.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from vaultsync.infra.logging_cfg import event_logger

log = logging.getLogger("vaultsync")


@dataclass
class PollingConfig:
    interval_sec: float = 30.0
    initial_delay_sec: float = 2.0
    # Extra random delay before the first tick so loops don't poll in lockstep
    jitter_sec: float = 0.0


class PollingLoop:
    def __init__(
        self,
        name: str,
        tick: Callable[[], Awaitable[Any]],
        config: Optional[PollingConfig] = None,
        log_event: Optional[Callable[..., None]] = None,
        on_skip: Optional[Callable[[str, BaseException], None]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.name = name
        self.tick = tick
        self.cfg = config or PollingConfig()
        self._log = log_event or event_logger(log, logging.WARNING)
        self._on_skip = on_skip
        self._sleep = sleep
        self._running = False
        self.ticks = 0
        self.skipped = 0

    @property
    def running(self) -> bool:
        return self._running

    def stop(self) -> None:
        self._running = False

    async def run_once(self) -> bool:
        """Run one tick. Returns False if the tick raised and was skipped."""
        self.ticks += 1
        try:
            await self.tick()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.skipped += 1
            self._log("tick_skipped", loop=self.name, err=str(exc), err_type=type(exc).__name__)
            if self._on_skip:
                self._on_skip(self.name, exc)
            return False
        return True

    async def run(self) -> None:
        self._running = True
        delay = self.cfg.initial_delay_sec
        if self.cfg.jitter_sec > 0:
            delay += random.uniform(0, self.cfg.jitter_sec)
        try:
            if delay > 0:
                await self._sleep(delay)
            while self._running:
                await self.run_once()
                if not self._running:
                    break
                await self._sleep(self.cfg.interval_sec)
        finally:
            self._running = False
