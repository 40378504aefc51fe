"""
Controller state machine shared by every corrective-action controller.

    IDLE ──> DECIDING ──> EXECUTING ──> COOLDOWN ──> IDLE
               │              │
               └──> IDLE <────┘ (nothing to do / attempt failed)

There is no terminal state. COOLDOWN expires into IDLE lazily the next time the
state is read, so no timer task is needed. try_begin() is synchronous: the
check and the IDLE -> DECIDING move happen without a suspension point, which
is what keeps two overlapping ticks from both reaching EXECUTING.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Callable, Deque, Dict, List, Optional

from vaultsync.core.errors import InvalidTransitionError
from vaultsync.infra.logging_cfg import event_logger

log = logging.getLogger("vaultsync")


class ControllerState(Enum):
    IDLE = auto()
    DECIDING = auto()
    EXECUTING = auto()
    COOLDOWN = auto()


VALID_TRANSITIONS: Dict[ControllerState, List[ControllerState]] = {
    ControllerState.IDLE: [ControllerState.DECIDING],
    ControllerState.DECIDING: [
        ControllerState.IDLE,       # guard rejected or read failed
        ControllerState.EXECUTING,
    ],
    ControllerState.EXECUTING: [
        ControllerState.COOLDOWN,   # success
        ControllerState.IDLE,       # failure, retried next eligible tick
    ],
    ControllerState.COOLDOWN: [ControllerState.IDLE],
}


@dataclass
class StateTransition:
    from_state: ControllerState
    to_state: ControllerState
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    reason: Optional[str] = None


class ControllerStateMachine:
    def __init__(
        self,
        name: str,
        cooldown_sec: float = 5.0,
        history_size: int = 100,
        clock: Callable[[], float] = time.monotonic,
        log_event: Optional[Callable[..., None]] = None,
        on_state_change: Optional[Callable[[str, ControllerState, ControllerState], None]] = None,
    ) -> None:
        self.name = name
        self.cooldown_sec = cooldown_sec
        self._clock = clock
        self._log = log_event or event_logger(log, logging.DEBUG)
        self._on_state_change = on_state_change
        self._state = ControllerState.IDLE
        self._cooldown_until = 0.0
        self.history: Deque[StateTransition] = deque(maxlen=history_size)

    @property
    def state(self) -> ControllerState:
        if self._state is ControllerState.COOLDOWN and self._clock() >= self._cooldown_until:
            self._move(ControllerState.IDLE, "cooldown_elapsed")
        return self._state

    @property
    def is_idle(self) -> bool:
        return self.state is ControllerState.IDLE

    @property
    def in_flight(self) -> bool:
        return self.state in (ControllerState.DECIDING, ControllerState.EXECUTING)

    def can_transition(self, to_state: ControllerState) -> bool:
        return to_state in VALID_TRANSITIONS[self.state]

    def transition(self, to_state: ControllerState, reason: Optional[str] = None) -> None:
        current = self.state
        if to_state not in VALID_TRANSITIONS[current]:
            self._log("invalid_transition_blocked", controller=self.name, current=current.name, target=to_state.name)
            raise InvalidTransitionError(f"{self.name}: {current.name} -> {to_state.name}")
        self._move(to_state, reason)

    def try_begin(self) -> bool:
        """IDLE -> DECIDING if idle; False when anything is in flight or cooling down."""
        if self.state is not ControllerState.IDLE:
            return False
        self._move(ControllerState.DECIDING, "tick")
        return True

    def start_cooldown(self, reason: Optional[str] = None) -> None:
        self._cooldown_until = self._clock() + self.cooldown_sec
        self.transition(ControllerState.COOLDOWN, reason)

    def reset(self, reason: Optional[str] = None) -> None:
        """Return to IDLE from DECIDING or EXECUTING."""
        if self._state is not ControllerState.IDLE:
            self.transition(ControllerState.IDLE, reason)

    def _move(self, to_state: ControllerState, reason: Optional[str]) -> None:
        previous = self._state
        self._state = to_state
        self.history.append(StateTransition(from_state=previous, to_state=to_state, reason=reason))
        self._log(
            "controller_state",
            controller=self.name,
            from_state=previous.name,
            to_state=to_state.name,
            reason=reason,
        )
        if self._on_state_change:
            self._on_state_change(self.name, previous, to_state)
