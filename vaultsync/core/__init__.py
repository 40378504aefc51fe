"""
Core package.

This package contains the event bus and the error hierarchy shared by every layer.
"""

from vaultsync.core.errors import (
    ActionRevertedError,
    ConfirmationTimeoutError,
    DecodeError,
    InvalidTransitionError,
    InvariantViolationError,
    RateLimitedError,
    RpcError,
    TransientNetworkError,
    VaultSyncError,
)
from vaultsync.core.event_bus import Event, EventBus, EventType, Subscription

__all__ = [
    "EventBus",
    "EventType",
    "Event",
    "Subscription",
    "VaultSyncError",
    "RateLimitedError",
    "TransientNetworkError",
    "RpcError",
    "DecodeError",
    "ActionRevertedError",
    "ConfirmationTimeoutError",
    "InvariantViolationError",
    "InvalidTransitionError",
]
