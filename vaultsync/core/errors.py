"""
Error taxonomy shared by the read path, the action executor and the controllers.

Classification:
    RateLimitedError / TransientNetworkError  -> retried by retrying_fetch
    DecodeError                               -> single log entry dropped
    ActionRevertedError / ConfirmationTimeout -> attempt failed, controller returns to IDLE
    InvariantViolationError                   -> reconciliation sum mismatch (logged, raised in checks)
"""

from __future__ import annotations

from typing import Optional


class VaultSyncError(Exception):
    """Base class for controller errors."""


class RateLimitedError(VaultSyncError):
    """Remote source answered with HTTP 429 or a provider rate-limit code."""

    def __init__(self, message: str = "Too Many Requests", status: int = 429) -> None:
        super().__init__(message)
        self.status = status


class TransientNetworkError(VaultSyncError):
    """Connection reset, timeout or similar; safe to retry."""


class RpcError(VaultSyncError):
    """JSON-RPC error response that is not a rate limit."""

    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code


class DecodeError(VaultSyncError):
    """A raw log entry or call result does not match its schema."""


class ActionRevertedError(VaultSyncError):
    """Submitted action reverted on chain (or was rejected at estimation)."""

    def __init__(self, message: str, tx_hash: Optional[str] = None) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


class ConfirmationTimeoutError(VaultSyncError):
    """No receipt within the confirmation bound."""

    def __init__(self, message: str, tx_hash: Optional[str] = None) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


class InvariantViolationError(VaultSyncError):
    """Per-chain balances do not sum to the authoritative total, or one is negative."""


class InvalidTransitionError(VaultSyncError):
    """Controller state change not allowed from the current state."""
