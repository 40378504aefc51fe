"""
Infrastructure package.

This package contains the JSON-RPC read client, transaction submission,
retry with backoff and logging configuration.
"""

from vaultsync.infra.logging_cfg import build_logger, event_logger
from vaultsync.infra.retry import FailureKind, RetryPolicy, retrying_fetch
from vaultsync.infra.rpc_client import AsyncRpc
from vaultsync.infra.tx_executor import AsyncTxExecutor, NonceCoordinator, Receipt, TxHandle

__all__ = [
    "AsyncRpc",
    "AsyncTxExecutor",
    "NonceCoordinator",
    "TxHandle",
    "Receipt",
    "FailureKind",
    "RetryPolicy",
    "retrying_fetch",
    "build_logger",
    "event_logger",
]
