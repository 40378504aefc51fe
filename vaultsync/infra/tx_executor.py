"""
Async action executor around a blocking web3 client using a shared thread pool.

submit() builds, signs and broadcasts one transaction; await_confirmation()
polls the async RPC for the receipt with an explicit deadline so the wait can
be cancelled with the rest of the controller. Rate-limited or transient poll
failures are logged and polled again until that deadline. Submissions are
never retried here; a failed action is reported to the calling controller.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence

from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError

from vaultsync.core.errors import ActionRevertedError, ConfirmationTimeoutError
from vaultsync.infra.retry import FailureKind, classify_failure
from vaultsync.infra.rpc_client import AsyncRpc
from vaultsync.ledger import abi

log = logging.getLogger("vaultsync")

_REVERT_MARKERS = ("revert", "execution reverted")


@dataclass(frozen=True)
class TxHandle:
    tx_hash: str
    target: str
    method: str
    submitted_at: float


@dataclass(frozen=True)
class Receipt:
    tx_hash: str
    block_number: int
    status: int
    gas_used: int = 0


class NonceCoordinator:
    def __init__(self) -> None:
        # map account -> asyncio.Lock
        self._locks: Dict[str, asyncio.Lock] = {}
        self._guard = asyncio.Lock()

    async def get_lock(self, account: str) -> asyncio.Lock:
        """Return the shared lock serialising submissions from ``account``."""
        async with self._guard:
            lock = self._locks.get(account)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[account] = lock
            return lock


class AsyncTxExecutor:
    def __init__(
        self,
        web3: Web3,
        signer: Any,
        rpc: AsyncRpc,
        chain_id: Optional[int] = None,
        timeout: float = 10.0,
        poll_interval: float = 2.0,
        max_workers: int = 4,
        nonces: Optional[NonceCoordinator] = None,
        on_retry: Optional[Callable[[FailureKind], None]] = None,
    ) -> None:
        self._w3 = web3
        self._signer = signer
        self._rpc = rpc
        self._chain_id = chain_id
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="vs-tx")
        self._nonces = nonces or NonceCoordinator()
        self._on_retry = on_retry

    @classmethod
    def from_settings(cls, cfg, rpc: AsyncRpc, on_retry: Optional[Callable[[FailureKind], None]] = None) -> "AsyncTxExecutor":
        w3 = Web3(Web3.HTTPProvider(cfg.rpc_url, request_kwargs={"timeout": cfg.http_timeout}))
        return cls(
            w3, cfg.resolve_signer(), rpc,
            chain_id=cfg.chain_id or None, timeout=cfg.http_timeout, on_retry=on_retry,
        )

    @property
    def account(self) -> str:
        return self._signer.address

    async def submit(self, target: str, signature: str, args: Sequence[Any] = ()) -> TxHandle:
        """Sign and broadcast ``signature(args)`` against ``target``."""
        data = abi.encode_call(signature, args)
        lock = await self._nonces.get_lock(self.account)
        async with lock:
            tx_hash = await self._call(lambda: self._send(target, data))
        log.info(json.dumps({"event": "action_submitted", "target": target, "method": signature, "tx": tx_hash}))
        return TxHandle(tx_hash=tx_hash, target=target, method=signature, submitted_at=time.time())

    async def await_confirmation(self, handle: TxHandle, timeout: float) -> Receipt:
        """Wait for the receipt, raising ConfirmationTimeoutError or ActionRevertedError."""
        deadline = time.monotonic() + timeout
        while True:
            raw = await self._poll_receipt(handle)
            if raw:
                receipt = Receipt(
                    tx_hash=handle.tx_hash,
                    block_number=_as_int(raw.get("blockNumber")),
                    status=_as_int(raw.get("status")),
                    gas_used=_as_int(raw.get("gasUsed")),
                )
                if receipt.status != 1:
                    raise ActionRevertedError(f"{handle.method} reverted", tx_hash=handle.tx_hash)
                return receipt
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ConfirmationTimeoutError(
                    f"{handle.method} not confirmed within {timeout:.0f}s", tx_hash=handle.tx_hash
                )
            await asyncio.sleep(min(self._poll_interval, remaining))

    async def execute(self, target: str, signature: str, args: Sequence[Any] = (), timeout: float = 120.0) -> Receipt:
        """submit() followed by await_confirmation()."""
        handle = await self.submit(target, signature, args)
        return await self.await_confirmation(handle, timeout)

    async def close(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _send(self, target: str, data: str) -> str:
        w3 = self._w3
        sender = self._signer.address
        tx: Dict[str, Any] = {
            "from": sender,
            "to": Web3.to_checksum_address(target),
            "data": data,
            "value": 0,
            "nonce": w3.eth.get_transaction_count(sender, "pending"),
            "chainId": self._chain_id or w3.eth.chain_id,
            "gasPrice": w3.eth.gas_price,
        }
        try:
            tx["gas"] = w3.eth.estimate_gas(tx)
        except ContractLogicError as exc:
            raise ActionRevertedError(f"estimation reverted: {exc}") from exc
        signed = Account.sign_transaction(tx, self._signer.key)
        tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
        return Web3.to_hex(tx_hash)

    async def _poll_receipt(self, handle: TxHandle) -> Optional[Dict[str, Any]]:
        # a rate-limited or dropped poll counts as "not yet mined"; the deadline still bounds the wait
        try:
            return await self._rpc.get_transaction_receipt(handle.tx_hash)
        except Exception as exc:
            kind = classify_failure(exc)
            if kind is FailureKind.OTHER:
                raise
            log.warning(json.dumps({
                "event": "receipt_poll_failed", "tx": handle.tx_hash, "kind": kind.name.lower(), "err": str(exc),
            }))
            if self._on_retry is not None:
                self._on_retry(kind)
            return None

    async def _call(self, fn) -> Any:
        loop = asyncio.get_running_loop()
        fut = loop.run_in_executor(self._executor, fn)
        try:
            try:
                return await asyncio.wait_for(asyncio.shield(fut), timeout=self._timeout)
            except asyncio.TimeoutError:
                # the worker thread cannot be interrupted; keep the caller (and its nonce lock) until it returns
                log.warning(json.dumps({"event": "action_submit_slow", "timeout_sec": self._timeout}))
                return await fut
        except ActionRevertedError:
            raise
        except Exception as exc:
            if any(marker in str(exc).lower() for marker in _REVERT_MARKERS):
                raise ActionRevertedError(str(exc)) from exc
            raise


def _as_int(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)
