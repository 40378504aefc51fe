"""
Minimal async JSON-RPC client for EVM read endpoints using HTTP/2.

Covers the read side only: head height, log queries, contract reads and
receipt lookups. Writes go through AsyncTxExecutor.
"""

from __future__ import annotations

import itertools
from typing import Any, Dict, List, Optional, Sequence

import httpx

from vaultsync.core.errors import RateLimitedError, RpcError, TransientNetworkError
from vaultsync.ledger import abi

# Provider codes used for throttling (EIP-1474 "limit exceeded" and common vendor codes)
_RATE_LIMIT_CODES = {-32005, -32090, 429}


class AsyncRpc:
    def __init__(self, rpc_url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None) -> None:
        self.rpc_url = rpc_url
        # If a shared client is passed in, we won't close it in close(); otherwise we own the client.
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(http2=True, timeout=timeout)
            self._owns_client = True
        self._ids = itertools.count(1)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def block_number(self) -> int:
        return int(await self._call("eth_blockNumber", []), 16)

    async def get_logs(
        self,
        address: str,
        topics: Sequence[Optional[str]],
        from_block: int,
        to_block: int,
    ) -> List[Dict[str, Any]]:
        """
        eth_getLogs for one contract over a closed block range.
        topics[0] is the event signature topic; later entries filter indexed args (None = any).
        """
        params = {
            "address": address,
            "topics": list(topics),
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
        }
        result = await self._call("eth_getLogs", [params])
        return list(result or [])

    async def read_value(
        self,
        address: str,
        signature: str,
        args: Sequence[Any] = (),
        returns: Sequence[str] = ("uint256",),
    ) -> Any:
        """
        eth_call a view function. Returns a single value for one return type, else a tuple.
        """
        data = abi.encode_call(signature, args)
        raw = await self._call("eth_call", [{"to": address, "data": data}, "latest"])
        decoded = abi.decode_result(returns, raw)
        return decoded[0] if len(decoded) == 1 else decoded

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self._call("eth_getTransactionReceipt", [tx_hash])

    async def _call(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            resp = await self.client.post(self.rpc_url, json=payload)
        except httpx.TimeoutException as exc:
            raise TransientNetworkError(f"{method} timed out") from exc
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"{method} transport error: {exc}") from exc
        if resp.status_code == 429:
            raise RateLimitedError(f"{method}: Too Many Requests")
        resp.raise_for_status()
        data = resp.json()
        # unwrap {"error": {...}} / {"result": ...}
        err = data.get("error") if isinstance(data, dict) else None
        if err:
            code = err.get("code")
            message = str(err.get("message", "rpc error"))
            lowered = message.lower()
            if code in _RATE_LIMIT_CODES or "rate limit" in lowered or "too many requests" in lowered:
                raise RateLimitedError(f"{method}: {message}")
            raise RpcError(f"{method}: {message}", code=code)
        return data.get("result") if isinstance(data, dict) else data
