"""Recent ModeChanged history from the vault."""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

from vaultsync.core.errors import DecodeError
from vaultsync.infra.logging_cfg import event_logger
from vaultsync.infra.retry import RetryPolicy
from vaultsync.infra.rpc_client import AsyncRpc
from vaultsync.ledger.events import EventSchema, ModeChange

log = logging.getLogger("vaultsync")


class ModeHistoryReader:
    def __init__(
        self,
        rpc: AsyncRpc,
        schema: EventSchema,
        retry: Optional[RetryPolicy] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.rpc = rpc
        self.schema = schema
        self.retry = retry or RetryPolicy()
        self._log = log_event or event_logger(log, logging.DEBUG)

    async def fetch(self, lookback_blocks: int = 1000) -> List[ModeChange]:
        """Decoded mode changes in the last ``lookback_blocks``, oldest first."""
        head = await self.retry.run(self.rpc.block_number, label="block_number")
        from_block = max(0, head - lookback_blocks)
        raw_logs = await self.retry.run(
            lambda: self.rpc.get_logs(self.schema.address, [self.schema.topic0], from_block, head),
            label="get_logs:ModeChanged",
        )
        changes: List[ModeChange] = []
        for raw in raw_logs:
            try:
                changes.append(self.schema.decode(raw))
            except DecodeError as exc:
                self._log("log_decode_failed", schema=self.schema.name, err=str(exc))
        changes.sort(key=lambda c: c.block_number)
        return changes

    async def latest(self, lookback_blocks: int = 100) -> Optional[ModeChange]:
        changes = await self.fetch(lookback_blocks)
        return changes[-1] if changes else None
