"""
Bounded-window replay of ledger events.

Only the most recent ``window_blocks`` ending at the current head are queried,
one eth_getLogs call per schema with a pause in between to keep the request
rate low against a throttled provider. Malformed entries are dropped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from vaultsync.core.errors import DecodeError
from vaultsync.infra.logging_cfg import event_logger
from vaultsync.infra.retry import FailureKind, RetryPolicy
from vaultsync.infra.rpc_client import AsyncRpc
from vaultsync.ledger.abi import address_topic
from vaultsync.ledger.events import EventSchema

log = logging.getLogger("vaultsync")


@dataclass(frozen=True)
class ReplayConfig:
    window_blocks: int = 2000
    inter_query_pause_sec: float = 0.5
    # Filter deposit/withdraw logs to this account (indexed ``user`` topic)
    account: Optional[str] = None


@dataclass
class ReplayResult:
    events: List[Any] = field(default_factory=list)
    from_block: int = 0
    to_block: int = 0
    dropped: int = 0


class EventLogReplayer:
    def __init__(
        self,
        rpc: AsyncRpc,
        schemas: Sequence[EventSchema],
        config: Optional[ReplayConfig] = None,
        retry: Optional[RetryPolicy] = None,
        log_event: Optional[Callable[..., None]] = None,
        on_retry: Optional[Callable[[FailureKind], None]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.rpc = rpc
        self.schemas = list(schemas)
        self.cfg = config or ReplayConfig()
        self.retry = retry or RetryPolicy()
        self._log_event = log_event or event_logger(log, logging.DEBUG)
        self._on_retry = on_retry
        self._sleep = sleep

    def _topics(self, schema: EventSchema) -> List[Optional[str]]:
        topics: List[Optional[str]] = [schema.topic0]
        indexed = [i for i in schema.inputs if i.indexed]
        if self.cfg.account and indexed and indexed[0].abi_type == "address":
            topics.append(address_topic(self.cfg.account))
        return topics

    async def replay(self) -> ReplayResult:
        head = await self.retry.run(self.rpc.block_number, label="block_number", on_retry=self._on_retry)
        from_block = max(0, head - self.cfg.window_blocks)
        result = ReplayResult(from_block=from_block, to_block=head)

        for idx, schema in enumerate(self.schemas):
            if idx > 0 and self.cfg.inter_query_pause_sec > 0:
                await self._sleep(self.cfg.inter_query_pause_sec)
            topics = self._topics(schema)
            raw_logs = await self.retry.run(
                lambda: self.rpc.get_logs(schema.address, topics, from_block, head),
                label=f"get_logs:{schema.name}",
                on_retry=self._on_retry,
            )
            for raw in raw_logs:
                try:
                    result.events.append(schema.decode(raw))
                except DecodeError as exc:
                    result.dropped += 1
                    self._log_event("log_decode_failed", schema=schema.name, err=str(exc))

        self._log_event(
            "replay_complete",
            from_block=from_block,
            to_block=head,
            events=len(result.events),
            dropped=result.dropped,
        )
        return result
