"""
Retry/backoff combinator used by every remote call site.

Rate-limited and transient network failures are retried with exponential
backoff (base_delay_ms * 2**attempt). Any other failure, or a retryable one
on the last attempt, is re-raised unchanged.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from vaultsync.core.errors import RateLimitedError, TransientNetworkError
from vaultsync.infra.logging_cfg import event_logger

log = logging.getLogger("vaultsync")

T = TypeVar("T")

_RATE_LIMIT_MARKERS = (
    "too many requests",
    "rate limit",
    "rate-limit",
    "exceeds defined limit",
)
# 429 counts only as a status or error code, never as digits inside hex data or block numbers
_HTTP_429 = re.compile(r"(?:\b(?:http|status|code|error)\b\W{0,3}\s*|^)429\b")


class FailureKind(Enum):
    RATE_LIMITED = auto()
    TRANSIENT = auto()
    OTHER = auto()


def _status_of(exc: BaseException) -> Optional[int]:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    for attr in ("status", "status_code"):
        val = getattr(exc, attr, None)
        if isinstance(val, int):
            return val
    return None


def is_rate_limited(exc: BaseException) -> bool:
    """True for HTTP 429 and provider-specific rate-limit errors, including chained causes."""
    seen = set()
    cur: Optional[BaseException] = exc
    while cur is not None and id(cur) not in seen:
        seen.add(id(cur))
        if isinstance(cur, RateLimitedError):
            return True
        if _status_of(cur) == 429:
            return True
        msg = str(cur).lower()
        if any(marker in msg for marker in _RATE_LIMIT_MARKERS):
            return True
        if _HTTP_429.search(msg):
            return True
        cur = cur.__cause__
    return False


def classify_failure(exc: BaseException) -> FailureKind:
    if is_rate_limited(exc):
        return FailureKind.RATE_LIMITED
    if isinstance(exc, (TransientNetworkError, httpx.TransportError, ConnectionError, asyncio.TimeoutError)):
        return FailureKind.TRANSIENT
    return FailureKind.OTHER


async def retrying_fetch(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 5,
    base_delay_ms: float = 2000,
    classify: Callable[[BaseException], FailureKind] = classify_failure,
    label: str = "rpc",
    log_event: Optional[Callable[..., None]] = None,
    on_retry: Optional[Callable[[FailureKind], None]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` with bounded retries.

    Args:
        operation: Zero-arg coroutine factory; called once per attempt
        max_retries: Total number of attempts
        base_delay_ms: Backoff base; attempt n sleeps base * 2**n
        classify: Maps an exception to a FailureKind
        label: Call-site name for logging
        log_event: Structured logging callback
        on_retry: Hook invoked before each backoff sleep (metrics)
        sleep: Injectable sleep for tests

    Returns:
        The operation's result.
    """
    attempts = max(1, int(max_retries))
    emit = log_event or event_logger(log, logging.WARNING)
    for attempt in range(attempts):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            kind = classify(exc)
            if kind is FailureKind.OTHER or attempt >= attempts - 1:
                raise
            delay_ms = base_delay_ms * (2 ** attempt)
            emit(
                "rpc_retry",
                where=label,
                kind=kind.name,
                attempt=attempt + 1,
                max_attempts=attempts,
                delay_ms=delay_ms,
                err=str(exc),
            )
            if on_retry:
                on_retry(kind)
            await sleep(delay_ms / 1000.0)
    raise RuntimeError("unreachable")  # pragma: no cover


@dataclass(frozen=True)
class RetryPolicy:
    """Retry parameters bound from configuration."""
    max_retries: int = 5
    base_delay_ms: float = 2000

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        label: str = "rpc",
        log_event: Optional[Callable[..., None]] = None,
        on_retry: Optional[Callable[[FailureKind], None]] = None,
    ) -> T:
        return await retrying_fetch(
            operation,
            max_retries=self.max_retries,
            base_delay_ms=self.base_delay_ms,
            label=label,
            log_event=log_event,
            on_retry=on_retry,
        )
