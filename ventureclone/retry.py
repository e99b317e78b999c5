"""Retry helpers for transient failures (LLM calls, outbound HTTP)."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

import httpx

from ventureclone.errors import LLMCallError

log = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRYABLE_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "etimedout",
    "econnreset",
    "econnrefused",
    "enotfound",
    "network",
    "connection",
    "rate limit",
    "quota",
    "resource_exhausted",
    "deadline_exceeded",
    "429",
    "502",
    "503",
    "504",
)


def is_retryable_error(exc: BaseException, patterns: tuple[str, ...] | None = None) -> bool:
    """Decide whether *exc* looks transient.

    ``LLMCallError`` carries its own verdict; anything else is judged by its
    type (timeouts, connection errors) or by matching *patterns* against the
    message and class name.
    """
    if isinstance(exc, LLMCallError):
        return exc.retryable
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, ConnectionError,
                        httpx.TimeoutException, httpx.NetworkError)):
        return True
    message = str(exc).lower()
    name = type(exc).__name__.lower()
    return any(p.lower() in message or p.lower() in name
               for p in (patterns or DEFAULT_RETRYABLE_PATTERNS))


@dataclass
class RetryResult(Generic[T]):
    success: bool
    data: T | None = None
    error: BaseException | None = None
    attempts: int = 0
    total_time: float = 0.0


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 2,
    delay: float = 0.1,
    multiplier: float = 2.0,
    max_delay: float = 10.0,
    patterns: tuple[str, ...] | None = None,
    on_retry: Callable[[BaseException, int], Any] | None = None,
) -> RetryResult[T]:
    """Await ``fn()`` up to *max_attempts* times with exponential backoff.

    Never raises for failures of *fn*; the outcome is reported in the
    returned :class:`RetryResult`. Non-retryable errors stop immediately.
    """
    start = time.monotonic()
    current_delay = delay
    last_error: BaseException | None = None
    attempt = 0
    for attempt in range(1, max_attempts + 1):
        try:
            data = await fn()
            return RetryResult(True, data, None, attempt, time.monotonic() - start)
        except Exception as exc:
            last_error = exc
            if attempt == max_attempts:
                break
            if not is_retryable_error(exc, patterns):
                log.info("Non-retryable error on attempt %d: %s", attempt, exc)
                break
            if on_retry is not None:
                on_retry(exc, attempt)
            log.warning("Retryable error on attempt %d/%d: %s (waiting %.2fs)",
                        attempt, max_attempts, exc, current_delay)
            await asyncio.sleep(current_delay)
            current_delay = min(current_delay * multiplier, max_delay)
    return RetryResult(False, None, last_error, attempt, time.monotonic() - start)


def retry_call(
    fn: Callable[[], T],
    *,
    max_attempts: int = 2,
    delay: float = 0.1,
    label: str = "operation",
) -> T:
    """Call ``fn()`` up to *max_attempts* times, sleeping ``delay * 2**(n-1)`` between tries.

    Every exception is retried; the last one is re-raised.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return fn()
        except Exception as exc:
            if attempt >= max_attempts:
                raise
            log.warning("%s attempt %d failed, retrying: %s", label, attempt, exc)
            time.sleep(delay * (2 ** (attempt - 1)))
    raise RuntimeError("unreachable")
