from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from chatpipe.core.config import get_settings
from chatpipe.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

T = TypeVar("T")

TransientException = (TimeoutError, asyncio.TimeoutError, OSError)


def default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures and 5xx/429 responses.
    if isinstance(exc, TransientException):
        return True
    retryable = getattr(exc, "retryable", None)
    if isinstance(retryable, bool):
        return retryable
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and (status >= 500 or status == 429):
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def delivery_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.delivery_timeout_ms,
        max_attempts=settings.delivery_retry_max_attempts,
        backoff_ms=settings.delivery_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    # Retry helper with jittered backoff for transient failures only.
    retryable = retryable or default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            increment_counter("external_retries_total")
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            logger.info("external_retry attempt=%s sleep_s=%.3f error=%s", attempt, sleep_s, type(exc).__name__)
            await sleep(sleep_s)
            attempt += 1


async def timed_call(integration: str, func: Callable[[], Awaitable[T]]) -> T:
    # Record latency and success of one external call, whatever its outcome.
    started = time.monotonic()
    success = False
    try:
        result = await func()
        success = True
        return result
    finally:
        record_external_call(
            integration=integration,
            latency_ms=(time.monotonic() - started) * 1000.0,
            success=success,
        )
