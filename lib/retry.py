"""Exponential backoff with a pluggable retry predicate.

Usage:
    response = await with_retry(
        lambda: client.post(url, json=payload),
        max_attempts=3,
        should_retry=should_retry_error,
    )
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
from loguru import logger
from pydantic import ValidationError

from lib.errors import QuotaExceededError

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_INITIAL_DELAY = 1.0   # seconds
DEFAULT_MAX_DELAY = 32.0
DEFAULT_MULTIPLIER = 2.0

QUOTA_MARKERS = ("quota", "rate limit", "too many requests")
NETWORK_MARKERS = ("reset", "timeout", "timed out", "network", "socket hang up")


def get_status_code(error: BaseException) -> Optional[int]:
    """HTTP status attached to an error, if any."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    status = getattr(error, "status_code", None)
    return status if isinstance(status, int) else None


def is_quota_error(error: BaseException) -> bool:
    if get_status_code(error) == 429:
        return True
    message = str(error).lower()
    return any(marker in message for marker in QUOTA_MARKERS)


def is_retryable_network_error(error: BaseException) -> bool:
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return True
    if isinstance(error, (asyncio.TimeoutError, ConnectionResetError)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in NETWORK_MARKERS)


def should_retry_error(error: BaseException) -> bool:
    """Default classification: quota, transient network and 5xx are retried.

    Budget exhaustion, validation failures and 4xx other than 429 are not.
    """
    if isinstance(error, QuotaExceededError):
        return False
    if isinstance(error, (ValidationError, ValueError)):
        return False

    status = get_status_code(error)
    if status is not None:
        if status == 429:
            return True
        if 400 <= status < 500:
            return False
        if status >= 500:
            return True

    return is_quota_error(error) or is_retryable_network_error(error)


def compute_delay(
    attempt: int,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    multiplier: float = DEFAULT_MULTIPLIER,
) -> float:
    """Delay before the retry that follows failed attempt number `attempt` (1-based)."""
    return min(initial_delay * (multiplier ** (attempt - 1)), max_delay)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    multiplier: float = DEFAULT_MULTIPLIER,
    should_retry: Callable[[BaseException], bool] = should_retry_error,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> T:
    """Run `fn` until it succeeds, the predicate refuses, or attempts run out.

    The last error is re-raised unchanged.
    """
    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as e:
            if attempt >= max_attempts or not should_retry(e):
                raise

            delay = compute_delay(attempt, initial_delay, max_delay, multiplier)
            if on_retry:
                on_retry(attempt, e)
            else:
                logger.debug(f"Retry {attempt}/{max_attempts - 1} in {delay:.1f}s: {e}")
            await asyncio.sleep(delay)
            attempt += 1
