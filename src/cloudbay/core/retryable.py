"""Retryable error classification with exponential backoff retry.

Used for remote-shell connections and Docker API calls that can fail
transiently while an instance is still booting. Provisioning workflows
themselves never retry.

Usage:
    from cloudbay.core.retryable import with_retry

    client = await with_retry(lambda: connect(host), max_retries=3)
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx
import paramiko

from cloudbay.core.logging_schema import ErrorClass

logger = logging.getLogger(__name__)

T = TypeVar("T")


HTTPX_RETRYABLE = (
    httpx.ConnectError,
    httpx.ConnectTimeout,
    httpx.ReadTimeout,
    httpx.WriteTimeout,
    httpx.PoolTimeout,
)

# Authentication failures will not fix themselves on retry
SSH_NON_RETRYABLE = (
    paramiko.AuthenticationException,
    paramiko.BadHostKeyException,
)

SSH_RETRYABLE = (
    paramiko.SSHException,
    paramiko.ssh_exception.NoValidConnectionsError,
    ConnectionError,
    TimeoutError,
)


def is_httpx_retryable(exc: Exception) -> bool:
    """Check if httpx exception is retryable."""
    if isinstance(exc, HTTPX_RETRYABLE):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


def classify_error(exc: Exception) -> ErrorClass:
    """Classify error as transient, permanent or timeout."""
    if isinstance(exc, asyncio.TimeoutError):
        return ErrorClass.TIMEOUT
    if isinstance(exc, SSH_NON_RETRYABLE):
        return ErrorClass.PERMANENT
    if isinstance(exc, SSH_RETRYABLE):
        return ErrorClass.TRANSIENT
    if isinstance(exc, httpx.HTTPError):
        return ErrorClass.TRANSIENT if is_httpx_retryable(exc) else ErrorClass.PERMANENT
    if isinstance(exc, OSError):
        # Connection refused / host unreachable while the guest boots
        return ErrorClass.TRANSIENT
    return ErrorClass.PERMANENT


def is_retryable(exc: Exception) -> bool:
    return classify_error(exc) is not ErrorClass.PERMANENT


async def with_retry(
    coro_factory: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
) -> T:
    """Execute async operation with exponential backoff retry.

    Only transient errors are retried; permanent errors are raised
    immediately.

    Args:
        coro_factory: Factory function that creates a new coroutine per attempt
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay in seconds
        max_delay: Maximum delay in seconds

    Raises:
        Exception: The last exception if all retries fail, or immediately
                   for non-retryable errors
    """
    for attempt in range(max_retries + 1):
        try:
            return await coro_factory()
        except Exception as exc:
            error_class = classify_error(exc)

            if error_class is ErrorClass.PERMANENT:
                logger.warning(
                    "Permanent error (not retrying): %s",
                    exc,
                    extra={"error_class": error_class, "attempt": attempt + 1},
                )
                raise

            if attempt == max_retries:
                logger.error(
                    "Max retries exceeded (%d attempts): %s",
                    max_retries + 1,
                    exc,
                    extra={"error_class": error_class, "attempt": attempt + 1},
                )
                raise

            delay = min(base_delay * (2**attempt), max_delay)
            # 50% ~ 150% of delay
            jittered_delay = delay * (0.5 + random.random())
            logger.warning(
                "Retryable error (attempt %d/%d, retry in %.1fs): %s",
                attempt + 1,
                max_retries + 1,
                jittered_delay,
                exc,
                extra={
                    "error_class": error_class,
                    "attempt": attempt + 1,
                    "delay": jittered_delay,
                },
            )
            await asyncio.sleep(jittered_delay)

    raise RuntimeError("Unexpected state in with_retry")
