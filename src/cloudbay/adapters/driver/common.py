"""Helpers shared by driver implementations."""

import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx

from cloudbay.app.metrics.collector import DRIVER_OPERATION_DURATION
from cloudbay.core.errors import DriverError


@asynccontextmanager
async def track(mode: str, operation: str, instance: str = "") -> AsyncIterator[None]:
    """Time a substrate operation and convert transport errors to DriverError."""
    start = time.monotonic()
    status = "success"
    try:
        yield
    except httpx.HTTPStatusError as exc:
        status = "error"
        detail = _docker_message(exc.response)
        raise DriverError(f"{operation} {instance} failed: {detail}".strip()) from exc
    except httpx.HTTPError as exc:
        status = "error"
        raise DriverError(f"{operation} {instance} failed: {exc}".strip()) from exc
    except Exception:
        status = "error"
        raise
    finally:
        DRIVER_OPERATION_DURATION.labels(
            mode=mode, operation=operation, status=status
        ).observe(time.monotonic() - start)


def _docker_message(response: httpx.Response) -> str:
    try:
        return response.json().get("message") or response.text
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
