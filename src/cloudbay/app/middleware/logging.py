"""Request logging middleware.

Provides canonical log line per request with trace ID propagation.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from cloudbay.app.config import get_settings
from cloudbay.app.logging import clear_trace_context, set_trace_id
from cloudbay.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)

_QUIET_PATHS = frozenset({"/health", "/metrics"})


class LoggingMiddleware(BaseHTTPMiddleware):
    """One log line per request; X-Trace-ID taken from the request or generated.

    Usage:
        app.add_middleware(LoggingMiddleware)
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        trace_id = set_trace_id(request.headers.get("x-trace-id"))
        slow_threshold_ms = get_settings().logging.slow_threshold_ms

        start = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.monotonic() - start) * 1000
            logger.error(
                "Request failed",
                extra={
                    "event": LogEvent.REQUEST_FAILED,
                    "method": request.method,
                    "path": request.url.path,
                    "host": request.headers.get("host"),
                    "duration_ms": duration_ms,
                    "trace_id": trace_id,
                },
            )
            raise
        finally:
            clear_trace_context()

        duration_ms = (time.monotonic() - start) * 1000

        if request.url.path not in _QUIET_PATHS:
            logger.info(
                "Request completed",
                extra={
                    "event": LogEvent.REQUEST_COMPLETE,
                    "method": request.method,
                    "path": request.url.path,
                    "host": request.headers.get("host"),
                    "status": response.status_code,
                    "duration_ms": duration_ms,
                    "trace_id": trace_id,
                },
            )

            if duration_ms > slow_threshold_ms:
                logger.warning(
                    "Slow request detected",
                    extra={
                        "event": LogEvent.REQUEST_SLOW,
                        "method": request.method,
                        "path": request.url.path,
                        "status": response.status_code,
                        "duration_ms": duration_ms,
                        "threshold_ms": slow_threshold_ms,
                        "trace_id": trace_id,
                    },
                )

        response.headers["X-Trace-ID"] = trace_id
        return response
