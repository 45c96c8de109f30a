"""Edge proxy routes.

Every path on every Host is forwarded; the target comes from
EdgeRouter.resolve(). Errors raised here are rendered by the app's
CloudbayError handler (400 / 404 / 502).
"""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
from starlette.websockets import WebSocket

from cloudbay.app.metrics.collector import PROXY_REQUESTS_TOTAL
from cloudbay.core.errors import CloudbayError, NotFoundError, UpstreamUnavailableError

from .router import EdgeRouter
from .transport import proxy_http_to_upstream, proxy_ws_to_upstream

logger = logging.getLogger(__name__)

router = APIRouter(tags=["proxy"])

_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]


def _outcome(exc: CloudbayError) -> str:
    if isinstance(exc, NotFoundError):
        return "not_found"
    if isinstance(exc, UpstreamUnavailableError):
        return "bad_gateway"
    return "bad_request"


def _edge_router(conn: Request | WebSocket) -> EdgeRouter:
    return conn.app.state.edge_router


@router.api_route("/{path:path}", methods=_METHODS, response_model=None)
async def proxy_http(path: str, request: Request) -> StreamingResponse:
    """Forward an HTTP request to the target selected by its Host header."""
    try:
        target = await _edge_router(request).resolve(request.headers.get("host"))
    except CloudbayError as exc:
        PROXY_REQUESTS_TOTAL.labels(route="unresolved", outcome=_outcome(exc)).inc()
        raise

    try:
        response = await proxy_http_to_upstream(request, target, path)
    except UpstreamUnavailableError as exc:
        PROXY_REQUESTS_TOTAL.labels(route=target.kind, outcome=_outcome(exc)).inc()
        raise

    PROXY_REQUESTS_TOTAL.labels(route=target.kind, outcome="forwarded").inc()
    return response


@router.websocket("/{path:path}")
async def proxy_websocket(websocket: WebSocket, path: str) -> None:
    """Forward a WebSocket upgrade to the target selected by its Host header."""
    try:
        target = await _edge_router(websocket).resolve(websocket.headers.get("host"))
    except CloudbayError as exc:
        PROXY_REQUESTS_TOTAL.labels(route="unresolved", outcome=_outcome(exc)).inc()
        # Closing before accept rejects the handshake
        await websocket.close(
            code=1008 if exc.status_code < 500 else 1011,
            reason=exc.message,
        )
        return

    PROXY_REQUESTS_TOTAL.labels(route=target.kind, outcome="forwarded").inc()
    await proxy_ws_to_upstream(websocket, target, path)
