"""HTTP and WebSocket transport to upstream targets.

Configuration via ProxyConfig (PROXY_ env prefix).
"""

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncGenerator

import httpx
import websockets
from fastapi import Request
from fastapi.responses import StreamingResponse
from starlette.websockets import WebSocket, WebSocketDisconnect
from websockets.asyncio.client import ClientConnection

from cloudbay.app.config import get_settings
from cloudbay.app.metrics.collector import PROXY_REQUEST_DURATION
from cloudbay.core.errors import UpstreamUnavailableError
from cloudbay.core.logging_schema import LogEvent

from .client import WS_HOP_BY_HOP_HEADERS, filter_headers, forwarded_headers, get_http_client
from .router import Target

logger = logging.getLogger(__name__)


async def _relay_client_to_backend(client_ws: WebSocket, backend_ws: ClientConnection) -> None:
    """Relay messages from client WebSocket to backend WebSocket."""
    while True:
        data = await client_ws.receive()
        if data["type"] == "websocket.receive":
            if data.get("text") is not None:
                await backend_ws.send(data["text"])
            elif data.get("bytes") is not None:
                await backend_ws.send(data["bytes"])
        elif data["type"] == "websocket.disconnect":
            # Ends the backend iterator in the sibling task
            await backend_ws.close()
            break


async def _relay_backend_to_client(client_ws: WebSocket, backend_ws: ClientConnection) -> None:
    """Relay messages from backend WebSocket to client WebSocket."""
    async for message in backend_ws:
        if isinstance(message, str):
            await client_ws.send_text(message)
        else:
            await client_ws.send_bytes(message)
    with contextlib.suppress(Exception):
        await client_ws.close()


def _target_path(path: str, query: str) -> str:
    target_path = f"/{path}" if path else "/"
    if query:
        target_path = f"{target_path}?{query}"
    return target_path


async def proxy_http_to_upstream(request: Request, target: Target, path: str) -> StreamingResponse:
    """Proxy HTTP request to upstream. Raises UpstreamUnavailableError on failure."""
    target_url = f"{target.url}{_target_path(path, request.url.query)}"

    headers = filter_headers(dict(request.headers))
    headers.update(forwarded_headers(request))
    http_client = await get_http_client()
    # Stream the body instead of buffering it
    content = request.stream() if request.method in ("POST", "PUT", "PATCH", "DELETE") else None

    start = time.monotonic()
    try:
        upstream_request = http_client.build_request(
            method=request.method,
            url=target_url,
            headers=headers,
            content=content,
        )
        upstream_response = await http_client.send(upstream_request, stream=True)
    except (httpx.ConnectError, httpx.TimeoutException, httpx.RemoteProtocolError) as exc:
        logger.warning(
            "Upstream unavailable",
            extra={
                "event": LogEvent.UPSTREAM_ERROR,
                "resource_id": target.resource_id,
                "target_url": target_url,
                "error_type": type(exc).__name__,
                "error": str(exc),
            },
        )
        raise UpstreamUnavailableError() from exc
    finally:
        PROXY_REQUEST_DURATION.labels(route=target.kind).observe(time.monotonic() - start)

    response_headers = filter_headers(dict(upstream_response.headers))

    async def stream_response() -> AsyncGenerator[bytes]:
        try:
            # aiter_raw keeps the upstream Content-Encoding intact
            async for chunk in upstream_response.aiter_raw():
                yield chunk
        finally:
            await upstream_response.aclose()

    return StreamingResponse(
        stream_response(),
        status_code=upstream_response.status_code,
        headers=response_headers,
    )


async def proxy_ws_to_upstream(websocket: WebSocket, target: Target, path: str) -> None:
    """Proxy WebSocket to upstream and relay messages both ways."""
    query_string = websocket.scope.get("query_string", b"").decode()
    upstream_ws_uri = f"{target.ws_url}{_target_path(path, query_string)}"
    proxy_config = get_settings().proxy

    extra_headers = {
        k: v for k, v in websocket.headers.items() if k.lower() not in WS_HOP_BY_HOP_HEADERS
    }
    extra_headers.update(forwarded_headers(websocket))

    try:
        backend_ws = await websockets.connect(
            upstream_ws_uri,
            additional_headers=extra_headers,
            ping_interval=proxy_config.ws_ping_interval,
            ping_timeout=proxy_config.ws_ping_timeout,
            max_size=proxy_config.ws_max_size,
            max_queue=proxy_config.ws_max_queue,
        )
    except (OSError, websockets.InvalidHandshake, websockets.InvalidURI, TimeoutError) as exc:
        logger.warning(
            "Failed to connect to upstream WebSocket",
            extra={
                "event": LogEvent.WS_ERROR,
                "resource_id": target.resource_id,
                "upstream_url": upstream_ws_uri,
                "error_type": type(exc).__name__,
                "error": str(exc),
            },
        )
        await websocket.close(code=1011, reason="Upstream connection failed")
        return

    await websocket.accept()
    try:
        async with backend_ws:
            try:
                async with asyncio.TaskGroup() as tg:
                    tg.create_task(_relay_client_to_backend(websocket, backend_ws))
                    tg.create_task(_relay_backend_to_client(websocket, backend_ws))
            except* WebSocketDisconnect:
                pass
            except* websockets.ConnectionClosed:
                pass
    except Exception as exc:
        logger.error(
            "WebSocket proxy error",
            extra={
                "event": LogEvent.WS_ERROR,
                "resource_id": target.resource_id,
                "upstream_url": upstream_ws_uri,
                "error_type": "relay_error",
                "error": str(exc),
            },
        )
    finally:
        with contextlib.suppress(Exception):
            await websocket.close()
