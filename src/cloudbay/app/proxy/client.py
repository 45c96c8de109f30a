"""HTTP client management for the edge proxy.

Provides a shared httpx AsyncClient for connection pooling and header filtering.
Configuration via ProxyConfig (PROXY_ env prefix).
"""

import httpx
from starlette.requests import HTTPConnection

from cloudbay.app.config import get_settings

# =============================================================================
# Constants
# =============================================================================

# HTTP hop-by-hop headers to remove before forwarding (RFC 7230)
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "host",
    }
)

# WebSocket hop-by-hop headers (RFC 7230 + websockets library handles)
WS_HOP_BY_HOP_HEADERS = HOP_BY_HOP_HEADERS | frozenset(
    {
        "sec-websocket-key",  # websockets library generates
        "sec-websocket-version",  # websockets library sets
        "sec-websocket-extensions",  # negotiated per connection
    }
)

# =============================================================================
# HTTP Client Management
# =============================================================================

# Shared httpx client for connection pooling
_http_client: httpx.AsyncClient | None = None


async def get_http_client() -> httpx.AsyncClient:
    """Get or create shared httpx AsyncClient."""
    global _http_client
    if _http_client is None:
        config = get_settings().proxy
        _http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=config.timeout_total,
                connect=config.timeout_connect,
                read=config.timeout_total,
                write=config.timeout_total,
                pool=config.timeout_pool,
            ),
            limits=httpx.Limits(
                max_connections=config.max_connections,
                max_keepalive_connections=config.max_keepalive,
                keepalive_expiry=config.keepalive_expiry,
            ),
        )
    return _http_client


async def close_http_client() -> None:
    """Close shared httpx client. Call on application shutdown."""
    global _http_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None


# =============================================================================
# Helper Functions
# =============================================================================


def filter_headers(headers: dict[str, str]) -> dict[str, str]:
    """Filter out hop-by-hop headers."""
    return {k: v for k, v in headers.items() if k.lower() not in HOP_BY_HOP_HEADERS}


def forwarded_headers(conn: HTTPConnection) -> dict[str, str]:
    """X-Forwarded-* headers describing the original client request."""
    headers = {
        "x-forwarded-host": conn.headers.get("host", ""),
        "x-forwarded-proto": conn.headers.get("x-forwarded-proto", conn.url.scheme),
    }
    if conn.client is not None:
        previous = conn.headers.get("x-forwarded-for")
        headers["x-forwarded-for"] = (
            f"{previous}, {conn.client.host}" if previous else conn.client.host
        )
    return headers
