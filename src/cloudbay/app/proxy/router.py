"""Host-based routing for the edge proxy.

    {base} / www.{base}   -> frontend service
    api.*                 -> API service
    dashboard.*           -> frontend service
    {subdomain}.*         -> resource published on {vm_host}:{host_port}

Resources are looked up on every request, so routing follows status changes
immediately.
"""

import logging
from dataclasses import dataclass
from enum import StrEnum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cloudbay.app.config import Settings, get_settings
from cloudbay.core.domain import ROUTABLE_STATUSES
from cloudbay.core.errors import ResourceNotFoundError, ValidationError
from cloudbay.core.models import Resource

logger = logging.getLogger(__name__)


class RouteKind(StrEnum):
    FRONTEND = "frontend"
    API = "api"
    RESOURCE = "resource"


@dataclass(frozen=True)
class Target:
    kind: RouteKind
    url: str  # http://host:port, no trailing slash
    resource_id: str | None = None

    @property
    def ws_url(self) -> str:
        return "ws" + self.url.removeprefix("http")


def normalize_host(host: str | None) -> str:
    """Lowercase host without port or trailing dot; empty if absent."""
    if not host:
        return ""
    host = host.strip().lower()
    if host.startswith("["):
        # IPv6 literal: [::1]:8080
        host = host.split("]", 1)[0] + "]"
    else:
        host = host.split(":", 1)[0]
    return host.rstrip(".")


class EdgeRouter:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._network = (settings or get_settings()).network

    async def resolve(self, host: str | None) -> Target:
        """Map a Host header to its forwarding target.

        Raises:
            ValidationError: no Host header (400)
            ResourceNotFoundError: unknown subdomain or resource not running (404)
        """
        hostname = normalize_host(host)
        if not hostname:
            raise ValidationError("Missing Host header")

        base_domain = self._network.base_domain.lower()
        if hostname in (base_domain, f"www.{base_domain}"):
            return Target(RouteKind.FRONTEND, self._network.frontend_service_url.rstrip("/"))

        label = hostname.split(".", 1)[0]
        if label == "api":
            return Target(RouteKind.API, self._network.api_service_url.rstrip("/"))
        if label == "dashboard":
            return Target(RouteKind.FRONTEND, self._network.frontend_service_url.rstrip("/"))

        async with self._session_factory() as db:
            result = await db.execute(select(Resource).where(Resource.subdomain == label))
            resource = result.scalar_one_or_none()

        if (
            resource is None
            or resource.host_port is None
            or resource.status not in ROUTABLE_STATUSES
        ):
            raise ResourceNotFoundError(f"No running resource for {hostname}")

        return Target(
            RouteKind.RESOURCE,
            f"http://{self._network.vm_host}:{resource.host_port}",
            resource_id=resource.id,
        )
