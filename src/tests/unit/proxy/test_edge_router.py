"""Tests for host-based routing."""

import pytest

from cloudbay.app.config import NetworkConfig, Settings
from cloudbay.app.proxy.router import EdgeRouter, RouteKind, Target, normalize_host
from cloudbay.core.domain import ResourceStatus
from cloudbay.core.errors import ResourceNotFoundError, ValidationError
from cloudbay.core.models import Resource


@pytest.fixture
def edge_settings(settings: Settings) -> Settings:
    return settings.model_copy(
        update={
            "network": NetworkConfig(
                base_domain="iaasapp.pro",
                vm_host="10.0.0.5",
                api_service_url="http://api.internal:5001/",
                frontend_service_url="http://web.internal:3000",
            )
        }
    )


@pytest.fixture
def edge_router(session_factory, edge_settings: Settings) -> EdgeRouter:
    return EdgeRouter(session_factory, edge_settings)


async def _add_resource(session_factory, **kwargs) -> Resource:
    values = {
        "id": "01HRES",
        "project_id": "proj-1",
        "name": "nextjs-shop-1a2b",
        "subdomain": "nextjs-shop-1a2b",
        "host_port": 30001,
        "status": ResourceStatus.DEPLOYED,
    }
    values.update(kwargs)
    resource = Resource(**values)
    async with session_factory() as db:
        db.add(resource)
        await db.commit()
    return resource


class TestNormalizeHost:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("Shop.IaaSApp.pro", "shop.iaasapp.pro"),
            ("shop.iaasapp.pro:8080", "shop.iaasapp.pro"),
            ("shop.iaasapp.pro.", "shop.iaasapp.pro"),
            ("[::1]:8080", "[::1]"),
            ("", ""),
            (None, ""),
        ],
    )
    def test_normalize(self, raw: str | None, expected: str) -> None:
        assert normalize_host(raw) == expected


class TestResolve:
    @pytest.mark.parametrize("host", ["iaasapp.pro", "www.iaasapp.pro", "IAASAPP.PRO:443"])
    async def test_base_domain_goes_to_frontend(self, edge_router: EdgeRouter, host: str) -> None:
        target = await edge_router.resolve(host)

        assert target == Target(RouteKind.FRONTEND, "http://web.internal:3000")

    async def test_api_label(self, edge_router: EdgeRouter) -> None:
        target = await edge_router.resolve("api.iaasapp.pro")

        assert target.kind == RouteKind.API
        assert target.url == "http://api.internal:5001"

    async def test_dashboard_label(self, edge_router: EdgeRouter) -> None:
        target = await edge_router.resolve("dashboard.iaasapp.pro")

        assert target.kind == RouteKind.FRONTEND

    async def test_resource_subdomain(self, edge_router: EdgeRouter, session_factory) -> None:
        await _add_resource(session_factory)

        target = await edge_router.resolve("nextjs-shop-1a2b.iaasapp.pro")

        assert target.kind == RouteKind.RESOURCE
        assert target.url == "http://10.0.0.5:30001"
        assert target.resource_id == "01HRES"
        assert target.ws_url == "ws://10.0.0.5:30001"

    async def test_running_resource_is_routable(
        self, edge_router: EdgeRouter, session_factory
    ) -> None:
        await _add_resource(session_factory, status=ResourceStatus.RUNNING)

        target = await edge_router.resolve("nextjs-shop-1a2b.iaasapp.pro")

        assert target.resource_id == "01HRES"

    @pytest.mark.parametrize(
        "status", [ResourceStatus.STOPPED, ResourceStatus.CREATING, ResourceStatus.ERROR]
    )
    async def test_non_routable_status(
        self, edge_router: EdgeRouter, session_factory, status: ResourceStatus
    ) -> None:
        await _add_resource(session_factory, status=status)

        with pytest.raises(ResourceNotFoundError):
            await edge_router.resolve("nextjs-shop-1a2b.iaasapp.pro")

    async def test_unknown_subdomain(self, edge_router: EdgeRouter) -> None:
        with pytest.raises(ResourceNotFoundError, match="ghost.iaasapp.pro"):
            await edge_router.resolve("ghost.iaasapp.pro")

    async def test_missing_host(self, edge_router: EdgeRouter) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await edge_router.resolve(None)

        assert exc_info.value.status_code == 400

    async def test_status_change_applies_immediately(
        self, edge_router: EdgeRouter, session_factory
    ) -> None:
        resource = await _add_resource(session_factory)
        await edge_router.resolve("nextjs-shop-1a2b.iaasapp.pro")

        async with session_factory() as db:
            stored = await db.get(Resource, resource.id)
            stored.status = ResourceStatus.STOPPED
            await db.commit()

        with pytest.raises(ResourceNotFoundError):
            await edge_router.resolve("nextjs-shop-1a2b.iaasapp.pro")
