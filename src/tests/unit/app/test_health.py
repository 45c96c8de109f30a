"""Tests for the control-plane app endpoints."""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from cloudbay import __version__
from cloudbay.app.main import create_app
from cloudbay.services.platform import Platform


@pytest.fixture
def platform(engine, mock_driver: AsyncMock) -> Platform:
    return Platform(driver=mock_driver, engine=engine, backups=MagicMock(), monitor=MagicMock())


@pytest.fixture
async def client(platform: Platform):
    app = create_app(platform=platform)
    async with app.router.lifespan_context(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as test_client:
            yield test_client


class TestHealth:
    async def test_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "version": __version__,
            "services": {"database": "connected", "docker": "connected"},
        }

    async def test_driver_unreachable(
        self, client: httpx.AsyncClient, mock_driver: AsyncMock
    ) -> None:
        mock_driver.ping.return_value = False

        body = (await client.get("/health")).json()

        assert body["status"] == "degraded"
        assert body["services"]["docker"] == "disconnected"

    async def test_driver_error(self, client: httpx.AsyncClient, mock_driver: AsyncMock) -> None:
        mock_driver.ping.side_effect = OSError("socket missing")

        body = (await client.get("/health")).json()

        assert body["status"] == "degraded"
        assert body["services"]["docker"] == "error: socket missing"

    async def test_startup_checks_driver(self, client: httpx.AsyncClient, mock_driver: AsyncMock) -> None:
        mock_driver.ping.assert_awaited()


class TestMetrics:
    async def test_metrics_exposed(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "cloudbay_" in response.text
