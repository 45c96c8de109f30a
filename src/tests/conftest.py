"""Shared fixtures: file-backed SQLite database, fast settings, mocked driver."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

import cloudbay.core.models  # noqa: F401  (registers tables)
from cloudbay.app.config import (
    DatabaseConfig,
    DriverConfig,
    ProvisioningConfig,
    Settings,
    TLSConfig,
)
from cloudbay.core.interfaces import Driver, DriverInfo, InstanceState
from cloudbay.services.provisioning import ProvisioningEngine


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with near-zero waits and storage under tmp_path."""
    return Settings(
        database=DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path}/cloudbay.sqlite"),
        provisioning=ProvisioningConfig(
            poll_interval=0.01,
            poll_timeout=0.2,
            settle_seconds=0,
            start_timeout=0.2,
            restart_delay=0,
            deploy_settle=0,
        ),
        driver=DriverConfig(
            storage_dir=str(tmp_path / "instances"),
            backup_dir=str(tmp_path / "backups"),
        ),
        tls=TLSConfig(enabled=False),
    )


@pytest.fixture
async def session_factory(settings: Settings):
    engine = create_async_engine(settings.database.url)
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def mock_driver(settings: Settings) -> AsyncMock:
    """Driver mock that provisions successfully: instances come up running at once."""
    storage_dir = Path(settings.driver.storage_dir)

    driver = AsyncMock(spec=Driver)
    driver.mode = "docker"
    driver.supports_snapshots = True
    driver.deploys_over_ssh = False
    driver.app_dir = "/app"
    driver.disk_path = MagicMock(side_effect=lambda name: str(storage_dir / name))
    driver.prepare = AsyncMock(side_effect=lambda spec: spec)
    driver.create_disk = AsyncMock(side_effect=lambda name, size_gb: str(storage_dir / name))
    driver.status = AsyncMock(return_value=InstanceState.RUNNING)
    driver.address = AsyncMock(return_value="127.0.0.1")
    # Entrypoint probes answer "yes"
    driver.exec = AsyncMock(return_value="yes\n")
    driver.stats = AsyncMock(return_value=None)
    driver.ping = AsyncMock(return_value=True)
    driver.info = MagicMock(
        return_value=DriverInfo(mode="docker", supports_snapshots=True, deploys_over_ssh=False)
    )
    return driver


@pytest.fixture
async def engine(mock_driver: AsyncMock, session_factory, settings: Settings):
    engine = ProvisioningEngine(mock_driver, session_factory, settings=settings)
    yield engine
    await engine.workflows.drain()
