"""Service container: one driver injected into every consumer."""

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cloudbay.adapters.driver import create_driver
from cloudbay.app.config import Settings, get_settings
from cloudbay.core.interfaces import Driver
from cloudbay.infra.tls import TLSRegistrar
from cloudbay.services.backup import BackupManager
from cloudbay.services.monitor import ResourceMonitor
from cloudbay.services.provisioning import ProvisioningEngine


@dataclass
class Platform:
    driver: Driver
    engine: ProvisioningEngine
    backups: BackupManager
    monitor: ResourceMonitor

    async def close(self) -> None:
        await self.engine.workflows.drain()
        await self.driver.close()


def build_platform(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings | None = None,
    driver: Driver | None = None,
) -> Platform:
    settings = settings or get_settings()
    driver = driver or create_driver(settings)
    engine = ProvisioningEngine(
        driver,
        session_factory,
        settings=settings,
        tls=TLSRegistrar(settings.tls),
    )
    return Platform(
        driver=driver,
        engine=engine,
        backups=BackupManager(engine, session_factory, settings),
        monitor=ResourceMonitor(engine, session_factory, settings),
    )
