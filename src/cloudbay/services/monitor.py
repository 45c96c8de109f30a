"""Resource usage: live stats from the driver and an append-only history."""

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cloudbay.app.config import Settings, get_settings
from cloudbay.core.domain import ROUTABLE_STATUSES
from cloudbay.core.errors import DriverError
from cloudbay.core.interfaces import InstanceStats
from cloudbay.core.logging_schema import LogEvent
from cloudbay.core.models import Resource, ResourceSample, utc_now
from cloudbay.services.provisioning import ProvisioningEngine

logger = logging.getLogger(__name__)


@dataclass
class UsageSummary:
    avg_cpu: float = 0.0
    avg_ram: float = 0.0
    max_cpu: float = 0.0
    max_ram: float = 0.0
    samples: int = 0
    # Only set for hours=0 (live reading)
    current: InstanceStats | None = None


class ResourceMonitor:
    def __init__(
        self,
        engine: ProvisioningEngine,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
    ) -> None:
        self._engine = engine
        self._driver = engine.driver
        self._session_factory = session_factory
        self._settings = settings or get_settings()

    async def current(
        self, resource_id: str, project_id: str | None = None
    ) -> InstanceStats | None:
        """Live CPU/RAM, or None when the substrate cannot tell."""
        resource = await self._engine.get_resource(resource_id, project_id)
        return await self._driver.stats(resource.name)

    async def history(
        self, resource_id: str, limit: int | None = None, project_id: str | None = None
    ) -> list[ResourceSample]:
        """Recorded samples, newest first, bounded by ``max_page_size``."""
        await self._engine.get_resource(resource_id, project_id)
        config = self._settings.monitor
        page_size = min(limit or config.default_page_size, config.max_page_size)
        stmt = (
            select(ResourceSample)
            .where(ResourceSample.resource_id == resource_id)
            .order_by(ResourceSample.timestamp.desc(), ResourceSample.id.desc())
            .limit(page_size)
        )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def log_resource_usage(self, resource_id: str, cpu: float, ram: float) -> ResourceSample:
        sample = ResourceSample(resource_id=resource_id, cpu_usage=cpu, ram_usage=ram)
        async with self._session_factory() as db:
            db.add(sample)
            await db.commit()
            await db.refresh(sample)
        return sample

    async def summary(
        self, resource_id: str, hours: float = 24, project_id: str | None = None
    ) -> UsageSummary:
        """Average and peak usage over the last ``hours``.

        ``hours=0`` returns the live reading instead of aggregates.
        """
        resource = await self._engine.get_resource(resource_id, project_id)
        if hours == 0:
            stats = await self._driver.stats(resource.name)
            if stats is not None:
                return UsageSummary(current=stats)

        since = utc_now() - timedelta(hours=hours)
        stmt = select(
            func.avg(ResourceSample.cpu_usage),
            func.avg(ResourceSample.ram_usage),
            func.max(ResourceSample.cpu_usage),
            func.max(ResourceSample.ram_usage),
            func.count(),
        ).where(
            ResourceSample.resource_id == resource_id,
            ResourceSample.timestamp >= since,
        )
        async with self._session_factory() as db:
            row = (await db.execute(stmt)).one()

        avg_cpu, avg_ram, max_cpu, max_ram, count = row
        if not count:
            return UsageSummary()
        return UsageSummary(
            avg_cpu=float(avg_cpu),
            avg_ram=float(avg_ram),
            max_cpu=float(max_cpu),
            max_ram=float(max_ram),
            samples=int(count),
        )

    async def sample_all(self) -> int:
        """Record one sample for every running resource; returns how many were taken.

        Intended to be called periodically by an external scheduler.
        """
        stmt = select(Resource).where(Resource.status.in_([s.value for s in ROUTABLE_STATUSES]))
        async with self._session_factory() as db:
            resources = list((await db.execute(stmt)).scalars().all())

        taken = 0
        for resource in resources:
            try:
                stats = await self._driver.stats(resource.name)
            except DriverError as exc:
                logger.warning(
                    "Stats unavailable for %s: %s",
                    resource.name,
                    exc,
                    extra={"event": LogEvent.DRIVER_UNAVAILABLE, "resource_id": resource.id},
                )
                continue
            if stats is None:
                continue
            await self.log_resource_usage(resource.id, stats.cpu_percent, stats.ram_mb)
            taken += 1
        return taken
