"""Backups: image snapshot plus an archive of the persistent directory.

A backup is ``ready`` only when both artifacts exist. Restore turns the
resource into a raw container running the snapshot image, with the
directory contents replaced by the archive.
"""

import logging
import os
import time

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cloudbay.app.config import Settings, get_settings
from cloudbay.core.domain import BackupStatus, ResourceStatus, ResourceType
from cloudbay.core.errors import (
    BackupNotFoundError,
    DriverError,
    InvalidStateError,
    UnsupportedOperationError,
)
from cloudbay.core.logging_schema import LogEvent
from cloudbay.core.models import Backup, Resource
from cloudbay.infra.archive import create_archive, extract_archive, wipe_directory
from cloudbay.services.provisioning import ProvisioningEngine
from cloudbay.services.workflows import Workflow, WorkflowKind

logger = logging.getLogger(__name__)


def backup_tag(instance: str, epoch_ms: int | None = None) -> str:
    """``backup-{instance}-{epoch_ms}``; also used as the archive file stem."""
    if epoch_ms is None:
        epoch_ms = int(time.time() * 1000)
    return f"backup-{instance}-{epoch_ms}"


class BackupManager:
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

    def _require_snapshots(self) -> None:
        if not self._driver.supports_snapshots:
            raise UnsupportedOperationError(
                f"Backups are not supported by the {self._driver.mode} driver"
            )

    async def _update_backup(self, backup_id: str, **fields) -> Backup:
        async with self._session_factory() as db:
            backup = await db.get(Backup, backup_id)
            if backup is None:
                raise BackupNotFoundError()
            for key, value in fields.items():
                setattr(backup, key, value)
            db.add(backup)
            await db.commit()
            await db.refresh(backup)
            return backup

    async def create_backup(
        self, resource_id: str, name: str | None = None, project_id: str | None = None
    ) -> Backup:
        """Snapshot the instance and archive its directory.

        Raises:
            UnsupportedOperationError: the driver cannot snapshot
            DriverError / OSError: either artifact failed (record left in ``error``)
        """
        resource = await self._engine.get_resource(resource_id, project_id)
        self._require_snapshots()

        tag = backup_tag(resource.name)
        archive_path = os.path.join(self._settings.driver.backup_dir, f"{tag}.tar.gz")
        backup = Backup(
            resource_id=resource.id,
            name=name or f"Backup {time.strftime('%Y-%m-%d %H:%M:%S')}",
            image_tag=tag,
            archive_path=archive_path,
            status=BackupStatus.CREATING,
        )
        async with self._session_factory() as db:
            db.add(backup)
            await db.commit()
            await db.refresh(backup)

        try:
            await self._driver.snapshot(resource.name, tag)
            size = await create_archive(self._driver.disk_path(resource.name), archive_path)
        except (DriverError, OSError) as exc:
            # Partial artifacts are kept for inspection
            await self._update_backup(backup.id, status=BackupStatus.ERROR)
            logger.error(
                "Backup of %s failed: %s",
                resource.name,
                exc,
                extra={
                    "event": LogEvent.BACKUP_FAILED,
                    "resource_id": resource.id,
                    "backup_id": backup.id,
                },
            )
            raise

        backup = await self._update_backup(backup.id, status=BackupStatus.READY, size=size)
        logger.info(
            "Backup ready: %s (%d bytes)",
            tag,
            size,
            extra={
                "event": LogEvent.BACKUP_READY,
                "resource_id": resource.id,
                "backup_id": backup.id,
            },
        )
        return backup

    async def list_backups(self, resource_id: str, project_id: str | None = None) -> list[Backup]:
        """Backups of a resource, newest first."""
        await self._engine.get_resource(resource_id, project_id)
        stmt = (
            select(Backup)
            .where(Backup.resource_id == resource_id)
            .order_by(Backup.created_at.desc(), Backup.id.desc())
        )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def get_backup(
        self, resource_id: str, backup_id: str, project_id: str | None = None
    ) -> Backup:
        await self._engine.get_resource(resource_id, project_id)
        async with self._session_factory() as db:
            backup = await db.get(Backup, backup_id)
        if backup is None or backup.resource_id != resource_id:
            raise BackupNotFoundError()
        return backup

    async def restore_backup(
        self, resource_id: str, backup_id: str, project_id: str | None = None
    ) -> Resource:
        """Replace the resource's instance and data with the backup.

        Raises:
            BackupNotFoundError: unknown backup, or it belongs to another resource
            InvalidStateError: backup not ready, or a workflow is in progress
        """
        resource = await self._engine.get_resource(resource_id, project_id)
        backup = await self.get_backup(resource_id, backup_id, project_id)
        self._require_snapshots()
        if backup.status != BackupStatus.READY:
            raise InvalidStateError(f"Backup is not ready (status {backup.status})")
        if resource.status in (ResourceStatus.CREATING, ResourceStatus.DEPLOYING):
            raise InvalidStateError("Resource has a workflow in progress")

        logger.info("Restoring %s from backup %s", resource.name, backup.name)
        try:
            if resource.status in (ResourceStatus.RUNNING, ResourceStatus.DEPLOYED):
                try:
                    await self._engine.stop(resource_id, project_id)
                except (InvalidStateError, DriverError) as exc:
                    logger.warning("Stop before restore failed for %s: %s", resource.name, exc)

            await self._driver.remove_instance(resource.name)

            disk_path = self._driver.disk_path(resource.name)
            await wipe_directory(disk_path)
            if backup.archive_path and os.path.exists(backup.archive_path):
                await extract_archive(backup.archive_path, disk_path)

            resource = await self._engine.set_status(
                resource_id, docker_image=backup.image_tag, type=ResourceType.DOCKER
            )
            spec = self._engine.build_spec(resource)
            await self._driver.create_instance(spec)
            resource = await self._engine.set_status(resource_id, ResourceStatus.RUNNING, error=None)
        except Exception as exc:
            await self._engine.fail(resource_id, exc)
            logger.error(
                "Restore of %s failed: %s",
                resource.name,
                exc,
                extra={
                    "event": LogEvent.RESTORE_FAILED,
                    "resource_id": resource_id,
                    "backup_id": backup_id,
                },
            )
            raise

        logger.info(
            "Restored %s from %s",
            resource.name,
            backup.image_tag,
            extra={
                "event": LogEvent.RESTORE_COMPLETE,
                "resource_id": resource_id,
                "backup_id": backup_id,
            },
        )
        return resource

    async def start_restore(
        self, resource_id: str, backup_id: str, project_id: str | None = None
    ) -> Workflow:
        """Run ``restore_backup`` as a background workflow after checking its inputs."""
        await self.get_backup(resource_id, backup_id, project_id)

        async def _body(workflow: Workflow) -> None:
            workflow.set_step("restore")
            await self.restore_backup(resource_id, backup_id, project_id)

        return self._engine.workflows.start(resource_id, WorkflowKind.RESTORE, _body)
