"""Provisioning engine: resource creation and lifecycle state machine.

    creating -> running -> deploying -> deployed
        any non-resting state -> error (on failure)
        running | deployed -> stopped (stop) -> running (start)

Creation returns immediately; the rest of provisioning runs as an
observable background workflow (see WorkflowRegistry). Workflows capture
failures into ``status``/``error``; synchronous operations raise.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cloudbay.app.config import Settings, get_settings
from cloudbay.core.domain import (
    Framework,
    ResourceStatus,
    ResourceType,
    can_transition,
)
from cloudbay.core.errors import (
    DriverError,
    InvalidStateError,
    ProvisioningTimeoutError,
    QuotaExceededError,
    ResourceNotFoundError,
    UnsupportedOperationError,
    ValidationError,
)
from cloudbay.core.interfaces import Driver, InstanceSpec, InstanceState
from cloudbay.core.logging_schema import LogEvent
from cloudbay.core.models import Resource, utc_now
from cloudbay.infra.archive import remove_path
from cloudbay.infra.tls import TLSRegistrar
from cloudbay.services.deploy import Deployer, should_deploy
from cloudbay.services.naming import (
    allocate_host_port,
    allocate_subdomain,
    instance_name,
    sanitize_name,
)
from cloudbay.services.workflows import Workflow, WorkflowKind, WorkflowRegistry

logger = logging.getLogger(__name__)

# Inserts retried when a concurrent create commits the same subdomain first
CREATE_ATTEMPTS = 5


@dataclass
class ResourceRequest:
    """User input for a new resource; missing sizes fall back to defaults."""

    name: str | None = None
    type: str = ResourceType.APP
    framework: str | None = None
    docker_image: str | None = None
    source_url: str | None = None
    ram: int | None = None
    cpu: int | None = None
    disk: int | None = None


@dataclass
class ResizeResult:
    resource: Resource
    # False when the new limits only take effect on the next (re)creation
    applied_live: bool


@dataclass
class RealStatus:
    id: str
    name: str
    db_status: str
    real_status: str
    ip: str | None
    host_port: int | None
    app_url: str | None


@dataclass
class ModeInfo:
    mode: str
    is_docker: bool
    is_libvirt: bool
    supports_snapshots: bool
    deploys_over_ssh: bool
    extra: dict = field(default_factory=dict)


class ProvisioningEngine:
    """Owns resource records and drives them through their lifecycle."""

    def __init__(
        self,
        driver: Driver,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        tls: TLSRegistrar | None = None,
        workflows: WorkflowRegistry | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._driver = driver
        self._session_factory = session_factory
        self._tls = tls or TLSRegistrar(self._settings.tls)
        self._workflows = workflows or WorkflowRegistry()
        self._deployer = Deployer(driver, self._settings)

    @property
    def driver(self) -> Driver:
        return self._driver

    @property
    def workflows(self) -> WorkflowRegistry:
        return self._workflows

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_resource(self, resource_id: str, project_id: str | None = None) -> Resource:
        """Fetch a resource, optionally scoped to a project.

        Raises:
            ResourceNotFoundError: absent, or owned by another project
        """
        async with self._session_factory() as db:
            resource = await db.get(Resource, resource_id)
        if resource is None or (project_id is not None and resource.project_id != project_id):
            raise ResourceNotFoundError()
        return resource

    async def list_resources(self, project_id: str | None = None) -> list[Resource]:
        stmt = select(Resource).order_by(Resource.created_at.desc())
        if project_id is not None:
            stmt = stmt.where(Resource.project_id == project_id)
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    def get_workflow(self, resource_id: str) -> Workflow | None:
        return self._workflows.get(resource_id)

    async def wait(self, resource_id: str) -> Workflow | None:
        return await self._workflows.wait(resource_id)

    # =========================================================================
    # Create + provisioning workflow
    # =========================================================================

    def _validate(self, request: ResourceRequest) -> tuple[ResourceType, str | None]:
        try:
            resource_type = ResourceType(request.type)
        except ValueError as exc:
            raise ValidationError(f"Unknown resource type: {request.type}") from exc

        framework = None
        if resource_type in (ResourceType.APP, ResourceType.VM) and request.framework:
            try:
                framework = Framework(request.framework)
            except ValueError as exc:
                raise ValidationError(f"Unknown framework: {request.framework}") from exc
        if resource_type == ResourceType.APP and framework is None:
            framework = Framework.NODE

        if request.docker_image is not None and not request.docker_image.strip():
            raise ValidationError("Image reference must not be empty")
        for label, value in (("ram", request.ram), ("cpu", request.cpu), ("disk", request.disk)):
            if value is not None and value <= 0:
                raise ValidationError(f"{label} must be positive")
        return resource_type, framework

    async def create_resource(self, project_id: str, request: ResourceRequest) -> Resource:
        """Validate, allocate identity, persist in ``creating`` and start provisioning.

        Returns as soon as the record is persisted.

        Raises:
            QuotaExceededError: project already holds the maximum number of resources
            ValidationError: invalid type, framework, image or sizing
            InvalidStateError: subdomain still taken after repeated concurrent collisions
        """
        resource_type, framework = self._validate(request)
        network = self._settings.network
        sanitized = sanitize_name(request.name) or resource_type.value

        resource = None
        for attempt in range(1, CREATE_ATTEMPTS + 1):
            try:
                resource = await self._insert_resource(
                    project_id, request, resource_type, framework, sanitized
                )
                break
            except IntegrityError:
                # A concurrent create committed the same subdomain first
                logger.warning(
                    "Subdomain for %s taken concurrently (attempt %d/%d)",
                    sanitized,
                    attempt,
                    CREATE_ATTEMPTS,
                )
        if resource is None:
            raise InvalidStateError(f"Could not allocate a unique subdomain for {sanitized}")
        subdomain = resource.subdomain
        host_port = resource.host_port

        logger.info(
            "Resource created: %s",
            resource.name,
            extra={
                "event": LogEvent.RESOURCE_CREATED,
                "resource_id": resource.id,
                "project_id": project_id,
                "subdomain": subdomain,
                "host_port": host_port,
            },
        )

        self._tls.schedule(f"{subdomain}.{network.base_domain}")
        self._workflows.start(resource.id, WorkflowKind.PROVISION, self._provision)
        return resource

    async def _insert_resource(
        self,
        project_id: str,
        request: ResourceRequest,
        resource_type: ResourceType,
        framework: str | None,
        sanitized: str,
    ) -> Resource:
        """Check quota, allocate subdomain and port, and persist in one session.

        Raises:
            IntegrityError: the allocated subdomain was committed by another create
        """
        limits = self._settings.limits
        defaults = self._settings.defaults

        async with self._session_factory() as db:
            count_result = await db.execute(
                select(func.count()).select_from(Resource).where(Resource.project_id == project_id)
            )
            if count_result.scalar_one() >= limits.max_resources_per_project:
                raise QuotaExceededError(limits.max_resources_per_project)

            resource_id = str(uuid4())
            subdomain = await allocate_subdomain(db, sanitized)
            host_port = await allocate_host_port(db, project_id, self._settings.network.base_host_port)

            resource = Resource(
                id=resource_id,
                project_id=project_id,
                name=instance_name(self._settings.driver.instance_prefix, sanitized, resource_id),
                display_name=request.name or sanitized,
                type=resource_type,
                framework=framework,
                docker_image=request.docker_image,
                source_url=request.source_url,
                subdomain=subdomain,
                ram=request.ram or defaults.ram,
                cpu=request.cpu or defaults.cpu,
                disk=request.disk or defaults.disk,
                host_port=host_port,
                status=ResourceStatus.CREATING,
            )
            db.add(resource)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise
            await db.refresh(resource)
        return resource

    def build_spec(self, resource: Resource) -> InstanceSpec:
        return InstanceSpec(
            name=resource.name,
            type=resource.type,
            ram=resource.ram,
            cpu=resource.cpu,
            disk_path=self._driver.disk_path(resource.name),
            host_port=resource.host_port or self._settings.network.base_host_port,
            framework=resource.framework,
            image=resource.docker_image,
            network=self._settings.network.vm_network,
        )

    def app_url(self, resource: Resource) -> str:
        return f"https://{resource.subdomain}.{self._settings.network.base_domain}"

    async def _provision(self, workflow: Workflow) -> None:
        resource_id = workflow.resource_id
        try:
            resource = await self.get_resource(resource_id)
            spec = self.build_spec(resource)

            workflow.set_step("prepare")
            spec = await self._driver.prepare(spec)

            workflow.set_step("create_disk")
            spec.disk_path = await self._driver.create_disk(resource.name, resource.disk)

            workflow.set_step("create_instance")
            await self._driver.create_instance(spec)
            await self.set_status(resource_id, ResourceStatus.RUNNING)

            workflow.set_step("wait_running")
            await self.wait_until_running(resource.name, self._settings.provisioning.poll_timeout)

            workflow.set_step("address")
            ip = await self._driver.address(resource.name)
            if ip is None and self._driver.deploys_over_ssh:
                raise DriverError(f"Could not obtain an address for {resource.name}")
            resource = await self.set_status(resource_id, ResourceStatus.DEPLOYING, ip=ip)

            workflow.set_step("deploy")
            await self._deployer.deploy(resource)
            await self.set_status(
                resource_id, ResourceStatus.DEPLOYED, app_url=self.app_url(resource), error=None
            )
        except ResourceNotFoundError:
            logger.warning(
                "Resource deleted during provisioning",
                extra={"event": LogEvent.WORKFLOW_FAILED, "resource_id": resource_id},
            )
            raise
        except Exception as exc:
            await self.fail(resource_id, exc)
            raise

    async def wait_until_running(self, name: str, timeout: float) -> None:
        """Poll the driver until the instance reports running, then settle.

        Raises:
            DriverError: instance vanished or is in error
            ProvisioningTimeoutError: not running within ``timeout``
        """
        provisioning = self._settings.provisioning
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            state = await self._driver.status(name)
            if state == InstanceState.RUNNING:
                await asyncio.sleep(provisioning.settle_seconds)
                return
            if state in (InstanceState.NOT_FOUND, InstanceState.ERROR):
                raise DriverError(f"Instance {name} is {state}")
            await asyncio.sleep(provisioning.poll_interval)

        logger.error(
            "Timed out waiting for %s",
            name,
            extra={"event": LogEvent.WORKFLOW_TIMEOUT, "instance": name, "timeout": timeout},
        )
        raise ProvisioningTimeoutError(f"Timed out waiting for {name} ({timeout:.0f}s)")

    # =========================================================================
    # Status writes
    # =========================================================================

    async def set_status(
        self, resource_id: str, status: ResourceStatus | None = None, **fields
    ) -> Resource:
        """Persist a status change (validated against the state machine) and fields.

        Raises:
            ResourceNotFoundError: the record was deleted meanwhile
            InvalidStateError: ``status`` is not reachable from the current one
        """
        async with self._session_factory() as db:
            resource = await db.get(Resource, resource_id)
            if resource is None:
                raise ResourceNotFoundError()
            previous = resource.status
            if status is not None:
                if not can_transition(previous, status):
                    raise InvalidStateError(f"Cannot change status from {previous} to {status}")
                resource.status = status
            for key, value in fields.items():
                setattr(resource, key, value)
            resource.updated_at = utc_now()
            db.add(resource)
            await db.commit()
            await db.refresh(resource)

        if status is not None and status != previous:
            logger.info(
                "%s: %s -> %s",
                resource.name,
                previous,
                status,
                extra={
                    "event": LogEvent.STATE_CHANGED,
                    "resource_id": resource_id,
                    "prev_status": previous,
                    "status": status,
                },
            )
        return resource

    async def fail(self, resource_id: str, exc: BaseException) -> None:
        """Record a workflow failure on the resource (status ``error``)."""
        message = str(exc) or type(exc).__name__
        try:
            await self.set_status(resource_id, ResourceStatus.ERROR, error=message)
        except ResourceNotFoundError:
            logger.warning("Cannot record failure, resource %s is gone", resource_id)

    # =========================================================================
    # Lifecycle operations
    # =========================================================================

    async def start(self, resource_id: str, project_id: str | None = None) -> Resource:
        resource = await self.get_resource(resource_id, project_id)
        if resource.status in (ResourceStatus.RUNNING, ResourceStatus.DEPLOYED):
            raise InvalidStateError("Resource is already running")
        if resource.status in (ResourceStatus.CREATING, ResourceStatus.DEPLOYING):
            raise InvalidStateError("Resource has a workflow in progress")

        await self._driver.start(resource.name)
        await self.wait_until_running(resource.name, self._settings.provisioning.start_timeout)
        if resource.type == ResourceType.APP:
            await self._deployer.launch(resource)
        return await self.set_status(resource_id, ResourceStatus.RUNNING)

    async def stop(self, resource_id: str, project_id: str | None = None) -> Resource:
        resource = await self.get_resource(resource_id, project_id)
        if resource.status == ResourceStatus.STOPPED:
            raise InvalidStateError("Resource is already stopped")
        if resource.status not in (ResourceStatus.RUNNING, ResourceStatus.DEPLOYED):
            raise InvalidStateError(f"Cannot stop a resource in status {resource.status}")

        await self._driver.stop(resource.name)
        return await self.set_status(resource_id, ResourceStatus.STOPPED)

    async def restart(self, resource_id: str, project_id: str | None = None) -> Resource:
        """Stop (failures tolerated), pause, then start."""
        await self.get_resource(resource_id, project_id)
        try:
            await self.stop(resource_id, project_id)
        except (InvalidStateError, DriverError) as exc:
            logger.warning("Stop before restart failed for %s: %s", resource_id, exc)
        await asyncio.sleep(self._settings.provisioning.restart_delay)
        return await self.start(resource_id, project_id)

    async def resize(
        self,
        resource_id: str,
        ram: int | None = None,
        cpu: int | None = None,
        project_id: str | None = None,
    ) -> ResizeResult:
        """Persist new limits first, then try to apply them live.

        A substrate that cannot resize live only produces a warning; the new
        values apply the next time the instance is created. Unchanged values
        leave the record and the instance untouched.
        """
        resource = await self.get_resource(resource_id, project_id)
        for label, value in (("ram", ram), ("cpu", cpu)):
            if value is not None and value <= 0:
                raise ValidationError(f"{label} must be positive")
        new_ram = ram or resource.ram
        new_cpu = cpu or resource.cpu
        if new_ram == resource.ram and new_cpu == resource.cpu:
            return ResizeResult(resource=resource, applied_live=True)

        resource = await self.set_status(resource_id, ram=new_ram, cpu=new_cpu)
        try:
            await self._driver.update_resources(resource.name, new_ram, new_cpu)
        except (UnsupportedOperationError, DriverError) as exc:
            logger.warning(
                "Live resize of %s not applied: %s",
                resource.name,
                exc,
                extra={"event": LogEvent.RESIZE_DEFERRED, "resource_id": resource_id},
            )
            return ResizeResult(resource=resource, applied_live=False)

        logger.info(
            "Resized %s to %d MB / %d CPU",
            resource.name,
            new_ram,
            new_cpu,
            extra={"event": LogEvent.RESIZE_APPLIED, "resource_id": resource_id},
        )
        return ResizeResult(resource=resource, applied_live=True)

    async def delete(self, resource_id: str, project_id: str | None = None) -> None:
        """Tear down the instance (failures logged) and hard-delete the record."""
        resource = await self.get_resource(resource_id, project_id)

        try:
            await self._driver.delete(resource.name)
        except (DriverError, OSError) as exc:
            logger.warning(
                "Driver delete failed for %s: %s",
                resource.name,
                exc,
                extra={"event": LogEvent.CLEANUP_FAILED, "resource_id": resource_id},
            )
        try:
            await remove_path(self._driver.disk_path(resource.name))
        except OSError as exc:
            logger.warning(
                "Storage cleanup failed for %s: %s",
                resource.name,
                exc,
                extra={"event": LogEvent.CLEANUP_FAILED, "resource_id": resource_id},
            )

        async with self._session_factory() as db:
            await db.execute(sa_delete(Resource).where(Resource.id == resource_id))
            await db.commit()
        self._workflows.forget(resource_id)

        logger.info(
            "Resource deleted: %s",
            resource.name,
            extra={"event": LogEvent.RESOURCE_DELETED, "resource_id": resource_id},
        )

    async def redeploy(self, resource_id: str, project_id: str | None = None) -> Workflow:
        """Re-run the deploy procedure on a running resource in the background."""
        resource = await self.get_resource(resource_id, project_id)
        if resource.status not in (ResourceStatus.RUNNING, ResourceStatus.DEPLOYED):
            raise InvalidStateError(f"Cannot redeploy a resource in status {resource.status}")
        if not should_deploy(resource) or not resource.source_url:
            raise ValidationError("Resource has no application source to deploy")
        return self._workflows.start(resource_id, WorkflowKind.REDEPLOY, self._redeploy)

    async def _redeploy(self, workflow: Workflow) -> None:
        resource_id = workflow.resource_id
        try:
            workflow.set_step("deploy")
            resource = await self.set_status(resource_id, ResourceStatus.DEPLOYING)
            await self._deployer.deploy(resource)
            await self.set_status(
                resource_id, ResourceStatus.DEPLOYED, app_url=self.app_url(resource), error=None
            )
        except ResourceNotFoundError:
            raise
        except Exception as exc:
            await self.fail(resource_id, exc)
            raise

    async def logs(self, resource_id: str, tail: int = 100, project_id: str | None = None) -> str:
        resource = await self.get_resource(resource_id, project_id)
        return await self._driver.logs(resource.name, tail=tail)

    async def real_status(self, resource_id: str, project_id: str | None = None) -> RealStatus:
        """Compare the recorded status with what the substrate reports."""
        resource = await self.get_resource(resource_id, project_id)
        state = await self._driver.status(resource.name)
        ip = await self._driver.address(resource.name)
        return RealStatus(
            id=resource.id,
            name=resource.name,
            db_status=resource.status,
            real_status=state,
            ip=ip,
            host_port=resource.host_port,
            app_url=resource.app_url,
        )

    def mode_info(self) -> ModeInfo:
        info = self._driver.info()
        return ModeInfo(
            mode=info.mode,
            is_docker=info.mode == "docker",
            is_libvirt=info.mode == "libvirt",
            supports_snapshots=info.supports_snapshots,
            deploys_over_ssh=info.deploys_over_ssh,
            extra=info.extra,
        )

    async def check_driver(self) -> bool:
        return await self._driver.ping()
