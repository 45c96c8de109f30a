"""Tests for ProvisioningEngine: creation, the provisioning workflow and lifecycle."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from cloudbay.core.domain import ResourceStatus
from cloudbay.core.errors import (
    DriverError,
    InvalidStateError,
    ProvisioningTimeoutError,
    QuotaExceededError,
    ResourceNotFoundError,
    UnsupportedOperationError,
    ValidationError,
)
from cloudbay.core.interfaces import InstanceState
from cloudbay.services.provisioning import ProvisioningEngine, ResourceRequest
from cloudbay.services.workflows import WorkflowKind, WorkflowState

PROJECT = "project-1"


async def _provisioned(engine: ProvisioningEngine, **kwargs):
    resource = await engine.create_resource(PROJECT, ResourceRequest(**kwargs))
    await engine.wait(resource.id)
    return await engine.get_resource(resource.id)


class TestCreateResource:
    async def test_returns_creating_record(self, engine: ProvisioningEngine) -> None:
        """The record is persisted before provisioning runs."""
        resource = await engine.create_resource(PROJECT, ResourceRequest(name="My App"))

        assert resource.status == ResourceStatus.CREATING
        assert resource.subdomain == "my-app"
        assert resource.name == f"nextjs-my-app-{resource.id[:8]}"
        assert resource.display_name == "My App"
        assert resource.framework == "node"
        assert (resource.ram, resource.cpu, resource.disk) == (2048, 2, 20)

    async def test_subdomain_gets_numeric_suffix(self, engine: ProvisioningEngine) -> None:
        first = await engine.create_resource(PROJECT, ResourceRequest(name="shop"))
        second = await engine.create_resource(PROJECT, ResourceRequest(name="shop"))
        third = await engine.create_resource("project-2", ResourceRequest(name="shop"))

        assert [first.subdomain, second.subdomain, third.subdomain] == [
            "shop",
            "shop-1",
            "shop-2",
        ]

    async def test_host_ports_allocated_per_project(self, engine: ProvisioningEngine) -> None:
        first = await engine.create_resource(PROJECT, ResourceRequest(name="a"))
        second = await engine.create_resource(PROJECT, ResourceRequest(name="b"))
        other = await engine.create_resource("project-2", ResourceRequest(name="c"))

        assert first.host_port == 30000
        assert second.host_port == 30001
        # Ports are only unique within a project
        assert other.host_port == 30000

    async def test_empty_name_falls_back_to_type(self, engine: ProvisioningEngine) -> None:
        resource = await engine.create_resource(PROJECT, ResourceRequest(type="vm"))

        assert resource.subdomain == "vm"
        assert resource.framework is None

    async def test_quota_exceeded(self, engine: ProvisioningEngine, settings) -> None:
        settings.limits.max_resources_per_project = 2
        await engine.create_resource(PROJECT, ResourceRequest(name="a"))
        await engine.create_resource(PROJECT, ResourceRequest(name="b"))

        with pytest.raises(QuotaExceededError) as exc_info:
            await engine.create_resource(PROJECT, ResourceRequest(name="c"))

        assert exc_info.value.limit == 2
        assert len(await engine.list_resources(PROJECT)) == 2

    async def test_zero_quota_rejects_first_create(
        self, engine: ProvisioningEngine, settings, mock_driver: AsyncMock
    ) -> None:
        settings.limits.max_resources_per_project = 0

        with pytest.raises(QuotaExceededError):
            await engine.create_resource(PROJECT, ResourceRequest(name="a"))

        assert await engine.list_resources(PROJECT) == []
        mock_driver.create_disk.assert_not_awaited()

    async def test_concurrent_same_name_gets_distinct_subdomains(
        self, engine: ProvisioningEngine
    ) -> None:
        created = await asyncio.gather(
            *(engine.create_resource(PROJECT, ResourceRequest(name="web")) for _ in range(3))
        )

        assert sorted(r.subdomain for r in created) == ["web", "web-1", "web-2"]
        stored = await engine.list_resources(PROJECT)
        assert sorted(r.subdomain for r in stored) == ["web", "web-1", "web-2"]

    @pytest.mark.parametrize(
        "request_kwargs",
        [
            {"type": "mainframe"},
            {"framework": "cobol"},
            {"ram": 0},
            {"cpu": -1},
            {"type": "docker", "docker_image": "  "},
        ],
    )
    async def test_invalid_request_rejected(
        self, engine: ProvisioningEngine, request_kwargs: dict
    ) -> None:
        with pytest.raises(ValidationError):
            await engine.create_resource(PROJECT, ResourceRequest(name="x", **request_kwargs))

        assert await engine.list_resources(PROJECT) == []


class TestProvisioningWorkflow:
    async def test_reaches_deployed(
        self, engine: ProvisioningEngine, mock_driver: AsyncMock
    ) -> None:
        resource = await _provisioned(
            engine, name="web", source_url="https://github.com/acme/web.git"
        )

        assert resource.status == ResourceStatus.DEPLOYED
        assert resource.ip == "127.0.0.1"
        assert resource.app_url == "https://web.iaasapp.pro"
        assert resource.error is None
        mock_driver.create_instance.assert_awaited_once()
        commands = [call.args[1] for call in mock_driver.exec.await_args_list]
        assert any("git clone" in c and "acme/web.git" in c for c in commands)
        assert any("nohup" in c and "npm start" in c for c in commands)

        workflow = engine.get_workflow(resource.id)
        assert workflow.kind == WorkflowKind.PROVISION
        assert workflow.state == WorkflowState.SUCCEEDED
        assert workflow.step == "deploy"

    async def test_without_source_skips_deploy(
        self, engine: ProvisioningEngine, mock_driver: AsyncMock
    ) -> None:
        resource = await _provisioned(engine, name="raw", type="docker", docker_image="nginx")

        assert resource.status == ResourceStatus.DEPLOYED
        mock_driver.exec.assert_not_awaited()

    async def test_spec_carries_sizing_and_port(
        self, engine: ProvisioningEngine, mock_driver: AsyncMock
    ) -> None:
        resource = await _provisioned(engine, name="big", ram=4096, cpu=4)

        spec = mock_driver.create_instance.await_args.args[0]
        assert spec.name == resource.name
        assert (spec.ram, spec.cpu) == (4096, 4)
        assert spec.host_port == resource.host_port

    async def test_timeout_sets_error(
        self, engine: ProvisioningEngine, mock_driver: AsyncMock
    ) -> None:
        mock_driver.status.return_value = InstanceState.CREATED

        resource = await _provisioned(engine, name="slow")

        assert resource.status == ResourceStatus.ERROR
        assert "Timed out" in resource.error
        workflow = engine.get_workflow(resource.id)
        assert workflow.state == WorkflowState.FAILED
        assert workflow.step == "wait_running"

    async def test_driver_failure_sets_error(
        self, engine: ProvisioningEngine, mock_driver: AsyncMock
    ) -> None:
        mock_driver.create_instance.side_effect = DriverError("no space left on device")

        resource = await _provisioned(engine, name="broken")

        assert resource.status == ResourceStatus.ERROR
        assert resource.error == "no space left on device"

    async def test_deploy_failure_sets_error(
        self, engine: ProvisioningEngine, mock_driver: AsyncMock
    ) -> None:
        async def exec_(name: str, command: str) -> str:
            if "git clone" in command:
                raise DriverError("repository not found")
            return "yes"

        mock_driver.exec.side_effect = exec_

        resource = await _provisioned(engine, name="app", source_url="https://example.com/x.git")

        assert resource.status == ResourceStatus.ERROR
        assert resource.error == "repository not found"

    async def test_vanished_instance_fails(
        self, engine: ProvisioningEngine, mock_driver: AsyncMock
    ) -> None:
        mock_driver.status.return_value = InstanceState.NOT_FOUND

        resource = await _provisioned(engine, name="gone")

        assert resource.status == ResourceStatus.ERROR

    async def test_ssh_driver_requires_address(
        self, engine: ProvisioningEngine, mock_driver: AsyncMock
    ) -> None:
        mock_driver.deploys_over_ssh = True
        mock_driver.address.return_value = None

        resource = await _provisioned(engine, name="vm1", type="vm")

        assert resource.status == ResourceStatus.ERROR
        assert "address" in resource.error


class TestSetStatus:
    async def test_rejects_undefined_transition(self, engine: ProvisioningEngine) -> None:
        resource = await engine.create_resource(PROJECT, ResourceRequest(name="x"))
        await engine.wait(resource.id)
        await engine.stop(resource.id)

        with pytest.raises(InvalidStateError):
            await engine.set_status(resource.id, ResourceStatus.DEPLOYED)

    async def test_missing_resource(self, engine: ProvisioningEngine) -> None:
        with pytest.raises(ResourceNotFoundError):
            await engine.set_status("missing", ResourceStatus.RUNNING)


class TestLifecycle:
    async def test_stop_then_start(
        self, engine: ProvisioningEngine, mock_driver: AsyncMock
    ) -> None:
        resource = await _provisioned(engine, name="web")

        stopped = await engine.stop(resource.id, PROJECT)
        assert stopped.status == ResourceStatus.STOPPED
        mock_driver.stop.assert_awaited_once_with(resource.name)

        started = await engine.start(resource.id, PROJECT)
        assert started.status == ResourceStatus.RUNNING
        mock_driver.start.assert_awaited_once_with(resource.name)

    async def test_stop_twice_rejected(self, engine: ProvisioningEngine) -> None:
        resource = await _provisioned(engine, name="web")
        await engine.stop(resource.id)

        with pytest.raises(InvalidStateError, match="already stopped"):
            await engine.stop(resource.id)

    async def test_start_running_rejected(self, engine: ProvisioningEngine) -> None:
        resource = await _provisioned(engine, name="web")

        with pytest.raises(InvalidStateError, match="already running"):
            await engine.start(resource.id)

    async def test_start_timeout_propagates(
        self, engine: ProvisioningEngine, mock_driver: AsyncMock
    ) -> None:
        resource = await _provisioned(engine, name="web")
        await engine.stop(resource.id)
        mock_driver.status.return_value = InstanceState.STOPPED

        with pytest.raises(ProvisioningTimeoutError):
            await engine.start(resource.id)

        assert (await engine.get_resource(resource.id)).status == ResourceStatus.STOPPED

    async def test_restart(self, engine: ProvisioningEngine, mock_driver: AsyncMock) -> None:
        resource = await _provisioned(engine, name="web")

        restarted = await engine.restart(resource.id)

        assert restarted.status == ResourceStatus.RUNNING
        mock_driver.stop.assert_awaited_once()
        mock_driver.start.assert_awaited_once()

    async def test_foreign_project_is_not_found(self, engine: ProvisioningEngine) -> None:
        resource = await _provisioned(engine, name="web")

        with pytest.raises(ResourceNotFoundError):
            await engine.stop(resource.id, project_id="someone-else")


class TestResize:
    async def test_applied_live(self, engine: ProvisioningEngine, mock_driver: AsyncMock) -> None:
        resource = await _provisioned(engine, name="web")

        result = await engine.resize(resource.id, ram=1024, cpu=1)

        assert result.applied_live is True
        assert (result.resource.ram, result.resource.cpu) == (1024, 1)
        mock_driver.update_resources.assert_awaited_once_with(resource.name, 1024, 1)

    async def test_deferred_when_unsupported(
        self, engine: ProvisioningEngine, mock_driver: AsyncMock
    ) -> None:
        resource = await _provisioned(engine, name="vm", type="vm")
        mock_driver.update_resources.side_effect = UnsupportedOperationError()

        result = await engine.resize(resource.id, ram=8192)

        assert result.applied_live is False
        stored = await engine.get_resource(resource.id)
        assert stored.ram == 8192
        assert stored.cpu == resource.cpu

    async def test_identical_values_change_nothing(
        self, engine: ProvisioningEngine, mock_driver: AsyncMock
    ) -> None:
        resource = await _provisioned(engine, name="web")

        result = await engine.resize(resource.id, ram=resource.ram, cpu=resource.cpu)

        assert result.applied_live is True
        stored = await engine.get_resource(resource.id)
        assert (stored.ram, stored.cpu) == (resource.ram, resource.cpu)
        assert stored.updated_at == resource.updated_at
        assert stored.status == resource.status
        mock_driver.update_resources.assert_not_awaited()

    async def test_rejects_non_positive(self, engine: ProvisioningEngine) -> None:
        resource = await _provisioned(engine, name="web")

        with pytest.raises(ValidationError):
            await engine.resize(resource.id, cpu=0)


class TestDelete:
    async def test_removes_record(
        self, engine: ProvisioningEngine, mock_driver: AsyncMock
    ) -> None:
        resource = await _provisioned(engine, name="web")

        await engine.delete(resource.id, PROJECT)

        mock_driver.delete.assert_awaited_once_with(resource.name)
        with pytest.raises(ResourceNotFoundError):
            await engine.get_resource(resource.id)
        assert engine.get_workflow(resource.id) is None

    async def test_driver_failure_is_tolerated(
        self, engine: ProvisioningEngine, mock_driver: AsyncMock
    ) -> None:
        resource = await _provisioned(engine, name="web")
        mock_driver.delete.side_effect = DriverError("daemon unreachable")

        await engine.delete(resource.id)

        assert await engine.list_resources(PROJECT) == []

    async def test_os_error_from_driver_is_tolerated(
        self, engine: ProvisioningEngine, mock_driver: AsyncMock
    ) -> None:
        resource = await _provisioned(engine, name="web")
        mock_driver.delete.side_effect = PermissionError("denied")

        await engine.delete(resource.id)

        assert await engine.list_resources(PROJECT) == []

    async def test_frees_quota_slot(self, engine: ProvisioningEngine, settings) -> None:
        settings.limits.max_resources_per_project = 1
        resource = await _provisioned(engine, name="web")
        with pytest.raises(QuotaExceededError):
            await engine.create_resource(PROJECT, ResourceRequest(name="api"))

        await engine.delete(resource.id)
        again = await engine.create_resource(PROJECT, ResourceRequest(name="api"))

        assert again.status == ResourceStatus.CREATING

    async def test_frees_subdomain(self, engine: ProvisioningEngine) -> None:
        resource = await _provisioned(engine, name="web")
        await engine.delete(resource.id)

        again = await engine.create_resource(PROJECT, ResourceRequest(name="web"))

        assert again.subdomain == "web"


class TestRedeploy:
    async def test_redeploys_running_app(
        self, engine: ProvisioningEngine, mock_driver: AsyncMock
    ) -> None:
        resource = await _provisioned(engine, name="web", source_url="https://example.com/w.git")
        mock_driver.exec.reset_mock()

        workflow = await engine.redeploy(resource.id)
        await engine.wait(resource.id)

        assert workflow.kind == WorkflowKind.REDEPLOY
        assert workflow.state == WorkflowState.SUCCEEDED
        assert (await engine.get_resource(resource.id)).status == ResourceStatus.DEPLOYED
        mock_driver.exec.assert_awaited()

    async def test_requires_source(self, engine: ProvisioningEngine) -> None:
        resource = await _provisioned(engine, name="web")

        with pytest.raises(ValidationError):
            await engine.redeploy(resource.id)


class TestInspection:
    async def test_real_status(self, engine: ProvisioningEngine, mock_driver: AsyncMock) -> None:
        resource = await _provisioned(engine, name="web")
        mock_driver.status.return_value = InstanceState.STOPPED

        status = await engine.real_status(resource.id)

        assert status.db_status == ResourceStatus.DEPLOYED
        assert status.real_status == InstanceState.STOPPED
        assert status.host_port == resource.host_port

    async def test_logs(self, engine: ProvisioningEngine, mock_driver: AsyncMock) -> None:
        resource = await _provisioned(engine, name="web")
        mock_driver.logs.return_value = "listening on 3000"

        assert await engine.logs(resource.id, tail=10) == "listening on 3000"
        mock_driver.logs.assert_awaited_once_with(resource.name, tail=10)

    async def test_mode_info(self, engine: ProvisioningEngine) -> None:
        info = engine.mode_info()

        assert info.mode == "docker"
        assert info.is_docker is True
        assert info.is_libvirt is False
        assert info.supports_snapshots is True

    async def test_check_driver(self, engine: ProvisioningEngine, mock_driver: AsyncMock) -> None:
        mock_driver.ping.return_value = False

        assert await engine.check_driver() is False
