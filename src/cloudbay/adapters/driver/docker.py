"""Docker container driver implementation."""

import asyncio
import logging
import os

from cloudbay.adapters.driver.common import track
from cloudbay.app.config import get_settings
from cloudbay.core.domain import ResourceType
from cloudbay.core.errors import DriverError
from cloudbay.core.interfaces import (
    Driver,
    InstanceSpec,
    InstanceState,
    InstanceStats,
    ShellSession,
)
from cloudbay.infra.archive import remove_tree
from cloudbay.infra.docker import (
    ContainerAPI,
    ContainerConfig,
    DockerClient,
    ExecAPI,
    HostConfig,
    ImageAPI,
    split_image_ref,
)

logger = logging.getLogger(__name__)

FRAMEWORK_IMAGES = {
    "node": "node:18",
    "python": "python:3.10",
    "go": "golang:1.21",
}
DEFAULT_APP_IMAGE = "node:18"
DEFAULT_RAW_IMAGE = "ubuntu:latest"
K3S_IMAGE = "rancher/k3s:latest"
K3S_API_PORT = 6443
K3S_API_PORT_OFFSET = 10000

# Images whose default command exits immediately
BASE_OS_IMAGES = ("ubuntu", "alpine", "debian", "centos")
KEEP_ALIVE_CMD = ["sh", "-c", "while :; do sleep 1; done"]

CONTAINER_WORKDIR = "/app"

_STATE_MAP = {
    "running": InstanceState.RUNNING,
    "exited": InstanceState.STOPPED,
    "paused": InstanceState.PAUSED,
    "created": InstanceState.CREATED,
    "restarting": InstanceState.RESTARTING,
    "dead": InstanceState.ERROR,
}


def is_base_os_image(image: str) -> bool:
    """True for ``[registry/][namespace/]<base-os>[:tag]`` references."""
    repo, _ = split_image_ref(image)
    return repo.rsplit("/", 1)[-1].startswith(BASE_OS_IMAGES)


def resolve_runtime(spec: InstanceSpec) -> tuple[str, list[str] | None, list[str], bool]:
    """Pick (image, cmd, env, privileged) for the requested resource type.

    A ``None`` command keeps the image's own entrypoint.
    """
    if spec.type == ResourceType.K8S:
        return (
            K3S_IMAGE,
            ["server", "--disable-agent"],
            ["K3S_KUBECONFIG_OUTPUT=/output/kubeconfig.yaml", "K3S_KUBECONFIG_MODE=666"],
            True,
        )
    if spec.type == ResourceType.DOCKER:
        image = spec.image or DEFAULT_RAW_IMAGE
        cmd = KEEP_ALIVE_CMD if is_base_os_image(image) else None
        return image, cmd, [], False
    image = spec.image or FRAMEWORK_IMAGES.get(spec.framework or "", DEFAULT_APP_IMAGE)
    return image, KEEP_ALIVE_CMD, [], False


def compute_stats(raw: dict) -> InstanceStats | None:
    """CPU% and RAM from a one-shot stats sample.

    Returns None until the daemon has a previous sample to diff against.
    """
    cpu_stats = raw.get("cpu_stats") or {}
    precpu_stats = raw.get("precpu_stats") or {}
    if not precpu_stats.get("system_cpu_usage"):
        return None

    cpu_delta = cpu_stats.get("cpu_usage", {}).get("total_usage", 0) - precpu_stats.get(
        "cpu_usage", {}
    ).get("total_usage", 0)
    system_delta = cpu_stats.get("system_cpu_usage", 0) - precpu_stats["system_cpu_usage"]
    online_cpus = cpu_stats.get("online_cpus") or len(
        cpu_stats.get("cpu_usage", {}).get("percpu_usage") or []
    )
    cpu_percent = 0.0
    if system_delta > 0 and online_cpus > 0:
        cpu_percent = (cpu_delta / system_delta) * online_cpus * 100.0

    memory = raw.get("memory_stats") or {}
    used = memory.get("usage", 0)
    detail = memory.get("stats") or {}
    # cgroup v2 reports inactive_file; v1 reports total_inactive_file or cache
    for key in ("inactive_file", "total_inactive_file", "cache"):
        if key in detail:
            used -= detail[key]
            break
    return InstanceStats(cpu_percent=max(cpu_percent, 0.0), ram_mb=max(used, 0) / (1024 * 1024))


class DockerShellSession(ShellSession):
    """TTY exec attached over a hijacked daemon connection."""

    def __init__(
        self,
        execs: ExecAPI,
        exec_id: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self._execs = execs
        self._exec_id = exec_id
        self._reader = reader
        self._writer = writer
        self._closed = False

    async def read(self) -> bytes:
        if self._closed:
            return b""
        return await self._reader.read(4096)

    async def write(self, data: bytes) -> None:
        if self._closed:
            return
        self._writer.write(data)
        await self._writer.drain()

    async def resize(self, rows: int, cols: int) -> None:
        async with track("docker", "exec_resize"):
            await self._execs.resize(self._exec_id, rows, cols)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError):
            pass


class ContainerDriver(Driver):
    """Docker Engine driver (app containers, raw containers, k3s nodes)."""

    mode = "docker"
    supports_snapshots = True
    deploys_over_ssh = False

    def __init__(self, client: DockerClient | None = None) -> None:
        settings = get_settings()
        self._settings = settings
        self._client = client or DockerClient(settings.docker)
        self._containers = ContainerAPI(self._client)
        self._images = ImageAPI(self._client)
        self._execs = ExecAPI(self._client)

    async def ping(self) -> bool:
        return await self._client.ping()

    def disk_path(self, name: str) -> str:
        return os.path.abspath(os.path.join(self._settings.driver.storage_dir, name))

    async def create_disk(self, name: str, size_gb: int) -> str:
        """Create the bind-mounted directory. Size is not enforced for directories."""
        path = self.disk_path(name)

        def _mkdir() -> None:
            os.makedirs(path, exist_ok=True)
            os.chmod(path, 0o777)

        try:
            await asyncio.to_thread(_mkdir)
        except OSError as exc:
            raise DriverError(f"Cannot create storage for {name}: {exc}") from exc
        return path

    async def create_instance(self, spec: InstanceSpec) -> None:
        image, cmd, env, privileged = resolve_runtime(spec)
        app_port = self._settings.network.app_port
        port_bindings = {f"{app_port}/tcp": spec.host_port}
        if spec.type == ResourceType.K8S:
            port_bindings[f"{K3S_API_PORT}/tcp"] = spec.host_port + K3S_API_PORT_OFFSET

        docker = self._settings.docker
        config = ContainerConfig(
            image=image,
            name=spec.name,
            cmd=cmd,
            env=env,
            working_dir=CONTAINER_WORKDIR,
            exposed_ports=list(port_bindings),
            host_config=HostConfig(
                binds=[f"{os.path.abspath(spec.disk_path)}:{CONTAINER_WORKDIR}"],
                port_bindings=port_bindings,
                memory_mb=spec.ram,
                cpus=spec.cpu,
                privileged=privileged,
                restart_policy=docker.restart_policy,
                log_max_size=docker.log_max_size,
                log_max_file=docker.log_max_file,
            ),
        )

        async with track(self.mode, "create_instance", spec.name):
            await self._images.ensure(image)
            await self._containers.create(config)
            await self._containers.start(spec.name)

    async def status(self, name: str) -> InstanceState:
        async with track(self.mode, "status", name):
            data = await self._containers.inspect(name)
        if data is None:
            return InstanceState.NOT_FOUND
        state = str(data.get("State", {}).get("Status", "")).lower()
        return _STATE_MAP.get(state, InstanceState.UNKNOWN)

    async def start(self, name: str) -> None:
        async with track(self.mode, "start", name):
            await self._containers.start(name)

    async def stop(self, name: str) -> None:
        async with track(self.mode, "stop", name):
            await self._containers.stop(name)

    async def delete(self, name: str) -> None:
        async with track(self.mode, "delete", name):
            await self._containers.remove(name, force=True)
        await remove_tree(self.disk_path(name))

    async def remove_instance(self, name: str) -> None:
        async with track(self.mode, "remove_instance", name):
            await self._containers.remove(name, force=True)

    async def address(self, name: str) -> str | None:
        # Published ports are bound on the local host
        return self._settings.network.vm_host

    async def exec(self, name: str, command: str) -> str:
        async with track(self.mode, "exec", name):
            exec_id = await self._execs.create(
                name, ["sh", "-c", command], working_dir=CONTAINER_WORKDIR
            )
            stdout, stderr = await self._execs.run(exec_id)
            info = await self._execs.inspect(exec_id)

        output = (stdout + stderr).decode("utf-8", errors="replace")
        exit_code = info.get("ExitCode")
        if exit_code:
            raise DriverError(f"Command exited with {exit_code} in {name}: {output[-500:].strip()}")
        return output

    async def logs(self, name: str, tail: int = 100) -> str:
        async with track(self.mode, "logs", name):
            return await self._containers.logs(name, tail=tail)

    async def stats(self, name: str) -> InstanceStats | None:
        async with track(self.mode, "stats", name):
            raw = await self._containers.stats(name)
        if raw is None:
            return None
        return compute_stats(raw)

    async def snapshot(self, name: str, tag: str) -> str:
        async with track(self.mode, "snapshot", name):
            return await self._containers.commit(name, tag, pause=True)

    async def delete_snapshot(self, tag: str) -> None:
        async with track(self.mode, "delete_snapshot", tag):
            await self._images.remove(tag)

    async def update_resources(self, name: str, ram_mb: int, cpu: int) -> None:
        async with track(self.mode, "update_resources", name):
            await self._containers.update(name, memory_mb=ram_mb, cpus=cpu)

    async def open_shell(self, name: str, rows: int = 24, cols: int = 80) -> ShellSession:
        async with track(self.mode, "open_shell", name):
            exec_id = await self._execs.create(name, ["/bin/sh"], tty=True, stdin=True)
            try:
                reader, writer = await self._execs.attach(exec_id)
            except (OSError, asyncio.IncompleteReadError) as exc:
                raise DriverError(f"Cannot attach shell to {name}: {exc}") from exc
        session = DockerShellSession(self._execs, exec_id, reader, writer)
        try:
            await session.resize(rows, cols)
        except DriverError:
            # The exec may not have a pty yet; the client resizes again later
            logger.debug("Initial resize failed for %s", name)
        return session

    async def close(self) -> None:
        await self._client.close()
