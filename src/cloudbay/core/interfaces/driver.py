"""Driver interface over the compute substrate.

Implementations: ContainerDriver (Docker Engine), LibvirtDriver (KVM/QEMU).
A driver is stateless with respect to resources: every call is keyed by the
instance name and can be reconstructed from the Resource record.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import StrEnum


class InstanceState(StrEnum):
    """Normalised substrate status."""

    RUNNING = "running"
    STOPPED = "stopped"
    PAUSED = "paused"
    CREATED = "created"
    RESTARTING = "restarting"
    NOT_FOUND = "not_found"
    ERROR = "error"
    UNKNOWN = "unknown"


@dataclass
class InstanceSpec:
    """Everything a driver needs to bring an instance up from cold."""

    name: str
    type: str
    ram: int  # MB
    cpu: int  # cores
    disk_path: str
    host_port: int
    framework: str | None = None
    image: str | None = None
    # VM only
    seed_image: str | None = None
    network: str = "default"


@dataclass
class InstanceStats:
    """Point-in-time usage computed from two cumulative samples."""

    cpu_percent: float
    ram_mb: float


@dataclass
class CommandResult:
    """Output of a non-interactive command run inside an instance."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def output(self) -> str:
        return self.stdout + self.stderr


@dataclass
class DriverInfo:
    mode: str
    supports_snapshots: bool
    deploys_over_ssh: bool
    extra: dict = field(default_factory=dict)


class ShellSession(ABC):
    """Interactive pty session inside an instance.

    One session per terminal attach; ``close`` must be idempotent.
    """

    @abstractmethod
    async def read(self) -> bytes:
        """Return the next chunk of output, or b"" once the shell has exited."""
        ...

    @abstractmethod
    async def write(self, data: bytes) -> None:
        ...

    @abstractmethod
    async def resize(self, rows: int, cols: int) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class Driver(ABC):
    """Capability interface implemented by every substrate."""

    mode: str = ""
    supports_snapshots: bool = False
    deploys_over_ssh: bool = False
    # Working directory of the deployed application inside the instance
    app_dir: str = "/app"

    @abstractmethod
    async def ping(self) -> bool:
        """Check (and re-establish) connectivity to the substrate."""
        ...

    @abstractmethod
    def disk_path(self, name: str) -> str:
        """Location of the persistent storage for ``name``."""
        ...

    @abstractmethod
    async def create_disk(self, name: str, size_gb: int) -> str:
        """Allocate persistent writable storage. Idempotent."""
        ...

    @abstractmethod
    async def create_instance(self, spec: InstanceSpec) -> None:
        """Create and power on the compute unit. Raises DriverError."""
        ...

    @abstractmethod
    async def status(self, name: str) -> InstanceState:
        ...

    @abstractmethod
    async def start(self, name: str) -> None:
        ...

    @abstractmethod
    async def stop(self, name: str) -> None:
        ...

    @abstractmethod
    async def delete(self, name: str) -> None:
        """Remove the instance and release its storage."""
        ...

    @abstractmethod
    async def remove_instance(self, name: str) -> None:
        """Force-remove the instance, keeping its persistent storage."""
        ...

    @abstractmethod
    async def address(self, name: str) -> str | None:
        ...

    @abstractmethod
    async def exec(self, name: str, command: str) -> str:
        """Run ``command`` synchronously; raise DriverError on non-zero exit."""
        ...

    @abstractmethod
    async def logs(self, name: str, tail: int = 100) -> str:
        ...

    @abstractmethod
    async def stats(self, name: str) -> InstanceStats | None:
        ...

    @abstractmethod
    async def snapshot(self, name: str, tag: str) -> str:
        """Pause-commit the instance into image ``tag``; return the image id."""
        ...

    @abstractmethod
    async def delete_snapshot(self, tag: str) -> None:
        ...

    @abstractmethod
    async def update_resources(self, name: str, ram_mb: int, cpu: int) -> None:
        """Apply new limits live. Raises UnsupportedOperationError if impossible."""
        ...

    @abstractmethod
    async def open_shell(self, name: str, rows: int = 24, cols: int = 80) -> ShellSession:
        ...

    async def prepare(self, spec: InstanceSpec) -> InstanceSpec:
        """Substrate-specific preparation before ``create_instance``.

        Default is no-op; the VM driver builds the boot seed here.
        """
        return spec

    async def close(self) -> None:
        """Release client resources. Default is no-op."""

    def info(self) -> DriverInfo:
        return DriverInfo(
            mode=self.mode,
            supports_snapshots=self.supports_snapshots,
            deploys_over_ssh=self.deploys_over_ssh,
        )
