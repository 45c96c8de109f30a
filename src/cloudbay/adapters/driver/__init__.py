"""Driver implementations and startup selection."""

from cloudbay.adapters.driver.docker import ContainerDriver
from cloudbay.adapters.driver.libvirt import LibvirtDriver
from cloudbay.app.config import Settings
from cloudbay.core.interfaces import Driver
from cloudbay.infra.cloudinit import CloudInitBuilder
from cloudbay.infra.docker import DockerClient
from cloudbay.infra.ssh import RemoteShellPool


def create_driver(settings: Settings) -> Driver:
    """Build the driver for the configured mode (chosen once at startup)."""
    if settings.driver.mode == "libvirt":
        return LibvirtDriver(
            shells=RemoteShellPool(settings.ssh),
            seeds=CloudInitBuilder(settings.libvirt, settings.ssh.user),
        )
    return ContainerDriver(DockerClient(settings.docker))


__all__ = ["ContainerDriver", "LibvirtDriver", "create_driver"]
