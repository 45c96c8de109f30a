"""libvirt/KVM virtual machine driver.

Host-side operations go through ``virsh``/``qemu-img``; in-guest commands,
logs and shells go over SSH to the address found in the DHCP lease table.
"""

import asyncio
import logging
import os
import xml.etree.ElementTree as ET
from dataclasses import dataclass, replace
from pathlib import Path

import paramiko

from cloudbay.adapters.driver.common import track
from cloudbay.app.config import get_settings
from cloudbay.core.errors import DriverError, UnsupportedOperationError
from cloudbay.core.interfaces import (
    CommandResult,
    Driver,
    InstanceSpec,
    InstanceState,
    InstanceStats,
    ShellSession,
)
from cloudbay.infra.cloudinit import CloudInitBuilder
from cloudbay.infra.process import run_command
from cloudbay.infra.ssh import RemoteShellPool

logger = logging.getLogger(__name__)

QEMU_NS = "http://libvirt.org/schemas/domain/qemu/1.0"
ET.register_namespace("qemu", QEMU_NS)

_STATE_MAP = {
    "running": InstanceState.RUNNING,
    "idle": InstanceState.RUNNING,
    "shut off": InstanceState.STOPPED,
    "in shutdown": InstanceState.STOPPED,
    "paused": InstanceState.PAUSED,
    "pmsuspended": InstanceState.PAUSED,
    "crashed": InstanceState.ERROR,
    "blocked": InstanceState.UNKNOWN,
}


# =============================================================================
# DHCP lease table
# =============================================================================


@dataclass(frozen=True)
class DhcpLease:
    expiry: str
    mac: str
    protocol: str
    address: str
    hostname: str | None
    client_id: str | None


def parse_dhcp_leases(output: str) -> list[DhcpLease]:
    """Parse ``virsh net-dhcp-leases`` output into lease records.

    Columns: expiry date, expiry time, MAC, protocol, address/prefix,
    hostname ("-" when unknown), client id.
    """
    leases = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 5 or parts[0] == "Expiry" or set(line.strip()) <= {"-"}:
            continue
        hostname = parts[5] if len(parts) > 5 and parts[5] != "-" else None
        client_id = parts[6] if len(parts) > 6 and parts[6] != "-" else None
        leases.append(
            DhcpLease(
                expiry=f"{parts[0]} {parts[1]}",
                mac=parts[2],
                protocol=parts[3],
                address=parts[4].split("/", 1)[0],
                hostname=hostname,
                client_id=client_id,
            )
        )
    return leases


def find_lease(leases: list[DhcpLease], name: str) -> DhcpLease | None:
    """Pick the lease for instance ``name``.

    An exact hostname match wins over a substring match; IPv4 is preferred
    and the latest expiry breaks ties.
    """
    candidates = [lease for lease in leases if lease.hostname and name in lease.hostname]
    if not candidates:
        return None
    candidates.sort(
        key=lambda lease: (lease.hostname == name, lease.protocol == "ipv4", lease.expiry),
        reverse=True,
    )
    return candidates[0]


# =============================================================================
# Domain descriptor
# =============================================================================


def render_domain_xml(spec: InstanceSpec, app_port: int) -> str:
    """Build the libvirt domain XML for ``spec``."""
    domain = ET.Element("domain", type="kvm")
    ET.SubElement(domain, "name").text = spec.name
    ET.SubElement(domain, "memory", unit="MiB").text = str(spec.ram)
    ET.SubElement(domain, "vcpu").text = str(spec.cpu)

    os_el = ET.SubElement(domain, "os")
    ET.SubElement(os_el, "type", arch="x86_64", machine="pc").text = "hvm"
    ET.SubElement(os_el, "boot", dev="hd")

    features = ET.SubElement(domain, "features")
    ET.SubElement(features, "acpi")
    ET.SubElement(features, "apic")
    ET.SubElement(domain, "cpu", mode="host-passthrough")

    devices = ET.SubElement(domain, "devices")
    disk = ET.SubElement(devices, "disk", type="file", device="disk")
    ET.SubElement(disk, "driver", name="qemu", type="qcow2", cache="none")
    ET.SubElement(disk, "source", file=spec.disk_path)
    ET.SubElement(disk, "target", dev="vda", bus="virtio")

    if spec.seed_image:
        cdrom = ET.SubElement(devices, "disk", type="file", device="cdrom")
        ET.SubElement(cdrom, "target", dev="hdc", bus="ide")
        ET.SubElement(cdrom, "readonly")
        ET.SubElement(cdrom, "source", file=spec.seed_image)

    interface = ET.SubElement(devices, "interface", type="network")
    ET.SubElement(interface, "source", network=spec.network)
    ET.SubElement(interface, "model", type="virtio")

    console = ET.SubElement(devices, "console", type="pty")
    ET.SubElement(console, "target", type="serial", port="0")
    ET.SubElement(devices, "graphics", type="vnc", port="-1", autoport="yes", listen="0.0.0.0")

    commandline = ET.SubElement(domain, f"{{{QEMU_NS}}}commandline")
    ET.SubElement(commandline, f"{{{QEMU_NS}}}arg", value="-redir")
    ET.SubElement(commandline, f"{{{QEMU_NS}}}arg", value=f"tcp:{spec.host_port}::{app_port}")

    ET.indent(domain)
    return ET.tostring(domain, encoding="unicode", xml_declaration=True)


# =============================================================================
# Shell session
# =============================================================================


class SSHShellSession(ShellSession):
    """Interactive shell over an SSH pty channel."""

    def __init__(self, channel: paramiko.Channel) -> None:
        self._channel = channel

    async def read(self) -> bytes:
        if self._channel.closed:
            return b""
        return await asyncio.to_thread(self._channel.recv, 4096)

    async def write(self, data: bytes) -> None:
        if self._channel.closed:
            return
        await asyncio.to_thread(self._channel.sendall, data)

    async def resize(self, rows: int, cols: int) -> None:
        await asyncio.to_thread(self._channel.resize_pty, width=cols, height=rows)

    async def close(self) -> None:
        if not self._channel.closed:
            await asyncio.to_thread(self._channel.close)


# =============================================================================
# Driver
# =============================================================================


class LibvirtDriver(Driver):
    """KVM/QEMU virtual machines managed through virsh."""

    mode = "libvirt"
    supports_snapshots = False
    deploys_over_ssh = True

    def __init__(
        self,
        shells: RemoteShellPool | None = None,
        seeds: CloudInitBuilder | None = None,
    ) -> None:
        settings = get_settings()
        self._settings = settings
        self._config = settings.libvirt
        self._shells = shells or RemoteShellPool(settings.ssh)
        self._seeds = seeds or CloudInitBuilder(settings.libvirt, settings.ssh.user)

    @property
    def shells(self) -> RemoteShellPool:
        return self._shells

    @property
    def app_dir(self) -> str:
        return f"/home/{self._settings.ssh.user}/app"

    async def _virsh(self, *args: str, check: bool = True) -> CommandResult:
        return await run_command(
            ["virsh", "--connect", self._config.uri, *args],
            timeout=self._config.command_timeout,
            check=check,
        )

    async def ping(self) -> bool:
        try:
            await self._virsh("list")
        except DriverError as exc:
            logger.error("libvirt unavailable: %s", exc)
            return False
        logger.info("Connected to libvirt: %s", self._config.uri)
        return True

    def disk_path(self, name: str) -> str:
        return os.path.join(self._config.images_dir, f"{name}.qcow2")

    def _xml_path(self, name: str) -> str:
        return os.path.join(self._config.cloud_init_dir, f"{name}.xml")

    async def prepare(self, spec: InstanceSpec) -> InstanceSpec:
        """Ensure the cloud image and build the instance's seed ISO."""
        async with track(self.mode, "prepare", spec.name):
            await self._seeds.ensure_cloud_image()
            seed = await self._seeds.create_seed(
                spec.name, spec.name, self._shells.public_key()
            )
        return replace(spec, seed_image=seed)

    async def create_disk(self, name: str, size_gb: int) -> str:
        """Create a qcow2 overlay on the cloud image; reuse an existing file."""
        path = self.disk_path(name)
        if await asyncio.to_thread(os.path.exists, path):
            return path
        await asyncio.to_thread(os.makedirs, self._config.images_dir, exist_ok=True)
        async with track(self.mode, "create_disk", name):
            await run_command(
                [
                    "qemu-img", "create", "-f", "qcow2",
                    "-F", "qcow2", "-b", self._config.cloud_image_path,
                    path, f"{size_gb}G",
                ],
                timeout=self._config.command_timeout,
            )
        logger.info("Disk created: %s", path)
        return path

    async def create_instance(self, spec: InstanceSpec) -> None:
        xml = render_domain_xml(spec, self._settings.network.app_port)
        xml_path = Path(self._xml_path(spec.name))

        def _write() -> None:
            xml_path.parent.mkdir(parents=True, exist_ok=True)
            xml_path.write_text(xml)

        await asyncio.to_thread(_write)
        async with track(self.mode, "create_instance", spec.name):
            await self._virsh("define", str(xml_path))
            await self._virsh("start", spec.name)
        logger.info("VM started: %s", spec.name)

    async def status(self, name: str) -> InstanceState:
        result = await self._virsh("domstate", name, check=False)
        if result.exit_code != 0:
            return InstanceState.NOT_FOUND
        return _STATE_MAP.get(result.stdout.strip().lower(), InstanceState.UNKNOWN)

    async def start(self, name: str) -> None:
        async with track(self.mode, "start", name):
            await self._virsh("start", name)

    async def stop(self, name: str) -> None:
        async with track(self.mode, "stop", name):
            await self._virsh("destroy", name)

    async def delete(self, name: str) -> None:
        host = await self.address(name)
        await self._virsh("destroy", name, check=False)
        async with track(self.mode, "delete", name):
            await self._virsh("undefine", name, "--remove-all-storage", check=False)
        if host:
            await self._shells.disconnect(host)
        await self._seeds.remove_seed(name)
        for path in (Path(self.disk_path(name)), Path(self._xml_path(name))):
            await asyncio.to_thread(path.unlink, missing_ok=True)
        logger.info("VM deleted: %s", name)

    async def remove_instance(self, name: str) -> None:
        await self._virsh("destroy", name, check=False)
        async with track(self.mode, "remove_instance", name):
            await self._virsh("undefine", name, check=False)

    async def address(self, name: str) -> str | None:
        try:
            result = await self._virsh("net-dhcp-leases", self._settings.network.vm_network)
        except DriverError as exc:
            logger.warning("Lease lookup failed for %s: %s", name, exc)
            return None
        lease = find_lease(parse_dhcp_leases(result.stdout), name)
        return lease.address if lease else None

    async def _host(self, name: str) -> str:
        host = await self.address(name)
        if not host:
            raise DriverError(f"No address known for {name}")
        return host

    async def exec(self, name: str, command: str) -> str:
        host = await self._host(name)
        async with track(self.mode, "exec", name):
            result = await self._shells.execute(host, command)
        if result.exit_code != 0:
            raise DriverError(
                f"Command exited with {result.exit_code} on {name}: {result.output[-500:].strip()}"
            )
        return result.output

    async def logs(self, name: str, tail: int = 100) -> str:
        host = await self._host(name)
        result = await self._shells.execute(host, f"tail -n {int(tail)} {self.app_dir}/app.log")
        return result.output

    async def stats(self, name: str) -> InstanceStats | None:
        return None

    async def snapshot(self, name: str, tag: str) -> str:
        raise UnsupportedOperationError("Snapshots are not supported for virtual machines")

    async def delete_snapshot(self, tag: str) -> None:
        raise UnsupportedOperationError("Snapshots are not supported for virtual machines")

    async def update_resources(self, name: str, ram_mb: int, cpu: int) -> None:
        raise UnsupportedOperationError("Live resize is not supported for virtual machines")

    async def open_shell(self, name: str, rows: int = 24, cols: int = 80) -> ShellSession:
        host = await self._host(name)
        channel = await self._shells.open_pty(host, rows, cols)
        return SSHShellSession(channel)

    async def close(self) -> None:
        await self._shells.close()
