"""Docker Engine API client with Pydantic models.

Provides async Docker API access for containers, images and exec sessions.
Supports both Unix socket and TCP (docker-proxy) connections.

Configuration via DockerConfig (DOCKER_ env prefix).
"""

import asyncio
import json
import logging
import struct
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel

from cloudbay.app.config import DockerConfig, get_settings
from cloudbay.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)

API_VERSION = "v1.43"


# =============================================================================
# Pydantic Models
# =============================================================================


class HostConfig(BaseModel):
    """Docker HostConfig for container creation."""

    binds: list[str] = []
    port_bindings: dict[str, int] = {}  # "3000/tcp" -> host port
    memory_mb: int | None = None
    cpus: int | None = None
    privileged: bool = False
    restart_policy: str = "unless-stopped"
    log_max_size: str | None = None
    log_max_file: str | None = None

    model_config = {"frozen": True}

    def to_api(self) -> dict:
        """Convert to Docker API format."""
        result: dict = {
            "Binds": self.binds,
            "PortBindings": {
                container_port: [{"HostPort": str(host_port)}]
                for container_port, host_port in self.port_bindings.items()
            },
            "Privileged": self.privileged,
            "RestartPolicy": {"Name": self.restart_policy},
        }
        if self.memory_mb:
            result.update(memory_limits(self.memory_mb))
        if self.cpus:
            result["NanoCpus"] = nano_cpus(self.cpus)
        if self.log_max_size or self.log_max_file:
            log_opts = {}
            if self.log_max_size:
                log_opts["max-size"] = self.log_max_size
            if self.log_max_file:
                log_opts["max-file"] = self.log_max_file
            result["LogConfig"] = {"Type": "json-file", "Config": log_opts}
        return result


class ContainerConfig(BaseModel):
    """Docker container configuration for creation."""

    image: str
    name: str
    # None keeps the image's default command/entrypoint
    cmd: list[str] | None = None
    env: list[str] = []
    working_dir: str | None = None
    exposed_ports: list[str] = []
    host_config: HostConfig = HostConfig()

    model_config = {"frozen": True}

    def to_api(self) -> dict:
        """Convert to Docker API JSON format."""
        result: dict = {
            "Image": self.image,
            "ExposedPorts": {port: {} for port in self.exposed_ports},
            "HostConfig": self.host_config.to_api(),
        }
        if self.cmd is not None:
            result["Cmd"] = self.cmd
        if self.env:
            result["Env"] = self.env
        if self.working_dir:
            result["WorkingDir"] = self.working_dir
        return result


def memory_limits(memory_mb: int) -> dict:
    """Memory and swap limits; swap is pinned so later updates stay valid."""
    memory = memory_mb * 1024 * 1024
    return {"Memory": memory, "MemorySwap": memory * 2}


def nano_cpus(cpus: int | float) -> int:
    return int(cpus * 1_000_000_000)


def split_image_ref(image_ref: str) -> tuple[str, str]:
    """Split ``repo[:tag]`` into (repo, tag), ignoring registry ports."""
    last = image_ref.rsplit("/", 1)[-1]
    if ":" in last:
        repo, tag = image_ref.rsplit(":", 1)
        return repo, tag
    return image_ref, "latest"


def demux_stream(data: bytes) -> tuple[bytes, bytes]:
    """Split a multiplexed (non-TTY) Docker stream into stdout and stderr.

    Frame format: [stream_type:1][0:3][size:4 big-endian][payload].
    Data without a valid header is treated as raw stdout.
    """
    stdout = bytearray()
    stderr = bytearray()
    offset = 0
    while offset + 8 <= len(data):
        stream_type = data[offset]
        if stream_type not in (0, 1, 2) or data[offset + 1 : offset + 4] != b"\x00\x00\x00":
            stdout.extend(data[offset:])
            return bytes(stdout), bytes(stderr)
        (size,) = struct.unpack(">I", data[offset + 4 : offset + 8])
        payload = data[offset + 8 : offset + 8 + size]
        if stream_type == 2:
            stderr.extend(payload)
        else:
            stdout.extend(payload)
        offset += 8 + size
    if offset < len(data):
        stdout.extend(data[offset:])
    return bytes(stdout), bytes(stderr)


# =============================================================================
# Docker Client
# =============================================================================


class DockerClient:
    """Async Docker API client.

    Constructed explicitly and handed to the container driver. ``ping`` is
    the health-check; ``get`` recreates the HTTP client only if it was
    closed.
    """

    def __init__(self, config: DockerConfig | None = None) -> None:
        self._config = config or get_settings().docker
        self._host = self._config.host
        self._client: httpx.AsyncClient | None = None

    @property
    def config(self) -> DockerConfig:
        return self._config

    def _create_client(self) -> httpx.AsyncClient:
        if self._host.startswith("unix://"):
            transport = httpx.AsyncHTTPTransport(uds=self._host.removeprefix("unix://"))
            return httpx.AsyncClient(
                transport=transport,
                base_url=f"http://localhost/{API_VERSION}",
                timeout=self._config.api_timeout,
            )
        base_url = self._host.replace("tcp://", "http://")
        return httpx.AsyncClient(
            base_url=f"{base_url}/{API_VERSION}", timeout=self._config.api_timeout
        )

    async def get(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = self._create_client()
        return self._client

    async def ping(self) -> bool:
        """Return True if the daemon answers ``/_ping``."""
        try:
            client = await self.get()
            resp = await client.get("/_ping")
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            await self.close()
            logger.error(
                "Docker API unavailable: %s",
                exc,
                extra={"event": LogEvent.DRIVER_UNAVAILABLE, "host": self._host},
            )
            return False
        logger.info(
            "Connected to Docker API",
            extra={"event": LogEvent.DRIVER_CONNECTED, "host": self._host},
        )
        return True

    async def open_raw(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Open a raw connection to the daemon (for hijacked exec streams)."""
        if self._host.startswith("unix://"):
            return await asyncio.open_unix_connection(self._host.removeprefix("unix://"))
        url = httpx.URL(self._host.replace("tcp://", "http://"))
        return await asyncio.open_connection(url.host, url.port or 2375)

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None


# =============================================================================
# Container API
# =============================================================================


class ContainerAPI:
    """Docker Container API operations."""

    def __init__(self, client: DockerClient) -> None:
        self._docker = client

    async def inspect(self, name: str) -> dict | None:
        """Inspect a container; None if not found."""
        client = await self._docker.get()
        resp = await client.get(f"/containers/{name}/json")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json()

    async def create(self, config: ContainerConfig) -> None:
        """Create a container. Idempotent on name conflict."""
        client = await self._docker.get()
        resp = await client.post(
            "/containers/create",
            params={"name": config.name},
            json=config.to_api(),
        )
        if resp.status_code == 409:
            logger.debug("Container already exists: %s", config.name)
            return
        resp.raise_for_status()
        logger.info(
            "Created container: %s",
            config.name,
            extra={"event": LogEvent.INSTANCE_CREATED, "instance": config.name},
        )

    async def start(self, name: str) -> None:
        client = await self._docker.get()
        resp = await client.post(f"/containers/{name}/start")
        if resp.status_code not in (204, 304):  # 304 = already started
            resp.raise_for_status()
        logger.info(
            "Started container: %s",
            name,
            extra={"event": LogEvent.INSTANCE_STARTED, "instance": name},
        )

    async def stop(self, name: str, timeout: int | None = None) -> None:
        client = await self._docker.get()
        stop_timeout = timeout if timeout is not None else self._docker.config.stop_timeout
        resp = await client.post(
            f"/containers/{name}/stop",
            params={"t": str(stop_timeout)},
            timeout=self._docker.config.api_timeout + stop_timeout,
        )
        if resp.status_code not in (204, 304):  # 304 = already stopped
            resp.raise_for_status()
        logger.info(
            "Stopped container: %s",
            name,
            extra={"event": LogEvent.INSTANCE_STOPPED, "instance": name},
        )

    async def remove(self, name: str, force: bool = True) -> None:
        client = await self._docker.get()
        resp = await client.delete(
            f"/containers/{name}", params={"force": "true" if force else "false"}
        )
        if resp.status_code == 404:
            logger.debug("Container not found: %s", name)
            return
        resp.raise_for_status()
        logger.info(
            "Removed container: %s",
            name,
            extra={"event": LogEvent.INSTANCE_REMOVED, "instance": name},
        )

    async def logs(self, name: str, tail: int = 100, timestamps: bool = True) -> str:
        """Return the last ``tail`` log lines (stdout and stderr merged)."""
        client = await self._docker.get()
        params = {
            "stdout": "true",
            "stderr": "true",
            "tail": str(tail),
            "timestamps": "true" if timestamps else "false",
        }
        resp = await client.get(f"/containers/{name}/logs", params=params)
        resp.raise_for_status()
        stdout, stderr = demux_stream(resp.content)
        return (stdout + stderr).decode("utf-8", errors="replace")

    async def stats(self, name: str) -> dict | None:
        """One-shot stats including the previous sample (``precpu_stats``)."""
        client = await self._docker.get()
        resp = await client.get(f"/containers/{name}/stats", params={"stream": "false"})
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json()

    async def update(self, name: str, memory_mb: int, cpus: int) -> None:
        """Update memory and CPU limits of a live container."""
        client = await self._docker.get()
        body = {**memory_limits(memory_mb), "NanoCpus": nano_cpus(cpus)}
        resp = await client.post(f"/containers/{name}/update", json=body)
        resp.raise_for_status()

    async def commit(self, name: str, image_ref: str, pause: bool = True) -> str:
        """Commit the container into a new image; returns the image id."""
        client = await self._docker.get()
        repo, tag = split_image_ref(image_ref)
        resp = await client.post(
            "/commit",
            params={
                "container": name,
                "repo": repo,
                "tag": tag,
                "pause": "true" if pause else "false",
            },
            timeout=self._docker.config.image_pull_timeout,
        )
        resp.raise_for_status()
        image_id = resp.json().get("Id", "")
        logger.info(
            "Committed container %s as %s",
            name,
            image_ref,
            extra={"event": LogEvent.SNAPSHOT_CREATED, "instance": name, "image": image_ref},
        )
        return image_id


# =============================================================================
# Exec API
# =============================================================================


class ExecAPI:
    """Docker exec operations (deploy commands and interactive shells)."""

    def __init__(self, client: DockerClient) -> None:
        self._docker = client

    async def create(
        self,
        container: str,
        cmd: list[str],
        tty: bool = False,
        stdin: bool = False,
        working_dir: str | None = None,
    ) -> str:
        client = await self._docker.get()
        body: dict = {
            "Cmd": cmd,
            "AttachStdin": stdin,
            "AttachStdout": True,
            "AttachStderr": True,
            "Tty": tty,
        }
        if working_dir:
            body["WorkingDir"] = working_dir
        resp = await client.post(f"/containers/{container}/exec", json=body)
        resp.raise_for_status()
        return resp.json()["Id"]

    async def run(self, exec_id: str, timeout: float | None = None) -> tuple[bytes, bytes]:
        """Start a non-TTY exec and collect its demultiplexed output."""
        client = await self._docker.get()
        resp = await client.post(
            f"/exec/{exec_id}/start",
            json={"Detach": False, "Tty": False},
            timeout=timeout or self._docker.config.exec_timeout,
        )
        resp.raise_for_status()
        return demux_stream(resp.content)

    async def inspect(self, exec_id: str) -> dict:
        client = await self._docker.get()
        resp = await client.get(f"/exec/{exec_id}/json")
        resp.raise_for_status()
        return resp.json()

    async def resize(self, exec_id: str, rows: int, cols: int) -> None:
        client = await self._docker.get()
        resp = await client.post(f"/exec/{exec_id}/resize", params={"h": rows, "w": cols})
        resp.raise_for_status()

    async def attach(
        self, exec_id: str, tty: bool = True
    ) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Start an exec over an upgraded connection and return the raw stream.

        After the ``101 Switching Protocols`` response the socket carries the
        pty bytes in both directions with no framing.
        """
        reader, writer = await self._docker.open_raw()
        body = json.dumps({"Detach": False, "Tty": tty}).encode()
        request = (
            f"POST /{API_VERSION}/exec/{exec_id}/start HTTP/1.1\r\n"
            "Host: docker\r\n"
            "Content-Type: application/json\r\n"
            "Connection: Upgrade\r\n"
            "Upgrade: tcp\r\n"
            f"Content-Length: {len(body)}\r\n\r\n"
        ).encode() + body
        writer.write(request)
        await writer.drain()

        header = await asyncio.wait_for(
            reader.readuntil(b"\r\n\r\n"), timeout=self._docker.config.api_timeout
        )
        status_line = header.split(b"\r\n", 1)[0].decode("latin-1")
        parts = status_line.split(" ", 2)
        if len(parts) < 2 or parts[1] not in ("101", "200"):
            writer.close()
            raise httpx.HTTPError(f"Exec attach failed: {status_line}")
        return reader, writer


# =============================================================================
# Image API
# =============================================================================


class ImageAPI:
    """Docker Image API operations."""

    def __init__(self, client: DockerClient) -> None:
        self._docker = client

    async def exists(self, image_ref: str) -> bool:
        client = await self._docker.get()
        resp = await client.get(f"/images/{image_ref}/json")
        return resp.status_code == 200

    async def pull(self, image_ref: str) -> None:
        """Pull image from registry.

        The endpoint streams JSON progress; errors arrive inside the stream
        with a 200 status, so the last message is checked too.
        """
        client = await self._docker.get()
        image, tag = split_image_ref(image_ref)
        logger.info("Pulling image: %s:%s", image, tag)

        resp = await client.post(
            "/images/create",
            params={"fromImage": image, "tag": tag},
            timeout=self._docker.config.image_pull_timeout,
        )
        resp.raise_for_status()
        for line in resp.text.splitlines()[::-1]:
            if not line.strip():
                continue
            try:
                message = json.loads(line)
            except ValueError:
                break
            if "error" in message:
                raise httpx.HTTPError(f"Image pull failed: {message['error']}")
            break
        logger.info(
            "Pulled image: %s:%s",
            image,
            tag,
            extra={"event": LogEvent.IMAGE_PULLED, "image": f"{image}:{tag}"},
        )

    async def ensure(self, image_ref: str) -> None:
        """Ensure image exists locally, pull if not."""
        if not await self.exists(image_ref):
            await self.pull(image_ref)

    async def remove(self, image_ref: str, force: bool = True) -> None:
        client = await self._docker.get()
        query = urlencode({"force": "true" if force else "false"})
        resp = await client.delete(f"/images/{image_ref}?{query}")
        if resp.status_code == 404:
            logger.debug("Image not found: %s", image_ref)
            return
        resp.raise_for_status()
        logger.info("Removed image: %s", image_ref)
