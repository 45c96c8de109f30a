"""Remote shell access to VM guests over SSH (paramiko).

paramiko is blocking, so every call runs in a worker thread. Connections are
cached per host and dropped explicitly when a resource is deleted.
"""

import asyncio
import logging
from pathlib import Path

import paramiko

from cloudbay.app.config import SSHConfig, get_settings
from cloudbay.core.errors import DriverError
from cloudbay.core.interfaces import CommandResult
from cloudbay.core.logging_schema import LogEvent
from cloudbay.core.retryable import with_retry

logger = logging.getLogger(__name__)


class RemoteShellPool:
    """Per-host SSH client cache."""

    def __init__(self, config: SSHConfig | None = None) -> None:
        self._config = config or get_settings().ssh
        self._clients: dict[str, paramiko.SSHClient] = {}

    def public_key(self) -> str:
        """OpenSSH public key injected into guests via cloud-init."""
        pub_path = Path(f"{self._config.key_path}.pub")
        try:
            return pub_path.read_text().strip()
        except OSError as exc:
            raise DriverError(f"SSH public key not readable: {pub_path}") from exc

    def _connect_blocking(self, host: str) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        # Guests are created fresh; their host keys are unknown by definition
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=host,
                port=self._config.port,
                username=self._config.user,
                key_filename=self._config.key_path,
                timeout=self._config.connect_timeout,
                banner_timeout=self._config.connect_timeout,
                auth_timeout=self._config.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except Exception:
            client.close()
            raise
        return client

    async def connect(self, host: str) -> paramiko.SSHClient:
        """Return a live client for ``host``, connecting with backoff."""
        client = self._clients.get(host)
        if client is not None:
            transport = client.get_transport()
            if transport is not None and transport.is_active():
                return client
            self._clients.pop(host, None)
            client.close()

        try:
            client = await with_retry(
                lambda: asyncio.to_thread(self._connect_blocking, host),
                max_retries=self._config.connect_retries,
                base_delay=self._config.retry_base_delay,
            )
        except Exception as exc:
            raise DriverError(f"SSH connection to {host} failed: {exc}") from exc

        self._clients[host] = client
        logger.info(
            "SSH connected to %s",
            host,
            extra={"event": LogEvent.SSH_CONNECTED, "host": host},
        )
        return client

    async def execute(
        self, host: str, command: str, timeout: float | None = None
    ) -> CommandResult:
        """Run ``command`` and wait for its exit status."""
        client = await self.connect(host)
        command_timeout = timeout or self._config.command_timeout

        def _run() -> CommandResult:
            _, stdout, stderr = client.exec_command(command, timeout=command_timeout)
            exit_code = stdout.channel.recv_exit_status()
            return CommandResult(
                exit_code=exit_code,
                stdout=stdout.read().decode("utf-8", errors="replace"),
                stderr=stderr.read().decode("utf-8", errors="replace"),
            )

        try:
            return await asyncio.to_thread(_run)
        except (paramiko.SSHException, OSError) as exc:
            # Drop the cached client so the next call reconnects
            await self.disconnect(host)
            raise DriverError(f"SSH command on {host} failed: {exc}") from exc

    async def open_pty(self, host: str, rows: int, cols: int) -> paramiko.Channel:
        """Open an interactive shell channel with a pty."""
        client = await self.connect(host)
        try:
            return await asyncio.to_thread(
                client.invoke_shell, term="xterm", width=cols, height=rows
            )
        except paramiko.SSHException as exc:
            raise DriverError(f"Cannot open shell on {host}: {exc}") from exc

    async def disconnect(self, host: str) -> None:
        client = self._clients.pop(host, None)
        if client is None:
            return
        await asyncio.to_thread(client.close)
        logger.info(
            "SSH disconnected from %s",
            host,
            extra={"event": LogEvent.SSH_DISCONNECTED, "host": host},
        )

    async def close(self) -> None:
        for host in list(self._clients):
            await self.disconnect(host)
