"""Certificate registration hook.

Registration is fire-and-forget: failures are logged and never affect
provisioning or routing.
"""

import asyncio
import logging
import shlex

from cloudbay.app.config import TLSConfig, get_settings
from cloudbay.core.errors import DriverError
from cloudbay.core.logging_schema import LogEvent
from cloudbay.infra.process import run_command

logger = logging.getLogger(__name__)


class TLSRegistrar:
    def __init__(self, config: TLSConfig | None = None) -> None:
        self._config = config or get_settings().tls
        self._tasks: set[asyncio.Task] = set()

    def build_command(self, domain: str, altnames: list[str] | None = None) -> list[str]:
        rendered = self._config.register_command.format(
            domain=domain, altnames=",".join(altnames or [domain])
        )
        return shlex.split(rendered)

    async def register(self, domain: str, altnames: list[str] | None = None) -> bool:
        """Run the registration command; returns success instead of raising."""
        try:
            await run_command(
                self.build_command(domain, altnames),
                timeout=self._config.timeout,
                cwd=self._config.workdir,
            )
        except DriverError as exc:
            logger.warning(
                "TLS registration failed for %s: %s",
                domain,
                exc,
                extra={"event": LogEvent.TLS_FAILED, "domain": domain},
            )
            return False
        logger.info(
            "TLS registered for %s",
            domain,
            extra={"event": LogEvent.TLS_REGISTERED, "domain": domain},
        )
        return True

    def schedule(self, domain: str, altnames: list[str] | None = None) -> asyncio.Task | None:
        """Start registration in the background and return immediately."""
        if not self._config.enabled:
            return None
        task = asyncio.create_task(self.register(domain, altnames))
        # Keep a reference until done so the task is not garbage collected
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
