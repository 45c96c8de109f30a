"""Host command execution (virsh, qemu-img, cloud-localds, TLS hook)."""

import asyncio
import logging
import shlex
from collections.abc import Sequence

from cloudbay.core.errors import DriverError
from cloudbay.core.interfaces import CommandResult
from cloudbay.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)


async def run_command(
    args: Sequence[str],
    timeout: float,
    check: bool = True,
    cwd: str | None = None,
) -> CommandResult:
    """Run a host command with a hard timeout.

    The process is killed when the timeout expires.

    Raises:
        DriverError: timeout, missing binary, or non-zero exit when ``check``
    """
    cmdline = shlex.join(args)
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
    except OSError as exc:
        raise DriverError(f"Cannot run {args[0]}: {exc}") from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError as exc:
        proc.kill()
        await proc.wait()
        logger.error(
            "Command timed out after %.0fs: %s",
            timeout,
            cmdline,
            extra={"event": LogEvent.COMMAND_FAILED, "command": args[0]},
        )
        raise DriverError(f"Command timed out: {cmdline}") from exc

    result = CommandResult(
        exit_code=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )
    if check and result.exit_code != 0:
        logger.warning(
            "Command failed (exit=%d): %s",
            result.exit_code,
            cmdline,
            extra={
                "event": LogEvent.COMMAND_FAILED,
                "command": args[0],
                "exit_code": result.exit_code,
            },
        )
        raise DriverError(
            f"{args[0]} failed (exit {result.exit_code}): {result.stderr.strip() or result.stdout.strip()}"
        )
    return result
