"""Application deploy procedure.

One command sequence for every substrate: containers run it through the
Docker exec API, VMs through SSH (both behind ``Driver.exec``).

Sequence when a source URL is present:
    1. ensure git (tolerated)
    2. clear the working directory
    3. git clone <source> .
    4. framework build (individual steps tolerated as listed below)
    5. detect the entrypoint and launch it in the background, logging to
       <workdir>/app.log
"""

import asyncio
import logging
import shlex
from dataclasses import dataclass

from cloudbay.app.config import Settings, get_settings
from cloudbay.core.domain import Framework, ResourceType
from cloudbay.core.errors import DriverError
from cloudbay.core.interfaces import Driver
from cloudbay.core.logging_schema import LogEvent
from cloudbay.core.models import Resource

logger = logging.getLogger(__name__)

ENSURE_GIT = "which git || (apt-get update && apt-get install -y git)"


@dataclass(frozen=True)
class Step:
    command: str
    tolerated: bool = False


BUILD_STEPS: dict[str, list[Step]] = {
    Framework.NODE: [
        Step("npm install"),
        # Projects without a build script are fine
        Step("npm run build", tolerated=True),
    ],
    Framework.PYTHON: [Step("pip install -r requirements.txt || true")],
    Framework.GO: [
        Step("go mod download || true"),
        Step("go build -o app || true"),
    ],
}

# (marker files, start command), checked in order
ENTRYPOINTS: dict[str, list[tuple[tuple[str, ...], str]]] = {
    Framework.NODE: [(("package.json",), "npm start")],
    Framework.PYTHON: [
        (("app.py",), "python app.py"),
        (("main.py", "wsgi.py"), "python main.py"),
    ],
    Framework.GO: [(("main.go",), "go run main.go")],
}


def should_deploy(resource: Resource) -> bool:
    """App containers and VMs run the procedure; raw containers and k8s skip it."""
    return resource.type in (ResourceType.APP, ResourceType.VM)


def resolve_framework(resource: Resource) -> str:
    return resource.framework or Framework.NODE


def launch_command(start_cmd: str, app_dir: str, app_port: int) -> str:
    return (
        f"cd {app_dir} && nohup env PORT={app_port} HOST=0.0.0.0 "
        f"{start_cmd} > {app_dir}/app.log 2>&1 &"
    )


class Deployer:
    """Runs the deploy procedure against a resource through its driver."""

    def __init__(self, driver: Driver, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self._driver = driver
        self._app_port = settings.network.app_port
        self._settle = settings.provisioning.deploy_settle

    async def _run(self, resource: Resource, step: Step) -> None:
        command = f"cd {self._driver.app_dir} && {step.command}"
        try:
            await self._driver.exec(resource.name, command)
        except DriverError as exc:
            if not step.tolerated:
                raise
            logger.warning("Tolerated step failed (%s): %s", step.command, exc)

    async def deploy(self, resource: Resource) -> bool:
        """Run the full procedure. Returns False when there was nothing to deploy."""
        if not should_deploy(resource) or not resource.source_url:
            logger.info(
                "No application to deploy for %s",
                resource.name,
                extra={"event": LogEvent.DEPLOY_SKIPPED, "resource_id": resource.id},
            )
            return False

        app_dir = self._driver.app_dir
        framework = resolve_framework(resource)
        logger.info("Deploying %s (%s) into %s", resource.source_url, framework, resource.name)

        try:
            await self._driver.exec(resource.name, ENSURE_GIT)
        except DriverError as exc:
            logger.warning("git install failed on %s: %s", resource.name, exc)

        await self._driver.exec(
            resource.name,
            f"mkdir -p {app_dir} && rm -rf {app_dir}/* {app_dir}/.* 2>/dev/null || true",
        )
        await self._run(resource, Step(f"git clone {shlex.quote(resource.source_url)} ."))
        for step in BUILD_STEPS.get(framework, []):
            await self._run(resource, step)

        await self.launch(resource, strict=True)
        await asyncio.sleep(self._settle)
        return True

    async def detect_start_command(self, resource: Resource) -> str | None:
        app_dir = self._driver.app_dir
        for markers, start_cmd in ENTRYPOINTS.get(resolve_framework(resource), []):
            test = " || ".join(f"[ -f {app_dir}/{marker} ]" for marker in markers)
            output = await self._driver.exec(
                resource.name, f'({test}) && echo "yes" || echo "no"'
            )
            if output.strip().endswith("yes"):
                return start_cmd
        return None

    async def launch(self, resource: Resource, strict: bool = False) -> bool:
        """Start the application in the background.

        With ``strict`` a driver failure propagates; otherwise it is logged
        (relaunch after an explicit start must not fail the start).
        """
        try:
            start_cmd = await self.detect_start_command(resource)
            if start_cmd is None:
                logger.warning(
                    "No entrypoint found for %s in %s",
                    resolve_framework(resource),
                    resource.name,
                )
                return False
            await self._driver.exec(
                resource.name, launch_command(start_cmd, self._driver.app_dir, self._app_port)
            )
        except DriverError as exc:
            if strict:
                raise
            logger.error("Application launch failed in %s: %s", resource.name, exc)
            return False
        logger.info("Application started in %s", resource.name)
        return True
