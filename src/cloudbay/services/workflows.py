"""Observable background workflows.

Every asynchronous operation (provision, restore, redeploy) is tracked as a
Workflow so callers and tests can inspect its progress or await it.
Workflows are never cancelled or retried.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from ulid import ULID

from cloudbay.app.logging import bind_resource
from cloudbay.app.metrics.collector import (
    WORKFLOW_DURATION,
    WORKFLOWS_RUNNING,
    WORKFLOWS_TOTAL,
)
from cloudbay.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)


class WorkflowKind(StrEnum):
    PROVISION = "provision"
    RESTORE = "restore"
    REDEPLOY = "redeploy"


class WorkflowState(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class Workflow:
    resource_id: str
    kind: WorkflowKind
    id: str = field(default_factory=lambda: str(ULID()))
    state: WorkflowState = WorkflowState.PENDING
    step: str = ""
    error: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self.state in (WorkflowState.SUCCEEDED, WorkflowState.FAILED)

    def set_step(self, step: str) -> None:
        self.step = step
        logger.info(
            "Workflow %s step: %s",
            self.kind,
            step,
            extra={
                "event": LogEvent.WORKFLOW_STEP,
                "resource_id": self.resource_id,
                "workflow": self.kind,
                "step": step,
            },
        )


class WorkflowRegistry:
    """Holds the latest workflow per resource and the set of live tasks."""

    def __init__(self) -> None:
        self._latest: dict[str, Workflow] = {}
        self._tasks: set[asyncio.Task] = set()

    def start(
        self,
        resource_id: str,
        kind: WorkflowKind,
        body: Callable[[Workflow], Awaitable[None]],
    ) -> Workflow:
        """Run ``body`` as an independent task and return its Workflow.

        ``body`` handles its own failures (writing them to the resource);
        anything that escapes is recorded on the workflow.
        """
        workflow = Workflow(resource_id=resource_id, kind=kind)
        self._latest[resource_id] = workflow
        workflow.task = asyncio.create_task(self._run(workflow, body))
        self._tasks.add(workflow.task)
        workflow.task.add_done_callback(self._tasks.discard)
        return workflow

    async def _run(
        self, workflow: Workflow, body: Callable[[Workflow], Awaitable[None]]
    ) -> None:
        # Tasks run in a copied context, so this only tags this workflow's lines
        bind_resource(workflow.resource_id)
        workflow.state = WorkflowState.RUNNING
        started = time.monotonic()
        WORKFLOWS_RUNNING.inc()
        logger.info(
            "Workflow %s started",
            workflow.kind,
            extra={
                "event": LogEvent.WORKFLOW_STARTED,
                "resource_id": workflow.resource_id,
                "workflow": workflow.kind,
            },
        )
        try:
            await body(workflow)
        except Exception as exc:
            workflow.state = WorkflowState.FAILED
            workflow.error = str(exc) or type(exc).__name__
            logger.error(
                "Workflow %s failed at %s: %s",
                workflow.kind,
                workflow.step or "start",
                workflow.error,
                extra={
                    "event": LogEvent.WORKFLOW_FAILED,
                    "resource_id": workflow.resource_id,
                    "workflow": workflow.kind,
                    "step": workflow.step,
                    "error_type": type(exc).__name__,
                },
            )
        else:
            workflow.state = WorkflowState.SUCCEEDED
            logger.info(
                "Workflow %s succeeded",
                workflow.kind,
                extra={
                    "event": LogEvent.WORKFLOW_SUCCEEDED,
                    "resource_id": workflow.resource_id,
                    "workflow": workflow.kind,
                },
            )
        finally:
            workflow.finished_at = datetime.now(UTC)
            WORKFLOWS_RUNNING.dec()
            WORKFLOWS_TOTAL.labels(kind=workflow.kind, outcome=workflow.state).inc()
            WORKFLOW_DURATION.labels(kind=workflow.kind).observe(time.monotonic() - started)

    def get(self, resource_id: str) -> Workflow | None:
        return self._latest.get(resource_id)

    async def wait(self, resource_id: str) -> Workflow | None:
        """Await the latest workflow of ``resource_id`` (None if there is none)."""
        workflow = self._latest.get(resource_id)
        if workflow is not None and workflow.task is not None:
            await asyncio.shield(workflow.task)
        return workflow

    def forget(self, resource_id: str) -> None:
        self._latest.pop(resource_id, None)

    async def drain(self) -> None:
        """Wait for every in-flight workflow (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
