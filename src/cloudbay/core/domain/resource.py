"""Resource domain enums and the lifecycle state machine."""

from enum import StrEnum


class ResourceType(StrEnum):
    """Declared resource type (stored values match the persisted schema)."""

    APP = "app"  # app-container: framework base image + git deploy
    DOCKER = "docker"  # raw-container: arbitrary image
    K8S = "k8s"  # single-node Kubernetes (k3s)
    VM = "vm"  # full virtual machine


class Framework(StrEnum):
    NODE = "node"
    PYTHON = "python"
    GO = "go"


class ResourceStatus(StrEnum):
    CREATING = "creating"
    RUNNING = "running"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    STOPPED = "stopped"
    ERROR = "error"


class BackupStatus(StrEnum):
    CREATING = "creating"
    READY = "ready"
    ERROR = "error"


# Statuses a resource may rest in indefinitely
RESTING_STATUSES = frozenset({
    ResourceStatus.DEPLOYED,
    ResourceStatus.ERROR,
    ResourceStatus.STOPPED,
})

# Statuses in which the edge proxy forwards traffic
ROUTABLE_STATUSES = frozenset({
    ResourceStatus.RUNNING,
    ResourceStatus.DEPLOYED,
})

_TRANSITIONS: dict[ResourceStatus, frozenset[ResourceStatus]] = {
    ResourceStatus.CREATING: frozenset({ResourceStatus.RUNNING, ResourceStatus.ERROR}),
    ResourceStatus.RUNNING: frozenset({
        ResourceStatus.DEPLOYING,
        ResourceStatus.STOPPED,
        ResourceStatus.ERROR,
    }),
    ResourceStatus.DEPLOYING: frozenset({ResourceStatus.DEPLOYED, ResourceStatus.ERROR}),
    ResourceStatus.DEPLOYED: frozenset({
        ResourceStatus.STOPPED,
        ResourceStatus.DEPLOYING,  # redeploy
        ResourceStatus.ERROR,
    }),
    ResourceStatus.STOPPED: frozenset({ResourceStatus.RUNNING, ResourceStatus.ERROR}),
    # Explicit user action (restore) brings an errored resource back up
    ResourceStatus.ERROR: frozenset({ResourceStatus.RUNNING}),
}


def can_transition(current: str, target: str) -> bool:
    """Return True if ``current -> target`` is a defined edge.

    Setting a status to itself is always allowed (idempotent writes).
    """
    current_status = ResourceStatus(current)
    target_status = ResourceStatus(target)
    if current_status == target_status:
        return True
    return target_status in _TRANSITIONS[current_status]
