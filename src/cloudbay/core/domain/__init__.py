"""Domain enums for resources and backups."""

from cloudbay.core.domain.resource import (
    RESTING_STATUSES,
    ROUTABLE_STATUSES,
    BackupStatus,
    Framework,
    ResourceStatus,
    ResourceType,
    can_transition,
)

__all__ = [
    "BackupStatus",
    "Framework",
    "ResourceStatus",
    "ResourceType",
    "RESTING_STATUSES",
    "ROUTABLE_STATUSES",
    "can_transition",
]
