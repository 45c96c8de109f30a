"""SQLModel table definitions."""

from cloudbay.core.models.resource import (
    Backup,
    Resource,
    ResourceSample,
    generate_ulid,
    utc_now,
)

__all__ = ["Backup", "Resource", "ResourceSample", "generate_ulid", "utc_now"]
