"""Persistent models for resources, backups and usage samples."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, Index, String, Text
from sqlmodel import Field, SQLModel
from ulid import ULID

from cloudbay.core.domain import BackupStatus, ResourceStatus, ResourceType


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ULID())


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


class Resource(SQLModel, table=True):
    """Managed compute unit (container, k8s node or VM)."""

    __tablename__ = "resources"

    id: str = Field(primary_key=True)
    project_id: str = Field(index=True)

    # Substrate-level instance name, derived from display name + id
    name: str = Field(max_length=255, unique=True)
    display_name: str = Field(default="", max_length=255)
    type: ResourceType = Field(default=ResourceType.APP, sa_type=String)
    framework: str | None = Field(default=None, max_length=32)
    docker_image: str | None = Field(default=None, max_length=512)
    source_url: str | None = Field(default=None, max_length=1024)

    subdomain: str = Field(max_length=255, unique=True, index=True)
    ram: int = Field(default=2048)  # MB
    cpu: int = Field(default=2)  # cores
    disk: int = Field(default=20)  # GB
    host_port: int | None = Field(default=None)
    ip: str | None = Field(default=None, max_length=64)
    app_url: str | None = Field(default=None, max_length=512)

    status: ResourceStatus = Field(default=ResourceStatus.CREATING, sa_type=String)
    error: str | None = Field(default=None, sa_column=Column(Text))

    created_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )

    __table_args__ = (
        # Next-port lookup per project
        Index("idx_resources_project_port", "project_id", "host_port"),
    )


class Backup(SQLModel, table=True):
    """Point-in-time snapshot descriptor (image tag + directory archive)."""

    __tablename__ = "backups"

    id: str = Field(default_factory=generate_ulid, primary_key=True)
    resource_id: str = Field(index=True)
    name: str = Field(max_length=255)
    image_tag: str = Field(max_length=512)
    archive_path: str | None = Field(default=None, max_length=1024)
    size: int = Field(default=0)  # bytes
    status: BackupStatus = Field(default=BackupStatus.CREATING, sa_type=String)
    created_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )


class ResourceSample(SQLModel, table=True):
    """Append-only CPU/RAM usage point."""

    __tablename__ = "resource_samples"

    id: str = Field(default_factory=generate_ulid, primary_key=True)
    resource_id: str = Field(index=True)
    cpu_usage: float = Field(default=0.0)  # percent
    ram_usage: float = Field(default=0.0)  # MB
    timestamp: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )

    __table_args__ = (
        Index("idx_resource_samples_resource_ts", "resource_id", "timestamp"),
    )
