"""Name, subdomain and host-port allocation for new resources."""

import re

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cloudbay.core.models import Resource

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9-]")


def sanitize_name(display_name: str | None) -> str:
    """Map a display name to a substrate-safe label.

    Every character outside ``[a-zA-Z0-9-]`` becomes ``-``; the result is
    lowercased.
    """
    return _UNSAFE_CHARS.sub("-", display_name or "").lower()


def instance_name(prefix: str, sanitized: str, resource_id: str) -> str:
    """``{prefix}{sanitized-}{id[:8]}``; the id keeps names globally unique."""
    label = f"{sanitized}-" if sanitized else ""
    return f"{prefix}{label}{resource_id[:8]}"


async def allocate_subdomain(db: AsyncSession, base: str) -> str:
    """Return ``base``, or ``base-1``, ``base-2``... whichever is unused first."""
    candidate = base
    counter = 1
    while True:
        result = await db.execute(
            select(func.count()).select_from(Resource).where(Resource.subdomain == candidate)
        )
        if result.scalar_one() == 0:
            return candidate
        candidate = f"{base}-{counter}"
        counter += 1


async def allocate_host_port(db: AsyncSession, project_id: str, base_port: int) -> int:
    """Highest host port already used in the project + 1, else ``base_port``."""
    result = await db.execute(
        select(func.max(Resource.host_port)).where(Resource.project_id == project_id)
    )
    last_port = result.scalar_one_or_none()
    return last_port + 1 if last_port is not None else base_port
