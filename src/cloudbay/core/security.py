"""Bearer credential verification.

Tokens are issued by the external auth service; the control plane only
verifies them. Claims used here:
- sub: user id
- project_id: optional project scope (resources outside it are not visible)
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt

from cloudbay.app.config import get_settings
from cloudbay.core.errors import UnauthorizedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    """Authenticated caller extracted from a bearer token."""

    user_id: str
    project_id: str | None = None


def create_access_token(
    user_id: str,
    project_id: str | None = None,
    expires_in: int | None = None,
) -> str:
    """Issue a signed token (operators and tests)."""
    security = get_settings().security
    now = datetime.now(UTC)
    payload: dict[str, Any] = {
        "sub": user_id,
        "iat": now,
        "exp": now + timedelta(seconds=expires_in or security.token_ttl),
    }
    if project_id:
        payload["project_id"] = project_id
    return jwt.encode(payload, security.jwt_secret, algorithm=security.jwt_algorithm)


def verify_token(token: str | None) -> Principal:
    """Decode and verify a bearer token.

    Raises:
        UnauthorizedError: missing, expired, tampered or malformed token
    """
    if not token:
        raise UnauthorizedError()

    security = get_settings().security
    try:
        payload = jwt.decode(
            token,
            security.jwt_secret,
            algorithms=[security.jwt_algorithm],
        )
    except jwt.ExpiredSignatureError as exc:
        logger.warning("Rejected expired token")
        raise UnauthorizedError("Token has expired") from exc
    except jwt.InvalidTokenError as exc:
        logger.warning("Rejected invalid token: %s", exc)
        raise UnauthorizedError("Invalid token") from exc

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError("Invalid token")
    return Principal(user_id=str(user_id), project_id=payload.get("project_id"))


def extract_bearer(authorization: str | None) -> str | None:
    """Return the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()
