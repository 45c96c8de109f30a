"""Tests for bearer token verification."""

import jwt
import pytest

from cloudbay.app.config import get_settings
from cloudbay.core.errors import UnauthorizedError
from cloudbay.core.security import (
    Principal,
    create_access_token,
    extract_bearer,
    verify_token,
)


class TestVerifyToken:
    def test_round_trip(self) -> None:
        token = create_access_token("user-1", project_id="proj-1")

        assert verify_token(token) == Principal(user_id="user-1", project_id="proj-1")

    def test_without_project_scope(self) -> None:
        assert verify_token(create_access_token("user-1")).project_id is None

    def test_missing(self) -> None:
        with pytest.raises(UnauthorizedError, match="Authentication required"):
            verify_token(None)

    def test_expired(self) -> None:
        token = create_access_token("user-1", expires_in=-30)

        with pytest.raises(UnauthorizedError, match="expired"):
            verify_token(token)

    def test_wrong_secret(self) -> None:
        token = jwt.encode({"sub": "user-1"}, "another-secret-of-sufficient-length", algorithm="HS256")

        with pytest.raises(UnauthorizedError, match="Invalid token"):
            verify_token(token)

    def test_missing_subject(self) -> None:
        security = get_settings().security
        token = jwt.encode({"project_id": "p"}, security.jwt_secret, algorithm=security.jwt_algorithm)

        with pytest.raises(UnauthorizedError, match="Invalid token"):
            verify_token(token)

    def test_garbage(self) -> None:
        with pytest.raises(UnauthorizedError):
            verify_token("a.b.c")

    def test_status_code(self) -> None:
        with pytest.raises(UnauthorizedError) as exc_info:
            verify_token("")

        assert exc_info.value.status_code == 401


class TestExtractBearer:
    @pytest.mark.parametrize(
        "header,expected",
        [
            ("Bearer abc.def", "abc.def"),
            ("bearer abc.def", "abc.def"),
            ("Basic dXNlcg==", None),
            ("Bearer", None),
            ("", None),
            (None, None),
        ],
    )
    def test_extract(self, header: str | None, expected: str | None) -> None:
        assert extract_bearer(header) == expected
