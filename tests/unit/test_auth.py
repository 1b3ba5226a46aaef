"""Unit tests for connection authentication."""

import time
from typing import Any

import pytest
from jose import jwt

from src.signaling.auth import AuthenticationError, Authenticator, extract_token
from src.signaling.config import AuthConfig
from src.signaling.models import Role

SECRET = "test-secret"


def make_token(claims: dict[str, Any], secret: str = SECRET) -> str:
    return jwt.encode(claims, secret, algorithm="HS256")


class TestExtractToken:
    """Token extraction from handshake requests."""

    def test_bearer_header(self) -> None:
        assert extract_token({"Authorization": "Bearer abc.def.ghi"}, "/") == "abc.def.ghi"

    def test_raw_header(self) -> None:
        assert extract_token({"authorization": "abc.def.ghi"}, "/") == "abc.def.ghi"

    def test_query_parameter(self) -> None:
        assert extract_token({}, "/socket?token=abc.def.ghi&v=2") == "abc.def.ghi"

    def test_header_wins_over_query(self) -> None:
        token = extract_token({"Authorization": "Bearer header"}, "/?token=query")
        assert token == "header"

    @pytest.mark.parametrize("path", ["/", "/?token=", "/?other=1"])
    def test_no_token(self, path: str) -> None:
        assert extract_token({}, path) is None


class TestAuthenticator:
    """Token verification and handshake policy."""

    def test_required_without_secret_is_rejected(self) -> None:
        with pytest.raises(ValueError, match="jwt_secret"):
            Authenticator(AuthConfig(required=True))

    def test_verify_token_with_role(self) -> None:
        auth = Authenticator(AuthConfig(jwt_secret=SECRET))

        identity = auth.verify_token(make_token({"id": "doctor-1", "role": "doctor"}))

        assert identity.user_id == "doctor-1"
        assert identity.role is Role.DOCTOR

    def test_verify_token_sub_claim_without_role(self) -> None:
        auth = Authenticator(AuthConfig(jwt_secret=SECRET))

        identity = auth.verify_token(make_token({"sub": "patient-1"}))

        assert identity.user_id == "patient-1"
        assert identity.role is None

    def test_unknown_role_claim_is_patient(self) -> None:
        auth = Authenticator(AuthConfig(jwt_secret=SECRET))

        identity = auth.verify_token(make_token({"id": "u-1", "role": "nurse"}))

        assert identity.role is Role.PATIENT

    def test_wrong_secret(self) -> None:
        auth = Authenticator(AuthConfig(jwt_secret=SECRET))

        with pytest.raises(AuthenticationError, match="Invalid token"):
            auth.verify_token(make_token({"id": "doctor-1"}, secret="other-secret"))

    def test_expired_token(self) -> None:
        auth = Authenticator(AuthConfig(jwt_secret=SECRET))
        token = make_token({"id": "doctor-1", "exp": int(time.time()) - 60})

        with pytest.raises(AuthenticationError):
            auth.verify_token(token)

    def test_token_without_user_id(self) -> None:
        auth = Authenticator(AuthConfig(jwt_secret=SECRET))

        with pytest.raises(AuthenticationError, match="user id"):
            auth.verify_token(make_token({"role": "doctor"}))

    def test_optional_auth_allows_anonymous(self) -> None:
        auth = Authenticator(AuthConfig(jwt_secret=SECRET))
        assert auth.authenticate({}, "/") is None

    def test_required_auth_rejects_anonymous(self) -> None:
        auth = Authenticator(AuthConfig(required=True, jwt_secret=SECRET))

        with pytest.raises(AuthenticationError, match="No token provided"):
            auth.authenticate({}, "/")

    def test_presented_invalid_token_is_rejected(self) -> None:
        """An invalid token is an error even when authentication is optional."""
        auth = Authenticator(AuthConfig(jwt_secret=SECRET))

        with pytest.raises(AuthenticationError):
            auth.authenticate({"Authorization": "Bearer not-a-jwt"}, "/")

    def test_token_ignored_without_secret(self) -> None:
        auth = Authenticator(AuthConfig())

        assert auth.authenticate({"Authorization": "Bearer anything"}, "/") is None

    def test_authenticate_from_query(self) -> None:
        auth = Authenticator(AuthConfig(required=True, jwt_secret=SECRET))
        token = make_token({"id": "admin-1", "role": "ADMIN"})

        identity = auth.authenticate({}, f"/?token={token}")

        assert identity is not None
        assert identity.user_id == "admin-1"
        assert identity.role is Role.ADMIN
