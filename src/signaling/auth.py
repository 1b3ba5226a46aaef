"""Connection authentication.

Clients present the bearer token issued by the booking API, either in the
``Authorization`` header or as a ``token`` query parameter (browsers cannot
set headers on WebSocket handshakes). The token's ``id`` (or ``sub``) claim
becomes the connection's verified identity; an optional ``role`` claim is
authoritative over the role the client claims when joining.
"""

import logging
from collections.abc import Mapping
from urllib.parse import parse_qs, urlsplit

from jose import JWTError, jwt

from src.signaling.config import AuthConfig
from src.signaling.models import Identity, Role

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """Token missing, malformed, expired, or signed with the wrong key."""


def extract_token(headers: Mapping[str, str], path: str) -> str | None:
    """Extract a bearer token from handshake headers or the request path.

    Args:
        headers: Handshake request headers
        path: Request path including the query string

    Returns:
        The raw token, or None if the client sent none
    """
    auth_header = headers.get("Authorization") or headers.get("authorization")
    if auth_header:
        token = auth_header[7:] if auth_header.startswith("Bearer ") else auth_header
        return token.strip() or None

    query = parse_qs(urlsplit(path).query)
    tokens = query.get("token")
    if tokens and tokens[0].strip():
        return tokens[0].strip()
    return None


class Authenticator:
    """Verifies connection tokens against the shared JWT secret."""

    def __init__(self, config: AuthConfig) -> None:
        if config.required and not config.jwt_secret:
            raise ValueError("auth.required is set but auth.jwt_secret is empty (set JWT_SECRET)")
        self._config = config

    @property
    def required(self) -> bool:
        return self._config.required

    def verify_token(self, token: str) -> Identity:
        """Decode and verify a token.

        Raises:
            AuthenticationError: If the token is invalid or has no user id
        """
        if not self._config.jwt_secret:
            raise AuthenticationError("Token verification is not configured")

        try:
            claims = jwt.decode(
                token, self._config.jwt_secret, algorithms=[self._config.jwt_algorithm]
            )
        except JWTError as e:
            raise AuthenticationError(f"Invalid token: {e}") from e

        user_id = claims.get("id") or claims.get("sub")
        if not user_id:
            raise AuthenticationError("Token has no user id claim")

        role_claim = claims.get("role")
        role = Role.parse(role_claim) if role_claim else None
        return Identity(user_id=str(user_id), role=role)

    def authenticate(self, headers: Mapping[str, str], path: str) -> Identity | None:
        """Authenticate a handshake.

        Returns:
            The verified identity, or None for anonymous connections when
            authentication is optional

        Raises:
            AuthenticationError: If a presented token is invalid, or no token
                was presented and authentication is required
        """
        token = extract_token(headers, path)
        if token is None:
            if self._config.required:
                raise AuthenticationError("No token provided. Please login first.")
            return None

        if not self._config.jwt_secret:
            # Tokens cannot be checked; treat the connection as anonymous.
            logger.debug("Ignoring token, no jwt_secret configured")
            return None

        return self.verify_token(token)
