"""Token verification collaborator."""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import jwt

from parley.config import AuthConfig
from parley.errors import AuthError


@dataclass(frozen=True)
class Identity:
    """Who a verified token belongs to."""

    user_id: str
    role: str = "employee"
    name: str = ""


class Authenticator(Protocol):
    """Verifies a bearer credential. Raises AuthError when it is invalid."""

    def verify_token(self, token: str) -> Identity: ...


class JWTAuthenticator:
    """Authenticator for HMAC-signed JWTs."""

    def __init__(self, config: AuthConfig | None = None) -> None:
        self._config = config or AuthConfig()

    def verify_token(self, token: str) -> Identity:
        if not token:
            msg = "Access token required"
            raise AuthError(msg)
        try:
            claims: dict[str, Any] = jwt.decode(
                token,
                self._config.secret,
                algorithms=[self._config.algorithm],
                leeway=self._config.leeway_s,
            )
        except jwt.ExpiredSignatureError as e:
            msg = "Token expired"
            raise AuthError(msg) from e
        except jwt.InvalidTokenError as e:
            msg = "Invalid token"
            raise AuthError(msg) from e

        user_id = claims.get(self._config.user_id_claim)
        if not user_id:
            msg = f"Token has no {self._config.user_id_claim!r} claim"
            raise AuthError(msg)
        return Identity(
            user_id=str(user_id),
            role=str(claims.get(self._config.role_claim) or "employee"),
            name=str(claims.get(self._config.name_claim) or ""),
        )

    def issue_token(
        self,
        identity: Identity,
        expires_in: timedelta = timedelta(hours=24),
    ) -> str:
        """Sign a token for ``identity``. Used by tests and local tooling."""
        now = datetime.now(UTC)
        claims = {
            self._config.user_id_claim: identity.user_id,
            self._config.role_claim: identity.role,
            self._config.name_claim: identity.name,
            "iat": now,
            "exp": now + expires_in,
        }
        return jwt.encode(claims, self._config.secret, algorithm=self._config.algorithm)


def bearer_token(header: str | None) -> str:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not header:
        return ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()
