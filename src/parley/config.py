"""Configuration dataclasses for the real-time hub and its ASGI app."""

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

DEFAULT_TYPING_TIMEOUT_S = 1.5
DEFAULT_PRESENCE_GRACE_S = 5.0
DEFAULT_OUTBOX_SIZE = 256
DEFAULT_COMMAND_TIMEOUT_S = 10.0
ENV_PREFIX = "PARLEY_"


def _env_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class HubConfig:
    """Configuration for the real-time hub."""

    presence_grace_s: float = DEFAULT_PRESENCE_GRACE_S
    """Delay before a user with no live connection is reported offline. 0 = immediate."""

    outbox_size: int = DEFAULT_OUTBOX_SIZE
    """Events buffered per connection before it is considered dead."""

    command_timeout_s: float = DEFAULT_COMMAND_TIMEOUT_S
    """Upper bound on handling a single inbound command."""

    enforce_participation: bool = True
    """Reject joins and typing for chats the user does not participate in."""

    participant_notifications: bool = False
    """Also send new-message to participants' sessions that are not in the room."""

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "HubConfig":
        env = os.environ if environ is None else environ
        config = cls()
        if value := env.get(f"{ENV_PREFIX}PRESENCE_GRACE_S"):
            config.presence_grace_s = float(value)
        if value := env.get(f"{ENV_PREFIX}OUTBOX_SIZE"):
            config.outbox_size = int(value)
        if value := env.get(f"{ENV_PREFIX}COMMAND_TIMEOUT_S"):
            config.command_timeout_s = float(value)
        if value := env.get(f"{ENV_PREFIX}ENFORCE_PARTICIPATION"):
            config.enforce_participation = _env_bool(value)
        if value := env.get(f"{ENV_PREFIX}PARTICIPANT_NOTIFICATIONS"):
            config.participant_notifications = _env_bool(value)
        return config


@dataclass
class AuthConfig:
    """Configuration for JWT verification."""

    secret: str = field(default="change-me", repr=False)
    """Shared HMAC secret for signing and verifying tokens."""

    algorithm: str = "HS256"
    """JWT signing algorithm."""

    user_id_claim: str = "userId"
    """Claim holding the user identifier."""

    role_claim: str = "role"
    """Claim holding the user's role."""

    name_claim: str = "name"
    """Claim holding the display name."""

    leeway_s: float = 0.0
    """Clock skew tolerated when checking expiry."""

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "AuthConfig":
        env = os.environ if environ is None else environ
        config = cls()
        if value := env.get(f"{ENV_PREFIX}JWT_SECRET"):
            config.secret = value
        if value := env.get(f"{ENV_PREFIX}JWT_ALGORITHM"):
            config.algorithm = value
        return config


@dataclass
class AppConfig:
    """Top-level configuration for the ASGI app."""

    hub: HubConfig = field(default_factory=HubConfig)
    """Real-time hub settings."""

    auth: AuthConfig = field(default_factory=AuthConfig)
    """Token verification settings."""

    manager_roles: frozenset[str] = frozenset({"admin", "manager"})
    """Roles allowed to broadcast, clear and delete chats."""

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "AppConfig":
        return cls(hub=HubConfig.from_env(environ), auth=AuthConfig.from_env(environ))
