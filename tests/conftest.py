"""Shared fixtures for parley tests."""

from collections.abc import Awaitable, Callable

import pytest

from parley.auth import Identity, JWTAuthenticator
from parley.config import AuthConfig, HubConfig
from parley.connection import Connection
from parley.events import ServerEvent
from parley.hub import RealtimeHub
from parley.store import InMemoryChatDirectory, InMemoryMessageStore

SECRET = "test-secret"

TokenFactory = Callable[..., str]
ConnectFactory = Callable[..., Awaitable[Connection]]


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def auth_config() -> AuthConfig:
    return AuthConfig(secret=SECRET)


@pytest.fixture
def authenticator(auth_config: AuthConfig) -> JWTAuthenticator:
    return JWTAuthenticator(auth_config)


@pytest.fixture
def issue(authenticator: JWTAuthenticator) -> TokenFactory:
    """Sign a token for a user; the display name defaults to the capitalized id."""

    def issue(user_id: str, role: str = "employee", name: str | None = None) -> str:
        identity = Identity(user_id=user_id, role=role, name=name or user_id.title())
        return authenticator.issue_token(identity)

    return issue


@pytest.fixture
def store() -> InMemoryMessageStore:
    return InMemoryMessageStore()


@pytest.fixture
def directory() -> InMemoryChatDirectory:
    """Three chats with overlapping participants."""
    return InMemoryChatDirectory(
        {
            "c1": {"alice", "bob", "carol"},
            "c2": {"alice", "dave"},
            "c3": {"bob", "erin"},
        }
    )


@pytest.fixture
def hub_config() -> HubConfig:
    """Immediate offline transitions; grace behavior has its own tests."""
    return HubConfig(presence_grace_s=0)


@pytest.fixture
def hub(
    authenticator: JWTAuthenticator,
    store: InMemoryMessageStore,
    directory: InMemoryChatDirectory,
    hub_config: HubConfig,
) -> RealtimeHub:
    return RealtimeHub(authenticator, store, directory, hub_config)


@pytest.fixture
def connect(hub: RealtimeHub, issue: TokenFactory) -> ConnectFactory:
    """Admit an in-process connection for ``user_id``."""

    async def connect(
        user_id: str, role: str = "employee", buffer_size: int = 64
    ) -> Connection:
        connection = Connection(buffer_size=buffer_size)
        await hub.connect(connection, issue(user_id, role))
        return connection

    return connect


def drain(connection: Connection, event_type: type[ServerEvent] | None = None) -> list:
    """Everything queued on ``connection``, optionally only of ``event_type``."""
    events = connection.pending()
    if event_type is None:
        return events
    return [e for e in events if isinstance(e, event_type)]
