"""Session registry: which connection belongs to which authenticated user."""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime

import anyio

from parley.auth import Authenticator, Identity
from parley.connection import Connection
from parley.errors import AuthError
from parley.events import utcnow

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """An authenticated connection. Lives exactly as long as the connection."""

    connection: Connection
    identity: Identity
    connected_at: datetime = field(default_factory=utcnow)

    @property
    def user_id(self) -> str:
        return self.identity.user_id

    @property
    def role(self) -> str:
        return self.identity.role

    @property
    def name(self) -> str:
        return self.identity.name


class SessionRegistry:
    """Maps connections to sessions and users to their live connections.

    Only connections that passed ``authenticate`` are ever registered, so
    nothing else can be reached by fan-out.
    """

    def __init__(self, authenticator: Authenticator) -> None:
        self._authenticator = authenticator
        self._sessions: dict[str, Session] = {}
        self._by_user: dict[str, set[str]] = defaultdict(set)
        self._lock = anyio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    async def authenticate(self, connection: Connection, token: str) -> Session:
        """Verify ``token`` and register the connection under its user.

        Raises AuthError; the connection is left unregistered in that case.
        """
        try:
            identity = self._authenticator.verify_token(token)
        except AuthError:
            logger.info("Rejected connection %s: authentication failed", connection.id)
            raise

        async with self._lock:
            session = Session(connection=connection, identity=identity)
            self._sessions[connection.id] = session
            self._by_user[identity.user_id].add(connection.id)

        logger.info("User %s connected on %s", identity.user_id, connection.id)
        return session

    def get(self, connection: Connection) -> Session | None:
        return self._sessions.get(connection.id)

    def find(self, connection_id: str) -> Session | None:
        return self._sessions.get(connection_id)

    def require(self, connection: Connection) -> Session:
        session = self._sessions.get(connection.id)
        if session is None:
            msg = f"Connection {connection.id} is not authenticated"
            raise AuthError(msg)
        return session

    async def unregister(self, connection: Connection) -> Session | None:
        """Forget a connection. Safe to call more than once."""
        async with self._lock:
            session = self._sessions.pop(connection.id, None)
            if session is None:
                return None
            user_connections = self._by_user.get(session.user_id)
            if user_connections is not None:
                user_connections.discard(connection.id)
                if not user_connections:
                    del self._by_user[session.user_id]

        logger.info("User %s disconnected from %s", session.user_id, connection.id)
        return session

    def connections_for(self, user_id: str) -> list[Connection]:
        return [
            self._sessions[cid].connection
            for cid in self._by_user.get(user_id, ())
            if cid in self._sessions
        ]

    def is_online(self, user_id: str) -> bool:
        return any(conn.alive for conn in self.connections_for(user_id))

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())
