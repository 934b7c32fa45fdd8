"""The real-time hub: lifecycle owner for sessions, rooms, dispatch and presence."""

import logging
from collections.abc import Collection
from types import TracebackType

import anyio
from anyio.abc import TaskGroup
from opentelemetry.metrics import MeterProvider
from opentelemetry.trace import TracerProvider

from parley.auth import Authenticator
from parley.commands import (
    Command,
    JoinChat,
    JoinUser,
    LeaveChat,
    Resync,
    SendMessage,
    SetStatus,
    StartTyping,
    StopTyping,
)
from parley.config import HubConfig
from parley.connection import Connection
from parley.dispatcher import EventDispatcher
from parley.errors import NotParticipantError, ParleyError, PermissionDenied, ProtocolError
from parley.events import ChatHistory, ErrorEvent, UserStopTyping, UserTyping
from parley.handlers import CommandRouter
from parley.marshaler import JSONMarshaler, Marshaler
from parley.middleware import metrics_middleware, recoverer, timeout, tracing
from parley.presence import PresenceTracker
from parley.rooms import RoomMembership
from parley.service import DEFAULT_MANAGER_ROLES, ChatService
from parley.sessions import Session, SessionRegistry
from parley.store import ChatDirectory, MessageStore

logger = logging.getLogger(__name__)


class RealtimeHub:
    """Owns every piece of mutable real-time state for one server process.

    Construct one per server (or per test); nothing here is module-global.
    Use as an async context manager, or drive it with ``run()``/``close()``.
    The hub's task group hosts presence grace timers and the teardown of
    connections the dispatcher found dead.
    """

    def __init__(
        self,
        authenticator: Authenticator,
        store: MessageStore,
        directory: ChatDirectory,
        config: HubConfig | None = None,
        marshaler: Marshaler | None = None,
        manager_roles: Collection[str] = DEFAULT_MANAGER_ROLES,
        tracer_provider: TracerProvider | None = None,
        meter_provider: MeterProvider | None = None,
    ) -> None:
        self.config = config or HubConfig()
        self.authenticator = authenticator
        self.marshaler = marshaler or JSONMarshaler()
        self.sessions = SessionRegistry(authenticator)
        self.rooms = RoomMembership()
        self.dispatcher = EventDispatcher(
            self.rooms, self.sessions, meter_provider, on_dead=self._on_dead
        )
        self.presence = PresenceTracker(self.dispatcher)
        self.service = ChatService(
            store,
            directory,
            self.dispatcher,
            self.sessions,
            self.rooms,
            self.config,
            manager_roles,
        )

        self.commands = CommandRouter()
        self.commands.add_middleware(recoverer())
        self.commands.add_middleware(tracing(tracer_provider))
        self.commands.add_middleware(metrics_middleware(meter_provider))
        self.commands.add_middleware(timeout(self.config.command_timeout_s))
        for handler in (
            self._on_join_user,
            self._on_join_chat,
            self._on_leave_chat,
            self._on_typing,
            self._on_stop_typing,
            self._on_send_message,
            self._on_set_status,
            self._on_resync,
        ):
            self.commands.handler(handler)

        self._task_group: TaskGroup | None = None
        self._run_scope: anyio.CancelScope | None = None
        self._dead: dict[str, Connection] = {}

    # Lifecycle

    async def __aenter__(self) -> "RealtimeHub":
        if self._task_group is not None:
            msg = "RealtimeHub is already running"
            raise RuntimeError(msg)
        task_group = anyio.create_task_group()
        await task_group.__aenter__()
        self._task_group = task_group
        logger.info("Realtime hub started")
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> bool | None:
        task_group, self._task_group = self._task_group, None
        for session in self.sessions.sessions():
            session.connection.mark_dead()
        if task_group is None:
            return None
        task_group.cancel_scope.cancel()
        logger.info("Realtime hub stopped")
        return await task_group.__aexit__(exc_type, exc_val, exc_tb)

    async def run(self) -> None:
        """Run until ``close()`` is called."""
        async with self:
            with anyio.CancelScope() as scope:
                self._run_scope = scope
                await anyio.sleep_forever()
        self._run_scope = None

    async def close(self) -> None:
        """Stop ``run()`` and end every connection's outbox."""
        for session in self.sessions.sessions():
            session.connection.mark_dead()
        if self._run_scope is not None:
            self._run_scope.cancel()

    @property
    def running(self) -> bool:
        return self._task_group is not None

    # Connections

    async def connect(self, connection: Connection, token: str) -> Session:
        """Authenticate and admit a connection. Raises AuthError."""
        session = await self.sessions.authenticate(connection, token)
        await self.presence.mark_online(session.user_id)
        return session

    async def disconnect(self, connection: Connection) -> None:
        """Tear a connection down: rooms, session, then presence. Idempotent."""
        connection.mark_dead()
        self._dead.pop(connection.id, None)
        chats = await self.rooms.remove_connection(connection)
        session = await self.sessions.unregister(connection)
        if session is None:
            return
        if chats:
            logger.debug("Connection %s left %d room(s) on disconnect", connection.id, len(chats))
        if not self.sessions.is_online(session.user_id):
            await self.presence.schedule_offline(
                session.user_id,
                self._task_group,
                self.config.presence_grace_s,
                self.sessions.is_online,
            )

    async def prune(self) -> int:
        """Disconnect every registered connection that failed its liveness check."""
        dead = {
            s.connection.id: s.connection
            for s in self.sessions.sessions()
            if not s.connection.alive
        }
        dead.update(self._dead)
        for connection in dead.values():
            await self.disconnect(connection)
        return len(dead)

    def _on_dead(self, connection: Connection) -> None:
        if connection.id in self._dead:
            return
        self._dead[connection.id] = connection
        if self._task_group is not None:
            self._task_group.start_soon(self.disconnect, connection)

    # Inbound

    async def handle_frame(self, connection: Connection, raw: str | bytes) -> None:
        """Decode and handle one inbound frame; malformed frames get an error event."""
        try:
            command = self.marshaler.unmarshal_command(raw)
        except ProtocolError as e:
            logger.info("Bad frame from %s: %s", connection.id, e)
            await self.dispatcher.send_to_connection(
                connection, ErrorEvent(code=e.code, message=str(e))
            )
            return
        await self.handle(connection, command)

    async def handle(self, connection: Connection, command: Command) -> None:
        """Run a command for an authenticated connection.

        Failures are reported to the originating connection only.
        """
        session = self.sessions.require(connection)
        try:
            await self.commands.dispatch(command, session)
        except ParleyError as e:
            await self._reject(connection, command, e.code, str(e))
        except TimeoutError:
            await self._reject(connection, command, "timeout", "Command timed out")
        except Exception as e:
            # already logged with traceback by the recoverer middleware
            await self._reject(connection, command, "internal", type(e).__name__)

    async def _reject(
        self, connection: Connection, command: Command, code: str, message: str
    ) -> None:
        error = ErrorEvent(
            code=code,
            message=message,
            event=command.event_name,
            chat_id=getattr(command, "chat_id", None),
        )
        await self.dispatcher.send_to_connection(connection, error)

    # Command handlers

    async def _on_join_user(self, cmd: JoinUser, session: Session) -> None:
        if cmd.user_id != session.user_id:
            msg = "Cannot bind a connection to another user"
            raise PermissionDenied(msg)
        logger.debug("Connection %s bound to %s", session.connection.id, session.user_id)

    async def _on_join_chat(self, cmd: JoinChat, session: Session) -> None:
        await self.service.ensure_participant(session.identity, cmd.chat_id)
        await self.rooms.join(session.connection, cmd.chat_id)

    async def _on_leave_chat(self, cmd: LeaveChat, session: Session) -> None:
        await self.rooms.leave(session.connection, cmd.chat_id)

    async def _on_typing(self, cmd: StartTyping, session: Session) -> None:
        self._require_member(session, cmd.chat_id)
        event = UserTyping(
            chat_id=cmd.chat_id,
            user_id=session.user_id,
            user_name=cmd.user_name or session.name,
        )
        await self.dispatcher.publish(cmd.chat_id, event, exclude=session.connection)

    async def _on_stop_typing(self, cmd: StopTyping, session: Session) -> None:
        self._require_member(session, cmd.chat_id)
        event = UserStopTyping(
            chat_id=cmd.chat_id,
            user_id=session.user_id,
            user_name=cmd.user_name or session.name,
        )
        await self.dispatcher.publish(cmd.chat_id, event, exclude=session.connection)

    async def _on_send_message(self, cmd: SendMessage, session: Session) -> None:
        await self.service.send_message(
            session.identity,
            cmd.chat_id,
            cmd.content,
            type=cmd.type,
            reply_to=cmd.reply_to,
        )

    async def _on_set_status(self, cmd: SetStatus, session: Session) -> None:
        await self.presence.set_status(session.user_id, cmd.status)

    async def _on_resync(self, cmd: Resync, session: Session) -> None:
        messages = await self.service.history(session.identity, cmd.chat_id, cmd.since)
        await self.dispatcher.send_to_connection(
            session.connection, ChatHistory(chat_id=cmd.chat_id, messages=messages)
        )

    def _require_member(self, session: Session, chat_id: str) -> None:
        if self.config.enforce_participation and not self.rooms.is_member(
            session.connection, chat_id
        ):
            raise NotParticipantError(session.user_id, chat_id)
