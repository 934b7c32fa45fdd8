"""Client -> server commands carried over the socket."""

from datetime import datetime
from typing import ClassVar

from parley.events import MessageType, PresenceStatus, WireModel


class Command(WireModel):
    """Base for inbound commands.

    ``bare_field`` names the attribute a bare string payload maps to, so
    ``emit("join-chat", "c1")`` from a Socket.IO style client still parses.
    """

    event_name: ClassVar[str]
    bare_field: ClassVar[str | None] = None


class JoinUser(Command):
    """Bind the connection to its user. Must match the authenticated user."""

    event_name: ClassVar[str] = "join-user"
    bare_field: ClassVar[str | None] = "user_id"

    user_id: str


class JoinChat(Command):
    event_name: ClassVar[str] = "join-chat"
    bare_field: ClassVar[str | None] = "chat_id"

    chat_id: str


class LeaveChat(Command):
    event_name: ClassVar[str] = "leave-chat"
    bare_field: ClassVar[str | None] = "chat_id"

    chat_id: str


class StartTyping(Command):
    event_name: ClassVar[str] = "typing"

    chat_id: str
    user_name: str | None = None


class StopTyping(Command):
    event_name: ClassVar[str] = "stop-typing"

    chat_id: str
    user_name: str | None = None


class SendMessage(Command):
    """Direct socket send; persisted before anything is fanned out."""

    event_name: ClassVar[str] = "send-message"

    chat_id: str
    content: str
    type: MessageType = "text"
    reply_to: str | None = None


class SetStatus(Command):
    event_name: ClassVar[str] = "set-status"
    bare_field: ClassVar[str | None] = "status"

    status: PresenceStatus


class Resync(Command):
    """Ask for messages missed since ``since`` (everything when omitted)."""

    event_name: ClassVar[str] = "resync"

    chat_id: str
    since: datetime | None = None


CLIENT_COMMANDS: tuple[type[Command], ...] = (
    JoinUser,
    JoinChat,
    LeaveChat,
    StartTyping,
    StopTyping,
    SendMessage,
    SetStatus,
    Resync,
)
