"""Server -> client wire events.

Every event the dispatcher can emit is its own pydantic model, tagged with the
wire name it travels under. Serialized payloads use camelCase aliases so they
match what existing Socket.IO clients expect.
"""

from datetime import UTC, datetime
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

MessageType = Literal["text", "file", "announcement"]
PresenceStatus = Literal["online", "offline", "away", "busy"]

DELETED_PLACEHOLDER = "This message was deleted."


def utcnow() -> datetime:
    return datetime.now(UTC)


class WireModel(BaseModel):
    """Base for everything that crosses the socket."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Dump with wire aliases into JSON-compatible primitives."""
        return self.model_dump(mode="json", by_alias=True)


class Reaction(WireModel):
    emoji: str
    user_id: str
    user_name: str


class ReadEntry(WireModel):
    user_id: str
    read_at: datetime = Field(default_factory=utcnow)


class Message(WireModel):
    """Canonical chat message as persisted by the store."""

    id: str
    chat_id: str
    sender_id: str
    sender_name: str
    content: str
    type: MessageType = "text"
    timestamp: datetime = Field(default_factory=utcnow)
    reactions: list[Reaction] = Field(default_factory=list)
    read_by: list[ReadEntry] = Field(default_factory=list)
    is_deleted: bool = False
    edited_at: datetime | None = None
    reply_to: str | None = None
    file_url: str | None = None
    file_name: str | None = None

    def is_read_by(self, user_id: str) -> bool:
        return any(entry.user_id == user_id for entry in self.read_by)


class ServerEvent(WireModel):
    """Base for tagged server events. Subclasses set ``event_name``."""

    event_name: ClassVar[str]


class _MessageEvent(ServerEvent, Message):
    """Event whose payload is a full Message."""

    @classmethod
    def of(cls, message: Message) -> "_MessageEvent":
        return cls.model_validate(message.model_dump())

    def as_message(self) -> Message:
        return Message.model_validate(self.model_dump())


class ReceiveMessage(_MessageEvent):
    """A message was durably created; fanned out to the chat room."""

    event_name: ClassVar[str] = "receive-message"


class NewMessage(_MessageEvent):
    """Same payload as ReceiveMessage, addressed to participants outside the room."""

    event_name: ClassVar[str] = "new-message"


class MessageUpdated(_MessageEvent):
    """A message was edited or its reactions changed."""

    event_name: ClassVar[str] = "messageUpdated"


class MessageDeleted(ServerEvent):
    event_name: ClassVar[str] = "messageDeleted"

    chat_id: str
    message_id: str


class MessagesRead(ServerEvent):
    event_name: ClassVar[str] = "messagesRead"

    chat_id: str
    reader_id: str
    message_ids: list[str]


class UserTyping(ServerEvent):
    event_name: ClassVar[str] = "user-typing"

    chat_id: str
    user_id: str
    user_name: str


class UserStopTyping(ServerEvent):
    event_name: ClassVar[str] = "user-stop-typing"

    chat_id: str
    user_id: str
    user_name: str


class UserStatusUpdate(ServerEvent):
    event_name: ClassVar[str] = "user-status-update"

    user_id: str
    status: PresenceStatus
    last_seen: datetime | None = None


class GlobalBroadcast(ServerEvent):
    """Admin broadcast delivered to every session regardless of rooms."""

    event_name: ClassVar[str] = "global-broadcast"

    sender_name: str
    message: str
    timestamp: datetime = Field(default_factory=utcnow)


class ChatCleared(ServerEvent):
    event_name: ClassVar[str] = "chat-cleared"

    chat_id: str
    cleared_by: str
    timestamp: datetime = Field(default_factory=utcnow)


class ChatDeleted(ServerEvent):
    event_name: ClassVar[str] = "chat-deleted"

    chat_id: str
    deleted_by: str


class ChatHistory(ServerEvent):
    """Reply to a resync request: authoritative messages since a point in time."""

    event_name: ClassVar[str] = "chat-history"

    chat_id: str
    messages: list[Message]


class ErrorEvent(ServerEvent):
    """Sent only to the connection whose command was rejected."""

    event_name: ClassVar[str] = "error"

    code: str
    message: str
    event: str | None = None
    chat_id: str | None = None


SERVER_EVENTS: tuple[type[ServerEvent], ...] = (
    ReceiveMessage,
    NewMessage,
    MessageUpdated,
    MessageDeleted,
    MessagesRead,
    UserTyping,
    UserStopTyping,
    UserStatusUpdate,
    GlobalBroadcast,
    ChatCleared,
    ChatDeleted,
    ChatHistory,
    ErrorEvent,
)
