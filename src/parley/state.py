"""Client-side synchronization state.

Every inbound event is folded in as a merge, never a blind append, so
redelivered or out-of-order events cannot duplicate or reorder messages:

- a message id already present wins over any later copy of the create
- an update replaces the stored message in place
- a delete turns the message into a placeholder at the same position
- read receipts are a per-user union
"""

import logging
import time
from collections.abc import Callable, Iterable, Iterator
from datetime import datetime
from typing import Any

from parley.config import DEFAULT_TYPING_TIMEOUT_S
from parley.events import (
    DELETED_PLACEHOLDER,
    ChatCleared,
    ChatDeleted,
    ChatHistory,
    ErrorEvent,
    GlobalBroadcast,
    Message,
    MessageDeleted,
    MessagesRead,
    MessageUpdated,
    NewMessage,
    ReadEntry,
    ReceiveMessage,
    ServerEvent,
    UserStatusUpdate,
    UserStopTyping,
    UserTyping,
    utcnow,
)
from parley.indicators import Clock, TypingIndicators

logger = logging.getLogger(__name__)


class ChatTimeline:
    """Ordered, id-deduplicated messages of one chat.

    Order is insertion order. With ``chronological=True`` the timeline keeps
    a stable sort on (timestamp, id) instead; edits never move a message in
    either mode since they do not change its timestamp.
    """

    def __init__(self, chat_id: str, chronological: bool = False) -> None:
        self.chat_id = chat_id
        self.chronological = chronological
        self._messages: dict[str, Message] = {}

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages.values()))

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._messages

    def get(self, message_id: str) -> Message | None:
        return self._messages.get(message_id)

    def ids(self) -> list[str]:
        return list(self._messages)

    def position(self, message_id: str) -> int:
        return self.ids().index(message_id)

    def append(self, message: Message) -> bool:
        """Add a new message. A known id is a no-op: the existing entry wins."""
        if message.id in self._messages:
            return False
        self._messages[message.id] = message
        if self.chronological:
            self._resort()
        return True

    def update(self, message: Message) -> bool:
        """Replace a known message in place. Unknown ids are ignored."""
        if message.id not in self._messages:
            return False
        self._messages[message.id] = message
        return True

    def soft_delete(self, message_id: str) -> bool:
        message = self._messages.get(message_id)
        if message is None:
            return False
        self._messages[message_id] = message.model_copy(
            update={"is_deleted": True, "content": DELETED_PLACEHOLDER}
        )
        return True

    def mark_read(
        self,
        reader_id: str,
        message_ids: Iterable[str],
        read_at: datetime | None = None,
    ) -> int:
        """Add a read entry for ``reader_id`` where missing; returns how many were added."""
        read_at = read_at or utcnow()
        added = 0
        for message_id in message_ids:
            message = self._messages.get(message_id)
            if message is None or message.is_read_by(reader_id):
                continue
            read_by = [*message.read_by, ReadEntry(user_id=reader_id, read_at=read_at)]
            self._messages[message_id] = message.model_copy(update={"read_by": read_by})
            added += 1
        return added

    def merge_history(self, messages: Iterable[Message]) -> int:
        """Fold an authoritative fetch in: known ids replaced in place, new ids appended.

        Returns the number of messages that were not known before.
        """
        added = 0
        for message in messages:
            if message.id in self._messages:
                self._messages[message.id] = message
            else:
                self._messages[message.id] = message
                added += 1
        if self.chronological:
            self._resort()
        return added

    def clear(self) -> None:
        self._messages.clear()

    def latest_activity(self) -> datetime | None:
        """Newest server-assigned creation or edit time, used as the resync watermark."""
        return max(
            (m.edited_at or m.timestamp for m in self._messages.values()),
            default=None,
        )

    def _resort(self) -> None:
        ordered = sorted(self._messages.values(), key=lambda m: (m.timestamp, m.id))
        self._messages = {m.id: m for m in ordered}


class ClientState:
    """A client's projection of every chat it has seen."""

    def __init__(
        self,
        user_id: str | None = None,
        typing_timeout: float = DEFAULT_TYPING_TIMEOUT_S,
        clock: Clock = time.monotonic,
        chronological: bool = False,
    ) -> None:
        self.user_id = user_id
        self.chronological = chronological
        self.typing = TypingIndicators(typing_timeout, clock)
        self.presence: dict[str, UserStatusUpdate] = {}
        self.broadcasts: list[GlobalBroadcast] = []
        self.errors: list[ErrorEvent] = []
        self._timelines: dict[str, ChatTimeline] = {}
        self._reducers: dict[type[ServerEvent], Callable[[Any], bool]] = {
            ReceiveMessage: self._on_message,
            NewMessage: self._on_message,
            MessageUpdated: self._on_updated,
            MessageDeleted: self._on_deleted,
            MessagesRead: self._on_read,
            UserTyping: self._on_typing,
            UserStopTyping: self._on_stop_typing,
            UserStatusUpdate: self._on_status,
            GlobalBroadcast: self._on_broadcast,
            ChatCleared: self._on_cleared,
            ChatDeleted: self._on_chat_deleted,
            ChatHistory: self._on_history,
            ErrorEvent: self._on_error,
        }

    def timeline(self, chat_id: str) -> ChatTimeline:
        timeline = self._timelines.get(chat_id)
        if timeline is None:
            timeline = ChatTimeline(chat_id, self.chronological)
            self._timelines[chat_id] = timeline
        return timeline

    def chats(self) -> list[str]:
        return list(self._timelines)

    def messages(self, chat_id: str) -> list[Message]:
        return list(self.timeline(chat_id))

    def typing_users(self, chat_id: str) -> list[str]:
        return self.typing.active(chat_id)

    def record_response(self, message: Message) -> bool:
        """Fold the result of the client's own direct request."""
        return self.timeline(message.chat_id).append(message)

    def apply(self, event: ServerEvent) -> bool:
        """Fold one pushed event in. Returns True if visible state changed."""
        reducer = self._reducers.get(type(event))
        if reducer is None:
            logger.debug("Ignoring unhandled event %s", event.event_name)
            return False
        return reducer(event)

    def forget_typing(self, chat_id: str) -> None:
        self.typing.clear(chat_id)

    def drop_chat(self, chat_id: str) -> None:
        self._timelines.pop(chat_id, None)
        self.typing.clear(chat_id)

    def _on_message(self, event: ReceiveMessage | NewMessage) -> bool:
        message = event.as_message()
        self.typing.stop(message.chat_id, message.sender_id)
        return self.timeline(message.chat_id).append(message)

    def _on_updated(self, event: MessageUpdated) -> bool:
        message = event.as_message()
        return self.timeline(message.chat_id).update(message)

    def _on_deleted(self, event: MessageDeleted) -> bool:
        return self.timeline(event.chat_id).soft_delete(event.message_id)

    def _on_read(self, event: MessagesRead) -> bool:
        return self.timeline(event.chat_id).mark_read(event.reader_id, event.message_ids) > 0

    def _on_typing(self, event: UserTyping) -> bool:
        if event.user_id == self.user_id:
            return False
        return self.typing.signal(event.chat_id, event.user_id, event.user_name)

    def _on_stop_typing(self, event: UserStopTyping) -> bool:
        return self.typing.stop(event.chat_id, event.user_id, event.user_name)

    def _on_status(self, event: UserStatusUpdate) -> bool:
        self.presence[event.user_id] = event
        return True

    def _on_broadcast(self, event: GlobalBroadcast) -> bool:
        self.broadcasts.append(event)
        return True

    def _on_cleared(self, event: ChatCleared) -> bool:
        self.timeline(event.chat_id).clear()
        self.typing.clear(event.chat_id)
        return True

    def _on_chat_deleted(self, event: ChatDeleted) -> bool:
        self.drop_chat(event.chat_id)
        return True

    def _on_history(self, event: ChatHistory) -> bool:
        return self.timeline(event.chat_id).merge_history(event.messages) > 0

    def _on_error(self, event: ErrorEvent) -> bool:
        logger.warning("Server rejected %s: %s (%s)", event.event, event.message, event.code)
        self.errors.append(event)
        return False
