"""Durable store and chat directory collaborators.

The real-time layer only needs the narrow surface below. ``InMemoryMessageStore``
and ``InMemoryChatDirectory`` are single-process references used by the app
factory's defaults and by the tests; a deployment plugs in its database.
"""

from collections.abc import Iterable
from datetime import datetime
from typing import Protocol
from uuid import uuid4

import anyio

from parley.errors import NotFoundError, PermissionDenied, StorageError
from parley.events import (
    DELETED_PLACEHOLDER,
    Message,
    MessageType,
    Reaction,
    ReadEntry,
    utcnow,
)


class MessageStore(Protocol):
    """Authoritative message storage. Every method returns the persisted object
    or raises StorageError."""

    async def create_message(
        self,
        chat_id: str,
        sender_id: str,
        sender_name: str,
        content: str,
        type: MessageType = "text",
        reply_to: str | None = None,
        file_url: str | None = None,
        file_name: str | None = None,
    ) -> Message: ...

    async def get_message(self, chat_id: str, message_id: str) -> Message: ...

    async def edit_message(
        self, chat_id: str, message_id: str, editor_id: str, content: str
    ) -> Message: ...

    async def toggle_reaction(
        self, chat_id: str, message_id: str, user_id: str, user_name: str, emoji: str
    ) -> Message: ...

    async def soft_delete_message(
        self, chat_id: str, message_id: str, user_id: str
    ) -> Message: ...

    async def add_read_receipt(
        self, chat_id: str, reader_id: str, message_ids: Iterable[str]
    ) -> list[str]: ...

    async def clear_chat(self, chat_id: str) -> int: ...

    async def messages_since(
        self, chat_id: str, since: datetime | None = None, limit: int | None = None
    ) -> list[Message]: ...


class ChatDirectory(Protocol):
    """Who participates in which chat."""

    async def participants(self, chat_id: str) -> set[str]: ...

    async def is_participant(self, chat_id: str, user_id: str) -> bool: ...

    async def delete_chat(self, chat_id: str) -> set[str]: ...


class InMemoryMessageStore:
    """Process-local MessageStore."""

    def __init__(self) -> None:
        self._chats: dict[str, dict[str, Message]] = {}
        self._modified: dict[str, datetime] = {}
        self._lock = anyio.Lock()

    async def create_message(
        self,
        chat_id: str,
        sender_id: str,
        sender_name: str,
        content: str,
        type: MessageType = "text",
        reply_to: str | None = None,
        file_url: str | None = None,
        file_name: str | None = None,
    ) -> Message:
        if not content.strip() and type != "file":
            msg = "Message content is required"
            raise StorageError(msg)
        async with self._lock:
            message = Message(
                id=uuid4().hex,
                chat_id=chat_id,
                sender_id=sender_id,
                sender_name=sender_name,
                content=content,
                type=type,
                reply_to=reply_to,
                file_url=file_url,
                file_name=file_name,
                read_by=[ReadEntry(user_id=sender_id)],
            )
            self._chats.setdefault(chat_id, {})[message.id] = message
            self._touch(message, message.timestamp)
            return message.model_copy(deep=True)

    async def get_message(self, chat_id: str, message_id: str) -> Message:
        return self._get(chat_id, message_id).model_copy(deep=True)

    async def edit_message(
        self, chat_id: str, message_id: str, editor_id: str, content: str
    ) -> Message:
        async with self._lock:
            message = self._get(chat_id, message_id)
            if message.sender_id != editor_id:
                msg = "You can only edit your own messages"
                raise PermissionDenied(msg)
            if message.is_deleted:
                msg = f"Message {message_id} was deleted"
                raise StorageError(msg)
            message.content = content
            message.edited_at = utcnow()
            self._touch(message, message.edited_at)
            return message.model_copy(deep=True)

    async def toggle_reaction(
        self, chat_id: str, message_id: str, user_id: str, user_name: str, emoji: str
    ) -> Message:
        async with self._lock:
            message = self._get(chat_id, message_id)
            for i, reaction in enumerate(message.reactions):
                if reaction.user_id == user_id and reaction.emoji == emoji:
                    del message.reactions[i]
                    break
            else:
                message.reactions.append(
                    Reaction(emoji=emoji, user_id=user_id, user_name=user_name)
                )
            self._touch(message)
            return message.model_copy(deep=True)

    async def soft_delete_message(
        self, chat_id: str, message_id: str, user_id: str
    ) -> Message:
        async with self._lock:
            message = self._get(chat_id, message_id)
            if message.sender_id != user_id:
                msg = "You can only delete your own messages"
                raise PermissionDenied(msg)
            message.is_deleted = True
            message.content = DELETED_PLACEHOLDER
            self._touch(message)
            return message.model_copy(deep=True)

    async def add_read_receipt(
        self, chat_id: str, reader_id: str, message_ids: Iterable[str]
    ) -> list[str]:
        """Mark messages read. Already-read messages are left untouched.

        Returns the ids that belong to the chat (read before or now).
        """
        async with self._lock:
            messages = self._chats.get(chat_id, {})
            known: list[str] = []
            for message_id in message_ids:
                message = messages.get(message_id)
                if message is None:
                    continue
                known.append(message_id)
                if not message.is_read_by(reader_id):
                    message.read_by.append(ReadEntry(user_id=reader_id))
                    self._touch(message)
            return known

    async def clear_chat(self, chat_id: str) -> int:
        async with self._lock:
            removed = self._chats.pop(chat_id, {})
            for message_id in removed:
                self._modified.pop(message_id, None)
            return len(removed)

    async def messages_since(
        self, chat_id: str, since: datetime | None = None, limit: int | None = None
    ) -> list[Message]:
        """Messages created or modified after ``since``, in creation order."""
        messages = [
            m
            for m in self._chats.get(chat_id, {}).values()
            if since is None or self._modified[m.id] > since
        ]
        if limit is not None:
            messages = messages[-limit:]
        return [m.model_copy(deep=True) for m in messages]

    def _get(self, chat_id: str, message_id: str) -> Message:
        message = self._chats.get(chat_id, {}).get(message_id)
        if message is None:
            msg = f"Message {message_id} not found in chat {chat_id}"
            raise NotFoundError(msg)
        return message

    def _touch(self, message: Message, at: datetime | None = None) -> None:
        self._modified[message.id] = at or utcnow()


class InMemoryChatDirectory:
    """Process-local ChatDirectory."""

    def __init__(self, chats: dict[str, Iterable[str]] | None = None) -> None:
        self._chats: dict[str, set[str]] = {
            chat_id: set(members) for chat_id, members in (chats or {}).items()
        }

    def add_chat(self, chat_id: str, participants: Iterable[str]) -> None:
        self._chats[chat_id] = set(participants)

    async def participants(self, chat_id: str) -> set[str]:
        return set(self._chats.get(chat_id, ()))

    async def is_participant(self, chat_id: str, user_id: str) -> bool:
        return user_id in self._chats.get(chat_id, ())

    async def delete_chat(self, chat_id: str) -> set[str]:
        try:
            return self._chats.pop(chat_id)
        except KeyError as e:
            msg = f"Chat {chat_id} not found"
            raise NotFoundError(msg) from e
