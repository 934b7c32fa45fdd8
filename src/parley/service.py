"""Chat service: durable write first, fan-out second.

Every mutating operation awaits the store and only publishes once the store
has returned the canonical object. If the store raises, the exception goes
back to the caller and nothing is published.
"""

import logging
from collections.abc import Collection, Sequence
from datetime import datetime

from parley.auth import Identity
from parley.config import HubConfig
from parley.connection import Connection
from parley.dispatcher import EventDispatcher
from parley.errors import NotParticipantError, PermissionDenied, ProtocolError, StorageError
from parley.events import (
    ChatCleared,
    ChatDeleted,
    GlobalBroadcast,
    Message,
    MessageDeleted,
    MessagesRead,
    MessageType,
    MessageUpdated,
    NewMessage,
    ReceiveMessage,
    ServerEvent,
)
from parley.rooms import RoomMembership
from parley.sessions import SessionRegistry
from parley.store import ChatDirectory, MessageStore

logger = logging.getLogger(__name__)

DEFAULT_MANAGER_ROLES = frozenset({"admin", "manager"})


class ChatService:
    """Write path shared by the HTTP routes and socket commands."""

    def __init__(
        self,
        store: MessageStore,
        directory: ChatDirectory,
        dispatcher: EventDispatcher,
        sessions: SessionRegistry,
        rooms: RoomMembership,
        config: HubConfig | None = None,
        manager_roles: Collection[str] = DEFAULT_MANAGER_ROLES,
    ) -> None:
        self.store = store
        self.directory = directory
        self._dispatcher = dispatcher
        self._sessions = sessions
        self._rooms = rooms
        self._config = config or HubConfig()
        self._manager_roles = frozenset(manager_roles)

    async def ensure_participant(self, actor: Identity, chat_id: str) -> None:
        if not self._config.enforce_participation:
            return
        if not await self.directory.is_participant(chat_id, actor.user_id):
            raise NotParticipantError(actor.user_id, chat_id)

    def ensure_manager(self, actor: Identity) -> None:
        if actor.role not in self._manager_roles:
            msg = f"Role {actor.role!r} may not perform this action"
            raise PermissionDenied(msg)

    async def send_message(
        self,
        actor: Identity,
        chat_id: str,
        content: str,
        type: MessageType = "text",
        reply_to: str | None = None,
        file_url: str | None = None,
        file_name: str | None = None,
        exclude: Connection | None = None,
    ) -> Message:
        await self.ensure_participant(actor, chat_id)
        try:
            message = await self.store.create_message(
                chat_id,
                actor.user_id,
                actor.name,
                content,
                type=type,
                reply_to=reply_to,
                file_url=file_url,
                file_name=file_name,
            )
        except StorageError as e:
            logger.warning("Create message in %s failed: %s", chat_id, e)
            raise

        await self._dispatcher.publish(chat_id, ReceiveMessage.of(message), exclude)
        if self._config.participant_notifications:
            await self._notify_outside_room(chat_id, NewMessage.of(message), exclude)
        return message

    async def update_message(
        self,
        actor: Identity,
        chat_id: str,
        message_id: str,
        content: str | None = None,
        emoji: str | None = None,
        exclude: Connection | None = None,
    ) -> Message:
        """Edit content and/or toggle a reaction, then publish one messageUpdated."""
        if not content and not emoji:
            msg = "No update action specified (content or emoji)"
            raise ProtocolError(msg)

        await self.ensure_participant(actor, chat_id)

        message: Message | None = None
        if content:
            message = await self.store.edit_message(chat_id, message_id, actor.user_id, content)
        if emoji:
            try:
                message = await self.store.toggle_reaction(
                    chat_id, message_id, actor.user_id, actor.name, emoji
                )
            except StorageError:
                if message is not None:
                    # publish the committed edit before failing
                    await self._dispatcher.publish(chat_id, MessageUpdated.of(message), exclude)
                raise
        assert message is not None

        await self._dispatcher.publish(chat_id, MessageUpdated.of(message), exclude)
        return message

    async def delete_message(
        self,
        actor: Identity,
        chat_id: str,
        message_id: str,
        exclude: Connection | None = None,
    ) -> Message:
        message = await self.store.soft_delete_message(chat_id, message_id, actor.user_id)
        await self._dispatcher.publish(
            chat_id, MessageDeleted(chat_id=chat_id, message_id=message_id), exclude
        )
        return message

    async def mark_read(
        self,
        actor: Identity,
        chat_id: str,
        message_ids: Sequence[str],
        exclude: Connection | None = None,
    ) -> list[str]:
        if not message_ids:
            msg = "Message IDs must be a non-empty array"
            raise ProtocolError(msg)
        await self.ensure_participant(actor, chat_id)

        marked = await self.store.add_read_receipt(chat_id, actor.user_id, message_ids)
        if marked:
            event = MessagesRead(chat_id=chat_id, reader_id=actor.user_id, message_ids=marked)
            await self._dispatcher.publish(chat_id, event, exclude)
        return marked

    async def history(
        self,
        actor: Identity,
        chat_id: str,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[Message]:
        await self.ensure_participant(actor, chat_id)
        return await self.store.messages_since(chat_id, since, limit)

    async def broadcast(self, actor: Identity, text: str) -> GlobalBroadcast:
        self.ensure_manager(actor)
        if not text.strip():
            msg = "Message content is required"
            raise ProtocolError(msg)
        event = GlobalBroadcast(sender_name=actor.name or actor.user_id, message=text)
        await self._dispatcher.broadcast(event)
        logger.info("User %s sent a global broadcast", actor.user_id)
        return event

    async def clear_chat(self, actor: Identity, chat_id: str) -> int:
        self.ensure_manager(actor)
        removed = await self.store.clear_chat(chat_id)
        await self._dispatcher.publish(
            chat_id, ChatCleared(chat_id=chat_id, cleared_by=actor.user_id)
        )
        logger.info("User %s cleared chat %s (%d messages)", actor.user_id, chat_id, removed)
        return removed

    async def delete_chat(self, actor: Identity, chat_id: str) -> None:
        self.ensure_manager(actor)
        participants = await self.directory.delete_chat(chat_id)
        await self.store.clear_chat(chat_id)
        event = ChatDeleted(chat_id=chat_id, deleted_by=actor.user_id)
        await self._dispatcher.publish(chat_id, event)
        await self._notify_outside_room(chat_id, event, None, participants=participants)
        await self._rooms.close_room(chat_id)
        logger.info("User %s deleted chat %s", actor.user_id, chat_id)

    async def _notify_outside_room(
        self,
        chat_id: str,
        event: ServerEvent,
        exclude: Connection | None,
        participants: set[str] | None = None,
    ) -> None:
        """Send ``event`` to participants' connections that are not in the room."""
        if participants is None:
            participants = await self.directory.participants(chat_id)
        for user_id in participants:
            for connection in self._sessions.connections_for(user_id):
                if exclude is not None and connection.id == exclude.id:
                    continue
                if not self._rooms.is_member(connection, chat_id):
                    await self._dispatcher.send_to_connection(connection, event)
