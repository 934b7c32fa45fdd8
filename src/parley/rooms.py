"""Room membership: which connections are subscribed to which chat."""

import logging

import anyio

from parley.connection import Connection

logger = logging.getLogger(__name__)


class RoomMembership:
    """Tracks chat rooms and their subscribed connections.

    ``lock`` serializes membership changes with the dispatcher's fan-out, so
    a publish sees either the state before a join/leave or the state after
    it, never a partial one.
    """

    def __init__(self) -> None:
        self._rooms: dict[str, dict[str, Connection]] = {}
        self._by_connection: dict[str, set[str]] = {}
        self.lock = anyio.Lock()

    async def join(self, connection: Connection, chat_id: str) -> bool:
        """Subscribe a connection to a chat. Returns False if already joined."""
        async with self.lock:
            room = self._rooms.setdefault(chat_id, {})
            if connection.id in room:
                return False
            room[connection.id] = connection
            self._by_connection.setdefault(connection.id, set()).add(chat_id)

        logger.debug("Connection %s joined chat %s", connection.id, chat_id)
        return True

    async def leave(self, connection: Connection, chat_id: str) -> bool:
        """Unsubscribe a connection. Returns False if it was not joined."""
        async with self.lock:
            left = self._discard(connection.id, chat_id)

        if left:
            logger.debug("Connection %s left chat %s", connection.id, chat_id)
        return left

    async def remove_connection(self, connection: Connection) -> set[str]:
        """Drop every membership of a connection; returns the chats it was in."""
        async with self.lock:
            return self.discard_connection(connection)

    def discard_connection(self, connection: Connection) -> set[str]:
        """Lock-free variant for callers already holding ``lock``."""
        chats = self._by_connection.pop(connection.id, set())
        for chat_id in chats:
            room = self._rooms.get(chat_id)
            if room is None:
                continue
            room.pop(connection.id, None)
            if not room:
                del self._rooms[chat_id]
        return chats

    async def close_room(self, chat_id: str) -> list[Connection]:
        """Unsubscribe every member of a chat; returns the connections removed."""
        async with self.lock:
            room = self._rooms.pop(chat_id, {})
            for connection_id in room:
                chats = self._by_connection.get(connection_id)
                if chats is not None:
                    chats.discard(chat_id)
                    if not chats:
                        del self._by_connection[connection_id]

        if room:
            logger.debug("Closed chat %s with %d members", chat_id, len(room))
        return list(room.values())

    def _discard(self, connection_id: str, chat_id: str) -> bool:
        room = self._rooms.get(chat_id)
        if room is None or connection_id not in room:
            return False
        del room[connection_id]
        if not room:
            del self._rooms[chat_id]
        chats = self._by_connection.get(connection_id)
        if chats is not None:
            chats.discard(chat_id)
            if not chats:
                del self._by_connection[connection_id]
        return True

    def members(self, chat_id: str) -> list[Connection]:
        return list(self._rooms.get(chat_id, {}).values())

    def rooms_of(self, connection: Connection) -> set[str]:
        return set(self._by_connection.get(connection.id, ()))

    def is_member(self, connection: Connection, chat_id: str) -> bool:
        return connection.id in self._rooms.get(chat_id, {})

    def chats(self) -> list[str]:
        return list(self._rooms)
