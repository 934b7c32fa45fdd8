"""Event dispatcher: fans one committed change out to every subscriber."""

import logging
from collections.abc import Callable, Iterable

from opentelemetry import metrics
from opentelemetry.metrics import MeterProvider

from parley.connection import Connection
from parley.errors import DeliveryError
from parley.events import ServerEvent
from parley.rooms import RoomMembership
from parley.sessions import SessionRegistry

logger = logging.getLogger(__name__)

DeadConnectionCallback = Callable[[Connection], None]


class EventDispatcher:
    """Delivers events to room members, users, or every session.

    Delivery only enqueues on each connection's outbox, so a slow or broken
    connection never holds up the others. Per-room order is preserved because
    fan-out for a room happens under the membership lock and each outbox is
    FIFO.

    A connection that fails its liveness check (dead, or outbox full) is
    dropped from every room on the spot and reported through ``on_dead`` so
    the owner can tear its session down.
    """

    def __init__(
        self,
        rooms: RoomMembership,
        sessions: SessionRegistry,
        meter_provider: MeterProvider | None = None,
        on_dead: DeadConnectionCallback | None = None,
    ) -> None:
        self._rooms = rooms
        self._sessions = sessions
        self.on_dead = on_dead

        provider = meter_provider or metrics.get_meter_provider()
        meter = provider.get_meter("parley.dispatcher")
        self._delivered = meter.create_counter(
            "parley.events.delivered",
            unit="{event}",
            description="Events enqueued for delivery to a connection",
        )
        self._failures = meter.create_counter(
            "parley.delivery.failures",
            unit="{event}",
            description="Events dropped because the connection was dead or full",
        )

    async def publish(
        self,
        chat_id: str,
        event: ServerEvent,
        exclude: Connection | None = None,
    ) -> int:
        """Deliver ``event`` to every connection in the chat room but ``exclude``.

        Returns the number of connections the event was enqueued on.
        """
        async with self._rooms.lock:
            targets = self._rooms.members(chat_id)
            delivered = self._fan_out(targets, event, exclude)

        logger.debug(
            "Published %s to chat %s (%d recipient(s))",
            event.event_name,
            chat_id,
            delivered,
        )
        return delivered

    async def broadcast(self, event: ServerEvent, exclude: Connection | None = None) -> int:
        """Deliver to every authenticated session regardless of room membership."""
        async with self._rooms.lock:
            targets = [session.connection for session in self._sessions.sessions()]
            delivered = self._fan_out(targets, event, exclude)

        logger.info("Broadcast %s to %d session(s)", event.event_name, delivered)
        return delivered

    async def send_to_user(
        self,
        user_id: str,
        event: ServerEvent,
        exclude: Connection | None = None,
    ) -> int:
        """Deliver to every live connection of one user."""
        async with self._rooms.lock:
            targets = self._sessions.connections_for(user_id)
            return self._fan_out(targets, event, exclude)

    async def send_to_connection(self, connection: Connection, event: ServerEvent) -> bool:
        async with self._rooms.lock:
            return self._fan_out([connection], event, None) == 1

    def _fan_out(
        self,
        targets: Iterable[Connection],
        event: ServerEvent,
        exclude: Connection | None,
    ) -> int:
        attributes = {"parley.event": event.event_name}
        delivered = 0
        for connection in targets:
            if exclude is not None and connection.id == exclude.id:
                continue
            if self._deliver(connection, event):
                delivered += 1
                self._delivered.add(1, attributes)
            else:
                self._failures.add(1, attributes)
        return delivered

    def _deliver(self, connection: Connection, event: ServerEvent) -> bool:
        if connection.alive:
            try:
                connection.offer(event)
                return True
            except DeliveryError as e:
                logger.warning(
                    "Dropping %s for connection %s: %s",
                    event.event_name,
                    connection.id,
                    e,
                )
        self._prune(connection)
        return False

    def _prune(self, connection: Connection) -> None:
        # Caller holds the membership lock.
        chats = self._rooms.discard_connection(connection)
        if chats:
            logger.info(
                "Pruned dead connection %s from %d room(s)", connection.id, len(chats)
            )
        if self.on_dead is not None:
            self.on_dead(connection)
