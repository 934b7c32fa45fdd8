"""Server-side connection handles.

Each connection owns one bounded FIFO outbox. The dispatcher only ever
enqueues with ``offer()`` (never blocks), and a single consumer drains the
outbox, so events reach the transport in the order they were enqueued.
"""

import logging
from collections.abc import AsyncIterator
from types import TracebackType
from uuid import uuid4

import anyio
from starlette.websockets import WebSocket, WebSocketDisconnect

from parley.config import DEFAULT_OUTBOX_SIZE
from parley.errors import ConnectionClosed, DeliveryError
from parley.events import ServerEvent
from parley.marshaler import JSONMarshaler, Marshaler

logger = logging.getLogger(__name__)


class Connection:
    """A live transport connection as seen by the hub.

    Used directly for in-process clients; transports subclass it and run a
    pump that drains the outbox onto the wire.
    """

    def __init__(
        self,
        connection_id: str | None = None,
        buffer_size: int = DEFAULT_OUTBOX_SIZE,
    ) -> None:
        self.id = connection_id or uuid4().hex
        self._send, self._receive = anyio.create_memory_object_stream[ServerEvent](
            buffer_size
        )
        self._alive = True

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id} alive={self._alive}>"

    @property
    def alive(self) -> bool:
        return self._alive

    def offer(self, event: ServerEvent) -> None:
        """Enqueue an event without waiting.

        Raises ConnectionClosed if the connection is dead, DeliveryError if
        its outbox is full. Either way the connection is marked dead.
        """
        if not self._alive:
            msg = f"Connection {self.id} is closed"
            raise ConnectionClosed(msg)
        try:
            self._send.send_nowait(event)
        except anyio.WouldBlock as e:
            self.mark_dead()
            msg = f"Outbox full for connection {self.id}"
            raise DeliveryError(msg) from e
        except (anyio.BrokenResourceError, anyio.ClosedResourceError) as e:
            self.mark_dead()
            msg = f"Connection {self.id} is closed"
            raise ConnectionClosed(msg) from e

    def mark_dead(self) -> None:
        """Fail the liveness check; queued events are still drained."""
        if self._alive:
            self._alive = False
            self._send.close()

    async def receive(self) -> ServerEvent:
        """Next queued event. Raises ConnectionClosed once drained and dead."""
        try:
            return await self._receive.receive()
        except (anyio.EndOfStream, anyio.ClosedResourceError) as e:
            msg = f"Connection {self.id} is closed"
            raise ConnectionClosed(msg) from e

    def pending(self) -> list[ServerEvent]:
        """Drain whatever is queued right now without waiting."""
        events: list[ServerEvent] = []
        while True:
            try:
                events.append(self._receive.receive_nowait())
            except (anyio.WouldBlock, anyio.EndOfStream, anyio.ClosedResourceError):
                return events

    def __aiter__(self) -> AsyncIterator[ServerEvent]:
        return self._iter()

    async def _iter(self) -> AsyncIterator[ServerEvent]:
        async for event in self._receive:
            yield event

    async def close(self) -> None:
        self.mark_dead()

    async def __aenter__(self) -> "Connection":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()


class WebSocketConnection(Connection):
    """Connection backed by a Starlette/FastAPI WebSocket."""

    def __init__(
        self,
        websocket: WebSocket,
        marshaler: Marshaler | None = None,
        buffer_size: int = DEFAULT_OUTBOX_SIZE,
    ) -> None:
        super().__init__(buffer_size=buffer_size)
        self.websocket = websocket
        self._marshaler = marshaler or JSONMarshaler()

    async def pump(self) -> None:
        """Write queued events to the socket until the outbox closes.

        A failed write marks the connection dead; the hub prunes it on its
        next liveness check.
        """
        async for event in self:
            try:
                await self.websocket.send_text(self._marshaler.marshal(event))
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                logger.warning("Write to connection %s failed: %s", self.id, e)
                self.mark_dead()
                return
