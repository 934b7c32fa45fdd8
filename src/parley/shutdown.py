"""Signal-driven shutdown for the server runner."""

import logging
import signal
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from types import FrameType
from typing import Protocol

import anyio

logger = logging.getLogger(__name__)


class Closeable(Protocol):
    async def close(self) -> None: ...


async def _close_all(closeables: Iterable[Closeable]) -> None:
    for closeable in closeables:
        try:
            await closeable.close()
        except Exception:
            logger.exception("Error closing %r during shutdown", closeable)


@asynccontextmanager
async def graceful_shutdown(
    *closeables: Closeable,
    signals: Sequence[signal.Signals] = (signal.SIGTERM, signal.SIGINT),
) -> AsyncIterator[anyio.Event]:
    """Close ``closeables`` when one of ``signals`` arrives.

    Yields an event that is set once shutdown has been requested. Leaving the
    block normally closes nothing, and the previous handlers are restored.

    Example:
        async with graceful_shutdown(hub) as stopping:
            await server.serve()
    """
    stopping = anyio.Event()

    async with anyio.create_task_group() as tg:

        def handler(signum: int, frame: FrameType | None) -> None:
            if stopping.is_set():
                return
            logger.info("Received %s, shutting down", signal.Signals(signum).name)
            stopping.set()
            tg.start_soon(_close_all, closeables)

        originals = {sig: signal.signal(sig, handler) for sig in signals}
        try:
            yield stopping
        finally:
            for sig, original in originals.items():
                signal.signal(sig, original)
