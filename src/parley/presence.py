"""Presence tracking with a reconnect grace period."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

import anyio
from anyio.abc import TaskGroup, TaskStatus

from parley.dispatcher import EventDispatcher
from parley.events import PresenceStatus, UserStatusUpdate, utcnow

logger = logging.getLogger(__name__)


@dataclass
class PresenceState:
    user_id: str
    status: PresenceStatus
    last_seen: datetime | None = None


class PresenceTracker:
    """Holds each user's presence and announces every transition.

    Going offline after a disconnect is deferred by a grace period; a
    reconnect inside the window cancels it, so a flaky network does not
    make the user flicker offline and back.
    """

    def __init__(self, dispatcher: EventDispatcher) -> None:
        self._dispatcher = dispatcher
        self._states: dict[str, PresenceState] = {}
        self._pending: dict[str, anyio.CancelScope] = {}

    def get(self, user_id: str) -> PresenceState:
        return self._states.get(user_id) or PresenceState(user_id, "offline")

    def offline_pending(self, user_id: str) -> bool:
        return user_id in self._pending

    async def set_status(self, user_id: str, status: PresenceStatus) -> PresenceState:
        """Record a status and broadcast ``user-status-update``."""
        now = utcnow()
        state = self._states.get(user_id)
        if state is None:
            state = PresenceState(user_id, status)
            self._states[user_id] = state
        state.status = status
        state.last_seen = now

        await self._dispatcher.broadcast(
            UserStatusUpdate(user_id=user_id, status=status, last_seen=now)
        )
        logger.info("User %s is now %s", user_id, status)
        return state

    async def mark_online(self, user_id: str) -> None:
        """Cancel any pending offline transition; announce if not already online."""
        scope = self._pending.pop(user_id, None)
        if scope is not None:
            scope.cancel()
            logger.debug("Cancelled offline transition for %s", user_id)
        if self.get(user_id).status == "offline":
            await self.set_status(user_id, "online")

    async def schedule_offline(
        self,
        user_id: str,
        task_group: TaskGroup | None,
        delay: float,
        still_online: Callable[[str], bool],
    ) -> None:
        """Go offline after ``delay`` unless ``still_online`` says otherwise.

        Without a task group (hub not running) or with no delay, the
        transition happens immediately.
        """
        if task_group is None or delay <= 0:
            if not still_online(user_id):
                await self.set_status(user_id, "offline")
            return

        previous = self._pending.pop(user_id, None)
        if previous is not None:
            previous.cancel()
        await task_group.start(self._offline_after, user_id, delay, still_online)

    async def _offline_after(
        self,
        user_id: str,
        delay: float,
        still_online: Callable[[str], bool],
        *,
        task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED,
    ) -> None:
        with anyio.CancelScope() as scope:
            self._pending[user_id] = scope
            task_status.started()
            try:
                await anyio.sleep(delay)
                if not still_online(user_id):
                    await self.set_status(user_id, "offline")
            finally:
                if self._pending.get(user_id) is scope:
                    del self._pending[user_id]
