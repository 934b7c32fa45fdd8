"""Typing indicators.

``TypingDebouncer`` is the sending side: it turns keystrokes into at most one
``typing`` signal per burst and a ``stop-typing`` once the user has been idle
for the timeout. ``TypingIndicators`` is the receiving side: it expires
entries on its own, so a lost stop signal never leaves an indicator stuck.
"""

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Literal

import anyio
from anyio.abc import TaskGroup

from parley.commands import Command, StartTyping, StopTyping
from parley.config import DEFAULT_TYPING_TIMEOUT_S

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
SendCommand = Callable[[Command], Awaitable[None]]
TypingState = Literal["idle", "typing"]


@dataclass
class _Typer:
    user_name: str
    last_signaled_at: float


class TypingIndicators:
    """Per-chat set of users currently typing, with automatic expiry."""

    def __init__(
        self,
        timeout: float = DEFAULT_TYPING_TIMEOUT_S,
        clock: Clock = time.monotonic,
    ) -> None:
        self.timeout = timeout
        self._clock = clock
        self._chats: dict[str, dict[str, _Typer]] = {}

    def signal(self, chat_id: str, user_id: str, user_name: str) -> bool:
        """Record a typing signal. Returns True if the user was not already shown."""
        typers = self._chats.setdefault(chat_id, {})
        existing = typers.get(user_id)
        fresh = existing is None or self._is_stale(existing, self._clock())
        typers[user_id] = _Typer(user_name, self._clock())
        return fresh

    def stop(self, chat_id: str, user_id: str | None = None, user_name: str | None = None) -> bool:
        """Remove a typer by id, or by name for clients that only send names."""
        typers = self._chats.get(chat_id)
        if not typers:
            return False
        if user_id is None:
            user_id = next(
                (uid for uid, typer in typers.items() if typer.user_name == user_name),
                None,
            )
        removed = user_id is not None and typers.pop(user_id, None) is not None
        if not typers:
            self._chats.pop(chat_id, None)
        return removed

    def expire(self, now: float | None = None) -> list[tuple[str, str]]:
        """Drop stale entries; returns the (chat_id, user_id) pairs removed."""
        now = self._clock() if now is None else now
        removed: list[tuple[str, str]] = []
        for chat_id in list(self._chats):
            typers = self._chats[chat_id]
            for user_id in [uid for uid, t in typers.items() if self._is_stale(t, now)]:
                del typers[user_id]
                removed.append((chat_id, user_id))
            if not typers:
                del self._chats[chat_id]
        return removed

    def active(self, chat_id: str) -> list[str]:
        """Names of users typing in ``chat_id``, oldest signal first."""
        now = self._clock()
        typers = self._chats.get(chat_id, {})
        return [t.user_name for t in typers.values() if not self._is_stale(t, now)]

    def clear(self, chat_id: str) -> None:
        self._chats.pop(chat_id, None)

    def _is_stale(self, typer: _Typer, now: float) -> bool:
        return now - typer.last_signaled_at >= self.timeout

    async def run(self, interval: float | None = None) -> None:
        """Sweep stale entries forever. Run inside a task group; cancel to stop."""
        interval = interval or self.timeout / 4
        while True:
            await anyio.sleep(interval)
            for chat_id, user_id in self.expire():
                logger.debug("Typing indicator for %s in %s expired", user_id, chat_id)


class TypingDebouncer:
    """Sender-side ``idle -> typing -> idle`` state machine for one chat.

    Receivers expire an indicator ``timeout`` after its last signal, so while
    the user keeps typing the signal is repeated every ``timeout / 2``.
    ``stop-typing`` is still sent once, on the way back to idle.
    """

    def __init__(
        self,
        send: SendCommand,
        chat_id: str,
        user_name: str,
        task_group: TaskGroup,
        timeout: float = DEFAULT_TYPING_TIMEOUT_S,
        clock: Clock = time.monotonic,
    ) -> None:
        self._send = send
        self.chat_id = chat_id
        self.user_name = user_name
        self._task_group = task_group
        self.timeout = timeout
        self._clock = clock
        self.state: TypingState = "idle"
        self._timer: anyio.CancelScope | None = None
        self._signaled_at = 0.0

    @property
    def refresh_interval(self) -> float:
        return self.timeout / 2

    async def keystroke(self) -> None:
        """Note local typing activity.

        Signals on the idle -> typing edge, then again whenever the last signal
        is older than ``refresh_interval``.
        """
        now = self._clock()
        if self.state == "idle":
            self.state = "typing"
            await self._signal(now)
        elif now - self._signaled_at >= self.refresh_interval:
            await self._signal(now)
        self._rearm()

    async def _signal(self, now: float) -> None:
        self._signaled_at = now
        await self._send(StartTyping(chat_id=self.chat_id, user_name=self.user_name))

    async def reset(self) -> None:
        """Return to idle now, e.g. after the message was sent."""
        self._cancel_timer()
        await self._go_idle()

    def _rearm(self) -> None:
        self._cancel_timer()
        self._timer = anyio.CancelScope()
        self._task_group.start_soon(self._idle_after, self._timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _idle_after(self, scope: anyio.CancelScope) -> None:
        with scope:
            await anyio.sleep(self.timeout)
            if self._timer is scope:
                self._timer = None
            await self._go_idle()

    async def _go_idle(self) -> None:
        if self.state == "typing":
            self.state = "idle"
            await self._send(StopTyping(chat_id=self.chat_id, user_name=self.user_name))
