"""Client side of the sync protocol.

``SyncClient`` is transport agnostic: it is handed a coroutine that sends a
command, and is fed the events the server pushes. Writes that must be
confirmed go through a ``ChatAPI`` (the HTTP half) when one is configured.
"""

import logging
import time
from collections.abc import AsyncIterable, Awaitable, Callable, Sequence
from datetime import datetime
from types import TracebackType
from typing import Any, Literal, Protocol

import anyio
import httpx
from anyio.abc import TaskGroup

from parley.commands import (
    Command,
    JoinChat,
    JoinUser,
    LeaveChat,
    Resync,
    SendMessage,
    SetStatus,
)
from parley.config import DEFAULT_TYPING_TIMEOUT_S
from parley.errors import (
    AuthError,
    ConnectionClosed,
    NotFoundError,
    ParleyError,
    PermissionDenied,
    ProtocolError,
    StorageError,
)
from parley.events import (
    ChatDeleted,
    ErrorEvent,
    GlobalBroadcast,
    Message,
    MessageType,
    PresenceStatus,
    ServerEvent,
)
from parley.indicators import Clock, SendCommand, TypingDebouncer
from parley.marshaler import JSONMarshaler, Marshaler
from parley.state import ClientState

logger = logging.getLogger(__name__)

ClientStatus = Literal["disconnected", "connected", "reconnecting", "unauthorized"]
BroadcastCallback = Callable[[GlobalBroadcast], Awaitable[None]]

_ERRORS_BY_STATUS: dict[int, type[ParleyError]] = {
    400: ProtocolError,
    401: AuthError,
    403: PermissionDenied,
    404: NotFoundError,
}


class ChatAPI(Protocol):
    """Direct request/response half used for confirmed writes and history."""

    async def create_message(
        self,
        chat_id: str,
        content: str,
        type: MessageType = "text",
        reply_to: str | None = None,
    ) -> Message: ...

    async def fetch_messages(
        self, chat_id: str, since: datetime | None = None
    ) -> list[Message]: ...


class HTTPChatAPI:
    """ChatAPI over the app's HTTP routes.

    Failed requests raise the ParleyError matching the response status.

    Example:
        async with HTTPChatAPI("http://localhost:8000", token) as api:
            message = await api.create_message("c1", "hello")
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        connection_id: str | None = None,
        timeout_s: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url
        self._token = token
        self.connection_id = connection_id
        self._timeout_s = timeout_s
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout_s,
                transport=self._transport,
                headers={"Authorization": f"Bearer {self._token}"},
            )
        return self._client

    async def create_message(
        self,
        chat_id: str,
        content: str,
        type: MessageType = "text",
        reply_to: str | None = None,
    ) -> Message:
        body = {"content": content, "type": type, "replyTo": reply_to}
        data = await self._request("POST", f"/chats/{chat_id}/messages", json=body)
        return Message.model_validate(data)

    async def edit_message(
        self,
        chat_id: str,
        message_id: str,
        content: str | None = None,
        emoji: str | None = None,
    ) -> Message:
        body = {"content": content, "emoji": emoji}
        data = await self._request(
            "PUT", f"/chats/{chat_id}/messages/{message_id}", json=body
        )
        return Message.model_validate(data)

    async def delete_message(self, chat_id: str, message_id: str) -> Message:
        data = await self._request("DELETE", f"/chats/{chat_id}/messages/{message_id}")
        return Message.model_validate(data)

    async def mark_read(self, chat_id: str, message_ids: Sequence[str]) -> list[str]:
        body = {"messageIds": list(message_ids)}
        data = await self._request("POST", f"/chats/{chat_id}/messages/read", json=body)
        return list(data["messageIds"])

    async def fetch_messages(
        self, chat_id: str, since: datetime | None = None
    ) -> list[Message]:
        params = {"since": since.isoformat()} if since is not None else None
        data = await self._request("GET", f"/chats/{chat_id}/messages", params=params)
        return [Message.model_validate(item) for item in data]

    async def broadcast(self, text: str) -> None:
        await self._request("POST", "/broadcasts", json={"message": text})

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        client = await self._get_client()
        headers = {}
        if self.connection_id:
            headers["X-Connection-Id"] = self.connection_id
        response = await client.request(method, url, headers=headers, **kwargs)
        if response.is_success:
            return response.json()

        try:
            detail = response.json().get("detail", response.text)
        except ValueError:
            detail = response.text
        error = _ERRORS_BY_STATUS.get(response.status_code, StorageError)
        msg = f"{method} {url} failed ({response.status_code}): {detail}"
        raise error(msg)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HTTPChatAPI":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()


class SyncClient:
    """One user's client: local state, joined rooms and typing signals.

    Bind a transport with ``attach()``; when it drops call ``detach()`` and
    ``attach()`` again once reconnected. Every room joined before the drop is
    re-joined and repaired with a resync. Use as an async context manager;
    its task group runs the typing idle timers.
    """

    def __init__(
        self,
        user_id: str,
        user_name: str = "",
        api: ChatAPI | None = None,
        marshaler: Marshaler | None = None,
        typing_timeout: float = DEFAULT_TYPING_TIMEOUT_S,
        clock: Clock = time.monotonic,
        chronological: bool = False,
    ) -> None:
        self.user_id = user_id
        self.user_name = user_name
        self.api = api
        self.marshaler = marshaler or JSONMarshaler()
        self.typing_timeout = typing_timeout
        self._clock = clock
        self.state = ClientState(user_id, typing_timeout, clock, chronological)
        self.status: ClientStatus = "disconnected"
        self._joined: dict[str, None] = {}
        self._send: SendCommand | None = None
        self._debouncers: dict[str, TypingDebouncer] = {}
        self._broadcast_callbacks: list[BroadcastCallback] = []
        self._task_group: TaskGroup | None = None

    async def __aenter__(self) -> "SyncClient":
        task_group = anyio.create_task_group()
        await task_group.__aenter__()
        self._task_group = task_group
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> bool | None:
        task_group, self._task_group = self._task_group, None
        self._debouncers.clear()
        self._send = None
        self.status = "disconnected"
        if task_group is None:
            return None
        task_group.cancel_scope.cancel()
        return await task_group.__aexit__(exc_type, exc_val, exc_tb)

    @property
    def joined(self) -> list[str]:
        return list(self._joined)

    # Transport

    async def attach(self, send: SendCommand) -> None:
        """Bind a live transport, then restore rooms (and repair gaps) if reconnecting."""
        reconnecting = self.status == "reconnecting"
        self._send = send
        self.status = "connected"
        await self._command(JoinUser(user_id=self.user_id))
        for chat_id in self.joined:
            await self._command(JoinChat(chat_id=chat_id))
            if reconnecting:
                await self.resync(chat_id)
        if reconnecting:
            logger.info("Reconnected; restored %d room(s)", len(self._joined))

    def detach(self) -> None:
        """Transport dropped; rooms are remembered for the next ``attach``."""
        self._send = None
        self.status = "reconnecting"
        for debouncer in self._debouncers.values():
            debouncer.state = "idle"
        logger.info("Connection lost; reconnecting")

    def auth_failed(self) -> None:
        """Handshake rejected. The client stays down until the user logs in again."""
        self._send = None
        self.status = "unauthorized"
        logger.warning("Authentication failed for %s; re-login required", self.user_id)

    # Rooms

    async def join(self, chat_id: str) -> None:
        """Subscribe to a chat and fetch what is missing locally."""
        await self._command(JoinChat(chat_id=chat_id))
        self._joined[chat_id] = None
        await self.resync(chat_id)

    async def leave(self, chat_id: str) -> None:
        debouncer = self._debouncers.pop(chat_id, None)
        if debouncer is not None:
            await debouncer.reset()
        self._joined.pop(chat_id, None)
        self.state.forget_typing(chat_id)
        await self._command(LeaveChat(chat_id=chat_id))

    async def resync(self, chat_id: str) -> None:
        """Repair a chat with everything changed since the newest local message."""
        since = None
        if chat_id in self.state.chats():
            since = self.state.timeline(chat_id).latest_activity()
        if self.api is None:
            await self._command(Resync(chat_id=chat_id, since=since))
            return
        messages = await self.api.fetch_messages(chat_id, since)
        added = self.state.timeline(chat_id).merge_history(messages)
        logger.debug("Resynced %s: %d new message(s)", chat_id, added)

    # Outbound

    async def keystroke(self, chat_id: str) -> None:
        await self._debouncer(chat_id).keystroke()

    async def send_message(
        self,
        chat_id: str,
        content: str,
        type: MessageType = "text",
        reply_to: str | None = None,
    ) -> Message | None:
        """Send a message; it only enters local state once the server confirms it.

        With an API the confirmed message is returned. On failure the typing
        signal is withdrawn and the error propagates.
        """
        debouncer = self._debouncers.get(chat_id)
        if debouncer is not None:
            await debouncer.reset()
        if self.api is None:
            command = SendMessage(chat_id=chat_id, content=content, type=type, reply_to=reply_to)
            await self._command(command)
            return None
        message = await self.api.create_message(chat_id, content, type=type, reply_to=reply_to)
        self.state.record_response(message)
        return message

    async def set_status(self, status: PresenceStatus) -> None:
        await self._command(SetStatus(status=status))

    # Inbound

    def on_broadcast(self, callback: BroadcastCallback) -> None:
        self._broadcast_callbacks.append(callback)

    async def apply(self, event: ServerEvent) -> bool:
        """Fold a pushed event into local state. Returns True if anything changed."""
        changed = self.state.apply(event)
        if isinstance(event, GlobalBroadcast):
            for callback in self._broadcast_callbacks:
                await callback(event)
        elif isinstance(event, ChatDeleted):
            self._joined.pop(event.chat_id, None)
            self._debouncers.pop(event.chat_id, None)
        elif isinstance(event, ErrorEvent) and event.event == "join-chat" and event.chat_id:
            # rejected joins are not restored on reconnect
            self._joined.pop(event.chat_id, None)
            self._debouncers.pop(event.chat_id, None)
        return changed

    async def receive_frame(self, raw: str | bytes) -> bool:
        """Decode and apply one frame. Malformed frames are logged and dropped."""
        try:
            event = self.marshaler.unmarshal_event(raw)
        except ProtocolError as e:
            logger.warning("Dropping malformed frame: %s", e)
            return False
        return await self.apply(event)

    async def consume(self, events: AsyncIterable[ServerEvent]) -> None:
        """Apply events until the source is exhausted."""
        async for event in events:
            await self.apply(event)

    # Internals

    def _debouncer(self, chat_id: str) -> TypingDebouncer:
        debouncer = self._debouncers.get(chat_id)
        if debouncer is None:
            if self._task_group is None:
                msg = "SyncClient must be entered before typing"
                raise RuntimeError(msg)
            debouncer = TypingDebouncer(
                self._send_typing,
                chat_id,
                self.user_name,
                self._task_group,
                self.typing_timeout,
                self._clock,
            )
            self._debouncers[chat_id] = debouncer
        return debouncer

    async def _command(self, command: Command) -> None:
        if self._send is None:
            msg = f"Cannot send {command.event_name}: not connected"
            raise ConnectionClosed(msg)
        await self._send(command)

    async def _send_typing(self, command: Command) -> None:
        try:
            await self._command(command)
        except ConnectionClosed:
            logger.debug("Dropped %s while disconnected", command.event_name)
