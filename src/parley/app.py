"""FastAPI app: the WebSocket event stream plus the HTTP write routes."""

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated

import anyio
import uvicorn
from fastapi import Depends, FastAPI, Header, Query, Request, WebSocket
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketState

from parley.auth import Authenticator, Identity, JWTAuthenticator, bearer_token
from parley.config import AppConfig
from parley.connection import Connection, WebSocketConnection
from parley.errors import (
    AuthError,
    NotFoundError,
    ParleyError,
    PermissionDenied,
    ProtocolError,
    StorageError,
)
from parley.events import GlobalBroadcast, Message, MessageType, WireModel
from parley.hub import RealtimeHub
from parley.service import ChatService
from parley.shutdown import graceful_shutdown
from parley.store import (
    ChatDirectory,
    InMemoryChatDirectory,
    InMemoryMessageStore,
    MessageStore,
)

logger = logging.getLogger(__name__)

WS_UNAUTHORIZED = 4401
WS_TRY_AGAIN = 1013

_STATUS_BY_ERROR: list[tuple[type[ParleyError], int]] = [
    (AuthError, 401),
    (PermissionDenied, 403),
    (NotFoundError, 404),
    (ProtocolError, 400),
    (StorageError, 422),
]


# Request/response models


class CreateMessageRequest(WireModel):
    content: str = ""
    type: MessageType = "text"
    reply_to: str | None = None
    file_url: str | None = None
    file_name: str | None = None


class UpdateMessageRequest(WireModel):
    content: str | None = None
    emoji: str | None = None


class ReadReceiptRequest(WireModel):
    message_ids: list[str]


class ReadReceiptResponse(WireModel):
    chat_id: str
    message_ids: list[str]


class BroadcastRequest(WireModel):
    message: str


class ClearChatResponse(WireModel):
    chat_id: str
    removed: int


# Dependencies


def get_hub(request: Request) -> RealtimeHub:
    return request.app.state.hub


HubDep = Annotated[RealtimeHub, Depends(get_hub)]


def get_service(hub: HubDep) -> ChatService:
    return hub.service


async def get_identity(
    hub: HubDep,
    authorization: Annotated[str | None, Header()] = None,
) -> Identity:
    return hub.authenticator.verify_token(bearer_token(authorization))


IdentityDep = Annotated[Identity, Depends(get_identity)]
ServiceDep = Annotated[ChatService, Depends(get_service)]


async def get_exclude(
    hub: HubDep,
    identity: IdentityDep,
    x_connection_id: Annotated[str | None, Header()] = None,
) -> Connection | None:
    """The caller's own socket, whose echo of this write is suppressed."""
    if not x_connection_id:
        return None
    session = hub.sessions.find(x_connection_id)
    if session is None or session.user_id != identity.user_id:
        return None
    return session.connection


ExcludeDep = Annotated[Connection | None, Depends(get_exclude)]


# App


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Run the realtime hub for the lifetime of the app."""
    hub: RealtimeHub = app.state.hub
    logger.info("Starting realtime hub...")
    async with hub:
        yield
        logger.info("Shutting down realtime hub...")


def create_app(
    config: AppConfig | None = None,
    store: MessageStore | None = None,
    directory: ChatDirectory | None = None,
    authenticator: Authenticator | None = None,
) -> FastAPI:
    """Build an app with its own hub; nothing is shared between apps."""
    config = config or AppConfig()
    hub = RealtimeHub(
        authenticator or JWTAuthenticator(config.auth),
        store or InMemoryMessageStore(),
        directory or InMemoryChatDirectory(),
        config=config.hub,
        manager_roles=config.manager_roles,
    )

    app = FastAPI(title="parley", lifespan=lifespan)
    app.state.hub = hub
    app.state.config = config
    app.add_exception_handler(ParleyError, _parley_error_handler)
    app.add_api_websocket_route("/ws", websocket_endpoint)
    _register_routes(app)
    return app


async def _parley_error_handler(request: Request, exc: Exception) -> JSONResponse:
    status = next(
        (code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)),
        500,
    )
    code = exc.code if isinstance(exc, ParleyError) else "error"
    return JSONResponse(status_code=status, content={"code": code, "detail": str(exc)})


async def websocket_endpoint(
    websocket: WebSocket,
    token: Annotated[str, Query()] = "",
) -> None:
    """One socket: authenticate, pump the outbox, feed inbound frames to the hub."""
    hub: RealtimeHub = websocket.app.state.hub
    await websocket.accept()
    connection = WebSocketConnection(websocket, hub.marshaler, hub.config.outbox_size)
    try:
        await hub.connect(connection, token)
    except AuthError as e:
        await websocket.close(code=WS_UNAUTHORIZED, reason=str(e))
        return

    try:
        async with anyio.create_task_group() as tg:

            async def pump() -> None:
                await connection.pump()
                tg.cancel_scope.cancel()

            tg.start_soon(pump)
            try:
                await _read_frames(websocket, hub, connection)
            finally:
                connection.mark_dead()
    finally:
        await hub.disconnect(connection)

    if websocket.client_state == WebSocketState.CONNECTED:
        # dropped by the hub: outbox overflow or shutdown
        logger.info("Closing connection %s dropped by the hub", connection.id)
        try:
            await websocket.close(code=WS_TRY_AGAIN, reason="Connection dropped")
        except (RuntimeError, OSError) as e:
            logger.debug("Close of connection %s failed: %s", connection.id, e)


async def _read_frames(
    websocket: WebSocket, hub: RealtimeHub, connection: Connection
) -> None:
    """Hand text and binary frames to the hub until the peer goes away."""
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            logger.debug(
                "Connection %s closed by peer (%s)", connection.id, message.get("code")
            )
            return
        raw = message.get("text") or message.get("bytes")
        if raw is None:
            continue
        try:
            await hub.handle_frame(connection, raw)
        except AuthError:
            logger.info("Frame on unregistered connection %s", connection.id)
            return


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    async def health(hub: HubDep) -> dict[str, object]:
        return {"status": "ok", "running": hub.running, "sessions": len(hub.sessions)}

    @app.post("/chats/{chat_id}/messages", status_code=201)
    async def create_message(
        chat_id: str,
        request: CreateMessageRequest,
        identity: IdentityDep,
        service: ServiceDep,
        exclude: ExcludeDep,
    ) -> Message:
        """Persist a message, then fan it out to the chat room."""
        return await service.send_message(
            identity,
            chat_id,
            request.content,
            type=request.type,
            reply_to=request.reply_to,
            file_url=request.file_url,
            file_name=request.file_name,
            exclude=exclude,
        )

    @app.get("/chats/{chat_id}/messages")
    async def get_messages(
        chat_id: str,
        identity: IdentityDep,
        service: ServiceDep,
        since: datetime | None = None,
        limit: Annotated[int | None, Query(ge=1, le=500)] = None,
    ) -> list[Message]:
        """Messages created or modified after ``since``; all of them when omitted."""
        return await service.history(identity, chat_id, since, limit)

    @app.post("/chats/{chat_id}/messages/read")
    async def mark_read(
        chat_id: str,
        request: ReadReceiptRequest,
        identity: IdentityDep,
        service: ServiceDep,
        exclude: ExcludeDep,
    ) -> ReadReceiptResponse:
        marked = await service.mark_read(identity, chat_id, request.message_ids, exclude)
        return ReadReceiptResponse(chat_id=chat_id, message_ids=marked)

    @app.put("/chats/{chat_id}/messages/{message_id}")
    async def update_message(
        chat_id: str,
        message_id: str,
        request: UpdateMessageRequest,
        identity: IdentityDep,
        service: ServiceDep,
        exclude: ExcludeDep,
    ) -> Message:
        """Edit content (sender only) and/or toggle an emoji reaction."""
        return await service.update_message(
            identity,
            chat_id,
            message_id,
            content=request.content,
            emoji=request.emoji,
            exclude=exclude,
        )

    @app.delete("/chats/{chat_id}/messages/{message_id}")
    async def delete_message(
        chat_id: str,
        message_id: str,
        identity: IdentityDep,
        service: ServiceDep,
        exclude: ExcludeDep,
    ) -> Message:
        return await service.delete_message(identity, chat_id, message_id, exclude)

    @app.delete("/chats/{chat_id}/messages")
    async def clear_chat(
        chat_id: str, identity: IdentityDep, service: ServiceDep
    ) -> ClearChatResponse:
        removed = await service.clear_chat(identity, chat_id)
        return ClearChatResponse(chat_id=chat_id, removed=removed)

    @app.delete("/chats/{chat_id}", status_code=204)
    async def delete_chat(chat_id: str, identity: IdentityDep, service: ServiceDep) -> None:
        await service.delete_chat(identity, chat_id)

    @app.post("/broadcasts", status_code=202)
    async def broadcast(
        request: BroadcastRequest, identity: IdentityDep, service: ServiceDep
    ) -> GlobalBroadcast:
        """Deliver a global broadcast to every connected session."""
        return await service.broadcast(identity, request.message)


async def serve(
    config: AppConfig | None = None,
    host: str = "127.0.0.1",
    port: int = 8000,
) -> None:
    app = create_app(config)
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_config=None))
    async with graceful_shutdown(app.state.hub):
        await server.serve()


def main() -> None:
    logging.basicConfig(
        level=os.environ.get("PARLEY_LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    anyio.run(
        serve,
        AppConfig.from_env(),
        os.environ.get("PARLEY_HOST", "127.0.0.1"),
        int(os.environ.get("PARLEY_PORT", "8000")),
    )


if __name__ == "__main__":
    main()
