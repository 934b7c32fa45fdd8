"""parley: real-time chat synchronization for Python.

Re-exports the hub, the client-side state and the wire types.
"""

from parley.app import create_app
from parley.auth import Authenticator, Identity, JWTAuthenticator
from parley.client import HTTPChatAPI, SyncClient
from parley.config import AppConfig, AuthConfig, HubConfig
from parley.connection import Connection, WebSocketConnection
from parley.errors import (
    AuthError,
    ConnectionClosed,
    DeliveryError,
    NotFoundError,
    NotParticipantError,
    ParleyError,
    PermissionDenied,
    ProtocolError,
    StorageError,
)
from parley.events import Message, ServerEvent
from parley.hub import RealtimeHub
from parley.marshaler import JSONMarshaler
from parley.state import ChatTimeline, ClientState
from parley.store import InMemoryChatDirectory, InMemoryMessageStore

__version__ = "0.1.0"

__all__ = [
    # server
    "RealtimeHub",
    "create_app",
    "Connection",
    "WebSocketConnection",
    "InMemoryMessageStore",
    "InMemoryChatDirectory",
    # auth
    "Authenticator",
    "Identity",
    "JWTAuthenticator",
    # client
    "SyncClient",
    "HTTPChatAPI",
    "ClientState",
    "ChatTimeline",
    # wire
    "Message",
    "ServerEvent",
    "JSONMarshaler",
    # config
    "AppConfig",
    "AuthConfig",
    "HubConfig",
    # errors
    "ParleyError",
    "AuthError",
    "PermissionDenied",
    "NotParticipantError",
    "StorageError",
    "NotFoundError",
    "DeliveryError",
    "ConnectionClosed",
    "ProtocolError",
]
