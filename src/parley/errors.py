"""Exception hierarchy for the real-time layer."""


class ParleyError(Exception):
    """Base class for all parley errors."""

    code = "error"


class AuthError(ParleyError):
    """Credential missing, malformed, expired or rejected."""

    code = "auth_failed"


class PermissionDenied(ParleyError):
    """Authenticated caller may not perform the operation."""

    code = "forbidden"


class NotParticipantError(PermissionDenied):
    """Caller is not a participant of the chat it addressed."""

    code = "not_participant"

    def __init__(self, user_id: str, chat_id: str) -> None:
        self.user_id = user_id
        self.chat_id = chat_id
        super().__init__(f"User {user_id} is not a participant of chat {chat_id}")


class StorageError(ParleyError):
    """The durable store rejected a write."""

    code = "storage_failed"


class NotFoundError(StorageError):
    """Referenced record does not exist."""

    code = "not_found"


class DeliveryError(ParleyError):
    """An event could not be handed to a connection."""

    code = "delivery_failed"


class ConnectionClosed(DeliveryError):
    """The connection is closed or was marked dead."""

    code = "connection_closed"


class ProtocolError(ParleyError):
    """Inbound frame is malformed or names an unknown event."""

    code = "bad_request"
