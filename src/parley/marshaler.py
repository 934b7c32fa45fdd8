"""Marshaling between wire frames and typed events/commands.

A frame is a JSON object ``{"event": <name>, "data": <payload>}``.
"""

import json
from collections.abc import Iterable
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from parley.commands import CLIENT_COMMANDS, Command
from parley.errors import ProtocolError
from parley.events import SERVER_EVENTS, ServerEvent, WireModel

T = TypeVar("T", bound=WireModel)


class Envelope(BaseModel):
    """Named frame carrying one JSON payload."""

    event: str
    data: Any = None


class Marshaler(Protocol):
    """Converts typed models to frames and back."""

    def name(self, model_type: type[WireModel]) -> str: ...

    def marshal(self, model: WireModel) -> str: ...

    def unmarshal_event(self, raw: str | bytes) -> ServerEvent: ...

    def unmarshal_command(self, raw: str | bytes) -> Command: ...


class JSONMarshaler:
    """Marshaler for JSON text frames keyed by each model's ``event_name``."""

    def __init__(
        self,
        events: Iterable[type[ServerEvent]] = SERVER_EVENTS,
        commands: Iterable[type[Command]] = CLIENT_COMMANDS,
    ) -> None:
        self._events = {cls.event_name: cls for cls in events}
        self._commands = {cls.event_name: cls for cls in commands}

    def name(self, model_type: type[WireModel]) -> str:
        return model_type.event_name  # type: ignore[attr-defined]

    def envelope(self, model: WireModel) -> Envelope:
        return Envelope(event=self.name(type(model)), data=model.to_wire())

    def marshal(self, model: WireModel) -> str:
        return self.envelope(model).model_dump_json()

    def unmarshal_event(self, raw: str | bytes) -> ServerEvent:
        envelope = _parse_envelope(raw)
        return _validate(self._events, envelope)

    def unmarshal_command(self, raw: str | bytes) -> Command:
        envelope = _parse_envelope(raw)
        cls = self._commands.get(envelope.event)
        if cls is not None and isinstance(envelope.data, str) and cls.bare_field:
            envelope.data = {cls.bare_field: envelope.data}
        return _validate(self._commands, envelope)


def _parse_envelope(raw: str | bytes) -> Envelope:
    try:
        return Envelope.model_validate(json.loads(raw))
    except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as e:
        msg = f"Malformed frame: {e}"
        raise ProtocolError(msg) from e


def _validate(registry: dict[str, type[T]], envelope: Envelope) -> T:
    cls = registry.get(envelope.event)
    if cls is None:
        msg = f"Unknown event {envelope.event!r}"
        raise ProtocolError(msg)
    try:
        return cls.model_validate(envelope.data or {})
    except ValidationError as e:
        msg = f"Invalid payload for {envelope.event!r}: {e.error_count()} error(s)"
        raise ProtocolError(msg) from e
