"""Routing of inbound commands to their handlers."""

import inspect
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, get_type_hints

from parley.commands import Command
from parley.errors import ProtocolError

if TYPE_CHECKING:
    from parley.sessions import Session

HandlerFunc = Callable[[Command, "Session"], Awaitable[None]]
Middleware = Callable[[HandlerFunc], HandlerFunc]


class CommandRouter:
    """Maps each command type to exactly one handler, wrapped in middlewares.

    Middlewares added first run outermost.
    """

    def __init__(self) -> None:
        self._handlers: dict[type[Command], HandlerFunc] = {}
        self._middlewares: list[Middleware] = []

    def handler(self, func: Callable[..., Awaitable[None]]) -> Callable[..., Awaitable[None]]:
        """Register a handler; the command type comes from the first parameter's hint.

        Usage:
            @router.handler
            async def on_join(cmd: JoinChat, session: Session) -> None:
                ...
        """
        hints = get_type_hints(func)
        params = list(inspect.signature(func).parameters.keys())

        if not params:
            msg = f"Handler {func.__name__} must have at least one parameter"
            raise TypeError(msg)

        first_param = params[0]
        if first_param not in hints:
            msg = f"First parameter '{first_param}' of {func.__name__} must be typed"
            raise TypeError(msg)

        command_type = hints[first_param]
        if command_type in self._handlers:
            msg = f"{command_type.__name__} already has a handler"
            raise TypeError(msg)
        self._handlers[command_type] = func
        return func

    def add_middleware(self, middleware: Middleware) -> None:
        self._middlewares.append(middleware)

    def handles(self, command_type: type[Command]) -> bool:
        return command_type in self._handlers

    async def dispatch(self, command: Command, session: "Session") -> None:
        func = self._handlers.get(type(command))
        if func is None:
            msg = f"No handler for {type(command).__name__}"
            raise ProtocolError(msg)

        handler: Any = func
        for middleware in reversed(self._middlewares):
            handler = middleware(handler)
        await handler(command, session)
