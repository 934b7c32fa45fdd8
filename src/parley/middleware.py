"""Built-in command handler middlewares."""

import logging
import time
from typing import Any

import anyio
from opentelemetry import metrics, trace
from opentelemetry.metrics import MeterProvider
from opentelemetry.trace import SpanKind, Status, StatusCode, TracerProvider

from parley.commands import Command
from parley.errors import ParleyError
from parley.handlers import HandlerFunc, Middleware
from parley.sessions import Session


def recoverer(
    logger: logging.Logger | None = None,
) -> Middleware:
    """Middleware that logs handler failures before they propagate.

    Expected domain errors are logged at info, anything else with a traceback.
    """
    log = logger or logging.getLogger("parley.handlers")

    def middleware(next_handler: HandlerFunc) -> HandlerFunc:
        async def handler(cmd: Command, session: Session) -> None:
            try:
                await next_handler(cmd, session)
            except ParleyError as e:
                log.info(
                    "%s from %s rejected: %s", cmd.event_name, session.user_id, e
                )
                raise
            except Exception:
                log.exception(
                    "Handler failed for %s from %s", cmd.event_name, session.user_id
                )
                raise

        return handler

    return middleware


def timeout(seconds: float) -> Middleware:
    """Middleware that cancels a handler if it takes too long."""

    def middleware(next_handler: HandlerFunc) -> HandlerFunc:
        async def handler(cmd: Command, session: Session) -> None:
            with anyio.fail_after(seconds):
                await next_handler(cmd, session)

        return handler

    return middleware


def tracing(tracer_provider: TracerProvider | None = None) -> Middleware:
    """Middleware that wraps each command in a consumer span.

    Example:
        router.add_middleware(tracing())
    """
    provider = tracer_provider or trace.get_tracer_provider()
    tracer = provider.get_tracer("parley")

    def middleware(next_handler: HandlerFunc) -> HandlerFunc:
        async def handler(cmd: Command, session: Session) -> None:
            attributes = {
                "messaging.system": "parley",
                "messaging.operation.name": "process",
                "parley.command": cmd.event_name,
                "parley.user_id": session.user_id,
                "parley.connection_id": session.connection.id,
            }
            with tracer.start_as_current_span(
                f"process {cmd.event_name}",
                kind=SpanKind.CONSUMER,
                attributes=attributes,
            ) as span:
                try:
                    await next_handler(cmd, session)
                    span.set_status(Status(StatusCode.OK))
                except Exception as e:
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    span.set_attribute("error.type", type(e).__name__)
                    raise

        return handler

    return middleware


def metrics_middleware(meter_provider: MeterProvider | None = None) -> Middleware:
    """Middleware recording command count and handling duration.

    Tracks:
    - parley.commands.processed: Commands handled, by command and outcome
    - parley.command.duration: Handling time histogram
    """
    provider = meter_provider or metrics.get_meter_provider()
    meter = provider.get_meter("parley")

    processed = meter.create_counter(
        "parley.commands.processed",
        unit="{command}",
        description="Inbound commands handled",
    )
    duration = meter.create_histogram(
        "parley.command.duration",
        unit="s",
        description="Duration of command handling",
    )

    def middleware(next_handler: HandlerFunc) -> HandlerFunc:
        async def handler(cmd: Command, session: Session) -> None:
            attributes: dict[str, Any] = {"parley.command": cmd.event_name}
            start = time.perf_counter()
            try:
                await next_handler(cmd, session)
            except Exception as e:
                attributes["error.type"] = type(e).__name__
                raise
            finally:
                processed.add(1, attributes)
                duration.record(time.perf_counter() - start, attributes)

        return handler

    return middleware
