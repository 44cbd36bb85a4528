"""Optional OpenTelemetry spans around chat turns.

Each turn gets one client span carrying the agent id, the assistant
message id, record counters and any failure. Without ``instrument()``
every helper here is a no-op.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "agentstream") -> None:
    """Trace every chat turn with a tracer from the global TracerProvider.

    Raises:
        ImportError: ``opentelemetry-api`` is not installed
            (``pip install agentstream[otel]``).
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for instrumentation. "
            "Install it with: pip install agentstream[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info(
            "No TracerProvider configured; chat turn spans "
            "will be discarded."
        )
    else:
        logger.info(f"Tracing chat turns with tracer {tracer_name!r}")


def uninstrument() -> None:
    """Stop tracing turns; later turns run without a span."""
    global _tracer
    _tracer = None


@asynccontextmanager
async def turn_span(agent_id: str, message_id: str):
    """Wrap one streamed turn in a ``chat`` client span."""
    if _tracer is None:
        yield None
        return
    from opentelemetry.trace import SpanKind

    with _tracer.start_as_current_span(
        f"chat {agent_id}",
        kind=SpanKind.CLIENT,
        attributes={
            "gen_ai.operation.name": "chat",
            "gen_ai.agent.id": agent_id,
            "agentstream.message.id": message_id,
        },
    ) as span:
        yield span


def record_stream_stats(span, records: int, dropped: int, chars: int) -> None:
    """Set record and answer-size counters on a span."""
    if span is None:
        return
    span.set_attribute("agentstream.stream.records", records)
    span.set_attribute("agentstream.stream.dropped", dropped)
    span.set_attribute("agentstream.response.chars", chars)


def record_error(span, exception: BaseException) -> None:
    """Mark a turn span as failed with the exception that ended the turn."""
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute(
        "error.type", type(exception).__qualname__
    )
