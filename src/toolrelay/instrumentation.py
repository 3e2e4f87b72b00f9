"""Optional OpenTelemetry instrumentation for toolrelay.

Call ``toolrelay.instrument()`` once at startup to enable tracing.
Requires ``opentelemetry-api`` to be installed; everything works
identically without it.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager, contextmanager

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "toolrelay") -> None:
    """Enable OpenTelemetry tracing for orchestration runs.

    Call once at startup, after configuring your TracerProvider.
    Requires ``opentelemetry-api``: ``pip install toolrelay[otel]``

    Example::

        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider

        trace.set_tracer_provider(TracerProvider())

        import toolrelay
        toolrelay.instrument()

    Args:
        tracer_name: Name passed to ``trace.get_tracer()``.

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for instrumentation. "
            "Install it with: pip install toolrelay[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info(
            "No TracerProvider configured; spans will be "
            "discarded. Set up a TracerProvider to export "
            "traces."
        )
    else:
        logger.info("toolrelay instrumentation enabled")


def uninstrument() -> None:
    """Disable OpenTelemetry tracing."""
    global _tracer
    _tracer = None


def is_instrumented() -> bool:
    return _tracer is not None


@asynccontextmanager
async def completion_span(system: str, model: str):
    """Wrap one provider stream, from request until release, in a ``chat`` span."""
    if _tracer is None:
        yield None
        return
    from opentelemetry.trace import SpanKind

    with _tracer.start_as_current_span(
        f"chat {model}",
        kind=SpanKind.CLIENT,
        attributes={
            "gen_ai.operation.name": "chat",
            "gen_ai.provider.name": system,
            "gen_ai.request.model": model,
        },
    ) as span:
        yield span


@asynccontextmanager
async def tool_span(tool_name: str, call_id: str):
    """Wrap a tool dispatch in an ``execute_tool`` span."""
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(
        f"execute_tool {tool_name}",
        attributes={
            "gen_ai.operation.name": "execute_tool",
            "gen_ai.tool.name": tool_name,
            "gen_ai.tool.call.id": call_id,
        },
    ) as span:
        yield span


@contextmanager
def turn_span(model: str, turn: int):
    """Span around one whole turn: open the stream, consume it, run tools."""
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(
        f"orchestrate_turn {model}",
        attributes={
            "gen_ai.request.model": model,
            "toolrelay.turn": turn,
        },
    ) as span:
        yield span


def record_error(span, exception: BaseException) -> None:
    """Record an exception and set ERROR status on a span.

    No-ops when *span* is ``None`` (tracing disabled).
    """
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute(
        "error.type", type(exception).__qualname__
    )


def record_stop(span, reason) -> None:
    """Record the provider's stop reason on a ``chat`` span."""
    if span is None:
        return
    span.set_attribute("gen_ai.response.finish_reasons", [reason.value])


def record_turn(span, stop_reason, tool_calls: int) -> None:
    """Record how a turn ended and how many tool calls it dispatched."""
    if span is None:
        return
    if stop_reason is not None:
        span.set_attribute("toolrelay.stop_reason", stop_reason.value)
    span.set_attribute("toolrelay.tool_calls", tool_calls)
