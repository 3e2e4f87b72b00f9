import json
from contextlib import contextmanager
from unittest.mock import MagicMock

import pytest

import toolrelay.instrumentation as inst
from toolrelay.provider import ModelProvider
from toolrelay.streaming import (
    StopReason,
    StreamStop,
    TextDelta,
    ToolCallArgumentFragment,
    ToolCallStart,
)
from toolrelay.tools import ToolDispatcher, tool


# ---------------------------------------------------------------------------
# Mock provider
# ---------------------------------------------------------------------------

class MockProvider(ModelProvider):
    """Provider that replays pre-queued chunk scripts. No network calls.

    Each script is a list of canonical chunks; an Exception instance in a
    script is raised at that point of the stream.
    """

    vendor = "mock"
    default_model = "mock-model"

    def __init__(self):
        self.scripts: list[list] = []
        self.call_log: list[dict] = []
        self.opened = 0
        self.closed = 0

    async def stream(
        self, model, system_prompt, messages, tools=None,
        max_tokens=4096, temperature=0.7,
    ):
        self.call_log.append({
            "model": model,
            "system_prompt": system_prompt,
            "messages": list(messages),
            "tools": tools,
            "max_tokens": max_tokens,
            "temperature": temperature,
        })
        script = self.scripts.pop(0)
        self.opened += 1
        try:
            for item in script:
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            self.closed += 1


# ---------------------------------------------------------------------------
# Script builder helpers
# ---------------------------------------------------------------------------

def text_script(*parts: str, reason: StopReason = StopReason.END) -> list:
    """A provider turn that streams text and stops."""
    return [TextDelta(text=p) for p in parts] + [StreamStop(reason=reason)]


def split_json(args: dict, pieces: int = 3) -> list[str]:
    text = json.dumps(args)
    size = max(1, len(text) // pieces)
    return [text[i:i + size] for i in range(0, len(text), size)]


def tool_script(
    name: str,
    args: dict | None = None,
    call_id: str = "call_1",
    index: int = 0,
    fragments: list[str] | None = None,
    preamble: str | None = None,
) -> list:
    """A provider turn that requests one tool call.

    Arguments are streamed as fragments of their JSON text unless
    ``fragments`` is given explicitly.
    """
    if fragments is None:
        fragments = split_json(args) if args else []
    chunks: list = []
    if preamble:
        chunks.append(TextDelta(text=preamble))
    chunks.append(ToolCallStart(id=call_id, index=index, name=name))
    chunks.extend(
        ToolCallArgumentFragment(index=index, partial_json=f)
        for f in fragments
    )
    chunks.append(StreamStop(reason=StopReason.TOOL_USE))
    return chunks


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

@tool
def echo(text: str):
    """Echo the input text."""
    return text


@tool
def get_ui_state():
    """Snapshot the current UI state."""
    return {"page": "tickets", "elements": 3}


@tool
def explode():
    """Always fails."""
    raise RuntimeError("boom")


@pytest.fixture
def mock_provider():
    return MockProvider()


@pytest.fixture
def dispatcher():
    return ToolDispatcher(tools=[echo, get_ui_state, explode])


@pytest.fixture
def base_conversation():
    return [
        {"role": "system", "content": "You are an assistant"},
        {"role": "user", "content": "What's on screen?"},
    ]


class RecordingTracer:
    """Tracer stand-in that logs span entry/exit and hands out mock spans."""

    def __init__(self):
        self.log: list[str] = []
        self.spans: list[tuple[str, MagicMock]] = []

    @contextmanager
    def start_as_current_span(self, name, **kwargs):
        span = MagicMock()
        self.spans.append((name, span))
        self.log.append(f"enter {name}")
        try:
            yield span
        finally:
            self.log.append(f"exit {name}")

    def attributes(self, prefix: str) -> list[dict]:
        """``set_attribute`` calls of each span whose name starts with ``prefix``."""
        return [
            {c.args[0]: c.args[1] for c in span.set_attribute.call_args_list}
            for name, span in self.spans
            if name.startswith(prefix)
        ]


@pytest.fixture
def recording_tracer():
    tracer = RecordingTracer()
    inst._tracer = tracer
    yield tracer
    inst._tracer = None
