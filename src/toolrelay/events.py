"""Outward events pushed to the client during one orchestration run."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, ClassVar


@dataclass
class StreamEvent:
    """Base for all outward events.

    ``type`` names the event on the wire and ``data`` is its text
    payload.
    """

    type: ClassVar[str] = ""

    @property
    def data(self) -> str:
        raise NotImplementedError

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type, "data": self.data}


@dataclass
class TokenEvent(StreamEvent):
    """A text delta from the provider, forwarded as it arrives."""

    type: ClassVar[str] = "token"
    text: str = ""

    @property
    def data(self) -> str:
        return self.text


@dataclass
class ToolUseEvent(StreamEvent):
    """A tool invocation moved to ``executing``."""

    type: ClassVar[str] = "tool_use"
    invocation: dict[str, Any] = field(default_factory=dict)

    @property
    def data(self) -> str:
        return json.dumps(self.invocation, default=str)


@dataclass
class ToolResultEvent(StreamEvent):
    type: ClassVar[str] = "tool_result"
    tool_call_id: str = ""
    name: str = ""
    content: str = ""

    @property
    def data(self) -> str:
        return self.content


@dataclass
class ErrorEvent(StreamEvent):
    """An adapter, parse or transport failure.  ``kind`` is an ErrorKind value."""

    type: ClassVar[str] = "error"
    message: str = ""
    kind: str = ""

    @property
    def data(self) -> str:
        return self.message


@dataclass
class DoneEvent(StreamEvent):
    """Final event; always last and sent exactly once per run."""

    type: ClassVar[str] = "done"

    @property
    def data(self) -> str:
        return "true"
