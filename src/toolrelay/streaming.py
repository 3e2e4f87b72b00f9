"""Canonical streaming primitives shared by every provider adapter.

Adapters yield :class:`StreamChunk` variants.  The
:class:`ToolCallAccumulator` tracks tool invocations by stream index and
reassembles their arguments from raw partial-JSON fragments.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from toolrelay.errors import ToolArgumentsError


class StopReason(Enum):
    END = "end"
    TOOL_USE = "toolUse"
    MAX_TOKENS = "maxTokens"
    STOP_SEQUENCE = "stopSequence"


@dataclass(frozen=True)
class StreamChunk:
    """Base for all canonical stream chunks."""


@dataclass(frozen=True)
class TextDelta(StreamChunk):
    text: str


@dataclass(frozen=True)
class ToolCallStart(StreamChunk):
    """A tool invocation begins at ``index``; id and name are final."""

    id: str
    index: int
    name: str


@dataclass(frozen=True)
class ToolCallArgumentFragment(StreamChunk):
    """Raw argument text for ``index``.  Not valid JSON on its own."""

    index: int
    partial_json: str


@dataclass(frozen=True)
class ToolCallParametersComplete(StreamChunk):
    """Whole-object parameters for adapters that never send fragments."""

    index: int
    parameters: dict


@dataclass(frozen=True)
class StreamStop(StreamChunk):
    reason: StopReason


class InvocationStatus(Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETE = "complete"


@dataclass
class ToolInvocation:
    """One model-requested tool call, tracked from request to completion."""

    id: str
    name: str
    index: int = 0
    status: InvocationStatus = InvocationStatus.PENDING
    input: dict[str, Any] | None = None

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "input": self.input if self.input is not None else {},
        }


def parse_arguments(name: str, text: str) -> dict[str, Any]:
    """Parse accumulated argument text.  Empty text is an empty object."""
    if not text.strip():
        return {}
    try:
        value = json.loads(text)
    except json.JSONDecodeError as e:
        raise ToolArgumentsError(
            f"Invalid JSON arguments for {name}: {e}"
        ) from e
    if not isinstance(value, dict):
        raise ToolArgumentsError(
            f"Arguments for {name} must be a JSON object, "
            f"got {type(value).__name__}"
        )
    return value


@dataclass
class _Slot:
    invocation: ToolInvocation
    fragments: list[str] = field(default_factory=list)
    ready: bool = False


class ToolCallAccumulator:
    """Collects tool invocations for a single provider turn.

    Invocations are keyed by stream index because some adapters only
    learn the call id after the first fragment.  Arguments are kept as
    raw text and parsed only when :meth:`finalize` is called.
    """

    def __init__(self) -> None:
        self._slots: dict[int, _Slot] = {}

    def __bool__(self) -> bool:
        return bool(self._slots)

    def __len__(self) -> int:
        return len(self._slots)

    def start(self, chunk: ToolCallStart) -> ToolInvocation:
        invocation = ToolInvocation(
            id=chunk.id, name=chunk.name, index=chunk.index,
        )
        self._slots[chunk.index] = _Slot(invocation=invocation)
        return invocation

    def feed(self, chunk: ToolCallArgumentFragment) -> None:
        slot = self._slots.get(chunk.index)
        if slot is None:
            raise ToolArgumentsError(
                f"Argument fragment for unknown tool call index {chunk.index}"
            )
        slot.fragments.append(chunk.partial_json)

    def set_parameters(self, chunk: ToolCallParametersComplete) -> None:
        slot = self._slots.get(chunk.index)
        if slot is None:
            raise ToolArgumentsError(
                f"Parameters for unknown tool call index {chunk.index}"
            )
        slot.invocation.input = dict(chunk.parameters)
        slot.ready = True

    def mark_ready(self, index: int, parameters: dict | None = None) -> None:
        """Fix the input of ``index`` without waiting for fragments."""
        slot = self._slots[index]
        slot.invocation.input = dict(parameters or {})
        slot.ready = True

    def arguments_text(self, index: int) -> str:
        return "".join(self._slots[index].fragments)

    def finalize(
        self,
    ) -> tuple[list[ToolInvocation], list[tuple[ToolInvocation, ToolArgumentsError]]]:
        """Parse every pending slot in arrival order.

        Returns the invocations ready to run and the ones whose
        arguments failed to parse.  The accumulator is empty afterwards.
        """
        ready: list[ToolInvocation] = []
        failed: list[tuple[ToolInvocation, ToolArgumentsError]] = []
        for slot in self._slots.values():
            invocation = slot.invocation
            if not slot.ready:
                try:
                    invocation.input = parse_arguments(
                        invocation.name, "".join(slot.fragments),
                    )
                except ToolArgumentsError as e:
                    failed.append((invocation, e))
                    continue
            ready.append(invocation)
        self._slots.clear()
        return ready, failed
