import inspect
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import anthropic
import openai
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from toolrelay.errors import ProviderError
from toolrelay.instrumentation import completion_span, record_error, record_stop
from toolrelay.message import (
    Message,
    MessageRole,
    ToolCallRequestMessage,
    ToolCallResultMessage,
)
from toolrelay.streaming import (
    StopReason,
    StreamChunk,
    StreamStop,
    TextDelta,
    ToolCallArgumentFragment,
    ToolCallParametersComplete,
    ToolCallStart,
)

logger = logging.getLogger(__name__)


async def _release(response: Any) -> None:
    close = getattr(response, "close", None)
    if close is None:
        return
    result = close()
    if inspect.isawaitable(result):
        await result


class ModelProvider:
    """Adapter between one vendor's streaming wire format and the
    canonical :mod:`toolrelay.streaming` chunks.

    ``stream()`` is an async generator: finite, single-consumer and not
    restartable.  Closing it (``aclose()``) releases the upstream
    connection.  Upstream failures surface as :class:`ProviderError`.
    """

    vendor: str = ""
    default_model: str = ""

    def format_messages(
        self, messages: list[Message], system_prompt: str | None = None,
    ) -> list[dict]:
        raise NotImplementedError

    def format_tools(self, tools: list[dict]) -> list[dict]:
        raise NotImplementedError

    async def stream(
        self,
        model: str,
        system_prompt: str | None,
        messages: list[Message],
        tools: list[dict] | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> AsyncIterator[StreamChunk]:
        raise NotImplementedError
        yield  # pragma: no cover


_OPENAI_STOP_REASONS = {
    "stop": StopReason.END,
    "tool_calls": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
    "length": StopReason.MAX_TOKENS,
    "content_filter": StopReason.END,
}


class OpenAIProvider(ModelProvider):
    """Chat Completions streaming (finish-reason style).

    Tool identity and argument text arrive together in
    ``delta.tool_calls`` entries addressed by index; the turn ends with a
    ``finish_reason`` on the last choice rather than a dedicated stop
    event.
    """

    vendor = "openai"
    default_model = "gpt-4o"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 600.0,
        max_retries: int = 2,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=self.base_url,
            max_retries=max_retries,
            timeout=timeout,
        )

    def format_messages(
        self, messages: list[Message], system_prompt: str | None = None,
    ) -> list[dict]:
        formatted: list[dict] = []
        if system_prompt:
            formatted.append({"role": "system", "content": system_prompt})
        for m in messages:
            if isinstance(m, ToolCallRequestMessage):
                call = {
                    "id": m.tool_call.id,
                    "type": "function",
                    "function": {
                        "name": m.tool_call.name,
                        "arguments": json.dumps(m.tool_call.input),
                    },
                }
                previous = formatted[-1] if formatted else None
                # Consecutive requests belong to one assistant turn.
                if (
                    previous is not None
                    and previous["role"] == "assistant"
                    and previous.get("tool_calls")
                    and not m.text
                ):
                    previous["tool_calls"].append(call)
                else:
                    formatted.append({
                        "role": "assistant",
                        "content": m.text or None,
                        "tool_calls": [call],
                    })
            elif isinstance(m, ToolCallResultMessage):
                formatted.append({
                    "role": "tool",
                    "tool_call_id": m.tool_call_id,
                    "content": m.text,
                })
            elif m.role is MessageRole.SYSTEM:
                if not system_prompt:
                    formatted.insert(0, {"role": "system", "content": m.text})
            else:
                formatted.append({"role": m.role.value, "content": m.content})
        return formatted

    def format_tools(self, tools: list[dict]) -> list[dict]:
        return [
            {
                "type": "function",
                "function": {
                    "name": t["name"],
                    "description": t.get("description", ""),
                    "parameters": t.get("parameters")
                    or {"type": "object", "properties": {}},
                },
            }
            for t in tools
        ]

    async def stream(
        self,
        model: str,
        system_prompt: str | None,
        messages: list[Message],
        tools: list[dict] | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> AsyncIterator[StreamChunk]:
        kwargs: dict[str, Any] = dict(
            model=model,
            messages=self.format_messages(messages, system_prompt),
            max_tokens=max_tokens,
            temperature=temperature,
            stream=True,
        )
        if tools:
            kwargs["tools"] = self.format_tools(tools)
            kwargs["tool_choice"] = "auto"

        async with completion_span(self.vendor, model) as span:
            try:
                response = await self.client.chat.completions.create(**kwargs)
            except openai.APIError as e:
                record_error(span, e)
                raise self._wrap(e) from e

            try:
                async for chunk in self._translate(response):
                    if isinstance(chunk, StreamStop):
                        record_stop(span, chunk.reason)
                    yield chunk
            except openai.APIError as e:
                record_error(span, e)
                raise self._wrap(e) from e
            finally:
                await _release(response)

    def _wrap(self, e: Exception) -> ProviderError:
        logger.error(f"{self.vendor} request failed: {e}")
        return ProviderError(
            f"{self.vendor} request failed: {e}",
            vendor=self.vendor,
            status_code=getattr(e, "status_code", None),
        )

    async def _translate(self, response) -> AsyncIterator[StreamChunk]:
        # Canonical slot -> call state.  Vendor indices map onto slots via
        # ``aliases``; a new id on a started vendor index opens a new slot.
        calls: dict[int, dict] = {}
        aliases: dict[int, int] = {}

        def open_slot(vendor_index: int) -> int:
            slot = vendor_index if vendor_index not in calls else max(calls) + 1
            calls[slot] = {"id": None, "name": None, "buffer": [], "started": False}
            aliases[vendor_index] = slot
            return slot

        def flush(index: int, state: dict):
            # Start is deferred until both id and name are known.
            state["started"] = True
            yield ToolCallStart(
                id=state["id"] or f"call_{index}",
                index=index,
                name=state["name"],
            )
            for fragment in state["buffer"]:
                yield ToolCallArgumentFragment(index=index, partial_json=fragment)
            state["buffer"].clear()

        async for chunk in response:
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = choice.delta

            if delta is not None and delta.content:
                yield TextDelta(text=delta.content)

            for tc in (delta.tool_calls if delta is not None else None) or []:
                slot = aliases.get(tc.index)
                if slot is None:
                    slot = open_slot(tc.index)
                elif tc.id and calls[slot]["id"] and tc.id != calls[slot]["id"]:
                    if not calls[slot]["started"] and calls[slot]["name"]:
                        for out in flush(slot, calls[slot]):
                            yield out
                    logger.debug(
                        f"{self.vendor} reused index {tc.index} for new call "
                        f"{tc.id}"
                    )
                    slot = open_slot(tc.index)
                state = calls[slot]
                if tc.id:
                    state["id"] = tc.id
                function = tc.function
                if function is not None and function.name:
                    state["name"] = function.name
                arguments = function.arguments if function is not None else None
                if state["started"]:
                    if arguments:
                        yield ToolCallArgumentFragment(
                            index=slot, partial_json=arguments,
                        )
                    continue
                if arguments:
                    state["buffer"].append(arguments)
                if state["id"] and state["name"]:
                    for out in flush(slot, state):
                        yield out

            if choice.finish_reason:
                for index, state in calls.items():
                    if not state["started"] and state["name"]:
                        for out in flush(index, state):
                            yield out
                reason = _OPENAI_STOP_REASONS.get(
                    choice.finish_reason, StopReason.END,
                )
                if reason is StopReason.END and any(
                    s["started"] for s in calls.values()
                ):
                    # Some compatible servers finish tool turns with "stop".
                    reason = StopReason.TOOL_USE
                yield StreamStop(reason=reason)
                return


class OpenRouter(OpenAIProvider):
    vendor = "openrouter"
    default_model = "openai/gpt-4o"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 180.0,
        max_retries: int = 2,
    ):
        super().__init__(
            api_key=api_key,
            base_url=base_url or "https://openrouter.ai/api/v1",
            timeout=timeout,
            max_retries=max_retries,
        )


class OpenAICompatibleProvider(OpenAIProvider):
    """Any server speaking the Chat Completions protocol (vLLM, Ollama, ...)."""

    vendor = "openai_compatible"
    default_model = "default"

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 600.0,
        max_retries: int = 2,
    ):
        super().__init__(
            api_key=api_key or "DUMMY",
            base_url=base_url,
            timeout=timeout,
            max_retries=max_retries,
        )


_ANTHROPIC_STOP_REASONS = {
    "end_turn": StopReason.END,
    "tool_use": StopReason.TOOL_USE,
    "max_tokens": StopReason.MAX_TOKENS,
    "stop_sequence": StopReason.STOP_SEQUENCE,
}


class AnthropicProvider(ModelProvider):
    """Messages API streaming (atomic-start style).

    A ``content_block_start`` of type ``tool_use`` fully identifies the
    call; ``input_json_delta`` events carry raw partial JSON; the stop
    reason arrives on ``message_delta``.
    """

    vendor = "anthropic"
    default_model = "claude-sonnet-4-20250514"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 600.0,
        max_retries: int = 2,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.client = AsyncAnthropic(
            api_key=api_key,
            base_url=self.base_url,
            max_retries=max_retries,
            timeout=timeout,
        )

    @staticmethod
    def _blocks(content: str | list[dict]) -> list[dict]:
        if isinstance(content, str):
            return [{"type": "text", "text": content}] if content else []
        return list(content)

    def format_messages(
        self, messages: list[Message], system_prompt: str | None = None,
    ) -> list[dict]:
        formatted: list[dict] = []

        def add(role: str, blocks: list[dict]):
            if not blocks:
                return
            # The Messages API expects alternating turns.
            if formatted and formatted[-1]["role"] == role:
                formatted[-1]["content"].extend(blocks)
            else:
                formatted.append({"role": role, "content": blocks})

        for m in messages:
            if m.role is MessageRole.SYSTEM:
                continue
            if isinstance(m, ToolCallRequestMessage):
                add("assistant", self._blocks(m.content) + [{
                    "type": "tool_use",
                    "id": m.tool_call.id,
                    "name": m.tool_call.name,
                    "input": m.tool_call.input,
                }])
            elif isinstance(m, ToolCallResultMessage):
                add("user", [{
                    "type": "tool_result",
                    "tool_use_id": m.tool_call_id,
                    "content": m.text,
                }])
            else:
                add(m.role.value, self._blocks(m.content))
        return formatted

    def format_tools(self, tools: list[dict]) -> list[dict]:
        return [
            {
                "name": t["name"],
                "description": t.get("description", ""),
                "input_schema": t.get("parameters")
                or {"type": "object", "properties": {}},
            }
            for t in tools
        ]

    async def stream(
        self,
        model: str,
        system_prompt: str | None,
        messages: list[Message],
        tools: list[dict] | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> AsyncIterator[StreamChunk]:
        if system_prompt is None:
            system_prompt = next(
                (m.text for m in messages if m.role is MessageRole.SYSTEM),
                None,
            )
        kwargs: dict[str, Any] = dict(
            model=model,
            messages=self.format_messages(messages),
            max_tokens=max_tokens,
            temperature=temperature,
            stream=True,
        )
        if system_prompt:
            kwargs["system"] = system_prompt
        if tools:
            kwargs["tools"] = self.format_tools(tools)

        async with completion_span(self.vendor, model) as span:
            try:
                response = await self.client.messages.create(**kwargs)
            except anthropic.APIError as e:
                record_error(span, e)
                raise self._wrap(e) from e

            try:
                async for chunk in self._translate(response):
                    if isinstance(chunk, StreamStop):
                        record_stop(span, chunk.reason)
                    yield chunk
            except anthropic.APIError as e:
                record_error(span, e)
                raise self._wrap(e) from e
            finally:
                await _release(response)

    def _wrap(self, e: Exception) -> ProviderError:
        logger.error(f"{self.vendor} request failed: {e}")
        return ProviderError(
            f"{self.vendor} request failed: {e}",
            vendor=self.vendor,
            status_code=getattr(e, "status_code", None),
        )

    async def _translate(self, response) -> AsyncIterator[StreamChunk]:
        async for event in response:
            if event.type == "content_block_start":
                block = event.content_block
                if block.type == "tool_use":
                    yield ToolCallStart(
                        id=block.id, index=event.index, name=block.name,
                    )
                    if getattr(block, "input", None):
                        yield ToolCallParametersComplete(
                            index=event.index, parameters=dict(block.input),
                        )
                elif block.type == "text" and getattr(block, "text", ""):
                    yield TextDelta(text=block.text)

            elif event.type == "content_block_delta":
                delta = event.delta
                if delta.type == "text_delta":
                    yield TextDelta(text=delta.text)
                elif delta.type == "input_json_delta":
                    if delta.partial_json:
                        yield ToolCallArgumentFragment(
                            index=event.index, partial_json=delta.partial_json,
                        )

            elif event.type == "message_delta":
                stop_reason = getattr(event.delta, "stop_reason", None)
                if stop_reason:
                    yield StreamStop(reason=_ANTHROPIC_STOP_REASONS.get(
                        stop_reason, StopReason.END,
                    ))
                    return
