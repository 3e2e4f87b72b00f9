import logging
import uuid
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass, field
from enum import Enum

from toolrelay.errors import ErrorKind, ToolArgumentsError, ToolRelayError
from toolrelay.events import (
    DoneEvent,
    ErrorEvent,
    StreamEvent,
    TokenEvent,
    ToolResultEvent,
    ToolUseEvent,
)
from toolrelay.instrumentation import (
    record_error,
    record_turn,
    tool_span,
    turn_span,
)
from toolrelay.message import (
    Conversation,
    Message,
    MessageRole,
    ToolCallRequest,
    ToolCallRequestMessage,
    ToolCallResultMessage,
)
from toolrelay.provider import ModelProvider
from toolrelay.streaming import (
    InvocationStatus,
    StopReason,
    StreamChunk,
    StreamStop,
    TextDelta,
    ToolCallAccumulator,
    ToolCallArgumentFragment,
    ToolCallParametersComplete,
    ToolCallStart,
    ToolInvocation,
)
from toolrelay.tools import ToolDispatcher

logger = logging.getLogger(__name__)


class OrchestratorState(Enum):
    INIT = "init"
    READING_STREAM = "reading_stream"
    TOOL_REQUESTED = "tool_requested"
    TOOL_EXECUTING = "tool_executing"
    DONE = "done"


@dataclass
class OrchestrationRun:
    """Mutable bookkeeping for one request.  Never shared across runs."""

    conversation: Conversation
    model: str
    system_prompt: str | None
    state: OrchestratorState = OrchestratorState.INIT
    transitions: list[OrchestratorState] = field(
        default_factory=lambda: [OrchestratorState.INIT]
    )
    turns: int = 0
    executed_ids: set[str] = field(default_factory=set)
    final_text: str = ""

    def transition(self, state: OrchestratorState) -> None:
        logger.debug(f"{self.state.value} -> {state.value}")
        self.state = state
        self.transitions.append(state)


@dataclass
class _Turn:
    """State for one provider stream."""

    text: list[str] = field(default_factory=list)
    calls: ToolCallAccumulator = field(default_factory=ToolCallAccumulator)
    stop: StopReason | None = None


@dataclass
class OrchestrationResult:
    """The result of a single Orchestrator.run() invocation."""

    conversation: Conversation
    final_text: str
    events: list[StreamEvent]
    transitions: list[OrchestratorState]

    @property
    def errors(self) -> list[ErrorEvent]:
        return [e for e in self.events if isinstance(e, ErrorEvent)]


class Orchestrator:
    """Drives a streaming tool-calling conversation to a final answer.

    Opens a provider stream, forwards text as ``token`` events, collects
    tool invocations until the provider signals a tool-use stop, runs
    each invocation through the dispatcher, appends the request and the
    result to the conversation, and opens a fresh stream.  Repeats until
    the provider stops for any other reason.  Every run ends with
    exactly one ``done`` event.

    ``run()`` drains ``iter()``.  ``iter()`` is the streaming entry point.

    Args:
        provider: Adapter for the upstream vendor.
        dispatcher: Executes tools and bounds their output.
        model: Default model for runs that do not name one.
        system_prompt: Used when the conversation has no system message.
        max_tokens: Completion limit per provider turn.
        temperature: Sampling temperature.
        max_turns: Optional cap on provider round-trips.  ``None`` leaves
            the loop unbounded.
        mirror_argument_fragments: Also emit raw tool-argument text as
            ``token`` events.
    """

    def __init__(
        self,
        provider: ModelProvider,
        dispatcher: ToolDispatcher,
        model: str | None = None,
        system_prompt: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        max_turns: int | None = None,
        mirror_argument_fragments: bool = False,
    ):
        self.provider = provider
        self.dispatcher = dispatcher
        self.model = model or provider.default_model
        self.system_prompt = system_prompt
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.max_turns = max_turns
        self.mirror_argument_fragments = mirror_argument_fragments

    async def run(
        self, conversation: Conversation | list, model: str | None = None,
    ) -> OrchestrationResult:
        """Run to completion and collect every emitted event."""
        run = self._start(conversation, model)
        events = [e async for e in self._iter(run)]
        return OrchestrationResult(
            conversation=run.conversation,
            final_text=run.final_text,
            events=events,
            transitions=list(run.transitions),
        )

    def iter(
        self, conversation: Conversation | list, model: str | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield outward events as the run proceeds.

        Closing the returned iterator early releases the provider stream.
        """
        return self._iter(self._start(conversation, model))

    def _start(self, conversation, model: str | None) -> OrchestrationRun:
        if isinstance(conversation, Conversation):
            owned = Conversation(messages=list(conversation.messages))
        elif conversation and isinstance(conversation[0], Message):
            owned = Conversation(messages=list(conversation))
        else:
            owned = Conversation.from_dicts(list(conversation))
        return OrchestrationRun(
            conversation=owned,
            model=model or self.model,
            system_prompt=owned.system_prompt or self.system_prompt,
        )

    async def _iter(self, run: OrchestrationRun) -> AsyncIterator[StreamEvent]:
        tools = self.dispatcher.schemas() or None
        stream = None
        try:
            while run.state is not OrchestratorState.DONE:
                if self.max_turns is not None and run.turns >= self.max_turns:
                    logger.warning(f"Maximum turns ({self.max_turns}) reached")
                    yield _error(
                        f"Maximum turns ({self.max_turns}) reached",
                        ErrorKind.EXECUTION,
                    )
                    break

                run.turns += 1
                with turn_span(run.model, run.turns) as span:
                    try:
                        stream = self._open(run, tools)
                    except Exception as e:
                        logger.error(f"Could not open provider stream: {e}")
                        record_error(span, e)
                        yield _error(str(e), _kind_of(e))
                        break
                    run.transition(OrchestratorState.READING_STREAM)

                    turn = _Turn()
                    try:
                        async for chunk in stream:
                            for event in self._on_chunk(turn, chunk):
                                yield event
                            if turn.stop is not None:
                                break
                    except Exception as e:
                        logger.error(f"Provider stream failed: {e}")
                        record_error(span, e)
                        yield _error(str(e), _kind_of(e))
                        break
                    finally:
                        await _close(stream)
                        stream = None

                    ready: list[ToolInvocation] = []
                    if turn.stop is StopReason.TOOL_USE:
                        ready, failed = turn.calls.finalize()
                        for invocation, error in failed:
                            logger.warning(
                                f"Dropping tool call {invocation.id}: {error}"
                            )
                            yield _error(str(error), ErrorKind.PARSE)
                    elif turn.calls:
                        logger.warning(
                            f"Stream ended ({turn.stop}) with "
                            f"{len(turn.calls)} unfinished tool call(s); dropping"
                        )
                    record_turn(span, turn.stop, len(ready))

                    if not ready:
                        self._finish(run, turn)
                        break

                    text = "".join(turn.text)
                    for invocation in ready:
                        async for event in self._execute(run, invocation, text):
                            yield event
                        text = ""
        finally:
            if stream is not None:
                await _close(stream)

        if run.state is not OrchestratorState.DONE:
            run.transition(OrchestratorState.DONE)
        yield DoneEvent()

    def _open(self, run: OrchestrationRun, tools: list[dict] | None):
        logger.debug(
            f"Opening stream {run.turns} with "
            f"{len(run.conversation)} messages"
        )
        return self.provider.stream(
            model=run.model,
            system_prompt=run.system_prompt,
            messages=run.conversation.without_system(),
            tools=tools,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )

    def _on_chunk(
        self, turn: _Turn, chunk: StreamChunk,
    ) -> Iterator[StreamEvent]:
        if isinstance(chunk, TextDelta):
            if chunk.text:
                turn.text.append(chunk.text)
                yield TokenEvent(text=chunk.text)
        elif isinstance(chunk, ToolCallStart):
            turn.calls.start(chunk)
            if not self.dispatcher.has_parameters(chunk.name):
                turn.calls.mark_ready(chunk.index)
        elif isinstance(chunk, ToolCallArgumentFragment):
            try:
                turn.calls.feed(chunk)
            except ToolArgumentsError as e:
                logger.warning(str(e))
                yield _error(str(e), ErrorKind.PARSE)
                return
            if self.mirror_argument_fragments:
                yield TokenEvent(text=chunk.partial_json)
        elif isinstance(chunk, ToolCallParametersComplete):
            try:
                turn.calls.set_parameters(chunk)
            except ToolArgumentsError as e:
                logger.warning(str(e))
                yield _error(str(e), ErrorKind.PARSE)
        elif isinstance(chunk, StreamStop):
            turn.stop = chunk.reason

    async def _execute(
        self, run: OrchestrationRun, invocation: ToolInvocation, text: str,
    ) -> AsyncIterator[StreamEvent]:
        if invocation.id in run.executed_ids:
            fresh = f"{invocation.id}_{uuid.uuid4().hex[:8]}"
            logger.warning(
                f"Tool call id {invocation.id} already used; renaming to {fresh}"
            )
            invocation.id = fresh

        run.transition(OrchestratorState.TOOL_REQUESTED)
        run.conversation.append(ToolCallRequestMessage(
            role=MessageRole.ASSISTANT,
            content=text,
            tool_call=ToolCallRequest(
                id=invocation.id, name=invocation.name, input=invocation.input,
            ),
        ))

        run.transition(OrchestratorState.TOOL_EXECUTING)
        invocation.status = InvocationStatus.EXECUTING
        run.executed_ids.add(invocation.id)
        yield ToolUseEvent(invocation=invocation.snapshot())

        logger.info(f"Executing tool call {invocation.id} ({invocation.name})")
        async with tool_span(invocation.name, invocation.id):
            try:
                output = await self.dispatcher.run(invocation.name, invocation.input)
            except Exception as e:
                logger.error(f"Dispatcher raised for {invocation.name}: {e}")
                output = f"Failed to execute {invocation.name}: {e}"

        run.conversation.append(ToolCallResultMessage(
            role=MessageRole.TOOL,
            content=output,
            tool_call_id=invocation.id,
            name=invocation.name,
        ))
        invocation.status = InvocationStatus.COMPLETE
        yield ToolResultEvent(
            tool_call_id=invocation.id, name=invocation.name, content=output,
        )

    def _finish(self, run: OrchestrationRun, turn: _Turn) -> None:
        run.final_text = "".join(turn.text)
        run.conversation.append(Message(
            role=MessageRole.ASSISTANT, content=run.final_text,
        ))
        run.transition(OrchestratorState.DONE)


def _error(message: str, kind: ErrorKind) -> ErrorEvent:
    return ErrorEvent(message=message, kind=kind.value)


def _kind_of(e: Exception) -> ErrorKind:
    if isinstance(e, ToolRelayError):
        return e.kind
    return ErrorKind.TRANSPORT


async def _close(stream) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()
