"""End-to-end orchestration runs against scripted provider streams."""

import json

import pytest

from toolrelay.errors import ProviderError
from toolrelay.events import (
    DoneEvent,
    ErrorEvent,
    TokenEvent,
    ToolResultEvent,
    ToolUseEvent,
)
from toolrelay.message import (
    Conversation,
    Message,
    MessageRole,
    ToolCallRequestMessage,
    ToolCallResultMessage,
)
from toolrelay.orchestrator import Orchestrator, OrchestratorState
from toolrelay.streaming import (
    StopReason,
    StreamStop,
    TextDelta,
    ToolCallArgumentFragment,
    ToolCallParametersComplete,
    ToolCallStart,
)
from toolrelay.tools import ToolDispatcher

from tests.conftest import text_script, tool_script


def _types(events):
    return [e.type for e in events]


@pytest.fixture
def orchestrator(mock_provider, dispatcher):
    return Orchestrator(provider=mock_provider, dispatcher=dispatcher)


# ---------------------------------------------------------------------------
# Plain text
# ---------------------------------------------------------------------------

class TestTextOnly:
    @pytest.mark.asyncio
    async def test_tokens_then_done(self, orchestrator, mock_provider, base_conversation):
        mock_provider.scripts = [text_script("The page ", "shows tickets.")]

        result = await orchestrator.run(base_conversation)

        assert _types(result.events) == ["token", "token", "done"]
        assert result.final_text == "The page shows tickets."
        last = result.conversation[-1]
        assert last.role is MessageRole.ASSISTANT
        assert last.content == "The page shows tickets."
        assert len(result.conversation) == 3
        assert result.transitions == [
            OrchestratorState.INIT,
            OrchestratorState.READING_STREAM,
            OrchestratorState.DONE,
        ]

    @pytest.mark.asyncio
    async def test_system_prompt_passed_separately(
        self, orchestrator, mock_provider, base_conversation,
    ):
        mock_provider.scripts = [text_script("ok")]

        await orchestrator.run(base_conversation)

        call = mock_provider.call_log[0]
        assert call["system_prompt"] == "You are an assistant"
        assert [m.role for m in call["messages"]] == [MessageRole.USER]
        assert call["model"] == "mock-model"
        assert [t["name"] for t in call["tools"]] == ["echo", "get_ui_state", "explode"]

    @pytest.mark.asyncio
    async def test_default_system_prompt(self, mock_provider, dispatcher):
        orchestrator = Orchestrator(
            mock_provider, dispatcher, system_prompt="Default prompt",
        )
        mock_provider.scripts = [text_script("ok")]

        await orchestrator.run([{"role": "user", "content": "hi"}])

        assert mock_provider.call_log[0]["system_prompt"] == "Default prompt"

    @pytest.mark.asyncio
    async def test_empty_answer_still_recorded(
        self, orchestrator, mock_provider, base_conversation,
    ):
        mock_provider.scripts = [[StreamStop(reason=StopReason.END)]]

        result = await orchestrator.run(base_conversation)

        assert _types(result.events) == ["done"]
        assert result.conversation[-1].content == ""

    @pytest.mark.asyncio
    async def test_caller_conversation_not_mutated(
        self, orchestrator, mock_provider,
    ):
        conversation = Conversation(messages=[
            Message(role=MessageRole.USER, content="hi"),
        ])
        mock_provider.scripts = [text_script("hello")]

        result = await orchestrator.run(conversation)

        assert len(conversation) == 1
        assert len(result.conversation) == 2

    @pytest.mark.asyncio
    async def test_model_override(self, orchestrator, mock_provider, base_conversation):
        mock_provider.scripts = [text_script("ok")]
        await orchestrator.run(base_conversation, model="bigger-model")
        assert mock_provider.call_log[0]["model"] == "bigger-model"


# ---------------------------------------------------------------------------
# Tool rounds
# ---------------------------------------------------------------------------

class TestToolRound:
    @pytest.mark.asyncio
    async def test_ui_state_round_trip(
        self, orchestrator, mock_provider, base_conversation,
    ):
        mock_provider.scripts = [
            tool_script("get_ui_state", call_id="t1"),
            text_script("You are on the tickets page."),
        ]

        result = await orchestrator.run(base_conversation)

        assert _types(result.events) == ["tool_use", "tool_result", "token", "done"]
        use = result.events[0]
        assert isinstance(use, ToolUseEvent)
        assert json.loads(use.data) == {
            "id": "t1", "name": "get_ui_state", "status": "executing", "input": {},
        }
        tool_result = result.events[1]
        assert isinstance(tool_result, ToolResultEvent)
        assert tool_result.tool_call_id == "t1"
        assert json.loads(tool_result.content) == {"page": "tickets", "elements": 3}

        # Second stream sees user, request and result plus the system prompt.
        reopened = mock_provider.call_log[1]
        assert reopened["system_prompt"] == "You are an assistant"
        assert len(reopened["messages"]) == 3
        assert isinstance(reopened["messages"][1], ToolCallRequestMessage)
        assert isinstance(reopened["messages"][2], ToolCallResultMessage)
        assert reopened["messages"][2].tool_call_id == "t1"

        assert result.transitions == [
            OrchestratorState.INIT,
            OrchestratorState.READING_STREAM,
            OrchestratorState.TOOL_REQUESTED,
            OrchestratorState.TOOL_EXECUTING,
            OrchestratorState.READING_STREAM,
            OrchestratorState.DONE,
        ]

    @pytest.mark.asyncio
    async def test_each_round_adds_two_messages(
        self, orchestrator, mock_provider, base_conversation,
    ):
        mock_provider.scripts = [
            tool_script("echo", {"text": "one"}, call_id="a"),
            tool_script("echo", {"text": "two"}, call_id="b"),
            text_script("done"),
        ]

        result = await orchestrator.run(base_conversation)

        # system, user, 2 x (request, result), final answer
        assert len(result.conversation) == 2 + 4 + 1
        assert mock_provider.opened == 3
        assert [len(c["messages"]) for c in mock_provider.call_log] == [1, 3, 5]

    @pytest.mark.asyncio
    async def test_fragmented_arguments_reassembled(
        self, orchestrator, mock_provider, base_conversation,
    ):
        args = {"text": "a fairly long sentence split in pieces"}
        mock_provider.scripts = [
            tool_script("echo", args, call_id="c1"),
            text_script("ok"),
        ]

        result = await orchestrator.run(base_conversation)

        request = result.conversation[2]
        assert request.tool_call.input == args
        assert result.events[1].content == args["text"]

    @pytest.mark.asyncio
    async def test_preamble_text_kept_on_request(
        self, orchestrator, mock_provider, base_conversation,
    ):
        mock_provider.scripts = [
            tool_script("get_ui_state", call_id="t1", preamble="Let me check. "),
            text_script("Done."),
        ]

        result = await orchestrator.run(base_conversation)

        assert _types(result.events)[0] == "token"
        assert result.conversation[2].content == "Let me check. "
        assert result.final_text == "Done."

    @pytest.mark.asyncio
    async def test_parallel_calls_run_in_arrival_order(
        self, orchestrator, mock_provider, base_conversation,
    ):
        mock_provider.scripts = [
            [
                ToolCallStart(id="a", index=0, name="echo"),
                ToolCallStart(id="b", index=1, name="get_ui_state"),
                ToolCallArgumentFragment(index=0, partial_json='{"text": '),
                ToolCallArgumentFragment(index=0, partial_json='"x"}'),
                StreamStop(reason=StopReason.TOOL_USE),
            ],
            text_script("ok"),
        ]

        result = await orchestrator.run(base_conversation)

        results = [e for e in result.events if isinstance(e, ToolResultEvent)]
        assert [r.tool_call_id for r in results] == ["a", "b"]
        assert [type(m) for m in result.conversation[2:6]] == [
            ToolCallRequestMessage, ToolCallResultMessage,
            ToolCallRequestMessage, ToolCallResultMessage,
        ]

    @pytest.mark.asyncio
    async def test_parameters_complete_chunk(
        self, orchestrator, mock_provider, base_conversation,
    ):
        mock_provider.scripts = [
            [
                ToolCallStart(id="a", index=0, name="echo"),
                ToolCallParametersComplete(index=0, parameters={"text": "hi"}),
                StreamStop(reason=StopReason.TOOL_USE),
            ],
            text_script("ok"),
        ]

        result = await orchestrator.run(base_conversation)

        assert result.events[1].content == "hi"

    @pytest.mark.asyncio
    async def test_parameterless_tool_ignores_argument_text(
        self, orchestrator, mock_provider, base_conversation,
    ):
        mock_provider.scripts = [
            tool_script("get_ui_state", call_id="t1", fragments=["{oops"]),
            text_script("ok"),
        ]

        result = await orchestrator.run(base_conversation)

        assert not result.errors
        assert result.conversation[2].tool_call.input == {}

    @pytest.mark.asyncio
    async def test_tool_failure_fed_back_and_run_completes(
        self, orchestrator, mock_provider, base_conversation,
    ):
        mock_provider.scripts = [
            tool_script("explode", call_id="x1"),
            text_script("Sorry, that failed."),
        ]

        result = await orchestrator.run(base_conversation)

        assert _types(result.events)[-1] == "done"
        assert result.events[1].content == "Failed to execute explode: boom"
        assert result.conversation[3].content == "Failed to execute explode: boom"
        assert not result.errors

    @pytest.mark.asyncio
    async def test_unknown_tool_fed_back(
        self, orchestrator, mock_provider, base_conversation,
    ):
        mock_provider.scripts = [
            tool_script("teleport", {"to": "mars"}, call_id="x1"),
            text_script("I can't do that."),
        ]

        result = await orchestrator.run(base_conversation)

        assert result.events[1].content.startswith("Failed to execute teleport:")
        assert result.final_text == "I can't do that."

    @pytest.mark.asyncio
    async def test_result_truncated(self, mock_provider, base_conversation):
        dispatcher = ToolDispatcher(
            tools=[_big_tool()], max_result_chars=100,
        )
        orchestrator = Orchestrator(mock_provider, dispatcher)
        mock_provider.scripts = [
            tool_script("dump", call_id="d1"),
            text_script("ok"),
        ]

        result = await orchestrator.run(base_conversation)

        content = result.conversation[3].content
        assert content.startswith("y" * 100)
        assert "total length: 500 characters" in content

    @pytest.mark.asyncio
    async def test_duplicate_call_ids_renamed(
        self, orchestrator, mock_provider, base_conversation,
    ):
        mock_provider.scripts = [
            tool_script("get_ui_state", call_id="call_0"),
            tool_script("get_ui_state", call_id="call_0"),
            text_script("ok"),
        ]

        result = await orchestrator.run(base_conversation)

        ids = [e.tool_call_id for e in result.events if isinstance(e, ToolResultEvent)]
        assert ids[0] == "call_0"
        assert ids[1] != "call_0"
        assert ids[1].startswith("call_0_")

    @pytest.mark.asyncio
    async def test_mirror_argument_fragments(
        self, mock_provider, dispatcher, base_conversation,
    ):
        orchestrator = Orchestrator(
            mock_provider, dispatcher, mirror_argument_fragments=True,
        )
        mock_provider.scripts = [
            tool_script("echo", call_id="c1", fragments=['{"text":', ' "x"}']),
            text_script("ok"),
        ]

        result = await orchestrator.run(base_conversation)

        tokens = [e.text for e in result.events if isinstance(e, TokenEvent)]
        assert tokens == ['{"text":', ' "x"}', "ok"]
        assert result.final_text == "ok"


def _big_tool():
    from toolrelay.tools import tool

    @tool
    def dump():
        """Dump everything."""
        return "y" * 500

    return dump


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

class TestFailures:
    @pytest.mark.asyncio
    async def test_malformed_arguments_emit_parse_error(
        self, orchestrator, mock_provider, base_conversation,
    ):
        mock_provider.scripts = [
            tool_script("echo", call_id="c1", fragments=['{"text": ']),
        ]

        result = await orchestrator.run(base_conversation)

        assert _types(result.events) == ["error", "done"]
        assert result.errors[0].kind == "parse"
        assert mock_provider.opened == 1

    @pytest.mark.asyncio
    async def test_malformed_call_does_not_block_valid_one(
        self, orchestrator, mock_provider, base_conversation,
    ):
        mock_provider.scripts = [
            [
                ToolCallStart(id="bad", index=0, name="echo"),
                ToolCallArgumentFragment(index=0, partial_json="{nope"),
                ToolCallStart(id="good", index=1, name="echo"),
                ToolCallArgumentFragment(index=1, partial_json='{"text": "ok"}'),
                StreamStop(reason=StopReason.TOOL_USE),
            ],
            text_script("fine"),
        ]

        result = await orchestrator.run(base_conversation)

        assert _types(result.events) == [
            "error", "tool_use", "tool_result", "token", "done",
        ]
        assert result.events[2].tool_call_id == "good"

    @pytest.mark.asyncio
    async def test_fragment_for_unknown_call(
        self, orchestrator, mock_provider, base_conversation,
    ):
        mock_provider.scripts = [[
            ToolCallArgumentFragment(index=3, partial_json="{}"),
            TextDelta(text="hi"),
            StreamStop(reason=StopReason.END),
        ]]

        result = await orchestrator.run(base_conversation)

        assert _types(result.events) == ["error", "token", "done"]
        assert result.final_text == "hi"

    @pytest.mark.asyncio
    async def test_provider_error_mid_stream(
        self, orchestrator, mock_provider, base_conversation,
    ):
        mock_provider.scripts = [[
            TextDelta(text="partial"),
            ProviderError("connection reset", vendor="mock"),
        ]]

        result = await orchestrator.run(base_conversation)

        assert _types(result.events) == ["token", "error", "done"]
        assert result.errors[0].kind == "transport"
        assert result.errors[0].message == "connection reset"
        assert result.transitions[-1] is OrchestratorState.DONE
        assert mock_provider.closed == 1

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_transport_error(
        self, orchestrator, mock_provider, base_conversation,
    ):
        mock_provider.scripts = [[RuntimeError("socket closed")]]

        result = await orchestrator.run(base_conversation)

        assert _types(result.events) == ["error", "done"]
        assert result.errors[0].kind == "transport"

    @pytest.mark.asyncio
    async def test_max_tokens_stop_drops_unfinished_calls(
        self, orchestrator, mock_provider, base_conversation,
    ):
        mock_provider.scripts = [[
            TextDelta(text="Calling"),
            ToolCallStart(id="c1", index=0, name="echo"),
            ToolCallArgumentFragment(index=0, partial_json='{"te'),
            StreamStop(reason=StopReason.MAX_TOKENS),
        ]]

        result = await orchestrator.run(base_conversation)

        assert _types(result.events) == ["token", "done"]
        assert result.final_text == "Calling"
        assert mock_provider.opened == 1

    @pytest.mark.asyncio
    async def test_max_turns(self, mock_provider, dispatcher, base_conversation):
        orchestrator = Orchestrator(mock_provider, dispatcher, max_turns=2)
        mock_provider.scripts = [
            tool_script("get_ui_state", call_id="a"),
            tool_script("get_ui_state", call_id="b"),
            text_script("never reached"),
        ]

        result = await orchestrator.run(base_conversation)

        assert mock_provider.opened == 2
        assert _types(result.events)[-2:] == ["error", "done"]
        assert "Maximum turns" in result.errors[0].message
        assert result.errors[0].kind == "execution"

    @pytest.mark.asyncio
    async def test_exactly_one_done(self, orchestrator, mock_provider, base_conversation):
        mock_provider.scripts = [
            tool_script("explode", call_id="a"),
            [ProviderError("gone")],
        ]

        result = await orchestrator.run(base_conversation)

        assert sum(isinstance(e, DoneEvent) for e in result.events) == 1
        assert isinstance(result.events[-1], DoneEvent)
        assert any(isinstance(e, ErrorEvent) for e in result.events)


# ---------------------------------------------------------------------------
# Resource release
# ---------------------------------------------------------------------------

class TestStreamLifecycle:
    @pytest.mark.asyncio
    async def test_each_stream_closed_before_next_opens(
        self, mock_provider, dispatcher, base_conversation,
    ):
        seen = []

        class Recording(type(mock_provider)):
            def stream(self, *args, **kwargs):
                seen.append((self.opened, self.closed))
                return super().stream(*args, **kwargs)

        provider = Recording()
        provider.scripts = [
            tool_script("get_ui_state", call_id="a"),
            text_script("ok"),
        ]

        await Orchestrator(provider, dispatcher).run(base_conversation)

        assert seen == [(0, 0), (1, 1)]
        assert provider.closed == provider.opened == 2

    @pytest.mark.asyncio
    async def test_aclose_releases_provider_stream(
        self, orchestrator, mock_provider, base_conversation,
    ):
        mock_provider.scripts = [text_script("a", "b", "c")]

        events = orchestrator.iter(base_conversation)
        first = await events.__anext__()
        await events.aclose()

        assert isinstance(first, TokenEvent)
        assert mock_provider.opened == 1
        assert mock_provider.closed == 1

    @pytest.mark.asyncio
    async def test_trailing_chunks_after_stop_ignored(
        self, orchestrator, mock_provider, base_conversation,
    ):
        mock_provider.scripts = [[
            TextDelta(text="done"),
            StreamStop(reason=StopReason.END),
            TextDelta(text="ignored"),
        ]]

        result = await orchestrator.run(base_conversation)

        assert result.final_text == "done"
        assert mock_provider.closed == 1


# ---------------------------------------------------------------------------
# Tracing
# ---------------------------------------------------------------------------

class TestTurnSpans:
    @pytest.mark.asyncio
    async def test_turn_span_covers_stream_and_tools(
        self, orchestrator, mock_provider, base_conversation, recording_tracer,
    ):
        mock_provider.scripts = [
            tool_script("echo", {"text": "hi"}),
            text_script("done"),
        ]

        await orchestrator.run(base_conversation)

        assert recording_tracer.log == [
            "enter orchestrate_turn mock-model",
            "enter execute_tool echo",
            "exit execute_tool echo",
            "exit orchestrate_turn mock-model",
            "enter orchestrate_turn mock-model",
            "exit orchestrate_turn mock-model",
        ]
        assert recording_tracer.attributes("orchestrate_turn") == [
            {"toolrelay.stop_reason": "toolUse", "toolrelay.tool_calls": 1},
            {"toolrelay.stop_reason": "end", "toolrelay.tool_calls": 0},
        ]

    @pytest.mark.asyncio
    async def test_stream_failure_recorded_on_turn_span(
        self, orchestrator, mock_provider, base_conversation, recording_tracer,
    ):
        mock_provider.scripts = [[
            TextDelta(text="a"),
            ProviderError("connection reset", vendor="mock"),
        ]]

        await orchestrator.run(base_conversation)

        (name, span), = recording_tracer.spans
        assert name == "orchestrate_turn mock-model"
        span.record_exception.assert_called_once()
        assert recording_tracer.log[-1] == "exit orchestrate_turn mock-model"
