"""Tests for the exchange orchestrator.

A scripted LLM replays canned stream rounds; tools are AsyncMock handlers in
a real ToolRegistry. No network, no database.
"""

import asyncio
import itertools
from unittest.mock import AsyncMock

import pytest

from concierge.api.llm import LlmError, StreamEvent
from concierge.api.models import DONE, ERROR, ExchangeRequest, ToolCall
from concierge.api.pricing import calculate_cost
from concierge.api.runner import CONFIRMATION_PENDING_MESSAGE, AgentRunner
from concierge.api.tools import ToolDefinition, ToolError, ToolRegistry
from concierge.config import Settings
from tests.fakes import ScriptedLlm, text_round, tool_round

MODEL = "claude-sonnet-4-5-20250929"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class ListSink:
    def __init__(self) -> None:
        self.events = []

    async def emit(self, event) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[str]:
        return [e.type for e in self.events]


def _definition(name: str, handler, is_write: bool = False) -> ToolDefinition:
    return ToolDefinition(
        name=name,
        description=name,
        input_schema={"type": "object", "properties": {}},
        handler=handler,
        is_write=is_write,
        category="calendar",
    )


@pytest.fixture
def handlers() -> dict[str, AsyncMock]:
    return {
        "list_events": AsyncMock(return_value=[{"title": "Standup", "date": "2025-01-06T09:00:00+00:00"}]),
        "failing_read": AsyncMock(side_effect=ToolError("Calendar event not found")),
        "delete_event": AsyncMock(return_value={"success": True}),
        "create_event": AsyncMock(return_value={"id": "e9"}),
    }


@pytest.fixture
def registry(handlers) -> ToolRegistry:
    return ToolRegistry([
        _definition("list_events", handlers["list_events"]),
        _definition("failing_read", handlers["failing_read"]),
        _definition("delete_event", handlers["delete_event"], is_write=True),
        _definition("create_event", handlers["create_event"], is_write=True),
    ])


def _runner(llm, registry, max_iterations: int = 15) -> AgentRunner:
    return AgentRunner(llm, registry, Settings(_env_file=None, max_iterations=max_iterations))


def _request(message="what's on my calendar today", confirmed=None, tools=None) -> ExchangeRequest:
    return ExchangeRequest(
        system="You are a test assistant.",
        messages=[{"role": "user", "content": message}],
        model=MODEL,
        tools=tools,
        confirmed_actions=confirmed or [],
    )


async def _run(runner: AgentRunner, request: ExchangeRequest):
    sink = ListSink()
    result = await runner.run_exchange(request, sink)
    return sink, result


# ---------------------------------------------------------------------------
# Plain text exchanges
# ---------------------------------------------------------------------------


class TestTextExchange:
    @pytest.mark.asyncio
    async def test_single_round(self, registry):
        llm = ScriptedLlm([text_round("Hello there", input_tokens=12, output_tokens=4)])
        sink, result = await _run(_runner(llm, registry), _request("hi"))

        assert sink.types == ["delta", "done"]
        assert sink.events[0].text == "Hello there"
        usage = sink.events[-1].usage
        assert (usage.input_tokens, usage.output_tokens, usage.iterations) == (12, 4, 1)
        assert usage.cost_usd == calculate_cost(MODEL, 12, 4)
        assert result.text == "Hello there"
        assert result.pending_actions == []

    @pytest.mark.asyncio
    async def test_payload_carries_system_and_tools(self, registry):
        llm = ScriptedLlm([text_round("ok")])
        tools = registry.get_tool_schemas()
        await _run(_runner(llm, registry), _request("hi", tools=tools))

        payload = llm.payloads[0]
        assert payload["model"] == MODEL
        assert payload["stream"] is True
        assert payload["system"][0]["text"] == "You are a test assistant."
        assert payload["tools"] == tools
        assert payload["messages"] == [{"role": "user", "content": "hi"}]
        assert payload["max_tokens"] == 64000

    @pytest.mark.asyncio
    async def test_no_tools_key_when_disabled(self, registry):
        llm = ScriptedLlm([text_round("ok")])
        await _run(_runner(llm, registry), _request("hi"))
        assert "tools" not in llm.payloads[0]

    @pytest.mark.asyncio
    async def test_request_messages_not_mutated(self, registry):
        llm = ScriptedLlm([tool_round([("t1", "list_events", {})]), text_round("ok")])
        request = _request()
        await _run(_runner(llm, registry), request)
        assert request.messages == [{"role": "user", "content": "what's on my calendar today"}]


# ---------------------------------------------------------------------------
# Tool dispatch
# ---------------------------------------------------------------------------


class TestReadTools:
    @pytest.mark.asyncio
    async def test_calendar_scenario(self, registry, handlers):
        """Read tool runs immediately and the model continues with its result."""
        llm = ScriptedLlm([
            tool_round([("t1", "list_events", {"date": "2025-01-06"})]),
            text_round("You have standup at 9."),
        ])
        sink, result = await _run(_runner(llm, registry), _request())

        assert sink.types == ["tool_call", "tool_result", "delta", "done"]
        call, tool_result = sink.events[0], sink.events[1]
        assert (call.tool_id, call.tool_name, call.input) == ("t1", "list_events", {"date": "2025-01-06"})
        assert tool_result.tool_id == "t1"
        assert tool_result.is_error is False
        assert "Standup" in tool_result.result
        handlers["list_events"].assert_awaited_once_with({"date": "2025-01-06"})
        assert "tool_confirmation_required" not in sink.types
        assert result.text == "You have standup at 9."

    @pytest.mark.asyncio
    async def test_history_fed_back_to_model(self, registry):
        llm = ScriptedLlm([tool_round([("t1", "list_events", {})]), text_round("ok")])
        await _run(_runner(llm, registry), _request())

        messages = llm.payloads[1]["messages"]
        assert [m["role"] for m in messages] == ["user", "assistant", "user"]
        assert messages[1]["content"][0]["type"] == "tool_use"
        result_block = messages[2]["content"][0]
        assert result_block["type"] == "tool_result"
        assert result_block["tool_use_id"] == "t1"
        assert "is_error" not in result_block

    @pytest.mark.asyncio
    async def test_string_results_passed_through(self, registry, handlers):
        handlers["list_events"].return_value = "No events."
        llm = ScriptedLlm([tool_round([("t1", "list_events", {})]), text_round("ok")])
        sink, _ = await _run(_runner(llm, registry), _request())
        assert sink.events[1].result == "No events."

    @pytest.mark.asyncio
    async def test_tool_error_fed_back_not_fatal(self, registry):
        llm = ScriptedLlm([tool_round([("t1", "failing_read", {})]), text_round("Sorry, not found.")])
        sink, result = await _run(_runner(llm, registry), _request())

        assert sink.types == ["tool_call", "tool_result", "delta", "done"]
        assert sink.events[1].is_error is True
        assert sink.events[1].result == "Calendar event not found"
        block = llm.payloads[1]["messages"][2]["content"][0]
        assert block["is_error"] is True
        assert result is not None

    @pytest.mark.asyncio
    async def test_unknown_tool_is_error_result(self, registry):
        llm = ScriptedLlm([tool_round([("t1", "teleport", {})]), text_round("I can't do that.")])
        sink, _ = await _run(_runner(llm, registry), _request())

        assert sink.types == ["tool_call", "tool_result", "delta", "done"]
        assert sink.events[1].is_error is True
        assert sink.events[1].result == 'Error: Tool "teleport" not found.'

    @pytest.mark.asyncio
    async def test_deltas_precede_tool_calls(self, registry):
        llm = ScriptedLlm([
            tool_round([("t1", "list_events", {})], text="Let me check."),
            text_round("Done."),
        ])
        sink, result = await _run(_runner(llm, registry), _request())
        assert sink.types == ["delta", "tool_call", "tool_result", "delta", "done"]
        assert result.text == "Let me check.\n\nDone."


class TestWriteTools:
    @pytest.mark.asyncio
    async def test_delete_scenario_not_executed(self, registry, handlers):
        llm = ScriptedLlm([
            tool_round([("t1", "delete_event", {"id": "e1"})]),
            text_round("I'll delete your 3pm meeting once you confirm."),
        ])
        sink, result = await _run(_runner(llm, registry), _request("delete my 3pm meeting"))

        assert sink.types == ["tool_call", "tool_confirmation_required", "delta", "done"]
        confirmation = sink.events[1]
        assert confirmation.tool_id == "t1"
        assert confirmation.input == {"id": "e1"}
        handlers["delete_event"].assert_not_called()
        assert result.pending_actions == [ToolCall("t1", "delete_event", {"id": "e1"})]

    @pytest.mark.asyncio
    async def test_synthetic_result_sent_to_model(self, registry):
        llm = ScriptedLlm([tool_round([("t1", "delete_event", {"id": "e1"})]), text_round("ok")])
        await _run(_runner(llm, registry), _request("delete it"))

        block = llm.payloads[1]["messages"][2]["content"][0]
        assert block == {"type": "tool_result", "tool_use_id": "t1", "content": CONFIRMATION_PENDING_MESSAGE}

    @pytest.mark.asyncio
    async def test_every_tool_call_answered(self, registry, handlers):
        """Mixed read, write and unknown calls in one round each get one answer."""
        llm = ScriptedLlm([
            tool_round([
                ("t1", "list_events", {}),
                ("t2", "delete_event", {"id": "e1"}),
                ("t3", "teleport", {}),
                ("t4", "create_event", {"title": "Lunch"}),
            ]),
            text_round("ok"),
        ])
        sink, result = await _run(_runner(llm, registry), _request())

        calls = [e for e in sink.events if e.type == "tool_call"]
        answers = [e for e in sink.events if e.type in ("tool_result", "tool_confirmation_required")]
        assert len(calls) == len(answers) == 4
        assert [a.tool_id for a in answers] == ["t1", "t2", "t3", "t4"]

        blocks = llm.payloads[1]["messages"][2]["content"]
        assert [b["tool_use_id"] for b in blocks] == ["t1", "t2", "t3", "t4"]
        handlers["delete_event"].assert_not_called()
        handlers["create_event"].assert_not_called()
        assert [p.tool_id for p in result.pending_actions] == ["t2", "t4"]


# ---------------------------------------------------------------------------
# Confirmed actions
# ---------------------------------------------------------------------------


class TestConfirmedActions:
    @pytest.mark.asyncio
    async def test_confirmed_results_emitted_first(self, registry, handlers):
        llm = ScriptedLlm([text_round("Deleted.")])
        confirmed = [ToolCall("t1", "delete_event", {"id": "e1"})]
        sink, result = await _run(_runner(llm, registry), _request("yes", confirmed=confirmed))

        assert sink.types == ["tool_result", "delta", "done"]
        assert sink.events[0].tool_id == "t1"
        assert sink.events[0].is_error is False
        handlers["delete_event"].assert_awaited_once_with({"id": "e1"})

    @pytest.mark.asyncio
    async def test_summary_spliced_into_user_turn(self, registry):
        llm = ScriptedLlm([text_round("Deleted.")])
        confirmed = [ToolCall("t1", "delete_event", {"id": "e1"})]
        _, result = await _run(_runner(llm, registry), _request("yes please", confirmed=confirmed))

        content = llm.payloads[0]["messages"][-1]["content"]
        assert content.startswith("[The user confirmed these actions; they have been executed]")
        assert "- delete_event (t1) succeeded:" in content
        assert content.endswith("yes please")
        assert result.user_content == content

    @pytest.mark.asyncio
    async def test_block_content_gets_summary_block(self, registry):
        llm = ScriptedLlm([text_round("ok")])
        request = _request(confirmed=[ToolCall("t1", "delete_event", {"id": "e1"})])
        request.messages = [{"role": "user", "content": [{"type": "text", "text": "yes"}]}]
        await _run(_runner(llm, registry), request)

        content = llm.payloads[0]["messages"][-1]["content"]
        assert content[0]["text"].startswith("[The user confirmed")
        assert content[1] == {"type": "text", "text": "yes"}

    @pytest.mark.asyncio
    async def test_failed_confirmed_action_reported(self, registry, handlers):
        handlers["delete_event"].side_effect = ToolError("Calendar event not found")
        llm = ScriptedLlm([text_round("That event no longer exists.")])
        confirmed = [ToolCall("t1", "delete_event", {"id": "e1"})]
        sink, _ = await _run(_runner(llm, registry), _request("yes", confirmed=confirmed))

        assert sink.events[0].is_error is True
        assert "- delete_event (t1) failed: Calendar event not found" in llm.payloads[0]["messages"][-1]["content"]
        assert sink.types[-1] == DONE

    @pytest.mark.asyncio
    async def test_stale_tool_name_is_error(self, registry):
        llm = ScriptedLlm([text_round("ok")])
        confirmed = [ToolCall("t1", "removed_tool", {})]
        sink, _ = await _run(_runner(llm, registry), _request("yes", confirmed=confirmed))
        assert sink.events[0].is_error is True
        assert sink.types[-1] == DONE


# ---------------------------------------------------------------------------
# Termination, usage, failures
# ---------------------------------------------------------------------------


class TestLoopTermination:
    @pytest.mark.asyncio
    async def test_iteration_ceiling_is_normal_completion(self, registry):
        ids = itertools.count(1)
        llm = ScriptedLlm([], default=lambda: tool_round([(f"t{next(ids)}", "list_events", {})]))
        sink, result = await _run(_runner(llm, registry, max_iterations=3), _request())

        assert len(llm.payloads) == 3
        assert sink.types.count("tool_call") == 3
        assert sink.types[-1] == DONE
        assert sink.events[-1].usage.iterations == 3
        assert result is not None

    @pytest.mark.asyncio
    async def test_usage_summed_across_rounds(self, registry):
        llm = ScriptedLlm([
            tool_round([("t1", "list_events", {})], input_tokens=100, output_tokens=20),
            tool_round([("t2", "list_events", {})], input_tokens=150, output_tokens=30),
            text_round("done", input_tokens=200, output_tokens=40),
        ])
        sink, _ = await _run(_runner(llm, registry), _request())

        usage = sink.events[-1].usage
        assert usage.input_tokens == 450
        assert usage.output_tokens == 90
        assert usage.iterations == 3
        assert usage.to_dict()["costUsd"] == calculate_cost(MODEL, 450, 90)

    @pytest.mark.asyncio
    async def test_pause_turn_continues(self, registry):
        llm = ScriptedLlm([
            text_round("Searching the web.", stop_reason="pause_turn"),
            text_round("It will be sunny."),
        ])
        sink, result = await _run(_runner(llm, registry), _request("weather?"))

        assert len(llm.payloads) == 2
        last = llm.payloads[1]["messages"][-1]
        assert last["role"] == "assistant"
        assert last["content"] == [{"type": "text", "text": "Searching the web."}]
        assert result.text == "Searching the web.\n\nIt will be sunny."


class TestFailures:
    @pytest.mark.asyncio
    async def test_llm_error_single_error_event(self, registry):
        llm = ScriptedLlm([LlmError("Anthropic API error (500): api_error - boom")])
        sink, result = await _run(_runner(llm, registry), _request())

        assert sink.types == [ERROR]
        assert "api_error - boom" in sink.events[0].error
        assert sink.events[0].to_dict() == {"type": "error", "error": sink.events[0].error}
        assert result is None

    @pytest.mark.asyncio
    async def test_failure_after_tool_round(self, registry):
        llm = ScriptedLlm([tool_round([("t1", "list_events", {})]), LlmError("connection reset")])
        sink, result = await _run(_runner(llm, registry), _request())

        assert sink.types == ["tool_call", "tool_result", ERROR]
        assert [e for e in sink.events if e.type in (DONE, ERROR)] == [sink.events[-1]]
        assert result is None


# ---------------------------------------------------------------------------
# ExchangeStream
# ---------------------------------------------------------------------------


class HangingLlm:
    """Streams one delta and then blocks until cancelled."""

    def __init__(self) -> None:
        self.cancelled = False

    async def stream_message(self, payload):
        yield StreamEvent(type="message_start", usage={"input_tokens": 5})
        yield StreamEvent(type="text_delta", text="partial", block_index=0)
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise


class TestExchangeStream:
    @pytest.mark.asyncio
    async def test_iterates_events_and_sets_result(self, registry):
        llm = ScriptedLlm([tool_round([("t1", "list_events", {})]), text_round("ok")])
        stream = _runner(llm, registry).stream_exchange(_request())

        types = [event.type async for event in stream]
        assert types == ["tool_call", "tool_result", "delta", "done"]
        assert stream.result is not None
        assert stream.result.text == "ok"

    @pytest.mark.asyncio
    async def test_result_none_after_error(self, registry):
        llm = ScriptedLlm([LlmError("down")])
        stream = _runner(llm, registry).stream_exchange(_request())
        assert [event.type async for event in stream] == [ERROR]
        assert stream.result is None

    @pytest.mark.asyncio
    async def test_started_only_once_iterated(self, registry):
        stream = _runner(ScriptedLlm([text_round("ok")]), registry).stream_exchange(_request())
        assert stream.started is False
        assert [event.type async for event in stream] == ["delta", "done"]
        assert stream.started is True

    @pytest.mark.asyncio
    async def test_detaching_cancels_model_stream(self, registry):
        llm = HangingLlm()
        stream = _runner(llm, registry).stream_exchange(_request())

        events = stream.__aiter__()
        first = await events.__anext__()
        assert first.text == "partial"
        await events.aclose()

        assert llm.cancelled is True
        assert stream.result is None
