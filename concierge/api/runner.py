"""Exchange orchestrator -- one user message in, one streamed answer out.

Drives a bounded loop of streaming model rounds. Read tools requested by the
model run immediately and their results are fed back; write tools are never
run inside the loop: the client is told confirmation is required and the
model receives a synthetic "awaiting approval" tool result so every tool_use
block is still answered. Approved write calls come back on the next request
as confirmed actions and run before the first model round.

The orchestrator never touches storage. Events go to an EventSink; the
caller persists whatever it needs once the stream has finished.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator
from enum import Enum
from typing import Any, Protocol

from concierge.api.llm import MessageAccumulator, StreamEvent, build_payload
from concierge.api.models import (
    ChatEvent,
    ExchangeRequest,
    ExchangeResult,
    ToolCall,
    Usage,
)
from concierge.api.pricing import calculate_cost, get_max_tokens
from concierge.api.tools import ToolDefinition, ToolRegistry
from concierge.config import Settings

logger = logging.getLogger(__name__)

CONFIRMATION_PENDING_MESSAGE = (
    "This action requires the user's confirmation and has NOT been executed. "
    "The user has been asked to approve it. Do not call it again; tell the "
    "user what will happen once they confirm."
)

# Per-action cap when summarizing confirmed results into the user message
_SUMMARY_RESULT_CHARS = 2000


class ExchangeState(str, Enum):
    SEEDING = "seeding"
    MODEL_ROUND = "model_round"
    DISPATCHING_TOOLS = "dispatching_tools"
    DONE = "done"
    ERROR = "error"


def _enter(state: ExchangeState, source: str) -> ExchangeState:
    logger.debug("Exchange (%s) -> %s", source, state.value)
    return state


class EventSink(Protocol):
    async def emit(self, event: ChatEvent) -> None: ...


class LlmStreamer(Protocol):
    def stream_message(self, payload: dict[str, Any]) -> AsyncIterator[StreamEvent]: ...


class QueueSink:
    """EventSink backed by an asyncio.Queue."""

    def __init__(self, queue: asyncio.Queue) -> None:
        self._queue = queue

    async def emit(self, event: ChatEvent) -> None:
        await self._queue.put(event)


class AgentRunner:
    """Runs exchanges against the model with the registered tools."""

    def __init__(self, client: LlmStreamer, registry: ToolRegistry, settings: Settings) -> None:
        self._client = client
        self._registry = registry
        self._settings = settings

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def stream_exchange(self, request: ExchangeRequest) -> ExchangeStream:
        """Async-iterable view of run_exchange()."""
        return ExchangeStream(self, request)

    async def run_exchange(self, request: ExchangeRequest, sink: EventSink) -> ExchangeResult | None:
        """Run one exchange, emitting events to ``sink``.

        Exactly one terminal event is emitted: ``done`` (returns the result)
        or ``error`` (returns None). Cancellation propagates.
        """
        messages: list[dict[str, Any]] = [dict(m) for m in request.messages]
        usage = Usage(model=request.model)
        text_parts: list[str] = []
        pending: list[ToolCall] = []
        max_iterations = self._settings.max_iterations
        state = _enter(ExchangeState.SEEDING, request.source)

        try:
            if request.confirmed_actions:
                user_content = await self._seed(request.confirmed_actions, messages, sink)
            else:
                user_content = messages[-1]["content"] if messages else ""

            max_tokens = get_max_tokens(request.model, self._settings.max_tokens)

            while usage.iterations < max_iterations:
                usage.iterations += 1
                state = _enter(ExchangeState.MODEL_ROUND, request.source)
                round_ = await self._model_round(request, messages, max_tokens, sink)
                usage.add(round_.input_tokens, round_.output_tokens)

                if round_.text:
                    text_parts.append(round_.text)
                if round_.content:
                    messages.append({"role": "assistant", "content": round_.content})

                calls = round_.tool_calls()
                if not calls:
                    # Server-side tools (web search) may pause a long turn
                    if round_.stop_reason == "pause_turn" and round_.content:
                        continue
                    break

                state = _enter(ExchangeState.DISPATCHING_TOOLS, request.source)
                results = await self._dispatch_tools(calls, sink, pending)
                messages.append({"role": "user", "content": results})
            else:
                logger.warning(
                    "Exchange reached max_iterations=%d (source=%s)", max_iterations, request.source
                )

        except Exception as e:
            logger.error("Exchange failed during %s: %s", state.value, e)
            _enter(ExchangeState.ERROR, request.source)
            await sink.emit(ChatEvent.failure(str(e) or type(e).__name__))
            return None

        usage.cost_usd = calculate_cost(request.model, usage.input_tokens, usage.output_tokens)
        _enter(ExchangeState.DONE, request.source)
        await sink.emit(ChatEvent.done(usage))

        return ExchangeResult(
            text="\n\n".join(text_parts),
            usage=usage,
            user_content=user_content,
            pending_actions=pending,
        )

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    async def _seed(
        self,
        actions: list[ToolCall],
        messages: list[dict[str, Any]],
        sink: EventSink,
    ) -> str | list[dict[str, Any]]:
        """Execute confirmed actions and splice their outcomes into the latest user turn.

        Classification is not consulted: confirmation was already given.
        """
        lines = []
        for action in actions:
            result, is_error = await self._run_tool(action)
            await sink.emit(ChatEvent.tool_result(action, result, is_error))
            status = "failed" if is_error else "succeeded"
            lines.append(
                f"- {action.tool_name} ({action.tool_id}) {status}: {result[:_SUMMARY_RESULT_CHARS]}"
            )

        summary = "[The user confirmed these actions; they have been executed]\n" + "\n".join(lines)

        for message in reversed(messages):
            if message.get("role") == "user":
                content = message.get("content")
                if isinstance(content, list):
                    message["content"] = [{"type": "text", "text": summary}, *content]
                else:
                    message["content"] = f"{summary}\n\n{content}" if content else summary
                return message["content"]

        messages.append({"role": "user", "content": summary})
        return summary

    async def _model_round(
        self,
        request: ExchangeRequest,
        messages: list[dict[str, Any]],
        max_tokens: int,
        sink: EventSink,
    ) -> MessageAccumulator:
        payload = build_payload(
            model=request.model,
            system=request.system,
            messages=messages,
            max_tokens=max_tokens,
            tools=request.tools,
            stream=True,
        )
        accumulator = MessageAccumulator()
        async for event in self._client.stream_message(payload):
            accumulator.feed(event)
            if event.type == "text_delta" and event.text:
                await sink.emit(ChatEvent.delta(event.text))
        return accumulator

    async def _dispatch_tools(
        self,
        calls: list[ToolCall],
        sink: EventSink,
        pending: list[ToolCall],
    ) -> list[dict[str, Any]]:
        """Answer every tool_use block, in emission order, with one tool_result block."""
        blocks: list[dict[str, Any]] = []
        for call in calls:
            await sink.emit(ChatEvent.tool_call(call))

            if self._registry.is_write_tool(call.tool_name):
                await sink.emit(ChatEvent.confirmation_required(call))
                pending.append(call)
                blocks.append({
                    "type": "tool_result",
                    "tool_use_id": call.tool_id,
                    "content": CONFIRMATION_PENDING_MESSAGE,
                })
                continue

            result, is_error = await self._run_tool(call)
            await sink.emit(ChatEvent.tool_result(call, result, is_error))
            block: dict[str, Any] = {
                "type": "tool_result",
                "tool_use_id": call.tool_id,
                "content": result,
            }
            if is_error:
                block["is_error"] = True
            blocks.append(block)
        return blocks

    async def _run_tool(self, call: ToolCall) -> tuple[str, bool]:
        """Execute a tool and return (result_text, is_error). Never raises."""
        tool = self._registry.get_tool_by_name(call.tool_name)
        if tool is None:
            return f'Error: Tool "{call.tool_name}" not found.', True
        return await self._execute(tool, call)

    async def _execute(self, tool: ToolDefinition, call: ToolCall) -> tuple[str, bool]:
        try:
            result = await tool.execute(call.input)
        except Exception as e:
            logger.exception("Tool %s failed (%s)", call.tool_name, call.tool_id)
            return str(e) or "Tool execution failed", True
        if isinstance(result, str):
            return result, False
        return json.dumps(result, default=str, ensure_ascii=False), False


class ExchangeStream:
    """Async iterator over one exchange's events.

    The exchange runs in its own task feeding a queue. If the consumer stops
    iterating early, the task is cancelled, which aborts the in-flight model
    stream. ``result`` is set once the terminal event has been consumed;
    ``started`` once the exchange task exists, after which confirmed actions
    may have run.
    """

    def __init__(self, runner: AgentRunner, request: ExchangeRequest) -> None:
        self._runner = runner
        self._request = request
        self.result: ExchangeResult | None = None
        self.started = False

    def __aiter__(self) -> AsyncIterator[ChatEvent]:
        return self._events()

    async def _events(self) -> AsyncIterator[ChatEvent]:
        queue: asyncio.Queue[ChatEvent | None] = asyncio.Queue()
        task = asyncio.create_task(self._runner.run_exchange(self._request, QueueSink(queue)))
        self.started = True
        # Sentinel lands after every emitted event
        task.add_done_callback(lambda _: queue.put_nowait(None))
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
            self.result = task.result()
        finally:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
