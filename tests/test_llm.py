"""Tests for the Anthropic client: SSE parsing, block accumulation, HTTP calls.

HTTP is served by httpx.MockTransport; nothing leaves the process.
"""

import json

import httpx
import pytest
import pytest_asyncio

from concierge.api.llm import (
    AnthropicClient,
    LlmError,
    MessageAccumulator,
    StreamEvent,
    _error_text,
    _parse_sse_event,
    build_payload,
)
from concierge.api.models import ToolCall
from concierge.config import Settings


def _sse(*events: dict) -> bytes:
    return "".join(f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events).encode()


TEXT_STREAM = [
    {"type": "message_start", "message": {"usage": {"input_tokens": 25, "output_tokens": 1}}},
    {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
    {"type": "ping"},
    {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hel"}},
    {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "lo"}},
    {"type": "content_block_stop", "index": 0},
    {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 7}},
    {"type": "message_stop"},
]


# ---------------------------------------------------------------------------
# _parse_sse_event
# ---------------------------------------------------------------------------


class TestParseSSEEvent:
    def test_ping_ignored(self):
        assert _parse_sse_event({"type": "ping"}) is None

    def test_unknown_type_ignored(self):
        assert _parse_sse_event({"type": "something_new"}) is None

    def test_message_start_usage(self):
        event = _parse_sse_event(TEXT_STREAM[0])
        assert event.type == "message_start"
        assert event.usage == {"input_tokens": 25, "output_tokens": 1}

    def test_text_delta(self):
        event = _parse_sse_event(TEXT_STREAM[3])
        assert event.type == "text_delta"
        assert event.text == "Hel"
        assert event.block_index == 0

    def test_input_json_delta(self):
        event = _parse_sse_event({
            "type": "content_block_delta",
            "index": 2,
            "delta": {"type": "input_json_delta", "partial_json": '{"da'},
        })
        assert event.type == "input_json_delta"
        assert event.text == '{"da'
        assert event.block_index == 2

    def test_block_start_keeps_block(self):
        event = _parse_sse_event({
            "type": "content_block_start",
            "index": 1,
            "content_block": {"type": "tool_use", "id": "toolu_1", "name": "get_note", "input": {}},
        })
        assert event.type == "block_start"
        assert event.block["name"] == "get_note"
        assert event.block_index == 1

    def test_message_delta_stop_reason(self):
        event = _parse_sse_event(TEXT_STREAM[6])
        assert event.stop_reason == "end_turn"
        assert event.usage == {"output_tokens": 7}

    def test_error_event(self):
        event = _parse_sse_event({
            "type": "error",
            "error": {"type": "overloaded_error", "message": "Overloaded"},
        })
        assert event.type == "error"
        assert event.text == "overloaded_error: Overloaded"


# ---------------------------------------------------------------------------
# MessageAccumulator
# ---------------------------------------------------------------------------


def _feed(accumulator: MessageAccumulator, raw_events: list[dict]) -> None:
    for raw in raw_events:
        event = _parse_sse_event(raw)
        if event is not None:
            accumulator.feed(event)


class TestMessageAccumulator:
    def test_text_and_usage(self):
        acc = MessageAccumulator()
        _feed(acc, TEXT_STREAM)
        assert acc.text == "Hello"
        assert acc.content == [{"type": "text", "text": "Hello"}]
        assert acc.input_tokens == 25
        assert acc.output_tokens == 7
        assert acc.stop_reason == "end_turn"
        assert acc.tool_calls() == []

    def test_tool_input_fragments_reassembled(self):
        acc = MessageAccumulator()
        _feed(acc, [
            {"type": "content_block_start", "index": 0,
             "content_block": {"type": "tool_use", "id": "toolu_1", "name": "search_notes", "input": {}}},
            {"type": "content_block_delta", "index": 0,
             "delta": {"type": "input_json_delta", "partial_json": '{"query": '}},
            {"type": "content_block_delta", "index": 0,
             "delta": {"type": "input_json_delta", "partial_json": '"groceries"}'}},
            {"type": "content_block_stop", "index": 0},
        ])
        assert acc.tool_calls() == [
            ToolCall(tool_id="toolu_1", tool_name="search_notes", input={"query": "groceries"})
        ]
        assert acc.content[0]["input"] == {"query": "groceries"}

    def test_tool_without_input_gets_empty_dict(self):
        acc = MessageAccumulator()
        _feed(acc, [
            {"type": "content_block_start", "index": 0,
             "content_block": {"type": "tool_use", "id": "toolu_1", "name": "list_folders", "input": {}}},
            {"type": "content_block_stop", "index": 0},
        ])
        assert acc.tool_calls()[0].input == {}

    def test_malformed_tool_json_becomes_empty_input(self):
        acc = MessageAccumulator()
        _feed(acc, [
            {"type": "content_block_start", "index": 0,
             "content_block": {"type": "tool_use", "id": "toolu_1", "name": "get_note", "input": {}}},
            {"type": "content_block_delta", "index": 0,
             "delta": {"type": "input_json_delta", "partial_json": '{"id": '}},
            {"type": "content_block_stop", "index": 0},
        ])
        assert acc.tool_calls()[0].input == {}

    def test_server_tool_blocks_kept_but_not_dispatched(self):
        acc = MessageAccumulator()
        _feed(acc, [
            {"type": "content_block_start", "index": 0,
             "content_block": {"type": "server_tool_use", "id": "srvtoolu_1", "name": "web_search", "input": {}}},
            {"type": "content_block_delta", "index": 0,
             "delta": {"type": "input_json_delta", "partial_json": '{"query": "weather"}'}},
            {"type": "content_block_stop", "index": 0},
            {"type": "content_block_start", "index": 1,
             "content_block": {"type": "web_search_tool_result", "tool_use_id": "srvtoolu_1", "content": []}},
            {"type": "content_block_stop", "index": 1},
        ])
        assert [b["type"] for b in acc.content] == ["server_tool_use", "web_search_tool_result"]
        assert acc.content[0]["input"] == {"query": "weather"}
        assert acc.tool_calls() == []

    def test_citations_attached_to_text_block(self):
        acc = MessageAccumulator()
        _feed(acc, [
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "index": 0,
             "delta": {"type": "citations_delta", "citation": {"url": "https://example.com"}}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Sunny"}},
            {"type": "content_block_stop", "index": 0},
        ])
        assert acc.content[0]["citations"] == [{"url": "https://example.com"}]

    def test_empty_text_blocks_dropped(self):
        acc = MessageAccumulator()
        _feed(acc, [
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_stop", "index": 0},
        ])
        assert acc.content == []


# ---------------------------------------------------------------------------
# build_payload
# ---------------------------------------------------------------------------


class TestBuildPayload:
    def test_system_is_cached_text_block(self):
        payload = build_payload("m", "sys", [{"role": "user", "content": "hi"}], 100)
        assert payload["system"] == [
            {"type": "text", "text": "sys", "cache_control": {"type": "ephemeral"}}
        ]
        assert "tools" not in payload
        assert "stream" not in payload

    def test_tools_and_stream(self):
        payload = build_payload("m", "sys", [], 100, tools=[{"name": "x"}], stream=True)
        assert payload["tools"] == [{"name": "x"}]
        assert payload["stream"] is True

    def test_messages_copied(self):
        messages = [{"role": "user", "content": "hi"}]
        payload = build_payload("m", "sys", messages, 100)
        payload["messages"].append({"role": "assistant", "content": "x"})
        assert len(messages) == 1


def test_error_text():
    body = json.dumps({"error": {"type": "invalid_request_error", "message": "bad"}})
    assert _error_text(body) == "invalid_request_error - bad"
    assert _error_text("<html>oops</html>") == "<html>oops</html>"


# ---------------------------------------------------------------------------
# AnthropicClient over MockTransport
# ---------------------------------------------------------------------------


@pytest.fixture
def client_settings() -> Settings:
    return Settings(_env_file=None, ANTHROPIC_API_KEY="test-key", ANTHROPIC_AUTH_TOKEN="")


@pytest_asyncio.fixture
async def make_client(client_settings):
    clients: list[AnthropicClient] = []

    async def _make(handler) -> AnthropicClient:
        client = AnthropicClient(client_settings)
        await client.start(transport=httpx.MockTransport(handler))
        clients.append(client)
        return client

    yield _make
    for client in clients:
        await client.close()


class TestStreamMessage:
    @pytest.mark.asyncio
    async def test_streams_parsed_events(self, make_client):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, content=_sse(*TEXT_STREAM))

        client = await make_client(handler)
        events = [e async for e in client.stream_message({"model": "m", "messages": []})]

        assert [e.type for e in events] == [
            "message_start", "block_start", "text_delta", "text_delta",
            "block_stop", "message_delta", "message_stop",
        ]
        request = seen[0]
        assert request.url.path == "/v1/messages"
        assert request.headers["x-api-key"] == "test-key"
        assert request.headers["anthropic-version"] == "2023-06-01"
        assert json.loads(request.content)["stream"] is True

    @pytest.mark.asyncio
    async def test_http_error_raises(self, make_client):
        body = {"error": {"type": "authentication_error", "message": "invalid x-api-key"}}

        client = await make_client(lambda request: httpx.Response(401, json=body))
        with pytest.raises(LlmError, match="401.*authentication_error"):
            async for _ in client.stream_message({"model": "m"}):
                pass

    @pytest.mark.asyncio
    async def test_in_stream_error_raises(self, make_client):
        stream = _sse(
            TEXT_STREAM[0],
            {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
        )
        client = await make_client(lambda request: httpx.Response(200, content=stream))
        with pytest.raises(LlmError, match="overloaded_error"):
            async for _ in client.stream_message({"model": "m"}):
                pass

    @pytest.mark.asyncio
    async def test_malformed_event_raises(self, make_client):
        client = await make_client(lambda request: httpx.Response(200, content=b"data: {not json\n\n"))
        with pytest.raises(LlmError, match="Malformed"):
            async for _ in client.stream_message({"model": "m"}):
                pass

    @pytest.mark.asyncio
    async def test_transport_error_wrapped(self, make_client):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = await make_client(handler)
        with pytest.raises(LlmError, match="HTTP error"):
            async for _ in client.stream_message({"model": "m"}):
                pass

    @pytest.mark.asyncio
    async def test_requires_start(self, client_settings):
        client = AnthropicClient(client_settings)
        with pytest.raises(RuntimeError, match="start"):
            async for _ in client.stream_message({}):
                pass


class TestCreateMessage:
    @pytest.mark.asyncio
    async def test_retries_once_on_overload(self, make_client):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(529, headers={"retry-after": "0"}, json={"error": {}})
            return httpx.Response(200, json={"content": [{"type": "text", "text": "ok"}]})

        client = await make_client(handler)
        data = await client.create_message({"model": "m"})
        assert data["content"][0]["text"] == "ok"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, make_client):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, json={"error": {"type": "invalid_request_error", "message": "bad"}})

        client = await make_client(handler)
        with pytest.raises(LlmError, match="400"):
            await client.create_message({"model": "m"})
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_generate_text(self, make_client):
        def handler(request):
            payload = json.loads(request.content)
            assert payload["model"] == "claude-haiku-4-5"
            assert payload["max_tokens"] == 30
            assert "stream" not in payload
            return httpx.Response(200, json={
                "content": [{"type": "text", "text": "Weekly "}, {"type": "text", "text": "plans"}],
                "usage": {"input_tokens": 20, "output_tokens": 2},
            })

        client = await make_client(handler)
        text, usage = await client.generate_text("sys", "plan my week", "claude-haiku-4-5", max_tokens=30)
        assert text == "Weekly plans"
        assert usage == {"input_tokens": 20, "output_tokens": 2}


def test_stream_event_defaults():
    event = StreamEvent(type="message_stop")
    assert event.text == ""
    assert event.block == {}
    assert event.usage == {}
