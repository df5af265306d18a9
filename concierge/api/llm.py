"""Anthropic Messages API client over httpx.

Streaming calls are parsed from SSE ``data:`` lines into StreamEvents and
reassembled into content blocks by MessageAccumulator. Non-streaming calls
(used for short utility prompts such as conversation titles) retry once on
429/500/529 and timeouts.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx

from concierge.api.models import ToolCall
from concierge.config import Settings

logger = logging.getLogger(__name__)

_API_VERSION = "2023-06-01"


class LlmError(RuntimeError):
    """Provider or transport failure. Fatal to the current exchange."""


@dataclass
class StreamEvent:
    """A single event from the streaming API response."""

    # message_start, block_start, text_delta, input_json_delta, citations_delta,
    # block_stop, message_delta, message_stop, error
    type: str
    text: str = ""
    block_index: int = 0
    block: dict[str, Any] = field(default_factory=dict)
    stop_reason: str = ""
    usage: dict[str, int] = field(default_factory=dict)


def _parse_sse_event(data: dict[str, Any]) -> StreamEvent | None:
    """Parse an Anthropic SSE event dict into a StreamEvent.

    Pings and unknown event types return None. stop_reason arrives in
    message_delta.delta, input token usage in message_start.message.usage.
    """
    event_type = data.get("type")

    if event_type == "ping":
        return None

    if event_type == "error":
        error = data.get("error", {})
        return StreamEvent(
            type="error",
            text=f"{error.get('type', 'unknown')}: {error.get('message', '')}",
        )

    if event_type == "message_start":
        return StreamEvent(
            type="message_start",
            usage=dict(data.get("message", {}).get("usage") or {}),
        )

    if event_type == "content_block_start":
        return StreamEvent(
            type="block_start",
            block_index=data.get("index", 0),
            block=dict(data.get("content_block") or {}),
        )

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        block_index = data.get("index", 0)
        delta_type = delta.get("type")
        if delta_type == "text_delta":
            return StreamEvent(type="text_delta", text=delta.get("text", ""), block_index=block_index)
        if delta_type == "input_json_delta":
            return StreamEvent(
                type="input_json_delta",
                text=delta.get("partial_json", ""),
                block_index=block_index,
            )
        if delta_type == "citations_delta":
            return StreamEvent(
                type="citations_delta",
                block=dict(delta.get("citation") or {}),
                block_index=block_index,
            )
        return None

    if event_type == "content_block_stop":
        return StreamEvent(type="block_stop", block_index=data.get("index", 0))

    if event_type == "message_delta":
        return StreamEvent(
            type="message_delta",
            stop_reason=data.get("delta", {}).get("stop_reason") or "",
            usage=dict(data.get("usage") or {}),
        )

    if event_type == "message_stop":
        return StreamEvent(type="message_stop")

    return None


class MessageAccumulator:
    """Rebuilds the final assistant message from stream events.

    Blocks are keyed by stream index so interleaved tool input fragments
    stay separate. Server-side tool blocks (web search) are kept verbatim so
    they can be replayed in the next request.
    """

    _JSON_BLOCKS = frozenset({"tool_use", "server_tool_use"})

    def __init__(self) -> None:
        self._blocks: dict[int, dict[str, Any]] = {}
        self._json_parts: dict[int, list[str]] = {}
        self.stop_reason = ""
        self.input_tokens = 0
        self.output_tokens = 0

    def feed(self, event: StreamEvent) -> None:
        if event.type == "message_start":
            self.input_tokens = event.usage.get("input_tokens", 0)
            self.output_tokens = event.usage.get("output_tokens", 0)

        elif event.type == "block_start":
            block = dict(event.block)
            if block.get("type") in self._JSON_BLOCKS:
                block["input"] = {}
                self._json_parts[event.block_index] = []
            self._blocks[event.block_index] = block

        elif event.type == "text_delta":
            block = self._blocks.setdefault(event.block_index, {"type": "text", "text": ""})
            block["text"] = block.get("text", "") + event.text

        elif event.type == "input_json_delta":
            parts = self._json_parts.get(event.block_index)
            if parts is not None:
                parts.append(event.text)

        elif event.type == "citations_delta":
            block = self._blocks.get(event.block_index)
            if block is not None:
                block.setdefault("citations", []).append(event.block)

        elif event.type == "block_stop":
            parts = self._json_parts.pop(event.block_index, None)
            if parts is not None:
                raw = "".join(parts)
                try:
                    self._blocks[event.block_index]["input"] = json.loads(raw) if raw else {}
                except json.JSONDecodeError:
                    logger.warning("Malformed tool input JSON in block %d: %r", event.block_index, raw[:200])
                    self._blocks[event.block_index]["input"] = {}

        elif event.type == "message_delta":
            self.stop_reason = event.stop_reason or self.stop_reason
            # message_delta usage is cumulative for the message
            if "output_tokens" in event.usage:
                self.output_tokens = event.usage["output_tokens"]
            if event.usage.get("input_tokens"):
                self.input_tokens = event.usage["input_tokens"]

    @property
    def content(self) -> list[dict[str, Any]]:
        # Empty text blocks are rejected by the API when replayed
        return [
            self._blocks[i]
            for i in sorted(self._blocks)
            if not (self._blocks[i].get("type") == "text" and not self._blocks[i].get("text"))
        ]

    @property
    def text(self) -> str:
        return "".join(b.get("text", "") for b in self.content if b.get("type") == "text")

    def tool_calls(self) -> list[ToolCall]:
        """Client-side tool_use requests in emission order."""
        return [
            ToolCall(tool_id=b["id"], tool_name=b["name"], input=b.get("input") or {})
            for b in self.content
            if b.get("type") == "tool_use"
        ]


def build_payload(
    model: str,
    system: str,
    messages: list[dict[str, Any]],
    max_tokens: int,
    tools: list[dict[str, Any]] | None = None,
    stream: bool = False,
) -> dict[str, Any]:
    """Build a Messages API request body. The message list is copied."""
    payload: dict[str, Any] = {
        "model": model,
        "max_tokens": max_tokens,
        "system": [
            {
                "type": "text",
                "text": system,
                "cache_control": {"type": "ephemeral"},
            }
        ],
        "messages": list(messages),
    }
    if tools:
        payload["tools"] = tools
    if stream:
        payload["stream"] = True
    return payload


class AnthropicClient:
    """Thin async wrapper around POST /v1/messages."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._http: httpx.AsyncClient | None = None

    async def start(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings

        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }
        if settings.anthropic_auth_token:
            headers["authorization"] = f"Bearer {settings.anthropic_auth_token}"
        elif settings.anthropic_api_key:
            headers["x-api-key"] = settings.anthropic_api_key
        else:
            logger.warning(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
                "API calls will fail"
            )

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            transport=transport,
        )
        logger.info("Anthropic client initialized (%s)", settings.api_base_url)

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    def _require_http(self) -> httpx.AsyncClient:
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")
        return self._http

    async def stream_message(self, payload: dict[str, Any]) -> AsyncIterator[StreamEvent]:
        """POST a streaming request and yield parsed events.

        Raises LlmError on HTTP errors, in-stream error events and transport
        failures. Closing the generator closes the underlying response.
        """
        http = self._require_http()
        payload = {**payload, "stream": True}

        try:
            async with http.stream("POST", "/v1/messages", json=payload) as response:
                if response.status_code != 200:
                    body = (await response.aread()).decode(errors="replace")
                    raise LlmError(f"Anthropic API error ({response.status_code}): {_error_text(body)}")

                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    try:
                        data = json.loads(line[6:])
                    except json.JSONDecodeError as e:
                        raise LlmError(f"Malformed stream event: {line[:200]}") from e
                    event = _parse_sse_event(data)
                    if event is None:
                        continue
                    if event.type == "error":
                        raise LlmError(event.text)
                    yield event
        except httpx.TimeoutException as e:
            raise LlmError(f"API request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise LlmError(f"HTTP error: {e}") from e

    async def create_message(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Non-streaming call with a single retry for 429/500/529 and timeouts."""
        http = self._require_http()

        last_error: Exception | None = None
        for attempt in range(2):
            try:
                response = await http.post("/v1/messages", json=payload)

                if response.status_code == 200:
                    return response.json()

                message = _error_text(response.text)
                if response.status_code in (429, 500, 529) and attempt == 0:
                    retry_after = min(float(response.headers.get("retry-after", "1")), 30.0)
                    logger.warning(
                        "API error %d, retrying in %.1fs: %s",
                        response.status_code, retry_after, message,
                    )
                    await asyncio.sleep(retry_after)
                    continue

                last_error = LlmError(f"Anthropic API error ({response.status_code}): {message}")
                break

            except httpx.TimeoutException as e:
                last_error = LlmError(f"API request timed out: {e}")
                if attempt == 0:
                    logger.warning("API timeout, retrying: %s", e)
                    await asyncio.sleep(1)
                    continue
            except httpx.HTTPError as e:
                last_error = LlmError(f"HTTP error: {e}")
                break  # Connection errors are not retried

        raise last_error or LlmError("API call failed with unknown error")

    async def generate_text(
        self,
        system: str,
        prompt: str,
        model: str,
        max_tokens: int = 256,
    ) -> tuple[str, dict[str, int]]:
        """One-shot text completion. Returns (text, usage)."""
        payload = build_payload(
            model=model,
            system=system,
            messages=[{"role": "user", "content": prompt or "."}],
            max_tokens=max_tokens,
        )
        data = await self.create_message(payload)
        text = "".join(
            block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"
        )
        return text, dict(data.get("usage") or {})


def _error_text(body: str) -> str:
    """Extract ``type - message`` from an API error body, or a trimmed raw body."""
    try:
        error = json.loads(body).get("error", {})
        return f"{error.get('type', 'unknown')} - {error.get('message', 'unknown error')}"
    except (ValueError, AttributeError):
        return body[:500]
