"""Data types shared by the orchestrator and the HTTP layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

# Event types emitted to the client, in wire form
DELTA = "delta"
TOOL_CALL = "tool_call"
TOOL_RESULT = "tool_result"
TOOL_CONFIRMATION_REQUIRED = "tool_confirmation_required"
DONE = "done"
ERROR = "error"


@dataclass(frozen=True)
class ToolCall:
    """One tool invocation requested by the model (or confirmed by the user)."""

    tool_id: str
    tool_name: str
    input: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"toolId": self.tool_id, "toolName": self.tool_name, "input": self.input}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCall:
        return cls(
            tool_id=data["toolId"],
            tool_name=data["toolName"],
            input=dict(data.get("input") or {}),
        )


@dataclass
class Usage:
    """Token totals accumulated across the rounds of one exchange."""

    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    iterations: int = 0

    def add(self, input_tokens: int, output_tokens: int) -> None:
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens

    def to_dict(self) -> dict[str, Any]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "costUsd": self.cost_usd,
            "model": self.model,
            "iterations": self.iterations,
        }


@dataclass
class ChatEvent:
    """A single event on the exchange stream."""

    type: str  # delta, tool_call, tool_result, tool_confirmation_required, done, error
    text: str = ""
    tool_id: str = ""
    tool_name: str = ""
    input: dict[str, Any] = field(default_factory=dict)
    result: str = ""
    is_error: bool = False
    usage: Usage | None = None
    error: str = ""

    @classmethod
    def delta(cls, text: str) -> ChatEvent:
        return cls(type=DELTA, text=text)

    @classmethod
    def tool_call(cls, call: ToolCall) -> ChatEvent:
        return cls(type=TOOL_CALL, tool_id=call.tool_id, tool_name=call.tool_name, input=call.input)

    @classmethod
    def tool_result(cls, call: ToolCall, result: str, is_error: bool) -> ChatEvent:
        return cls(
            type=TOOL_RESULT,
            tool_id=call.tool_id,
            tool_name=call.tool_name,
            result=result,
            is_error=is_error,
        )

    @classmethod
    def confirmation_required(cls, call: ToolCall) -> ChatEvent:
        return cls(
            type=TOOL_CONFIRMATION_REQUIRED,
            tool_id=call.tool_id,
            tool_name=call.tool_name,
            input=call.input,
        )

    @classmethod
    def done(cls, usage: Usage) -> ChatEvent:
        return cls(type=DONE, usage=usage)

    @classmethod
    def failure(cls, message: str) -> ChatEvent:
        return cls(type=ERROR, error=message)

    def to_dict(self) -> dict[str, Any]:
        """Wire form: only the fields that belong to this event type."""
        if self.type == DELTA:
            return {"type": self.type, "text": self.text}
        if self.type in (TOOL_CALL, TOOL_CONFIRMATION_REQUIRED):
            return {
                "type": self.type,
                "toolId": self.tool_id,
                "toolName": self.tool_name,
                "input": self.input,
            }
        if self.type == TOOL_RESULT:
            return {
                "type": self.type,
                "toolId": self.tool_id,
                "toolName": self.tool_name,
                "result": self.result,
                "isError": self.is_error,
            }
        if self.type == DONE:
            return {"type": self.type, "usage": self.usage.to_dict() if self.usage else {}}
        return {"type": self.type, "error": self.error}


@dataclass
class ExchangeRequest:
    """Everything the orchestrator needs for one exchange."""

    system: str
    messages: list[dict[str, Any]]  # Prior turns + the new user turn, API format
    model: str
    tools: list[dict[str, Any]] | None = None
    source: str = "dashboard-chat"
    confirmed_actions: list[ToolCall] = field(default_factory=list)


@dataclass
class ExchangeResult:
    """Final state of a successful exchange, for the caller to persist."""

    text: str
    usage: Usage
    user_content: str | list[dict[str, Any]]
    pending_actions: list[ToolCall] = field(default_factory=list)
