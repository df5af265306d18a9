"""Pydantic DTOs for persisted conversations and usage records.

Field names are snake_case in Python and camelCase on the wire and in
JSONB columns (``model_dump(by_alias=True)``).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Role = Literal["user", "assistant"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Conversations ---


class TokenUsage(_CamelModel):
    """Token usage summed over every round of one exchange."""

    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0


class Turn(_CamelModel):
    """One persisted message. Content is plain text or API content blocks."""

    role: Role
    content: str | list[dict[str, Any]]
    token_usage: TokenUsage | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class ConversationSummary(_CamelModel):
    id: UUID
    title: str
    llm_model: str
    updated_at: datetime


class ConversationDetail(_CamelModel):
    id: UUID
    title: str
    llm_model: str
    messages: list[Turn]
    pending_actions: list[dict[str, Any]] = []
    created_at: datetime
    updated_at: datetime


# --- Usage ---


class UsageInput(_CamelModel):
    """One billed LLM call (or one whole exchange)."""

    llm_model: str
    input_tokens: int
    output_tokens: int
    cost_usd: float
    system_prompt: str
    user_prompt: str
    source: str


class UsageTotals(_CamelModel):
    requests: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0


class UsageBreakdown(UsageTotals):
    key: str


class UsageRecord(_CamelModel):
    id: UUID
    llm_model: str
    input_tokens: int
    output_tokens: int
    cost_usd: float
    source: str
    created_at: datetime


class UsageSummary(_CamelModel):
    all_time: UsageTotals
    last_30d: UsageTotals
    last_7d: UsageTotals
    last_24h: UsageTotals
    by_model: list[UsageBreakdown]
    by_source: list[UsageBreakdown]
    recent: list[UsageRecord]
