"""Pydantic request bodies for the HTTP API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from concierge.storage.schemas import Turn


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ConfirmedActionInput(_CamelModel):
    tool_id: str = Field(min_length=1)
    tool_name: str = Field(min_length=1)
    input: dict[str, Any] = {}


class ChatRequest(_CamelModel):
    conversation_id: str | None = None
    message: str
    model: str | None = None
    tools_enabled: bool = True
    web_search_enabled: bool = False
    confirmed_actions: list[ConfirmedActionInput] | None = None

    @field_validator("message")
    @classmethod
    def _message_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message must not be empty")
        return value

    @field_validator("confirmed_actions")
    @classmethod
    def _unique_tool_ids(cls, value: list[ConfirmedActionInput] | None) -> list[ConfirmedActionInput] | None:
        if value:
            ids = [a.tool_id for a in value]
            if len(ids) != len(set(ids)):
                raise ValueError("confirmedActions contains duplicate toolId values")
        return value


class ConversationCreate(_CamelModel):
    title: str = Field(min_length=1, max_length=200)
    model: str = Field(min_length=1)


class MessagesUpdate(_CamelModel):
    messages: list[Turn]
