"""Tool registry for the dashboard assistant.

Provides:
- ToolDefinition: schema + async handler + read/write classification
- ToolRegistry: immutable name -> definition map built once at startup
- web_search_declaration(): the provider-side web search tool entry

Write tools mutate durable state and are never executed by the model loop
without a confirmed round-trip from the user; read tools run immediately.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

logger = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any]], Awaitable[Any]]


class ToolError(Exception):
    """Domain failure raised by a tool handler (e.g. record not found).

    The message is shown to the model as an error tool result.
    """


@dataclass(frozen=True)
class ToolDefinition:
    """A callable capability exposed to the model."""

    name: str
    description: str
    input_schema: dict[str, Any]
    handler: ToolHandler
    is_write: bool = False
    category: str = "general"

    def schema(self) -> dict[str, Any]:
        """Tool entry in Anthropic Messages API format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }

    async def execute(self, tool_input: dict[str, Any]) -> Any:
        """Run the handler. Returns a JSON-serializable value or raises."""
        return await self.handler(tool_input)


class ToolRegistry:
    """Read-only catalog of tools, safe to share across concurrent exchanges.

    Ordering follows registration order, so schema lists are deterministic
    for the life of the process.
    """

    def __init__(self, tools: Iterable[ToolDefinition]) -> None:
        tool_map: dict[str, ToolDefinition] = {}
        for tool in tools:
            if tool.name in tool_map:
                raise ValueError(f"Duplicate tool name: {tool.name}")
            tool_map[tool.name] = tool
        self._tools: MappingProxyType[str, ToolDefinition] = MappingProxyType(tool_map)
        logger.debug(
            "Tool registry built: %d tools (%d write)",
            len(tool_map), sum(1 for t in tool_map.values() if t.is_write),
        )

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self):
        return iter(self._tools.values())

    def get_tool_schemas(self) -> list[dict[str, Any]]:
        """All tool schemas for inclusion in a model request."""
        return [tool.schema() for tool in self._tools.values()]

    def get_read_only_tool_schemas(self) -> list[dict[str, Any]]:
        return [tool.schema() for tool in self._tools.values() if not tool.is_write]

    def get_tool_by_name(self, name: str) -> ToolDefinition | None:
        """Exact, case-sensitive lookup. None when not registered."""
        return self._tools.get(name)

    def is_write_tool(self, name: str) -> bool:
        """True only for registered write tools; unknown names are not write."""
        tool = self._tools.get(name)
        return tool.is_write if tool else False

    def categories(self) -> list[str]:
        """Distinct categories in registration order."""
        seen: dict[str, None] = {}
        for tool in self._tools.values():
            seen.setdefault(tool.category, None)
        return list(seen)

    def describe(self) -> list[dict[str, Any]]:
        """Catalog entries for the /tools endpoint."""
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "category": tool.category,
                "isWrite": tool.is_write,
            }
            for tool in self._tools.values()
        ]


def web_search_declaration(max_uses: int = 5) -> dict[str, Any]:
    """Provider-executed web search tool. Never dispatched locally."""
    return {
        "type": "web_search_20250305",
        "name": "web_search",
        "max_uses": max_uses,
    }
