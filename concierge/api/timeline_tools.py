"""Timeline tool (read-only): career and education history."""

from __future__ import annotations

from typing import Any

from sqlalchemy import select

from concierge.api.tools import ToolDefinition, ToolError
from concierge.storage.database import Database
from concierge.storage.models import TimelineItem

TIMELINE_CATEGORIES = ["work", "education", "personal"]


def _item_dict(item: TimelineItem) -> dict[str, Any]:
    return {
        "id": str(item.id),
        "title": item.title,
        "subtitle": item.subtitle,
        "logoUrl": item.logo_url,
        "dateFrom": item.date_from,
        "dateTo": item.date_to,
        "topics": list(item.topics or []),
        "category": item.category,
        "order": item.order,
        "links": item.links or [],
        "isActive": item.is_active,
    }


def create_timeline_tools(db: Database) -> list[ToolDefinition]:
    """Timeline tool definitions bound to ``db``."""

    async def list_timeline_items(tool_input: dict[str, Any]) -> list[dict[str, Any]]:
        category = tool_input.get("category")
        if category is not None and category not in TIMELINE_CATEGORIES:
            raise ToolError(f"category must be one of {TIMELINE_CATEGORIES}")

        stmt = select(TimelineItem).order_by(TimelineItem.order, TimelineItem.created_at.desc())
        if category:
            stmt = stmt.where(TimelineItem.category == category)
        async with db.session() as session:
            result = await session.execute(stmt)
            return [_item_dict(i) for i in result.scalars()]

    return [
        ToolDefinition(
            name="list_timeline_items",
            description=(
                "List career/education timeline items. Can filter by category: "
                "work, education, or personal."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "category": {
                        "type": "string",
                        "description": "Filter by category (optional)",
                        "enum": TIMELINE_CATEGORIES,
                    },
                },
            },
            handler=list_timeline_items,
            category="timeline",
        ),
    ]
