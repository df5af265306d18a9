"""Timetable tools: recurring weekly schedule entries."""

from __future__ import annotations

import logging
import re
from typing import Any

from sqlalchemy import func, select

from concierge.api.calendar_tools import clean_links, parse_uuid
from concierge.api.tools import ToolDefinition, ToolError
from concierge.storage.database import Database
from concierge.storage.models import TimetableEntry

logger = logging.getLogger(__name__)

DAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

TIMETABLE_COLORS = [
    "background",
    "surface",
    "muted",
    "accent",
    "accent-strong",
    "foreground",
    "destructive",
]

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

_LINKS_SCHEMA: dict[str, Any] = {
    "type": "array",
    "description": "Related links for the entry (optional)",
    "items": {
        "type": "object",
        "properties": {
            "label": {"type": "string", "description": "Link label"},
            "url": {"type": "string", "description": "Link URL"},
            "icon": {"type": "string", "description": "Icon name (optional)"},
        },
        "required": ["label", "url"],
    },
}


def _day(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or int(value) != value:
        raise ToolError("dayOfWeek must be an integer from 0 (Monday) to 6 (Sunday)")
    day = int(value)
    if not 0 <= day <= 6:
        raise ToolError("dayOfWeek must be an integer from 0 (Monday) to 6 (Sunday)")
    return day


def _time(value: Any, field: str) -> str:
    if not isinstance(value, str) or not _TIME_RE.match(value.strip()):
        raise ToolError(f"{field} must be in HH:mm format")
    return value.strip()


def _color(value: Any) -> str:
    if value not in TIMETABLE_COLORS:
        raise ToolError(f"color must be one of {TIMETABLE_COLORS}")
    return value


def _entry_dict(entry: TimetableEntry) -> dict[str, Any]:
    return {
        "id": str(entry.id),
        "title": entry.title,
        "dayOfWeek": entry.day_of_week,
        "dayName": DAY_NAMES[entry.day_of_week],
        "startTime": entry.start_time,
        "endTime": entry.end_time,
        "place": entry.place,
        "color": entry.color,
        "links": entry.links or [],
        "isActive": entry.is_active,
    }


def create_timetable_tools(db: Database) -> list[ToolDefinition]:
    """Timetable tool definitions bound to ``db``."""

    async def get_timetable(tool_input: dict[str, Any]) -> list[dict[str, Any]]:
        async with db.session() as session:
            result = await session.execute(
                select(TimetableEntry).order_by(TimetableEntry.day_of_week, TimetableEntry.start_time)
            )
            return [_entry_dict(e) for e in result.scalars()]

    async def create_timetable_entry(tool_input: dict[str, Any]) -> dict[str, Any]:
        title = (tool_input.get("title") or "").strip()
        if not title:
            raise ToolError("title is required")

        entry = TimetableEntry(
            title=title,
            day_of_week=_day(tool_input.get("dayOfWeek")),
            start_time=_time(tool_input.get("startTime"), "startTime"),
            end_time=_time(tool_input.get("endTime"), "endTime"),
            place=tool_input.get("place"),
            color=_color(tool_input.get("color") or "accent"),
            links=clean_links(tool_input.get("links")),
            is_active=True,
        )
        async with db.session() as session:
            session.add(entry)
            await session.commit()
            await session.refresh(entry)
        logger.info("Created timetable entry %s", entry.id)
        return _entry_dict(entry)

    async def update_timetable_entry(tool_input: dict[str, Any]) -> dict[str, Any]:
        entry_id = parse_uuid(tool_input.get("id"), "Timetable entry")
        async with db.session() as session:
            entry = await session.get(TimetableEntry, entry_id, with_for_update=True)
            if entry is None:
                raise ToolError("Timetable entry not found")

            if tool_input.get("title"):
                entry.title = tool_input["title"]
            if tool_input.get("dayOfWeek") is not None:
                entry.day_of_week = _day(tool_input["dayOfWeek"])
            if tool_input.get("startTime") is not None:
                entry.start_time = _time(tool_input["startTime"], "startTime")
            if tool_input.get("endTime") is not None:
                entry.end_time = _time(tool_input["endTime"], "endTime")
            if "place" in tool_input:
                entry.place = tool_input["place"]
            if tool_input.get("color") is not None:
                entry.color = _color(tool_input["color"])
            if tool_input.get("isActive") is not None:
                entry.is_active = bool(tool_input["isActive"])
            if "links" in tool_input:
                entry.links = clean_links(tool_input["links"])
            entry.updated_at = func.now()

            await session.commit()
            await session.refresh(entry)
            return _entry_dict(entry)

    async def delete_timetable_entry(tool_input: dict[str, Any]) -> dict[str, Any]:
        entry_id = parse_uuid(tool_input.get("id"), "Timetable entry")
        async with db.session() as session:
            entry = await session.get(TimetableEntry, entry_id)
            if entry is None:
                raise ToolError("Failed to delete timetable entry: not found")
            await session.delete(entry)
            await session.commit()
        logger.info("Deleted timetable entry %s", entry_id)
        return {"success": True}

    return [
        ToolDefinition(
            name="get_timetable",
            description=(
                "Get all timetable/schedule entries. Returns recurring weekly entries "
                "with day of week, times, and details."
            ),
            input_schema={"type": "object", "properties": {}},
            handler=get_timetable,
            category="timetable",
        ),
        ToolDefinition(
            name="create_timetable_entry",
            description="Create a new recurring timetable entry.",
            input_schema={
                "type": "object",
                "properties": {
                    "title": {"type": "string", "description": "Entry title (e.g. 'Math Lecture')"},
                    "dayOfWeek": {
                        "type": "number",
                        "description": "Day of week (0=Monday, 1=Tuesday, ..., 5=Saturday, 6=Sunday)",
                    },
                    "startTime": {"type": "string", "description": "Start time in HH:mm format (e.g. '09:00')"},
                    "endTime": {"type": "string", "description": "End time in HH:mm format (e.g. '10:30')"},
                    "place": {"type": "string", "description": "Location (optional)"},
                    "color": {"type": "string", "description": "Color theme (optional)", "enum": TIMETABLE_COLORS},
                    "links": _LINKS_SCHEMA,
                },
                "required": ["title", "dayOfWeek", "startTime", "endTime"],
            },
            handler=create_timetable_entry,
            is_write=True,
            category="timetable",
        ),
        ToolDefinition(
            name="update_timetable_entry",
            description="Update an existing timetable entry.",
            input_schema={
                "type": "object",
                "properties": {
                    "id": {"type": "string", "description": "Entry ID"},
                    "title": {"type": "string", "description": "New title (optional)"},
                    "dayOfWeek": {"type": "number", "description": "New day of week (optional)"},
                    "startTime": {"type": "string", "description": "New start time (optional)"},
                    "endTime": {"type": "string", "description": "New end time (optional)"},
                    "place": {"type": "string", "description": "New location (optional)"},
                    "color": {"type": "string", "description": "New color (optional)", "enum": TIMETABLE_COLORS},
                    "isActive": {"type": "boolean", "description": "Enable or disable entry (optional)"},
                    "links": {**_LINKS_SCHEMA, "description": "Replace entry links (optional)"},
                },
                "required": ["id"],
            },
            handler=update_timetable_entry,
            is_write=True,
            category="timetable",
        ),
        ToolDefinition(
            name="delete_timetable_entry",
            description="Delete a timetable entry by its ID.",
            input_schema={
                "type": "object",
                "properties": {"id": {"type": "string", "description": "Entry ID to delete"}},
                "required": ["id"],
            },
            handler=delete_timetable_entry,
            is_write=True,
            category="timetable",
        ),
    ]
