"""Calendar tools: view, create, update and delete calendar events."""

from __future__ import annotations

import logging
from datetime import datetime, time, timedelta, timezone
from typing import Any
from uuid import UUID

from dateutil.parser import isoparse
from sqlalchemy import func, select

from concierge.api.tools import ToolDefinition, ToolError
from concierge.storage.database import Database
from concierge.storage.models import CalendarEvent

logger = logging.getLogger(__name__)

EVENT_STATUSES = ["scheduled", "completed", "canceled"]

_LINKS_SCHEMA: dict[str, Any] = {
    "type": "array",
    "description": "Related links for the event (optional)",
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


def parse_datetime(value: Any, field: str = "date") -> datetime:
    """ISO 8601 string -> aware datetime (naive values are taken as UTC)."""
    if not isinstance(value, str) or not value:
        raise ToolError(f"{field} is required (ISO 8601)")
    try:
        parsed = isoparse(value)
    except ValueError as e:
        raise ToolError(f"Invalid {field}: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_uuid(value: Any, what: str) -> UUID:
    try:
        return UUID(str(value))
    except ValueError as e:
        raise ToolError(f"{what} not found") from e


def clean_links(raw: Any) -> list[dict[str, str]]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ToolError("links must be an array")
    links = []
    for link in raw:
        if not isinstance(link, dict) or not link.get("label") or not link.get("url"):
            raise ToolError("Each link needs a label and a url")
        cleaned = {"label": str(link["label"]), "url": str(link["url"])}
        if link.get("icon"):
            cleaned["icon"] = str(link["icon"])
        links.append(cleaned)
    return links


def _event_dict(event: CalendarEvent) -> dict[str, Any]:
    return {
        "id": str(event.id),
        "title": event.title,
        "date": event.date.isoformat(),
        "place": event.place,
        "status": event.status,
        "links": event.links or [],
    }


def create_calendar_tools(db: Database) -> list[ToolDefinition]:
    """Calendar tool definitions bound to ``db``."""

    async def get_calendar_events(tool_input: dict[str, Any]) -> list[dict[str, Any]]:
        start = parse_datetime(tool_input.get("start"), "start")
        end = parse_datetime(tool_input.get("end"), "end")
        if end < start:
            raise ToolError("end must not be before start")

        # Whole days, inclusive of the end date
        range_start = datetime.combine(start.date(), time.min, tzinfo=start.tzinfo)
        range_end = datetime.combine(end.date(), time.min, tzinfo=end.tzinfo) + timedelta(days=1)

        async with db.session() as session:
            result = await session.execute(
                select(CalendarEvent)
                .where(CalendarEvent.date >= range_start, CalendarEvent.date < range_end)
                .order_by(CalendarEvent.date)
            )
            return [_event_dict(e) for e in result.scalars()]

    async def create_calendar_event(tool_input: dict[str, Any]) -> dict[str, Any]:
        title = (tool_input.get("title") or "").strip()
        if not title:
            raise ToolError("title is required")
        status = tool_input.get("status") or "scheduled"
        if status not in EVENT_STATUSES:
            raise ToolError(f"status must be one of {EVENT_STATUSES}")

        event = CalendarEvent(
            title=title,
            date=parse_datetime(tool_input.get("date")),
            place=tool_input.get("place"),
            status=status,
            links=clean_links(tool_input.get("links")),
        )
        async with db.session() as session:
            session.add(event)
            await session.commit()
            await session.refresh(event)
        logger.info("Created calendar event %s", event.id)
        return _event_dict(event)

    async def update_calendar_event(tool_input: dict[str, Any]) -> dict[str, Any]:
        event_id = parse_uuid(tool_input.get("id"), "Calendar event")
        async with db.session() as session:
            event = await session.get(CalendarEvent, event_id, with_for_update=True)
            if event is None:
                raise ToolError("Calendar event not found")

            if tool_input.get("title"):
                event.title = tool_input["title"]
            if tool_input.get("date"):
                event.date = parse_datetime(tool_input["date"])
            if tool_input.get("place"):
                event.place = tool_input["place"]
            if tool_input.get("status"):
                if tool_input["status"] not in EVENT_STATUSES:
                    raise ToolError(f"status must be one of {EVENT_STATUSES}")
                event.status = tool_input["status"]
            if "links" in tool_input:
                event.links = clean_links(tool_input["links"])
            event.updated_at = func.now()

            await session.commit()
            await session.refresh(event)
            return _event_dict(event)

    async def delete_calendar_event(tool_input: dict[str, Any]) -> dict[str, Any]:
        event_id = parse_uuid(tool_input.get("id"), "Calendar event")
        async with db.session() as session:
            event = await session.get(CalendarEvent, event_id)
            if event is None:
                raise ToolError("Failed to delete calendar event: not found")
            await session.delete(event)
            await session.commit()
        logger.info("Deleted calendar event %s", event_id)
        return {"success": True}

    return [
        ToolDefinition(
            name="get_calendar_events",
            description=(
                "Get calendar events for a date range. If only a single date is "
                "needed, set start and end to the same date."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "start": {"type": "string", "description": "Start date in ISO 8601 format (e.g. 2026-02-26)"},
                    "end": {"type": "string", "description": "End date in ISO 8601 format (e.g. 2026-02-28)"},
                },
                "required": ["start", "end"],
            },
            handler=get_calendar_events,
            category="calendar",
        ),
        ToolDefinition(
            name="create_calendar_event",
            description="Create a new calendar event.",
            input_schema={
                "type": "object",
                "properties": {
                    "title": {"type": "string", "description": "Event title"},
                    "date": {"type": "string", "description": "Event date/time in ISO 8601 format"},
                    "place": {"type": "string", "description": "Event location (optional)"},
                    "status": {"type": "string", "description": "Event status", "enum": EVENT_STATUSES},
                    "links": _LINKS_SCHEMA,
                },
                "required": ["title", "date"],
            },
            handler=create_calendar_event,
            is_write=True,
            category="calendar",
        ),
        ToolDefinition(
            name="update_calendar_event",
            description="Update an existing calendar event by its ID.",
            input_schema={
                "type": "object",
                "properties": {
                    "id": {"type": "string", "description": "Event ID"},
                    "title": {"type": "string", "description": "New title (optional)"},
                    "date": {"type": "string", "description": "New date in ISO 8601 (optional)"},
                    "place": {"type": "string", "description": "New location (optional)"},
                    "status": {"type": "string", "description": "New status (optional)", "enum": EVENT_STATUSES},
                    "links": {**_LINKS_SCHEMA, "description": "Replace event links (optional)"},
                },
                "required": ["id"],
            },
            handler=update_calendar_event,
            is_write=True,
            category="calendar",
        ),
        ToolDefinition(
            name="delete_calendar_event",
            description="Delete a calendar event by its ID.",
            input_schema={
                "type": "object",
                "properties": {"id": {"type": "string", "description": "Event ID to delete"}},
                "required": ["id"],
            },
            handler=delete_calendar_event,
            is_write=True,
            category="calendar",
        ),
    ]
