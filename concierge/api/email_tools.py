"""Email tools (read-only): list and read synced mailbox messages."""

from __future__ import annotations

from typing import Any

from sqlalchemy import select

from concierge.api.calendar_tools import parse_uuid
from concierge.api.tools import ToolDefinition, ToolError
from concierge.storage.database import Database
from concierge.storage.models import Email


def _email_dict(email: Email) -> dict[str, Any]:
    return {
        "id": str(email.id),
        "subject": email.subject,
        "from": email.sender or [],
        "date": email.date.isoformat(),
        "seen": email.seen,
    }


def create_email_tools(db: Database) -> list[ToolDefinition]:
    """Email tool definitions bound to ``db``."""

    async def list_emails(tool_input: dict[str, Any]) -> list[dict[str, Any]]:
        limit = int(tool_input.get("limit") or 20)
        stmt = select(Email).order_by(Email.date.desc()).limit(limit)
        if tool_input.get("unreadOnly"):
            stmt = stmt.where(Email.seen.is_(False))
        async with db.session() as session:
            result = await session.execute(stmt)
            return [_email_dict(e) for e in result.scalars()]

    async def get_email(tool_input: dict[str, Any]) -> dict[str, Any]:
        email_id = parse_uuid(tool_input.get("id"), "Email")
        async with db.session() as session:
            email = await session.get(Email, email_id)
            if email is None:
                raise ToolError("Email not found")
            return _email_dict(email)

    return [
        ToolDefinition(
            name="list_emails",
            description="List recent emails. Returns subject, sender, date, and read status.",
            input_schema={
                "type": "object",
                "properties": {
                    "limit": {"type": "number", "description": "Max number of emails to return (default 20)"},
                    "unreadOnly": {"type": "boolean", "description": "Only show unread emails (default false)"},
                },
            },
            handler=list_emails,
            category="email",
        ),
        ToolDefinition(
            name="get_email",
            description="Get details of a specific email by its ID.",
            input_schema={
                "type": "object",
                "properties": {"id": {"type": "string", "description": "Email ID"}},
                "required": ["id"],
            },
            handler=get_email,
            category="email",
        ),
    ]
