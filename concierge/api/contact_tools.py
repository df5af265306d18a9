"""Contact tools: read contact form submissions and update their status."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select

from concierge.api.tools import ToolDefinition, ToolError
from concierge.storage.database import Database
from concierge.storage.models import Contact

logger = logging.getLogger(__name__)

CONTACT_STATUSES = ["pending", "read", "responded", "archived"]


def _contact_dict(contact: Contact) -> dict[str, Any]:
    return {
        "ticketId": contact.ticket_id,
        "name": contact.name,
        "email": contact.email,
        "message": contact.message,
        "status": contact.status,
        "createdAt": contact.created_at.isoformat() if contact.created_at else None,
    }


def create_contact_tools(db: Database) -> list[ToolDefinition]:
    """Contact tool definitions bound to ``db``."""

    async def list_contacts(tool_input: dict[str, Any]) -> list[dict[str, Any]]:
        status = tool_input.get("status")
        if status is not None and status not in CONTACT_STATUSES:
            raise ToolError(f"status must be one of {CONTACT_STATUSES}")
        limit = int(tool_input.get("limit") or 20)

        stmt = select(Contact).order_by(Contact.created_at.desc()).limit(limit)
        if status:
            stmt = stmt.where(Contact.status == status)
        async with db.session() as session:
            result = await session.execute(stmt)
            return [_contact_dict(c) for c in result.scalars()]

    async def get_contact(tool_input: dict[str, Any]) -> dict[str, Any]:
        ticket_id = tool_input.get("ticketId")
        async with db.session() as session:
            result = await session.execute(select(Contact).where(Contact.ticket_id == ticket_id))
            contact = result.scalar_one_or_none()
            if contact is None:
                raise ToolError(f"Contact {ticket_id} not found")
            return _contact_dict(contact)

    async def update_contact_status(tool_input: dict[str, Any]) -> dict[str, Any]:
        ticket_id = tool_input.get("ticketId")
        status = tool_input.get("status")
        if status not in CONTACT_STATUSES:
            raise ToolError(f"status must be one of {CONTACT_STATUSES}")

        async with db.session() as session:
            result = await session.execute(
                select(Contact).where(Contact.ticket_id == ticket_id).with_for_update()
            )
            contact = result.scalar_one_or_none()
            if contact is None:
                raise ToolError(f"Contact {ticket_id} not found")
            contact.status = status
            contact.updated_at = func.now()
            await session.commit()
            await session.refresh(contact)
            logger.info("Contact %s marked %s", ticket_id, status)
            return _contact_dict(contact)

    return [
        ToolDefinition(
            name="list_contacts",
            description="List contact form submissions. Can filter by status and paginate.",
            input_schema={
                "type": "object",
                "properties": {
                    "status": {
                        "type": "string",
                        "description": "Filter by status (optional)",
                        "enum": CONTACT_STATUSES,
                    },
                    "limit": {"type": "number", "description": "Max number of contacts to return (default 20)"},
                },
            },
            handler=list_contacts,
            category="contacts",
        ),
        ToolDefinition(
            name="get_contact",
            description="Get a specific contact submission by its ticket ID.",
            input_schema={
                "type": "object",
                "properties": {"ticketId": {"type": "string", "description": "Contact ticket ID"}},
                "required": ["ticketId"],
            },
            handler=get_contact,
            category="contacts",
        ),
        ToolDefinition(
            name="update_contact_status",
            description="Update the status of a contact submission.",
            input_schema={
                "type": "object",
                "properties": {
                    "ticketId": {"type": "string", "description": "Contact ticket ID"},
                    "status": {"type": "string", "description": "New status", "enum": CONTACT_STATUSES},
                },
                "required": ["ticketId", "status"],
            },
            handler=update_contact_status,
            is_write=True,
            category="contacts",
        ),
    ]
