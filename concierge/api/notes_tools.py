"""Notes tools: search, read, create and update notes; list folders."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, or_, select

from concierge.api.calendar_tools import parse_uuid
from concierge.api.tools import ToolDefinition, ToolError
from concierge.storage.database import Database
from concierge.storage.models import Folder, Note

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 200


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _note_dict(note: Note, full: bool = False) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": str(note.id),
        "title": note.title,
        "folderId": str(note.folder_id) if note.folder_id else None,
        "updatedAt": note.updated_at.isoformat() if note.updated_at else None,
    }
    if full:
        data["content"] = note.content
    else:
        data["preview"] = note.content[:PREVIEW_CHARS]
    return data


def create_notes_tools(db: Database) -> list[ToolDefinition]:
    """Notes tool definitions bound to ``db``."""

    async def search_notes(tool_input: dict[str, Any]) -> list[dict[str, Any]]:
        query = (tool_input.get("query") or "").strip()
        if not query:
            raise ToolError("query is required")
        limit = int(tool_input.get("limit") or 10)
        pattern = f"%{_escape_like(query)}%"

        async with db.session() as session:
            result = await session.execute(
                select(Note)
                .where(or_(Note.title.ilike(pattern), Note.content.ilike(pattern)))
                .order_by(Note.updated_at.desc())
                .limit(limit)
            )
            return [_note_dict(n) for n in result.scalars()]

    async def get_note(tool_input: dict[str, Any]) -> dict[str, Any]:
        note_id = parse_uuid(tool_input.get("id"), "Note")
        async with db.session() as session:
            note = await session.get(Note, note_id)
            if note is None:
                raise ToolError("Note not found")
            return _note_dict(note, full=True)

    async def list_folders(tool_input: dict[str, Any]) -> list[dict[str, Any]]:
        async with db.session() as session:
            result = await session.execute(
                select(Folder, func.count(Note.id))
                .outerjoin(Note, Note.folder_id == Folder.id)
                .group_by(Folder.id)
                .order_by(Folder.name)
            )
            return [
                {"id": str(folder.id), "name": folder.name, "noteCount": count}
                for folder, count in result
            ]

    async def create_note(tool_input: dict[str, Any]) -> dict[str, Any]:
        title = (tool_input.get("title") or "").strip()
        if not title:
            raise ToolError("title is required")

        async with db.session() as session:
            folder_id = None
            if tool_input.get("folderId"):
                folder_id = parse_uuid(tool_input["folderId"], "Folder")
                if await session.get(Folder, folder_id) is None:
                    raise ToolError("Folder not found")

            note = Note(title=title, content=tool_input.get("content") or "", folder_id=folder_id)
            session.add(note)
            await session.commit()
            await session.refresh(note)
        logger.info("Created note %s", note.id)
        return _note_dict(note, full=True)

    async def update_note(tool_input: dict[str, Any]) -> dict[str, Any]:
        note_id = parse_uuid(tool_input.get("id"), "Note")
        async with db.session() as session:
            note = await session.get(Note, note_id, with_for_update=True)
            if note is None:
                raise ToolError("Note not found")
            if tool_input.get("title"):
                note.title = tool_input["title"]
            if tool_input.get("content") is not None:
                note.content = tool_input["content"]
            note.updated_at = func.now()
            await session.commit()
            await session.refresh(note)
            return _note_dict(note, full=True)

    return [
        ToolDefinition(
            name="search_notes",
            description="Search notes by text. Returns matching notes with a short preview.",
            input_schema={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Search query text"},
                    "limit": {"type": "number", "description": "Max number of results to return (default 10)"},
                },
                "required": ["query"],
            },
            handler=search_notes,
            category="notes",
        ),
        ToolDefinition(
            name="get_note",
            description="Get the full content of a note by its ID.",
            input_schema={
                "type": "object",
                "properties": {"id": {"type": "string", "description": "Note ID"}},
                "required": ["id"],
            },
            handler=get_note,
            category="notes",
        ),
        ToolDefinition(
            name="list_folders",
            description="List all note folders with the number of notes in each.",
            input_schema={"type": "object", "properties": {}},
            handler=list_folders,
            category="notes",
        ),
        ToolDefinition(
            name="create_note",
            description="Create a new note with a title and content.",
            input_schema={
                "type": "object",
                "properties": {
                    "title": {"type": "string", "description": "Note title"},
                    "content": {"type": "string", "description": "Note content (markdown supported)"},
                    "folderId": {"type": "string", "description": "Folder ID to add the note to (optional)"},
                },
                "required": ["title", "content"],
            },
            handler=create_note,
            is_write=True,
            category="notes",
        ),
        ToolDefinition(
            name="update_note",
            description="Update an existing note's title or content.",
            input_schema={
                "type": "object",
                "properties": {
                    "id": {"type": "string", "description": "Note ID"},
                    "title": {"type": "string", "description": "New title (optional)"},
                    "content": {"type": "string", "description": "New content (optional)"},
                },
                "required": ["id"],
            },
            handler=update_note,
            is_write=True,
            category="notes",
        ),
    ]
