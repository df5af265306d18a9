"""Kanban tools: view boards and create or update cards."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select

from concierge.api.calendar_tools import parse_datetime, parse_uuid
from concierge.api.tools import ToolDefinition, ToolError
from concierge.storage.database import Database
from concierge.storage.models import KanbanBoard, KanbanCard, KanbanColumn

logger = logging.getLogger(__name__)

CARD_PRIORITIES = ["none", "low", "medium", "high", "urgent"]


def _board_dict(board: KanbanBoard) -> dict[str, Any]:
    return {
        "id": str(board.id),
        "title": board.title,
        "description": board.description,
        "color": board.color,
        "createdAt": board.created_at.isoformat() if board.created_at else None,
    }


def _card_dict(card: KanbanCard) -> dict[str, Any]:
    return {
        "id": str(card.id),
        "boardId": str(card.board_id),
        "columnId": str(card.column_id),
        "title": card.title,
        "description": card.description,
        "order": card.order,
        "labels": list(card.labels or []),
        "priority": card.priority,
        "dueDate": card.due_date.isoformat() if card.due_date else None,
        "isArchived": card.is_archived,
    }


def _check_priority(value: Any) -> str:
    if value not in CARD_PRIORITIES:
        raise ToolError(f"priority must be one of {CARD_PRIORITIES}")
    return value


def _clean_labels(raw: Any) -> list[str]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ToolError("labels must be an array")
    return [str(label) for label in raw]


def create_kanban_tools(db: Database) -> list[ToolDefinition]:
    """Kanban tool definitions bound to ``db``."""

    async def list_kanban_boards(tool_input: dict[str, Any]) -> list[dict[str, Any]]:
        async with db.session() as session:
            result = await session.execute(
                select(KanbanBoard)
                .where(KanbanBoard.is_archived.is_(False))
                .order_by(KanbanBoard.created_at.desc())
            )
            return [_board_dict(b) for b in result.scalars()]

    async def get_kanban_board(tool_input: dict[str, Any]) -> dict[str, Any]:
        board_id = parse_uuid(tool_input.get("boardId"), "Board")
        async with db.session() as session:
            board = await session.get(KanbanBoard, board_id)
            if board is None:
                raise ToolError("Board not found")

            columns = (await session.execute(
                select(KanbanColumn)
                .where(KanbanColumn.board_id == board_id)
                .order_by(KanbanColumn.order)
            )).scalars().all()
            cards = (await session.execute(
                select(KanbanCard)
                .where(KanbanCard.board_id == board_id, KanbanCard.is_archived.is_(False))
                .order_by(KanbanCard.order)
            )).scalars().all()

        by_column: dict[Any, list[dict[str, Any]]] = {}
        for card in cards:
            by_column.setdefault(card.column_id, []).append(_card_dict(card))

        return {
            **_board_dict(board),
            "columns": [
                {
                    "id": str(column.id),
                    "title": column.title,
                    "color": column.color,
                    "order": column.order,
                    "wipLimit": column.wip_limit,
                    "cards": by_column.get(column.id, []),
                }
                for column in columns
            ],
        }

    async def create_kanban_card(tool_input: dict[str, Any]) -> dict[str, Any]:
        title = (tool_input.get("title") or "").strip()
        if not title:
            raise ToolError("title is required")
        board_id = parse_uuid(tool_input.get("boardId"), "Board")
        column_id = parse_uuid(tool_input.get("columnId"), "Column")
        priority = _check_priority(tool_input.get("priority") or "none")
        due_date = parse_datetime(tool_input["dueDate"], "dueDate") if tool_input.get("dueDate") else None

        async with db.session() as session:
            column = await session.get(KanbanColumn, column_id, with_for_update=True)
            if column is None or column.board_id != board_id:
                raise ToolError("Column not found")

            # New cards go to the bottom of the column
            last = (await session.execute(
                select(func.max(KanbanCard.order)).where(KanbanCard.column_id == column_id)
            )).scalar_one_or_none()

            card = KanbanCard(
                board_id=board_id,
                column_id=column_id,
                title=title,
                description=tool_input.get("description"),
                order=0 if last is None else last + 1,
                labels=_clean_labels(tool_input.get("labels")),
                priority=priority,
                due_date=due_date,
            )
            session.add(card)
            await session.commit()
            await session.refresh(card)
        logger.info("Created kanban card %s on board %s", card.id, board_id)
        return _card_dict(card)

    async def update_kanban_card(tool_input: dict[str, Any]) -> dict[str, Any]:
        card_id = parse_uuid(tool_input.get("id"), "Card")
        async with db.session() as session:
            card = await session.get(KanbanCard, card_id, with_for_update=True)
            if card is None:
                raise ToolError("Card not found")

            if tool_input.get("title"):
                card.title = tool_input["title"]
            if "description" in tool_input:
                card.description = tool_input["description"]
            if tool_input.get("columnId"):
                column_id = parse_uuid(tool_input["columnId"], "Column")
                column = await session.get(KanbanColumn, column_id)
                if column is None or column.board_id != card.board_id:
                    raise ToolError("Column not found")
                card.column_id = column_id
            if tool_input.get("priority"):
                card.priority = _check_priority(tool_input["priority"])
            if "dueDate" in tool_input:
                due = tool_input["dueDate"]
                card.due_date = parse_datetime(due, "dueDate") if due else None
            if tool_input.get("isArchived") is not None:
                card.is_archived = bool(tool_input["isArchived"])
            card.updated_at = func.now()

            await session.commit()
            await session.refresh(card)
            return _card_dict(card)

    return [
        ToolDefinition(
            name="list_kanban_boards",
            description="List all active kanban boards. Returns board titles, descriptions, and IDs.",
            input_schema={"type": "object", "properties": {}},
            handler=list_kanban_boards,
            category="kanban",
        ),
        ToolDefinition(
            name="get_kanban_board",
            description=(
                "Get a kanban board with all its columns and cards. Use this to see "
                "the full board state."
            ),
            input_schema={
                "type": "object",
                "properties": {"boardId": {"type": "string", "description": "Board ID"}},
                "required": ["boardId"],
            },
            handler=get_kanban_board,
            category="kanban",
        ),
        ToolDefinition(
            name="create_kanban_card",
            description="Create a new card on a kanban board in a specific column.",
            input_schema={
                "type": "object",
                "properties": {
                    "boardId": {"type": "string", "description": "Board ID"},
                    "columnId": {"type": "string", "description": "Column ID to place the card in"},
                    "title": {"type": "string", "description": "Card title"},
                    "description": {"type": "string", "description": "Card description (optional)"},
                    "priority": {"type": "string", "description": "Card priority (optional)", "enum": CARD_PRIORITIES},
                    "dueDate": {"type": "string", "description": "Due date in ISO 8601 (optional)"},
                    "labels": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Labels/tags for the card (optional)",
                    },
                },
                "required": ["boardId", "columnId", "title"],
            },
            handler=create_kanban_card,
            is_write=True,
            category="kanban",
        ),
        ToolDefinition(
            name="update_kanban_card",
            description=(
                "Update an existing kanban card. Can change title, description, "
                "column, priority, etc."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "id": {"type": "string", "description": "Card ID"},
                    "title": {"type": "string", "description": "New title (optional)"},
                    "description": {"type": "string", "description": "New description (optional)"},
                    "columnId": {"type": "string", "description": "Move to this column (optional)"},
                    "priority": {"type": "string", "description": "New priority (optional)", "enum": CARD_PRIORITIES},
                    "dueDate": {
                        "type": ["string", "null"],
                        "description": "New due date in ISO 8601, or null to clear (optional)",
                    },
                    "isArchived": {"type": "boolean", "description": "Archive or unarchive the card (optional)"},
                },
                "required": ["id"],
            },
            handler=update_kanban_card,
            is_write=True,
            category="kanban",
        ),
    ]
