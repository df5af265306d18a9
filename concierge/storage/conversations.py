"""Conversation persistence for the chat assistant.

Messages live in a JSONB array on the conversation row and are updated with
read-modify-write under SELECT FOR UPDATE. Every public method follows the
session injection pattern: pass ``session`` to join an outer transaction,
omit it to get an auto-committed session.

Concurrent exchanges on the same conversation are not serialized beyond the
row lock; the last append wins its position in the array.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from concierge.storage.database import Database
from concierge.storage.models import Conversation
from concierge.storage.schemas import ConversationDetail, ConversationSummary, Turn

logger = logging.getLogger(__name__)


def parse_conversation_id(value: str | UUID) -> UUID | None:
    """Return the UUID for ``value`` or None when it is not a valid id."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        return None


class ConversationStore:
    """CRUD over ``concierge.conversations``."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_conversations(self, limit: int = 50, session: AsyncSession | None = None) -> list[ConversationSummary]:
        """Most recently updated conversations, without messages."""
        if session is None:
            async with self.db.session() as session:
                return await self._list(limit, session)
        return await self._list(limit, session)

    async def _list(self, limit: int, session: AsyncSession) -> list[ConversationSummary]:
        result = await session.execute(
            select(Conversation).order_by(Conversation.updated_at.desc()).limit(limit)
        )
        return [
            ConversationSummary(id=c.id, title=c.title, llm_model=c.llm_model, updated_at=c.updated_at)
            for c in result.scalars()
        ]

    async def get_conversation(
        self, conversation_id: str | UUID, session: AsyncSession | None = None
    ) -> ConversationDetail | None:
        if session is None:
            async with self.db.session() as session:
                return await self._get(conversation_id, session)
        return await self._get(conversation_id, session)

    async def _get(self, conversation_id: str | UUID, session: AsyncSession) -> ConversationDetail | None:
        cid = parse_conversation_id(conversation_id)
        if cid is None:
            return None
        conversation = await session.get(Conversation, cid)
        if conversation is None:
            return None
        return self._to_detail(conversation)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_conversation(
        self, title: str, llm_model: str, session: AsyncSession | None = None
    ) -> ConversationDetail:
        if session is None:
            async with self.db.session() as session:
                result = await self._create(title, llm_model, session)
                await session.commit()
                return result
        return await self._create(title, llm_model, session)

    async def _create(self, title: str, llm_model: str, session: AsyncSession) -> ConversationDetail:
        conversation = Conversation(title=title, llm_model=llm_model, messages=[], pending_actions=[])
        session.add(conversation)
        await session.flush()
        await session.refresh(conversation)
        logger.info("Created conversation %s (%s)", conversation.id, llm_model)
        return self._to_detail(conversation)

    async def append_messages(
        self,
        conversation_id: str | UUID,
        turns: Iterable[Turn],
        session: AsyncSession | None = None,
    ) -> ConversationDetail | None:
        """Append turns to the end of the conversation. Returns None if it does not exist."""
        if session is None:
            async with self.db.session() as session:
                result = await self._append(conversation_id, list(turns), session)
                await session.commit()
                return result
        return await self._append(conversation_id, list(turns), session)

    async def _append(
        self, conversation_id: str | UUID, turns: list[Turn], session: AsyncSession
    ) -> ConversationDetail | None:
        conversation = await self._get_for_update(conversation_id, session)
        if conversation is None:
            return None
        conversation.messages = list(conversation.messages or []) + [self._dump_turn(t) for t in turns]
        conversation.updated_at = func.now()
        await session.flush()
        await session.refresh(conversation)
        return self._to_detail(conversation)

    async def update_conversation_messages(
        self,
        conversation_id: str | UUID,
        turns: Iterable[Turn],
        session: AsyncSession | None = None,
    ) -> ConversationDetail | None:
        """Replace the whole message list."""
        if session is None:
            async with self.db.session() as session:
                result = await self._replace(conversation_id, list(turns), session)
                await session.commit()
                return result
        return await self._replace(conversation_id, list(turns), session)

    async def _replace(
        self, conversation_id: str | UUID, turns: list[Turn], session: AsyncSession
    ) -> ConversationDetail | None:
        conversation = await self._get_for_update(conversation_id, session)
        if conversation is None:
            return None
        conversation.messages = [self._dump_turn(t) for t in turns]
        conversation.updated_at = func.now()
        await session.flush()
        await session.refresh(conversation)
        return self._to_detail(conversation)

    async def rename_conversation(
        self, conversation_id: str | UUID, title: str, session: AsyncSession | None = None
    ) -> bool:
        if session is None:
            async with self.db.session() as session:
                result = await self._rename(conversation_id, title, session)
                await session.commit()
                return result
        return await self._rename(conversation_id, title, session)

    async def _rename(self, conversation_id: str | UUID, title: str, session: AsyncSession) -> bool:
        conversation = await self._get_for_update(conversation_id, session)
        if conversation is None:
            return False
        conversation.title = title[:200]
        await session.flush()
        return True

    async def delete_conversation(self, conversation_id: str | UUID, session: AsyncSession | None = None) -> bool:
        if session is None:
            async with self.db.session() as session:
                result = await self._delete(conversation_id, session)
                await session.commit()
                return result
        return await self._delete(conversation_id, session)

    async def _delete(self, conversation_id: str | UUID, session: AsyncSession) -> bool:
        cid = parse_conversation_id(conversation_id)
        if cid is None:
            return False
        result = await session.execute(delete(Conversation).where(Conversation.id == cid))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Pending write actions
    # ------------------------------------------------------------------

    async def set_pending_actions(
        self,
        conversation_id: str | UUID,
        actions: list[dict[str, Any]],
        session: AsyncSession | None = None,
    ) -> bool:
        """Replace the set of write calls awaiting approval."""
        if session is None:
            async with self.db.session() as session:
                result = await self._set_pending(conversation_id, actions, session)
                await session.commit()
                return result
        return await self._set_pending(conversation_id, actions, session)

    async def _set_pending(
        self, conversation_id: str | UUID, actions: list[dict[str, Any]], session: AsyncSession
    ) -> bool:
        conversation = await self._get_for_update(conversation_id, session)
        if conversation is None:
            return False
        conversation.pending_actions = list(actions)
        await session.flush()
        return True

    async def claim_pending_actions(
        self,
        conversation_id: str | UUID,
        claims: list[tuple[str, str]],
        session: AsyncSession | None = None,
    ) -> list[dict[str, Any]] | None:
        """Atomically remove and return pending actions matching ``(toolId, toolName)`` claims.

        All-or-nothing: if any claim has no matching pending action, nothing
        is removed and None is returned. Returned actions carry the stored
        input, in claim order.
        """
        if session is None:
            async with self.db.session() as session:
                result = await self._claim(conversation_id, claims, session)
                await session.commit()
                return result
        return await self._claim(conversation_id, claims, session)

    async def _claim(
        self, conversation_id: str | UUID, claims: list[tuple[str, str]], session: AsyncSession
    ) -> list[dict[str, Any]] | None:
        conversation = await self._get_for_update(conversation_id, session)
        if conversation is None:
            return None

        pending = {a.get("toolId"): a for a in conversation.pending_actions or []}
        claimed: list[dict[str, Any]] = []
        for tool_id, tool_name in claims:
            action = pending.pop(tool_id, None)
            if action is None or action.get("toolName") != tool_name:
                logger.warning(
                    "Rejected confirmation for %s (%s) on conversation %s: no matching pending action",
                    tool_id, tool_name, conversation_id,
                )
                return None
            claimed.append(action)

        conversation.pending_actions = list(pending.values())
        await session.flush()
        return claimed

    async def restore_pending_actions(
        self,
        conversation_id: str | UUID,
        actions: list[dict[str, Any]],
        session: AsyncSession | None = None,
    ) -> bool:
        """Put claimed actions that never ran back into the pending set.

        Actions whose ``toolId`` is already pending are skipped.
        """
        if session is None:
            async with self.db.session() as session:
                result = await self._restore(conversation_id, actions, session)
                await session.commit()
                return result
        return await self._restore(conversation_id, actions, session)

    async def _restore(
        self, conversation_id: str | UUID, actions: list[dict[str, Any]], session: AsyncSession
    ) -> bool:
        conversation = await self._get_for_update(conversation_id, session)
        if conversation is None:
            return False
        pending = list(conversation.pending_actions or [])
        known = {a.get("toolId") for a in pending}
        pending.extend(a for a in actions if a.get("toolId") not in known)
        conversation.pending_actions = pending
        await session.flush()
        logger.info("Restored %d unexecuted action(s) on conversation %s", len(actions), conversation_id)
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _get_for_update(self, conversation_id: str | UUID, session: AsyncSession) -> Conversation | None:
        cid = parse_conversation_id(conversation_id)
        if cid is None:
            return None
        result = await session.execute(
            select(Conversation).where(Conversation.id == cid).with_for_update()
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _dump_turn(turn: Turn) -> dict[str, Any]:
        return turn.model_dump(mode="json", by_alias=True, exclude_none=True)

    @staticmethod
    def _to_detail(conversation: Conversation) -> ConversationDetail:
        return ConversationDetail(
            id=conversation.id,
            title=conversation.title,
            llm_model=conversation.llm_model,
            messages=[Turn.model_validate(m) for m in conversation.messages or []],
            pending_actions=list(conversation.pending_actions or []),
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
        )
