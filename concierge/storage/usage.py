"""Persisted LLM usage log and aggregate reporting."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from concierge.storage.database import Database
from concierge.storage.models import LlmUsage
from concierge.storage.schemas import (
    UsageBreakdown,
    UsageInput,
    UsageRecord,
    UsageSummary,
    UsageTotals,
)

logger = logging.getLogger(__name__)

RECENT_LIMIT = 20


class UsageLog:
    """Append-only record of billed model calls."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def log(self, usage: UsageInput, session: AsyncSession | None = None) -> None:
        if session is None:
            async with self.db.session() as session:
                await self._log(usage, session)
                await session.commit()
                return
        await self._log(usage, session)

    async def _log(self, usage: UsageInput, session: AsyncSession) -> None:
        session.add(LlmUsage(**usage.model_dump()))
        await session.flush()
        logger.debug(
            "Logged usage: %s in=%d out=%d $%.6f (%s)",
            usage.llm_model, usage.input_tokens, usage.output_tokens, usage.cost_usd, usage.source,
        )

    async def summary(self, now: datetime | None = None, session: AsyncSession | None = None) -> UsageSummary:
        """Totals for fixed windows plus per-model/per-source breakdowns."""
        if session is None:
            async with self.db.session() as session:
                return await self._summary(now, session)
        return await self._summary(now, session)

    async def _summary(self, now: datetime | None, session: AsyncSession) -> UsageSummary:
        # Rolling windows ending at ``now``
        now = now or datetime.now(timezone.utc)

        all_time = await self._totals(session, None)
        last_30d = await self._totals(session, now - timedelta(days=30))
        last_7d = await self._totals(session, now - timedelta(days=7))
        last_24h = await self._totals(session, now - timedelta(hours=24))

        by_model = await self._breakdown(session, LlmUsage.llm_model)
        by_source = await self._breakdown(session, LlmUsage.source)

        result = await session.execute(
            select(LlmUsage).order_by(LlmUsage.created_at.desc()).limit(RECENT_LIMIT)
        )
        recent = [
            UsageRecord(
                id=row.id,
                llm_model=row.llm_model,
                input_tokens=row.input_tokens,
                output_tokens=row.output_tokens,
                cost_usd=row.cost_usd,
                source=row.source,
                created_at=row.created_at,
            )
            for row in result.scalars()
        ]

        return UsageSummary(
            all_time=all_time,
            last_30d=last_30d,
            last_7d=last_7d,
            last_24h=last_24h,
            by_model=by_model,
            by_source=by_source,
            recent=recent,
        )

    @staticmethod
    def _aggregates():
        return (
            func.count(LlmUsage.id),
            func.coalesce(func.sum(LlmUsage.input_tokens), 0),
            func.coalesce(func.sum(LlmUsage.output_tokens), 0),
            func.coalesce(func.sum(LlmUsage.cost_usd), 0.0),
        )

    async def _totals(self, session: AsyncSession, since: datetime | None) -> UsageTotals:
        stmt = select(*self._aggregates())
        if since is not None:
            stmt = stmt.where(LlmUsage.created_at >= since)
        requests, input_tokens, output_tokens, cost = (await session.execute(stmt)).one()
        return UsageTotals(
            requests=requests,
            input_tokens=int(input_tokens),
            output_tokens=int(output_tokens),
            cost_usd=float(cost),
        )

    async def _breakdown(self, session: AsyncSession, column) -> list[UsageBreakdown]:
        stmt = (
            select(column, *self._aggregates())
            .group_by(column)
            .order_by(func.sum(LlmUsage.cost_usd).desc())
        )
        result = await session.execute(stmt)
        return [
            UsageBreakdown(
                key=key,
                requests=requests,
                input_tokens=int(input_tokens),
                output_tokens=int(output_tokens),
                cost_usd=float(cost),
            )
            for key, requests, input_tokens, output_tokens, cost in result
        ]
