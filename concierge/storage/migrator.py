"""Auto-migration runner - applies pending SQL migrations on startup.

Discovers sql/migrations/*.sql files, tracks applied versions in
concierge.schema_migrations, and executes pending ones in order.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

_MIGRATIONS_DIR = Path(__file__).resolve().parent.parent.parent / "sql" / "migrations"

_BOOTSTRAP_SQL = (
    "CREATE SCHEMA IF NOT EXISTS concierge",
    """
    CREATE TABLE IF NOT EXISTS concierge.schema_migrations (
        version    VARCHAR(20) PRIMARY KEY,
        name       VARCHAR(255) NOT NULL,
        checksum   VARCHAR(64) NOT NULL,
        applied_at TIMESTAMPTZ DEFAULT now()
    )
    """,
)


def _split_statements(sql: str) -> list[str]:
    """Split a migration file on ';' terminators (asyncpg runs one statement per execute)."""
    statements = []
    for chunk in sql.split(";"):
        lines = [line for line in chunk.splitlines() if not line.strip().startswith("--")]
        statement = "\n".join(lines).strip()
        if statement:
            statements.append(statement)
    return statements


async def run_migrations(engine: AsyncEngine, migrations_dir: Path | None = None) -> list[str]:
    """Apply pending SQL migrations and return the names applied by this call.

    Files already recorded are skipped; a recorded file whose contents have
    since changed is reported but never re-run.
    """
    directory = migrations_dir or _MIGRATIONS_DIR
    files = sorted(directory.glob("*.sql")) if directory.is_dir() else []
    if not files:
        logger.debug("No migrations found in %s", directory)
        return []

    applied: list[str] = []
    async with engine.begin() as conn:
        for statement in _BOOTSTRAP_SQL:
            await conn.execute(text(statement))

        rows = await conn.execute(text("SELECT version, checksum FROM concierge.schema_migrations"))
        recorded = {version: checksum for version, checksum in rows}

        for path in files:
            version = path.stem.split("_", 1)[0]
            sql = path.read_text(encoding="utf-8")
            checksum = hashlib.sha256(sql.encode()).hexdigest()

            if version in recorded:
                if recorded[version] != checksum:
                    logger.warning("Migration %s changed after it was applied", path.name)
                continue

            logger.info("Applying migration %s", path.name)
            for statement in _split_statements(sql):
                await conn.execute(text(statement))
            await conn.execute(
                text(
                    "INSERT INTO concierge.schema_migrations (version, name, checksum) "
                    "VALUES (:version, :name, :checksum)"
                ),
                {"version": version, "name": path.stem, "checksum": checksum},
            )
            applied.append(path.stem)

    if applied:
        logger.info("Migrations applied: %s", ", ".join(applied))
    return applied
