# urgent_dispatch/infra/migrations_async.py
"""
Async database migrations runner (asyncpg).
"""
from __future__ import annotations
from pathlib import Path

from urgent_dispatch.infra.db_async import db_conn
from urgent_dispatch.infra.logging_config import get_logger

logger = get_logger(__name__)


def _sql_dir() -> Path:
    # Next to this file: urgent_dispatch/infra/sql
    return Path(__file__).resolve().parent / "sql"


def pending_migrations(applied: set[str], sql_dir: Path | None = None) -> list[Path]:
    """SQL files not yet recorded in schema_migrations, in filename order."""
    directory = sql_dir or _sql_dir()
    files = sorted(p for p in directory.glob("*.sql") if p.is_file())
    return [p for p in files if p.name not in applied]


async def apply_migrations() -> dict:
    """
    Apply SQL migrations from urgent_dispatch/infra/sql in alphabetical order
    (001_..., 002_...), all in one transaction.

    Returns:
        {"ok": True, "applied": [filenames applied now], "count": n}
    """
    async with db_conn(autocommit=False) as conn:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations(
              version text PRIMARY KEY,
              applied_at timestamptz NOT NULL DEFAULT now()
            )
            """
        )

        rows = await conn.fetch("SELECT version FROM schema_migrations")
        applied = {row['version'] for row in rows}

        applied_now = []
        for p in pending_migrations(applied):
            version = p.name
            logger.info(f"Applying migration: {version}")
            await conn.execute(p.read_text(encoding="utf-8"))
            await conn.execute("INSERT INTO schema_migrations(version) VALUES ($1)", version)
            applied_now.append(version)

    logger.info(f"Migrations complete: {len(applied_now)} applied")
    return {"ok": True, "applied": applied_now, "count": len(applied_now)}
