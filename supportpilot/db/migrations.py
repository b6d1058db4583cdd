"""
Database migration utilities.
"""
import os
from typing import List

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from ..logging_config import logger
from ..models import Base


def _split_statements(sql: str) -> List[str]:
    return [statement.strip() for statement in sql.split(";") if statement.strip()]


async def run_migrations(engine: AsyncEngine) -> None:
    """
    Enable pgvector, create tables, then run the SQL files in `scripts/`.

    Script files should:
    - Be named with a sortable prefix (e.g., 001_indexes.sql)
    - End with .sql extension
    - Be idempotent (safe to run multiple times)

    Raises:
        Exception: If any migration fails
    """
    scripts_dir = os.path.join(os.path.dirname(__file__), "scripts")
    migration_files = []
    if os.path.isdir(scripts_dir):
        migration_files = sorted(f for f in os.listdir(scripts_dir) if f.endswith(".sql"))

    async with engine.begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)

        for filename in migration_files:
            filepath = os.path.join(scripts_dir, filename)
            logger.info("Running migration", file=filename)

            with open(filepath, "r", encoding="utf-8") as f:
                sql = f.read()

            for statement in _split_statements(sql):
                await conn.execute(text(statement))

    logger.info("Database migrations completed", script_count=len(migration_files))
