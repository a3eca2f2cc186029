"""
Lease Plane Database Layer
==========================

Opens the asyncpg pool behind PostgresStore and applies the SQL files in
lease_plane/migrations/ (NNN_description.sql) that are not yet recorded
in schema_migrations.
"""

import logging
from pathlib import Path
from typing import List, Set

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"


async def open_pool(database_url: str, min_size: int = 2, max_size: int = 10) -> asyncpg.Pool:
    """Create the connection pool and bring the schema up to date."""
    pool = await asyncpg.create_pool(database_url, min_size=min_size, max_size=max_size)
    try:
        applied = await run_migrations(pool)
    except Exception:
        await pool.close()
        raise

    logger.info(f"Database ready ({len(applied)} migration(s) applied)")
    return pool


def pending_migrations(applied: Set[str]) -> List[Path]:
    return [
        path for path in sorted(MIGRATIONS_DIR.glob("*.sql"))
        if path.stem.split("_")[0] not in applied
    ]


async def run_migrations(pool: asyncpg.Pool) -> List[str]:
    """Apply pending migrations, each in its own transaction. Returns the versions applied."""
    versions: List[str] = []
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version VARCHAR(10) PRIMARY KEY,
                applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
        """)
        rows = await conn.fetch("SELECT version FROM schema_migrations")

        for path in pending_migrations({row["version"] for row in rows}):
            version = path.stem.split("_")[0]
            logger.info(f"Applying migration {path.name}")
            try:
                async with conn.transaction():
                    await conn.execute(path.read_text(encoding="utf-8"))
                    await conn.execute("INSERT INTO schema_migrations (version) VALUES ($1)", version)
            except Exception as e:
                logger.error(f"Migration {path.name} failed: {e}")
                raise
            versions.append(version)

    return versions
