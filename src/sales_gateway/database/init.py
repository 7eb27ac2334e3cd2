"""
Schema migrations for the PostgreSQL store.

Migration files live in migrations/ next to this module and are named
NNN_description.sql. Each is applied once, in numeric order, and recorded
in schema_migrations. Gateways starting at the same time serialize on an
advisory lock, so a file is never applied twice.
"""
import logging
from pathlib import Path
from typing import NamedTuple

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

# Arbitrary key shared by every gateway process
MIGRATION_LOCK_KEY = 7_310_442_001


class Migration(NamedTuple):
    version: str
    path: Path


def discover_migrations(directory: Path = MIGRATIONS_DIR) -> list[Migration]:
    """Migration files in `directory`, ordered by their numeric prefix."""
    if not directory.is_dir():
        logger.warning(f"Migrations directory not found: {directory}")
        return []

    found = []
    for path in directory.glob("*.sql"):
        prefix = path.name.split("_", 1)[0]
        if not prefix.isdigit():
            logger.warning(f"Ignoring {path.name}: no numeric version prefix")
            continue
        found.append(Migration(prefix, path))
    return sorted(found, key=lambda m: int(m.version))


async def _applied_versions(conn: asyncpg.Connection) -> set[str]:
    await conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_migrations ("
        " version VARCHAR(255) PRIMARY KEY,"
        " applied_at TIMESTAMPTZ DEFAULT NOW())"
    )
    return {r["version"] for r in await conn.fetch("SELECT version FROM schema_migrations")}


async def _apply(conn: asyncpg.Connection, migration: Migration) -> None:
    sql = migration.path.read_text(encoding="utf-8")
    if not sql.strip():
        raise RuntimeError(f"Migration {migration.path.name} is empty")
    async with conn.transaction():
        await conn.execute(sql)
        await conn.execute("INSERT INTO schema_migrations (version) VALUES ($1)", migration.version)
    logger.info(f"Applied migration {migration.path.name}")


async def run_migrations(pool: asyncpg.Pool, directory: Path = MIGRATIONS_DIR) -> int:
    """
    Bring the schema up to date.

    Returns:
        Number of migrations applied by this call.
    """
    migrations = discover_migrations(directory)
    async with pool.acquire() as conn:
        await conn.execute("SELECT pg_advisory_lock($1)", MIGRATION_LOCK_KEY)
        try:
            applied = await _applied_versions(conn)
            pending = [m for m in migrations if m.version not in applied]
            for migration in pending:
                await _apply(conn, migration)
        finally:
            await conn.execute("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_KEY)

    if pending:
        logger.info(f"Schema migrated: {len(pending)} migration(s) applied")
    else:
        logger.debug("Schema up to date")
    return len(pending)
