"""Schema setup for the automation store.

Every statement in ``TABLES`` is idempotent, so bringing an older database
forward means replaying them and recording the new version. A database
written by a newer release is refused rather than guessed at.
"""

from __future__ import annotations

import logging

import aiosqlite

from charge_pilot.db.models import SCHEMA_VERSION, TABLES

logger = logging.getLogger(__name__)


async def run_migrations(db: aiosqlite.Connection) -> None:
    found = await get_schema_version(db)
    if found > SCHEMA_VERSION:
        raise RuntimeError(
            f"Database schema version {found} is newer than supported version {SCHEMA_VERSION}"
        )
    if found == SCHEMA_VERSION:
        logger.debug("Schema at version %d", found)
        return

    for statement in TABLES:
        await db.execute(statement)
    await db.execute(
        "INSERT INTO schema_version (id, version) VALUES (1, ?) "
        "ON CONFLICT(id) DO UPDATE SET version = excluded.version",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info("Schema upgraded from version %d to %d", found, SCHEMA_VERSION)


async def get_schema_version(db: aiosqlite.Connection) -> int:
    """Recorded schema version, 0 for an empty database."""
    try:
        async with db.execute("SELECT version FROM schema_version WHERE id = 1") as cursor:
            row = await cursor.fetchone()
    except aiosqlite.OperationalError:
        return 0
    return row[0] if row else 0
