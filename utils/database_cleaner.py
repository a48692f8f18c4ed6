"""Helpers to remove stale guidance rows from the SQLite database."""

import asyncio
import logging
import time
from typing import Dict

from utils.database_init import AsyncDatabaseInitializer

LOGGER = logging.getLogger(__name__)

# table -> timestamp column used for the retention cutoff
RETAINED_TABLES = (
    ("STEP_LOG", "completed_at"),
    ("CHAT_MESSAGE", "created_at"),
    ("ERROR_LOG", "created_at"),
    ("SESSION", "last_modified"),
)


class DatabaseCleaner:
    """Delete step, chat, error and session rows older than the retention window."""

    def __init__(self, db_initializer: AsyncDatabaseInitializer, retention_seconds: int = 30 * 86_400) -> None:
        """
        Args:
            db_initializer: Shared database initializer/connection provider.
            retention_seconds: Age threshold in seconds; rows older than this are removed.
        """
        self._db = db_initializer
        self.retention_seconds = retention_seconds

    async def prune_expired(self) -> Dict[str, int]:
        """Delete rows older than the retention window and return counts removed per table."""
        cutoff = time.time() - self.retention_seconds
        removed: Dict[str, int] = {}
        async with self._db.connection() as conn:
            for table, column in RETAINED_TABLES:
                await conn.execute(f"DELETE FROM {table} WHERE {column} < ?", (cutoff,))
                cur = await conn.execute("SELECT changes()")
                deleted = await cur.fetchone()
                removed[table] = int(deleted[0]) if deleted and deleted[0] is not None else 0
            await conn.commit()
        if any(removed.values()):
            LOGGER.info("Pruned expired guidance rows: %s", removed)
        return removed

    async def run_periodic_cleanup(self, interval_seconds: int = 3_600) -> None:
        """
        Repeatedly prune expired rows at the given interval until cancelled.

        Args:
            interval_seconds: Seconds to sleep between cleanup runs.
        """
        while True:
            try:
                await self.prune_expired()
                await asyncio.sleep(interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception:
                LOGGER.exception("Guidance database cleanup failed")
                await asyncio.sleep(interval_seconds)
