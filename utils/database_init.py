import os
import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import aiosqlite

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS SESSION (
        id TEXT PRIMARY KEY,
        goal TEXT NOT NULL,
        status TEXT NOT NULL,
        started_at REAL NOT NULL,
        finished_at REAL,
        total_steps INTEGER,
        last_modified REAL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS STEP_LOG (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL,
        step_id TEXT NOT NULL,
        description TEXT NOT NULL,
        label TEXT NOT NULL,
        shape TEXT NOT NULL,
        bbox_json TEXT NOT NULL,
        is_final INTEGER NOT NULL DEFAULT 0,
        is_substep INTEGER NOT NULL DEFAULT 0,
        completed_at REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_step_log_session_id ON STEP_LOG(session_id)",
    """
    CREATE TABLE IF NOT EXISTS CHAT_MESSAGE (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ERROR_LOG (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT,
        stage TEXT NOT NULL,
        message TEXT NOT NULL,
        error_type TEXT NOT NULL,
        created_at REAL NOT NULL
    )
    """,
)


class AsyncDatabaseInitializer:
    """
    Manage the async SQLite database that records guidance sessions.

    - The database file is located at: <DATABASE_DIR>/guidance.db
    - The directory comes from `db_dir` when given, otherwise from the
      DATABASE_DIR environment variable. A RuntimeError is raised if neither
      is set or the path is not a usable directory.
    - On the first call to `ensure_database()` for a given instance the
      tables are created; with `reset_on_start=True` any existing database
      file is deleted first.
    - Subsequent calls to `ensure_database()` on the same instance are no-ops,
      so it is safe for `connection()` to call it.
    """

    def __init__(self, db_dir: Optional[Path | str] = None, reset_on_start: bool = False) -> None:
        env_dir = str(db_dir) if db_dir is not None else os.getenv("DATABASE_DIR")

        if env_dir is None or not env_dir.strip():
            raise RuntimeError(
                "DATABASE_DIR environment variable must be set to a writable "
                "directory path where the SQLite database file will be stored."
            )

        directory = Path(env_dir).expanduser()

        # If the path exists but is not a directory, that's a configuration error.
        if directory.exists() and not directory.is_dir():
            raise RuntimeError(
                f"DATABASE_DIR={env_dir!r} points to a file, not a directory "
                f"({directory}). Please set DATABASE_DIR to a directory path."
            )

        try:
            directory.mkdir(parents=True, exist_ok=True)
        except Exception as exc:
            raise RuntimeError(
                f"Failed to create or access database directory at {directory}"
            ) from exc

        self.db_dir = directory
        self.db_path = self.db_dir / "guidance.db"
        self.reset_on_start = reset_on_start

        # Internal flag to make schema creation one-time per instance.
        self._initialized = False

    async def ensure_database(self) -> None:
        """
        Ensure the SQLite database and its tables exist at `self.db_path`.

        Subsequent calls on the same instance are no-ops.
        """
        if self._initialized:
            return

        if self.reset_on_start and self.db_path.exists():
            try:
                self.db_path.unlink()
            except Exception as exc:
                raise RuntimeError(
                    f"Failed to delete existing database at {self.db_path}"
                ) from exc

        max_attempts = 3
        for attempt in range(1, max_attempts + 1):
            try:
                async with aiosqlite.connect(self.db_path) as db:
                    for statement in SCHEMA:
                        await db.execute(statement)
                    await db.commit()
                break
            except FileNotFoundError:
                # On some platforms a transient missing file error may occur; retry a few times.
                if attempt >= max_attempts:
                    raise
                await asyncio.sleep(0.1 * attempt)

        self._initialized = True

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Async context manager yielding an `aiosqlite.Connection`.

        The schema is created on first use via `ensure_database()`.
        """
        await self.ensure_database()
        conn = await aiosqlite.connect(self.db_path)
        try:
            yield conn
        finally:
            await conn.close()
