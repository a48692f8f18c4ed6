"""Async Data Access Layer for guidance sessions, steps, chat and errors.

`GuidanceDAL` is the SQLite recorder used by the step orchestrator, plus the
read helpers used by the HTTP routes. It works with
`utils.database_init.AsyncDatabaseInitializer`.
"""

from __future__ import annotations

import json
import time
from typing import Any, Dict, List, Optional, Sequence

from models.guidance_models import Instruction
from models.guidance_record import ChatMessageRecord, ErrorRecord, SessionRecord, StepRecord
from services.guidance.errors import GuidanceError
from utils.database_init import AsyncDatabaseInitializer


class GuidanceDAL:
    """Data access layer for guidance records.

    The constructor accepts an `AsyncDatabaseInitializer` (or any object
    exposing an async `connection()` context manager that yields an
    `aiosqlite.Connection`).
    """

    _SESSION_COLUMNS = "id, goal, status, started_at, finished_at, total_steps, last_modified"
    _STEP_COLUMNS = (
        "id, session_id, step_id, description, label, shape, bbox_json, is_final, is_substep, completed_at"
    )

    def __init__(self, db_initializer: AsyncDatabaseInitializer) -> None:
        self._db = db_initializer

    # -- recorder port -------------------------------------------------

    async def record_session_start(self, session: SessionRecord) -> None:
        """Insert (or replace) the SESSION row for a newly started goal."""
        last_modified = session.last_modified or time.time()
        async with self._db.connection() as conn:
            await conn.execute(
                f"INSERT OR REPLACE INTO SESSION ({self._SESSION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    session.id,
                    session.goal,
                    session.status,
                    session.started_at,
                    session.finished_at,
                    session.total_steps,
                    last_modified,
                ),
            )
            await conn.commit()

    async def record_session_update(
        self,
        session_id: str,
        *,
        status: str,
        finished_at: Optional[float] = None,
        total_steps: Optional[int] = None,
    ) -> bool:
        """Update status/finish fields of a SESSION row. Returns True if a row was changed."""
        async with self._db.connection() as conn:
            await conn.execute(
                "UPDATE SESSION SET status = ?, finished_at = COALESCE(?, finished_at), "
                "total_steps = COALESCE(?, total_steps), last_modified = ? WHERE id = ?",
                (status, finished_at, total_steps, time.time(), session_id),
            )
            await conn.commit()
            cur = await conn.execute("SELECT changes()")
            changed = await cur.fetchone()
            return bool(changed and changed[0] > 0)

    async def record_step_completion(self, session_id: str, instruction: Instruction, completed_at: float) -> int:
        """Append a STEP_LOG row for a confirmed instruction and return its id."""
        async with self._db.connection() as conn:
            cur = await conn.execute(
                "INSERT INTO STEP_LOG (session_id, step_id, description, label, shape, bbox_json, "
                "is_final, is_substep, completed_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    session_id,
                    instruction.id or "",
                    instruction.description,
                    instruction.label,
                    instruction.shape.value,
                    json.dumps(instruction.bounding_box.to_dict()),
                    int(instruction.is_final),
                    int(instruction.is_substep),
                    completed_at,
                ),
            )
            await conn.commit()
            return cur.lastrowid

    async def record_failure(self, error: GuidanceError, session_id: Optional[str] = None) -> int:
        """Append an ERROR_LOG row and return its id."""
        stage = getattr(error, "stage", "internal")
        message = getattr(error, "message", None) or str(error)
        async with self._db.connection() as conn:
            cur = await conn.execute(
                "INSERT INTO ERROR_LOG (session_id, stage, message, error_type, created_at) VALUES (?, ?, ?, ?, ?)",
                (session_id, stage, message, type(error).__name__, time.time()),
            )
            await conn.commit()
            return cur.lastrowid

    # -- chat ----------------------------------------------------------

    async def record_chat_message(self, role: str, content: str, session_id: Optional[str] = None) -> ChatMessageRecord:
        created_at = time.time()
        async with self._db.connection() as conn:
            cur = await conn.execute(
                "INSERT INTO CHAT_MESSAGE (session_id, role, content, created_at) VALUES (?, ?, ?, ?)",
                (session_id, role, content, created_at),
            )
            await conn.commit()
            return ChatMessageRecord(
                id=cur.lastrowid, session_id=session_id, role=role, content=content, created_at=created_at
            )

    async def load_chat_history(self, session_id: Optional[str] = None, limit: int = 50) -> List[ChatMessageRecord]:
        """Return the most recent chat messages in chronological order."""
        where, params = ("WHERE session_id = ?", (session_id,)) if session_id else ("", ())
        async with self._db.connection() as conn:
            cur = await conn.execute(
                f"SELECT id, session_id, role, content, created_at FROM CHAT_MESSAGE {where} "
                "ORDER BY id DESC LIMIT ?",
                (*params, limit),
            )
            rows = await cur.fetchall()
        return [ChatMessageRecord(*row) for row in reversed(rows)]

    # -- reads ---------------------------------------------------------

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        """Return SessionRecord for `session_id`, or None if not found."""
        async with self._db.connection() as conn:
            cur = await conn.execute(
                f"SELECT {self._SESSION_COLUMNS} FROM SESSION WHERE id = ?",
                (session_id,),
            )
            row = await cur.fetchone()
            return SessionRecord(*row) if row else None

    async def list_sessions(self, limit: int = 100, offset: int = 0) -> List[SessionRecord]:
        """List sessions, most recently modified first."""
        async with self._db.connection() as conn:
            cur = await conn.execute(
                f"SELECT {self._SESSION_COLUMNS} FROM SESSION ORDER BY last_modified DESC LIMIT ? OFFSET ?",
                (limit, offset),
            )
            rows = await cur.fetchall()
            return [SessionRecord(*row) for row in rows]

    async def list_steps(self, session_id: Optional[str] = None) -> List[StepRecord]:
        """Return logged steps in completion order, optionally for one session."""
        where, params = ("WHERE session_id = ?", (session_id,)) if session_id else ("", ())
        async with self._db.connection() as conn:
            cur = await conn.execute(f"SELECT {self._STEP_COLUMNS} FROM STEP_LOG {where} ORDER BY id", params)
            rows = await cur.fetchall()
            return [self._row_to_step(row) for row in rows]

    async def list_errors(self, limit: int = 50) -> List[ErrorRecord]:
        async with self._db.connection() as conn:
            cur = await conn.execute(
                "SELECT id, session_id, stage, message, error_type, created_at FROM ERROR_LOG ORDER BY id DESC LIMIT ?",
                (limit,),
            )
            rows = await cur.fetchall()
            return [ErrorRecord(*row) for row in rows]

    async def get_stats(self) -> Dict[str, Any]:
        """Return row counts per table and the database file size."""
        counts: Dict[str, int] = {}
        async with self._db.connection() as conn:
            for key, table in (
                ("total_sessions", "SESSION"),
                ("total_steps", "STEP_LOG"),
                ("total_chat_messages", "CHAT_MESSAGE"),
                ("total_errors", "ERROR_LOG"),
            ):
                cur = await conn.execute(f"SELECT COUNT(*) FROM {table}")
                row = await cur.fetchone()
                counts[key] = int(row[0]) if row else 0
        db_path = getattr(self._db, "db_path", None)
        size = db_path.stat().st_size if db_path is not None and db_path.exists() else 0
        counts["disk_usage_mb"] = round(size / (1024 * 1024), 2)
        return counts

    @staticmethod
    def _row_to_step(row: Sequence[Any]) -> StepRecord:
        """Convert a STEP_LOG row tuple into a StepRecord."""
        return StepRecord(
            id=row[0],
            session_id=row[1],
            step_id=row[2],
            description=row[3],
            label=row[4],
            shape=row[5],
            bbox_json=row[6],
            is_final=bool(row[7]),
            is_substep=bool(row[8]),
            completed_at=row[9],
        )
