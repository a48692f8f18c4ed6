"""File-based recorder writing structured JSON / JSONL logs.

Layout under the base directory:

    sessions/<session_id>.json     one document per session, rewritten on update
    logs/<session_id>.jsonl        one line per completed step
    errors/<YYYY-MM-DD>.jsonl      one line per hard failure

Step logs are rotated to `<session_id>.<n>.jsonl` once they grow beyond
`max_log_size_mb`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles

from models.guidance_models import Instruction
from models.guidance_record import SessionRecord
from services.guidance.errors import GuidanceError

LOGGER = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]")


def _safe_name(value: str) -> str:
    cleaned = _SAFE_NAME.sub("_", value).strip("._")
    return cleaned or "unknown"


class JsonlRecorder:
    """Recorder port that writes JSON files with aiofiles."""

    def __init__(self, base_dir: Path | str, max_log_size_mb: float = 10.0) -> None:
        self.base_dir = Path(base_dir).expanduser()
        self.sessions_dir = self.base_dir / "sessions"
        self.logs_dir = self.base_dir / "logs"
        self.errors_dir = self.base_dir / "errors"
        for directory in (self.sessions_dir, self.logs_dir, self.errors_dir):
            directory.mkdir(parents=True, exist_ok=True)
        self.max_log_bytes = int(max_log_size_mb * 1024 * 1024)
        self._lock = asyncio.Lock()

    def session_path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{_safe_name(session_id)}.json"

    def step_log_path(self, session_id: str) -> Path:
        return self.logs_dir / f"{_safe_name(session_id)}.jsonl"

    def error_log_path(self, when: Optional[float] = None) -> Path:
        day = datetime.fromtimestamp(when or time.time(), tz=timezone.utc).strftime("%Y-%m-%d")
        return self.errors_dir / f"{day}.jsonl"

    async def record_session_start(self, session: SessionRecord) -> None:
        document = asdict(session)
        document["last_modified"] = document.get("last_modified") or time.time()
        async with self._lock:
            await self._write_json(self.session_path(session.id), document)

    async def record_session_update(
        self,
        session_id: str,
        *,
        status: str,
        finished_at: Optional[float] = None,
        total_steps: Optional[int] = None,
    ) -> bool:
        """Merge status fields into the session document. Returns False if it does not exist."""
        path = self.session_path(session_id)
        async with self._lock:
            document = await self._read_json(path)
            if document is None:
                return False
            document["status"] = status
            if finished_at is not None:
                document["finished_at"] = finished_at
            if total_steps is not None:
                document["total_steps"] = total_steps
            document["last_modified"] = time.time()
            await self._write_json(path, document)
        return True

    async def record_step_completion(self, session_id: str, instruction: Instruction, completed_at: float) -> None:
        entry = {
            "type": "step.completed",
            "session_id": session_id,
            "step_id": instruction.id,
            "description": instruction.description,
            "label": instruction.label,
            "shape": instruction.shape.value,
            "bounding_box": instruction.bounding_box.to_dict(),
            "is_final": instruction.is_final,
            "is_substep": instruction.is_substep,
            "completed_at": completed_at,
        }
        path = self.step_log_path(session_id)
        async with self._lock:
            await self._rotate_if_needed(path)
            await self._append_line(path, entry)

    async def record_failure(self, error: GuidanceError, session_id: Optional[str] = None) -> None:
        now = time.time()
        entry = {"type": "error", "session_id": session_id, "created_at": now}
        if isinstance(error, GuidanceError):
            entry.update(error.to_dict())
        else:
            entry.update({"message": str(error), "stage": "internal", "type": type(error).__name__})
        async with self._lock:
            await self._append_line(self.error_log_path(now), entry)

    async def read_step_log(self, session_id: str) -> list[Dict[str, Any]]:
        """Return the entries of the current (unrotated) step log for a session."""
        path = self.step_log_path(session_id)
        if not path.exists():
            return []
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            content = await f.read()
        return [json.loads(line) for line in content.splitlines() if line.strip()]

    async def _rotate_if_needed(self, path: Path) -> None:
        if self.max_log_bytes <= 0 or not path.exists():
            return
        if path.stat().st_size < self.max_log_bytes:
            return
        index = 1
        while path.with_name(f"{path.stem}.{index}.jsonl").exists():
            index += 1
        rotated = path.with_name(f"{path.stem}.{index}.jsonl")
        path.rename(rotated)
        LOGGER.info("Rotated step log %s -> %s", path.name, rotated.name)

    @staticmethod
    async def _append_line(path: Path, entry: Dict[str, Any]) -> None:
        async with aiofiles.open(path, "a", encoding="utf-8") as f:
            await f.write(json.dumps(entry, ensure_ascii=False) + "\n")

    @staticmethod
    async def _write_json(path: Path, document: Dict[str, Any]) -> None:
        tmp_path = path.with_suffix(".json.tmp")
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(document, ensure_ascii=False, indent=2))
        tmp_path.replace(path)

    @staticmethod
    async def _read_json(path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            content = await f.read()
        try:
            return json.loads(content)
        except json.JSONDecodeError:
            LOGGER.warning("Session document %s is not valid JSON; rewriting", path.name)
            return {}
