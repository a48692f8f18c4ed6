"""Collaborator interfaces consumed by the step orchestrator."""

from __future__ import annotations

from typing import Optional, Protocol

from models.guidance_models import CaptureResult, Instruction, ModelRequest
from models.guidance_record import SessionRecord
from services.guidance.errors import GuidanceError


class CapturePort(Protocol):
	async def capture(self) -> Optional[CaptureResult]: ...


class ModelPort(Protocol):
	async def complete(self, request: ModelRequest) -> Optional[str]: ...


class RecorderPort(Protocol):
	"""Best-effort persistence; the orchestrator never lets these calls fail a step."""

	async def record_session_start(self, session: SessionRecord) -> None: ...

	async def record_session_update(
		self,
		session_id: str,
		*,
		status: str,
		finished_at: Optional[float] = None,
		total_steps: Optional[int] = None,
	) -> None: ...

	async def record_step_completion(self, session_id: str, instruction: Instruction, completed_at: float) -> None: ...

	async def record_failure(self, error: GuidanceError, session_id: Optional[str] = None) -> None: ...


class NullRecorder:
	"""Recorder that stores nothing; used when persistence is not configured."""

	async def record_session_start(self, session: SessionRecord) -> None:
		return None

	async def record_session_update(self, session_id, *, status, finished_at=None, total_steps=None) -> None:
		return None

	async def record_step_completion(self, session_id: str, instruction: Instruction, completed_at: float) -> None:
		return None

	async def record_failure(self, error: GuidanceError, session_id: Optional[str] = None) -> None:
		return None
