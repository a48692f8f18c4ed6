import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from models.guidance_models import CaptureResult
from services.guidance.step_orchestrator import StepOrchestrator


def step_json(
    description: str = "Click the Spotify dock icon",
    shape: str = "circle",
    box: Optional[List[float]] = None,
    label: str = "Open Spotify",
    is_final: bool = False,
) -> str:
    return json.dumps(
        {
            "step_description": description,
            "shape": shape,
            "bbox": box or [0.40, 0.90, 0.44, 0.96],
            "label": label,
            "is_final_step": is_final,
        }
    )


class FakeCapture:
    """Capture port returning a fixed 1920x1080 synthetic frame."""

    def __init__(self, width: int = 1920, height: int = 1080, dpr: float = 1.0) -> None:
        self.calls = 0
        self.width = width
        self.height = height
        self.dpr = dpr
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None

    async def capture(self) -> CaptureResult:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return CaptureResult(
            image=b"\x89PNG fake",
            width=self.width,
            height=self.height,
            device_pixel_ratio=self.dpr,
            is_synthetic=True,
        )


class FakeModel:
    """Model port replaying queued answers; the last answer repeats."""

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses) or [step_json()]
        self.requests: List[Any] = []

    async def complete(self, request) -> Any:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


class FakeRecorder:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sessions: List[Any] = []
        self.updates: List[Dict[str, Any]] = []
        self.steps: List[Any] = []
        self.failures: List[Any] = []

    async def record_session_start(self, session) -> None:
        if self.fail:
            raise RuntimeError("disk full")
        self.sessions.append(session)

    async def record_session_update(self, session_id, *, status, finished_at=None, total_steps=None) -> None:
        if self.fail:
            raise RuntimeError("disk full")
        self.updates.append({"session_id": session_id, "status": status, "total_steps": total_steps})

    async def record_step_completion(self, session_id, instruction, completed_at) -> None:
        if self.fail:
            raise RuntimeError("disk full")
        self.steps.append((session_id, instruction))

    async def record_failure(self, error, session_id=None) -> None:
        if self.fail:
            raise RuntimeError("disk full")
        self.failures.append((session_id, error))


class Events:
    """Collects everything the orchestrator reports to the presentation layer."""

    def __init__(self) -> None:
        self.instructions: List[Any] = []
        self.completions: List[Any] = []
        self.errors: List[Any] = []

    def register(self, orchestrator: StepOrchestrator):
        return orchestrator.register_callbacks(
            on_instruction=self.instructions.append,
            on_session_complete=self.completions.append,
            on_error=self.errors.append,
        )


@pytest.fixture
def capture() -> FakeCapture:
    return FakeCapture()


@pytest.fixture
def recorder() -> FakeRecorder:
    return FakeRecorder()


@pytest.fixture
def events() -> Events:
    return Events()
