from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass
class SessionRecord:
    """In-memory representation of a row in the SESSION table.

    Attributes:
        id: Session id assigned by the orchestrator.
        goal: User-supplied goal text.
        status: Last known session status value.
        started_at: Unix timestamp (seconds) when the goal was set.
        finished_at: Unix timestamp when the session finished or failed.
        total_steps: Number of instructions produced when the session ended.
        last_modified: Unix timestamp of the last write.
    """

    id: str
    goal: str
    status: str
    started_at: float
    finished_at: Optional[float] = None
    total_steps: Optional[int] = None
    last_modified: Optional[float] = None


@dataclass
class StepRecord:
    """A completed instruction as stored in the STEP_LOG table."""

    id: Optional[int]
    session_id: str
    step_id: str
    description: str
    label: str
    shape: str
    bbox_json: str
    is_final: bool = False
    is_substep: bool = False
    completed_at: Optional[float] = None


@dataclass
class ChatMessageRecord:
    id: Optional[int]
    session_id: Optional[str]
    role: str
    content: str
    created_at: Optional[float] = None


@dataclass
class ErrorRecord:
    id: Optional[int]
    session_id: Optional[str]
    stage: str
    message: str
    error_type: str
    created_at: Optional[float] = None
