"""Domain models for guided step-by-step sessions."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class SessionStatus(str, Enum):
	IDLE = "idle"
	READY = "ready"
	IN_PROGRESS = "in-progress"
	FINISHED = "finished"
	ERROR = "error"


class Shape(str, Enum):
	CIRCLE = "circle"
	ARROW = "arrow"
	BOX = "box"


@dataclass(frozen=True)
class NormalizedBox:
	"""Rectangle in [0,1] coordinates relative to the screenshot."""

	x: float
	y: float
	width: float
	height: float

	def as_corners(self) -> List[float]:
		"""Return the box as `[x0, y0, x1, y1]`."""
		return [self.x, self.y, self.x + self.width, self.y + self.height]

	def to_dict(self) -> Dict[str, float]:
		return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True)
class PixelBox:
	x: int
	y: int
	width: int
	height: int

	def to_dict(self) -> Dict[str, int]:
		return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass
class CaptureResult:
	"""A single screen snapshot as returned by a capture port.

	Attributes:
		image: Encoded image bytes (PNG unless `format` says otherwise).
		width: Full screen width in physical pixels.
		height: Full screen height in physical pixels.
		device_pixel_ratio: Physical pixels per logical point.
		is_synthetic: True when the image is a mock/placeholder rather than a real grab.
		taken_at: Unix timestamp (seconds) of the capture.
		format: Image format of `image`, e.g. "png" or "jpeg".
	"""

	image: bytes
	width: int
	height: int
	device_pixel_ratio: float = 1.0
	is_synthetic: bool = False
	taken_at: float = field(default_factory=lambda: time.time())
	format: str = "png"


@dataclass(frozen=True)
class CaptureMeta:
	"""Capture details attached to an instruction for the presentation layer."""

	width: int
	height: int
	device_pixel_ratio: float
	is_synthetic: bool
	taken_at: float

	@classmethod
	def from_capture(cls, capture: CaptureResult) -> "CaptureMeta":
		return cls(
			width=capture.width,
			height=capture.height,
			device_pixel_ratio=capture.device_pixel_ratio,
			is_synthetic=capture.is_synthetic,
			taken_at=capture.taken_at,
		)

	def to_dict(self) -> Dict[str, Any]:
		return {
			"width": self.width,
			"height": self.height,
			"device_pixel_ratio": self.device_pixel_ratio,
			"is_synthetic": self.is_synthetic,
			"taken_at": self.taken_at,
		}


@dataclass
class Instruction:
	"""One normalized next action with a screen-region annotation.

	`pixel_box` and `capture` are filled in by the orchestrator exactly once,
	right after the instruction is produced; they are a convenience for the
	presentation layer and never feed back into the model.
	"""

	id: Optional[str]
	description: str
	shape: Shape
	bounding_box: NormalizedBox
	label: str
	is_final: bool = False
	is_substep: bool = False
	pixel_box: Optional[PixelBox] = None
	capture: Optional[CaptureMeta] = None

	def compact(self) -> Dict[str, Any]:
		"""Return the reduced form sent back to the model as history."""
		return {
			"description": self.description,
			"label": self.label,
			"shape": self.shape.value,
			"box": [round(value, 4) for value in self.bounding_box.as_corners()],
		}

	def to_dict(self) -> Dict[str, Any]:
		return {
			"id": self.id,
			"description": self.description,
			"shape": self.shape.value,
			"bounding_box": self.bounding_box.to_dict(),
			"label": self.label,
			"is_final": self.is_final,
			"is_substep": self.is_substep,
			"pixel_box": self.pixel_box.to_dict() if self.pixel_box else None,
			"capture": self.capture.to_dict() if self.capture else None,
		}


@dataclass(frozen=True)
class ValidationFailure:
	"""Validator outcome when no instruction could be produced."""

	reason: str


@dataclass(frozen=True)
class OffTaskAssessment:
	is_off_task: bool
	needs_substeps: bool
	reason: str = ""


@dataclass(frozen=True)
class ModelRequest:
	"""Everything a model port needs for one completion."""

	system_instructions: str
	user_goal: str
	image_b64: Optional[str] = None
	image_format: str = "png"
	extra_context: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StepPrompt:
	system_instructions: str
	user_goal: str
	extra_context: Dict[str, Any]


@dataclass
class GuidanceSession:
	"""State for the one goal currently being pursued."""

	session_id: str
	goal: str
	started_at: float
	status: SessionStatus = SessionStatus.READY
	current: Optional[Instruction] = None
	history: List[Instruction] = field(default_factory=list)
	in_flight: bool = False
	substeps: List[Instruction] = field(default_factory=list)
	in_substep_mode: bool = False
	off_task_detected_at: Optional[float] = None

	@property
	def step_count(self) -> int:
		return len(self.history) + (1 if self.current else 0)

	def duration_ms(self, now: Optional[float] = None) -> int:
		return int(((now or time.time()) - self.started_at) * 1000)

	def all_steps(self) -> List[Instruction]:
		return self.history + ([self.current] if self.current else [])


@dataclass(frozen=True)
class SessionSummary:
	goal: str
	total_steps: int
	duration_ms: int
	completed_at: float
	steps: List[Instruction]

	def to_dict(self) -> Dict[str, Any]:
		return {
			"goal": self.goal,
			"total_steps": self.total_steps,
			"duration_ms": self.duration_ms,
			"completed_at": self.completed_at,
			"steps": [step.to_dict() for step in self.steps],
		}


@dataclass(frozen=True)
class GuidanceState:
	"""Read-only snapshot returned by `StepOrchestrator.get_state`."""

	goal: Optional[str]
	session_id: Optional[str]
	step_number: int
	status: SessionStatus
	session_duration_ms: Optional[int]
	in_substep_mode: bool = False
	current_instruction: Optional[Dict[str, Any]] = None

	def to_dict(self) -> Dict[str, Any]:
		return {
			"goal": self.goal,
			"session_id": self.session_id,
			"step_number": self.step_number,
			"status": self.status.value,
			"session_duration_ms": self.session_duration_ms,
			"in_substep_mode": self.in_substep_mode,
			"current_instruction": self.current_instruction,
		}
