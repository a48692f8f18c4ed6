"""Error taxonomy for the guidance workflow."""

from __future__ import annotations

from typing import Any, Dict


class GuidanceError(Exception):
	"""Base error reported through the `on_error` callback.

	`stage` names where the failure happened so callers can tell capture,
	model, validation, precondition and input problems apart.
	"""

	stage = "internal"

	def __init__(self, message: str) -> None:
		super().__init__(message)
		self.message = message

	def to_dict(self) -> Dict[str, Any]:
		return {"message": self.message, "stage": self.stage, "type": type(self).__name__}


class InputError(GuidanceError):
	stage = "input"


class PreconditionError(GuidanceError):
	stage = "precondition"


class CaptureError(GuidanceError):
	stage = "capture"


class ModelError(GuidanceError):
	stage = "model"


class ResponseValidationError(GuidanceError):
	stage = "validation"
