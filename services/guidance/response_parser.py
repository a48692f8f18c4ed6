"""Turn raw model text into a validated instruction or a typed failure.

Nothing in here raises for malformed model output: every way the model can
get it wrong (prose instead of JSON, an explicit decline, a bad box, an
unknown shape) comes back as a `ValidationFailure` with a readable reason.
"""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from models.guidance_models import Instruction, NormalizedBox, OffTaskAssessment, Shape, ValidationFailure

LOGGER = logging.getLogger(__name__)

MIN_BOX_SIZE = 0.005
_TOLERANCE = 1e-9
_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_DECODER = json.JSONDecoder()

SHAPE_ALIASES: Dict[str, Shape] = {
	"circle": Shape.CIRCLE,
	"ellipse": Shape.CIRCLE,
	"oval": Shape.CIRCLE,
	"arrow": Shape.ARROW,
	"pointer": Shape.ARROW,
	"box": Shape.BOX,
	"rect": Shape.BOX,
	"rectangle": Shape.BOX,
	"square": Shape.BOX,
}

# Accepted spellings, newest first.
_DESCRIPTION_KEYS = ("description", "step_description")
_BOX_KEYS = ("boundingBox", "bounding_box", "bbox")
_FINAL_KEYS = ("isFinal", "is_final", "is_final_step")

ParseResult = Union[Instruction, ValidationFailure]


def _scan(text: str, opener: str, accept: Callable[[Any], bool]) -> Optional[Any]:
	"""Return the first decodable JSON value starting at `opener` that `accept` allows."""
	index = text.find(opener)
	while index != -1:
		try:
			value, _ = _DECODER.raw_decode(text, index)
		except (ValueError, RecursionError):
			value = None
		if value is not None and accept(value):
			return value
		index = text.find(opener, index + 1)
	return None


def extract_json(text: str, opener: str = "{", accept: Optional[Callable[[Any], bool]] = None) -> Optional[Any]:
	"""Extract a JSON object (or array with `opener="["`) from free-form model text.

	Fenced code blocks are preferred; otherwise the first top-level span that
	decodes cleanly is used.
	"""
	if not isinstance(text, str):
		return None
	expected = dict if opener == "{" else list
	check = accept or (lambda value: isinstance(value, expected))
	candidates = [match.group(1).strip() for match in _FENCED_BLOCK.finditer(text)]
	candidates.append(text)
	for candidate in candidates:
		found = _scan(candidate, opener, check)
		if found is not None:
			return found
	return None


def _first(data: Dict[str, Any], keys: Sequence[str]) -> Any:
	for key in keys:
		if key in data and data[key] is not None:
			return data[key]
	return None


def _to_number(value: Any) -> Optional[float]:
	if isinstance(value, bool):
		return None
	if isinstance(value, (int, float)):
		number = float(value)
	elif isinstance(value, str):
		try:
			number = float(value.strip())
		except ValueError:
			return None
	else:
		return None
	return number if math.isfinite(number) else None


def _box_corners(raw: Any) -> Tuple[Optional[List[Any]], Optional[str]]:
	"""Map the accepted box encodings onto `[x0, y0, x1, y1]`.

	Two encodings are recognized: the four-number corner array and the older
	`{x, y, width, height}` object. Anything else is rejected.
	"""
	if raw is None:
		return None, "missing boundingBox (expected [x0, y0, x1, y1])"
	if isinstance(raw, (list, tuple)):
		if len(raw) != 4:
			return None, f"boundingBox must have exactly 4 numbers, got {len(raw)}"
		return list(raw), None
	if isinstance(raw, dict) and all(key in raw for key in ("x", "y", "width", "height")):
		x, y = _to_number(raw["x"]), _to_number(raw["y"])
		width, height = _to_number(raw["width"]), _to_number(raw["height"])
		if None in (x, y, width, height):
			return None, "boundingBox values must be finite numbers"
		return [x, y, x + width, y + height], None
	return None, "boundingBox must be an array [x0, y0, x1, y1] or an object {x, y, width, height}"


def _snap(value: float) -> float:
	if -_TOLERANCE < value < 0.0:
		return 0.0
	if 1.0 < value < 1.0 + _TOLERANCE:
		return 1.0
	return value


def parse_bounding_box(raw: Any) -> Tuple[Optional[NormalizedBox], List[str]]:
	"""Validate a raw box and convert it to a clamped `NormalizedBox`."""
	corners, problem = _box_corners(raw)
	if problem:
		return None, [problem]

	numbers = [_to_number(value) for value in corners]
	if any(value is None for value in numbers):
		return None, [f"boundingBox values must be finite numbers, got {corners!r}"]
	x0, y0, x1, y1 = (_snap(value) for value in numbers)

	errors: List[str] = []
	if any(value < 0.0 or value > 1.0 for value in (x0, y0, x1, y1)):
		errors.append(f"boundingBox values must be within [0, 1], got [{x0}, {y0}, {x1}, {y1}]")
	if x0 >= x1:
		errors.append(f"boundingBox x0 ({x0}) must be less than x1 ({x1})")
	if y0 >= y1:
		errors.append(f"boundingBox y0 ({y0}) must be less than y1 ({y1})")
	if errors:
		return None, errors

	width = max(x1 - x0, MIN_BOX_SIZE)
	height = max(y1 - y0, MIN_BOX_SIZE)
	x = x0 if x0 + width <= 1.0 + _TOLERANCE else 1.0 - width
	y = y0 if y0 + height <= 1.0 + _TOLERANCE else 1.0 - height
	return NormalizedBox(x=x, y=y, width=width, height=height), []


def normalize_shape(raw: Any) -> Tuple[Optional[Shape], Optional[str]]:
	if not isinstance(raw, str) or not raw.strip():
		return None, 'missing or invalid "shape" (must be one of circle, arrow, box)'
	shape = SHAPE_ALIASES.get(raw.strip().lower())
	if shape is None:
		return None, f'invalid "shape": must be one of circle, arrow, box; got {raw!r}'
	return shape, None


def _required_text(data: Dict[str, Any], keys: Sequence[str], name: str) -> Tuple[str, Optional[str]]:
	value = _first(data, keys)
	if not isinstance(value, str) or not value.strip():
		return "", f'missing or empty "{name}" (must be a non-empty string)'
	return value.strip(), None


def declined_reason(data: Dict[str, Any]) -> Optional[str]:
	"""Return the model's own decline reason, if the payload is an explicit decline.

	Both `{"error": true, "reason": "..."}` and `{"error": "not_visible"}` are
	accepted.
	"""
	marker = data.get("error")
	reason = data.get("reason")
	reason = reason.strip() if isinstance(reason, str) else ""
	if marker is True:
		return reason or "model was unable to determine the next step"
	if isinstance(marker, str) and marker.strip():
		return reason or marker.strip()
	return None


def validate_step(data: Dict[str, Any], *, is_substep: bool = False) -> ParseResult:
	"""Validate one decoded step object, collecting every violated rule."""
	errors: List[str] = []

	box, box_errors = parse_bounding_box(_first(data, _BOX_KEYS))
	errors.extend(box_errors)

	shape, shape_error = normalize_shape(data.get("shape"))
	if shape_error:
		errors.append(shape_error)

	is_final = _first(data, _FINAL_KEYS)
	if is_final is None:
		is_final = False
	elif not isinstance(is_final, bool):
		errors.append('"isFinal" must be a boolean')

	description, description_error = _required_text(data, _DESCRIPTION_KEYS, "description")
	if description_error:
		errors.append(description_error)
	label, label_error = _required_text(data, ("label",), "label")
	if label_error:
		errors.append(label_error)

	if errors:
		return ValidationFailure(reason="; ".join(errors))

	step_id = data.get("id")
	return Instruction(
		id=step_id.strip() if isinstance(step_id, str) and step_id.strip() else None,
		description=description,
		shape=shape,
		bounding_box=box,
		label=label,
		is_final=is_final,
		is_substep=is_substep,
	)


def parse_step_response(raw_response: Any) -> ParseResult:
	"""Return a validated `Instruction` or a `ValidationFailure` for raw model text."""
	if not isinstance(raw_response, str) or not raw_response.strip():
		return ValidationFailure(reason="empty or non-text response")

	data = extract_json(raw_response)
	if data is None:
		LOGGER.debug("No JSON object found in model response: %.200s", raw_response)
		return ValidationFailure(reason="could not extract valid JSON from model response")

	reason = declined_reason(data)
	if reason is not None:
		return ValidationFailure(reason=reason)
	return validate_step(data)


def _is_step_list(value: Any) -> bool:
	return isinstance(value, list) and bool(value) and all(isinstance(item, dict) for item in value)


def parse_substeps(raw_response: Any, limit: int = 3) -> List[Instruction]:
	"""Return up to `limit` valid refocus substeps; invalid items are dropped."""
	if not isinstance(raw_response, str) or not raw_response.strip():
		return []
	wrapper = extract_json(raw_response, accept=lambda value: isinstance(value, dict) and "substeps" in value)
	items = wrapper.get("substeps") if wrapper else None
	if not _is_step_list(items):
		items = extract_json(raw_response, opener="[", accept=_is_step_list)
	if not items:
		return []

	substeps: List[Instruction] = []
	for item in items:
		result = validate_step(item, is_substep=True)
		if isinstance(result, ValidationFailure):
			LOGGER.debug("Dropping invalid substep: %s", result.reason)
			continue
		substeps.append(result)
	return substeps[:limit]


def parse_off_task(raw_response: Any) -> Optional[OffTaskAssessment]:
	"""Return the off-task verdict, or None when the answer cannot be read."""
	data = extract_json(raw_response) if isinstance(raw_response, str) else None
	if data is None:
		return None
	off_task = _first(data, ("isOffTask", "is_off_task"))
	if not isinstance(off_task, bool):
		return None
	needs_substeps = _first(data, ("needsSubsteps", "needs_substeps"))
	reason = data.get("reason")
	return OffTaskAssessment(
		is_off_task=off_task,
		needs_substeps=needs_substeps if isinstance(needs_substeps, bool) else False,
		reason=reason.strip() if isinstance(reason, str) else "",
	)
