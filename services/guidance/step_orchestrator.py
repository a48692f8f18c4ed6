"""Drive one guided session: capture, ask the model, validate, notify, advance.

The orchestrator owns the single active `GuidanceSession`. Every operation runs
on one event loop; the only suspension points are the capture and model
calls, so the in-flight flag is checked and set without awaiting in between.
"""

from __future__ import annotations

import asyncio
import base64
import inspect
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, List, Optional, Set
from uuid import uuid4

from models.guidance_models import (
	CaptureMeta,
	CaptureResult,
	GuidanceSession,
	GuidanceState,
	Instruction,
	ModelRequest,
	SessionStatus,
	SessionSummary,
	ValidationFailure,
)
from models.guidance_record import SessionRecord
from services.guidance.errors import (
	CaptureError,
	GuidanceError,
	InputError,
	ModelError,
	PreconditionError,
	ResponseValidationError,
)
from services.guidance.geometry import to_pixel_box
from services.guidance.ports import CapturePort, ModelPort, NullRecorder, RecorderPort
from services.guidance.prompts import off_task_prompt, refocus_prompt, step_prompt
from services.guidance.response_parser import parse_off_task, parse_step_response, parse_substeps

LOGGER = logging.getLogger(__name__)

Callback = Callable[[Any], Any]
TERMINAL_STATUSES = (SessionStatus.FINISHED, SessionStatus.ERROR)


@dataclass
class GuidanceCallbacks:
	"""The single active set of presentation-layer callbacks."""

	on_instruction: Optional[Callback] = None
	on_session_complete: Optional[Callback] = None
	on_error: Optional[Callback] = None


def _encode_image(capture: CaptureResult) -> str:
	return base64.b64encode(capture.image).decode("ascii")


class StepOrchestrator:
	"""Session-scoped state machine for step-by-step desktop guidance."""

	def __init__(
		self,
		capture: CapturePort,
		model: ModelPort,
		recorder: Optional[RecorderPort] = None,
		*,
		max_substeps: int = 3,
	) -> None:
		if capture is None or model is None:
			raise ValueError("Capture and model ports are required.")
		self.capture_port = capture
		self.model_port = model
		self.recorder = recorder or NullRecorder()
		self.max_substeps = max_substeps
		self._session: Optional[GuidanceSession] = None
		self._callbacks = GuidanceCallbacks()
		self._pending: Set[asyncio.Task] = set()
		self._last_error: Optional[GuidanceError] = None

	# ------------------------------------------------------------------
	# Callback registration
	# ------------------------------------------------------------------

	def register_callbacks(
		self,
		on_instruction: Optional[Callback] = None,
		on_session_complete: Optional[Callback] = None,
		on_error: Optional[Callback] = None,
	) -> GuidanceCallbacks:
		"""Replace any previous registration and return the new one as a token."""
		self._callbacks = GuidanceCallbacks(
			on_instruction=on_instruction,
			on_session_complete=on_session_complete,
			on_error=on_error,
		)
		return self._callbacks

	def unregister_callbacks(self, token: GuidanceCallbacks) -> None:
		"""Clear the registration, but only if `token` is still the active one."""
		if self._callbacks is token:
			self._callbacks = GuidanceCallbacks()

	# ------------------------------------------------------------------
	# Public operations
	# ------------------------------------------------------------------

	def set_goal(self, goal: Any) -> bool:
		"""Start a new session for `goal`, discarding whatever came before.

		Returns False (and reports an input error) when the goal is empty.
		"""
		if not isinstance(goal, str) or not goal.strip():
			self._report_soon(InputError("Invalid goal: goal must be a non-empty string"))
			return False

		previous = self._session
		if previous is not None and previous.in_flight:
			LOGGER.info("Discarding session %s while a step is still in flight", previous.session_id)

		session = GuidanceSession(session_id=uuid4().hex, goal=goal.strip(), started_at=time.time())
		self._session = session
		self._last_error = None
		LOGGER.info("Started guidance session %s: %s", session.session_id, session.goal)

		self._record(
			self.recorder.record_session_start,
			SessionRecord(
				id=session.session_id,
				goal=session.goal,
				status=session.status.value,
				started_at=session.started_at,
				last_modified=session.started_at,
			),
		)
		return True

	async def request_next_step(self) -> None:
		"""Produce the next instruction for the active session.

		A call that arrives while another one is in flight returns immediately
		without touching any state.
		"""
		session = self._session
		if session is not None and session.in_flight:
			LOGGER.warning(
				"request_next_step already in progress for session %s; ignoring duplicate call",
				session.session_id,
			)
			return
		if session is None:
			await self._report(PreconditionError("Precondition failed: no goal set; call set_goal() first"), None)
			return
		if session.status in TERMINAL_STATUSES:
			LOGGER.info("Session %s is %s; ignoring request_next_step", session.session_id, session.status.value)
			return

		session.in_flight = True
		try:
			await self._produce_next_step(session)
		finally:
			session.in_flight = False

	async def mark_done(self, instruction_id: str) -> bool:
		"""Confirm the current instruction and advance, or finish on a final step.

		Returns False when `instruction_id` is not the current instruction.
		"""
		session = self._session
		current = session.current if session else None
		if current is None or current.id != instruction_id:
			expected = current.id if current else None
			await self._report(InputError(f"Step id mismatch: expected {expected!r}, got {instruction_id!r}"), None)
			return False

		if session.status == SessionStatus.FINISHED:
			LOGGER.info("Session %s already finished; ignoring mark_done", session.session_id)
			return True
		if session.in_flight:
			LOGGER.info("Next step for session %s is already being prepared; ignoring mark_done", session.session_id)
			return True

		self._record(self.recorder.record_step_completion, session.session_id, current, time.time())

		if current.is_final:
			await self._finish(session)
		else:
			await self.request_next_step()
		return True

	async def mark_substep_done(self, substep_id: str) -> None:
		"""Advance through refocus substeps; resume the main flow after the last one."""
		session = self._session
		if session is None or not session.in_substep_mode or not session.substeps:
			return
		index = next((i for i, substep in enumerate(session.substeps) if substep.id == substep_id), None)
		if index is None:
			LOGGER.debug("Unknown substep id %r; ignoring", substep_id)
			return

		self._record(self.recorder.record_step_completion, session.session_id, session.substeps[index], time.time())

		if index < len(session.substeps) - 1:
			await self._notify(self._callbacks.on_instruction, session.substeps[index + 1])
			return

		session.in_substep_mode = False
		session.substeps = []
		session.off_task_detected_at = None
		LOGGER.info("Refocus substeps complete for session %s; resuming main flow", session.session_id)
		await self.request_next_step()

	async def detect_and_handle_off_task(self) -> bool:
		"""Ask the model whether the user drifted away and, if so, emit refocus substeps.

		This check is advisory: capture, model and parsing problems are logged
		and treated as "on task". Returns True when substeps were emitted.
		"""
		session = self._session
		if session is None or session.status in TERMINAL_STATUSES or session.in_substep_mode:
			return False
		if session.in_flight:
			LOGGER.info("Skipping off-task check for session %s; a capture is already in flight", session.session_id)
			return False

		session.in_flight = True
		try:
			return await self._check_off_task(session)
		finally:
			session.in_flight = False

	async def generate_substeps_to_refocus(self) -> bool:
		"""Request refocus substeps for the active session from a fresh capture."""
		session = self._session
		if session is None or session.status in TERMINAL_STATUSES or session.in_flight:
			return False

		session.in_flight = True
		try:
			try:
				capture = await self._capture()
			except GuidanceError as error:
				LOGGER.warning("Could not capture screen for refocus substeps: %s", error.message)
				return False
			return await self._refocus(session, capture)
		finally:
			session.in_flight = False

	def get_state(self) -> GuidanceState:
		session = self._session
		if session is None:
			return GuidanceState(
				goal=None,
				session_id=None,
				step_number=0,
				status=SessionStatus.IDLE,
				session_duration_ms=None,
			)
		return GuidanceState(
			goal=session.goal,
			session_id=session.session_id,
			step_number=session.step_count,
			status=session.status,
			session_duration_ms=session.duration_ms(),
			in_substep_mode=session.in_substep_mode,
			current_instruction=session.current.to_dict() if session.current else None,
		)

	@property
	def current_instruction(self) -> Optional[Instruction]:
		return self._session.current if self._session else None

	@property
	def step_history(self) -> List[Instruction]:
		return list(self._session.history) if self._session else []

	@property
	def substeps(self) -> List[Instruction]:
		return list(self._session.substeps) if self._session else []

	@property
	def last_error(self) -> Optional[GuidanceError]:
		"""Most recent error reported through `on_error`; cleared by a new goal."""
		return self._last_error

	async def drain(self) -> None:
		"""Wait for outstanding best-effort recorder and notification tasks."""
		while self._pending:
			await asyncio.gather(*list(self._pending), return_exceptions=True)

	# ------------------------------------------------------------------
	# Step production
	# ------------------------------------------------------------------

	async def _produce_next_step(self, session: GuidanceSession) -> None:
		session.status = SessionStatus.IN_PROGRESS
		try:
			capture = await self._capture()
			prompt = step_prompt(session.goal, session.all_steps(), CaptureMeta.from_capture(capture))
			raw = await self._complete(
				ModelRequest(
					system_instructions=prompt.system_instructions,
					user_goal=prompt.user_goal,
					image_b64=_encode_image(capture),
					image_format=capture.format,
					extra_context=prompt.extra_context,
				)
			)
			parsed = parse_step_response(raw)
			if isinstance(parsed, ValidationFailure):
				raise ResponseValidationError(f"Validation failed: {parsed.reason}")
			instruction = self._decorate(parsed, capture)
		except Exception as exc:
			error = exc if isinstance(exc, GuidanceError) else GuidanceError(f"Step generation failed: {exc!r}")
			if session is not self._session:
				LOGGER.info("Dropping %s failure for discarded session %s", error.stage, session.session_id)
				return
			await self._fail(session, error)
			return

		if session is not self._session:
			LOGGER.info("Session %s was replaced while its step was in flight; dropping result", session.session_id)
			return

		if session.current is not None:
			session.history.append(session.current)
		session.current = instruction
		LOGGER.info(
			"Session %s step %d: %s (%s)",
			session.session_id,
			session.step_count,
			instruction.description,
			instruction.shape.value,
		)

		await self._notify(self._callbacks.on_instruction, instruction)
		if instruction.is_final:
			await self._finish(session)

	async def _capture(self) -> CaptureResult:
		try:
			capture = await self.capture_port.capture()
		except CaptureError:
			raise
		except Exception as exc:
			raise CaptureError(f"Screen capture failed: {exc}") from exc
		if capture is None or not capture.image:
			raise CaptureError("Screen capture failed: no image was returned")
		return capture

	async def _complete(self, request: ModelRequest) -> str:
		try:
			raw = await self.model_port.complete(request)
		except ModelError:
			raise
		except Exception as exc:
			raise ModelError(f"Model request failed: {exc}") from exc
		if not isinstance(raw, str) or not raw.strip():
			raise ModelError("Model request failed: empty response")
		return raw

	@staticmethod
	def _decorate(instruction: Instruction, capture: CaptureResult, *, fresh_id: bool = False) -> Instruction:
		"""Return the instruction with an id and pixel geometry attached.

		With `fresh_id` any model-supplied id is replaced so ids stay unique.
		"""
		return replace(
			instruction,
			id=uuid4().hex if fresh_id or not instruction.id else instruction.id,
			pixel_box=to_pixel_box(instruction.bounding_box, capture),
			capture=CaptureMeta.from_capture(capture),
		)

	async def _finish(self, session: GuidanceSession) -> None:
		session.status = SessionStatus.FINISHED
		summary = SessionSummary(
			goal=session.goal,
			total_steps=session.step_count,
			duration_ms=session.duration_ms(),
			completed_at=time.time(),
			steps=session.all_steps(),
		)
		LOGGER.info(
			"Session %s finished after %d steps in %d ms",
			session.session_id,
			summary.total_steps,
			summary.duration_ms,
		)
		self._record(
			self.recorder.record_session_update,
			session.session_id,
			status=session.status.value,
			finished_at=summary.completed_at,
			total_steps=summary.total_steps,
		)
		await self._notify(self._callbacks.on_session_complete, summary)

	async def _fail(self, session: GuidanceSession, error: GuidanceError) -> None:
		session.status = SessionStatus.ERROR
		self._record(
			self.recorder.record_session_update,
			session.session_id,
			status=session.status.value,
			finished_at=time.time(),
			total_steps=session.step_count,
		)
		await self._report(error, session)

	# ------------------------------------------------------------------
	# Off-task recovery
	# ------------------------------------------------------------------

	async def _check_off_task(self, session: GuidanceSession) -> bool:
		current = session.current
		hint = current.description if current else None
		try:
			capture = await self._capture()
			raw = await self._complete(
				ModelRequest(
					system_instructions=off_task_prompt(session.goal, hint),
					user_goal=session.goal,
					image_b64=_encode_image(capture),
					image_format=capture.format,
					extra_context={"current_step": current.compact() if current else None},
				)
			)
		except GuidanceError as error:
			LOGGER.warning("Off-task check failed, assuming on-task: %s", error.message)
			return False

		assessment = parse_off_task(raw)
		if assessment is None:
			LOGGER.warning("Off-task check returned an unreadable answer; assuming on-task")
			return False
		if session is not self._session:
			return False
		LOGGER.info(
			"Off-task check for session %s: off_task=%s needs_substeps=%s (%s)",
			session.session_id,
			assessment.is_off_task,
			assessment.needs_substeps,
			assessment.reason,
		)
		if not (assessment.is_off_task and assessment.needs_substeps):
			return False
		return await self._refocus(session, capture)

	async def _refocus(self, session: GuidanceSession, capture: CaptureResult) -> bool:
		current = session.current
		try:
			raw = await self._complete(
				ModelRequest(
					system_instructions=refocus_prompt(session.goal, current.description if current else None),
					user_goal=session.goal,
					image_b64=_encode_image(capture),
					image_format=capture.format,
					extra_context={"current_step": current.compact() if current else None},
				)
			)
		except GuidanceError as error:
			LOGGER.warning("Could not generate refocus substeps: %s", error.message)
			return False

		substeps = [
			self._decorate(substep, capture, fresh_id=True)
			for substep in parse_substeps(raw, limit=self.max_substeps)
		]
		if session is not self._session:
			return False
		if not substeps:
			LOGGER.warning("Model returned no usable refocus substeps for session %s", session.session_id)
			return False

		session.substeps = substeps
		session.in_substep_mode = True
		session.off_task_detected_at = time.time()
		LOGGER.info("Session %s entered refocus mode with %d substeps", session.session_id, len(substeps))
		await self._notify(self._callbacks.on_instruction, substeps[0])
		return True

	# ------------------------------------------------------------------
	# Best-effort side effects
	# ------------------------------------------------------------------

	async def _report(self, error: GuidanceError, session: Optional[GuidanceSession]) -> None:
		self._last_error = error
		if isinstance(error, InputError):
			LOGGER.warning("Guidance input rejected: %s", error.message)
		else:
			LOGGER.error("Guidance %s failure: %s", error.stage, error.message)
			self._record(self.recorder.record_failure, error, session.session_id if session else None)
		await self._notify(self._callbacks.on_error, error)

	def _report_soon(self, error: GuidanceError) -> None:
		self._last_error = error
		LOGGER.warning("Guidance input rejected: %s", error.message)
		pending = self._invoke(self._callbacks.on_error, error)
		if pending is not None:
			self._spawn(self._await_logged(pending, "on_error callback"))

	def _record(self, method: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
		"""Fire a recorder call without ever letting it fail or block the flow."""
		name = getattr(method, "__name__", repr(method))
		try:
			result = method(*args, **kwargs)
		except Exception:
			LOGGER.warning("Recorder call %s failed", name, exc_info=True)
			return
		if inspect.isawaitable(result):
			self._spawn(self._await_logged(result, f"recorder call {name}"))

	async def _notify(self, callback: Optional[Callback], payload: Any) -> None:
		pending = self._invoke(callback, payload)
		if pending is not None:
			await self._await_logged(pending, "guidance callback")

	@staticmethod
	def _invoke(callback: Optional[Callback], payload: Any) -> Optional[Awaitable[Any]]:
		if callback is None:
			return None
		try:
			result = callback(payload)
		except Exception:
			LOGGER.exception("Guidance callback %s raised", getattr(callback, "__name__", callback))
			return None
		return result if inspect.isawaitable(result) else None

	@staticmethod
	async def _await_logged(pending: Awaitable[Any], what: str) -> None:
		try:
			await pending
		except Exception:
			LOGGER.warning("%s failed", what, exc_info=True)

	def _spawn(self, coro: Awaitable[Any]) -> None:
		try:
			loop = asyncio.get_running_loop()
		except RuntimeError:
			LOGGER.warning("No running event loop; dropping background call")
			if inspect.iscoroutine(coro):
				coro.close()
			return
		task = loop.create_task(coro)
		self._pending.add(task)
		task.add_done_callback(self._pending.discard)
