"""Guidance workflow helpers backing the HTTP routes."""

from __future__ import annotations

import json
from dataclasses import asdict
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request

from dal.guidance_dal import GuidanceDAL
from models.guidance_models import SessionStatus
from services.guidance.errors import GuidanceError, InputError, PreconditionError
from services.guidance.step_orchestrator import StepOrchestrator


def _orchestrator(request: Request) -> StepOrchestrator:
	orchestrator = getattr(request.app.state, "orchestrator", None)
	if orchestrator is None:
		raise HTTPException(status_code=503, detail="Guidance orchestrator is not configured")
	return orchestrator


def _dal(request: Request) -> GuidanceDAL:
	dal = getattr(request.app.state, "guidance_dal", None)
	if dal is None:
		raise HTTPException(status_code=503, detail="Guidance history store is not configured")
	return dal


def _raise_for(error: Optional[GuidanceError], fallback: str) -> None:
	"""Translate a reported guidance error into an HTTPException."""
	if error is None:
		raise HTTPException(status_code=500, detail={"message": fallback, "stage": "internal"})
	if isinstance(error, InputError):
		status = 400
	elif isinstance(error, PreconditionError):
		status = 409
	else:
		status = 500
	raise HTTPException(status_code=status, detail=error.to_dict())


def _state(orchestrator: StepOrchestrator) -> Dict[str, Any]:
	return orchestrator.get_state().to_dict()


async def set_goal(request: Request, goal: str) -> Dict[str, Any]:
	"""Start a new guidance session for `goal`."""
	orchestrator = _orchestrator(request)
	if not orchestrator.set_goal(goal):
		_raise_for(orchestrator.last_error, "Invalid goal")
	return _state(orchestrator)


async def next_step(request: Request) -> Dict[str, Any]:
	"""Produce the next instruction and return the resulting state."""
	orchestrator = _orchestrator(request)
	await orchestrator.request_next_step()
	if orchestrator.get_state().session_id is None:
		_raise_for(orchestrator.last_error, "No goal set")
	if orchestrator.get_state().status == SessionStatus.ERROR:
		_raise_for(orchestrator.last_error, "Step generation failed")
	return _state(orchestrator)


async def mark_step_done(request: Request, step_id: str) -> Dict[str, Any]:
	orchestrator = _orchestrator(request)
	if not await orchestrator.mark_done(step_id):
		_raise_for(orchestrator.last_error, "Step could not be marked done")
	if orchestrator.get_state().status == SessionStatus.ERROR:
		_raise_for(orchestrator.last_error, "Step generation failed")
	return _state(orchestrator)


async def mark_substep_done(request: Request, step_id: str) -> Dict[str, Any]:
	orchestrator = _orchestrator(request)
	await orchestrator.mark_substep_done(step_id)
	return _state(orchestrator)


async def check_off_task(request: Request) -> Dict[str, Any]:
	"""Run the advisory off-task check; substeps are pushed to listeners when emitted."""
	orchestrator = _orchestrator(request)
	off_task = await orchestrator.detect_and_handle_off_task()
	return {
		"off_task": off_task,
		"substeps": [substep.to_dict() for substep in orchestrator.substeps],
		"state": _state(orchestrator),
	}


async def get_state(request: Request) -> Dict[str, Any]:
	return _state(_orchestrator(request))


async def add_chat_message(request: Request, text: str, role: str = "user") -> Dict[str, Any]:
	"""Persist a chat message against the active session (if any)."""
	if not text or not text.strip():
		raise HTTPException(status_code=400, detail="Chat message text must be non-empty")
	session_id = _orchestrator(request).get_state().session_id
	record = await _dal(request).record_chat_message(role, text.strip(), session_id)
	return asdict(record)


async def chat_history(request: Request, session_id: Optional[str], limit: int) -> Dict[str, Any]:
	messages = await _dal(request).load_chat_history(session_id=session_id, limit=limit)
	return {"messages": [asdict(message) for message in messages]}


async def list_sessions(request: Request, limit: int, offset: int) -> Dict[str, Any]:
	sessions = await _dal(request).list_sessions(limit=limit, offset=offset)
	return {"sessions": [asdict(session) for session in sessions]}


async def list_session_steps(request: Request, session_id: str) -> Dict[str, Any]:
	"""Return logged steps for one session; 404 when the session is unknown."""
	dal = _dal(request)
	session = await dal.get_session(session_id)
	if session is None:
		raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
	steps = []
	for step in await dal.list_steps(session_id):
		entry = asdict(step)
		entry["bounding_box"] = json.loads(entry.pop("bbox_json"))
		steps.append(entry)
	return {"session": asdict(session), "steps": steps}


async def get_stats(request: Request) -> Dict[str, Any]:
	return await _dal(request).get_stats()
