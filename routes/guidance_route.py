"""FastAPI routes for guided step-by-step sessions."""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from controllers.guidance_controller import (
	add_chat_message,
	chat_history,
	check_off_task,
	get_state,
	get_stats,
	list_session_steps,
	list_sessions,
	mark_step_done,
	mark_substep_done,
	next_step,
	set_goal,
)

router = APIRouter(prefix="/guidance")


class GoalPayload(BaseModel):
	goal: str


class ChatPayload(BaseModel):
	text: str
	role: str = "user"


@router.post("/goal")
async def set_goal_route(request: Request, payload: GoalPayload):
	try:
		return await set_goal(request, payload.goal)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("/next")
async def next_step_route(request: Request):
	try:
		return await next_step(request)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("/steps/{step_id}/done")
async def step_done_route(request: Request, step_id: str):
	try:
		return await mark_step_done(request, step_id)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("/substeps/{step_id}/done")
async def substep_done_route(request: Request, step_id: str):
	try:
		return await mark_substep_done(request, step_id)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("/off-task")
async def off_task_route(request: Request):
	try:
		return await check_off_task(request)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.get("/state")
async def state_route(request: Request):
	return await get_state(request)


@router.post("/chat")
async def post_chat_route(request: Request, payload: ChatPayload):
	try:
		return await add_chat_message(request, payload.text, payload.role)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.get("/chat")
async def get_chat_route(
	request: Request,
	session_id: Optional[str] = None,
	limit: int = Query(50, ge=1, le=500),
):
	try:
		return await chat_history(request, session_id, limit)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.get("/sessions")
async def list_sessions_route(
	request: Request,
	limit: int = Query(100, ge=1, le=1000),
	offset: int = Query(0, ge=0),
):
	try:
		return await list_sessions(request, limit, offset)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.get("/sessions/{session_id}/steps")
async def session_steps_route(request: Request, session_id: str):
	try:
		return await list_session_steps(request, session_id)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.get("/stats")
async def stats_route(request: Request):
	try:
		return await get_stats(request)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))
