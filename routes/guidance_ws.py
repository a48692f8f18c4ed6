"""WebSocket endpoint pushing guidance instructions to the overlay client."""

from __future__ import annotations

import json

from fastapi import APIRouter, Depends, HTTPException, WebSocket
from starlette.websockets import WebSocketDisconnect

from services.guidance.step_orchestrator import StepOrchestrator
from services.guidance.ws_session import GuidanceSocketHandler

router = APIRouter()


def _require_orchestrator(websocket: WebSocket) -> StepOrchestrator:
	orchestrator = getattr(websocket.app.state, "orchestrator", None)
	if orchestrator is None:
		raise HTTPException(status_code=500, detail="Guidance orchestrator unavailable")
	return orchestrator


@router.websocket("/ws/guidance")
async def guidance_socket(websocket: WebSocket, orchestrator: StepOrchestrator = Depends(_require_orchestrator)):
	"""Register this connection for guidance events and dispatch its commands."""
	await websocket.accept()
	handler = GuidanceSocketHandler(orchestrator, websocket)
	handler.attach()
	try:
		while True:
			try:
				raw = await websocket.receive_text()
			except WebSocketDisconnect:
				break
			except Exception:
				await websocket.send_text(json.dumps({"type": "error", "detail": "Invalid websocket frame"}))
				continue
			try:
				payload = json.loads(raw)
			except Exception:
				await websocket.send_text(json.dumps({"type": "error", "detail": "Payload must be JSON"}))
				continue
			if not isinstance(payload, dict):
				await websocket.send_text(json.dumps({"type": "error", "detail": "Payload must be a JSON object"}))
				continue
			await handler.handle(payload)
	finally:
		handler.detach()
	try:
		await websocket.close()
	except Exception:
		pass
