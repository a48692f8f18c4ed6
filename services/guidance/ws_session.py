"""Dispatch guidance websocket messages to the step orchestrator."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from fastapi import WebSocket

from models.guidance_models import Instruction, SessionSummary
from services.guidance.errors import GuidanceError
from services.guidance.step_orchestrator import GuidanceCallbacks, StepOrchestrator

LOGGER = logging.getLogger(__name__)


class GuidanceSocketHandler:
	"""Bridge one websocket connection to the orchestrator's callbacks and operations."""

	def __init__(self, orchestrator: StepOrchestrator, websocket: WebSocket) -> None:
		self.orchestrator = orchestrator
		self.websocket = websocket
		self._token: Optional[GuidanceCallbacks] = None

	def attach(self) -> None:
		"""Register this connection as the active presentation layer."""
		self._token = self.orchestrator.register_callbacks(
			on_instruction=self._on_instruction,
			on_session_complete=self._on_session_complete,
			on_error=self._on_error,
		)

	def detach(self) -> None:
		if self._token is not None:
			self.orchestrator.unregister_callbacks(self._token)
			self._token = None

	async def handle(self, payload: Dict[str, Any]) -> None:
		"""Process a single inbound websocket payload."""
		request_id = payload.get("request_id")
		message_type = payload.get("type")
		try:
			if message_type == "goal.set":
				accepted = self.orchestrator.set_goal(payload.get("goal"))
				result = {"type": "goal.ack", "accepted": accepted}
			elif message_type == "step.next":
				await self.orchestrator.request_next_step()
				result = None
			elif message_type == "step.done":
				accepted = await self.orchestrator.mark_done(self._step_id(payload))
				result = {"type": "step.ack", "accepted": accepted}
			elif message_type == "substep.done":
				await self.orchestrator.mark_substep_done(self._step_id(payload))
				result = None
			elif message_type == "offtask.check":
				off_task = await self.orchestrator.detect_and_handle_off_task()
				result = {"type": "offtask.result", "off_task": off_task}
			elif message_type == "state.get":
				result = {"type": "state", "state": self.orchestrator.get_state().to_dict()}
			else:
				raise ValueError("Unsupported message type.")
			if result is not None:
				result["request_id"] = request_id
				await self._send(result)
		except Exception as exc:
			await self._send_error(request_id, str(exc))

	@staticmethod
	def _step_id(payload: Dict[str, Any]) -> str:
		step_id = payload.get("step_id")
		if not isinstance(step_id, str) or not step_id:
			raise ValueError("step_id is required.")
		return step_id

	async def _on_instruction(self, instruction: Instruction) -> None:
		await self._send({"type": "instruction", "instruction": instruction.to_dict()})

	async def _on_session_complete(self, summary: SessionSummary) -> None:
		await self._send({"type": "session.complete", "summary": summary.to_dict()})

	async def _on_error(self, error: GuidanceError) -> None:
		await self._send({"type": "error", "error": error.to_dict(), "detail": error.message})

	async def _send_error(self, request_id: Any, detail: str) -> None:
		await self._send({"type": "error", "request_id": request_id, "detail": detail})

	async def _send(self, payload: Dict[str, Any]) -> None:
		await self.websocket.send_text(json.dumps(payload))
