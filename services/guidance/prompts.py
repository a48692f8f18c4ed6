"""Prompt helpers for next-step guidance and off-task recovery."""

from __future__ import annotations

from typing import Iterable, Optional

from models.guidance_models import CaptureMeta, Instruction, StepPrompt


def step_system_prompt() -> str:
	"""Return the contract the model must follow when proposing the next step."""
	return (
		"You are a desktop guide helping a user complete a task one step at a time. "
		"You receive the user's goal, a screenshot of their screen and the steps already completed. "
		"Decide the single next UI action that moves the user toward the goal.\n\n"
		"Respond with JSON only, no prose and no markdown, matching:\n"
		"{\n"
		'  "description": "what the user should do, naming the visible control",\n'
		'  "shape": "circle" | "arrow" | "box",\n'
		'  "boundingBox": [x0, y0, x1, y1],\n'
		'  "label": "short hint shown next to the annotation",\n'
		'  "isFinal": false\n'
		"}\n\n"
		"Rules:\n"
		"- boundingBox uses normalized coordinates in [0, 1] relative to the screenshot, "
		"with x0 < x1 and y0 < y1, tightly enclosing the target control.\n"
		"- Only point at a control that is concretely visible in the screenshot.\n"
		"- Never invent UI that is not visible. If the target is not on screen, point at a visible "
		"generic way to reach it (dock, launcher, start menu, menu bar) instead.\n"
		"- Set isFinal to true only when this step completes the goal.\n"
		"- If you cannot identify a next step, respond with "
		'{"error": true, "reason": "what is missing or not visible"}.'
	)


def step_prompt(goal: str, prior: Iterable[Instruction], capture: Optional[CaptureMeta]) -> StepPrompt:
	"""Assemble the model input for the next main-flow step.

	Prior instructions are reduced to description/label/shape/box so the model
	keeps continuity without being sent earlier screenshots again.
	"""
	previous = [instruction.compact() for instruction in prior]
	context = {
		"previous_steps": previous,
		"step_number": len(previous) + 1,
	}
	if capture is not None:
		context["screenshot"] = {
			"width": capture.width,
			"height": capture.height,
			"is_synthetic": capture.is_synthetic,
		}
	return StepPrompt(system_instructions=step_system_prompt(), user_goal=goal, extra_context=context)


def off_task_prompt(goal: str, current_hint: Optional[str]) -> str:
	"""Return the yes/no style check for whether the user drifted from the goal."""
	hint = current_hint or "No active step"
	return (
		f'You are monitoring a user trying to complete this task: "{goal}".\n'
		f'The current step hint shown to them is: "{hint}".\n\n'
		"Based on the screenshot, is the user still pursuing the goal (ON-TASK) "
		"or doing something unrelated (OFF-TASK)?\n\n"
		"Respond with JSON only:\n"
		'{"isOffTask": boolean, "needsSubsteps": boolean, "reason": "short explanation"}'
	)


def refocus_prompt(goal: str, current_hint: Optional[str]) -> str:
	"""Return the request for a few short corrective steps."""
	hint = current_hint or "Following the task"
	return (
		f'The user has gone off-task. Their goal is: "{goal}".\n'
		f'They should be doing: "{hint}".\n\n'
		"Create 2-3 SHORT substeps, based on what is visible in the screenshot, "
		"that bring them back to the task. Be concise and encouraging.\n\n"
		"Respond with a JSON array only, each item matching:\n"
		'{"description": "string", "shape": "circle" | "arrow" | "box", '
		'"boundingBox": [x0, y0, x1, y1], "label": "short hint"}\n'
		"Coordinates are normalized to [0, 1] with x0 < x1 and y0 < y1."
	)
