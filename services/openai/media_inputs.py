"""Utilities to build multimodal input payloads for the Responses API."""

import json
from typing import Any, Dict, List, Optional

from models.guidance_models import ModelRequest
from utils.media_validation import to_image_data_url


def _text_message(role: str, text: str) -> Dict[str, Any]:
    return {"type": "message", "role": role, "content": [{"type": "input_text", "text": text}]}


def build_user_content(
    user_goal: str, extra_context: Optional[Dict[str, Any]], image_url: Optional[str]
) -> List[Dict[str, Any]]:
    """Compose user messages so the goal, context and screenshot are distinct entries."""
    messages: List[Dict[str, Any]] = []
    if user_goal:
        messages.append(_text_message("user", f"User goal: {user_goal}"))
    if extra_context:
        messages.append(_text_message("user", f"Context: {json.dumps(extra_context, default=str)}"))
    if image_url:
        messages.append(
            {"type": "message", "role": "user", "content": [{"type": "input_image", "image_url": image_url}]}
        )
    if not messages:
        messages.append(_text_message("user", "No additional context provided."))
    return messages


def build_inputs(request: ModelRequest) -> List[Dict[str, Any]]:
    """Build the Responses API input array for one guidance request."""
    image_url = to_image_data_url(request.image_b64, request.image_format) if request.image_b64 else None
    inputs: List[Dict[str, Any]] = []
    if request.system_instructions:
        inputs.append(_text_message("system", request.system_instructions))
    inputs.extend(build_user_content(request.user_goal, request.extra_context, image_url))
    return inputs
