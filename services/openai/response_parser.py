"""Helpers to pull text and usage out of Responses API outputs."""

from typing import Any, Dict, Optional


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def extract_text(response: Any) -> str:
    """Return the model's text output, or an empty string when there is none."""
    text = getattr(response, "output_text", None)
    if isinstance(text, str) and text.strip():
        return text
    for item in getattr(response, "output", None) or []:
        if _field(item, "type") != "message":
            continue
        for content in _field(item, "content") or []:
            if _field(content, "type") == "output_text":
                return _field(content, "text") or ""
    return ""


def extract_usage(response: Any) -> Dict[str, Optional[int]]:
    """Return token usage information from the response, if present."""
    usage = getattr(response, "usage", None)
    return {
        "input_tokens": getattr(usage, "input_tokens", None) if usage else None,
        "output_tokens": getattr(usage, "output_tokens", None) if usage else None,
    }
