"""Next-step completions via OpenAI's Responses API."""

import logging
import time
from typing import Any, Optional

from openai import AsyncOpenAI

from models.guidance_models import ModelRequest
from services.openai.media_inputs import build_inputs
from services.openai.response_parser import extract_text, extract_usage

LOGGER = logging.getLogger(__name__)
DEFAULT_MODEL = "gpt-4o"


class OpenAIStepModel:
    """Model port that sends the goal, context and screenshot to OpenAI and returns raw text."""

    def __init__(
        self,
        client: AsyncOpenAI,
        *,
        model: str = DEFAULT_MODEL,
        temperature: Optional[float] = 0.2,
        max_output_tokens: int = 1000,
    ) -> None:
        """Initialize the model port with a shared OpenAI client.

        Args:
            client: Async OpenAI client; request timeouts are configured on the client.
            model: Model name passed to the Responses API.
            temperature: Sampling temperature, or None to use the model default.
            max_output_tokens: Upper bound on generated tokens per request.
        """
        if client is None:
            raise ValueError("OpenAI client must be provided.")
        self.client = client
        self.model = model
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens

    async def complete(self, request: ModelRequest) -> str:
        """Return the model's raw text answer for one guidance request."""
        start = time.time()
        response = await self._create_response(request)
        text = extract_text(response)
        usage = extract_usage(response)
        LOGGER.debug(
            "Model %s answered in %.2fs (input_tokens=%s, output_tokens=%s)",
            self.model,
            time.time() - start,
            usage["input_tokens"],
            usage["output_tokens"],
        )
        return text

    async def _create_response(self, request: ModelRequest) -> Any:
        kwargs = {
            "model": self.model,
            "input": build_inputs(request),
            "max_output_tokens": self.max_output_tokens,
        }
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        try:
            return await self.client.responses.create(**kwargs)
        except Exception as exc:
            LOGGER.error("Error during OpenAI Responses API call: %s", exc)
            raise
