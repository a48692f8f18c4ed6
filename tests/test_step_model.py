import base64
from types import SimpleNamespace

import pytest

from models.guidance_models import ModelRequest
from services.openai.media_inputs import build_inputs
from services.openai.response_parser import extract_text
from services.openai.step_model import OpenAIStepModel
from utils.media_validation import mime_type_for, to_image_data_url


class FakeResponses:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        if self.error is not None:
            raise self.error
        return self.response


def _client(responses):
    return SimpleNamespace(responses=responses)


def _request(**overrides):
    values = dict(
        system_instructions="Respond with JSON only.",
        user_goal="Open Spotify",
        image_b64=base64.b64encode(b"png-bytes").decode("ascii"),
        image_format="png",
        extra_context={"step_number": 1, "previous_steps": []},
    )
    values.update(overrides)
    return ModelRequest(**values)


async def test_complete_sends_goal_context_and_image():
    responses = FakeResponses(SimpleNamespace(output_text='{"ok": true}', usage=None))
    model = OpenAIStepModel(_client(responses), model="gpt-4o", temperature=0.1, max_output_tokens=500)

    text = await model.complete(_request())

    assert text == '{"ok": true}'
    kwargs = responses.kwargs
    assert kwargs["model"] == "gpt-4o"
    assert kwargs["temperature"] == 0.1
    assert kwargs["max_output_tokens"] == 500
    roles = [item["role"] for item in kwargs["input"]]
    assert roles == ["system", "user", "user", "user"]
    assert kwargs["input"][1]["content"][0]["text"] == "User goal: Open Spotify"
    assert kwargs["input"][2]["content"][0]["text"].startswith("Context: ")
    image = kwargs["input"][3]["content"][0]
    assert image["type"] == "input_image"
    assert image["image_url"].startswith("data:image/png;base64,")


async def test_temperature_omitted_when_none():
    responses = FakeResponses(SimpleNamespace(output_text="x", usage=None))
    await OpenAIStepModel(_client(responses), temperature=None).complete(_request())
    assert "temperature" not in responses.kwargs


async def test_client_errors_propagate():
    responses = FakeResponses(error=TimeoutError("request timed out"))
    with pytest.raises(TimeoutError):
        await OpenAIStepModel(_client(responses)).complete(_request())


def test_client_is_required():
    with pytest.raises(ValueError):
        OpenAIStepModel(None)


def test_build_inputs_without_image_or_context():
    inputs = build_inputs(_request(image_b64=None, extra_context={}))
    assert [item["role"] for item in inputs] == ["system", "user"]


def test_extract_text_walks_output_items():
    response = SimpleNamespace(
        output_text="",
        output=[
            {"type": "reasoning", "content": []},
            {"type": "message", "content": [{"type": "output_text", "text": "hello"}]},
        ],
    )
    assert extract_text(response) == "hello"
    assert extract_text(SimpleNamespace()) == ""


def test_data_url_helpers():
    assert mime_type_for("JPG") == "image/jpeg"
    with pytest.raises(ValueError):
        mime_type_for("bmp")
    assert to_image_data_url("data:image/png;base64,AAAA") == "data:image/png;base64,AAAA"
    assert to_image_data_url("AAAA", "jpeg") == "data:image/jpeg;base64,AAAA"
