import json

import pytest

from models.guidance_models import Instruction, Shape, ValidationFailure
from services.guidance.response_parser import (
    MIN_BOX_SIZE,
    extract_json,
    parse_bounding_box,
    parse_off_task,
    parse_step_response,
    parse_substeps,
)


def _step(**overrides):
    data = {
        "description": "  Click Save  ",
        "shape": "box",
        "boundingBox": [0.1, 0.2, 0.3, 0.5],
        "label": " Save ",
    }
    data.update(overrides)
    return json.dumps(data)


def test_well_formed_step_round_trips_box():
    result = parse_step_response(_step())
    assert isinstance(result, Instruction)
    assert result.bounding_box.x == 0.1
    assert result.bounding_box.y == 0.2
    assert result.bounding_box.width == pytest.approx(0.2)
    assert result.bounding_box.height == pytest.approx(0.3)
    assert result.description == "Click Save"
    assert result.label == "Save"
    assert result.is_final is False


@pytest.mark.parametrize(
    "box",
    [[0.0, 0.0, 1.0, 1.0], [0.0, 0.5, 0.25, 1.0], [0.7, 0.01, 0.99, 0.02]],
)
def test_valid_boxes_keep_origin(box):
    result = parse_step_response(_step(boundingBox=box))
    assert isinstance(result, Instruction)
    assert result.bounding_box.x == box[0]
    assert result.bounding_box.y == box[1]
    assert result.bounding_box.width == pytest.approx(box[2] - box[0])


def test_out_of_range_box_is_rejected():
    result = parse_step_response(_step(boundingBox=[0, 0, 1.5, 0.4]))
    assert isinstance(result, ValidationFailure)
    assert "within [0, 1]" in result.reason


def test_bad_ordering_is_rejected():
    result = parse_step_response(_step(boundingBox=[0.5, 0.2, 0.3, 0.4]))
    assert isinstance(result, ValidationFailure)
    assert "x0 (0.5) must be less than x1 (0.3)" in result.reason


def test_wrong_arity_and_non_finite_have_distinct_reasons():
    _, arity = parse_bounding_box([0.1, 0.2, 0.3])
    _, non_finite = parse_bounding_box([0.1, "nan", 0.3, 0.4])
    assert arity == ["boundingBox must have exactly 4 numbers, got 3"]
    assert "finite" in non_finite[0]


def test_legacy_object_box_is_accepted():
    box, errors = parse_bounding_box({"x": 0.2, "y": 0.3, "width": 0.1, "height": 0.1})
    assert errors == []
    assert box.x == 0.2
    assert box.height == pytest.approx(0.1)


def test_tiny_box_is_clamped_inside_unit_square():
    box, errors = parse_bounding_box([0.999, 0.5, 0.9995, 0.5001])
    assert errors == []
    assert box.width == MIN_BOX_SIZE
    assert box.x + box.width == pytest.approx(1.0)
    assert box.height == MIN_BOX_SIZE


def test_explicit_decline_string():
    result = parse_step_response('{"error":"not_visible"}')
    assert result == ValidationFailure(reason="not_visible")


def test_explicit_decline_with_reason():
    result = parse_step_response('{"error": true, "reason": "Spotify is not installed"}')
    assert result == ValidationFailure(reason="Spotify is not installed")


def test_fenced_json_matches_plain_json():
    plain = parse_step_response(_step())
    fenced = parse_step_response("Sure! Here you go:\n```json\n" + _step() + "\n```\nGood luck.")
    assert fenced == plain


def test_first_object_in_prose_is_used():
    text = "I think the next step is " + _step() + " and then something else {not json}"
    assert isinstance(parse_step_response(text), Instruction)


@pytest.mark.parametrize("raw", ["", "   ", None, 42])
def test_empty_or_non_text(raw):
    assert parse_step_response(raw) == ValidationFailure(reason="empty or non-text response")


def test_no_json_found():
    result = parse_step_response("I cannot see the screen clearly.")
    assert result == ValidationFailure(reason="could not extract valid JSON from model response")


@pytest.mark.parametrize(
    "alias,expected",
    [("Rectangle", Shape.BOX), ("square", Shape.BOX), ("oval", Shape.CIRCLE), ("POINTER", Shape.ARROW)],
)
def test_shape_synonyms(alias, expected):
    result = parse_step_response(_step(shape=alias))
    assert result.shape is expected


def test_all_violations_are_reported_together():
    result = parse_step_response(json.dumps({"shape": "star", "boundingBox": [0.5, 0.2, 0.3, 0.4], "label": ""}))
    assert isinstance(result, ValidationFailure)
    parts = result.reason.split("; ")
    assert len(parts) == 4
    assert any("shape" in part for part in parts)
    assert any("description" in part for part in parts)
    assert any("label" in part for part in parts)


def test_is_final_must_be_boolean():
    result = parse_step_response(_step(isFinal="yes"))
    assert isinstance(result, ValidationFailure)
    assert "isFinal" in result.reason


def test_extract_json_array():
    assert extract_json('noise [{"a": 1}] tail', opener="[") == [{"a": 1}]


def test_parse_substeps_keeps_valid_items_up_to_limit():
    good = {"description": "Close the popup", "shape": "box", "boundingBox": [0.1, 0.1, 0.2, 0.2], "label": "Close"}
    bad = {"description": "Broken", "shape": "box", "boundingBox": [0.3, 0.1, 0.2, 0.2], "label": "x"}
    raw = json.dumps({"substeps": [good, bad, good, good, good]})
    substeps = parse_substeps(raw, limit=3)
    assert len(substeps) == 3
    assert all(substep.is_substep for substep in substeps)


def test_parse_substeps_accepts_bare_array():
    item = {"description": "Open the Dock", "shape": "arrow", "bbox": [0.4, 0.9, 0.5, 1.0], "label": "Dock"}
    assert len(parse_substeps("```json\n" + json.dumps([item]) + "\n```")) == 1


def test_parse_substeps_unreadable():
    assert parse_substeps("no idea") == []


def test_parse_off_task():
    verdict = parse_off_task('{"isOffTask": true, "needsSubsteps": true, "reason": "Browsing news"}')
    assert verdict.is_off_task and verdict.needs_substeps
    assert verdict.reason == "Browsing news"
    assert parse_off_task('{"is_off_task": false}').needs_substeps is False
    assert parse_off_task("maybe") is None


def test_deeply_nested_output_is_a_failure_not_an_exception():
    nested = '{"a": ' + "[" * 100000
    assert parse_step_response(nested) == ValidationFailure(reason="could not extract valid JSON from model response")
    assert parse_substeps("[" * 5000) == []
    assert parse_off_task(nested) is None
