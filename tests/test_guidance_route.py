from fastapi.testclient import TestClient

from dal.guidance_dal import GuidanceDAL
from main import create_app
from services.guidance.step_orchestrator import StepOrchestrator
from tests.conftest import FakeCapture, FakeModel, step_json
from utils.database_init import AsyncDatabaseInitializer
from utils.settings import GuidanceSettings


def _client(tmp_path, *responses, with_dal=True):
    app = create_app(GuidanceSettings(database_dir=tmp_path, use_real_capture=False))
    dal = GuidanceDAL(AsyncDatabaseInitializer(tmp_path)) if with_dal else None
    app.state.guidance_dal = dal
    app.state.orchestrator = StepOrchestrator(FakeCapture(), FakeModel(*responses))
    return TestClient(app)


def test_goal_next_done_flow(tmp_path):
    client = _client(tmp_path, step_json(), step_json(description="Click Play", label="Play", is_final=True))

    state = client.post("/guidance/goal", json={"goal": "Open Spotify"}).json()
    assert state["status"] == "ready"
    assert state["step_number"] == 0

    state = client.post("/guidance/next").json()
    assert state["status"] == "in-progress"
    current = state["current_instruction"]
    assert current["shape"] == "circle"
    assert current["pixel_box"] == {"x": 768, "y": 972, "width": 77, "height": 65}

    state = client.post(f"/guidance/steps/{current['id']}/done").json()
    assert state["status"] == "finished"
    assert state["step_number"] == 2

    assert client.get("/guidance/state").json()["goal"] == "Open Spotify"


def test_input_and_precondition_errors(tmp_path):
    client = _client(tmp_path)

    response = client.post("/guidance/next")
    assert response.status_code == 409
    assert response.json()["detail"]["stage"] == "precondition"

    response = client.post("/guidance/goal", json={"goal": "  "})
    assert response.status_code == 400
    assert response.json()["detail"]["stage"] == "input"

    client.post("/guidance/goal", json={"goal": "Open Spotify"})
    client.post("/guidance/next")
    response = client.post("/guidance/steps/wrong-id/done")
    assert response.status_code == 400


def test_model_failure_maps_to_500(tmp_path):
    client = _client(tmp_path, "I cannot see a next step.")
    client.post("/guidance/goal", json={"goal": "Open Spotify"})

    response = client.post("/guidance/next")

    assert response.status_code == 500
    assert response.json()["detail"]["stage"] == "validation"


def test_off_task_route(tmp_path):
    substeps = (
        '[{"description": "Close the video", "shape": "box", "boundingBox": [0.1, 0.1, 0.2, 0.2], "label": "Close"}]'
    )
    client = _client(tmp_path, step_json(), '{"isOffTask": true, "needsSubsteps": true}', substeps)
    client.post("/guidance/goal", json={"goal": "Open Spotify"})
    client.post("/guidance/next")

    body = client.post("/guidance/off-task").json()

    assert body["off_task"] is True
    assert body["state"]["in_substep_mode"] is True
    substep_id = body["substeps"][0]["id"]
    state = client.post(f"/guidance/substeps/{substep_id}/done").json()
    assert state["in_substep_mode"] is False


def test_chat_and_history_routes(tmp_path):
    client = _client(tmp_path, step_json())
    client.post("/guidance/goal", json={"goal": "Open Spotify"})
    session_id = client.get("/guidance/state").json()["session_id"]

    assert client.post("/guidance/chat", json={"text": "where is the dock?"}).status_code == 200
    assert client.post("/guidance/chat", json={"text": "   "}).status_code == 400
    messages = client.get("/guidance/chat", params={"limit": 10}).json()["messages"]
    assert messages[0]["content"] == "where is the dock?"
    assert messages[0]["session_id"] == session_id

    assert client.get("/guidance/sessions/unknown/steps").status_code == 404
    assert client.get("/guidance/stats").json()["total_chat_messages"] == 1


def test_history_routes_need_a_store(tmp_path):
    client = _client(tmp_path, with_dal=False)
    assert client.get("/guidance/sessions").status_code == 503


def test_health(tmp_path):
    body = _client(tmp_path).get("/health").json()
    assert body["ok"] is True
    assert body["orchestrator_ready"] is True


def test_websocket_pushes_instructions(tmp_path):
    client = _client(tmp_path, step_json(is_final=True))
    with client.websocket_connect("/ws/guidance") as ws:
        ws.send_json({"type": "goal.set", "goal": "Open Spotify", "request_id": 1})
        assert ws.receive_json() == {"type": "goal.ack", "accepted": True, "request_id": 1}

        ws.send_json({"type": "step.next"})
        instruction = ws.receive_json()
        assert instruction["type"] == "instruction"
        assert instruction["instruction"]["label"] == "Open Spotify"
        complete = ws.receive_json()
        assert complete["type"] == "session.complete"
        assert complete["summary"]["total_steps"] == 1

        ws.send_text("not json")
        assert ws.receive_json()["detail"] == "Payload must be JSON"

        ws.send_json({"type": "bogus", "request_id": 7})
        assert ws.receive_json() == {"type": "error", "request_id": 7, "detail": "Unsupported message type."}


def test_next_without_goal_notifies_registered_listener(tmp_path):
    client = _client(tmp_path)
    errors = []
    client.app.state.orchestrator.register_callbacks(on_error=errors.append)

    response = client.post("/guidance/next")

    assert response.status_code == 409
    assert response.json()["detail"]["stage"] == "precondition"
    assert len(errors) == 1
    assert errors[0].stage == "precondition"
