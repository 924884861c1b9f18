from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

from fakes import JPEG_DATA_URI, conversational_answer, equipment_answer
from smartfix import config
from smartfix.gateway import AnalysisGateway
from smartfix.gemini import GeminiClient, ModelError
from smartfix.main import create_app


def _new_session(client, name="Ana", **fields):
    response = client.post("/api/repair-sessions", json={"technicianName": name, **fields})
    assert response.status_code == 200
    return response.json()


def test_health(client):
    assert client.get("/api/health").json() == {"status": "ok", "service": "smartfix"}


# Sessions

def test_create_session_uses_camel_case(client):
    session = _new_session(client)

    assert session["id"] == 1
    assert session["technicianName"] == "Ana"
    assert session["status"] == "analyzing"
    assert session["currentStep"] == 1
    assert session["totalSteps"] == 0
    assert session["startTime"]
    assert session["endTime"] is None


def test_create_session_rejects_invalid_body(client):
    response = client.post("/api/repair-sessions", json={"status": "analyzing"})

    assert response.status_code == 400
    assert "technicianName" in response.json()["error"]


def test_create_session_rejects_unknown_status(client):
    response = client.post("/api/repair-sessions", json={"technicianName": "Ana", "status": "lost"})

    assert response.status_code == 400


def test_get_and_update_session(client):
    session = _new_session(client)

    response = client.patch(f"/api/repair-sessions/{session['id']}", json={"status": "paused", "currentStep": 2})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "paused"
    assert body["currentStep"] == 2
    assert body["endTime"] is not None
    assert client.get(f"/api/repair-sessions/{session['id']}").json()["status"] == "paused"


@pytest.mark.parametrize("body", [
    {"status": None},
    {"technicianName": None},
    {"status": None, "technicianName": None},
    {"currentStep": None},
    {"totalSteps": None},
    {"technicianName": ""},
])
def test_patch_session_rejects_nulls_for_required_fields(client, body):
    session = _new_session(client)

    response = client.patch(f"/api/repair-sessions/{session['id']}", json=body)

    assert response.status_code == 400
    assert "error" in response.json()
    assert client.get(f"/api/repair-sessions/{session['id']}").json() == session


def test_patch_session_accepts_nulls_for_optional_fields(client):
    session = _new_session(client, equipmentId="PUMP-7781", sessionData={"note": "x"})

    response = client.patch(f"/api/repair-sessions/{session['id']}", json={"equipmentId": None, "sessionData": None})

    assert response.status_code == 200
    assert response.json()["equipmentId"] is None
    assert response.json()["sessionData"] is None
    assert response.json()["technicianName"] == "Ana"


@pytest.mark.parametrize("method, path", [
    ("get", "/api/repair-sessions/99"),
    ("patch", "/api/repair-sessions/99"),
    ("delete", "/api/repair-sessions/99"),
    ("get", "/api/repair-sessions/active/Nobody"),
    ("patch", "/api/repair-steps/99"),
    ("post", "/api/repair-steps/99/complete"),
])
def test_missing_records_are_404(client, method, path):
    kwargs = {"json": {"status": "completed"}} if method == "patch" else {}

    response = getattr(client, method)(path, **kwargs)

    assert response.status_code == 404
    assert "error" in response.json()


def test_non_integer_id_is_400(client):
    response = client.get("/api/repair-sessions/abc")

    assert response.status_code == 400
    assert "error" in response.json()


def test_active_session(client):
    _new_session(client)
    second = _new_session(client)
    client.patch(f"/api/repair-sessions/{second['id']}", json={"status": "in_progress"})

    response = client.get("/api/repair-sessions/active/Ana")

    assert response.status_code == 200
    assert response.json()["id"] == second["id"]


# Steps

def test_create_list_and_complete_steps(client):
    session = _new_session(client, status="in_progress")
    for n in (2, 1):
        response = client.post("/api/repair-steps", json={
            "sessionId": session["id"], "stepNumber": n, "title": f"Step {n}",
            "description": "", "instructions": "", "status": "current" if n == 1 else "pending",
        })
        assert response.status_code == 200

    steps = client.get(f"/api/repair-steps/{session['id']}").json()
    assert [s["stepNumber"] for s in steps] == [1, 2]

    steps = client.post(f"/api/repair-steps/{steps[0]['id']}/complete").json()
    assert [s["status"] for s in steps] == ["completed", "current"]
    assert steps[0]["completedAt"] is not None

    steps = client.post(f"/api/repair-steps/{steps[1]['id']}/complete").json()
    assert [s["status"] for s in steps] == ["completed", "completed"]
    assert client.get(f"/api/repair-sessions/{session['id']}").json()["status"] == "completed"


def test_update_step(client):
    session = _new_session(client)
    step = client.post("/api/repair-steps", json={
        "sessionId": session["id"], "stepNumber": 1, "title": "Isolate",
        "description": "", "instructions": "",
    }).json()

    response = client.patch(f"/api/repair-steps/{step['id']}", json={"notes": "valve stuck"})

    assert response.json()["notes"] == "valve stuck"
    assert response.json()["status"] == "pending"


@pytest.mark.parametrize("field", ["title", "description", "instructions", "status"])
def test_patch_step_rejects_nulls_for_required_fields(client, field):
    session = _new_session(client)
    step = client.post("/api/repair-steps", json={
        "sessionId": session["id"], "stepNumber": 1, "title": "Isolate",
        "description": "Shut valves", "instructions": "Close both valves",
    }).json()

    response = client.patch(f"/api/repair-steps/{step['id']}", json={field: None})

    assert response.status_code == 400
    assert client.get(f"/api/repair-steps/{session['id']}").json() == [step]


def test_patch_step_accepts_null_notes(client):
    session = _new_session(client)
    step = client.post("/api/repair-steps", json={
        "sessionId": session["id"], "stepNumber": 1, "title": "Isolate",
        "description": "", "instructions": "", "notes": "valve stuck",
    }).json()

    response = client.patch(f"/api/repair-steps/{step['id']}", json={"notes": None})

    assert response.status_code == 200
    assert response.json()["notes"] is None
    assert response.json()["title"] == "Isolate"


def test_step_number_must_be_positive(client):
    response = client.post("/api/repair-steps", json={
        "sessionId": 1, "stepNumber": 0, "title": "x", "description": "", "instructions": "",
    })

    assert response.status_code == 400


def test_steps_of_unknown_session_is_empty_list(client):
    assert client.get("/api/repair-steps/99").json() == []


# Conversational analysis

def test_conversational_analysis_falls_back_when_model_fails(client, model):
    session = _new_session(client)
    model.answers.append(ModelError("upstream 503"))

    response = client.post("/api/conversational-analysis", json={
        "imageData": JPEG_DATA_URI, "spokenInput": "pump is leaking", "sessionId": session["id"],
    })

    assert response.status_code == 200
    body = response.json()
    assert "pump is leaking" in body["conversationalResponse"]
    assert body["visualAnalysis"]["confidence"] == 0.6
    [log] = client.get(f"/api/analysis-logs/{session['id']}").json()
    assert log["analysisType"] == "conversational_analysis"
    assert log["confidence"] == 60
    assert log["inputData"]["spokenInput"] == "pump is leaking"
    steps = client.get(f"/api/repair-steps/{session['id']}").json()
    assert [(s["stepNumber"], s["status"]) for s in steps] == [(1, "current")]


def test_conversational_analysis_success(client, model):
    session = _new_session(client)
    model.answers.append(conversational_answer())

    body = client.post("/api/conversational-analysis", json={
        "imageData": JPEG_DATA_URI, "spokenInput": "pump is leaking", "sessionId": session["id"],
    }).json()

    assert body["visualAnalysis"]["equipmentType"] == "pump"
    assert body["voiceGuidance"] == "Shut the valves first."
    [log] = client.get(f"/api/analysis-logs/{session['id']}").json()
    assert log["confidence"] == 85
    assert log["response"]["conversationalResponse"] == "That pump is leaking at the seal."
    updated = client.get(f"/api/repair-sessions/{session['id']}").json()
    assert updated["status"] == "in_progress"
    assert updated["totalSteps"] == 2
    assert updated["equipmentType"] == "pump"


def test_conversational_analysis_without_session_persists_nothing(client, model, storage):
    model.answers.append(conversational_answer())

    response = client.post("/api/conversational-analysis", json={"imageData": JPEG_DATA_URI})

    assert response.status_code == 200
    assert storage.ai_analysis_logs == {}
    assert storage.repair_steps == {}


def test_conversational_analysis_requires_image(client):
    response = client.post("/api/conversational-analysis", json={"spokenInput": "hello"})

    assert response.status_code == 400
    assert "imageData" in response.json()["error"]


# Single-shot analysis

def test_analyze_image_failure_is_500_without_log(client, model):
    session = _new_session(client)
    model.answers.append("I'm not sure what this is.")

    response = client.post("/api/analyze-image", json={"imageData": JPEG_DATA_URI, "sessionId": session["id"]})

    assert response.status_code == 500
    assert "error" in response.json()
    assert client.get(f"/api/analysis-logs/{session['id']}").json() == []
    assert client.get(f"/api/repair-sessions/{session['id']}").json()["status"] == "analyzing"


@pytest.mark.parametrize("confidence, percent", [(1.0, 100), (0.0, 0), (0.85, 85)])
def test_analyze_image_logs_percent_confidence(client, model, confidence, percent):
    session = _new_session(client)
    model.answers.append(equipment_answer(confidence=confidence))

    response = client.post("/api/analyze-image", json={"imageData": JPEG_DATA_URI, "sessionId": session["id"]})

    assert response.status_code == 200
    assert response.json()["issueDetected"] == "leak"
    [log] = client.get(f"/api/analysis-logs/{session['id']}").json()
    assert log["analysisType"] == "equipment_detection"
    assert log["confidence"] == percent


def test_analyze_image_requires_image(client):
    response = client.post("/api/analyze-image", json={"sessionId": 1})

    assert response.status_code == 400


def test_reanalysis_keeps_step_numbers_unique(client, model):
    session = _new_session(client)
    model.answers.extend([equipment_answer(), equipment_answer()])

    for _ in range(2):
        client.post("/api/analyze-image", json={"imageData": JPEG_DATA_URI, "sessionId": session["id"]})

    steps = client.get(f"/api/repair-steps/{session['id']}").json()
    assert [s["stepNumber"] for s in steps] == [1, 2]


# Voice guidance

def test_voice_guidance_echoes_step_when_model_fails(client, model):
    session = _new_session(client)
    model.answers.append(ModelError("unavailable"))

    response = client.post("/api/voice-guidance", json={
        "stepDescription": "Close both valves", "sessionId": session["id"],
    })

    assert response.status_code == 200
    assert response.json() == {"voiceGuidance": "Close both valves"}
    [log] = client.get(f"/api/analysis-logs/{session['id']}").json()
    assert log["analysisType"] == "voice_guidance"
    assert log["confidence"] == 95


def test_voice_guidance_falls_back_on_malformed_model_body(storage, upload_dir):
    gemini = GeminiClient(api_key="k", transport=httpx.MockTransport(lambda request: httpx.Response(200, json=[])))
    app = create_app(storage=storage, gateway=AnalysisGateway(gemini), upload_dir=str(upload_dir))

    with TestClient(app) as client:
        response = client.post("/api/voice-guidance", json={"stepDescription": "Close the valve"})

    assert response.status_code == 200
    assert response.json() == {"voiceGuidance": "Close the valve"}


def test_voice_guidance_requires_description(client):
    assert client.post("/api/voice-guidance", json={}).status_code == 400


# Step completion

def test_step_completion_failure_is_500(client, model):
    model.answers.append(ModelError("quota"))

    response = client.post("/api/analyze-step-completion", json={
        "imageData": JPEG_DATA_URI, "expectedStep": "Close both valves",
    })

    assert response.status_code == 500
    assert "error" in response.json()


def test_step_completion_success_is_logged(client, model):
    session = _new_session(client)
    model.answers.append('{"completed": false, "confidence": 0.4, "feedback": "Outlet valve still open", '
                         '"nextGuidance": "Turn the outlet clockwise"}')

    response = client.post("/api/analyze-step-completion", json={
        "imageData": JPEG_DATA_URI, "expectedStep": "Close both valves", "sessionId": session["id"],
    })

    assert response.status_code == 200
    assert response.json()["completed"] is False
    assert response.json()["nextGuidance"] == "Turn the outlet clockwise"
    [log] = client.get(f"/api/analysis-logs/{session['id']}").json()
    assert log["analysisType"] == "step_completion"
    assert log["confidence"] == 40


# Captures

def test_upload_rejects_non_media(client, storage, upload_dir):
    response = client.post(
        "/api/upload-video",
        files={"video": ("notes.txt", b"hello", "text/plain")},
        data={"sessionId": "1"},
    )

    assert response.status_code == 400
    assert storage.video_captures == {}
    assert list(upload_dir.iterdir()) == []


def test_upload_requires_file(client):
    response = client.post("/api/upload-video", data={"sessionId": "1"})

    assert response.status_code == 400


def test_upload_requires_session_id(client, upload_dir):
    response = client.post("/api/upload-video", files={"video": ("a.jpg", b"\xff\xd8", "image/jpeg")})

    assert response.status_code == 400
    assert response.json()["error"] == "Session ID is required"
    assert list(upload_dir.iterdir()) == []


def test_upload_stores_and_serves_capture(client):
    session = _new_session(client)
    payload = b"\xff\xd8\xff\xe0" + b"\x00" * (10 * 1024 * 1024)

    response = client.post(
        "/api/upload-video",
        files={"video": ("frame.jpg", payload, "image/jpeg")},
        data={"sessionId": str(session["id"])},
    )

    assert response.status_code == 200
    capture = response.json()
    assert capture["fileName"] == "frame.jpg"
    assert capture["fileSize"] == len(payload)
    assert capture["filePath"].endswith(".jpg")
    assert client.get(f"/api/video-captures/{session['id']}").json()[0]["id"] == capture["id"]

    served = client.get(f"/api/uploads/{Path(capture['filePath']).name}")
    assert served.status_code == 200
    assert served.content == payload


def test_upload_over_limit_is_413(storage, gateway, upload_dir):
    app = create_app(storage=storage, gateway=gateway, upload_dir=str(upload_dir), max_upload_bytes=1024)

    with TestClient(app) as client:
        response = client.post(
            "/api/upload-video",
            files={"video": ("clip.mp4", b"\x00" * 2048, "video/mp4")},
            data={"sessionId": "1"},
        )

    assert response.status_code == 413
    assert storage.video_captures == {}
    assert list(upload_dir.iterdir()) == []


@pytest.mark.parametrize("name", ["missing.jpg", "..%2Fsecret"])
def test_unknown_upload_is_404(client, name):
    assert client.get(f"/api/uploads/{name}").status_code == 404


def test_delete_session_removes_records_and_files(client, upload_dir):
    session = _new_session(client)
    capture = client.post(
        "/api/upload-video",
        files={"video": ("frame.png", b"\x89PNG", "image/png")},
        data={"sessionId": str(session["id"])},
    ).json()
    client.post("/api/voice-guidance", json={"stepDescription": "Check belt", "sessionId": session["id"]})

    response = client.delete(f"/api/repair-sessions/{session['id']}")

    assert response.json() == {"status": "deleted", "id": session["id"]}
    assert not Path(capture["filePath"]).exists()
    assert client.get(f"/api/video-captures/{session['id']}").json() == []
    assert client.get(f"/api/analysis-logs/{session['id']}").json() == []
    assert client.get(f"/api/repair-sessions/{session['id']}").status_code == 404


# Speech

def test_tts_without_key_is_502(client, monkeypatch):
    monkeypatch.setattr(config, "ELEVENLABS_API_KEY", None)

    response = client.post("/api/tts", json={"text": "Close both valves"})

    assert response.status_code == 502
    assert "not configured" in response.json()["error"]


def test_tts_rejects_empty_text(client):
    assert client.post("/api/tts", json={"text": ""}).status_code == 400
