from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from services.dose_actions.main import app, get_flow


MORNING = "2026-03-04T08:00:00Z"


@pytest.fixture
def client(flow):
    app.dependency_overrides[get_flow] = lambda: flow
    yield TestClient(app)
    app.dependency_overrides.clear()


def create_command(client, **schedule):
    response = client.post(
        "/commands",
        json={
            "patient_id": "patient-1",
            "medication": {"name": "Lisinopril", "dosage": "10mg"},
            "schedule": {"frequency": "daily", "times": ["08:00"], "start_date": "2026-03-04", **schedule},
            "created_by": "caregiver-1",
        },
    )
    assert response.status_code == 200
    return response.json()["data"]["command"]


def test_health(client):
    assert client.get("/health").json() == {"status": "ok", "service": "dose-actions"}


def test_create_and_read_command(client, flow):
    command = create_command(client, end_date="2026-03-05")
    assert command["grace_period"]["medication_type"] == "critical"
    assert command["version"] == 1

    response = client.get(f"/commands/{command['id']}")
    assert response.json()["success"] is True
    assert response.json()["data"]["command"]["medication"]["name"] == "Lisinopril"

    occurrences = client.get(f"/occurrences/{command['id']}").json()["data"]["occurrences"]
    assert [o["state"] for o in occurrences] == ["scheduled", "scheduled"]


def test_missing_command_is_404(client):
    response = client.get("/commands/cmd_missing")
    assert response.status_code == 404
    body = response.json()
    assert body["success"] is False
    assert body["error_code"] == "NotFound"
    assert body["field"] == "command_id"


def test_take_then_undo(client, flow, clock):
    command = create_command(client)
    clock.now = datetime(2026, 3, 4, 8, 10, tzinfo=timezone.utc)

    taken = client.post("/doses/take", json={"command_id": command["id"], "scheduled_for": MORNING, "actor": "patient-1"})
    assert taken.status_code == 200
    event = taken.json()["data"]["event"]
    assert event["event_type"] == "dose_taken"
    assert event["timing"]["minutes_late"] == 10

    duplicate = client.post("/doses/take", json={"command_id": command["id"], "scheduled_for": MORNING, "actor": "patient-1"})
    assert duplicate.status_code == 400
    assert duplicate.json()["field"] == "scheduled_for"

    clock.advance(seconds=10)
    blank = client.post(f"/events/{event['id']}/undo", json={"actor": "patient-1", "reason": "  "})
    assert blank.status_code == 400
    assert blank.json()["field"] == "reason"

    undone = client.post(f"/events/{event['id']}/undo", json={"actor": "patient-1", "reason": "tapped by mistake"})
    assert undone.status_code == 200
    assert undone.json()["data"]["event"]["data"]["original_event_id"] == event["id"]


def test_undo_after_window_is_gone(client, clock):
    command = create_command(client)
    clock.now = datetime(2026, 3, 4, 8, 10, tzinfo=timezone.utc)
    event = client.post(
        "/doses/take", json={"command_id": command["id"], "scheduled_for": MORNING, "actor": "patient-1"}
    ).json()["data"]["event"]

    clock.advance(seconds=31)
    response = client.post(f"/events/{event['id']}/undo", json={"actor": "patient-1", "reason": "tapped by mistake"})
    assert response.status_code == 410
    assert response.json()["error_code"] == "ExpiredWindow"
    assert "correction" in response.json()["error"]


def test_forbidden_actor(client, flow):
    command = create_command(client)
    flow.permissions.denied.add("stranger")
    response = client.post(
        "/doses/skip", json={"command_id": command["id"], "scheduled_for": MORNING, "actor": "stranger"}
    )
    assert response.status_code == 403
    assert response.json()["error_code"] == "Forbidden"


def test_stale_schedule_update_is_409(client):
    command = create_command(client)
    path = f"/commands/{command['id']}/schedule"
    assert client.patch(path, json={"expected_version": 1, "actor": "caregiver-1", "times": ["09:00"]}).status_code == 200

    stale = client.patch(path, json={"expected_version": 1, "actor": "caregiver-1", "times": ["10:00"]})
    assert stale.status_code == 409
    assert stale.json()["error_code"] == "StaleVersion"


def test_request_validation_uses_envelope(client):
    response = client.post("/doses/take", json={"command_id": "cmd_1", "scheduled_for": MORNING})
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error_code"] == "ValidationError"
    assert body["field"] == "actor"


def test_patient_patterns(client, flow):
    command = create_command(client)
    response = client.get("/patients/patient-1/patterns")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["patterns"] == []
    assert [s["command_id"] for s in data["summaries"]] == [command["id"]]
