"""
Tests for the HTTP and WebSocket session surface
"""

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect


def token_for(user_id, role, name=None):
    from telehealth.security import create_access_token

    return create_access_token({"sub": user_id, "role": role, "name": name})


def auth(user_id, role, name=None):
    return {"Authorization": f"Bearer {token_for(user_id, role, name)}"}


DOCTOR = auth("doc1", "doctor", "Dr. Omar")
PATIENT = auth("pat1", "patient", "Sara Ali")
STRANGER = auth("pat9", "patient")


@pytest.fixture
def client(store):
    from telehealth.database import set_store
    from telehealth.main import app

    set_store(store)
    with TestClient(app) as test_client:
        yield test_client
    set_store(None)


def receive_until(ws, predicate, limit=20):
    for _ in range(limit):
        event = ws.receive_json()
        if predicate(event):
            return event
    raise AssertionError("expected event not received")


class TestHealth:
    """Test health endpoints"""

    def test_healthz(self, client):
        assert client.get("/healthz").json() == {"status": "ok"}

    def test_readyz(self, client):
        response = client.get("/readyz")
        assert response.status_code == 200
        assert response.json()["database"] == "up"


class TestAuth:
    """Test token handling"""

    def test_missing_token(self, client):
        assert client.get("/sessions/appt1").status_code == 401

    def test_invalid_token(self, client):
        response = client.get("/sessions/appt1", headers={"Authorization": "Bearer nonsense"})
        assert response.status_code == 401

    def test_unknown_role(self, client):
        response = client.get("/sessions/appt1", headers=auth("x1", "admin"))
        assert response.status_code == 401


class TestSessionEndpoints:
    """Test start/end/messages over HTTP"""

    def test_participant_reads_session(self, client):
        response = client.get("/sessions/appt1", headers=PATIENT)
        assert response.status_code == 200
        body = response.json()
        assert body["id"] == "appt1"
        assert body["session_status"] == "waiting"
        assert body["participants"] == {"patient": None, "doctor": None, "error": None}

    def test_session_includes_profiles(self, client, store):
        store.seed("users/pat1", {"name": "Sara Ali", "role": "patient"})
        store.seed("users/doc1", {"name": "Dr. Omar", "role": "doctor", "specialization": "Cardiology"})

        body = client.get("/sessions/appt1", headers=PATIENT).json()

        assert body["participants"]["patient"]["name"] == "Sara Ali"
        assert body["participants"]["doctor"]["specialization"] == "Cardiology"

    def test_profile_failure_still_returns_session(self, client):
        from telehealth.services import appointment_service
        from telehealth.services.appointment_service import ParticipantProfiles
        from unittest.mock import AsyncMock, patch

        failing = AsyncMock(return_value=ParticipantProfiles(error="Could not load participant details."))
        with patch.object(appointment_service, "get_participant_profiles", failing):
            response = client.get("/sessions/appt1", headers=PATIENT)

        assert response.status_code == 200
        assert response.json()["participants"]["error"] == "Could not load participant details."

    def test_stranger_forbidden(self, client):
        assert client.get("/sessions/appt1", headers=STRANGER).status_code == 403

    def test_unknown_session(self, client):
        assert client.get("/sessions/nope", headers=PATIENT).status_code == 404

    def test_only_doctor_starts(self, client):
        assert client.post("/sessions/appt1/start", headers=PATIENT).status_code == 403

    def test_start_once(self, client):
        first = client.post("/sessions/appt1/start", headers=DOCTOR)
        second = client.post("/sessions/appt1/start", headers=DOCTOR)

        assert first.status_code == 200
        assert first.json() == {"success": True, "already_ended": False}
        assert second.status_code == 409
        assert client.get("/sessions/appt1", headers=PATIENT).json()["session_status"] == "active"

    def test_chat_flow(self, client):
        waiting = client.post("/sessions/appt1/messages", json={"message": "hello"}, headers=PATIENT)
        assert waiting.status_code == 409

        client.post("/sessions/appt1/start", headers=DOCTOR)
        sent = client.post("/sessions/appt1/messages", json={"message": "hello"}, headers=PATIENT)
        reply = client.post("/sessions/appt1/messages", json={"message": "hi Sara"}, headers=DOCTOR)
        assert sent.status_code == 201
        assert reply.status_code == 201

        messages = client.get("/sessions/appt1/messages", headers=DOCTOR).json()
        assert [m["message"] for m in messages] == ["hello", "hi Sara"]
        assert messages[0]["sender_role"] == "patient"

    def test_empty_message_rejected(self, client):
        client.post("/sessions/appt1/start", headers=DOCTOR)
        response = client.post("/sessions/appt1/messages", json={"message": "   "}, headers=PATIENT)
        assert response.status_code == 400

    def test_end_twice(self, client, store):
        client.post("/sessions/appt1/start", headers=DOCTOR)

        first = client.post("/sessions/appt1/end", json={"reason": "manual"}, headers=PATIENT)
        second = client.post("/sessions/appt1/end", headers=DOCTOR)

        assert first.json() == {"success": True, "already_ended": False}
        assert second.json() == {"success": True, "already_ended": True}
        assert client.get("/sessions/appt1", headers=PATIENT).status_code == 404
        assert [op.data["endReason"] for op in store.writes if op.kind == "update" and "endReason" in op.data] == ["manual"]

    def test_stranger_cannot_end(self, client):
        assert client.post("/sessions/appt1/end", headers=STRANGER).status_code == 403


class TestAppointmentEndpoints:
    """Test booking over HTTP"""

    def test_request_approve_flow(self, client):
        created = client.post("/appointments/requests", headers=PATIENT, json={
            "doctor_id": "doc1",
            "appointment_date": "2026-10-22",
            "appointment_time": "11:15 AM",
            "problem": "Follow-up",
        })
        assert created.status_code == 201
        request_id = created.json()["id"]

        pending = client.get("/appointments/requests", headers=DOCTOR).json()
        assert [r["id"] for r in pending] == [request_id]

        approved = client.post(f"/appointments/requests/{request_id}/approve", headers=DOCTOR)
        assert approved.status_code == 200
        assert approved.json()["session_status"] == "waiting"

        mine = client.get("/appointments", headers=PATIENT).json()
        assert {a["id"] for a in mine} == {"appt1", approved.json()["id"]}

    def test_doctor_cannot_request(self, client):
        response = client.post("/appointments/requests", headers=DOCTOR, json={
            "doctor_id": "doc1", "appointment_date": "2026-10-22", "appointment_time": "11:15 AM",
        })
        assert response.status_code == 403

    def test_invalid_request_payload(self, client):
        response = client.post("/appointments/requests", headers=PATIENT, json={
            "doctor_id": "doc1", "appointment_date": "tomorrow", "appointment_time": "11:15 AM",
        })
        assert response.status_code == 422


class TestSessionSocket:
    """Test the live session channel"""

    def test_bad_token_closed(self, client):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws/sessions/appt1?token=bad"):
                pass
        assert exc.value.code == 4401

    def test_unknown_session_closed(self, client):
        token = token_for("pat1", "patient")
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect(f"/ws/sessions/nope?token={token}"):
                pass
        assert exc.value.code == 4404

    def test_stranger_closed(self, client):
        token = token_for("pat9", "patient")
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect(f"/ws/sessions/appt1?token={token}"):
                pass
        assert exc.value.code == 4403

    def test_patient_cannot_chat_while_waiting(self, client):
        token = token_for("pat1", "patient", "Sara Ali")
        with client.websocket_connect(f"/ws/sessions/appt1?token={token}") as ws:
            first = receive_until(ws, lambda e: e["type"] == "appointment")
            assert first["status"] == "waiting"

            ws.send_json({"action": "send", "message": "hello?"})
            error = receive_until(ws, lambda e: e["type"] == "error")
            assert error["action"] == "send"
            assert error["fatal"] is False

    def test_unknown_action(self, client):
        token = token_for("pat1", "patient")
        with client.websocket_connect(f"/ws/sessions/appt1?token={token}") as ws:
            ws.send_json({"action": "dance"})
            error = receive_until(ws, lambda e: e["type"] == "error")
            assert "dance" in error["message"]

    def test_doctor_session_lifecycle(self, client, store):
        token = token_for("doc1", "doctor", "Dr. Omar")
        with client.websocket_connect(f"/ws/sessions/appt1?token={token}") as ws:
            active = receive_until(ws, lambda e: e["type"] == "appointment" and e["status"] == "active")
            assert active["appointment"]["started_by"] == "doc1"

            ws.send_json({"action": "send", "message": "Good morning"})
            chat = receive_until(ws, lambda e: e["type"] == "messages" and e["messages"])
            assert chat["messages"][0]["message"] == "Good morning"
            assert chat["messages"][0]["sender_id"] == "doc1"

            ws.send_json({"action": "end"})
            receive_until(ws, lambda e: e["type"] == "ended")

        assert store.document_count("appointments") == 0

    def test_first_appointment_event_carries_profiles(self, client, store):
        store.seed("users/pat1", {"name": "Sara Ali", "role": "patient"})
        store.seed("users/doc1", {"name": "Dr. Omar", "role": "doctor"})
        token = token_for("pat1", "patient", "Sara Ali")

        with client.websocket_connect(f"/ws/sessions/appt1?token={token}") as ws:
            first = receive_until(ws, lambda e: e["type"] == "appointment")

        assert first["participants"]["patient"]["name"] == "Sara Ali"
        assert first["participants"]["doctor"]["name"] == "Dr. Omar"
        assert first["participants"]["error"] is None

    def test_profile_failure_is_non_fatal_error_event(self, client):
        from unittest.mock import AsyncMock, patch

        from telehealth.services.appointment_service import ParticipantProfiles

        token = token_for("pat1", "patient", "Sara Ali")
        failing = AsyncMock(return_value=ParticipantProfiles(error="Could not load participant details."))
        with patch("telehealth.routers.session_ws.get_participant_profiles", failing):
            with client.websocket_connect(f"/ws/sessions/appt1?token={token}") as ws:
                error = receive_until(ws, lambda e: e["type"] == "error")
                first = receive_until(ws, lambda e: e["type"] == "appointment")

        assert error == {"type": "error", "message": "Could not load participant details.", "fatal": False}
        assert first["status"] == "waiting"
        assert first["participants"]["error"] == "Could not load participant details."
