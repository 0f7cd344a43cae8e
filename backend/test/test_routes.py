"""예약 API / 식별자 브로커 라우터 테스트 (FastAPI TestClient).

사용법:
    cd backend
    uv run pytest test/test_routes.py -v
"""

import uuid

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

import routes.deps as deps
from modules.broker import PeerRegistry
from routes import health_router

from fakes import InMemoryAppointmentRepository, appointment, build_app


@pytest.fixture
def repository():
    return InMemoryAppointmentRepository([
        appointment(),
        appointment(id="apt-req", status="requested"),
        appointment(id="apt-other", doctor_id="doc-2"),
    ])


@pytest.fixture
def registry():
    return PeerRegistry()


@pytest.fixture
def client(repository, registry):
    with TestClient(build_app(repository, registry=registry)) as test_client:
        yield test_client


# ------------------------------------------------------------------
# 행 조회 / 수정 / 구독
# ------------------------------------------------------------------

def test_read_appointment(client):
    response = client.get("/api/appointments/apt-123")
    assert response.status_code == 200
    assert response.json()["doctor_id"] == "doc-1"


def test_read_missing_appointment(client):
    response = client.get("/api/appointments/apt-404")
    assert response.status_code == 404
    assert response.json()["detail"] == {"error": "row_not_found", "id": "apt-404"}


def test_patch_pushes_full_row_to_subscribers(client):
    with client.websocket_connect("/api/appointments/apt-123/subscribe") as ws:
        assert ws.receive_json() == {"type": "subscribed", "table": "appointments", "id": "apt-123"}

        response = client.patch("/api/appointments/apt-123", json={"patient_peer_id": "peer-pat"})
        assert response.status_code == 200

        message = ws.receive_json()
        assert message["type"] == "UPDATE"
        assert message["new"] == appointment(patient_peer_id="peer-pat")


def test_patch_rejects_non_signaling_fields(client, repository):
    response = client.patch("/api/appointments/apt-123", json={"status": "ended", "doctor_peer_id": "x", "notes": "n"})
    assert response.status_code == 400
    assert response.json()["detail"] == {"error": "field_not_writable", "fields": ["notes", "status"]}
    assert repository.rows["apt-123"]["doctor_peer_id"] is None


def test_patch_requires_fields(client):
    response = client.patch("/api/appointments/apt-123", json={})
    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "missing_fields"


@pytest.mark.parametrize("body", [{"doctor_peer_id": 123}, {"patient_peer_id": ["peer-pat"]}, ["doctor_peer_id"]])
def test_patch_rejects_invalid_values(client, repository, body):
    response = client.patch("/api/appointments/apt-123", json=body)
    assert response.status_code == 422
    assert repository.rows["apt-123"]["doctor_peer_id"] is None
    assert repository.rows["apt-123"]["patient_peer_id"] is None


def test_patch_missing_appointment(client):
    response = client.patch("/api/appointments/apt-404", json={"doctor_peer_id": "peer-doc"})
    assert response.status_code == 404


def test_database_unavailable(client, repository):
    repository.available = False
    assert client.get("/api/appointments/apt-123").status_code == 503
    response = client.patch("/api/appointments/apt-123", json={"doctor_peer_id": "peer-doc"})
    assert response.status_code == 503
    assert response.json()["detail"]["error"] == "database_unavailable"


# ------------------------------------------------------------------
# 예약 목록 / 생성 / 상태 전이
# ------------------------------------------------------------------

def test_create_and_list_requests(client):
    response = client.post("/api/appointments", json={"doctor_id": "doc-1", "patient_id": "pat-9", "patient_name": "Kim"})
    assert response.status_code == 201
    created = response.json()
    assert created["status"] == "requested"

    listed = client.get("/api/appointments", params={"doctor_id": "doc-1", "status": "requested"}).json()
    assert {row["id"] for row in listed["appointments"]} == {"apt-req", created["id"]}
    assert listed["count"] == 2


def test_list_requires_doctor_and_valid_status(client):
    assert client.get("/api/appointments").status_code == 422
    response = client.get("/api/appointments", params={"doctor_id": "doc-1", "status": "waiting"})
    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "invalid_status_filter"


def test_confirm_then_end(client):
    confirmed = client.post("/api/appointments/apt-req/confirm", json={"appointment_time": "2026-10-20T09:00:00+00:00"})
    assert confirmed.status_code == 200
    assert confirmed.json()["status"] == "confirmed"
    assert confirmed.json()["appointment_time"].startswith("2026-10-20T09:00:00")

    ended = client.post("/api/appointments/apt-req/end")
    assert ended.json()["status"] == "ended"


def test_confirm_without_time(client):
    response = client.post("/api/appointments/apt-req/confirm")
    assert response.status_code == 200
    assert response.json()["appointment_time"]


def test_reject_request(client):
    assert client.post("/api/appointments/apt-req/reject").json()["status"] == "rejected"


def test_invalid_transition_conflicts(client):
    response = client.post("/api/appointments/apt-123/confirm")
    assert response.status_code == 409
    assert response.json()["detail"] == {"error": "invalid_status", "action": "confirm", "status": "confirmed"}

    assert client.post("/api/appointments/apt-req/end").status_code == 409
    assert client.post("/api/appointments/apt-404/reject").status_code == 404


# ------------------------------------------------------------------
# 인증
# ------------------------------------------------------------------

def test_token_required_when_configured(client, monkeypatch):
    monkeypatch.setattr(deps, "API_TOKEN", "secret")

    response = client.get("/api/appointments/apt-123")
    assert response.status_code == 401
    assert response.json()["detail"]["error"] == "unauthorized"

    assert client.get("/api/appointments/apt-123", headers={"Authorization": "Token secret"}).status_code == 401
    assert client.get("/api/appointments/apt-123", headers={"Authorization": "Bearer secret"}).status_code == 200

    with pytest.raises(WebSocketDisconnect) as closed:
        with client.websocket_connect("/api/appointments/apt-123/subscribe"):
            pass
    assert closed.value.code == 4001

    with client.websocket_connect("/api/appointments/apt-123/subscribe?token=secret") as ws:
        assert ws.receive_json()["type"] == "subscribed"


# ------------------------------------------------------------------
# 식별자 브로커
# ------------------------------------------------------------------

def test_issue_identity(client):
    identity = client.get("/peerjs/id").json()["id"]
    assert str(uuid.UUID(identity)) == identity


def test_broker_open_and_relay(client, registry):
    with client.websocket_connect("/peerjs?id=peer-a") as a, client.websocket_connect("/peerjs?id=peer-b") as b:
        assert a.receive_json() == {"type": "OPEN"}
        assert b.receive_json() == {"type": "OPEN"}
        assert set(registry.list_peer_ids()) == {"peer-a", "peer-b"}

        payload = {"sdp": {"type": "offer", "sdp": "v=0"}, "type": "media", "connectionId": "mc_1"}
        a.send_json({"type": "HEARTBEAT"})
        a.send_json({"type": "OFFER", "dst": "peer-b", "payload": payload})
        assert b.receive_json() == {"type": "OFFER", "src": "peer-a", "dst": "peer-b", "payload": payload}

        b.send_json({"type": "ANSWER", "dst": "peer-a", "payload": payload})
        assert a.receive_json()["src"] == "peer-b"


def test_broker_expires_offer_to_absent_peer(client):
    with client.websocket_connect("/peerjs?id=peer-a") as a:
        assert a.receive_json()["type"] == "OPEN"
        a.send_json({"type": "OFFER", "dst": "ghost", "payload": {"connectionId": "mc_1"}})
        message = a.receive_json()
        assert message["type"] == "EXPIRE"
        assert message["src"] == "ghost"


def test_broker_rejects_taken_identity(client):
    with client.websocket_connect("/peerjs?id=peer-a") as first:
        assert first.receive_json()["type"] == "OPEN"
        with client.websocket_connect("/peerjs?id=peer-a") as second:
            assert second.receive_json()["type"] == "ID-TAKEN"


def test_broker_requires_identity(client):
    with pytest.raises(WebSocketDisconnect) as closed:
        with client.websocket_connect("/peerjs"):
            pass
    assert closed.value.code == 4000


# ------------------------------------------------------------------
# 상태 확인
# ------------------------------------------------------------------

def test_health_without_database():
    app = FastAPI()
    app.include_router(health_router)
    with TestClient(app) as test_client:
        body = test_client.get("/api/health").json()
    assert body == {
        "status": "degraded",
        "services": {"database": "not_initialized", "redis": "not_initialized"},
    }
