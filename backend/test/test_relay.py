"""SignalingRelay / Role / HttpDataBackend 테스트.

사용법:
    cd backend
    uv run pytest test/test_relay.py -v
"""

import asyncio

import httpx
import pytest

import routes.deps as deps
from modules.videocall import (
    HttpDataBackend,
    Role,
    RowNotFoundError,
    SignalingReadError,
    SignalingRelay,
    SignalingWriteError,
)

from fakes import FakeBackend, InMemoryAppointmentRepository, appointment, build_app


# ------------------------------------------------------------------
# Role
# ------------------------------------------------------------------

def test_role_fields():
    assert Role.CALLER.identity_field == "doctor_peer_id"
    assert Role.CALLER.remote_field == "patient_peer_id"
    assert Role.CALLEE.identity_field == "patient_peer_id"
    assert Role.CALLEE.remote_field == "doctor_peer_id"
    assert Role.CALLER.other is Role.CALLEE


def test_role_for_user():
    record = appointment()
    assert Role.for_user(record, "doc-1") is Role.CALLER
    assert Role.for_user(record, "pat-1") is Role.CALLEE
    with pytest.raises(ValueError):
        Role.for_user(record, "stranger")


# ------------------------------------------------------------------
# SignalingRelay
# ------------------------------------------------------------------

def test_write_field_sets_only_own_identity():
    async def scenario():
        backend = FakeBackend({"apt-123": appointment(patient_peer_id="peer-pat")})
        row = await SignalingRelay(backend).write_field("apt-123", Role.CALLER, "peer-doc")
        return row

    row = asyncio.run(scenario())
    assert row["doctor_peer_id"] == "peer-doc"
    assert row["patient_peer_id"] == "peer-pat"


def test_subscribe_receives_full_row_on_change():
    received = []

    async def scenario():
        backend = FakeBackend({"apt-123": appointment()})
        relay = SignalingRelay(backend)
        unsubscribe = await relay.subscribe("apt-123", received.append)
        await relay.write_field("apt-123", Role.CALLEE, "peer-pat")
        await unsubscribe()
        await relay.write_field("apt-123", Role.CALLER, "peer-doc")

    asyncio.run(scenario())
    assert received == [appointment(patient_peer_id="peer-pat")]


def test_backend_failures_are_wrapped():
    async def scenario():
        backend = FakeBackend({"apt-123": appointment()})
        backend.fail_read = backend.fail_write = backend.fail_subscribe = True
        relay = SignalingRelay(backend)

        with pytest.raises(SignalingReadError) as read_error:
            await relay.read_session("apt-123")
        with pytest.raises(SignalingReadError):
            await relay.subscribe("apt-123", lambda row: None)
        with pytest.raises(SignalingWriteError) as write_error:
            await relay.write_field("apt-123", Role.CALLER, "peer-doc")
        return read_error.value, write_error.value

    read_error, write_error = asyncio.run(scenario())
    assert isinstance(read_error.__cause__, ConnectionError)
    assert isinstance(write_error.__cause__, ConnectionError)


def test_missing_row_is_a_read_error():
    async def scenario():
        with pytest.raises(SignalingReadError) as error:
            await SignalingRelay(FakeBackend()).read_session("apt-404")
        return error.value

    assert isinstance(asyncio.run(scenario()).__cause__, RowNotFoundError)


# ------------------------------------------------------------------
# HttpDataBackend (ASGI 앱에 직접 요청)
# ------------------------------------------------------------------

def make_http_backend(repository, token=""):
    app = build_app(repository)
    return HttpDataBackend("http://testserver", token=token, http_transport=httpx.ASGITransport(app=app))


def test_http_backend_reads_and_updates_row():
    repository = InMemoryAppointmentRepository([appointment()])

    async def scenario():
        backend = make_http_backend(repository)
        before = await backend.read_row("appointments", "apt-123")
        after = await backend.update_row("appointments", "apt-123", {"doctor_peer_id": "peer-doc"})
        return before, after

    before, after = asyncio.run(scenario())
    assert before["doctor_peer_id"] is None
    assert after["doctor_peer_id"] == "peer-doc"
    assert repository.rows["apt-123"]["doctor_peer_id"] == "peer-doc"


def test_http_backend_missing_row():
    async def scenario():
        backend = make_http_backend(InMemoryAppointmentRepository())
        with pytest.raises(RowNotFoundError):
            await backend.read_row("appointments", "apt-404")
        with pytest.raises(RowNotFoundError):
            await backend.update_row("appointments", "apt-404", {"doctor_peer_id": "peer-doc"})

    asyncio.run(scenario())


def test_http_backend_sends_bearer_token(monkeypatch):
    monkeypatch.setattr(deps, "API_TOKEN", "secret")
    repository = InMemoryAppointmentRepository([appointment()])

    async def scenario():
        row = await make_http_backend(repository, token="secret").read_row("appointments", "apt-123")
        with pytest.raises(httpx.HTTPStatusError):
            await make_http_backend(repository, token="wrong").read_row("appointments", "apt-123")
        return row

    assert asyncio.run(scenario())["id"] == "apt-123"


def test_http_backend_errors_become_signaling_errors():
    repository = InMemoryAppointmentRepository([appointment()])
    repository.available = False

    async def scenario():
        relay = SignalingRelay(make_http_backend(repository))
        with pytest.raises(SignalingReadError) as error:
            await relay.read_session("apt-123")
        return error.value

    error = asyncio.run(scenario())
    assert isinstance(error.__cause__, httpx.HTTPStatusError)
    assert error.__cause__.response.status_code == 503
