"""VideoCallSession 시나리오 테스트.

인메모리 데이터 백엔드와 가상 브로커로 의사/환자 두 세션을 함께 구동합니다.

사용법:
    cd backend
    uv run pytest test/test_session.py -v
"""

import asyncio

import pytest

from modules.videocall import CallState, CallStatus, Role, SignalingRelay, VideoCallSession

from fakes import (
    FakeBackend,
    FakeMediaSource,
    FakeNetwork,
    FakeTransport,
    RecordingSurface,
    appointment,
    until,
)


def make_session(role, backend, transport, media_source=None, session_id="apt-123", statuses=None):
    return VideoCallSession(
        role,
        session_id=session_id,
        transport=transport,
        relay=SignalingRelay(backend) if backend is not None else None,
        local_surface=RecordingSurface("local"),
        remote_surface=RecordingSurface("remote"),
        media_source=media_source or FakeMediaSource(),
        on_status=statuses.append if statuses is not None else None,
    )


def test_caller_dials_when_patient_identity_is_already_recorded():
    async def scenario():
        backend = FakeBackend({"apt-123": appointment(patient_peer_id="peer-pat")})
        transport = FakeTransport("peer-doc")
        session = make_session(Role.CALLER, backend, transport)
        await session.start()
        result = (session.state, [call.peer for call in transport.placed], dict(backend.rows["apt-123"]))
        await session.shutdown()
        return result

    state, placed, row = asyncio.run(scenario())
    assert state is CallState.DIALING
    assert placed == ["peer-pat"]
    assert row["doctor_peer_id"] == "peer-doc"


def test_callee_sees_caller_identity_already_recorded():
    async def scenario():
        backend = FakeBackend({"apt-123": appointment(doctor_peer_id="peer-doc")})
        transport = FakeTransport("peer-pat")
        session = make_session(Role.CALLEE, backend, transport)
        await session.start()
        result = (session.state, session.status, transport.placed, dict(backend.rows["apt-123"]))
        await session.shutdown()
        return result

    state, status, placed, row = asyncio.run(scenario())
    assert state is CallState.WAITING_FOR_PEER
    assert status == CallStatus.WAITING_FOR_CALLER
    assert placed == []
    assert row["patient_peer_id"] == "peer-pat"


def test_doctor_and_patient_connect_through_shared_record():
    async def scenario():
        network = FakeNetwork()
        backend = FakeBackend({"apt-123": appointment()})
        doctor_gate = asyncio.Event()
        doctor_statuses, patient_statuses = [], []

        doctor = make_session(
            Role.CALLER, backend, FakeTransport("peer-doc", network, open_gate=doctor_gate),
            statuses=doctor_statuses,
        )
        patient = make_session(
            Role.CALLEE, backend, FakeTransport("peer-pat", network),
            statuses=patient_statuses,
        )

        doctor_start = asyncio.create_task(doctor.start())
        assert await until(lambda: len(backend.subscribers["apt-123"]) == 1)

        # 환자 식별자가 먼저 기록되고, 의사는 push로 받음
        await patient.start()
        assert backend.rows["apt-123"]["patient_peer_id"] == "peer-pat"
        assert doctor.negotiator.remote_identity == "peer-pat"
        assert doctor.transport.placed == []

        doctor_gate.set()
        await doctor_start
        await network.settle()

        snapshot = {
            "placed": list(doctor.transport.placed),
            "doctor_state": doctor.state,
            "patient_state": patient.state,
            "doctor_status": doctor.status,
            "patient_status": patient.status,
            "patient_call": patient.resources.call,
            "patient_stream": patient.resources.local_stream,
            "row": dict(backend.rows["apt-123"]),
        }

        await doctor.shutdown()
        snapshot["patient_after_hang_up"] = patient.status
        await patient.shutdown()
        snapshot["streams"] = [doctor.identity_manager.stream, patient.identity_manager.stream]
        snapshot["subscribers"] = len(backend.subscribers["apt-123"])
        return snapshot, doctor_statuses, patient_statuses

    snapshot, doctor_statuses, patient_statuses = asyncio.run(scenario())

    assert len(snapshot["placed"]) == 1
    assert snapshot["placed"][0].peer == "peer-pat"
    assert snapshot["doctor_state"] is CallState.CONNECTED
    assert snapshot["patient_state"] is CallState.CONNECTED
    assert snapshot["doctor_status"] == CallStatus.CONNECTED
    assert snapshot["patient_status"] == CallStatus.CONNECTED
    assert snapshot["patient_call"].answered_with is snapshot["patient_stream"]
    assert snapshot["row"]["doctor_peer_id"] == "peer-doc"
    assert doctor_statuses == [CallStatus.WAITING, CallStatus.CALLING, CallStatus.CONNECTED, CallStatus.CALL_ENDED]
    assert patient_statuses[-2:] == [CallStatus.CONNECTED, CallStatus.CALL_ENDED]

    # 의사가 끊으면 환자도 종료되고 양쪽 캡처 트랙이 모두 해제됨
    assert snapshot["patient_after_hang_up"] == CallStatus.CALL_ENDED
    assert all(stream.live_tracks == [] for stream in snapshot["streams"])
    assert snapshot["subscribers"] == 0


def test_context_manager_releases_everything_on_exit():
    async def scenario():
        backend = FakeBackend({"apt-123": appointment()})
        transport = FakeTransport("peer-doc")
        async with make_session(Role.CALLER, backend, transport) as session:
            assert session.state is CallState.WAITING_FOR_PEER
        return session, transport, backend

    session, transport, backend = asyncio.run(scenario())
    assert session.state is CallState.ENDED
    assert session.identity_manager.stream.live_tracks == []
    assert transport.destroyed
    assert backend.unsubscribed == 1


def test_cancelled_start_still_releases_resources():
    async def scenario():
        backend = FakeBackend({"apt-123": appointment()})
        transport = FakeTransport("peer-doc")
        never = asyncio.Event()
        session = make_session(Role.CALLER, backend, transport, media_source=FakeMediaSource(gate=never))

        entering = asyncio.create_task(session.__aenter__())
        assert await until(lambda: session.resources.unsubscribe is not None)
        entering.cancel()
        with pytest.raises(asyncio.CancelledError):
            await entering
        return session, transport, backend

    session, transport, backend = asyncio.run(scenario())
    assert session.state is CallState.ENDED
    assert transport.destroyed
    assert backend.unsubscribed == 1


def test_signaling_read_failure_is_surfaced():
    async def scenario():
        backend = FakeBackend({"apt-123": appointment()})
        backend.fail_read = True
        statuses = []
        session = make_session(Role.CALLER, backend, FakeTransport("peer-doc"), statuses=statuses)
        await session.start()
        result = (session.state, session.status, list(statuses))
        await session.shutdown()
        return result, backend

    (state, status, statuses), backend = asyncio.run(scenario())
    assert statuses[0] == CallStatus.SIGNALING_ERROR
    # 최초 읽기는 실패해도 구독 push(자기 식별자 기록)로 레코드를 받음
    assert state is CallState.WAITING_FOR_PEER
    assert backend.unsubscribed == 1


def test_signaling_subscribe_failure_is_surfaced():
    async def scenario():
        backend = FakeBackend({"apt-123": appointment()})
        backend.fail_subscribe = True
        session = make_session(Role.CALLEE, backend, FakeTransport("peer-pat"))
        await session.start()
        result = (session.status, backend.reads)
        await session.shutdown()
        return result

    status, reads = asyncio.run(scenario())
    assert status == CallStatus.SIGNALING_ERROR
    assert reads == 0


def test_signaling_write_failure_is_surfaced():
    async def scenario():
        backend = FakeBackend({"apt-123": appointment()})
        backend.fail_write = True
        statuses = []
        session = make_session(Role.CALLEE, backend, FakeTransport("peer-pat"), statuses=statuses)
        await session.start()
        result = (session.state, list(statuses))
        await session.shutdown()
        return result

    state, statuses = asyncio.run(scenario())
    assert CallStatus.SIGNALING_ERROR in statuses
    assert state is CallState.WAITING_FOR_PEER


def test_media_failure_keeps_camera_error():
    async def scenario():
        backend = FakeBackend({"apt-123": appointment(patient_peer_id="peer-pat")})
        transport = FakeTransport("peer-doc")
        session = make_session(Role.CALLER, backend, transport, media_source=FakeMediaSource(fail=True))
        await session.start()
        result = (session.status, transport.placed, backend.rows["apt-123"]["doctor_peer_id"])
        await session.shutdown()
        return result

    status, placed, written = asyncio.run(scenario())
    assert status == CallStatus.MEDIA_ERROR
    assert placed == []
    assert written == "peer-doc"


def test_identity_failure_writes_nothing():
    async def scenario():
        backend = FakeBackend({"apt-123": appointment()})
        session = make_session(Role.CALLER, backend, FakeTransport("peer-doc", fail_open=True))
        await session.start()
        result = (session.status, session.identity_manager.identity, dict(backend.rows["apt-123"]))
        await session.shutdown()
        return result

    status, identity, row = asyncio.run(scenario())
    assert status == CallStatus.CONNECTION_ERROR
    assert identity is None
    assert row["doctor_peer_id"] is None


def test_manual_mode_without_session():
    async def scenario():
        network = FakeNetwork()
        caller = make_session(Role.CALLER, None, FakeTransport("peer-a", network), session_id=None)
        callee = make_session(Role.CALLEE, None, FakeTransport("peer-b", network), session_id=None)
        await callee.start()
        await caller.start()
        await caller.dial("peer-b")
        await network.settle()
        states = (caller.state, callee.state)
        await callee.hang_up()
        states += (caller.status,)
        await caller.shutdown()
        await callee.shutdown()
        return states

    caller_state, callee_state, caller_status = asyncio.run(scenario())
    assert caller_state is CallState.CONNECTED
    assert callee_state is CallState.CONNECTED
    assert caller_status == CallStatus.CALL_ENDED


def test_toggles_only_touch_local_tracks():
    async def scenario():
        backend = FakeBackend({"apt-123": appointment()})
        session = make_session(Role.CALLER, backend, FakeTransport("peer-doc"))
        before = session.toggle_mic()
        await session.start()
        results = [before, session.toggle_mic(), session.toggle_camera(), session.toggle_mic()]
        stream = session.resources.local_stream
        flags = (stream.audio_enabled, stream.video_enabled)
        row = dict(backend.rows["apt-123"])
        await session.shutdown()
        return results, flags, row

    results, flags, row = asyncio.run(scenario())
    assert results == [None, False, False, True]
    assert flags == (True, False)
    assert row == appointment(doctor_peer_id="peer-doc")
