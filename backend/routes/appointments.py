"""예약(공유 통화 레코드) API 라우터.

행 조회/수정, 실시간 행 구독, 화상 진료 예약 상태 전이 엔드포인트를 제공합니다.

Endpoints:
    GET    /api/appointments?doctor_id=&status=   의사의 온라인 예약 목록
    POST   /api/appointments                      화상 진료 요청 생성
    GET    /api/appointments/{id}                 행 조회
    PATCH  /api/appointments/{id}                 시그널링 필드 갱신
    POST   /api/appointments/{id}/confirm|reject|end
    WS     /api/appointments/{id}/subscribe       행 변경 구독
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Literal, Optional, TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict

from modules.database import InvalidStatusError, RepositoryError, STATUSES, WRITABLE_FIELDS
from .deps import verify_auth_header, verify_ws_token

if TYPE_CHECKING:
    from modules import AppointmentRepository, RowChangeFeed

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/appointments", tags=["appointments"])

TABLE = "appointments"

# 글로벌 참조 (app.py에서 설정됨)
_repository: Optional["AppointmentRepository"] = None
_feed: Optional["RowChangeFeed"] = None


def init_appointments(repository: "AppointmentRepository", feed: "RowChangeFeed"):
    """저장소와 행 변경 피드를 설정합니다."""
    global _repository, _feed
    _repository = repository
    _feed = feed
    logger.info("예약 라우터 초기화 완료")


class AppointmentCreateRequest(BaseModel):
    """화상 진료 요청 모델."""
    doctor_id: str
    patient_id: str
    patient_name: Optional[str] = None
    notes: Optional[str] = None
    type: Literal["online", "offline"] = "online"


class SignalingFieldsUpdate(BaseModel):
    """시그널링 필드 갱신 모델. 그 밖의 키는 받아서 400으로 거절합니다."""
    model_config = ConfigDict(extra="allow")

    doctor_peer_id: Optional[str] = None
    patient_peer_id: Optional[str] = None


class ConfirmRequest(BaseModel):
    """예약 확정 요청 모델."""
    appointment_time: Optional[datetime] = None


def _repo() -> "AppointmentRepository":
    if _repository is None:
        raise HTTPException(status_code=503, detail={"error": "database_unavailable"})
    return _repository


def _unavailable(e: RepositoryError) -> HTTPException:
    logger.error(f"[DB] 예약 저장소 사용 불가: {e}")
    return HTTPException(status_code=503, detail={"error": "database_unavailable"})


def _not_found(appointment_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail={"error": "row_not_found", "id": appointment_id})


async def _publish(row: Dict[str, Any]) -> None:
    if _feed is not None:
        await _feed.publish(TABLE, row["id"], row)


@router.get("")
async def list_appointments(
    doctor_id: str = Query(...),
    status: Optional[str] = Query(None),
    _: bool = Depends(verify_auth_header)
):
    """의사의 온라인 예약 목록을 오래된 순으로 조회합니다."""
    if status is not None and status not in STATUSES:
        raise HTTPException(status_code=400, detail={"error": "invalid_status_filter", "status": status})
    try:
        rows = await _repo().list_for_doctor(doctor_id, status)
    except RepositoryError as e:
        raise _unavailable(e)
    return {"appointments": rows, "count": len(rows)}


@router.post("", status_code=201)
async def create_appointment(
    request: AppointmentCreateRequest,
    _: bool = Depends(verify_auth_header)
):
    """화상 진료 요청을 생성합니다. 상태는 requested로 시작합니다."""
    try:
        row = await _repo().create(
            request.doctor_id,
            request.patient_id,
            patient_name=request.patient_name,
            notes=request.notes,
            appointment_type=request.type,
        )
    except RepositoryError as e:
        raise _unavailable(e)
    return row


@router.get("/{appointment_id}")
async def read_appointment(appointment_id: str, _: bool = Depends(verify_auth_header)):
    """행을 조회합니다."""
    try:
        row = await _repo().get(appointment_id)
    except RepositoryError as e:
        raise _unavailable(e)
    if row is None:
        raise _not_found(appointment_id)
    return row


@router.patch("/{appointment_id}")
async def update_appointment(
    appointment_id: str,
    request: SignalingFieldsUpdate,
    _: bool = Depends(verify_auth_header)
):
    """시그널링 필드(doctor_peer_id, patient_peer_id)를 갱신하고 변경을 발행합니다.

    Raises:
        HTTPException: 400 missing_fields / field_not_writable, 404, 422 (문자열이 아닌 값), 503
    """
    fields = request.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(status_code=400, detail={"error": "missing_fields"})
    invalid = sorted(key for key in fields if key not in WRITABLE_FIELDS)
    if invalid:
        raise HTTPException(status_code=400, detail={"error": "field_not_writable", "fields": invalid})

    try:
        row = await _repo().update_fields(appointment_id, fields)
    except RepositoryError as e:
        raise _unavailable(e)
    if row is None:
        raise _not_found(appointment_id)

    await _publish(row)
    return row


async def _transition(appointment_id: str, action: str, appointment_time: Optional[datetime] = None):
    try:
        row = await _repo().transition(appointment_id, action, appointment_time)
    except InvalidStatusError as e:
        raise HTTPException(
            status_code=409,
            detail={"error": "invalid_status", "action": action, "status": e.current_status},
        )
    except RepositoryError as e:
        raise _unavailable(e)
    if row is None:
        raise _not_found(appointment_id)

    await _publish(row)
    return row


@router.post("/{appointment_id}/confirm")
async def confirm_appointment(
    appointment_id: str,
    request: Optional[ConfirmRequest] = None,
    _: bool = Depends(verify_auth_header)
):
    """requested → confirmed. 예약 시각을 주지 않으면 현재 시각."""
    appointment_time = request.appointment_time if request else None
    return await _transition(appointment_id, "confirm", appointment_time)


@router.post("/{appointment_id}/reject")
async def reject_appointment(appointment_id: str, _: bool = Depends(verify_auth_header)):
    """requested → rejected."""
    return await _transition(appointment_id, "reject")


@router.post("/{appointment_id}/end")
async def end_appointment(appointment_id: str, _: bool = Depends(verify_auth_header)):
    """confirmed → ended."""
    return await _transition(appointment_id, "end")


@router.websocket("/{appointment_id}/subscribe")
async def subscribe_appointment(
    websocket: WebSocket,
    appointment_id: str,
    token: Optional[str] = Query(None)
):
    """행 변경 구독.

    구독이 활성화되면 {"type": "subscribed"}를 보내고,
    이후 커밋된 갱신마다 {"type": "UPDATE", "new": <전체 행>}을 보냅니다.
    구독 이전 변경은 재전송하지 않습니다.
    """
    if _feed is None:
        await websocket.close(code=1011, reason="Server not ready")
        return
    if not verify_ws_token(token):
        await websocket.close(code=4001, reason="Unauthorized")
        return

    await websocket.accept()
    queue = _feed.subscribe(TABLE, appointment_id)
    logger.info(f"[Realtime] 행 구독 연결: {TABLE}/{appointment_id}")

    async def forward_updates():
        try:
            while True:
                row = await queue.get()
                await websocket.send_json({"type": "UPDATE", "table": TABLE, "id": appointment_id, "new": row})
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug(f"[Realtime] 구독 전송 중단 {appointment_id}: {e}")

    sender: Optional[asyncio.Task] = None
    try:
        await websocket.send_json({"type": "subscribed", "table": TABLE, "id": appointment_id})
        sender = asyncio.create_task(forward_updates())
        while True:
            # 클라이언트 메시지는 사용하지 않음 (연결 종료 감지용)
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info(f"[Realtime] 행 구독 해제: {TABLE}/{appointment_id}")
    finally:
        if sender is not None:
            sender.cancel()
        _feed.unsubscribe(TABLE, appointment_id, queue)
