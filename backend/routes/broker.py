"""네트워크 식별자 브로커 라우터.

피어가 일시적인 네트워크 식별자를 발급받아 등록하고,
통화 offer/answer를 상대 식별자에게 전달하는 엔드포인트를 제공합니다.

처리하는 메시지 타입:
    - OFFER / ANSWER / CANDIDATE / LEAVE: dst에게 src를 붙여 전달
    - HEARTBEAT: 무시 (연결 유지용)
"""

import json
import uuid
import logging
from typing import Optional, TYPE_CHECKING

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from modules.broker import RELAYED_TYPES
from .deps import verify_auth_header, verify_ws_token

if TYPE_CHECKING:
    from modules import PeerRegistry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["broker"])

# 글로벌 레지스트리 참조 (app.py에서 설정됨)
_registry: Optional["PeerRegistry"] = None


def init_broker(registry: "PeerRegistry"):
    """피어 레지스트리를 설정합니다."""
    global _registry
    _registry = registry
    logger.info("브로커 라우터 초기화 완료")


@router.get("/peerjs/id")
async def issue_identity(_: bool = Depends(verify_auth_header)):
    """새 네트워크 식별자를 발급합니다."""
    return {"id": str(uuid.uuid4())}


@router.websocket("/peerjs")
async def broker_endpoint(
    websocket: WebSocket,
    peer_id: Optional[str] = Query(None, alias="id"),
    token: Optional[str] = Query(None)
):
    """식별자 등록 및 메시지 중계 WebSocket.

    접속 시 식별자를 등록하고 {"type": "OPEN"}을 보냅니다.
    이미 접속 중인 식별자면 {"type": "ID-TAKEN"}을 보내고 연결을 닫습니다.
    연결이 끊기면 식별자를 해제합니다.
    """
    if _registry is None:
        logger.error("레지스트리가 초기화되지 않음")
        await websocket.close(code=1011, reason="Server not ready")
        return

    if not verify_ws_token(token):
        await websocket.close(code=4001, reason="Unauthorized")
        return

    if not peer_id:
        await websocket.close(code=4000, reason="id required")
        return

    await websocket.accept()

    if not _registry.register(peer_id, websocket):
        await websocket.send_json({"type": "ID-TAKEN", "payload": {"msg": "ID is taken"}})
        await websocket.close(code=4003, reason="ID is taken")
        return

    await websocket.send_json({"type": "OPEN"})

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                logger.warning(f"[Broker] JSON 파싱 실패 ({peer_id[:8]}): {raw[:80]}")
                continue

            message_type = message.get("type")
            if message_type == "HEARTBEAT":
                continue
            if message_type in RELAYED_TYPES:
                await _registry.relay(peer_id, message)
            else:
                logger.warning(f"[Broker] 알 수 없는 메시지 타입 ({peer_id[:8]}): {message_type}")

    except WebSocketDisconnect:
        logger.info(f"[Broker] 피어 {peer_id[:8]} 연결 종료")
    finally:
        _registry.unregister(peer_id, websocket)
