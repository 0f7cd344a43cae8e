"""시그널링 릴레이 모듈.

공유 통화 레코드(appointments 행)를 통해 양측의 네트워크 식별자를 교환합니다.

Classes:
    Role: 통화 역할 (의사=발신자, 환자=수신자)
    DataBackend: 행 저장소 인터페이스 (read/update/subscribe)
    HttpDataBackend: 클리닉 서버 REST + WebSocket 구현
    SignalingRelay: 통화 흐름이 사용하는 좁은 인터페이스 (오류 래핑)
"""

import json
import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import websockets
from websockets.exceptions import ConnectionClosed

from .config import signaling_config, websocket_url
from .errors import RowNotFoundError, SignalingReadError, SignalingWriteError

logger = logging.getLogger(__name__)

Row = Dict[str, Any]
OnChange = Callable[[Row], Any]
Unsubscribe = Callable[[], Awaitable[None]]


class Role(Enum):
    """통화 역할.

    발신자(의사)는 상대 식별자가 레코드에 나타나면 발신하고,
    수신자(환자)는 수신 통화만 응답합니다.
    """

    CALLER = "doctor"
    CALLEE = "patient"

    @property
    def identity_field(self) -> str:
        """이 역할이 자신의 식별자를 쓰는 필드."""
        return f"{self.value}_peer_id"

    @property
    def remote_field(self) -> str:
        """상대 역할의 식별자 필드."""
        return self.other.identity_field

    @property
    def other(self) -> "Role":
        return Role.CALLEE if self is Role.CALLER else Role.CALLER

    @classmethod
    def for_user(cls, record: Row, user_id: str) -> "Role":
        """레코드와 사용자 ID로 역할을 결정합니다.

        Raises:
            ValueError: 사용자가 레코드의 의사도 환자도 아닌 경우
        """
        if record.get("doctor_id") == user_id:
            return cls.CALLER
        if record.get("patient_id") == user_id:
            return cls.CALLEE
        raise ValueError(f"사용자 {user_id}는 이 예약의 참여자가 아닙니다")


class DataBackend:
    """행 저장소 인터페이스."""

    async def read_row(self, table: str, row_id: str) -> Row:
        raise NotImplementedError

    async def update_row(self, table: str, row_id: str, fields: Row) -> Row:
        raise NotImplementedError

    async def subscribe_to_row(self, table: str, row_id: str, on_change: OnChange) -> Unsubscribe:
        raise NotImplementedError


class HttpDataBackend(DataBackend):
    """클리닉 서버 데이터 백엔드 클라이언트.

    - read_row: GET /api/{table}/{id}
    - update_row: PATCH /api/{table}/{id}
    - subscribe_to_row: WS /api/{table}/{id}/subscribe ("subscribed" 확인 후 반환)
    """

    def __init__(
        self,
        server_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: float = 10.0,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.server_url = (server_url or signaling_config.SERVER_URL).rstrip("/")
        self.token = token if token is not None else signaling_config.API_TOKEN
        self.timeout = timeout
        self.http_transport = http_transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(headers=self._headers, timeout=self.timeout, transport=self.http_transport)

    @property
    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    async def read_row(self, table: str, row_id: str) -> Row:
        async with self._client() as client:
            response = await client.get(f"{self.server_url}/api/{table}/{row_id}")
        if response.status_code == 404:
            raise RowNotFoundError(f"{table}/{row_id}")
        response.raise_for_status()
        return response.json()

    async def update_row(self, table: str, row_id: str, fields: Row) -> Row:
        async with self._client() as client:
            response = await client.patch(f"{self.server_url}/api/{table}/{row_id}", json=fields)
        if response.status_code == 404:
            raise RowNotFoundError(f"{table}/{row_id}")
        response.raise_for_status()
        return response.json()

    async def subscribe_to_row(self, table: str, row_id: str, on_change: OnChange) -> Unsubscribe:
        ws = await websockets.connect(
            websocket_url(self.server_url, f"/api/{table}/{row_id}/subscribe", token=self.token)
        )
        try:
            ack = json.loads(await asyncio.wait_for(ws.recv(), timeout=self.timeout))
        except (asyncio.TimeoutError, ValueError, ConnectionClosed):
            await ws.close()
            raise
        if ack.get("type") != "subscribed":
            await ws.close()
            raise ValueError(f"구독 확인 실패: {ack}")

        logger.info(f"[VideoCall] 레코드 구독 시작: {table}/{row_id}")
        reader = asyncio.create_task(self._read_changes(ws, table, row_id, on_change))

        async def unsubscribe() -> None:
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
            await ws.close()
            logger.info(f"[VideoCall] 레코드 구독 해제: {table}/{row_id}")

        return unsubscribe

    async def _read_changes(self, ws, table: str, row_id: str, on_change: OnChange) -> None:
        try:
            async for raw in ws:
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning(f"[VideoCall] 잘못된 구독 메시지: {raw!r:.80}")
                    continue
                if message.get("type") != "UPDATE":
                    continue
                try:
                    result = on_change(message["new"])
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error(f"[VideoCall] 레코드 변경 처리 실패: {e}", exc_info=True)
        except ConnectionClosed as e:
            logger.warning(f"[VideoCall] 레코드 구독 끊김 ({table}/{row_id}): {e}")


class SignalingRelay:
    """공유 통화 레코드를 통한 식별자 교환.

    백엔드 오류는 SignalingReadError / SignalingWriteError로 감싸 올립니다.

    Examples:
        >>> relay = SignalingRelay(HttpDataBackend())
        >>> unsubscribe = await relay.subscribe("apt-123", on_record)
        >>> record = await relay.read_session("apt-123")
        >>> await relay.write_field("apt-123", Role.CALLER, "peer-abc")
    """

    def __init__(self, backend: DataBackend, table: Optional[str] = None):
        self.backend = backend
        self.table = table or signaling_config.SESSION_TABLE

    async def read_session(self, session_id: str) -> Row:
        try:
            return await self.backend.read_row(self.table, session_id)
        except Exception as e:
            logger.error(f"[VideoCall] 레코드 읽기 실패 ({session_id}): {e}")
            raise SignalingReadError(f"레코드 읽기 실패: {session_id}") from e

    async def subscribe(self, session_id: str, on_change: OnChange) -> Unsubscribe:
        try:
            return await self.backend.subscribe_to_row(self.table, session_id, on_change)
        except Exception as e:
            logger.error(f"[VideoCall] 레코드 구독 실패 ({session_id}): {e}")
            raise SignalingReadError(f"레코드 구독 실패: {session_id}") from e

    async def write_field(self, session_id: str, role: Role, identity: str) -> Row:
        try:
            return await self.backend.update_row(self.table, session_id, {role.identity_field: identity})
        except Exception as e:
            logger.error(f"[VideoCall] 레코드 쓰기 실패 ({session_id}): {e}")
            raise SignalingWriteError(f"레코드 쓰기 실패: {session_id}") from e
