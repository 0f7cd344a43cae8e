"""화상 통화 세션 모듈.

통화 화면 하나의 수명을 나타냅니다. 진입 시 미디어/식별자/구독을 준비하고,
종료 시(정상, 오류, 취소 모두) 소유한 리소스를 반드시 해제합니다.

Examples:
    >>> async with VideoCallSession(Role.CALLER, session_id="apt-123") as session:
    ...     await session.wait_ended()
"""

import asyncio
import logging
from typing import Any, Callable, Optional

from .errors import SignalingReadError
from .identity import IdentityManager, MediaSource
from .media import DisplaySurface, get_user_media
from .negotiator import CallNegotiator, CallResources, CallState
from .relay import HttpDataBackend, Role, SignalingRelay
from .transport import BrokerPeerTransport

logger = logging.getLogger(__name__)


class VideoCallSession:
    """화상 통화 세션.

    Attributes:
        role (Role): 로컬 역할
        session_id (Optional[str]): 공유 통화 레코드 ID (None이면 수동 모드)
        negotiator (CallNegotiator): 상태 머신
        resources (CallResources): 해제 대상 리소스
    """

    def __init__(
        self,
        role: Role,
        session_id: Optional[str] = None,
        transport=None,
        relay: Optional[SignalingRelay] = None,
        local_surface: Optional[DisplaySurface] = None,
        remote_surface: Optional[DisplaySurface] = None,
        media_source: MediaSource = get_user_media,
        on_status: Optional[Callable[[str], Any]] = None,
    ):
        self.role = role
        self.session_id = session_id
        self.transport = transport or BrokerPeerTransport()
        if relay is None and session_id:
            relay = SignalingRelay(HttpDataBackend())
        self.relay = relay

        self.resources = CallResources(transport=self.transport)
        self.negotiator = CallNegotiator(
            role,
            self.resources,
            local_surface or DisplaySurface("local"),
            remote_surface or DisplaySurface("remote"),
            has_session=bool(session_id),
            on_status=on_status,
        )
        self.identity_manager = IdentityManager(
            self.transport,
            self.relay,
            session_id,
            role,
            self.negotiator,
            media_source=media_source,
        )

    @property
    def state(self) -> CallState:
        return self.negotiator.state

    @property
    def status(self) -> str:
        return self.negotiator.status

    async def __aenter__(self) -> "VideoCallSession":
        try:
            await self.start()
        except BaseException:
            await self.shutdown()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    async def start(self) -> None:
        logger.info(f"[VideoCall] 세션 시작: role={self.role.value}, session={self.session_id or '-'}")
        self.transport.on_incoming_call(self.negotiator.on_incoming_call)
        await asyncio.gather(self.identity_manager.start(), self._connect_signaling())

    async def _connect_signaling(self) -> None:
        """구독 후 한 번 읽기. 구독 전 이미 기록된 상대 식별자도 놓치지 않습니다."""
        if not self.session_id or self.relay is None:
            return

        try:
            unsubscribe = await self.relay.subscribe(self.session_id, self.negotiator.on_record)
        except SignalingReadError as e:
            await self.negotiator.signaling_failed(e)
            return

        if self.resources.released:
            await unsubscribe()
            return
        self.resources.unsubscribe = unsubscribe

        try:
            record = await self.relay.read_session(self.session_id)
        except SignalingReadError as e:
            await self.negotiator.signaling_failed(e)
            return
        await self.negotiator.on_record(record)

    def toggle_mic(self) -> Optional[bool]:
        """마이크를 켜거나 끕니다. 스트림이 없으면 None을 반환합니다."""
        stream = self.resources.local_stream
        if stream is None:
            return None
        stream.set_audio_enabled(not stream.audio_enabled)
        return stream.audio_enabled

    def toggle_camera(self) -> Optional[bool]:
        """카메라를 켜거나 끕니다. 스트림이 없으면 None을 반환합니다."""
        stream = self.resources.local_stream
        if stream is None:
            return None
        stream.set_video_enabled(not stream.video_enabled)
        return stream.video_enabled

    async def dial(self, remote_identity: str) -> None:
        await self.negotiator.dial(remote_identity)

    async def hang_up(self) -> None:
        await self.negotiator.hang_up()

    async def wait_ended(self) -> None:
        await self.negotiator.ended.wait()

    async def shutdown(self) -> None:
        await self.negotiator.shutdown()
        logger.info(f"[VideoCall] 세션 종료: status={self.status}")
