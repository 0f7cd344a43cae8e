"""참가자 식별자 관리 모듈.

로컬 미디어 획득과 네트워크 식별자 등록을 서로 기다리지 않고 동시에 수행하고,
각 결과를 CallNegotiator에 독립적으로 알립니다.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .errors import IdentityRegistrationError, MediaAccessError, SignalingWriteError
from .media import LocalMediaStream, get_user_media
from .negotiator import CallNegotiator
from .relay import Role, SignalingRelay

logger = logging.getLogger(__name__)

MediaSource = Callable[..., Awaitable[LocalMediaStream]]


class IdentityManager:
    """미디어 획득 + 식별자 등록.

    Attributes:
        session_id (Optional[str]): 공유 통화 레코드 ID (수동 모드는 None)
        identity (Optional[str]): 등록된 네트워크 식별자
        stream (Optional[LocalMediaStream]): 획득한 로컬 스트림
    """

    def __init__(
        self,
        transport,
        relay: Optional[SignalingRelay],
        session_id: Optional[str],
        role: Role,
        negotiator: CallNegotiator,
        media_source: MediaSource = get_user_media,
    ):
        self.transport = transport
        self.relay = relay
        self.session_id = session_id
        self.role = role
        self.negotiator = negotiator
        self.media_source = media_source

        self.identity: Optional[str] = None
        self.stream: Optional[LocalMediaStream] = None

    async def start(self) -> None:
        """미디어 획득과 식별자 등록을 동시에 실행합니다. 실패는 재시도하지 않습니다."""
        await asyncio.gather(self.acquire_media(), self.register_identity())

    async def acquire_media(self) -> None:
        try:
            stream = await self.media_source(video=True, audio=True)
        except MediaAccessError as e:
            await self.negotiator.media_failed(e)
            return

        self.stream = stream
        await self.negotiator.media_ready(stream)

    async def register_identity(self) -> None:
        try:
            identity = await self.transport.open()
        except IdentityRegistrationError as e:
            await self.negotiator.identity_failed(e)
            return

        self.identity = identity
        await self.negotiator.identity_ready(identity)

        if self.session_id and self.relay is not None:
            try:
                await self.relay.write_field(self.session_id, self.role, identity)
                logger.info(f"[VideoCall] {self.role.identity_field} 기록: {self.session_id} ← {identity[:8]}")
            except SignalingWriteError as e:
                await self.negotiator.signaling_failed(e)
