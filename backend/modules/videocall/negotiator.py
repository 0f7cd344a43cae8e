"""통화 협상 상태 머신 모듈.

공유 통화 레코드와 로컬 역할(발신자/수신자)로 발신할지 수신을 기다릴지 결정하고,
수립된 통화의 원격 스트림을 화면에 연결합니다.

States:
    IDLE → WAITING_FOR_PEER → DIALING → CONNECTED → ENDED
    (수신 offer 도착 시 RINGING → CONNECTED)

Classes:
    CallState: 협상 상태
    ReadinessJoin: 여러 준비 신호가 모두 모이면 한 번만 실행되는 결합기
    CallResources: 통화 화면이 소유한 리소스 묶음 (단일 release)
    CallNegotiator: 상태 머신

Note:
    - 미디어 준비와 식별자 등록은 순서 없이 완료되므로 모든 전이는 ReadinessJoin으로 결합
    - 발신은 발신자 역할만 하며, 활성 통화가 있으면 발신하지 않음
"""

import asyncio
import inspect
import logging
from enum import Enum
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .config import CallStatus
from .errors import CallEstablishmentError, VideoCallError
from .media import DisplaySurface, LocalMediaStream, MediaStream
from .relay import Role, Row, Unsubscribe

logger = logging.getLogger(__name__)


class CallState(Enum):
    IDLE = "idle"
    WAITING_FOR_PEER = "waiting_for_peer"
    DIALING = "dialing"
    RINGING = "ringing"
    CONNECTED = "connected"
    ENDED = "ended"


class ReadinessJoin:
    """이름 붙은 준비 신호들의 결합기.

    모든 입력이 설정되면 on_ready를 정확히 한 번 호출합니다.
    실행 전에 같은 입력이 다시 설정되면 마지막 값이 사용되며,
    실행 후의 설정은 무시됩니다.

    Examples:
        >>> join = ReadinessJoin("media", "target", on_ready=place_call)
        >>> await join.set("target", "peer-1")
        False
        >>> await join.set("media", stream)  # place_call({"media": ..., "target": "peer-1"})
        True
    """

    def __init__(self, *names: str, on_ready: Callable[[Dict[str, Any]], Any]):
        if not names:
            raise ValueError("최소 하나의 입력이 필요합니다")
        self.names = names
        self.fired = False
        self._values: Dict[str, Any] = {}
        self._on_ready = on_ready

    def is_set(self, name: str) -> bool:
        return name in self._values

    def get(self, name: str, default: Any = None) -> Any:
        return self._values.get(name, default)

    async def set(self, name: str, value: Any = True) -> bool:
        """입력을 설정하고, 이 호출로 결합이 실행되었으면 True를 반환합니다."""
        if name not in self.names:
            raise KeyError(name)
        if self.fired:
            return False

        self._values[name] = value
        if not all(n in self._values for n in self.names):
            return False

        self.fired = True
        result = self._on_ready(dict(self._values))
        if inspect.isawaitable(result):
            await result
        return True


@dataclass
class CallResources:
    """통화 화면이 소유한 리소스.

    release()는 모든 종료 경로(끊기, 실패, 화면 종료, 오류)에서 무조건 호출되며,
    한 단계가 실패해도 나머지 단계를 계속 수행합니다.
    """

    local_stream: Optional[LocalMediaStream] = None
    transport: Any = None
    unsubscribe: Optional[Unsubscribe] = None
    call: Any = None
    released: bool = False

    async def close_call(self) -> None:
        call, self.call = self.call, None
        if call is not None:
            await call.close()

    def stop_media(self) -> None:
        if self.local_stream is not None:
            self.local_stream.stop()

    async def _unsubscribe(self) -> None:
        unsubscribe, self.unsubscribe = self.unsubscribe, None
        if unsubscribe is not None:
            await unsubscribe()

    async def _destroy_transport(self) -> None:
        if self.transport is not None:
            await self.transport.destroy()

    async def release(self) -> None:
        if self.released:
            return
        self.released = True

        steps = (
            ("call", self.close_call),
            ("media", self.stop_media),
            ("subscription", self._unsubscribe),
            ("transport", self._destroy_transport),
        )
        for name, step in steps:
            try:
                result = step()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"[VideoCall] 리소스 해제 실패 ({name}): {e}", exc_info=True)

        logger.info("[VideoCall] 통화 리소스 해제 완료")


class CallNegotiator:
    """통화 협상 상태 머신.

    Identity Manager, 시그널링 구독, 피어 전송이 보내는 사건을 받아 상태를 전이합니다.

    Attributes:
        role (Role): 로컬 역할
        state (CallState): 현재 상태
        status (str): 사용자에게 보여지는 상태 문자열
        identity (Optional[str]): 로컬 네트워크 식별자
        remote_identity (Optional[str]): 레코드에서 읽은 상대 식별자

    Examples:
        >>> negotiator = CallNegotiator(Role.CALLER, CallResources(transport=transport),
        ...                             DisplaySurface("local"), DisplaySurface("remote"))
        >>> await negotiator.identity_ready("peer-doc")
        >>> await negotiator.on_record({"patient_peer_id": "peer-pat"})
        >>> await negotiator.media_ready(stream)   # → DIALING
    """

    def __init__(
        self,
        role: Role,
        resources: CallResources,
        local_surface: DisplaySurface,
        remote_surface: DisplaySurface,
        has_session: bool = True,
        on_status: Optional[Callable[[str], Any]] = None,
    ):
        self.role = role
        self.resources = resources
        self.local_surface = local_surface
        self.remote_surface = remote_surface
        self.has_session = has_session
        self.on_status = on_status

        self.state = CallState.IDLE
        self.status = CallStatus.INITIALIZING
        self.identity: Optional[str] = None
        self.remote_identity: Optional[str] = None
        self.media_error = False
        self.calls_placed = 0
        self.ended = asyncio.Event()

        waiting_inputs = ("identity", "record") if has_session else ("identity",)
        self._waiting_join = ReadinessJoin(*waiting_inputs, on_ready=self._enter_waiting)
        self._dial_join = ReadinessJoin("identity", "media", "target", on_ready=self._place_call)
        self._answer_join = ReadinessJoin("media", "call", on_ready=self._answer)

    # ------------------------------------------------------------------
    # 상태 문자열
    # ------------------------------------------------------------------

    def _set_status(self, status: str) -> None:
        if self.state is CallState.ENDED:
            return
        if self.media_error and status not in (CallStatus.CALL_ENDED, CallStatus.CALL_FAILED):
            return
        if status == self.status:
            return

        self.status = status
        logger.info(f"[VideoCall] 상태: {status} ({self.role.value}, {self.state.value})")
        if self.on_status is not None:
            self.on_status(status)

    # ------------------------------------------------------------------
    # Identity Manager 입력
    # ------------------------------------------------------------------

    async def media_ready(self, stream: LocalMediaStream) -> None:
        if self.resources.released:
            stream.stop()
            return

        self.resources.local_stream = stream
        await self.local_surface.attach(stream)
        await self._dial_join.set("media", stream)
        await self._answer_join.set("media", stream)

    async def media_failed(self, error: VideoCallError) -> None:
        logger.error(f"[VideoCall] 미디어 획득 실패: {error}")
        self._set_status(CallStatus.MEDIA_ERROR)
        self.media_error = True

    async def identity_ready(self, identity: str) -> None:
        self.identity = identity
        await self._waiting_join.set("identity", identity)
        await self._dial_join.set("identity", identity)

    async def identity_failed(self, error: VideoCallError) -> None:
        logger.error(f"[VideoCall] 식별자 등록 실패: {error}")
        self._set_status(CallStatus.CONNECTION_ERROR)

    async def signaling_failed(self, error: VideoCallError) -> None:
        logger.error(f"[VideoCall] 시그널링 오류: {error}")
        self._set_status(CallStatus.SIGNALING_ERROR)

    # ------------------------------------------------------------------
    # 공유 통화 레코드
    # ------------------------------------------------------------------

    async def on_record(self, record: Row) -> None:
        """최초 읽기 또는 구독 변경으로 받은 레코드를 반영합니다."""
        if self.state is CallState.ENDED:
            return

        remote = record.get(self.role.remote_field)
        if remote and remote != self.identity:
            self.remote_identity = remote

        await self._waiting_join.set("record", record)

        if not remote or remote == self.identity:
            return
        if self.role is Role.CALLER:
            await self._dial_join.set("target", remote)
        elif self.state is CallState.WAITING_FOR_PEER:
            self._set_status(CallStatus.WAITING_FOR_CALLER)

    def _enter_waiting(self, values: Dict[str, Any]) -> None:
        if self.state is not CallState.IDLE:
            return
        self.state = CallState.WAITING_FOR_PEER
        if self.role is Role.CALLEE and self.remote_identity:
            self._set_status(CallStatus.WAITING_FOR_CALLER)
        else:
            self._set_status(CallStatus.WAITING)

    async def dial(self, remote_identity: str) -> None:
        """세션 없이 상대 식별자로 직접 발신합니다 (수동 모드, 발신자 전용).

        Raises:
            ValueError: 세션이 있거나 수신자 역할인 경우
        """
        if self.has_session:
            raise ValueError("세션 통화는 레코드로 상대 식별자를 받습니다")
        if self.role is not Role.CALLER:
            raise ValueError("수신자는 발신할 수 없습니다")
        self.remote_identity = remote_identity
        await self._dial_join.set("target", remote_identity)

    # ------------------------------------------------------------------
    # 발신 / 수신
    # ------------------------------------------------------------------

    async def _place_call(self, values: Dict[str, Any]) -> None:
        if self.state is CallState.ENDED:
            return
        if self.resources.call is not None:
            logger.info("[VideoCall] 활성 통화가 있어 발신 생략")
            return

        target = values["target"]
        self.state = CallState.DIALING
        self._set_status(CallStatus.CALLING)
        logger.info(f"[VideoCall] 발신: {target[:8]}")

        try:
            call = await self.resources.transport.place_call(target, values["media"])
        except CallEstablishmentError as e:
            logger.error(f"[VideoCall] 발신 실패: {e}")
            await self._end(CallStatus.CALL_FAILED)
            return

        self.calls_placed += 1
        if self.state is CallState.ENDED:
            await call.close()
            return

        self.resources.call = call
        self._watch(call)
        if call.error is not None:
            await self._on_call_error(call, call.error)

    async def on_incoming_call(self, call) -> None:
        """피어 전송의 수신 통화 콜백."""
        # 발신 중(place_call 대기)에는 resources.call이 아직 비어 있으므로 상태로 판단
        if self.state not in (CallState.IDLE, CallState.WAITING_FOR_PEER) or self.resources.call is not None:
            logger.warning(f"[VideoCall] 수신 통화 거절 (state={self.state.value}, peer={call.peer})")
            await call.close()
            return

        self.resources.call = call
        self.state = CallState.RINGING
        self._watch(call)
        await self._answer_join.set("call", call)

    async def _answer(self, values: Dict[str, Any]) -> None:
        call = values["call"]
        if self.state is CallState.ENDED or call is not self.resources.call or call.closed:
            return

        try:
            await call.answer(values["media"])
        except CallEstablishmentError as e:
            logger.error(f"[VideoCall] 응답 실패: {e}")
            await self._end(CallStatus.CALL_FAILED)
            return

        if self.state is CallState.RINGING:
            self.state = CallState.CONNECTED
            self._set_status(CallStatus.CONNECTED)

    def _watch(self, call) -> None:
        @call.on("stream")
        async def on_stream(stream):
            await self._on_stream(call, stream)

        @call.on("error")
        async def on_error(error):
            await self._on_call_error(call, error)

        @call.on("close")
        async def on_close():
            await self._on_call_close(call)

    async def _on_stream(self, call, stream: MediaStream) -> None:
        if call is not self.resources.call or self.state is CallState.ENDED:
            return
        self.state = CallState.CONNECTED
        self._set_status(CallStatus.CONNECTED)
        await self.remote_surface.attach(stream)

    async def _on_call_error(self, call, error: Exception) -> None:
        if call is not self.resources.call:
            return
        if self.state in (CallState.DIALING, CallState.RINGING, CallState.CONNECTED):
            logger.error(f"[VideoCall] 통화 오류: {error}")
            await self._end(CallStatus.CALL_FAILED)

    async def _on_call_close(self, call) -> None:
        if call is not self.resources.call:
            return
        self.resources.call = None
        logger.info(f"[VideoCall] 상대가 통화를 종료했습니다 (peer={call.peer})")
        await self._end(CallStatus.CALL_ENDED)

    # ------------------------------------------------------------------
    # 종료
    # ------------------------------------------------------------------

    async def hang_up(self) -> None:
        await self._end(CallStatus.CALL_ENDED)

    async def shutdown(self) -> None:
        """화면 종료. 어떤 상태에서든 리소스를 해제합니다."""
        await self._end(CallStatus.CALL_ENDED)
        await self.resources.release()

    async def _end(self, status: str) -> None:
        if self.state is CallState.ENDED:
            return
        previous = self.state
        self._set_status(status)
        self.state = CallState.ENDED
        logger.info(f"[VideoCall] 통화 종료: {previous.value} → ended ({status})")

        await self.remote_surface.detach()
        await self.local_surface.detach()
        await self.resources.release()
        self.ended.set()
