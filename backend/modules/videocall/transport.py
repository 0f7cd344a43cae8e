"""피어 전송 계층 모듈.

식별자 브로커(/peerjs)에 WebSocket으로 접속해 일시적인 네트워크 식별자를 등록하고,
aiortc RTCPeerConnection으로 1:1 화상 통화를 발신/수신합니다.

Classes:
    CallHandle: 협상 중이거나 수립된 하나의 통화 (stream/error/close 이벤트)
    BrokerPeerTransport: 브로커 접속, 발신, 수신 콜백 관리

Broker Protocol:
    - GET /peerjs/id → {"id": "<uuid>"}
    - WS /peerjs?id=<id>&token=<token> → {"type": "OPEN"} 또는 {"type": "ID-TAKEN"}
    - 송신: {"type": "OFFER"|"ANSWER"|"CANDIDATE"|"LEAVE", "dst": <id>, "payload": {...}}
    - 수신: 위 메시지에 "src"가 붙어 전달되며, 상대가 없으면 {"type": "EXPIRE"}

Note:
    - aiortc는 ICE 후보를 모두 수집한 후 SDP에 포함하므로 CANDIDATE는 수신만 처리
"""

import json
import uuid
import asyncio
import inspect
import logging
from typing import Dict, Optional, Callable, List, Any

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException
from aiortc import RTCPeerConnection, RTCSessionDescription, RTCConfiguration, RTCIceServer
from aiortc.sdp import candidate_from_sdp
from pyee.asyncio import AsyncIOEventEmitter

from .config import ice_config, signaling_config, websocket_url
from .errors import CallEstablishmentError, IdentityRegistrationError
from .media import MediaStream

logger = logging.getLogger(__name__)


class CallHandle(AsyncIOEventEmitter):
    """하나의 미디어 통화.

    Events:
        stream (MediaStream): 원격 미디어 수신
        error (CallEstablishmentError): 협상/연결 실패
        close: 통화 종료 (로컬 또는 원격)

    Attributes:
        peer (str): 상대 네트워크 식별자
        connection_id (str): 통화 연결 ID
        direction (str): "outbound" 또는 "inbound"
        remote_stream (MediaStream): 원격 트랙 묶음
        open (bool): 미디어 협상 완료 여부
        error (Optional[CallEstablishmentError]): 마지막 실패 원인
    """

    def __init__(
        self,
        transport: "BrokerPeerTransport",
        peer: str,
        connection_id: str,
        direction: str,
        offer: Optional[dict] = None,
    ):
        super().__init__()
        self.peer = peer
        self.connection_id = connection_id
        self.direction = direction
        self.remote_stream = MediaStream()
        self.pc: Optional[RTCPeerConnection] = None
        self.open = False
        self.closed = False
        self.error: Optional[CallEstablishmentError] = None

        self._transport = transport
        self._offer = offer
        self._stream_emitted = False

    def _create_peer_connection(self) -> RTCPeerConnection:
        pc = RTCPeerConnection(configuration=self._transport.rtc_configuration())

        @pc.on("track")
        def on_track(track):
            logger.info(f"[VideoCall] 원격 {track.kind} 트랙 수신 (peer={self.peer[:8]})")
            self.remote_stream.add_track(track)

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            logger.info(f"[VideoCall] 연결 상태: {pc.connectionState} (peer={self.peer[:8]})")
            if pc.connectionState == "failed":
                self._fail(CallEstablishmentError("ICE 연결 실패"))

        return pc

    def _add_local_tracks(self, local_stream: MediaStream) -> None:
        for track in local_stream.subscribe():
            self.pc.addTrack(track)

    def _payload(self, description) -> dict:
        return {
            "sdp": {"type": description.type, "sdp": description.sdp},
            "type": "media",
            "connectionId": self.connection_id,
        }

    async def _start_outbound(self, local_stream: MediaStream) -> None:
        self.pc = self._create_peer_connection()
        self._add_local_tracks(local_stream)
        try:
            offer = await self.pc.createOffer()
            await self.pc.setLocalDescription(offer)
        except ValueError as e:
            raise CallEstablishmentError(f"offer 생성 실패: {e}") from e

        if not await self._transport._send("OFFER", self.peer, self._payload(self.pc.localDescription)):
            raise CallEstablishmentError("브로커로 offer 전송 실패")
        logger.info(f"[VideoCall] offer 전송: {self._transport.id[:8]} -> {self.peer[:8]}")

    async def _handle_answer(self, payload: dict) -> None:
        if self.pc is None or self.closed:
            return
        try:
            sdp = payload["sdp"]
            await self.pc.setRemoteDescription(RTCSessionDescription(sdp=sdp["sdp"], type=sdp["type"]))
        except (KeyError, TypeError, ValueError) as e:
            self._fail(CallEstablishmentError(f"answer 처리 실패: {e}"))
            return

        self.open = True
        self._emit_stream()

    async def _handle_candidate(self, payload: dict) -> None:
        if self.pc is None or self.closed:
            return
        try:
            data = payload["candidate"]
            candidate = candidate_from_sdp(data["candidate"].split(":", 1)[1])
            candidate.sdpMid = data.get("sdpMid")
            candidate.sdpMLineIndex = data.get("sdpMLineIndex")
            await self.pc.addIceCandidate(candidate)
        except (KeyError, IndexError, ValueError) as e:
            logger.warning(f"[VideoCall] ICE 후보 무시: {e}")

    async def answer(self, local_stream: MediaStream) -> None:
        """수신 통화에 로컬 스트림으로 응답합니다.

        Args:
            local_stream (MediaStream): 상대에게 보낼 로컬 스트림

        Raises:
            CallEstablishmentError: 발신 통화이거나 이미 응답했거나 협상에 실패한 경우
        """
        if self.direction != "inbound" or self.pc is not None:
            raise CallEstablishmentError("응답할 수 없는 통화입니다")
        if self.closed:
            raise CallEstablishmentError("이미 종료된 통화입니다")

        self.pc = self._create_peer_connection()
        try:
            sdp = self._offer["sdp"]
            await self.pc.setRemoteDescription(RTCSessionDescription(sdp=sdp["sdp"], type=sdp["type"]))
            self._add_local_tracks(local_stream)
            answer = await self.pc.createAnswer()
            await self.pc.setLocalDescription(answer)
        except (KeyError, TypeError, ValueError) as e:
            raise CallEstablishmentError(f"offer 응답 실패: {e}") from e

        if not await self._transport._send("ANSWER", self.peer, self._payload(self.pc.localDescription)):
            raise CallEstablishmentError("브로커로 answer 전송 실패")

        logger.info(f"[VideoCall] 수신 통화 응답: {self.peer[:8]}")
        self.open = True
        self._emit_stream()

    def _emit_stream(self) -> None:
        if self._stream_emitted or not self.remote_stream.get_tracks():
            return
        self._stream_emitted = True
        self.emit("stream", self.remote_stream)

    def _fail(self, error: CallEstablishmentError) -> None:
        if self.closed:
            return
        logger.error(f"[VideoCall] 통화 실패 (peer={self.peer[:8]}): {error}")
        self.error = error
        if self.listeners("error"):
            self.emit("error", error)

    async def close(self) -> None:
        """통화를 종료하고 상대에게 LEAVE를 보냅니다. 여러 번 호출해도 안전합니다."""
        await self._shutdown(notify_remote=True)

    async def _shutdown(self, notify_remote: bool) -> None:
        if self.closed:
            return
        self.closed = True
        self.open = False

        if self.pc is not None:
            await self.pc.close()
        if notify_remote:
            await self._transport._send("LEAVE", self.peer, {"connectionId": self.connection_id})

        self._transport._forget(self)
        logger.info(f"[VideoCall] 통화 종료 (peer={self.peer[:8]}, remote={not notify_remote})")
        self.emit("close")


class BrokerPeerTransport:
    """식별자 브로커 기반 피어 전송.

    Attributes:
        server_url (str): 시그널링 서버 주소 (http/https)
        id (Optional[str]): 등록된 네트워크 식별자 (open() 이후)

    Examples:
        >>> transport = BrokerPeerTransport()
        >>> identity = await transport.open()
        >>> transport.on_incoming_call(handle_call)
        >>> call = await transport.place_call("remote-id", local_stream)
        >>> await transport.destroy()
    """

    def __init__(
        self,
        server_url: Optional[str] = None,
        token: Optional[str] = None,
        ice_servers: Optional[List[dict]] = None,
        open_timeout: Optional[float] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.server_url = (server_url or signaling_config.SERVER_URL).rstrip("/")
        self.token = token if token is not None else signaling_config.API_TOKEN
        self.ice_servers = ice_servers if ice_servers is not None else ice_config.as_dicts()
        self.open_timeout = open_timeout or signaling_config.BROKER_OPEN_TIMEOUT
        self.http_transport = http_transport

        self.id: Optional[str] = None
        self.destroyed = False

        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._calls: Dict[str, CallHandle] = {}
        self._incoming_callback: Optional[Callable[[CallHandle], Any]] = None
        self._tasks: set = set()

    def rtc_configuration(self) -> RTCConfiguration:
        servers = [
            RTCIceServer(
                urls=server["urls"],
                username=server.get("username"),
                credential=server.get("credential"),
            )
            for server in self.ice_servers
        ]
        return RTCConfiguration(iceServers=servers)

    async def _fetch_identity(self) -> str:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        async with httpx.AsyncClient(headers=headers, timeout=self.open_timeout, transport=self.http_transport) as client:
            response = await client.get(f"{self.server_url}/peerjs/id")
            response.raise_for_status()
            return response.json()["id"]

    async def open(self) -> str:
        """브로커에서 새 식별자를 받아 등록합니다.

        Returns:
            str: 등록된 네트워크 식별자

        Raises:
            IdentityRegistrationError: 식별자 발급, 접속, OPEN 응답 중 하나라도 실패한 경우
        """
        if self.destroyed:
            raise IdentityRegistrationError("이미 해제된 전송입니다")
        if self.id is not None:
            return self.id

        try:
            identity = await self._fetch_identity()
            ws = await websockets.connect(
                websocket_url(self.server_url, "/peerjs", id=identity, token=self.token)
            )
        except (httpx.HTTPError, KeyError, ValueError, OSError, WebSocketException) as e:
            raise IdentityRegistrationError(f"브로커 접속 실패: {e}") from e

        try:
            message = json.loads(await asyncio.wait_for(ws.recv(), timeout=self.open_timeout))
        except (asyncio.TimeoutError, ValueError, ConnectionClosed) as e:
            await ws.close()
            raise IdentityRegistrationError(f"브로커 OPEN 응답 없음: {e}") from e

        if message.get("type") != "OPEN":
            await ws.close()
            raise IdentityRegistrationError(f"식별자 등록 거부: {message.get('type')}")

        self._ws = ws
        self.id = identity
        self._reader = asyncio.create_task(self._read_loop())
        logger.info(f"[VideoCall] 네트워크 식별자 등록: {identity[:8]}")
        return identity

    def on_incoming_call(self, callback: Callable[[CallHandle], Any]) -> None:
        """수신 통화 콜백을 등록합니다. 코루틴 함수도 가능합니다."""
        self._incoming_callback = callback

    async def place_call(self, remote_identity: str, local_stream: MediaStream) -> CallHandle:
        """상대 식별자로 발신합니다.

        Raises:
            CallEstablishmentError: 브로커 미접속 또는 offer 전송 실패
        """
        if self._ws is None or self.destroyed:
            raise CallEstablishmentError("브로커에 연결되지 않았습니다")

        call = CallHandle(self, remote_identity, f"mc_{uuid.uuid4().hex[:12]}", "outbound")
        self._calls[call.connection_id] = call
        try:
            await call._start_outbound(local_stream)
        except CallEstablishmentError:
            await call._shutdown(notify_remote=False)
            raise
        return call

    async def _send(self, message_type: str, dst: str, payload: dict) -> bool:
        if self._ws is None:
            return False
        message = {"type": message_type, "dst": dst, "payload": payload}
        try:
            await self._ws.send(json.dumps(message))
            return True
        except ConnectionClosed as e:
            logger.warning(f"[VideoCall] 브로커 전송 실패 ({message_type}): {e}")
            return False

    def _forget(self, call: CallHandle) -> None:
        self._calls.pop(call.connection_id, None)

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning(f"[VideoCall] 잘못된 브로커 메시지: {raw!r:.80}")
                    continue
                await self._dispatch(message)
        except ConnectionClosed as e:
            logger.warning(f"[VideoCall] 브로커 연결 끊김: {e}")
        logger.info("[VideoCall] 브로커 수신 루프 종료")

    async def _dispatch(self, message: dict) -> None:
        payload = (message.get("payload") or {}) if isinstance(message, dict) else None
        if not isinstance(payload, dict):
            logger.warning(f"[VideoCall] 형식이 잘못된 브로커 메시지 무시: {message!r:.80}")
            return

        message_type = message.get("type")
        src = message.get("src")
        call = self._calls.get(payload.get("connectionId"))

        if message_type == "OFFER":
            self._handle_offer(src, payload)

        elif message_type == "ANSWER":
            if call is not None:
                await call._handle_answer(payload)
            else:
                logger.debug(f"[VideoCall] 알 수 없는 연결의 answer 무시: {payload.get('connectionId')}")

        elif message_type == "CANDIDATE":
            if call is not None:
                await call._handle_candidate(payload)

        elif message_type == "LEAVE":
            targets = [call] if call is not None else [c for c in self._calls.values() if c.peer == src]
            for target in targets:
                await target._shutdown(notify_remote=False)

        elif message_type == "EXPIRE":
            if call is not None:
                call._fail(CallEstablishmentError(f"상대 식별자가 접속해 있지 않습니다: {src}"))

        elif message_type == "HEARTBEAT":
            pass

        else:
            logger.warning(f"[VideoCall] 알 수 없는 브로커 메시지: {message_type}")

    def _handle_offer(self, src: Optional[str], payload: dict) -> None:
        connection_id = payload.get("connectionId") or f"mc_{uuid.uuid4().hex[:12]}"
        call = CallHandle(self, src, connection_id, "inbound", offer=payload)
        self._calls[connection_id] = call
        logger.info(f"[VideoCall] 수신 통화: {src[:8] if src else '?'} -> {self.id[:8]}")

        if self._incoming_callback is None:
            logger.warning("[VideoCall] 수신 콜백 없음 - 통화 거절")
            task = asyncio.create_task(call.close())
        else:
            task = asyncio.create_task(self._run_incoming_callback(call))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_incoming_callback(self, call: CallHandle) -> None:
        try:
            result = self._incoming_callback(call)
            if inspect.isawaitable(result):
                await result
        except CallEstablishmentError as e:
            logger.error(f"[VideoCall] 수신 통화 처리 실패: {e}")

    async def destroy(self) -> None:
        """모든 통화를 닫고 식별자 등록을 해제합니다. 여러 번 호출해도 안전합니다."""
        if self.destroyed:
            return
        self.destroyed = True

        for call in list(self._calls.values()):
            await call.close()

        for task in list(self._tasks):
            task.cancel()

        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None

        if self._ws is not None:
            await self._ws.close()
            self._ws = None

        logger.info(f"[VideoCall] 네트워크 식별자 해제: {self.id[:8] if self.id else '-'}")
        self.id = None
