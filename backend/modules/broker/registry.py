"""식별자 브로커 피어 레지스트리.

접속 중인 네트워크 식별자와 WebSocket 연결을 관리하고,
OFFER/ANSWER/CANDIDATE/LEAVE 메시지를 목적지 피어에게 전달합니다.

Architecture:
    - peers: Dict[str, BrokerPeer] - 식별자 → 연결
    - 전송 실패한 피어는 자동으로 등록 해제

Examples:
    >>> registry = PeerRegistry()
    >>> registry.register("peer-123", websocket)
    True
    >>> await registry.relay("peer-123", {"type": "OFFER", "dst": "peer-456", "payload": {...}})
"""

import time
import logging
from typing import Dict, List, Optional
from dataclasses import dataclass, field

from fastapi import WebSocket

logger = logging.getLogger(__name__)

RELAYED_TYPES = ("OFFER", "ANSWER", "CANDIDATE", "LEAVE")


@dataclass
class BrokerPeer:
    """브로커에 접속한 피어.

    Attributes:
        peer_id (str): 네트워크 식별자
        websocket (WebSocket): 브로커 WebSocket 연결
        connected_at (float): 접속 시각 (epoch)
    """
    peer_id: str
    websocket: WebSocket
    connected_at: float = field(default_factory=time.time)


class PeerRegistry:
    """네트워크 식별자 레지스트리.

    Thread Safety:
        - asyncio 단일 이벤트 루프에서만 사용
    """

    def __init__(self):
        # peer_id -> BrokerPeer
        self.peers: Dict[str, BrokerPeer] = {}

    def register(self, peer_id: str, websocket: WebSocket) -> bool:
        """식별자를 등록합니다. 이미 접속 중인 식별자면 False."""
        if peer_id in self.peers:
            logger.warning(f"[Broker] 식별자 중복: {peer_id[:8]}")
            return False
        self.peers[peer_id] = BrokerPeer(peer_id=peer_id, websocket=websocket)
        logger.info(f"[Broker] 식별자 등록: {peer_id[:8]} (접속 {len(self.peers)}명)")
        return True

    def unregister(self, peer_id: str, websocket: Optional[WebSocket] = None) -> bool:
        """식별자를 해제합니다.

        websocket이 주어지면 같은 연결일 때만 해제합니다 (재접속한 식별자 보호).
        """
        peer = self.peers.get(peer_id)
        if peer is None:
            return False
        if websocket is not None and peer.websocket is not websocket:
            return False
        del self.peers[peer_id]
        logger.info(f"[Broker] 식별자 해제: {peer_id[:8]} (접속 {len(self.peers)}명)")
        return True

    def is_connected(self, peer_id: str) -> bool:
        return peer_id in self.peers

    def get_peer(self, peer_id: str) -> Optional[BrokerPeer]:
        return self.peers.get(peer_id)

    def list_peer_ids(self) -> List[str]:
        return list(self.peers.keys())

    @property
    def count(self) -> int:
        return len(self.peers)

    async def send(self, peer_id: str, message: dict) -> bool:
        """피어에게 메시지를 보냅니다. 실패하면 피어를 해제하고 False."""
        peer = self.peers.get(peer_id)
        if peer is None:
            return False
        try:
            await peer.websocket.send_json(message)
            return True
        except Exception as e:
            logger.error(f"[Broker] 피어 {peer_id[:8]} 전송 실패: {e}")
            self.unregister(peer_id, peer.websocket)
            return False

    async def relay(self, src: str, message: dict) -> bool:
        """src가 보낸 메시지를 dst에게 전달합니다.

        Args:
            src (str): 보낸 피어 식별자
            message (dict): {"type", "dst", "payload"}

        Returns:
            bool: 전달 성공 여부

        Note:
            - dst가 없으면 보낸 피어에게 EXPIRE를 돌려줌
            - LEAVE는 dst가 없어도 EXPIRE를 보내지 않음
        """
        message_type = message.get("type")
        dst = message.get("dst")
        payload = message.get("payload")

        if message_type not in RELAYED_TYPES or not dst:
            logger.warning(f"[Broker] 전달 불가 메시지: type={message_type}, dst={dst}")
            return False

        forwarded = {"type": message_type, "src": src, "dst": dst, "payload": payload}
        if await self.send(dst, forwarded):
            logger.debug(f"[Broker] {message_type}: {src[:8]} -> {dst[:8]}")
            return True

        if message_type != "LEAVE":
            logger.info(f"[Broker] 목적지 없음 ({message_type}): {src[:8]} -> {dst[:8]}")
            await self.send(src, {"type": "EXPIRE", "src": dst, "dst": src, "payload": payload})
        return False
