"""식별자 브로커 모듈.

Classes:
    PeerRegistry: 네트워크 식별자 → WebSocket 연결 레지스트리
    BrokerPeer: 접속 피어 데이터 클래스
"""

from .registry import PeerRegistry, BrokerPeer, RELAYED_TYPES

__all__ = [
    "PeerRegistry",
    "BrokerPeer",
    "RELAYED_TYPES",
]
