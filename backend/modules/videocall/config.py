"""화상 통화 모듈 설정.

STUN/TURN 서버, 카메라/마이크 장치, 시그널링 서버 주소 등 환경변수 기반 설정.
"""

import os
import logging
import platform
from pathlib import Path
from urllib.parse import urlencode
from dataclasses import dataclass
from typing import Optional, List, Dict

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent.parent / "config" / ".env"
load_dotenv(_env_path)


def _default_media_devices() -> Dict[str, Optional[str]]:
    """플랫폼별 기본 캡처 장치를 반환합니다."""
    system = platform.system()
    if system == "Darwin":
        return {
            "video_device": "default:none",
            "video_format": "avfoundation",
            "audio_device": "none:default",
            "audio_format": "avfoundation",
        }
    if system == "Windows":
        return {
            "video_device": "video=Integrated Camera",
            "video_format": "dshow",
            "audio_device": "audio=Microphone",
            "audio_format": "dshow",
        }
    return {
        "video_device": "/dev/video0",
        "video_format": "v4l2",
        "audio_device": "default",
        "audio_format": "alsa",
    }


_devices = _default_media_devices()


# ============================================================
# ICE Server 설정
# ============================================================

@dataclass(frozen=True)
class ICEServerConfig:
    """ICE 서버 설정."""

    # TURN 서버
    TURN_SERVER_URL: Optional[str] = os.getenv("TURN_SERVER_URL")
    TURN_USERNAME: Optional[str] = os.getenv("TURN_USERNAME")
    TURN_CREDENTIAL: Optional[str] = os.getenv("TURN_CREDENTIAL")

    # STUN 서버
    STUN_SERVER_URL: Optional[str] = os.getenv("STUN_SERVER_URL")

    # 기본 공개 STUN 서버 (fallback)
    DEFAULT_STUN_SERVERS: tuple = (
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
    )

    @property
    def has_turn_server(self) -> bool:
        """TURN 서버 설정 완료 여부."""
        return all([self.TURN_SERVER_URL, self.TURN_USERNAME, self.TURN_CREDENTIAL])

    def as_dicts(self) -> List[dict]:
        """브라우저/클라이언트 형식의 ICE 서버 목록을 반환합니다.

        Returns:
            List[dict]: {"urls": ..., "username": ..., "credential": ...} 목록
                - 커스텀 STUN (설정된 경우)
                - Google STUN (항상)
                - TURN (설정된 경우)
        """
        servers = []
        if self.STUN_SERVER_URL:
            servers.append({"urls": self.STUN_SERVER_URL})
        for stun_url in self.DEFAULT_STUN_SERVERS:
            servers.append({"urls": stun_url})
        if self.has_turn_server:
            servers.append({
                "urls": self.TURN_SERVER_URL,
                "username": self.TURN_USERNAME,
                "credential": self.TURN_CREDENTIAL,
            })
        return servers


# ============================================================
# 미디어 캡처 설정
# ============================================================

@dataclass(frozen=True)
class MediaConfig:
    """카메라/마이크 캡처 설정 (aiortc MediaPlayer 입력)."""

    VIDEO_DEVICE: str = os.getenv("VIDEO_DEVICE", _devices["video_device"])
    VIDEO_FORMAT: str = os.getenv("VIDEO_FORMAT", _devices["video_format"])
    AUDIO_DEVICE: str = os.getenv("AUDIO_DEVICE", _devices["audio_device"])
    AUDIO_FORMAT: str = os.getenv("AUDIO_FORMAT", _devices["audio_format"])

    # 비디오 해상도 / 프레임레이트
    VIDEO_SIZE: str = os.getenv("VIDEO_SIZE", "640x480")
    VIDEO_FRAMERATE: str = os.getenv("VIDEO_FRAMERATE", "30")

    @property
    def video_options(self) -> Dict[str, str]:
        """비디오 장치 열기 옵션."""
        return {"video_size": self.VIDEO_SIZE, "framerate": self.VIDEO_FRAMERATE}


# ============================================================
# 시그널링 설정
# ============================================================

@dataclass(frozen=True)
class SignalingConfig:
    """시그널링 서버(데이터 백엔드 + 식별자 브로커) 설정."""

    SERVER_URL: str = os.getenv("CLINIC_SERVER_URL", "http://localhost:8000")
    API_TOKEN: str = os.getenv("CLINIC_API_TOKEN", "")

    # 브로커 OPEN 응답 대기 시간 (초)
    BROKER_OPEN_TIMEOUT: float = float(os.getenv("BROKER_OPEN_TIMEOUT", "10"))

    # 공유 통화 레코드 테이블
    SESSION_TABLE: str = "appointments"


# ============================================================
# 상태 문자열
# ============================================================

class CallStatus:
    """사용자에게 보여지는 통화 상태 문자열."""

    INITIALIZING = "Initializing..."
    WAITING = "Waiting for other party..."
    WAITING_FOR_CALLER = "Waiting for the other party to connect..."
    CALLING = "Calling..."
    CONNECTED = "Connected"
    CALL_FAILED = "Call Failed"
    MEDIA_ERROR = "Error accessing camera"
    SIGNALING_ERROR = "Signaling error"
    CONNECTION_ERROR = "Connection error"
    CALL_ENDED = "Call ended"


# ============================================================
# 싱글톤 인스턴스
# ============================================================

ice_config = ICEServerConfig()
media_config = MediaConfig()
signaling_config = SignalingConfig()


logger.debug(f"[VideoCall Config] .env 경로: {_env_path} (존재: {_env_path.exists()})")
logger.debug(f"[VideoCall Config] TURN 서버 설정 완료: {ice_config.has_turn_server}")
logger.debug(f"[VideoCall Config] 비디오 장치: {media_config.VIDEO_DEVICE} ({media_config.VIDEO_FORMAT})")
logger.debug(f"[VideoCall Config] 오디오 장치: {media_config.AUDIO_DEVICE} ({media_config.AUDIO_FORMAT})")
logger.debug(f"[VideoCall Config] 시그널링 서버: {signaling_config.SERVER_URL}")


def websocket_url(base_url: str, path: str, **params: str) -> str:
    """HTTP 서버 주소를 WebSocket 주소로 변환합니다.

    Examples:
        >>> websocket_url("https://clinic.example", "/peerjs", id="abc")
        'wss://clinic.example/peerjs?id=abc'
    """
    base = base_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    query = urlencode({k: v for k, v in params.items() if v})
    return f"{base}{path}?{query}" if query else f"{base}{path}"
