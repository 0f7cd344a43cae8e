"""로컬/원격 미디어 스트림 모듈.

카메라/마이크 캡처, 음소거/카메라 끄기 토글, 스트림 표시(소비) 기능을 제공합니다.

Classes:
    SwitchableTrack: 켜고 끌 수 있는 캡처 트랙 래퍼
    MediaStream: 트랙 묶음 (원격 스트림)
    LocalMediaStream: 로컬 캡처 스트림 (토글 지원)
    DisplaySurface: 스트림을 소비하는 출력면 (미리보기/원격 화면)

Note:
    - 하나의 트랙을 여러 소비자(피어 연결, 미리보기)가 읽을 때는
      반드시 MediaRelay.subscribe()로 독립 복사본을 사용해야 함
"""

import uuid
import logging
from typing import List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRelay, MediaBlackhole, MediaRecorder
from av import AudioFrame, VideoFrame
from av.error import FFmpegError

from .config import media_config, MediaConfig
from .errors import MediaAccessError

logger = logging.getLogger(__name__)


class SwitchableTrack(MediaStreamTrack):
    """켜고 끌 수 있는 미디어 트랙.

    꺼진 상태에서도 원본 트랙의 프레임을 계속 읽어 타이밍(pts)을 유지하고,
    내용만 빈 프레임(무음/빈 화면)으로 바꿔 반환합니다.
    재협상 없이 음소거/카메라 끄기를 구현하기 위해 사용합니다.

    Attributes:
        kind (str): 트랙 종류 ("audio" 또는 "video")
        track (MediaStreamTrack): 원본 캡처 트랙
        enabled (bool): 활성화 여부
    """

    def __init__(self, track: MediaStreamTrack):
        super().__init__()
        self.kind = track.kind
        self.track = track
        self.enabled = True

    async def recv(self):
        frame = await self.track.recv()
        if self.enabled:
            return frame
        return self._blank(frame)

    def _blank(self, frame):
        if isinstance(frame, VideoFrame):
            blank = VideoFrame(width=frame.width, height=frame.height)
        else:
            blank = AudioFrame(
                format=frame.format.name,
                layout=frame.layout.name,
                samples=frame.samples,
            )
            blank.sample_rate = frame.sample_rate
        for plane in blank.planes:
            plane.update(bytes(plane.buffer_size))
        blank.pts = frame.pts
        blank.time_base = frame.time_base
        return blank

    def stop(self):
        super().stop()
        self.track.stop()


class MediaStream:
    """트랙 묶음.

    원격 스트림은 피어 연결의 "track" 이벤트로 트랙이 추가되며,
    로컬 스트림은 LocalMediaStream을 사용합니다.

    Attributes:
        id (str): 스트림 ID
    """

    def __init__(self, tracks: Optional[List[MediaStreamTrack]] = None):
        self.id = str(uuid.uuid4())
        self._tracks: List[MediaStreamTrack] = list(tracks or [])
        self._relay = MediaRelay()

    def add_track(self, track: MediaStreamTrack) -> None:
        self._tracks.append(track)

    def get_tracks(self) -> List[MediaStreamTrack]:
        return list(self._tracks)

    def get_audio_tracks(self) -> List[MediaStreamTrack]:
        return [t for t in self._tracks if t.kind == "audio"]

    def get_video_tracks(self) -> List[MediaStreamTrack]:
        return [t for t in self._tracks if t.kind == "video"]

    @property
    def live_tracks(self) -> List[MediaStreamTrack]:
        """아직 종료되지 않은 트랙 목록."""
        return [t for t in self._tracks if t.readyState == "live"]

    def subscribe(self) -> List[MediaStreamTrack]:
        """소비자별 독립 트랙 복사본을 반환합니다.

        Returns:
            List[MediaStreamTrack]: 살아있는 각 트랙의 MediaRelay 구독 트랙
        """
        return [self._relay.subscribe(track) for track in self.live_tracks]

    def stop(self) -> None:
        """모든 트랙을 종료합니다."""
        for track in self._tracks:
            track.stop()


class LocalMediaStream(MediaStream):
    """로컬 카메라/마이크 캡처 스트림.

    각 캡처 트랙은 SwitchableTrack으로 감싸져 있어 음소거/카메라 끄기가
    통화 재협상이나 공유 통화 레코드와 무관하게 로컬에서만 동작합니다.

    Examples:
        >>> stream = await get_user_media(video=True, audio=True)
        >>> stream.set_audio_enabled(False)  # 음소거
        >>> stream.stop()
        >>> len(stream.live_tracks)
        0
    """

    def __init__(self, tracks: List[MediaStreamTrack], players: Optional[List[MediaPlayer]] = None):
        super().__init__([SwitchableTrack(track) for track in tracks])
        self._players = list(players or [])

    @property
    def audio_enabled(self) -> bool:
        return any(t.enabled for t in self.get_audio_tracks())

    @property
    def video_enabled(self) -> bool:
        return any(t.enabled for t in self.get_video_tracks())

    def set_audio_enabled(self, enabled: bool) -> None:
        for track in self.get_audio_tracks():
            track.enabled = enabled
        logger.info(f"[VideoCall] 마이크 {'켜짐' if enabled else '꺼짐'}")

    def set_video_enabled(self, enabled: bool) -> None:
        for track in self.get_video_tracks():
            track.enabled = enabled
        logger.info(f"[VideoCall] 카메라 {'켜짐' if enabled else '꺼짐'}")

    def stop(self) -> None:
        super().stop()
        self._players.clear()
        logger.info(f"[VideoCall] 로컬 캡처 트랙 종료 (stream={self.id[:8]})")


def _close_players(players: List[MediaPlayer]) -> None:
    for player in players:
        for track in (player.audio, player.video):
            if track is not None:
                track.stop()


async def get_user_media(
    video: bool = True,
    audio: bool = True,
    config: Optional[MediaConfig] = None,
) -> LocalMediaStream:
    """카메라/마이크 접근을 요청하고 로컬 스트림을 반환합니다.

    Args:
        video (bool): 카메라 캡처 여부
        audio (bool): 마이크 캡처 여부
        config (Optional[MediaConfig]): 장치 설정 (기본: 환경변수 설정)

    Returns:
        LocalMediaStream: 캡처 스트림

    Raises:
        MediaAccessError: 권한 거부, 장치 없음 등으로 장치를 열 수 없는 경우
        ValueError: video와 audio가 모두 False인 경우
    """
    if not video and not audio:
        raise ValueError("video 또는 audio 중 하나는 요청해야 합니다")

    config = config or media_config
    players: List[MediaPlayer] = []
    tracks: List[MediaStreamTrack] = []

    try:
        if video:
            player = MediaPlayer(
                config.VIDEO_DEVICE,
                format=config.VIDEO_FORMAT,
                options=config.video_options,
            )
            players.append(player)
            if player.video is None:
                raise MediaAccessError(f"비디오 트랙 없음: {config.VIDEO_DEVICE}")
            tracks.append(player.video)

        if audio:
            player = MediaPlayer(config.AUDIO_DEVICE, format=config.AUDIO_FORMAT)
            players.append(player)
            if player.audio is None:
                raise MediaAccessError(f"오디오 트랙 없음: {config.AUDIO_DEVICE}")
            tracks.append(player.audio)

    except MediaAccessError:
        _close_players(players)
        raise
    except (FFmpegError, OSError) as e:
        _close_players(players)
        raise MediaAccessError(f"미디어 장치 열기 실패: {e}") from e

    logger.info(f"[VideoCall] 로컬 미디어 획득: video={video}, audio={audio}")
    return LocalMediaStream(tracks, players)


class DisplaySurface:
    """스트림을 소비하는 출력면.

    브라우저의 <video> 요소에 해당합니다. 기본은 프레임을 버리는 MediaBlackhole이며,
    record_to가 주어지면 MediaRecorder로 파일에 기록합니다.

    Attributes:
        name (str): 출력면 이름 ("local", "remote")
        record_to (Optional[str]): 녹화 파일 경로
        stream (Optional[MediaStream]): 현재 연결된 스트림
    """

    def __init__(self, name: str, record_to: Optional[str] = None):
        self.name = name
        self.record_to = record_to
        self.stream: Optional[MediaStream] = None
        self._sink = None

    @property
    def attached(self) -> bool:
        return self.stream is not None

    async def attach(self, stream: MediaStream) -> None:
        """스트림을 출력면에 연결합니다. 기존 스트림은 먼저 해제됩니다."""
        if self._sink is not None:
            await self.detach()

        sink = MediaRecorder(self.record_to) if self.record_to else MediaBlackhole()
        for track in stream.subscribe():
            sink.addTrack(track)
        await sink.start()

        self._sink = sink
        self.stream = stream
        logger.info(f"[VideoCall] {self.name} 화면에 스트림 연결 (stream={stream.id[:8]})")

    async def detach(self) -> None:
        """연결된 스트림을 해제합니다. 연결된 스트림이 없으면 아무것도 하지 않습니다."""
        if self._sink is None:
            return

        sink, self._sink = self._sink, None
        self.stream = None
        await sink.stop()
        logger.info(f"[VideoCall] {self.name} 화면 비움")
