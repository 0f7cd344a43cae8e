"""로컬 미디어 / 출력면 테스트.

사용법:
    cd backend
    uv run pytest test/test_media.py -v
"""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from modules.videocall import DisplaySurface, LocalMediaStream, MediaAccessError, MediaStream, get_user_media

from fakes import ToneTrack


def test_disabled_tracks_send_blank_frames():
    async def scenario():
        stream = LocalMediaStream([ToneTrack("audio"), ToneTrack("video", fill=128)])
        audio = stream.get_audio_tracks()[0]
        video = stream.get_video_tracks()[0]

        first = await audio.recv()
        stream.set_audio_enabled(False)
        muted = await audio.recv()
        stream.set_video_enabled(False)
        blank = await video.recv()

        flags = (stream.audio_enabled, stream.video_enabled)
        stream.set_audio_enabled(True)
        resumed = await audio.recv()
        return first, muted, blank, resumed, flags

    first, muted, blank, resumed, flags = asyncio.run(scenario())
    assert any(bytes(first.planes[0]))
    assert not any(bytes(muted.planes[0]))
    assert muted.samples == first.samples
    assert muted.pts == first.pts + first.samples
    assert (blank.width, blank.height) == (64, 48)
    assert not any(bytes(blank.planes[0]))
    assert any(bytes(resumed.planes[0]))
    assert flags == (False, False)


def test_stop_ends_capture_tracks():
    stream = LocalMediaStream([ToneTrack("audio"), ToneTrack("video")])
    sources = [track.track for track in stream.get_tracks()]
    assert len(stream.live_tracks) == 2

    stream.stop()
    assert stream.live_tracks == []
    assert all(source.readyState == "ended" for source in sources)
    assert stream.subscribe() == []


def test_get_user_media_requires_a_kind():
    with pytest.raises(ValueError):
        asyncio.run(get_user_media(video=False, audio=False))


def test_get_user_media_wraps_device_errors():
    with patch("modules.videocall.media.MediaPlayer", side_effect=OSError("no camera")):
        with pytest.raises(MediaAccessError):
            asyncio.run(get_user_media())


def test_get_user_media_closes_opened_devices_on_failure():
    camera = ToneTrack("video")
    video_player = MagicMock(video=camera, audio=None)
    audio_player = MagicMock(video=None, audio=None)

    with patch("modules.videocall.media.MediaPlayer", side_effect=[video_player, audio_player]):
        with pytest.raises(MediaAccessError):
            asyncio.run(get_user_media())
    assert camera.readyState == "ended"


def test_get_user_media_returns_switchable_stream():
    video_player = MagicMock(video=ToneTrack("video"), audio=None)
    audio_player = MagicMock(video=None, audio=ToneTrack("audio"))

    with patch("modules.videocall.media.MediaPlayer", side_effect=[video_player, audio_player]) as player:
        stream = asyncio.run(get_user_media())

    assert player.call_count == 2
    assert [track.kind for track in stream.get_tracks()] == ["video", "audio"]
    assert stream.audio_enabled and stream.video_enabled
    stream.stop()


def test_display_surface_attach_and_detach():
    async def scenario():
        surface = DisplaySurface("remote")
        first = MediaStream([ToneTrack("audio")])
        second = MediaStream([ToneTrack("video")])

        await surface.attach(first)
        await asyncio.sleep(0.03)
        attached_first = surface.stream is first

        await surface.attach(second)
        attached_second = surface.stream is second

        await surface.detach()
        await surface.detach()
        first.stop()
        second.stop()
        return attached_first, attached_second, surface.attached

    attached_first, attached_second, attached = asyncio.run(scenario())
    assert attached_first
    assert attached_second
    assert not attached
