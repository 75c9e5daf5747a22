"""Tests for the camera and renderer adapters."""

import asyncio

import pytest
from aiortc.mediastreams import MediaStreamError

from webrtcpi.core.media import CameraSource, MediaError, VideoRenderer

from fakes import FakeVideoTrack, wait_for


class FakePlayer:
    def __init__(self, device, format=None, options=None):
        self.device = device
        self.format = format
        self.options = options
        self.video = FakeVideoTrack()


class EndingTrack:
    kind = "video"

    def __init__(self, frames):
        self.frames = list(frames)

    async def recv(self):
        await asyncio.sleep(0)
        if not self.frames:
            raise MediaStreamError
        return self.frames.pop(0)


async def test_camera_source_opens_player_with_video_options():
    players = []

    def factory(*args, **kwargs):
        player = FakePlayer(*args, **kwargs)
        players.append(player)
        return player

    source = CameraSource("/dev/video0", "v4l2", 1280, 720, 25, player_factory=factory)

    track = await source.acquire()

    assert track is players[0].video
    assert players[0].format == "v4l2"
    assert players[0].options == {"video_size": "1280x720", "framerate": "25"}
    assert await source.acquire() is track
    assert len(players) == 1

    source.release()
    assert track.stopped
    assert source.track is None


async def test_camera_source_wraps_open_failures():
    def factory(*args, **kwargs):
        raise OSError("No such device")

    source = CameraSource("/dev/video9", "v4l2", 640, 480, 30, player_factory=factory)

    with pytest.raises(MediaError, match="No such device"):
        await source.acquire()


async def test_camera_source_requires_video():
    def factory(*args, **kwargs):
        player = FakePlayer(*args, **kwargs)
        player.video = None
        return player

    with pytest.raises(MediaError):
        await CameraSource("/dev/video0", None, 640, 480, 30, player_factory=factory).acquire()


async def test_renderer_tracks_frame_size_and_notifies_listeners():
    renderer = VideoRenderer()
    frames = []
    renderer.add_frame_listener(frames.append)

    renderer.attach(FakeVideoTrack())
    await wait_for(lambda: len(frames) >= 3)
    renderer.stop()

    assert renderer.resolution == "640x480"
    assert renderer.frames_rendered >= 3
    assert renderer.task is None


async def test_renderer_finishes_when_track_ends():
    renderer = VideoRenderer()

    class Frame:
        width = 320
        height = 240

    renderer.attach(EndingTrack([Frame(), Frame()]))
    await wait_for(lambda: renderer.task.done())

    assert renderer.frames_rendered == 2
    assert renderer.resolution == "320x240"


async def test_listener_errors_do_not_stop_rendering():
    renderer = VideoRenderer()

    def broken(frame):
        raise RuntimeError("boom")

    renderer.add_frame_listener(broken)
    renderer.attach(FakeVideoTrack())
    await wait_for(lambda: renderer.frames_rendered >= 2)
    renderer.remove_frame_listener(broken)
    renderer.stop()
