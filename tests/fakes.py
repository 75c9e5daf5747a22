"""Test doubles for the peer connection handle, media and transport link."""

import asyncio
import json

from aiortc import RTCSessionDescription
from aiortc.sdp import candidate_from_sdp
from pyee.asyncio import AsyncIOEventEmitter
from websockets.exceptions import ConnectionClosed

from webrtcpi.core.media import MediaError
from webrtcpi.core.transport import TransportLink

VIDEO_SDP = (
    "v=0\r\n"
    "o=- 4611731400430051336 2 IN IP4 127.0.0.1\r\n"
    "s=-\r\n"
    "t=0 0\r\n"
    "a=group:BUNDLE 0\r\n"
    "m=video 9 UDP/TLS/RTP/SAVPF 96 97\r\n"
    "c=IN IP4 0.0.0.0\r\n"
    "a=mid:0\r\n"
    "a=sendrecv\r\n"
    "a=rtpmap:96 VP8/90000\r\n"
    "a=rtcp-fb:96 nack\r\n"
    "a=rtcp-fb:96 nack pli\r\n"
    "a=rtcp-fb:96 goog-remb\r\n"
    "a=rtpmap:97 H264/90000\r\n"
    "a=rtcp-fb:97 nack\r\n"
)

AUDIO_SECTION = (
    "m=audio 9 UDP/TLS/RTP/SAVPF 111\r\n"
    "c=IN IP4 0.0.0.0\r\n"
    "a=mid:1\r\n"
    "a=rtpmap:111 opus/48000/2\r\n"
    "a=rtcp-fb:111 transport-cc\r\n"
)


def make_candidate(index: int = 0):
    candidate = candidate_from_sdp(
        f"{index} 1 udp 2122260223 192.168.1.{10 + index} {50000 + index} typ host"
    )
    candidate.sdpMid = "0"
    candidate.sdpMLineIndex = 0
    return candidate


def candidate_payload(index: int = 0):
    return {
        "candidate": f"candidate:{index} 1 udp 2122260223 10.0.0.{10 + index} {40000 + index} typ host",
        "sdpMid": "0",
        "sdpMLineIndex": 0,
    }


async def wait_for(predicate, timeout: float = 3.0, interval: float = 0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


class FakeFrame:
    def __init__(self, width=640, height=480):
        self.width = width
        self.height = height


class FakeVideoTrack:
    kind = "video"

    def __init__(self, interval: float = 0.005):
        self.interval = interval
        self.stopped = False

    async def recv(self):
        await asyncio.sleep(self.interval)
        return FakeFrame()

    def stop(self):
        self.stopped = True


class FakePeerConnection(AsyncIOEventEmitter):
    """
    Stand-in for RTCPeerConnection.

    With emit_track it announces an inbound video track from inside
    setRemoteDescription, before the call returns, as aiortc does. It
    trickles its local candidates as icecandidate events when the local
    description is set, like a browser peer (aiortc itself never does).
    It becomes "connected" once both descriptions are set.
    """

    def __init__(self, candidates: int = 2, emit_track: bool = False):
        super().__init__()
        self.candidate_count = candidates
        self.emit_track = emit_track
        self.connectionState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.added_tracks = []
        self.added_candidates = []
        self.stats = {}
        self.fail_remote = False
        self.fail_stats = False
        self.closed = False
        self.track_emitted = False

    async def createOffer(self):
        return RTCSessionDescription(sdp=VIDEO_SDP, type="offer")

    async def createAnswer(self):
        return RTCSessionDescription(sdp=VIDEO_SDP, type="answer")

    async def setLocalDescription(self, description):
        await asyncio.sleep(0)
        self.localDescription = description
        for index in range(self.candidate_count):
            self.emit("icecandidate", make_candidate(index))
        self._maybe_connect()

    async def setRemoteDescription(self, description):
        await asyncio.sleep(0)
        if self.fail_remote:
            raise ValueError("description rejected")
        if self.emit_track and not self.track_emitted:
            self.track_emitted = True
            self.emit("track", FakeVideoTrack())
        self.remoteDescription = description
        self._maybe_connect()

    async def addIceCandidate(self, candidate):
        if self.remoteDescription is None:
            raise RuntimeError("remote description not set")
        self.added_candidates.append(candidate)

    def addTrack(self, track):
        self.added_tracks.append(track)

    async def getStats(self):
        if self.fail_stats:
            raise RuntimeError("stats unavailable")
        return dict(self.stats)

    async def close(self):
        self.closed = True
        self.connectionState = "closed"

    def set_connection_state(self, state):
        self.connectionState = state
        self.emit("connectionstatechange")

    def _maybe_connect(self):
        if self.localDescription is None or self.remoteDescription is None:
            return
        if self.connectionState == "connected":
            return
        self.connectionState = "connected"
        self.emit("connectionstatechange")


class FakeConnectionFactory:
    """Records every peer connection handed to a Session Manager"""

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.created = []

    def __call__(self):
        connection = FakePeerConnection(**self.kwargs)
        self.created.append(connection)
        return connection


class FakeMediaSource:
    def __init__(self, failures: int = 0):
        self.failures = failures
        self.attempts = 0
        self.released = False
        self.track = FakeVideoTrack()

    async def acquire(self):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise MediaError("camera busy")
        return self.track

    def release(self):
        self.released = True


class FakeLink(TransportLink):
    """Transport link without a socket; records emitted events"""

    def __init__(self):
        super().__init__("ws://fake")
        self.sent = []

    def start(self):
        self.running = True

    async def emit(self, event, *args):
        if not self.connected:
            return False
        self.sent.append((event, args))
        return True

    def connect(self, participant_id="self-id"):
        self.connected = True
        self.participant_id = participant_id
        self._dispatch("connect")

    def drop(self):
        self.connected = False
        self.participant_id = None
        self._dispatch("disconnect")

    def deliver(self, event, *args):
        self._dispatch(event, *args)

    def events(self, name):
        return [args for event, args in self.sent if event == name]


class FakeSocket:
    """Server-side WebSocket stand-in; decodes sent frames"""

    remote_address = ("127.0.0.1", 0)

    def __init__(self):
        self.frames = []
        self.closed = False

    async def send(self, message):
        if self.closed:
            raise ConnectionClosed(None, None)
        data = json.loads(message)
        self.frames.append((data["event"], data["args"]))

    def events(self, name):
        return [args for event, args in self.frames if event == name]
