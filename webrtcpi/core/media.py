"""
Media collaborators

Thin adapters around aiortc's media helpers:
- CameraSource acquires the local camera track and releases it again
- VideoRenderer consumes an inbound video track and acts as the rendering
  surface (frame dimensions and per-frame notifications)
"""

import asyncio
import logging
from typing import Any, Callable, List, Optional

from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import MediaStreamError

logger = logging.getLogger(__name__)


class MediaError(Exception):
    """Raised when the local media track cannot be acquired"""
    pass


class CameraSource:
    """
    Local camera capture.

    The returned track is shared by every outgoing Peer Session; it is not
    owned by them and is only stopped by release().
    """

    def __init__(
        self,
        device: str,
        video_format: Optional[str],
        width: int,
        height: int,
        frame_rate: int,
        player_factory: Callable = MediaPlayer
    ):
        self.device = device
        self.video_format = video_format
        self.width = width
        self.height = height
        self.frame_rate = frame_rate
        self.player_factory = player_factory

        self.player = None
        self.track = None

    async def acquire(self) -> Any:
        """
        Open the capture device and return its video track.

        Raises:
            MediaError: If the device cannot be opened or has no video
        """
        if self.track is not None:
            return self.track

        logger.info(f"Opening camera {self.device} ({self.width}x{self.height} @ {self.frame_rate}fps)")

        loop = asyncio.get_running_loop()
        try:
            player = await loop.run_in_executor(None, self._open_player)
        except Exception as e:
            raise MediaError(f"Failed to open camera {self.device}: {e}") from e

        if player.video is None:
            raise MediaError(f"Camera {self.device} provides no video track")

        self.player = player
        self.track = player.video
        logger.info(f"✅ Camera {self.device} opened")
        return self.track

    def _open_player(self):
        options = {
            "video_size": f"{self.width}x{self.height}",
            "framerate": str(self.frame_rate),
        }
        return self.player_factory(self.device, format=self.video_format, options=options)

    def release(self) -> None:
        """Stop the capture track"""
        if self.track is not None:
            self.track.stop()
            logger.info(f"Camera {self.device} released")
        self.track = None
        self.player = None


class VideoRenderer:
    """
    Headless rendering surface for an inbound video track.

    Records the dimensions of the latest frame and notifies frame listeners
    once per delivered frame.
    """

    def __init__(self):
        self.width = 0
        self.height = 0
        self.frames_rendered = 0
        self.track = None
        self.task: Optional[asyncio.Task] = None
        self._listeners: List[Callable] = []

    def attach(self, track: Any) -> None:
        """Start consuming a track, replacing any previous one"""
        self.stop()
        self.track = track
        self.task = asyncio.create_task(self._consume(track))

    def add_frame_listener(self, listener: Callable) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_frame_listener(self, listener: Callable) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def resolution(self) -> Optional[str]:
        if self.width and self.height:
            return f"{self.width}x{self.height}"
        return None

    async def _consume(self, track: Any) -> None:
        try:
            while True:
                frame = await track.recv()
                self.width = getattr(frame, "width", self.width)
                self.height = getattr(frame, "height", self.height)
                self.frames_rendered += 1

                for listener in list(self._listeners):
                    try:
                        listener(frame)
                    except Exception as e:
                        logger.error(f"Error in frame listener: {e}")

        except MediaStreamError:
            logger.info("Inbound video track ended")
        except asyncio.CancelledError:
            logger.debug("Renderer cancelled")

    def stop(self) -> None:
        if self.task and not self.task.done():
            self.task.cancel()
        self.task = None
        self.track = None
