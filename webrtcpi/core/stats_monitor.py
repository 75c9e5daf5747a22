"""
Stats Monitor

Polls a connected Peer Session's statistics report on a fixed interval and
derives link-quality figures for display:

- resolution: read from the rendering surface, not from the report
- frame rate: frames delivered by the rendering surface per ~1 s window
- bitrate: delta of the cumulative received-byte counter over delta time
- latency: jitter + remote round-trip time + average decode time

Every figure is best-effort; a missing report field skips that term.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional

from .peer_session import PeerState

logger = logging.getLogger(__name__)

RTT_REPORT_TYPES = ("remote-candidate", "remote-inbound-rtp")

# RTP clock rates used when a report names no codec
DEFAULT_CLOCK_RATES = {"video": 90000, "audio": 48000}


@dataclass
class MediaStats:
    """One snapshot of derived link-quality figures"""
    resolution: str = "N/A"
    frame_rate: int = 0
    bitrate_kbps: Optional[int] = None
    latency_ms: Optional[int] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resolution": self.resolution,
            "frame_rate": self.frame_rate,
            "bitrate_kbps": self.bitrate_kbps,
            "latency_ms": self.latency_ms,
            "timestamp": self.timestamp.isoformat(),
        }


# ============================================================================
# Derivations
# ============================================================================

def _field(report: Any, name: str) -> Any:
    """Read a report field from either a stats object or a plain dictionary"""
    if isinstance(report, dict):
        return report.get(name)
    return getattr(report, name, None)


def report_timestamp_ms(timestamp: Any) -> Optional[float]:
    """Normalise a report timestamp (datetime or milliseconds) to milliseconds"""
    if timestamp is None:
        return None
    if isinstance(timestamp, datetime):
        return timestamp.timestamp() * 1000
    return float(timestamp)


def compute_bitrate(
    previous_bytes: int,
    previous_timestamp: float,
    current_bytes: int,
    current_timestamp: float
) -> Optional[float]:
    """
    Bitrate in bits per second between two cumulative byte counters.

    Args:
        previous_bytes: Earlier cumulative byte count
        previous_timestamp: Earlier timestamp in ms
        current_bytes: Later cumulative byte count
        current_timestamp: Later timestamp in ms

    Returns:
        8 × Δbytes / Δt × 1000, or None when Δt is not positive
    """
    elapsed = current_timestamp - previous_timestamp
    if elapsed <= 0:
        return None
    return 8 * (current_bytes - previous_bytes) / elapsed * 1000


class BitrateCalculator:
    """Tracks the last byte counter; the first sample only sets the baseline."""

    def __init__(self):
        self.last_bytes: Optional[int] = None
        self.last_timestamp: Optional[float] = None

    def update(self, byte_count: int, timestamp: Any) -> Optional[float]:
        timestamp_ms = report_timestamp_ms(timestamp)
        if byte_count is None or timestamp_ms is None:
            return None

        bitrate = None
        if self.last_bytes is not None and self.last_timestamp is not None:
            bitrate = compute_bitrate(self.last_bytes, self.last_timestamp, byte_count, timestamp_ms)

        self.last_bytes = byte_count
        self.last_timestamp = timestamp_ms
        return bitrate

    def reset(self) -> None:
        self.last_bytes = None
        self.last_timestamp = None


def codec_clock_rate(inbound: Any, reports: Iterable[Any]) -> int:
    """RTP clock rate of the inbound stream's codec, or the default for its kind"""
    codec_id = _field(inbound, "codecId")
    if codec_id is not None:
        for report in reports:
            if _field(report, "id") == codec_id and _field(report, "clockRate"):
                return _field(report, "clockRate")
    return DEFAULT_CLOCK_RATES.get(_field(inbound, "kind"), DEFAULT_CLOCK_RATES["video"])


def jitter_ms(inbound: Any, reports: Iterable[Any]) -> Optional[float]:
    """
    Interarrival jitter in milliseconds.

    Dictionary reports use the browser convention (seconds). aiortc stats
    objects carry jitter in RTP timestamp units of the codec clock.
    """
    jitter = _field(inbound, "jitter")
    if jitter is None:
        return None
    if isinstance(inbound, dict):
        return jitter * 1000
    return jitter / codec_clock_rate(inbound, reports) * 1000


def estimate_latency(inbound: Any, reports: Iterable[Any]) -> Optional[float]:
    """
    Approximate end-to-end latency in milliseconds.

    Sum of the jitter term, the remote round-trip-time term and the average
    per-frame decode time term; each term is skipped when its fields are
    absent. Returns None when no term is available.
    """
    reports = list(reports)
    terms = []

    jitter = jitter_ms(inbound, reports)
    if jitter is not None:
        terms.append(jitter)

    for report in reports:
        if _field(report, "type") in RTT_REPORT_TYPES:
            round_trip = _field(report, "roundTripTime")
            if round_trip is not None:
                terms.append(round_trip * 1000)
                break

    total_decode_time = _field(inbound, "totalDecodeTime")
    frames_decoded = _field(inbound, "framesDecoded")
    if total_decode_time is not None and frames_decoded:
        terms.append(total_decode_time / frames_decoded * 1000)

    if not terms:
        return None
    return sum(terms)


class FrameRateCounter:
    """Counts rendered frames and yields a rate once per window."""

    def __init__(self, window: float = 1.0, clock: Callable[[], float] = time.monotonic):
        self.window = window
        self.clock = clock
        self.count = 0
        self.last_time = clock()
        self.last_frame_time: Optional[float] = None
        self.frame_rate = 0

    def tick(self) -> Optional[int]:
        """Record one frame; returns the new rate when a window closes"""
        self.count += 1
        now = self.clock()
        self.last_frame_time = now
        elapsed = now - self.last_time

        if elapsed < self.window or elapsed <= 0:
            return None

        self.frame_rate = round(self.count / elapsed)
        self.count = 0
        self.last_time = now
        return self.frame_rate

    def current(self) -> int:
        """Rate of the last closed window, or 0 once no frame arrived within a window"""
        if self.last_frame_time is None or self.clock() - self.last_frame_time > self.window:
            self.frame_rate = 0
        return self.frame_rate

    def reset(self) -> None:
        self.count = 0
        self.last_time = self.clock()
        self.last_frame_time = None
        self.frame_rate = 0


# ============================================================================
# Monitor
# ============================================================================

class StatsMonitor:
    """
    Periodic stats poller bound to one Peer Session.

    Starts when the session reaches CONNECTED and is stopped synchronously
    when the session leaves it (including close()).
    """

    def __init__(
        self,
        session: Any,
        renderer: Any = None,
        interval: float = 1.0,
        frame_window: float = 1.0,
        on_stats: Optional[Callable] = None
    ):
        """
        Initialize stats monitor.

        Args:
            session: Peer Session to poll
            renderer: Rendering surface (width/height and frame listeners), optional
            interval: Polling interval in seconds
            frame_window: Frame rate window in seconds
            on_stats: Optional callback(session, MediaStats) per poll
        """
        self.session = session
        self.renderer = renderer
        self.interval = interval
        self.on_stats = on_stats

        self.bitrate = BitrateCalculator()
        self.frame_counter = FrameRateCounter(window=frame_window)
        self.latest: Optional[MediaStats] = None

        self.running = False
        self.task: Optional[asyncio.Task] = None
        self.poll_count = 0
        self.error_count = 0

    def start(self) -> None:
        """Start polling"""
        if self.running:
            return

        self.running = True
        self.bitrate.reset()
        self.frame_counter.reset()
        if self.renderer:
            self.renderer.add_frame_listener(self._on_frame)

        self.task = asyncio.create_task(self._monitor_loop())
        logger.info(f"Stats monitor started for {self.session.participant_id[:8]}... (interval: {self.interval}s)")

    def stop(self) -> None:
        """Stop polling; cancels the interval immediately"""
        if not self.running:
            return

        self.running = False
        if self.renderer:
            self.renderer.remove_frame_listener(self._on_frame)
        if self.task and not self.task.done():
            self.task.cancel()

        logger.info(f"Stats monitor stopped for {self.session.participant_id[:8]}... ({self.poll_count} polls)")

    def is_running(self) -> bool:
        return self.running

    def _on_frame(self, frame: Any) -> None:
        self.frame_counter.tick()

    async def _monitor_loop(self) -> None:
        try:
            while self.running:
                await asyncio.sleep(self.interval)
                if self.session.state != PeerState.CONNECTED:
                    self.stop()
                    break
                await self.poll()
        except asyncio.CancelledError:
            logger.debug("Stats loop cancelled")

    async def poll(self) -> Optional[MediaStats]:
        """Poll the statistics report once and derive a snapshot"""
        try:
            report = await self.session.connection.getStats()
        except Exception as e:
            self.error_count += 1
            logger.error(f"Error getting stats: {e}")
            return None

        self.poll_count += 1
        reports = list(report.values()) if isinstance(report, dict) else list(report)
        stats = self.derive(reports)
        self.latest = stats

        if self.on_stats:
            try:
                self.on_stats(self.session, stats)
            except Exception as e:
                logger.error(f"Error in stats callback: {e}")

        return stats

    def derive(self, reports: list) -> MediaStats:
        """Derive a snapshot from a list of report entries"""
        stats = MediaStats(frame_rate=self.frame_counter.current())

        width = getattr(self.renderer, "width", 0) if self.renderer else 0
        height = getattr(self.renderer, "height", 0) if self.renderer else 0
        if width and height:
            stats.resolution = f"{width}x{height}"

        inbound = None
        transport = None
        for entry in reports:
            entry_type = _field(entry, "type")
            if entry_type == "inbound-rtp" and _field(entry, "kind") == "video":
                inbound = entry
            elif entry_type == "transport":
                transport = entry

        if inbound is None:
            return stats

        byte_source = inbound if _field(inbound, "bytesReceived") is not None else transport
        if byte_source is not None:
            bitrate = self.bitrate.update(
                _field(byte_source, "bytesReceived"),
                _field(byte_source, "timestamp")
            )
            if bitrate is not None:
                stats.bitrate_kbps = round(bitrate / 1000)

        latency = estimate_latency(inbound, reports)
        if latency is not None:
            stats.latency_ms = round(latency)

        return stats

    def get_stats(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "interval": self.interval,
            "poll_count": self.poll_count,
            "error_count": self.error_count,
            "latest": self.latest.to_dict() if self.latest else None,
        }
