"""
WebRTC Pi Core Modules

Client-side signaling and peer-session negotiation.
"""

from .sdp_processor import (
    SDPProcessor,
    extract_sdp_info,
    format_sdp_for_logging,
)

from .peer_session import (
    PeerSession,
    PeerSessionError,
    PeerState,
    PeerRole,
    create_peer_connection,
)

from .stats_monitor import (
    StatsMonitor,
    MediaStats,
    compute_bitrate,
    estimate_latency,
)

from .transport import (
    TransportLink,
    TransportError,
)

from .media import (
    CameraSource,
    VideoRenderer,
    MediaError,
)

from .session_manager import (
    SessionManager,
    SessionManagerError,
)

from .network_tuning import (
    apply_low_latency_tuning,
    NetworkTuningError,
)

__all__ = [
    # SDP processor
    "SDPProcessor",
    "extract_sdp_info",
    "format_sdp_for_logging",
    # Peer session
    "PeerSession",
    "PeerSessionError",
    "PeerState",
    "PeerRole",
    "create_peer_connection",
    # Stats monitor
    "StatsMonitor",
    "MediaStats",
    "compute_bitrate",
    "estimate_latency",
    # Transport link
    "TransportLink",
    "TransportError",
    # Media collaborators
    "CameraSource",
    "VideoRenderer",
    "MediaError",
    # Session manager
    "SessionManager",
    "SessionManagerError",
    # Network tuning
    "apply_low_latency_tuning",
    "NetworkTuningError",
]
