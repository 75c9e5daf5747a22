"""
WebRTC Pi Configuration Settings

Environment-driven configuration for the signaling server and the
sender/receiver session clients.
"""

import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from dotenv import load_dotenv

# Base paths
BASE_DIR = Path(__file__).parent.parent
PROJECT_ROOT = BASE_DIR.parent

# Load environment variables from the project's .env file, falling back to cwd
env_file = PROJECT_ROOT / ".env"
if not env_file.exists():
    env_file = Path.cwd() / ".env"
if env_file.exists():
    load_dotenv(env_file)


def get_env(key: str, default=None, cast_type=str):
    """Get environment variable with type casting and default values"""
    value = os.getenv(key, default)
    if value is None:
        return None

    if cast_type == bool:
        if isinstance(value, bool):
            return value
        return str(value).lower() in ('true', '1', 'yes', 'on')
    elif cast_type == int:
        return int(value)
    elif cast_type == float:
        return float(value)
    else:
        return str(value)


# ============================================================================
# Signaling Server Configuration
# ============================================================================

HOST = get_env("HOST", "0.0.0.0")
PORT = get_env("PORT", 3000, int)

# Who receives user-disconnected: "global" (every link) or "room"
DISCONNECT_BROADCAST_SCOPE = get_env("DISCONNECT_BROADCAST_SCOPE", "global").lower()

# WebSocket settings
WS_PING_INTERVAL = 20  # seconds
WS_PING_TIMEOUT = 10   # seconds
WS_MAX_SIZE = 10 * 1024 * 1024  # 10 MB, large SDP blobs

# Optional TLS (wss)
SIGNALING_SSL_CERT_FILE = get_env("SIGNALING_SSL_CERT_FILE")
SIGNALING_SSL_KEY_FILE = get_env("SIGNALING_SSL_KEY_FILE")

# ============================================================================
# Status API Configuration
# ============================================================================

API_HOST = get_env("API_HOST", "0.0.0.0")
API_PORT = get_env("API_PORT", 3001, int)

# ============================================================================
# Client Configuration
# ============================================================================

SERVER_URL = get_env("SERVER_URL", f"ws://localhost:{PORT}")
ROOM_ID = get_env("ROOM_ID", "raspberry-pi-stream")

# Transport link reconnection (seconds)
LINK_RECONNECT_DELAY = 1.0
LINK_RECONNECT_DELAY_MAX = 5.0
LINK_CONNECT_TIMEOUT = 10.0

# Fixed retry delay for media acquisition and room rejoin (seconds)
RECONNECT_DELAY = get_env("RECONNECT_DELAY", 2.0, float)

# Stats polling interval (seconds)
STATS_INTERVAL = get_env("STATS_INTERVAL", 1.0, float)

# ICE servers
DEFAULT_STUN_SERVERS = (
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
)
STUN_SERVERS = tuple(
    url.strip()
    for url in get_env("STUN_SERVERS", ",".join(DEFAULT_STUN_SERVERS)).split(",")
    if url.strip()
)

# ============================================================================
# Video Configuration
# ============================================================================

VIDEO_WIDTH = get_env("VIDEO_WIDTH", 640, int)
VIDEO_HEIGHT = get_env("VIDEO_HEIGHT", 480, int)
FRAME_RATE = get_env("FRAME_RATE", 30, int)
VIDEO_DEVICE = get_env("VIDEO_DEVICE", "/dev/video0")
VIDEO_FORMAT = get_env("VIDEO_FORMAT", "v4l2")

# SDP low-latency policy
MAX_VIDEO_BITRATE = get_env("MAX_VIDEO_BITRATE", 2500, int)  # kbps (b=AS)
SDP_STRIP_FEEDBACK = get_env("SDP_STRIP_FEEDBACK", True, bool)

# OS network tuning (sysctl)
OPTIMIZE_LATENCY = get_env("OPTIMIZE_LATENCY", False, bool)

# ============================================================================
# Logging Configuration
# ============================================================================

LOG_LEVEL = get_env("LOG_LEVEL", "INFO").upper()
LOG_DIR = Path(get_env("LOG_DIR", str(Path.cwd() / "logs")))
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


# ============================================================================
# Room / video configuration
# ============================================================================

@dataclass(frozen=True)
class RoomConfig:
    """Room and video parameters, fixed for the lifetime of a process."""
    room_id: str
    width: int
    height: int
    frame_rate: int
    optimize_latency: bool = False

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"


def load_room_config(room_id: str = None) -> RoomConfig:
    """Build the immutable room configuration from settings"""
    return RoomConfig(
        room_id=room_id or ROOM_ID,
        width=VIDEO_WIDTH,
        height=VIDEO_HEIGHT,
        frame_rate=FRAME_RATE,
        optimize_latency=OPTIMIZE_LATENCY,
    )


# ============================================================================
# Validation
# ============================================================================

def validate_config():
    """Validate configuration settings"""
    errors = []

    if not 0 < PORT < 65536:
        errors.append(f"PORT out of range: {PORT}")
    if not 0 < API_PORT < 65536:
        errors.append(f"API_PORT out of range: {API_PORT}")
    if PORT == API_PORT:
        errors.append("PORT and API_PORT must differ")

    if not SERVER_URL.startswith("ws://") and not SERVER_URL.startswith("wss://"):
        errors.append("SERVER_URL must start with ws:// or wss://")

    if not ROOM_ID:
        errors.append("ROOM_ID must not be empty")

    if VIDEO_WIDTH <= 0 or VIDEO_HEIGHT <= 0:
        errors.append(f"Invalid video size: {VIDEO_WIDTH}x{VIDEO_HEIGHT}")
    if FRAME_RATE <= 0:
        errors.append(f"Invalid FRAME_RATE: {FRAME_RATE}")
    if MAX_VIDEO_BITRATE <= 0:
        errors.append(f"Invalid MAX_VIDEO_BITRATE: {MAX_VIDEO_BITRATE}")

    if DISCONNECT_BROADCAST_SCOPE not in ("global", "room"):
        errors.append("DISCONNECT_BROADCAST_SCOPE must be 'global' or 'room'")

    if bool(SIGNALING_SSL_CERT_FILE) != bool(SIGNALING_SSL_KEY_FILE):
        errors.append("SIGNALING_SSL_CERT_FILE and SIGNALING_SSL_KEY_FILE must be set together")

    return errors


# Run validation on import
validation_errors = validate_config()
if validation_errors:
    for error in validation_errors:
        warnings.warn(f"Configuration warning: {error}")


__all__ = [
    # Signaling server
    "HOST",
    "PORT",
    "DISCONNECT_BROADCAST_SCOPE",
    "WS_PING_INTERVAL",
    "WS_PING_TIMEOUT",
    "WS_MAX_SIZE",
    "SIGNALING_SSL_CERT_FILE",
    "SIGNALING_SSL_KEY_FILE",

    # Status API
    "API_HOST",
    "API_PORT",

    # Client
    "SERVER_URL",
    "ROOM_ID",
    "LINK_RECONNECT_DELAY",
    "LINK_RECONNECT_DELAY_MAX",
    "LINK_CONNECT_TIMEOUT",
    "RECONNECT_DELAY",
    "STATS_INTERVAL",
    "STUN_SERVERS",

    # Video
    "VIDEO_WIDTH",
    "VIDEO_HEIGHT",
    "FRAME_RATE",
    "VIDEO_DEVICE",
    "VIDEO_FORMAT",
    "MAX_VIDEO_BITRATE",
    "SDP_STRIP_FEEDBACK",
    "OPTIMIZE_LATENCY",

    # Logging
    "LOG_LEVEL",
    "LOG_DIR",
    "LOG_FORMAT",

    # Helpers
    "get_env",
    "RoomConfig",
    "load_room_config",
    "validate_config",
]
