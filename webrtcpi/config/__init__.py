"""
WebRTC Pi Configuration Package
"""

from .settings import *

__all__ = [
    "PORT",
    "ROOM_ID",
    "SERVER_URL",
    "RoomConfig",
    "load_room_config",
    "LOG_LEVEL",
]
