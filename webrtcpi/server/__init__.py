"""
WebRTC Pi Server Modules

Signaling relay and status API.
"""

from .api_server import APIServer
from .signaling_server import SignalingServer, Participant, SignalingError

__all__ = [
    "APIServer",
    "SignalingServer",
    "Participant",
    "SignalingError",
]
