"""
WebRTC Pi

Low-latency peer-to-peer camera streaming: a room-keyed signaling relay
and the client-side session negotiation that rides on it.
"""

__version__ = "1.0.0"
