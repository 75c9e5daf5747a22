"""
Peer Session

Per-remote-participant negotiation state machine around one peer connection
handle (an aiortc RTCPeerConnection or anything exposing the same surface).

States:
    NEW → LOCAL_DESC_SET → REMOTE_DESC_SET → CONNECTED
    * → FAILED   (transport-level connection failure)
    * → CLOSED   (terminal, absorbing)

ICE candidates that arrive before the remote description is set are queued
("early candidates") and flushed exactly once when it is applied.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from aiortc import (
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

logger = logging.getLogger(__name__)


class PeerState(Enum):
    """Peer session negotiation states"""
    NEW = "new"
    LOCAL_DESC_SET = "local_desc_set"
    REMOTE_DESC_SET = "remote_desc_set"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


class PeerRole(Enum):
    """Which side of the asymmetric handshake a client plays"""
    SENDER = "sender"
    RECEIVER = "receiver"


class PeerSessionError(Exception):
    """Base exception for peer session errors"""
    pass


FAILED_CONNECTION_STATES = ("failed", "disconnected")


# ============================================================================
# Wire conversion helpers
# ============================================================================

def description_from_dict(data: Any) -> RTCSessionDescription:
    """
    Build a session description from its wire form.

    Raises:
        PeerSessionError: If the payload is not a valid description
    """
    if isinstance(data, RTCSessionDescription):
        return data
    if not isinstance(data, dict) or not data.get("sdp") or not data.get("type"):
        raise PeerSessionError(f"Malformed session description: {data!r}")

    try:
        return RTCSessionDescription(sdp=data["sdp"], type=data["type"])
    except ValueError as e:
        raise PeerSessionError(f"Malformed session description: {e}") from e


def description_to_dict(description: RTCSessionDescription) -> Dict[str, str]:
    """Convert a session description to its wire form"""
    return {"type": description.type, "sdp": description.sdp}


def candidate_from_dict(data: Any) -> Optional[RTCIceCandidate]:
    """
    Build an ICE candidate from its browser-compatible wire form.

    Returns:
        RTCIceCandidate, or None for the end-of-candidates marker

    Raises:
        PeerSessionError: If the payload cannot be parsed
    """
    if isinstance(data, RTCIceCandidate):
        return data
    if not isinstance(data, dict):
        raise PeerSessionError(f"Malformed ICE candidate: {data!r}")

    line = data.get("candidate") or ""
    if not line:
        return None
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]

    try:
        candidate = candidate_from_sdp(line)
    except (ValueError, IndexError, AssertionError) as e:
        raise PeerSessionError(f"Malformed ICE candidate: {e}") from e

    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate


def candidate_to_dict(candidate: RTCIceCandidate) -> Dict[str, Any]:
    """Convert an ICE candidate to its browser-compatible wire form"""
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def create_peer_connection(stun_servers=()) -> RTCPeerConnection:
    """Default peer connection factory"""
    ice_servers = [RTCIceServer(urls=[url]) for url in stun_servers]
    return RTCPeerConnection(configuration=RTCConfiguration(iceServers=ice_servers))


# ============================================================================
# Peer session
# ============================================================================

class PeerSession:
    """
    Negotiation state for one remote participant.

    Owns exactly one peer connection handle and releases it on close().
    Owned by the Session Manager that created it.
    """

    def __init__(
        self,
        participant_id: str,
        connection: Any,
        on_state_change: Optional[Callable] = None,
        on_ice_candidate: Optional[Callable] = None,
        on_track: Optional[Callable] = None
    ):
        """
        Initialize peer session.

        Args:
            participant_id: Remote participant id this session talks to
            connection: Peer connection handle (RTCPeerConnection surface)
            on_state_change: Callback(session, old_state, new_state)
            on_ice_candidate: Callback(session, candidate) for local candidates
            on_track: Callback(session, track) for inbound tracks
        """
        self.participant_id = participant_id
        self.connection = connection
        self.on_state_change = on_state_change
        self.on_ice_candidate = on_ice_candidate
        self.on_track = on_track

        self.state = PeerState.NEW
        self.created_at = datetime.now()
        self.early_candidates: List[RTCIceCandidate] = []
        self.remote_description_set = False
        self.applied_candidates = 0
        self.tracks: List[Any] = []
        self.monitor = None

        self._close_task: Optional[asyncio.Future] = None

        self.connection.on("connectionstatechange", self._handle_connection_state_change)
        self.connection.on("track", self._handle_track)
        # Only trickle-capable handles emit icecandidate; aiortc bundles its
        # candidates into the local description instead
        self.connection.on("icecandidate", self._handle_ice_candidate)

        logger.debug(f"Peer session created for {participant_id[:8]}...")

    # ========================================================================
    # Negotiation
    # ========================================================================

    def add_track(self, track: Any) -> None:
        """Attach an outgoing media track"""
        self._ensure_open()
        self.connection.addTrack(track)

    async def create_offer(self) -> RTCSessionDescription:
        self._ensure_open()
        return await self.connection.createOffer()

    async def create_answer(self) -> RTCSessionDescription:
        self._ensure_open()
        return await self.connection.createAnswer()

    async def set_local_description(self, description: Any) -> None:
        """
        Apply our own description.

        Raises:
            PeerSessionError: If the session is closed or the handle rejects it
        """
        self._ensure_open()
        description = description_from_dict(description)

        try:
            await self.connection.setLocalDescription(description)
        except Exception as e:
            raise PeerSessionError(f"Failed to set local description: {e}") from e

        if self.state == PeerState.NEW:
            self._set_state(PeerState.LOCAL_DESC_SET)

    async def set_remote_description(self, description: Any) -> None:
        """
        Apply the remote description and flush early candidates.

        Raises:
            PeerSessionError: If the session is closed or the handle rejects it
        """
        self._ensure_open()
        description = description_from_dict(description)

        try:
            await self.connection.setRemoteDescription(description)
        except Exception as e:
            raise PeerSessionError(f"Failed to set remote description: {e}") from e

        if self.state == PeerState.CLOSED:
            return

        self.remote_description_set = True
        if self.state in (PeerState.NEW, PeerState.LOCAL_DESC_SET):
            self._set_state(PeerState.REMOTE_DESC_SET)

        await self._flush_early_candidates()

        # Tracks announced while the description was being applied
        if self.tracks and self.state == PeerState.REMOTE_DESC_SET:
            self._set_state(PeerState.CONNECTED)

    async def add_ice_candidate(self, candidate: Any) -> None:
        """
        Apply a remote ICE candidate, or queue it until the remote description is set.

        Raises:
            PeerSessionError: If the candidate is malformed or rejected
        """
        if self.state == PeerState.CLOSED:
            logger.debug(f"Ignoring ICE candidate for closed session {self.participant_id[:8]}...")
            return

        candidate = candidate_from_dict(candidate)
        if candidate is None:
            logger.debug(f"End of candidates from {self.participant_id[:8]}...")
            return

        if not self.remote_description_set:
            self._queue(candidate)
            return

        await self._apply_candidate(candidate)

    def queue_candidate(self, candidate: Any) -> None:
        """
        Queue a remote candidate that arrived before this session existed.

        Raises:
            PeerSessionError: If the candidate is malformed
        """
        candidate = candidate_from_dict(candidate)
        if candidate is not None and self.state != PeerState.CLOSED:
            self._queue(candidate)

    def _queue(self, candidate: RTCIceCandidate) -> None:
        self.early_candidates.append(candidate)
        logger.debug(
            f"Buffered early ICE candidate for {self.participant_id[:8]}... "
            f"({len(self.early_candidates)} queued)"
        )

    async def _flush_early_candidates(self) -> None:
        pending, self.early_candidates = self.early_candidates, []
        if pending:
            logger.debug(f"Flushing {len(pending)} early ICE candidates for {self.participant_id[:8]}...")
        for candidate in pending:
            if self.state == PeerState.CLOSED:
                return
            await self._apply_candidate(candidate)

    async def _apply_candidate(self, candidate: RTCIceCandidate) -> None:
        try:
            await self.connection.addIceCandidate(candidate)
        except Exception as e:
            raise PeerSessionError(f"Failed to add ICE candidate: {e}") from e
        self.applied_candidates += 1

    @property
    def local_description(self) -> Optional[RTCSessionDescription]:
        return self.connection.localDescription

    # ========================================================================
    # Handle events
    # ========================================================================

    def _handle_connection_state_change(self) -> None:
        if self.state == PeerState.CLOSED:
            return

        connection_state = self.connection.connectionState
        logger.info(f"Connection state for {self.participant_id[:8]}...: {connection_state}")

        if connection_state in FAILED_CONNECTION_STATES:
            if self.state != PeerState.FAILED:
                self._set_state(PeerState.FAILED)
        elif connection_state == "connected":
            if self.state in (PeerState.LOCAL_DESC_SET, PeerState.REMOTE_DESC_SET):
                self._set_state(PeerState.CONNECTED)

    def _handle_track(self, track: Any) -> None:
        if self.state == PeerState.CLOSED:
            return

        logger.info(f"Received {track.kind} track from {self.participant_id[:8]}...")
        self.tracks.append(track)

        if self.on_track:
            try:
                self.on_track(self, track)
            except Exception as e:
                logger.error(f"Error in track callback: {e}")

        # aiortc announces tracks from inside setRemoteDescription; CONNECTED
        # waits until the remote description has been applied
        if self.remote_description_set and self.state not in (PeerState.FAILED, PeerState.CONNECTED):
            self._set_state(PeerState.CONNECTED)

    def _handle_ice_candidate(self, candidate: Optional[RTCIceCandidate]) -> None:
        if self.state == PeerState.CLOSED or candidate is None:
            return
        if self.on_ice_candidate:
            try:
                self.on_ice_candidate(self, candidate)
            except Exception as e:
                logger.error(f"Error in ICE candidate callback: {e}")

    # ========================================================================
    # State management
    # ========================================================================

    def _set_state(self, new_state: PeerState) -> None:
        """
        Set session state and trigger callback.

        Leaving CONNECTED stops the stats monitor.
        """
        old_state = self.state
        if old_state == new_state:
            return
        self.state = new_state

        logger.debug(f"Peer {self.participant_id[:8]}... state: {old_state.value} → {new_state.value}")

        if old_state == PeerState.CONNECTED and self.monitor:
            self.monitor.stop()

        if self.on_state_change:
            try:
                self.on_state_change(self, old_state, new_state)
            except Exception as e:
                logger.error(f"Error in state change callback: {e}")

    def _ensure_open(self) -> None:
        if self.state == PeerState.CLOSED:
            raise PeerSessionError(f"Peer session {self.participant_id[:8]}... is closed")

    def attach_monitor(self, monitor: Any) -> None:
        """Attach the stats monitor stopped when this session leaves CONNECTED"""
        self.monitor = monitor

    # ========================================================================
    # Resource management
    # ========================================================================

    def close(self) -> None:
        """
        Close the session.

        Synchronously enters CLOSED, stops the stats monitor and starts
        releasing the peer connection handle. Safe to call repeatedly.
        """
        if self.state == PeerState.CLOSED:
            return

        self._set_state(PeerState.CLOSED)
        self.early_candidates = []

        if self.monitor:
            self.monitor.stop()

        self._close_task = asyncio.ensure_future(self._release())
        logger.info(f"Peer session {self.participant_id[:8]}... closed")

    async def _release(self) -> None:
        try:
            await self.connection.close()
        except Exception as e:
            logger.warning(f"Error closing peer connection for {self.participant_id[:8]}...: {e}")

    async def wait_closed(self) -> None:
        """Wait until the peer connection handle has been released"""
        if self._close_task:
            await self._close_task

    def is_closed(self) -> bool:
        return self.state == PeerState.CLOSED

    def is_connected(self) -> bool:
        return self.state == PeerState.CONNECTED

    def get_stats(self) -> Dict[str, Any]:
        """
        Get session information.

        Returns:
            Dictionary with session info
        """
        media_stats = None
        if self.monitor and self.monitor.latest:
            media_stats = self.monitor.latest.to_dict()

        return {
            "participant_id": self.participant_id,
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
            "early_candidates": len(self.early_candidates),
            "applied_candidates": self.applied_candidates,
            "tracks": len(self.tracks),
            "media": media_stats,
        }
