"""
Session Manager

Client-side driver of the room-join and offer/answer protocol. Owns the
Transport Link, the map of remote participant id → Peer Session, and the
local media track reference.

Sender role:
    connect → join-room → acquire camera
    user-connected(id)     → fresh Peer Session, attach track, send offer
    answer(desc, id)       → set remote description
    ice-candidate(c, id)   → apply or buffer
    user-disconnected(id)  → close and discard the session

Receiver role:
    connect → join-room
    offer(desc, id)        → fresh Peer Session, set remote, send answer
    ice-candidate(c, id)   → apply or buffer

Failures never propagate out of a handler: negotiation errors abandon the
affected session, media and connection failures are retried on a fixed
delay.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from ..config.settings import RoomConfig
from .media import VideoRenderer
from .peer_session import (
    PeerRole,
    PeerSession,
    PeerSessionError,
    PeerState,
    candidate_to_dict,
    create_peer_connection,
    description_to_dict,
)
from .sdp_processor import SDPProcessor
from .stats_monitor import StatsMonitor

logger = logging.getLogger(__name__)


class SessionManagerError(Exception):
    """Base exception for session manager errors"""
    pass


class SessionManager:
    """
    Maintains one healthy Peer Session per remote participant.

    All handlers run on one asyncio event loop. The session map is only
    touched synchronously between awaits; after every await a negotiation
    step checks that its session is still the current one for that
    participant before acting on the result.
    """

    def __init__(
        self,
        role: PeerRole,
        link: Any,
        room_config: RoomConfig,
        media_source: Any = None,
        sdp_processor: Optional[SDPProcessor] = None,
        connection_factory: Optional[Callable] = None,
        renderer_factory: Callable = VideoRenderer,
        reconnect_delay: float = 2.0,
        stats_interval: float = 1.0,
        frame_window: float = 1.0,
        on_status: Optional[Callable] = None,
        on_stats: Optional[Callable] = None
    ):
        """
        Initialize session manager.

        Args:
            role: PeerRole.SENDER or PeerRole.RECEIVER
            link: Transport Link (on/start/emit/stop/is_connected)
            room_config: Room and video configuration
            media_source: Capture collaborator (acquire/release), sender only
            sdp_processor: SDP mutation policy (default SDPProcessor())
            connection_factory: Zero-argument peer connection factory
            renderer_factory: Zero-argument rendering surface factory, receiver only
            reconnect_delay: Fixed retry delay in seconds
            stats_interval: Stats polling interval in seconds
            frame_window: Frame rate window in seconds
            on_status: Optional callback(status) on status changes
            on_stats: Optional callback(participant_id, MediaStats) per poll
        """
        if role == PeerRole.SENDER and media_source is None:
            raise SessionManagerError("Sender role requires a media source")

        self.role = role
        self.link = link
        self.room_config = room_config
        self.room_id = room_config.room_id
        self.media_source = media_source
        self.sdp_processor = sdp_processor or SDPProcessor()
        self.connection_factory = connection_factory or create_peer_connection
        self.renderer_factory = renderer_factory
        self.reconnect_delay = reconnect_delay
        self.stats_interval = stats_interval
        self.frame_window = frame_window
        self.on_status = on_status
        self.on_stats = on_stats

        # Session state
        self.sessions: Dict[str, PeerSession] = {}
        self.known_participants: Set[str] = set()
        self.pending_candidates: Dict[str, List[Any]] = {}
        self.renderers: Dict[str, Any] = {}
        self.local_track = None
        self.status = "Idle"
        self.running = False

        # Scheduled work
        self._tasks: Set[asyncio.Task] = set()
        self._timers: Set[asyncio.TimerHandle] = set()
        self._acquire_task: Optional[asyncio.Task] = None
        self._rejoin_pending = False

        # Statistics
        self.offers_sent = 0
        self.answers_sent = 0
        self.sessions_abandoned = 0
        self.rejoin_count = 0

        self.link.on("connect", self._on_connect)
        self.link.on("disconnect", self._on_disconnect)
        self.link.on("connect_error", self._on_connect_error)
        self.link.on("user-connected", self._on_user_connected)
        self.link.on("user-disconnected", self._on_user_disconnected)
        self.link.on("offer", self._on_offer)
        self.link.on("answer", self._on_answer)
        self.link.on("ice-candidate", self._on_ice_candidate)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(self) -> None:
        """Connect the Transport Link; everything else is event driven"""
        if self.running:
            return

        self.running = True
        self._set_status("Connecting...")
        logger.info(f"Session manager starting ({self.role.value}, room: {self.room_id})")
        self.link.start()

    async def stop(self) -> None:
        """Cancel retries, close every session, release media and the link"""
        if not self.running:
            return

        self.running = False
        logger.info(f"Stopping session manager ({self.role.value})...")

        for timer in list(self._timers):
            timer.cancel()
        self._timers.clear()
        self._rejoin_pending = False

        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._acquire_task = None

        sessions = list(self.sessions.values())
        for session in sessions:
            session.close()
        self.sessions.clear()
        for session in sessions:
            await session.wait_closed()

        for renderer in self.renderers.values():
            renderer.stop()
        self.renderers.clear()
        self.pending_candidates.clear()

        if self.media_source is not None:
            self.media_source.release()
        self.local_track = None

        await self.link.stop()
        self._set_status("Stopped")
        logger.info("✅ Session manager stopped")

    # ========================================================================
    # Transport link events
    # ========================================================================

    async def _on_connect(self) -> None:
        self._set_status("Connected to signaling server")
        await self.link.emit("join-room", self.room_id)
        logger.info(f"✅ Joined room {self.room_id} as {self.role.value}")

        if self.role == PeerRole.SENDER and self.local_track is None:
            self._start_media_acquisition()

    def _on_disconnect(self) -> None:
        # Media is direct peer-to-peer; sessions survive a signaling drop
        self._set_status("Disconnected from signaling server, reconnecting...")

    def _on_connect_error(self, error: Exception) -> None:
        self._set_status(f"Failed to connect to server: {error}")

    # ========================================================================
    # Local media (sender)
    # ========================================================================

    def _start_media_acquisition(self) -> None:
        if self._acquire_task and not self._acquire_task.done():
            return
        self._acquire_task = self._spawn(self._acquire_media())

    async def _acquire_media(self) -> None:
        """Acquire the camera track, retrying on a fixed delay until it succeeds"""
        while self.running and self.local_track is None:
            try:
                track = await self.media_source.acquire()
            except Exception as e:
                logger.warning(f"⚠️ Media acquisition failed: {e}. Retrying in {self.reconnect_delay}s...")
                self._set_status(f"Camera unavailable, retrying: {e}")
                await asyncio.sleep(self.reconnect_delay)
                continue

            self.local_track = track
            logger.info("✅ Local media track acquired")

        if not self.running:
            return

        # Restart every known session so each carries the new track
        for participant_id in list(self.known_participants):
            self._spawn(self._start_session(participant_id))

    # ========================================================================
    # Signaling events
    # ========================================================================

    async def _on_user_connected(self, participant_id: str) -> None:
        if self.role != PeerRole.SENDER:
            return

        logger.info(f"Participant joined: {participant_id[:8]}...")
        self.known_participants.add(participant_id)

        if self.local_track is None:
            logger.info(f"No local track yet, deferring offer to {participant_id[:8]}...")
            return

        await self._start_session(participant_id)

    def _on_user_disconnected(self, participant_id: str) -> None:
        self.known_participants.discard(participant_id)
        self.pending_candidates.pop(participant_id, None)

        session = self.sessions.get(participant_id)
        if session is None:
            return

        session.close()
        del self.sessions[participant_id]
        logger.info(f"Participant left: {participant_id[:8]}... (session removed)")
        self._update_streaming_status()

    async def _start_session(self, participant_id: str) -> None:
        """Create a fresh sending session and offer it to one participant"""
        if self.local_track is None:
            return

        session = self._create_session(participant_id)
        try:
            session.add_track(self.local_track)
            offer = await session.create_offer()
            await session.set_local_description(self.sdp_processor.mutate(offer, self.role))
        except PeerSessionError as e:
            self._abandon(session, e)
            return

        if not self._is_current(session):
            logger.debug(f"Offer to {participant_id[:8]}... superseded")
            return

        description = self.sdp_processor.mutate(session.local_description, self.role)
        if await self.link.emit("offer", description_to_dict(description), self.room_id, participant_id):
            self.offers_sent += 1
            logger.info(f"Sent offer to {participant_id[:8]}...")

    async def _on_offer(self, description: Any, sender_id: str, *extra: Any) -> None:
        if self.role != PeerRole.RECEIVER:
            logger.debug(f"Ignoring offer from {sender_id[:8]}... (not a receiver)")
            return

        logger.info(f"Received offer from {sender_id[:8]}...")
        session = self._create_session(sender_id)
        try:
            await session.set_remote_description(description)
            answer = await session.create_answer()
            await session.set_local_description(self.sdp_processor.mutate(answer, self.role))
        except PeerSessionError as e:
            self._abandon(session, e)
            return

        if not self._is_current(session):
            logger.debug(f"Answer to {sender_id[:8]}... superseded")
            return

        description = self.sdp_processor.mutate(session.local_description, self.role)
        if await self.link.emit("answer", description_to_dict(description), sender_id):
            self.answers_sent += 1
            logger.info(f"Sent answer to {sender_id[:8]}...")

    async def _on_answer(self, description: Any, sender_id: str) -> None:
        session = self.sessions.get(sender_id)
        if session is None:
            logger.debug(f"Answer from {sender_id[:8]}... has no session")
            return

        logger.info(f"Received answer from {sender_id[:8]}...")
        try:
            await session.set_remote_description(description)
        except PeerSessionError as e:
            self._abandon(session, e)

    async def _on_ice_candidate(self, candidate: Any, sender_id: str) -> None:
        session = self.sessions.get(sender_id)
        if session is None:
            # Candidate overtook the offer that creates the session
            self.pending_candidates.setdefault(sender_id, []).append(candidate)
            logger.debug(f"Buffered ICE candidate from {sender_id[:8]}... (no session yet)")
            return

        try:
            await session.add_ice_candidate(candidate)
        except PeerSessionError as e:
            self._abandon(session, e)

    # ========================================================================
    # Peer session management
    # ========================================================================

    def _create_session(self, participant_id: str) -> PeerSession:
        """Replace any session for this participant with a fresh one"""
        stale = self.sessions.pop(participant_id, None)
        if stale is not None:
            logger.info(f"Replacing stale session for {participant_id[:8]}...")
            stale.close()

        session = PeerSession(
            participant_id,
            self.connection_factory(),
            on_state_change=self._on_session_state_change,
            on_ice_candidate=self._on_local_candidate,
            on_track=self._on_remote_track
        )
        self.sessions[participant_id] = session

        for candidate in self.pending_candidates.pop(participant_id, []):
            try:
                session.queue_candidate(candidate)
            except PeerSessionError as e:
                logger.warning(f"Dropping malformed buffered candidate: {e}")

        return session

    def _is_current(self, session: PeerSession) -> bool:
        return self.sessions.get(session.participant_id) is session and not session.is_closed()

    def _abandon(self, session: PeerSession, error: Exception) -> None:
        """Close a session after a negotiation error; a later offer re-establishes it"""
        if not self._is_current(session):
            logger.debug(f"Ignoring error on superseded session {session.participant_id[:8]}...: {error}")
            return

        logger.error(f"Negotiation with {session.participant_id[:8]}... failed: {error}")
        self.sessions_abandoned += 1
        session.close()
        del self.sessions[session.participant_id]

    def _on_local_candidate(self, session: PeerSession, candidate: Any) -> None:
        if not self._is_current(session):
            return
        self._spawn(self.link.emit("ice-candidate", candidate_to_dict(candidate), session.participant_id))

    def _on_remote_track(self, session: PeerSession, track: Any) -> None:
        if track.kind != "video" or not self._is_current(session):
            return

        renderer = self.renderers.pop(session.participant_id, None)
        if renderer is not None:
            renderer.stop()

        renderer = self.renderer_factory()
        renderer.attach(track)
        self.renderers[session.participant_id] = renderer

    def _on_session_state_change(self, session: PeerSession, old_state: PeerState, new_state: PeerState) -> None:
        participant_id = session.participant_id

        if new_state == PeerState.CLOSED:
            renderer = self.renderers.get(participant_id)
            if renderer is not None and self.sessions.get(participant_id) in (session, None):
                renderer.stop()
                del self.renderers[participant_id]
            return

        if not self._is_current(session):
            return

        if new_state == PeerState.CONNECTED:
            logger.info(f"✅ Peer {participant_id[:8]}... connected")
            monitor = StatsMonitor(
                session,
                renderer=self.renderers.get(participant_id),
                interval=self.stats_interval,
                frame_window=self.frame_window,
                on_stats=self._on_session_stats
            )
            session.attach_monitor(monitor)
            monitor.start()
            self._update_streaming_status()

        elif new_state == PeerState.FAILED:
            logger.warning(f"⚠️ Connection with {participant_id[:8]}... failed, rejoining in {self.reconnect_delay}s")
            self._set_status("Connection failed, attempting to reconnect...")
            self._schedule_rejoin()

    def _on_session_stats(self, session: PeerSession, stats: Any) -> None:
        if self.on_stats:
            self.on_stats(session.participant_id, stats)

    # ========================================================================
    # Retry scheduling
    # ========================================================================

    def _schedule_rejoin(self) -> None:
        if self._rejoin_pending or not self.running:
            return
        self._rejoin_pending = True
        self._schedule(self.reconnect_delay, self._rejoin_room)

    async def _rejoin_room(self) -> None:
        self._rejoin_pending = False
        if not self.running:
            return
        if not self.link.is_connected():
            logger.info("Transport link down; rejoin happens on reconnect")
            return

        self.rejoin_count += 1
        logger.info(f"Rejoining room {self.room_id}...")
        await self.link.emit("join-room", self.room_id)

    def _schedule(self, delay: float, coroutine_function: Callable) -> None:
        loop = asyncio.get_running_loop()
        timer = None

        def fire():
            self._timers.discard(timer)
            self._spawn(coroutine_function())

        timer = loop.call_later(delay, fire)
        self._timers.add(timer)

    def _spawn(self, coroutine) -> asyncio.Task:
        task = asyncio.create_task(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background task failed: {error}", exc_info=error)

    # ========================================================================
    # Status
    # ========================================================================

    def _set_status(self, status: str) -> None:
        if status == self.status:
            return
        self.status = status
        logger.info(f"Status: {status}")
        if self.on_status:
            try:
                self.on_status(status)
            except Exception as e:
                logger.error(f"Error in status callback: {e}")

    def _update_streaming_status(self) -> None:
        connected = sum(1 for session in self.sessions.values() if session.is_connected())
        if self.role == PeerRole.SENDER:
            self._set_status(f"Streaming to {connected} viewer(s)")
        elif connected:
            self._set_status("Receiving video stream")

    def get_session(self, participant_id: str) -> Optional[PeerSession]:
        return self.sessions.get(participant_id)

    def get_stats(self) -> Dict[str, Any]:
        """
        Get manager statistics.

        Returns:
            Dictionary snapshot of the manager and all of its sessions
        """
        return {
            "role": self.role.value,
            "room_id": self.room_id,
            "participant_id": getattr(self.link, "participant_id", None),
            "status": self.status,
            "has_local_track": self.local_track is not None,
            "offers_sent": self.offers_sent,
            "answers_sent": self.answers_sent,
            "sessions_abandoned": self.sessions_abandoned,
            "rejoin_count": self.rejoin_count,
            "sessions": {
                participant_id: session.get_stats()
                for participant_id, session in self.sessions.items()
            },
        }
