"""
WebSocket Signaling Server

Room-keyed relay for WebRTC signaling between clients. The server never
interprets descriptions or candidates; it only routes them:

- join-room(roomId)                     → user-connected(id) to the other members
- offer(desc, roomId, targetId?)        → offer(desc, id) to target, else to the room
- answer(desc, targetId)                → answer(desc, id) to target
- ice-candidate(candidate, targetId)    → ice-candidate(candidate, id) to target
- link closed                           → user-disconnected(id)

Delivery is best-effort: a target that is gone is silently skipped.
"""

import asyncio
import logging
import os
import ssl
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

import websockets

from ..core.transport import TransportError, decode_frame, encode_frame

logger = logging.getLogger(__name__)

DISCONNECT_SCOPES = ("global", "room")


class SignalingError(Exception):
    """Base exception for signaling errors"""
    pass


class Participant:
    """
    One connected link.

    Tracks the link's socket and the single room it currently belongs to.
    """

    def __init__(self, participant_id: str, websocket: Any):
        self.participant_id = participant_id
        self.websocket = websocket
        self.room_id: Optional[str] = None
        self.connected_at = datetime.now()
        self.messages_sent = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return {
            "participant_id": self.participant_id,
            "room_id": self.room_id,
            "connected_at": self.connected_at.isoformat(),
            "messages_sent": self.messages_sent,
        }


class SignalingServer:
    """
    WebSocket signaling relay.

    Every accepted link is greeted with welcome(participantId). Room
    membership is shared state; operations touching one room are serialised
    by that room's lock.

    Usage:
        server = SignalingServer(host="0.0.0.0", port=3000)
        await server.start()
        ...
        await server.stop()
    """

    def __init__(
        self,
        host: str,
        port: int,
        disconnect_scope: str = "global",
        ssl_cert_file: Optional[str] = None,
        ssl_key_file: Optional[str] = None,
        ping_interval: float = 20,
        ping_timeout: float = 10,
        max_size: int = 10 * 1024 * 1024
    ):
        """
        Initialize signaling server.

        Args:
            host: Server host (0.0.0.0 for all interfaces)
            port: Server port (0 picks an ephemeral port)
            disconnect_scope: "global" notifies every link of a departure, "room" only its room
            ssl_cert_file: Certificate for wss (optional)
            ssl_key_file: Private key for wss (optional)
            ping_interval: Keepalive ping interval in seconds
            ping_timeout: Keepalive ping timeout in seconds
            max_size: Maximum inbound frame size in bytes
        """
        if disconnect_scope not in DISCONNECT_SCOPES:
            raise SignalingError(f"Invalid disconnect scope: {disconnect_scope}")

        self.host = host
        self.port = port
        self.disconnect_scope = disconnect_scope
        self.ssl_cert_file = ssl_cert_file
        self.ssl_key_file = ssl_key_file
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self.max_size = max_size

        # Membership
        self.participants: Dict[str, Participant] = {}
        self.rooms: Dict[str, Set[str]] = {}
        self._room_locks: Dict[str, asyncio.Lock] = {}

        # WebSocket server
        self.server = None
        self.running = False

        # Statistics
        self.messages_relayed = 0
        self.routing_misses = 0
        self.total_connections = 0

        logger.info(f"Signaling server initialized on {host}:{port} (disconnect scope: {disconnect_scope})")

    async def start(self) -> None:
        """
        Start WebSocket signaling server.

        Raises:
            SignalingError: If server fails to start
        """
        try:
            ssl_context = self._create_ssl_context()
            protocol = "wss" if ssl_context else "ws"

            logger.info(f"Starting signaling server on {protocol}://{self.host}:{self.port}")

            self.server = await websockets.serve(
                self._handle_client,
                self.host,
                self.port,
                ssl=ssl_context,
                ping_interval=self.ping_interval,
                ping_timeout=self.ping_timeout,
                max_size=self.max_size
            )

            # Resolve an ephemeral port
            sockets = list(self.server.sockets or [])
            if sockets:
                self.port = sockets[0].getsockname()[1]

            self.running = True
            logger.info(f"✅ Signaling server running on {protocol}://{self.host}:{self.port}")

        except Exception as e:
            error_msg = f"Failed to start signaling server: {e}"
            logger.error(error_msg)
            raise SignalingError(error_msg) from e

    def _create_ssl_context(self) -> Optional[ssl.SSLContext]:
        cert, key = self.ssl_cert_file, self.ssl_key_file
        if cert and key and os.path.exists(cert) and os.path.exists(key):
            ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            ssl_context.load_cert_chain(cert, key)
            logger.info(f"🔒 Signaling server SSL enabled with certificate: {cert}")
            return ssl_context

        logger.info("⚠️  Signaling server running without SSL (WS only)")
        return None

    async def stop(self) -> None:
        """Stop signaling server and close every link"""
        logger.info("Stopping signaling server...")
        self.running = False

        if self.server:
            self.server.close()
            await self.server.wait_closed()
            self.server = None

        self.participants.clear()
        self.rooms.clear()
        self._room_locks.clear()

        logger.info("✅ Signaling server stopped")

    # ========================================================================
    # WebSocket connection handling
    # ========================================================================

    async def _handle_client(self, websocket) -> None:
        """
        Handle one WebSocket link for its whole lifetime.

        Args:
            websocket: WebSocket connection
        """
        participant = self.register(websocket)
        logger.info(f"New WebSocket connection from {websocket.remote_address} ({participant.participant_id[:8]}...)")

        try:
            await self._send(participant, "welcome", participant.participant_id)

            async for message in websocket:
                try:
                    event, args = decode_frame(message)
                except TransportError as e:
                    logger.warning(f"Invalid frame from {participant.participant_id[:8]}...: {e}")
                    await self._send_error(participant, str(e))
                    continue

                try:
                    await self.handle_event(participant.participant_id, event, args)
                except SignalingError as e:
                    logger.warning(f"Rejected {event} from {participant.participant_id[:8]}...: {e}")
                    await self._send_error(participant, str(e))

        except websockets.exceptions.ConnectionClosed:
            logger.info(f"WebSocket connection closed: {websocket.remote_address}")

        except Exception as e:
            logger.error(f"WebSocket error: {e}")

        finally:
            await self.disconnect(participant.participant_id)

    def register(self, websocket: Any) -> Participant:
        """Register a newly accepted link under a fresh participant id"""
        participant_id = str(uuid.uuid4())
        while participant_id in self.participants:
            participant_id = str(uuid.uuid4())

        participant = Participant(participant_id, websocket)
        self.participants[participant_id] = participant
        self.total_connections += 1
        return participant

    async def handle_event(self, participant_id: str, event: str, args: List[Any]) -> None:
        """
        Route one inbound event.

        Raises:
            SignalingError: If the event is unknown or its arguments are invalid
        """
        logger.debug(f"Received {event} from {participant_id[:8]}...")

        if event == "join-room":
            room_id = self._require_id(args, 0, "roomId")
            await self.join(participant_id, room_id)

        elif event == "offer":
            description = self._require(args, 0, "description")
            room_id = self._require_id(args, 1, "roomId")
            target_id = None
            if len(args) > 2 and args[2] is not None:
                target_id = self._require_id(args, 2, "targetId")
            await self.relay_offer(participant_id, description, room_id, target_id)

        elif event == "answer":
            description = self._require(args, 0, "description")
            target_id = self._require_id(args, 1, "targetId")
            await self.relay_answer(participant_id, description, target_id)

        elif event == "ice-candidate":
            candidate = self._require(args, 0, "candidate")
            target_id = self._require_id(args, 1, "targetId")
            await self.relay_candidate(participant_id, candidate, target_id)

        else:
            raise SignalingError(f"Unknown event: {event}")

    @staticmethod
    def _require(args: List[Any], index: int, name: str) -> Any:
        if len(args) <= index or args[index] is None:
            raise SignalingError(f"Missing required argument: {name}")
        return args[index]

    @classmethod
    def _require_id(cls, args: List[Any], index: int, name: str) -> str:
        value = cls._require(args, index, name)
        if not isinstance(value, str):
            raise SignalingError(f"{name} must be a string")
        return value

    # ========================================================================
    # Relay operations
    # ========================================================================

    async def join(self, participant_id: str, room_id: str) -> None:
        """
        Add a participant to a room and announce it to the other members.

        A participant belongs to at most one room; joining another room
        leaves the previous one first.
        """
        participant = self.participants.get(participant_id)
        if participant is None:
            return
        if not isinstance(room_id, str) or not room_id:
            raise SignalingError("roomId must be a non-empty string")

        previous_room = participant.room_id
        if previous_room is not None and previous_room != room_id:
            async with self._room_lock(previous_room):
                self._leave_room(participant_id, previous_room)

        async with self._room_lock(room_id):
            members = self.rooms.setdefault(room_id, set())
            members.add(participant_id)
            participant.room_id = room_id

            logger.info(f"Participant {participant_id[:8]}... joined room {room_id} ({len(members)} members)")

            for member_id in list(members):
                if member_id != participant_id:
                    await self._deliver(member_id, "user-connected", participant_id)

    async def relay_offer(
        self,
        participant_id: str,
        description: Any,
        room_id: str,
        target_id: Optional[str] = None
    ) -> None:
        """Deliver an offer to one target, or to every other room member"""
        if target_id:
            await self._deliver(target_id, "offer", description, participant_id)
            return

        async with self._room_lock(room_id):
            for member_id in list(self.rooms.get(room_id, ())):
                if member_id != participant_id:
                    await self._deliver(member_id, "offer", description, participant_id)

    async def relay_answer(self, participant_id: str, description: Any, target_id: str) -> None:
        """Deliver an answer to exactly one target"""
        await self._deliver(target_id, "answer", description, participant_id)

    async def relay_candidate(self, participant_id: str, candidate: Any, target_id: str) -> None:
        """Deliver an ICE candidate to exactly one target"""
        await self._deliver(target_id, "ice-candidate", candidate, participant_id)

    async def disconnect(self, participant_id: str) -> None:
        """Remove a departed link and notify the others"""
        participant = self.participants.pop(participant_id, None)
        if participant is None:
            return

        room_id = participant.room_id
        if room_id is None:
            if self.disconnect_scope == "global":
                await self._notify_departure(participant_id, list(self.participants))
        else:
            async with self._room_lock(room_id):
                self._leave_room(participant_id, room_id)
                if self.disconnect_scope == "global":
                    recipients = list(self.participants)
                else:
                    recipients = list(self.rooms.get(room_id, ()))
                await self._notify_departure(participant_id, recipients)

        logger.info(f"Participant {participant_id[:8]}... disconnected")

    async def _notify_departure(self, participant_id: str, recipients: List[str]) -> None:
        for member_id in recipients:
            await self._deliver(member_id, "user-disconnected", participant_id)

    # ========================================================================
    # Room membership
    # ========================================================================

    def _room_lock(self, room_id: str) -> asyncio.Lock:
        lock = self._room_locks.get(room_id)
        if lock is None:
            lock = self._room_locks[room_id] = asyncio.Lock()
        return lock

    def _leave_room(self, participant_id: str, room_id: str) -> None:
        members = self.rooms.get(room_id)
        if members is None:
            return

        members.discard(participant_id)
        participant = self.participants.get(participant_id)
        if participant is not None and participant.room_id == room_id:
            participant.room_id = None

        if not members:
            del self.rooms[room_id]
            logger.info(f"Room {room_id} is empty, removed")

    # ========================================================================
    # WebSocket utilities
    # ========================================================================

    async def _deliver(self, target_id: str, event: str, *args: Any) -> bool:
        """
        Send an event to one participant; unknown or closed targets are skipped.

        Returns:
            True if delivered
        """
        participant = self.participants.get(target_id)
        if participant is None:
            self.routing_misses += 1
            logger.debug(f"Dropping {event}: unknown target {str(target_id)[:8]}...")
            return False

        if not await self._send(participant, event, *args):
            self.routing_misses += 1
            return False

        self.messages_relayed += 1
        logger.debug(f"Relayed {event} to {target_id[:8]}...")
        return True

    async def _send(self, participant: Participant, event: str, *args: Any) -> bool:
        try:
            await participant.websocket.send(encode_frame(event, *args))
        except websockets.exceptions.ConnectionClosed:
            logger.debug(f"Dropping {event}: link {participant.participant_id[:8]}... already closed")
            return False

        participant.messages_sent += 1
        return True

    async def _send_error(self, participant: Participant, error_message: str) -> None:
        await self._send(participant, "error", error_message)

    # ========================================================================
    # Status and monitoring
    # ========================================================================

    def get_participant_count(self, room_id: Optional[str] = None) -> int:
        """
        Get number of connected participants.

        Args:
            room_id: Optional room ID to filter by

        Returns:
            Number of participants
        """
        if room_id:
            return len(self.rooms.get(room_id, ()))
        return len(self.participants)

    def get_room(self, room_id: str) -> Optional[Dict[str, Any]]:
        """Get one room's members, or None if the room does not exist"""
        members = self.rooms.get(room_id)
        if members is None:
            return None

        return {
            "room_id": room_id,
            "members": sorted(members),
            "member_count": len(members),
        }

    def get_rooms(self) -> List[Dict[str, Any]]:
        return [self.get_room(room_id) for room_id in sorted(self.rooms)]

    def get_stats(self) -> Dict[str, Any]:
        """
        Get server statistics.

        Returns:
            Dictionary with server stats
        """
        return {
            "running": self.running,
            "host": self.host,
            "port": self.port,
            "disconnect_scope": self.disconnect_scope,
            "participants": len(self.participants),
            "rooms": len(self.rooms),
            "total_connections": self.total_connections,
            "messages_relayed": self.messages_relayed,
            "routing_misses": self.routing_misses,
        }
