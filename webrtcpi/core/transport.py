"""
Transport Link

Client side of the signaling event channel: named events with positional
payloads over one WebSocket, plus connect/disconnect lifecycle events and
automatic reconnection with backoff.

Frames:
    {"event": "<name>", "args": [...]}

The server greets every accepted link with a "welcome" frame carrying the
participant id it assigned; that frame is surfaced locally as "connect".
"""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Set

import websockets

logger = logging.getLogger(__name__)

WELCOME_EVENT = "welcome"
LIFECYCLE_EVENTS = ("connect", "disconnect", "connect_error")


class TransportError(Exception):
    """Base exception for transport link errors"""
    pass


def encode_frame(event: str, *args: Any) -> str:
    return json.dumps({"event": event, "args": list(args)})


def decode_frame(message: Any) -> tuple:
    """
    Decode one wire frame.

    Returns:
        Tuple of (event, args)

    Raises:
        TransportError: If the frame is malformed
    """
    try:
        data = json.loads(message)
    except (TypeError, ValueError) as e:
        raise TransportError(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise TransportError("Frame must be a JSON object")

    event = data.get("event")
    args = data.get("args", [])
    if not isinstance(event, str) or not event:
        raise TransportError("Frame missing event name")
    if not isinstance(args, list):
        raise TransportError("Frame args must be a list")

    return event, args


class TransportLink:
    """
    Reconnecting WebSocket event channel to the signaling server.

    Handlers registered with on() may be plain functions or coroutine
    functions. Each inbound event is dispatched in arrival order; coroutine
    handlers run as independent tasks so a slow handler never blocks the
    receive loop.

    Usage:
        link = TransportLink("ws://localhost:3000")
        link.on("connect", on_connect)
        link.on("offer", on_offer)
        link.start()
        ...
        await link.emit("join-room", "room-1")
        ...
        await link.stop()
    """

    def __init__(
        self,
        url: str,
        reconnection: bool = True,
        reconnection_delay: float = 1.0,
        reconnection_delay_max: float = 5.0,
        connect_timeout: float = 10.0,
        max_size: int = 10 * 1024 * 1024
    ):
        """
        Initialize transport link.

        Args:
            url: Signaling server URL (ws:// or wss://)
            reconnection: Reconnect automatically after failures
            reconnection_delay: First reconnect delay in seconds
            reconnection_delay_max: Upper bound for the doubling delay
            connect_timeout: Opening handshake timeout in seconds
            max_size: Maximum inbound frame size in bytes
        """
        self.url = url
        self.reconnection = reconnection
        self.reconnection_delay = reconnection_delay
        self.reconnection_delay_max = reconnection_delay_max
        self.connect_timeout = connect_timeout
        self.max_size = max_size

        # Connection state
        self.websocket = None
        self.connected = False
        self.participant_id: Optional[str] = None
        self.running = False

        # Event handling
        self.handlers: Dict[str, List[Callable]] = {}
        self._task: Optional[asyncio.Task] = None
        self._handler_tasks: Set[asyncio.Task] = set()

        # Statistics
        self.connect_count = 0
        self.connect_errors = 0

    def on(self, event: str, handler: Callable) -> None:
        """Register a handler for an inbound or lifecycle event"""
        self.handlers.setdefault(event, []).append(handler)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(self) -> None:
        """Start connecting in the background"""
        if self.running:
            return

        self.running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"Transport link starting for {self.url}")

    async def stop(self) -> None:
        """Close the link and stop reconnecting"""
        self.running = False

        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

        for task in list(self._handler_tasks):
            task.cancel()
        self._handler_tasks.clear()

        logger.info("Transport link stopped")

    async def _run(self) -> None:
        """Connect, receive until the link drops, back off, repeat"""
        delay = self.reconnection_delay

        while self.running:
            try:
                async with websockets.connect(
                    self.url,
                    open_timeout=self.connect_timeout,
                    max_size=self.max_size
                ) as websocket:
                    self.websocket = websocket
                    await self._receive_loop(websocket)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self.connected:
                    logger.warning(f"Transport link lost: {e}")
                else:
                    self.connect_errors += 1
                    logger.error(f"Connection error: {e}")
                    self._dispatch("connect_error", e)

            finally:
                self.websocket = None
                if self.connected:
                    self.connected = False
                    self.participant_id = None
                    delay = self.reconnection_delay
                    logger.info("Disconnected from signaling server")
                    self._dispatch("disconnect")

            if not self.running or not self.reconnection:
                break

            logger.info(f"Reconnecting in {delay:.1f}s...")
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.reconnection_delay_max)

    async def _receive_loop(self, websocket) -> None:
        async for message in websocket:
            try:
                event, args = decode_frame(message)
            except TransportError as e:
                logger.warning(f"Dropping malformed frame: {e}")
                continue

            if event == WELCOME_EVENT:
                self.participant_id = args[0] if args else None
                self.connected = True
                self.connect_count += 1
                logger.info(f"✅ Connected to signaling server with ID: {self.participant_id}")
                self._dispatch("connect")
                continue

            logger.debug(f"Received event: {event}")
            self._dispatch(event, *args)

    # ========================================================================
    # Events
    # ========================================================================

    def _dispatch(self, event: str, *args: Any) -> None:
        handlers = self.handlers.get(event)
        if not handlers:
            if event not in LIFECYCLE_EVENTS:
                logger.debug(f"No handler for event: {event}")
            return

        for handler in handlers:
            if asyncio.iscoroutinefunction(handler):
                task = asyncio.create_task(handler(*args))
                self._handler_tasks.add(task)
                task.add_done_callback(self._handler_done)
            else:
                try:
                    handler(*args)
                except Exception as e:
                    logger.error(f"Error in {event} handler: {e}")

    def _handler_done(self, task: asyncio.Task) -> None:
        self._handler_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Event handler failed: {error}", exc_info=error)

    async def emit(self, event: str, *args: Any) -> bool:
        """
        Send an event to the server.

        Returns:
            True if the frame was handed to the socket, False if dropped
        """
        websocket = self.websocket
        if not self.connected or websocket is None:
            logger.warning(f"Dropping {event}: transport link not connected")
            return False

        try:
            await websocket.send(encode_frame(event, *args))
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning(f"Dropping {event}: connection closed ({e})")
            return False

        logger.debug(f"Sent event: {event}")
        return True

    # ========================================================================
    # Status
    # ========================================================================

    def is_connected(self) -> bool:
        return self.connected

    def get_stats(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "connected": self.connected,
            "participant_id": self.participant_id,
            "connect_count": self.connect_count,
            "connect_errors": self.connect_errors,
        }
