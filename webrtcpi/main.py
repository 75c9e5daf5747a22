#!/usr/bin/env python3
"""
WebRTC Pi Launcher

Starts the signaling relay, a sender or receiver client, or everything in
one process for a headless camera device.

Usage:
    python3 -m webrtcpi.main server
    python3 -m webrtcpi.main sender --server-url ws://pi.local:3000 --room lab
    python3 -m webrtcpi.main receiver
    python3 -m webrtcpi.main headless

Environment variables:
    PORT - Signaling server port
    API_PORT - Status API port
    SERVER_URL - Signaling server URL for clients
    ROOM_ID - Room to join
    OPTIMIZE_LATENCY - Apply OS network tuning (headless)
"""

import argparse
import asyncio
import logging
import signal
import sys

from webrtcpi.config import settings
from webrtcpi.core import (
    CameraSource,
    PeerRole,
    SDPProcessor,
    SessionManager,
    TransportLink,
    apply_low_latency_tuning,
    create_peer_connection,
)
from webrtcpi.server import APIServer, SignalingServer

logger = logging.getLogger(__name__)

COMMANDS = ("server", "sender", "receiver", "headless")


def setup_logging(level: str = None) -> None:
    """Configure console and file logging"""
    settings.LOG_DIR.mkdir(parents=True, exist_ok=True)
    log_file = settings.LOG_DIR / 'webrtcpi.log'

    logging.basicConfig(
        level=getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO),
        format=settings.LOG_FORMAT,
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_file)
        ]
    )


class WebRTCPiService:
    """
    Main service orchestrator.

    Manages lifecycle of:
    - Signaling server and status API (server, headless)
    - Session manager with its transport link (sender, receiver, headless)
    """

    def __init__(self, command: str, server_url: str = None, room_id: str = None):
        if command not in COMMANDS:
            raise ValueError(f"Unknown command: {command}")

        self.command = command
        self.server_url = server_url or settings.SERVER_URL
        self.room_config = settings.load_room_config(room_id)

        self.signaling_server: SignalingServer = None
        self.api_server: APIServer = None
        self.session_manager: SessionManager = None
        self.running = False

    async def start(self):
        """Start all services for the command"""
        try:
            logger.info("=" * 70)
            logger.info(f"Starting WebRTC Pi ({self.command})")
            logger.info("=" * 70)

            for error in settings.validate_config():
                logger.warning(f"⚠️ Configuration: {error}")

            if self.command == "headless" and self.room_config.optimize_latency:
                logger.info("Applying low-latency network tuning...")
                apply_low_latency_tuning()

            if self.command in ("server", "headless"):
                await self._start_server()

            if self.command in ("sender", "receiver", "headless"):
                role = PeerRole.RECEIVER if self.command == "receiver" else PeerRole.SENDER
                self._start_client(role)

            self.running = True

            logger.info("=" * 70)
            logger.info("🚀 WebRTC Pi Started")
            logger.info("=" * 70)
            if self.signaling_server:
                logger.info(f"Signaling Server: ws://{settings.HOST}:{self.signaling_server.port}")
                logger.info(f"Status API:       http://{settings.API_HOST}:{settings.API_PORT}")
            if self.session_manager:
                logger.info(f"Client:           {self.session_manager.role.value} → {self.server_url}")
                logger.info(f"Room:             {self.room_config.room_id} ({self.room_config.resolution} @ {self.room_config.frame_rate}fps)")
            logger.info("=" * 70)
            logger.info("Press Ctrl+C to stop")
            logger.info("=" * 70)

        except Exception as e:
            logger.error(f"Failed to start service: {e}", exc_info=True)
            self.running = True
            await self.stop()
            raise

    async def _start_server(self):
        logger.info("Creating signaling server...")
        self.signaling_server = SignalingServer(
            host=settings.HOST,
            port=settings.PORT,
            disconnect_scope=settings.DISCONNECT_BROADCAST_SCOPE,
            ssl_cert_file=settings.SIGNALING_SSL_CERT_FILE,
            ssl_key_file=settings.SIGNALING_SSL_KEY_FILE,
            ping_interval=settings.WS_PING_INTERVAL,
            ping_timeout=settings.WS_PING_TIMEOUT,
            max_size=settings.WS_MAX_SIZE
        )
        await self.signaling_server.start()

        logger.info("Creating API server...")
        self.api_server = APIServer(
            host=settings.API_HOST,
            port=settings.API_PORT,
            signaling_server=self.signaling_server
        )
        await self.api_server.start()

    def _start_client(self, role: PeerRole):
        server_url = self.server_url
        if self.command == "headless":
            server_url = f"ws://127.0.0.1:{self.signaling_server.port}"

        link = TransportLink(
            server_url,
            reconnection_delay=settings.LINK_RECONNECT_DELAY,
            reconnection_delay_max=settings.LINK_RECONNECT_DELAY_MAX,
            connect_timeout=settings.LINK_CONNECT_TIMEOUT,
            max_size=settings.WS_MAX_SIZE
        )

        media_source = None
        if role == PeerRole.SENDER:
            media_source = CameraSource(
                device=settings.VIDEO_DEVICE,
                video_format=settings.VIDEO_FORMAT,
                width=self.room_config.width,
                height=self.room_config.height,
                frame_rate=self.room_config.frame_rate
            )

        self.session_manager = SessionManager(
            role=role,
            link=link,
            room_config=self.room_config,
            media_source=media_source,
            sdp_processor=SDPProcessor(
                max_bitrate=settings.MAX_VIDEO_BITRATE,
                strip_feedback=settings.SDP_STRIP_FEEDBACK
            ),
            connection_factory=lambda: create_peer_connection(settings.STUN_SERVERS),
            reconnect_delay=settings.RECONNECT_DELAY,
            stats_interval=settings.STATS_INTERVAL,
            on_stats=self._log_stats
        )
        if self.api_server:
            self.api_server.session_manager = self.session_manager

        self.session_manager.start()

    def _log_stats(self, participant_id, stats):
        logger.info(
            f"📊 {participant_id[:8]}... {stats.resolution} "
            f"{stats.frame_rate}fps "
            f"{stats.bitrate_kbps if stats.bitrate_kbps is not None else '-'}kbps "
            f"{stats.latency_ms if stats.latency_ms is not None else '-'}ms"
        )

    async def stop(self):
        """Stop all services"""
        if not self.running:
            return

        logger.info("=" * 70)
        logger.info("Stopping WebRTC Pi")
        logger.info("=" * 70)

        self.running = False

        # Stop session manager
        if self.session_manager:
            try:
                logger.info("Stopping session manager...")
                await self.session_manager.stop()
            except Exception as e:
                logger.error(f"Error stopping session manager: {e}")

        # Stop API server
        if self.api_server:
            try:
                logger.info("Stopping API server...")
                await self.api_server.stop()
            except Exception as e:
                logger.error(f"Error stopping API server: {e}")

        # Stop signaling server
        if self.signaling_server:
            try:
                logger.info("Stopping signaling server...")
                await self.signaling_server.stop()
            except Exception as e:
                logger.error(f"Error stopping signaling server: {e}")

        logger.info("✅ Service stopped")

    async def run_forever(self):
        """Run until stopped"""
        try:
            while self.running:
                await asyncio.sleep(1)
        finally:
            await self.stop()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="webrtcpi",
        description="Low-latency WebRTC camera streaming: signaling relay and peer clients"
    )
    parser.add_argument("command", choices=COMMANDS, help="Component(s) to run")
    parser.add_argument("--server-url", default=None, help=f"Signaling server URL (default: {settings.SERVER_URL})")
    parser.add_argument("--room", default=None, help=f"Room to join (default: {settings.ROOM_ID})")
    parser.add_argument("--log-level", default=None, help=f"Log level (default: {settings.LOG_LEVEL})")
    return parser.parse_args(argv)


async def main(argv=None):
    """Main entry point"""
    args = parse_args(argv)
    setup_logging(args.log_level)

    service = WebRTCPiService(args.command, server_url=args.server_url, room_id=args.room)

    # Setup signal handlers
    loop = asyncio.get_running_loop()

    def signal_handler(sig):
        logger.info(f"Received signal {sig}")
        asyncio.create_task(service.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await service.start()
    except Exception as e:
        logger.error(f"Service error: {e}", exc_info=True)
        sys.exit(1)

    await service.run_forever()


def run():
    """Console script entry point"""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    run()
