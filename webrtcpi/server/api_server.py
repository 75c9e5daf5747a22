"""
WebRTC Pi Status API

Read-only REST API for monitoring the signaling relay (and, in headless
mode, the local sender's sessions).

Built with aiohttp for async operation.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from aiohttp import web
import aiohttp_cors

from .signaling_server import SignalingServer

logger = logging.getLogger(__name__)


class APIServer:
    """
    REST API server for relay status.

    Endpoints:
        GET /health           - Health check
        GET /rooms            - List rooms and their members
        GET /rooms/{room_id}  - Get one room
        GET /sessions         - Local session manager snapshot (headless mode)

    Usage:
        api_server = APIServer(host="0.0.0.0", port=3001, signaling_server=server)
        await api_server.start()
    """

    def __init__(
        self,
        host: str,
        port: int,
        signaling_server: SignalingServer,
        session_manager: Optional[Any] = None
    ):
        """
        Initialize API server.

        Args:
            host: Server host
            port: Server port
            signaling_server: Signaling relay to report on
            session_manager: Optional local Session Manager to report on
        """
        self.host = host
        self.port = port
        self.signaling_server = signaling_server
        self.session_manager = session_manager

        # Web app
        self.app = web.Application()
        self.runner = None
        self.site = None

        # Setup routes
        self._setup_routes()

        logger.info(f"API server initialized on {host}:{port}")

    def _setup_routes(self) -> None:
        """Setup API routes"""
        self.app.router.add_get('/health', self.health_check)
        self.app.router.add_get('/rooms', self.list_rooms)
        self.app.router.add_get('/rooms/{room_id}', self.get_room)
        self.app.router.add_get('/sessions', self.get_sessions)

        # Setup CORS for browser access
        cors = aiohttp_cors.setup(self.app, defaults={
            "*": aiohttp_cors.ResourceOptions(
                allow_credentials=True,
                expose_headers="*",
                allow_headers="*",
                allow_methods="*"
            )
        })

        for route in list(self.app.router.routes()):
            cors.add(route)

    async def start(self) -> None:
        """Start API server"""
        try:
            logger.info(f"Starting API server on http://{self.host}:{self.port}")

            self.runner = web.AppRunner(self.app)
            await self.runner.setup()

            self.site = web.TCPSite(self.runner, self.host, self.port)
            await self.site.start()

            logger.info(f"✅ API server running on http://{self.host}:{self.port}")

        except Exception as e:
            logger.error(f"Failed to start API server: {e}")
            raise

    async def stop(self) -> None:
        """Stop API server"""
        logger.info("Stopping API server...")

        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()

        logger.info("✅ API server stopped")

    # ========================================================================
    # API endpoints
    # ========================================================================

    async def health_check(self, request: web.Request) -> web.Response:
        """
        Health check endpoint.

        Returns relay status and membership counts.
        """
        running = self.signaling_server.running

        health = {
            "status": "healthy" if running else "degraded",
            "timestamp": datetime.now().isoformat(),
            "signaling_running": running,
            "rooms": len(self.signaling_server.rooms),
            "participants": self.signaling_server.get_participant_count(),
        }

        return web.json_response(health)

    async def list_rooms(self, request: web.Request) -> web.Response:
        rooms = self.signaling_server.get_rooms()
        return web.json_response({
            "rooms": rooms,
            "count": len(rooms),
        })

    async def get_room(self, request: web.Request) -> web.Response:
        room_id = request.match_info['room_id']
        room = self.signaling_server.get_room(room_id)

        if room is None:
            return web.json_response(
                {"error": f"Room {room_id} not found"},
                status=404
            )

        return web.json_response(room)

    async def get_sessions(self, request: web.Request) -> web.Response:
        if self.session_manager is None:
            return web.json_response(
                {"error": "No local session manager"},
                status=404
            )

        return web.json_response(self.session_manager.get_stats())

    def get_stats(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "signaling": self.signaling_server.get_stats(),
        }
