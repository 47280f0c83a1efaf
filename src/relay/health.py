"""Health check endpoints for the signaling relay.

Provides HTTP endpoints for load balancers and orchestration tools
(e.g., Docker healthcheck, Kubernetes liveness probe), plus a room
overview and routing counters for debugging.
"""

import logging
import time
from typing import TYPE_CHECKING

from aiohttp import web

if TYPE_CHECKING:
    from relay.server import SignalingRelay

logger = logging.getLogger(__name__)


class RelayHealthHandler:
    """HTTP handlers exposing relay liveness and state."""

    def __init__(self, relay: "SignalingRelay") -> None:
        self.relay = relay
        self.start_time = time.time()

    async def health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint.

        Returns:
            200 OK: Relay is accepting connections
            503 Service Unavailable: Relay is stopped
        """
        healthy = self.relay.is_running
        return web.json_response(
            {
                "status": "healthy" if healthy else "unhealthy",
                "uptime_seconds": time.time() - self.start_time,
                "rooms": self.relay.registry.room_count,
                "connections": self.relay.stats.active_connections,
            },
            status=200 if healthy else 503,
        )

    async def liveness_check(self, request: web.Request) -> web.Response:
        """Liveness check endpoint; OK whenever the process is serving HTTP."""
        return web.json_response(
            {"status": "alive", "uptime_seconds": time.time() - self.start_time},
            status=200,
        )

    async def rooms(self, request: web.Request) -> web.Response:
        """Room overview: member counts per room."""
        snapshot = self.relay.registry.snapshot()
        return web.json_response(
            {
                "rooms": {room_id: len(members) for room_id, members in snapshot.items()},
                "total_members": sum(len(members) for members in snapshot.values()),
            }
        )

    async def metrics_summary(self, request: web.Request) -> web.Response:
        """Routing counters in JSON format."""
        return web.json_response({"status": "ok", "metrics": self.relay.stats.summary()})


def setup_health_routes(app: web.Application, relay: "SignalingRelay") -> None:
    """Set up health check routes on application.

    Args:
        app: aiohttp Application instance
        relay: Relay whose state is reported
    """
    handler = RelayHealthHandler(relay)

    app.router.add_get("/health", handler.health_check)
    app.router.add_get("/liveness", handler.liveness_check)
    app.router.add_get("/rooms", handler.rooms)
    app.router.add_get("/metrics/summary", handler.metrics_summary)

    logger.info("Health check endpoints configured: /health, /liveness, /rooms, /metrics/summary")
