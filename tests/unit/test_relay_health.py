"""Unit tests for the relay health endpoints."""

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from relay.health import setup_health_routes
from relay.server import SignalingRelay


class _Endpoint:
    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id

    def deliver(self, text: str) -> bool:
        return True


@pytest.fixture
def relay() -> SignalingRelay:
    return SignalingRelay(host="127.0.0.1", port=0)


def make_app(relay: SignalingRelay) -> web.Application:
    app = web.Application()
    setup_health_routes(app, relay)
    return app


@pytest.mark.asyncio
async def test_health_unhealthy_when_stopped(relay: SignalingRelay) -> None:
    """Test /health returns 503 before the relay is started."""
    async with TestClient(TestServer(make_app(relay))) as client:
        resp = await client.get("/health")
        assert resp.status == 503
        data = await resp.json()
        assert data["status"] == "unhealthy"


@pytest.mark.asyncio
async def test_health_reports_rooms_and_connections(relay: SignalingRelay) -> None:
    """Test /health returns 200 with room and connection counts while running."""
    await relay.start()
    try:
        await relay.registry.join("demo", "p1", _Endpoint("c1"))
        relay.stats.connections_opened = 3
        relay.stats.connections_closed = 1

        async with TestClient(TestServer(make_app(relay))) as client:
            resp = await client.get("/health")
            assert resp.status == 200
            data = await resp.json()
            assert data["status"] == "healthy"
            assert data["rooms"] == 1
            assert data["connections"] == 2
    finally:
        await relay.stop()


@pytest.mark.asyncio
async def test_liveness_always_ok(relay: SignalingRelay) -> None:
    async with TestClient(TestServer(make_app(relay))) as client:
        resp = await client.get("/liveness")
        assert resp.status == 200
        assert (await resp.json())["status"] == "alive"


@pytest.mark.asyncio
async def test_rooms_endpoint(relay: SignalingRelay) -> None:
    """Test /rooms returns member counts per room."""
    await relay.registry.join("a", "p1", _Endpoint("c1"))
    await relay.registry.join("a", "p2", _Endpoint("c2"))
    await relay.registry.join("b", "p3", _Endpoint("c3"))

    async with TestClient(TestServer(make_app(relay))) as client:
        resp = await client.get("/rooms")
        data = await resp.json()

    assert data == {"rooms": {"a": 2, "b": 1}, "total_members": 3}


@pytest.mark.asyncio
async def test_metrics_summary(relay: SignalingRelay) -> None:
    """Test /metrics/summary exposes routing counters."""
    relay.stats.routed = 7
    relay.stats.dropped_no_target = 2

    async with TestClient(TestServer(make_app(relay))) as client:
        resp = await client.get("/metrics/summary")
        data = await resp.json()

    metrics = data["metrics"]
    assert metrics["routed"] == 7
    assert metrics["dropped_total"] == 2
    assert "uptime_seconds" in metrics
