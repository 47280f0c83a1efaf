"""Integration test fixtures and utilities.

Provides shared fixtures for:
- Signaling relay lifecycle on an ephemeral port
- Raw websocket participants speaking the envelope protocol
- Orchestrators wired to the live relay with in-memory transports
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import pytest_asyncio
import websockets
from websockets.asyncio.client import ClientConnection

from orchestrator.config import PeerConfig
from orchestrator.peer import PeerOrchestrator
from orchestrator.signaling import WebSocketSignalingChannel
from relay.server import SignalingRelay
from tests.helpers.fakes import FakeMediaProvider, FakeNetwork, FakeTransportFactory

logger = logging.getLogger(__name__)


# ============================================================================
# Relay Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def relay() -> AsyncIterator[SignalingRelay]:
    """Running relay bound to an ephemeral localhost port."""
    server = SignalingRelay(host="127.0.0.1", port=0)
    await server.start()
    logger.info(f"Relay listening on port {server.port}")
    try:
        yield server
    finally:
        await server.stop()


@pytest_asyncio.fixture
async def relay_url(relay: SignalingRelay) -> str:
    return f"ws://127.0.0.1:{relay.port}"


@pytest_asyncio.fixture
async def ws_connect(relay_url: str) -> AsyncIterator[Callable[[], Awaitable[ClientConnection]]]:
    """Factory opening raw websocket connections to the relay; all closed on teardown."""
    connections: list[ClientConnection] = []

    async def connect() -> ClientConnection:
        connection = await websockets.connect(relay_url)
        connections.append(connection)
        return connection

    yield connect

    for connection in connections:
        await connection.close()


@pytest_asyncio.fixture
async def make_orchestrator(
    relay_url: str,
) -> AsyncIterator[Callable[..., PeerOrchestrator]]:
    """Factory building orchestrators that share one FakeNetwork.

    Every orchestrator talks to the live relay over a real websocket; only
    the media path is simulated. All orchestrators leave on teardown.
    """
    network = FakeNetwork()
    created: list[PeerOrchestrator] = []

    def make(peer_id: str, **config: Any) -> PeerOrchestrator:
        peer_config = PeerConfig(signaling_url=relay_url, peer_id=peer_id, **config)
        orchestrator = PeerOrchestrator(
            peer_config,
            FakeMediaProvider(),
            FakeTransportFactory(peer_id, network),
            signaling=WebSocketSignalingChannel(relay_url),
        )
        created.append(orchestrator)
        return orchestrator

    yield make

    await asyncio.gather(*(orchestrator.leave() for orchestrator in created), return_exceptions=True)


# ============================================================================
# Protocol Helpers
# ============================================================================


async def send_envelope(connection: ClientConnection, **fields: Any) -> None:
    await connection.send(json.dumps(fields))


async def receive_envelope(connection: ClientConnection, timeout_s: float = 2.0) -> dict[str, Any]:
    """Receive and decode the next envelope.

    Raises:
        asyncio.TimeoutError: If nothing arrives within ``timeout_s``
    """
    raw = await asyncio.wait_for(connection.recv(), timeout=timeout_s)
    data: dict[str, Any] = json.loads(raw)
    return data


async def expect_silence(connection: ClientConnection, timeout_s: float = 0.2) -> None:
    """Assert that nothing arrives within ``timeout_s``."""
    try:
        raw = await asyncio.wait_for(connection.recv(), timeout=timeout_s)
    except asyncio.TimeoutError:
        return
    raise AssertionError(f"Unexpected envelope: {raw}")


async def join_room(connection: ClientConnection, room: str, peer_id: str) -> list[str]:
    """Join ``room`` and return the member list the relay replied with."""
    await send_envelope(connection, type="join", room=room, id=peer_id)
    reply = await receive_envelope(connection)
    assert reply["type"] == "peers", reply
    peers: list[str] = reply["peers"]
    return peers
