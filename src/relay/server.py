"""Signaling relay server.

Long-lived websocket service that:
1. Tracks room membership for every connected participant
2. Answers ``join`` with the current member list and announces newcomers
3. Forwards ``offer`` / ``answer`` / ``ice`` envelopes verbatim to the
   addressed member of the sender's room
4. Broadcasts ``leave`` on explicit leave or connection loss

The relay holds no negotiation state and never inspects ``sdp`` or
``candidate`` payloads.
"""

import argparse
import asyncio
import contextlib
import logging
import uuid
from pathlib import Path
from typing import Any

import websockets
from aiohttp.web import Application, AppRunner, TCPSite
from pydantic import ValidationError
from websockets.asyncio.server import ServerConnection

from relay.config import RelayConfig
from relay.health import setup_health_routes
from relay.protocol import RELAYED_TYPES, JoinMessage, parse_envelope
from relay.rooms import RoomRegistry
from relay.stats import RelayStats

logger = logging.getLogger(__name__)


class RelayConnection:
    """Relay-side handle to one participant websocket.

    Outbound envelopes go through a bounded queue drained by a dedicated
    writer task, giving per-connection FIFO delivery without letting one
    slow participant hold up routing for the others.
    """

    def __init__(
        self, websocket: ServerConnection, stats: RelayStats, queue_size: int = 256
    ) -> None:
        self.connection_id = f"conn-{uuid.uuid4().hex[:12]}"
        self.room_id: str | None = None
        self.peer_id: str | None = None
        self._websocket = websocket
        self._stats = stats
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)
        self._writer_task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def is_joined(self) -> bool:
        return self.room_id is not None and self.peer_id is not None

    def start(self) -> None:
        """Start the writer task."""
        self._writer_task = asyncio.create_task(self._writer_loop())

    def deliver(self, text: str) -> bool:
        """Enqueue a text frame for this participant without blocking.

        Returns:
            False if the connection is closed or its queue is full
        """
        if self._closed:
            return False

        try:
            self._queue.put_nowait(text)
        except asyncio.QueueFull:
            self._stats.dropped_queue_full += 1
            logger.warning(
                "Outbound queue full, dropping envelope",
                extra={"connection_id": self.connection_id, "peer_id": self.peer_id},
            )
            return False
        return True

    async def _writer_loop(self) -> None:
        while True:
            text = await self._queue.get()
            try:
                await self._websocket.send(text)
            except websockets.exceptions.ConnectionClosed:
                logger.debug(
                    "Writer stopped, connection closed",
                    extra={"connection_id": self.connection_id},
                )
                return

    async def close(self) -> None:
        """Stop the writer task and discard undelivered envelopes."""
        if self._closed:
            return

        self._closed = True
        if self._writer_task is not None:
            self._writer_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._writer_task
            self._writer_task = None


class SignalingRelay:
    """Websocket signaling relay.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = 3000,
        max_message_size: int = 2**20,
        outbound_queue_size: int = 256,
        registry: RoomRegistry | None = None,
    ) -> None:
        """Initialize the relay.

        Args:
            host: Bind host address
            port: Bind port (0 picks an ephemeral port)
            max_message_size: Largest accepted websocket frame in bytes
            outbound_queue_size: Per-connection outbound buffer size
            registry: Room registry (a fresh one by default)
        """
        self._host = host
        self._port = port
        self._max_message_size = max_message_size
        self._outbound_queue_size = outbound_queue_size
        self.registry = registry or RoomRegistry()
        self.stats = RelayStats()
        self._server: Any = None  # websockets Server
        self._running = False

        logger.info(
            "Signaling relay initialized",
            extra={"host": host, "port": port, "queue_size": outbound_queue_size},
        )

    @classmethod
    def from_config(cls, config: RelayConfig) -> "SignalingRelay":
        return cls(
            host=config.host,
            port=config.port,
            max_message_size=config.max_message_size,
            outbound_queue_size=config.outbound_queue_size,
        )

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def port(self) -> int:
        """Bound port (resolves an ephemeral port once started)."""
        if self._server is not None and self._server.sockets:
            port: int = self._server.sockets[0].getsockname()[1]
            return port
        return self._port

    async def start(self) -> None:
        """Bind the websocket server and begin accepting connections.

        Raises:
            RuntimeError: If the relay is already running or fails to start
            OSError: If port binding fails
        """
        if self._running:
            raise RuntimeError("Signaling relay is already running")

        logger.info("Starting signaling relay", extra={"host": self._host, "port": self._port})

        try:
            self._server = await websockets.serve(
                self._handle_connection,
                self._host,
                self._port,
                max_size=self._max_message_size,
            )
        except OSError as e:
            logger.error(
                "Failed to bind signaling relay",
                extra={"host": self._host, "port": self._port, "error": str(e)},
            )
            raise
        except Exception as e:
            raise RuntimeError(f"Failed to start signaling relay: {e}") from e

        self._running = True
        logger.info("Signaling relay started", extra={"host": self._host, "port": self.port})

    async def stop(self) -> None:
        """Close every connection and stop listening."""
        if not self._running:
            return

        logger.info("Stopping signaling relay")
        self._running = False

        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("Signaling relay stopped")

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        connection = RelayConnection(websocket, self.stats, self._outbound_queue_size)
        connection.start()
        self.stats.connections_opened += 1

        logger.info(
            "Participant connected",
            extra={"connection_id": connection.connection_id, "remote": websocket.remote_address},
        )

        try:
            async for raw_message in websocket:
                await self.handle_message(connection, raw_message)
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            await self._leave(connection, reason="disconnect")
            await connection.close()
            self.stats.connections_closed += 1
            logger.info(
                "Participant disconnected",
                extra={"connection_id": connection.connection_id},
            )

    async def handle_message(self, connection: RelayConnection, raw_message: str | bytes) -> None:
        """Process one inbound frame. Malformed frames are dropped without reply.

        Args:
            connection: Sender connection
            raw_message: Websocket text (or binary) frame
        """
        data = parse_envelope(raw_message)
        if data is None:
            self.stats.dropped_unparseable += 1
            logger.debug(
                "Dropping unparseable envelope",
                extra={"connection_id": connection.connection_id},
            )
            return

        message_type = data["type"]

        if message_type == "join":
            await self._join(connection, data)
        elif message_type in RELAYED_TYPES:
            text = raw_message.decode("utf-8") if isinstance(raw_message, bytes) else raw_message
            await self._relay(connection, data, text)
        elif message_type == "leave":
            await self._leave(connection, reason="explicit")
        else:
            self.stats.dropped_unknown_type += 1
            logger.debug(
                "Dropping envelope of unknown type",
                extra={"connection_id": connection.connection_id, "type": message_type},
            )

    async def _join(self, connection: RelayConnection, data: dict[str, Any]) -> None:
        try:
            join = JoinMessage.model_validate(data)
        except ValidationError:
            self.stats.dropped_invalid += 1
            logger.debug(
                "Dropping invalid join", extra={"connection_id": connection.connection_id}
            )
            return

        # A connection belongs to at most one room at a time
        if connection.is_joined and (connection.room_id, connection.peer_id) != (join.room, join.id):
            await self._leave(connection, reason="rejoin")

        connection.room_id = join.room
        connection.peer_id = join.id
        await self.registry.join(join.room, join.id, connection)
        self.stats.joins += 1

    async def _relay(self, connection: RelayConnection, data: dict[str, Any], text: str) -> None:
        target = data.get("to")
        if not connection.is_joined or not isinstance(target, str):
            self.stats.dropped_invalid += 1
            logger.debug(
                "Dropping relayed envelope without room or target",
                extra={"connection_id": connection.connection_id, "type": data["type"]},
            )
            return

        assert connection.room_id is not None
        if await self.registry.route(connection.room_id, target, text):
            self.stats.routed += 1
            logger.debug(
                "Envelope routed",
                extra={"room": connection.room_id, "type": data["type"], "to": target},
            )
        else:
            self.stats.dropped_no_target += 1
            logger.debug(
                "Dropping envelope for unknown target",
                extra={"room": connection.room_id, "type": data["type"], "to": target},
            )

    async def _leave(self, connection: RelayConnection, reason: str) -> None:
        if not connection.is_joined:
            return

        assert connection.room_id is not None and connection.peer_id is not None
        room_id, peer_id = connection.room_id, connection.peer_id
        connection.room_id = None
        connection.peer_id = None

        if await self.registry.leave(room_id, peer_id, connection):
            self.stats.leaves += 1
            logger.debug(
                "Membership removed",
                extra={"room": room_id, "peer_id": peer_id, "reason": reason},
            )


async def start_relay(config_path: Path | None = None, config: RelayConfig | None = None) -> None:
    """Run the signaling relay (and its health endpoints) until cancelled.

    Args:
        config_path: Path to YAML config file (defaults used if missing)
        config: Pre-built configuration, takes precedence over config_path
    """
    if config is None:
        config = RelayConfig.from_yaml_with_defaults(config_path)

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    relay = SignalingRelay.from_config(config)
    await relay.start()

    runner: AppRunner | None = None
    if config.health.enabled:
        health_app = Application()
        setup_health_routes(health_app, relay)
        runner = AppRunner(health_app)
        await runner.setup()
        site = TCPSite(runner, config.health.host, config.health.port)
        await site.start()
        logger.info("Health check server started", extra={"port": config.health.port})

    try:
        await asyncio.Future()  # Run forever
    except asyncio.CancelledError:
        logger.info("Relay loop cancelled")
    finally:
        await relay.stop()
        if runner is not None:
            await runner.cleanup()
            logger.info("Health check server stopped")


def main() -> None:
    """Entry point for the signaling relay."""
    parser = argparse.ArgumentParser(description="Mesh call signaling relay")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(__file__).parent.parent.parent / "configs" / "relay.yaml",
        help="Path to relay config YAML file",
    )
    parser.add_argument("--host", type=str, default=None, help="Override bind host")
    parser.add_argument("--port", type=int, default=None, help="Override bind port")
    args = parser.parse_args()

    config = RelayConfig.from_yaml_with_defaults(args.config)
    overrides: dict[str, Any] = {}
    if args.host is not None:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    if overrides:
        config = RelayConfig.model_validate({**config.model_dump(), **overrides})

    try:
        asyncio.run(start_relay(config=config))
    except KeyboardInterrupt:
        logger.info("Signaling relay interrupted")


if __name__ == "__main__":
    main()
