"""Unit tests for the relay message handling.

Drives ``SignalingRelay.handle_message`` with mocked websocket connections;
the end-to-end path over real sockets lives in the integration suite.
"""

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import websockets

from relay.config import RelayConfig
from relay.server import RelayConnection, SignalingRelay
from relay.stats import RelayStats


def make_connection(relay: SignalingRelay, queue_size: int = 256) -> tuple[RelayConnection, MagicMock]:
    websocket = MagicMock()
    websocket.send = AsyncMock()
    websocket.remote_address = ("127.0.0.1", 50000)
    connection = RelayConnection(websocket, relay.stats, queue_size)
    connection.start()
    return connection, websocket


def sent(websocket: MagicMock) -> list[dict[str, Any]]:
    return [json.loads(call.args[0]) for call in websocket.send.await_args_list]


async def settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture
def relay() -> SignalingRelay:
    return SignalingRelay(host="127.0.0.1", port=0)


class TestRelayConnection:
    """Tests for the per-connection writer."""

    @pytest.mark.asyncio
    async def test_deliver_preserves_order(self) -> None:
        """Frames are written in the order they were delivered."""
        websocket = MagicMock()
        websocket.send = AsyncMock()
        connection = RelayConnection(websocket, RelayStats())
        connection.start()

        for i in range(5):
            assert connection.deliver(f"frame-{i}") is True
        await settle()

        assert [call.args[0] for call in websocket.send.await_args_list] == [
            f"frame-{i}" for i in range(5)
        ]
        await connection.close()

    @pytest.mark.asyncio
    async def test_full_queue_drops_and_counts(self) -> None:
        """A stalled participant loses envelopes instead of blocking the relay."""
        stats = RelayStats()
        websocket = MagicMock()
        connection = RelayConnection(websocket, stats, queue_size=2)  # writer not started

        assert connection.deliver("a") is True
        assert connection.deliver("b") is True
        assert connection.deliver("c") is False
        assert stats.dropped_queue_full == 1

    @pytest.mark.asyncio
    async def test_deliver_after_close_is_rejected(self) -> None:
        connection = RelayConnection(MagicMock(), RelayStats())
        connection.start()
        await connection.close()

        assert connection.deliver("late") is False

    @pytest.mark.asyncio
    async def test_writer_stops_on_connection_closed(self) -> None:
        websocket = MagicMock()
        websocket.send = AsyncMock(side_effect=websockets.exceptions.ConnectionClosedOK(None, None))
        connection = RelayConnection(websocket, RelayStats())
        connection.start()

        connection.deliver("x")
        await settle()

        assert connection._writer_task is not None
        assert connection._writer_task.done()
        await connection.close()


class TestHandleMessage:
    """Tests for envelope dispatch."""

    @pytest.mark.asyncio
    async def test_join_replies_with_peers_and_announces(self, relay: SignalingRelay) -> None:
        c1, ws1 = make_connection(relay)
        c2, ws2 = make_connection(relay)

        await relay.handle_message(c1, json.dumps({"type": "join", "room": "demo", "id": "p1"}))
        await relay.handle_message(c2, json.dumps({"type": "join", "room": "demo", "id": "p2"}))
        await settle()

        assert sent(ws1) == [{"type": "peers", "peers": []}, {"type": "new-peer", "id": "p2"}]
        assert sent(ws2) == [{"type": "peers", "peers": ["p1"]}]
        assert relay.stats.joins == 2

    @pytest.mark.asyncio
    async def test_offer_forwarded_verbatim(self, relay: SignalingRelay) -> None:
        """Relayed envelopes reach the target byte for byte, extra fields included."""
        c1, _ = make_connection(relay)
        c2, ws2 = make_connection(relay)
        await relay.handle_message(c1, json.dumps({"type": "join", "room": "demo", "id": "p1"}))
        await relay.handle_message(c2, json.dumps({"type": "join", "room": "demo", "id": "p2"}))
        await settle()

        raw = '{"type":"offer","from":"p1","to":"p2","sdp":{"type":"offer","sdp":"v=0"},"x":1}'
        await relay.handle_message(c1, raw)
        await settle()

        assert ws2.send.await_args_list[-1].args[0] == raw
        assert relay.stats.routed == 1

    @pytest.mark.asyncio
    async def test_relay_to_non_member_is_dropped(self, relay: SignalingRelay) -> None:
        c1, ws1 = make_connection(relay)
        c3, ws3 = make_connection(relay)
        await relay.handle_message(c1, json.dumps({"type": "join", "room": "demo", "id": "p1"}))
        await relay.handle_message(c3, json.dumps({"type": "join", "room": "other", "id": "p3"}))
        await settle()
        ws3.send.reset_mock()

        await relay.handle_message(
            c1, json.dumps({"type": "ice", "from": "p1", "to": "p3", "candidate": {}})
        )
        await settle()

        ws3.send.assert_not_awaited()
        assert relay.stats.dropped_no_target == 1

    @pytest.mark.asyncio
    async def test_relay_before_join_is_dropped(self, relay: SignalingRelay) -> None:
        c1, _ = make_connection(relay)

        await relay.handle_message(c1, json.dumps({"type": "offer", "from": "p1", "to": "p2", "sdp": ""}))

        assert relay.stats.dropped_invalid == 1
        assert relay.stats.routed == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "raw,counter",
        [
            ("garbage", "dropped_unparseable"),
            ('{"no": "type"}', "dropped_unparseable"),
            ('{"type": "chat", "text": "hi"}', "dropped_unknown_type"),
            ('{"type": "join", "room": "demo"}', "dropped_invalid"),
        ],
    )
    async def test_malformed_envelopes_dropped_without_reply(
        self, relay: SignalingRelay, raw: str, counter: str
    ) -> None:
        c1, ws1 = make_connection(relay)

        await relay.handle_message(c1, raw)
        await settle()

        ws1.send.assert_not_awaited()
        assert getattr(relay.stats, counter) == 1

    @pytest.mark.asyncio
    async def test_explicit_leave_broadcasts_once(self, relay: SignalingRelay) -> None:
        """Leaving twice removes the membership once."""
        c1, _ = make_connection(relay)
        c2, ws2 = make_connection(relay)
        await relay.handle_message(c1, json.dumps({"type": "join", "room": "demo", "id": "p1"}))
        await relay.handle_message(c2, json.dumps({"type": "join", "room": "demo", "id": "p2"}))

        leave = json.dumps({"type": "leave", "id": "p1", "room": "demo"})
        await relay.handle_message(c1, leave)
        await relay.handle_message(c1, leave)
        await settle()

        assert [m for m in sent(ws2) if m["type"] == "leave"] == [{"type": "leave", "id": "p1"}]
        assert relay.stats.leaves == 1
        assert relay.registry.members("demo") == ["p2"]

    @pytest.mark.asyncio
    async def test_leave_uses_registered_identity(self, relay: SignalingRelay) -> None:
        """A leave naming another peer only removes the sender."""
        c1, _ = make_connection(relay)
        c2, _ = make_connection(relay)
        await relay.handle_message(c1, json.dumps({"type": "join", "room": "demo", "id": "p1"}))
        await relay.handle_message(c2, json.dumps({"type": "join", "room": "demo", "id": "p2"}))

        await relay.handle_message(c1, json.dumps({"type": "leave", "id": "p2"}))

        assert relay.registry.members("demo") == ["p2"]

    @pytest.mark.asyncio
    async def test_rejoin_other_room_leaves_previous(self, relay: SignalingRelay) -> None:
        c1, _ = make_connection(relay)
        await relay.handle_message(c1, json.dumps({"type": "join", "room": "a", "id": "p1"}))

        await relay.handle_message(c1, json.dumps({"type": "join", "room": "b", "id": "p1"}))

        assert relay.registry.snapshot() == {"b": ["p1"]}


class TestRelayLifecycle:
    """Tests for start/stop."""

    @pytest.mark.asyncio
    async def test_start_binds_ephemeral_port(self) -> None:
        relay = SignalingRelay(host="127.0.0.1", port=0)
        await relay.start()
        try:
            assert relay.is_running
            assert relay.port > 0
        finally:
            await relay.stop()
        assert not relay.is_running

    @pytest.mark.asyncio
    async def test_double_start_raises(self) -> None:
        relay = SignalingRelay(host="127.0.0.1", port=0)
        await relay.start()
        try:
            with pytest.raises(RuntimeError, match="already running"):
                await relay.start()
        finally:
            await relay.stop()

    @pytest.mark.asyncio
    async def test_stop_when_not_running_is_noop(self) -> None:
        await SignalingRelay().stop()

    def test_from_config(self) -> None:
        config = RelayConfig(host="127.0.0.1", port=4000, outbound_queue_size=8)
        relay = SignalingRelay.from_config(config)
        assert relay.port == 4000
        assert relay._outbound_queue_size == 8
