"""Unit tests for transport interface compliance.

Tests the base peer transport abstraction and ensures implementations
conform to the interface contract.
"""

import asyncio
from typing import Any
from unittest.mock import MagicMock

import pytest

from orchestrator.transport.base import (
    TERMINAL_CONNECTION_STATES,
    TRANSPORT_EVENTS,
    PeerTransport,
    PeerTransportFactory,
)
from tests.helpers.fakes import FakeNetwork, FakePeerTransport, FakeTrack


class MinimalTransport(PeerTransport):
    """Transport implementing only the abstract methods."""

    def __init__(self, remote_peer_id: str = "p2") -> None:
        super().__init__(remote_peer_id)
        self.tracks: list[Any] = []
        self._local: Any = None

    async def add_track(self, track: Any) -> None:
        self.tracks.append(track)

    async def remove_track(self, track: Any) -> None:
        self.tracks.remove(track)

    async def create_offer(self) -> Any:
        return {"type": "offer", "sdp": ""}

    async def create_answer(self) -> Any:
        return {"type": "answer", "sdp": ""}

    async def set_local_description(self, description: Any) -> None:
        self._local = description

    async def set_remote_description(self, description: Any) -> None:
        pass

    async def add_ice_candidate(self, candidate: Any) -> None:
        pass

    async def close(self) -> None:
        pass

    @property
    def connection_state(self) -> str:
        return "new"

    @property
    def local_description(self) -> Any:
        return self._local


def test_transport_is_abstract() -> None:
    """PeerTransport cannot be instantiated directly."""
    with pytest.raises(TypeError):
        PeerTransport("p2")  # type: ignore[abstract]


def test_factory_is_abstract() -> None:
    with pytest.raises(TypeError):
        PeerTransportFactory()  # type: ignore[abstract]


def test_terminal_states() -> None:
    assert TERMINAL_CONNECTION_STATES == {"disconnected", "failed", "closed"}
    assert "connected" not in TERMINAL_CONNECTION_STATES


def test_handlers_receive_emitted_arguments() -> None:
    transport = MinimalTransport()
    handlers = {event: MagicMock() for event in TRANSPORT_EVENTS}
    for event, handler in handlers.items():
        transport.on(event, handler)

    transport.emit("local_candidate", {"candidate": "c"})
    transport.emit("connection_state_change", "connected")

    handlers["local_candidate"].assert_called_once_with({"candidate": "c"})
    handlers["connection_state_change"].assert_called_once_with("connected")
    handlers["remote_track"].assert_not_called()


def test_unknown_event_rejected() -> None:
    transport = MinimalTransport()

    with pytest.raises(ValueError, match="Unknown transport event"):
        transport.on("datachannel", MagicMock())


def test_failing_handler_does_not_stop_others() -> None:
    """One broken handler does not starve the remaining ones."""
    transport = MinimalTransport()
    later = MagicMock()
    transport.on("remote_track", MagicMock(side_effect=RuntimeError("boom")))
    transport.on("remote_track", later)

    transport.emit("remote_track", "track")

    later.assert_called_once_with("track")


@pytest.mark.asyncio
async def test_replace_track_unsupported_by_default() -> None:
    transport = MinimalTransport()

    with pytest.raises(NotImplementedError):
        await transport.replace_track(FakeTrack("video"), FakeTrack("video"))


class TestFakeTransportContract:
    """The test fake behaves like a real transport pair."""

    @pytest.mark.asyncio
    async def test_pair_connects_and_exchanges_tracks(self) -> None:
        network = FakeNetwork()
        a = FakePeerTransport("p1", "p2", network)
        b = FakePeerTransport("p2", "p1", network)
        states: list[str] = []
        a.on("connection_state_change", states.append)
        video = FakeTrack("video")
        await a.add_track(video)

        await a.set_local_description(await a.create_offer())
        await b.set_remote_description(a.local_description)
        await b.set_local_description(await b.create_answer())
        await a.set_remote_description(b.local_description)
        for _ in range(3):
            await asyncio.sleep(0)

        assert states == ["connected"]
        assert b.received_tracks == [video]

    @pytest.mark.asyncio
    async def test_close_reports_closed_once(self) -> None:
        transport = FakePeerTransport("p1", "p2")
        states: list[str] = []
        transport.on("connection_state_change", states.append)

        await transport.close()
        await transport.close()

        assert states == ["closed"]
