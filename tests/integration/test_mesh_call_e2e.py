"""End-to-end mesh call tests.

Orchestrators exchange real envelopes through a live relay; media
transports are in-memory fakes linked by a shared FakeNetwork, so
"connected" means both ends applied matching descriptions.
"""

import asyncio
from collections.abc import Callable

import pytest

from orchestrator.events import SignalingStateChanged
from orchestrator.media import SourceKind
from orchestrator.peer import PeerOrchestrator
from orchestrator.session import SessionRole, SessionState
from relay.server import SignalingRelay
from tests.helpers.fakes import wait_for

MakeOrchestrator = Callable[..., PeerOrchestrator]


async def join_in_order(relay: SignalingRelay, room: str, orchestrators: list[PeerOrchestrator]) -> None:
    """Join one after another, each registered before the next connects."""
    for orchestrator in orchestrators:
        await orchestrator.join(room)
        await wait_for(lambda: orchestrator.peer_id in relay.registry.members(room))


def all_connected(orchestrators: list[PeerOrchestrator]) -> bool:
    expected = len(orchestrators) - 1
    return all(
        len(o.sessions) == expected
        and all(s.state is SessionState.CONNECTED for s in o.sessions.values())
        for o in orchestrators
    )


def received_video(orchestrator: PeerOrchestrator, remote: PeerOrchestrator) -> list[object]:
    """Video tracks ``orchestrator`` currently receives from ``remote``."""
    transport = orchestrator.sessions[remote.peer_id].transport
    return [track for track in transport.received_tracks if track.kind == "video"]  # type: ignore[attr-defined]


@pytest.mark.asyncio
async def test_two_participants_connect_and_leave(
    make_orchestrator: MakeOrchestrator, relay: SignalingRelay
) -> None:
    """The existing member offers; the newcomer answers; both reach CONNECTED."""
    p1 = make_orchestrator("p1")
    p2 = make_orchestrator("p2")

    await join_in_order(relay, "demo", [p1, p2])
    await wait_for(lambda: all_connected([p1, p2]), timeout=5.0)

    assert p1.sessions["p2"].role is SessionRole.OFFERER
    assert p2.sessions["p1"].role is SessionRole.ANSWERER
    assert received_video(p2, p1) == [p1.media.camera.track]  # type: ignore[union-attr]
    assert received_video(p1, p2) == [p2.media.camera.track]  # type: ignore[union-attr]

    await p2.leave()
    await wait_for(lambda: "p2" not in p1.sessions)

    assert p1.sessions == {}
    assert p1.is_joined
    assert relay.registry.members("demo") == ["p1"]


@pytest.mark.asyncio
async def test_offerer_leave_closes_remote_session(
    make_orchestrator: MakeOrchestrator, relay: SignalingRelay
) -> None:
    """p1 offers, p2 answers; when p1 leaves, p2's session ends CLOSED."""
    p1 = make_orchestrator("p1")
    p2 = make_orchestrator("p2")
    await join_in_order(relay, "demo", [p1, p2])
    await wait_for(lambda: all_connected([p1, p2]), timeout=5.0)
    session = p2.sessions["p1"]
    assert session.role is SessionRole.ANSWERER

    await p1.leave()
    await wait_for(lambda: session.state is SessionState.CLOSED)

    assert session.close_reason == "peer-left"
    assert p2.sessions == {}
    assert "p1" not in p2.known_peers
    assert relay.registry.members("demo") == ["p2"]


@pytest.mark.asyncio
async def test_three_participants_one_session_per_pair(
    make_orchestrator: MakeOrchestrator, relay: SignalingRelay
) -> None:
    """Every pair negotiates exactly once, offered by the earlier member."""
    peers = [make_orchestrator(f"p{i}") for i in (1, 2, 3)]

    await join_in_order(relay, "demo", peers)
    await wait_for(lambda: all_connected(peers), timeout=5.0)

    p1, p2, p3 = peers
    assert p1.sessions["p2"].role is SessionRole.OFFERER
    assert p1.sessions["p3"].role is SessionRole.OFFERER
    assert p2.sessions["p3"].role is SessionRole.OFFERER
    assert p3.sessions["p1"].role is SessionRole.ANSWERER
    for orchestrator in peers:
        assert len(orchestrator._transport_factory.created) == 2  # type: ignore[attr-defined]


@pytest.mark.asyncio
async def test_screen_share_swaps_without_renegotiation(
    make_orchestrator: MakeOrchestrator, relay: SignalingRelay
) -> None:
    p1, p2, p3 = (make_orchestrator(f"p{i}") for i in (1, 2, 3))
    await join_in_order(relay, "demo", [p1, p2, p3])
    await wait_for(lambda: all_connected([p1, p2, p3]), timeout=5.0)
    session_ids_before = {o.peer_id: sorted(s.session_id for s in o.sessions.values()) for o in (p1, p2, p3)}

    screen = await p2.share_screen()

    assert received_video(p1, p2) == [screen.track]
    assert received_video(p3, p2) == [screen.track]
    assert all_connected([p1, p2, p3])
    # Same sessions, no new negotiation
    assert {
        o.peer_id: sorted(s.session_id for s in o.sessions.values()) for o in (p1, p2, p3)
    } == session_ids_before

    await p2.stop_sharing()

    camera = p2.media.camera
    assert camera is not None
    assert received_video(p1, p2) == [camera.track]
    assert screen.released


@pytest.mark.asyncio
async def test_rapid_double_swap(make_orchestrator: MakeOrchestrator, relay: SignalingRelay) -> None:
    """A swap issued while another is in flight wins on every session."""
    p1, p2, p3 = (make_orchestrator(f"p{i}") for i in (1, 2, 3))
    await join_in_order(relay, "demo", [p1, p2, p3])
    await wait_for(lambda: all_connected([p1, p2, p3]), timeout=5.0)
    camera = p1.media.camera
    assert camera is not None
    screen = await p1.media.acquire_source(SourceKind.SCREEN)

    await asyncio.gather(p1.replace_outgoing_video(screen), p1.replace_outgoing_video(camera))

    for remote in (p2, p3):
        assert p1.sessions[remote.peer_id].video_track is camera.track
        assert received_video(remote, p1) == [camera.track]
    assert not p1.is_sharing_screen
    assert screen.released


@pytest.mark.asyncio
async def test_late_joiner_receives_current_screen(
    make_orchestrator: MakeOrchestrator, relay: SignalingRelay
) -> None:
    p1, p2 = make_orchestrator("p1"), make_orchestrator("p2")
    await join_in_order(relay, "demo", [p1])
    screen = await p1.share_screen()

    await join_in_order(relay, "demo", [p2])
    await wait_for(lambda: all_connected([p1, p2]), timeout=5.0)

    assert received_video(p2, p1) == [screen.track]


@pytest.mark.asyncio
async def test_relay_shutdown_keeps_media_sessions(
    make_orchestrator: MakeOrchestrator, relay: SignalingRelay
) -> None:
    """Losing the relay does not tear down established sessions."""
    p1, p2 = make_orchestrator("p1"), make_orchestrator("p2")
    events = p1.subscribe()
    await join_in_order(relay, "demo", [p1, p2])
    await wait_for(lambda: all_connected([p1, p2]), timeout=5.0)

    await relay.stop()
    await wait_for(lambda: not p1._signaling.is_connected, timeout=5.0)  # type: ignore[attr-defined]

    assert p1.sessions["p2"].state is SessionState.CONNECTED
    assert any(isinstance(event, SignalingStateChanged) for event in events.drain())
    events.close()
