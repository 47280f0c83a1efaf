"""Peer orchestrator.

Runs once per participant. Owns the signaling connection, the local media
sources and one ``NegotiationSession`` per remote peer in the room:

1. ``join`` acquires camera/microphone, connects to the relay, sends ``join``
2. Relay envelopes create, drive and close sessions
3. Session events are turned into ``offer`` / ``answer`` / ``ice`` envelopes
4. Outgoing video swaps (camera ↔ screen) are applied to every session
5. ``leave`` tears everything down
"""

import asyncio
import contextlib
import logging
import random
import string
from functools import partial
from typing import Any

from pydantic import ValidationError

from orchestrator.config import PeerConfig
from orchestrator.errors import SignalingUnavailableError
from orchestrator.events import (
    CandidatesPending,
    EventBus,
    LocalDescriptionReady,
    MeshEvent,
    SessionClosed,
    SignalingStateChanged,
    Subscription,
)
from orchestrator.media import LocalMedia, MediaProvider, MediaSource, SourceKind
from orchestrator.session import NegotiationSession, SessionRole, SessionState
from orchestrator.signaling import SignalingChannel, WebSocketSignalingChannel
from orchestrator.transport.base import PeerTransportFactory
from relay.protocol import (
    AnswerMessage,
    IceMessage,
    JoinMessage,
    LeaveMessage,
    NewPeerMessage,
    OfferMessage,
    PeersMessage,
)

logger = logging.getLogger(__name__)

PEER_ID_ALPHABET = string.ascii_lowercase + string.digits
PEER_ID_LENGTH = 6


def make_peer_id() -> str:
    """Random 6 character peer id from ``[a-z0-9]``."""
    return "".join(random.choices(PEER_ID_ALPHABET, k=PEER_ID_LENGTH))


class PeerOrchestrator:
    """Mesh call participant.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(
        self,
        config: PeerConfig,
        media_provider: MediaProvider,
        transport_factory: PeerTransportFactory,
        signaling: SignalingChannel | None = None,
        bus: EventBus | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Peer configuration
            media_provider: Device capture facility
            transport_factory: Creates one peer transport per remote peer
            signaling: Relay channel (websocket to ``config.signaling_url`` by default)
            bus: Event bus (a fresh one by default)
        """
        self.config = config
        self.peer_id = config.peer_id or make_peer_id()
        self.room_id: str | None = None
        self.bus = bus or EventBus()
        self.media = LocalMedia(media_provider, audio_enabled=config.media.audio_enabled)
        self.known_peers: set[str] = set()

        self._transport_factory = transport_factory
        self._signaling = signaling or WebSocketSignalingChannel(
            config.signaling_url, max_size=config.max_message_size
        )
        self._sessions: dict[str, NegotiationSession] = {}
        self._joined = False
        self._accepting = False
        self._inbound_task: asyncio.Task[None] | None = None
        self._event_task: asyncio.Task[None] | None = None
        self._events: Subscription | None = None
        self._background: set[asyncio.Task[Any]] = set()

        logger.info("Peer orchestrator initialized", extra={"peer_id": self.peer_id})

    @property
    def is_joined(self) -> bool:
        return self._joined

    @property
    def sessions(self) -> dict[str, NegotiationSession]:
        """Live sessions keyed by remote peer id."""
        return {peer_id: s for peer_id, s in self._sessions.items() if not s.is_closed}

    @property
    def is_sharing_screen(self) -> bool:
        current = self.media.current_video
        return current is not None and current.kind is SourceKind.SCREEN

    def subscribe(self) -> Subscription:
        """Subscribe to session and signaling events."""
        return self.bus.subscribe()

    async def join(self, room_id: str | None = None) -> None:
        """Join a room.

        Args:
            room_id: Room to join (``config.room`` if omitted)

        Raises:
            ValueError: If no room is given or configured
            RuntimeError: If already joined
            MediaAcquisitionError: If camera or microphone is unavailable
            SignalingUnavailableError: If the relay cannot be reached
        """
        room_id = room_id or self.config.room
        if not room_id:
            raise ValueError("No room given and none configured")
        if self._joined:
            raise RuntimeError(f"Already joined room {self.room_id}")

        # No signaling traffic before local media is available
        await self.media.acquire()

        try:
            await self._signaling.connect()
        except SignalingUnavailableError:
            await self.media.release_all()
            raise

        self.room_id = room_id
        self._joined = True
        self._accepting = True
        self._events = self.bus.subscribe()
        self._event_task = asyncio.create_task(self._event_loop(self._events))

        try:
            await self._signaling.send(JoinMessage(room=room_id, id=self.peer_id))
        except SignalingUnavailableError:
            await self.leave()
            raise

        self._inbound_task = asyncio.create_task(self._inbound_loop())
        logger.info("Joined room", extra={"room": room_id, "peer_id": self.peer_id})

    async def leave(self) -> None:
        """Leave the room, closing every session. Idempotent."""
        if not self._joined:
            return

        logger.info("Leaving room", extra={"room": self.room_id, "peer_id": self.peer_id})
        self._joined = False
        self._accepting = False

        await _cancel(self._inbound_task)
        self._inbound_task = None
        await _cancel(self._event_task)
        self._event_task = None

        sessions = list(self._sessions.values())
        self._sessions.clear()
        self.known_peers.clear()
        for session in sessions:
            session.mark_closed("local-leave")

        for task in list(self._background):
            await _cancel(task)

        await self.media.release_all()

        try:
            await self._signaling.send(LeaveMessage(id=self.peer_id, room=self.room_id))
        except SignalingUnavailableError as e:
            logger.warning("Could not announce leave", extra={"error": str(e)})
        await self._signaling.close()

        if self._events is not None:
            self._events.close()
            self._events = None

        await asyncio.gather(*(session.close() for session in sessions), return_exceptions=True)
        logger.info("Left room", extra={"room": self.room_id, "peer_id": self.peer_id})
        self.room_id = None

    async def handle_envelope(self, data: dict[str, Any]) -> None:
        """Dispatch one decoded relay envelope.

        Args:
            data: Envelope dict as produced by ``relay.protocol.parse_envelope``
        """
        if not self._accepting:
            return

        message_type = data.get("type")
        try:
            if message_type == "peers":
                self._on_peers(PeersMessage.model_validate(data))
            elif message_type == "new-peer":
                self._on_new_peer(NewPeerMessage.model_validate(data))
            elif message_type == "offer":
                self._on_offer(OfferMessage.model_validate(data))
            elif message_type == "answer":
                self._on_answer(AnswerMessage.model_validate(data))
            elif message_type == "ice":
                self._on_ice(IceMessage.model_validate(data))
            elif message_type == "leave":
                self._on_leave(LeaveMessage.model_validate(data))
            else:
                logger.debug("Ignoring envelope of unknown type", extra={"type": message_type})
        except ValidationError as e:
            logger.warning(
                "Dropping invalid envelope",
                extra={"type": message_type, "errors": e.error_count()},
            )

    async def replace_outgoing_video(self, source: MediaSource) -> bool:
        """Make ``source`` the outgoing video of every session.

        A newer call supersedes one still in flight: the older call's
        remaining per-session swaps become no-ops.

        Returns:
            True if every session now sends ``source``
        """
        generation = self.media.begin_swap(source)
        sessions = list(self.sessions.values())

        futures = [
            session.submit(
                partial(session.replace_video_track, source.track, generation, self.media.is_current)
            )
            for session in sessions
        ]
        results = await asyncio.gather(*futures, return_exceptions=True)

        await self._release_unused_sources()

        swapped = all(result is True for result in results)
        logger.info(
            "Outgoing video swap settled",
            extra={
                "generation": generation,
                "kind": source.kind.value,
                "sessions": len(sessions),
                "swapped": swapped,
                "current": self.media.is_current(generation),
            },
        )
        return swapped

    async def share_screen(self) -> MediaSource:
        """Start sending the screen instead of the camera.

        Raises:
            RuntimeError: If not joined
            MediaAcquisitionError: If screen capture is unavailable
        """
        if not self._joined:
            raise RuntimeError("Not joined to a room")

        screen = await self.media.acquire_source(SourceKind.SCREEN)
        screen.on_ended(self._on_screen_ended)
        await self.replace_outgoing_video(screen)
        return screen

    async def stop_sharing(self) -> bool:
        """Go back to the camera. Returns False if no screen was shared."""
        if not self.is_sharing_screen or self.media.camera is None:
            return False

        await self.replace_outgoing_video(self.media.camera)
        return True

    def toggle_audio(self) -> bool:
        """Flip microphone mute. Returns True if audio is now enabled."""
        microphone = self.media.microphone
        if microphone is None:
            return False
        microphone.set_enabled(not microphone.enabled)
        logger.info("Microphone toggled", extra={"enabled": microphone.enabled})
        return microphone.enabled

    def toggle_video(self) -> bool:
        """Flip camera mute. Returns True if the camera is now enabled."""
        camera = self.media.camera
        if camera is None:
            return False
        camera.set_enabled(not camera.enabled)
        logger.info("Camera toggled", extra={"enabled": camera.enabled})
        return camera.enabled

    async def flush_pending_candidates(self) -> int:
        """Send every queued local candidate of every live session.

        Returns:
            Number of candidates delivered

        Raises:
            SignalingUnavailableError: If the relay connection is down; undelivered
                candidates stay queued
        """
        delivered = 0
        for session in list(self.sessions.values()):
            delivered += await self._send_candidates(session)
        return delivered

    # Relay envelopes

    def _on_peers(self, message: PeersMessage) -> None:
        others = [peer_id for peer_id in message.peers if peer_id != self.peer_id]
        self.known_peers.update(others)
        # Existing members receive new-peer for us and will send the offers
        logger.info("Room members received", extra={"room": self.room_id, "peers": others})

    def _on_new_peer(self, message: NewPeerMessage) -> None:
        peer_id = message.id
        if peer_id == self.peer_id:
            return

        self.known_peers.add(peer_id)
        if self._live_session(peer_id) is not None:
            logger.info("Already negotiating with announced peer", extra={"remote_peer_id": peer_id})
            return

        session = self._create_session(peer_id, SessionRole.OFFERER)
        audio_track, video_track = self.media.local_tracks()
        session.submit(partial(session.offer, audio_track, video_track))

    def _on_offer(self, message: OfferMessage) -> None:
        if message.to != self.peer_id:
            logger.debug("Ignoring offer addressed elsewhere", extra={"to": message.to})
            return

        remote_peer_id = message.from_
        existing = self._live_session(remote_peer_id)
        if existing is not None:
            if not self._offer_wins_glare(existing, remote_peer_id):
                logger.info(
                    "Ignoring duplicate offer",
                    extra={"remote_peer_id": remote_peer_id, "session_id": existing.session_id},
                )
                return
            logger.info(
                "Offer collision resolved in favour of remote peer",
                extra={"remote_peer_id": remote_peer_id, "session_id": existing.session_id},
            )
            existing.mark_closed("glare")

        self.known_peers.add(remote_peer_id)
        session = self._create_session(remote_peer_id, SessionRole.ANSWERER)
        audio_track, video_track = self.media.local_tracks()
        session.submit(partial(session.answer, audio_track, video_track, message.sdp))

    def _on_answer(self, message: AnswerMessage) -> None:
        session = self._live_session(message.from_)
        if session is None:
            logger.warning("Answer from unknown peer", extra={"remote_peer_id": message.from_})
            return
        session.submit(partial(session.apply_answer, message.sdp))

    def _on_ice(self, message: IceMessage) -> None:
        session = self._live_session(message.from_)
        if session is None:
            logger.debug("Candidate from unknown peer", extra={"remote_peer_id": message.from_})
            return
        session.submit(partial(session.add_remote_candidate, message.candidate))

    def _on_leave(self, message: LeaveMessage) -> None:
        peer_id = message.id
        self.known_peers.discard(peer_id)
        session = self._sessions.pop(peer_id, None)
        if session is not None:
            session.mark_closed("peer-left")
        logger.info("Peer left", extra={"remote_peer_id": peer_id, "had_session": session is not None})

    def _offer_wins_glare(self, existing: NegotiationSession, remote_peer_id: str) -> bool:
        return (
            self.config.glare_policy == "lexicographic"
            and existing.role is SessionRole.OFFERER
            and existing.state is not SessionState.CONNECTED
            and remote_peer_id < self.peer_id
        )

    # Sessions

    def _live_session(self, peer_id: str) -> NegotiationSession | None:
        session = self._sessions.get(peer_id)
        if session is None or session.is_closed:
            return None
        return session

    def _create_session(self, peer_id: str, role: SessionRole) -> NegotiationSession:
        transport = self._transport_factory.create(peer_id)
        session = NegotiationSession(peer_id, role, transport, self.bus)
        self._sessions[peer_id] = session
        session.start()
        logger.info(
            "Session created",
            extra={"remote_peer_id": peer_id, "role": role.value, "session_id": session.session_id},
        )
        return session

    async def _release_unused_sources(self) -> None:
        in_use = [session.video_track for session in self.sessions.values()]
        in_use.append(self.media.current_video.track if self.media.current_video else None)
        released = await self.media.release_unused(in_use)
        for source in released:
            logger.info("Retired video source released", extra={"kind": source.kind.value})

    def _on_screen_ended(self, source: MediaSource) -> None:
        if self.media.current_video is not source or not self._joined:
            return
        self._spawn(self.stop_sharing())

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # Loops

    async def _inbound_loop(self) -> None:
        async for data in self._signaling.messages():
            if not self._accepting:
                break
            await self.handle_envelope(data)

        if self._joined:
            logger.warning("Signaling unavailable", extra={"room": self.room_id})
            self.bus.publish(SignalingStateChanged(available=False, detail="relay connection lost"))

    async def _event_loop(self, events: Subscription) -> None:
        async for event in events:
            try:
                await self._handle_event(event)
            except SignalingUnavailableError as e:
                logger.warning("Signaling unavailable", extra={"error": str(e)})
                self.bus.publish(SignalingStateChanged(available=False, detail=str(e)))

    async def _handle_event(self, event: MeshEvent) -> None:
        if isinstance(event, LocalDescriptionReady):
            session = self._sessions.get(event.peer_id)
            if session is None or session.session_id != event.session_id or session.is_closed:
                return
            if event.description_type == "offer":
                envelope: OfferMessage | AnswerMessage = OfferMessage(
                    from_=self.peer_id, to=event.peer_id, sdp=event.description
                )
            else:
                envelope = AnswerMessage(from_=self.peer_id, to=event.peer_id, sdp=event.description)
            await self._signaling.send(envelope)
            logger.info(
                "Description sent",
                extra={"type": event.description_type, "remote_peer_id": event.peer_id},
            )

        elif isinstance(event, CandidatesPending):
            session = self._sessions.get(event.peer_id)
            if session is not None and session.session_id == event.session_id:
                await self._send_candidates(session)

        elif isinstance(event, SessionClosed):
            session = self._sessions.get(event.peer_id)
            if session is not None and session.session_id == event.session_id:
                del self._sessions[event.peer_id]
            await self._release_unused_sources()

    async def _send_candidates(self, session: NegotiationSession) -> int:
        if session.state not in (SessionState.NEGOTIATING, SessionState.CONNECTED):
            return 0

        candidates = session.take_pending_candidates()
        for index, candidate in enumerate(candidates):
            try:
                await self._signaling.send(
                    IceMessage(from_=self.peer_id, to=session.remote_peer_id, candidate=candidate)
                )
            except SignalingUnavailableError:
                session.requeue_candidates(candidates[index:])
                raise
        return len(candidates)


async def _cancel(task: "asyncio.Task[Any] | None") -> None:
    if task is None or task.done():
        return
    if task is asyncio.current_task():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
