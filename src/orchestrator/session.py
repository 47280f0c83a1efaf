"""Per-remote-peer negotiation session.

One ``NegotiationSession`` exists for every remote peer the local
participant negotiates with. Work for a session (descriptions, remote
candidates, track swaps) is queued in its inbox and executed in order by
the session's own runner task, so a stalled peer never delays another
session. Transitions are published on the event bus; the session never
talks to signaling directly.
"""

import asyncio
import logging
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from orchestrator.events import (
    CandidatesPending,
    EventBus,
    LocalDescriptionReady,
    OutgoingTrackReplaced,
    RemoteTrackReceived,
    SessionClosed,
    SessionStateChanged,
    TrackReplacementAbandoned,
)
from orchestrator.transport.base import TERMINAL_CONNECTION_STATES, PeerTransport

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Negotiation state machine states.

    State Transitions:
    - IDLE → NEGOTIATING (local description applied)
    - NEGOTIATING → CONNECTED (transport reports "connected")
    - * → CLOSED (peer left, transport failed, local leave)

    CLOSED is terminal; a later announcement creates a fresh session.
    """

    IDLE = "idle"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    CLOSED = "closed"


class SessionRole(Enum):
    """Which side of the pair generates the offer. Fixed at creation."""

    OFFERER = "offerer"
    ANSWERER = "answerer"


# Valid state transitions
VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.IDLE: {SessionState.NEGOTIATING, SessionState.CLOSED},
    SessionState.NEGOTIATING: {SessionState.CONNECTED, SessionState.CLOSED},
    SessionState.CONNECTED: {SessionState.CLOSED},
    SessionState.CLOSED: set(),  # Terminal state
}

Job = Callable[[], Awaitable[Any]]


class NegotiationSession:
    """Negotiation with a single remote peer over one peer transport."""

    def __init__(
        self,
        remote_peer_id: str,
        role: SessionRole,
        transport: PeerTransport,
        bus: EventBus,
    ) -> None:
        """Initialize the session and subscribe to transport notifications.

        Args:
            remote_peer_id: Peer on the other end
            role: OFFERER or ANSWERER
            transport: Transport backing this session (owned by the session)
            bus: Bus receiving this session's events
        """
        self.remote_peer_id = remote_peer_id
        self.role = role
        self.transport = transport
        self.state = SessionState.IDLE
        self.session_id = f"{remote_peer_id}-{uuid.uuid4().hex[:8]}"
        self.close_reason: str | None = None

        # Outgoing tracks currently attached to the transport
        self.audio_track: Any = None
        self.video_track: Any = None

        self.pending_candidates: deque[Any] = deque()

        self._bus = bus
        self._inbox: asyncio.Queue[tuple[Job, asyncio.Future[Any]]] = asyncio.Queue()
        self._runner: asyncio.Task[None] | None = None
        self._shutdown_task: asyncio.Task[None] | None = None
        self._transport_closed = False

        transport.on("local_candidate", self._on_local_candidate)
        transport.on("remote_track", self._on_remote_track)
        transport.on("connection_state_change", self._on_connection_state_change)

    @property
    def is_closed(self) -> bool:
        return self.state is SessionState.CLOSED

    def start(self) -> None:
        """Start the runner task."""
        if self._runner is None and not self.is_closed:
            self._runner = asyncio.create_task(self._run())

    def submit(self, job: Job) -> "asyncio.Future[Any]":
        """Queue ``job`` behind the session's earlier work.

        Returns:
            Future resolved with the job's result. Jobs submitted to (or
            pending in) a closed session resolve to None without running.
        """
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)

        if self.is_closed:
            future.set_result(None)
        else:
            self._inbox.put_nowait((job, future))
        return future

    async def _run(self) -> None:
        current: asyncio.Future[Any] | None = None
        try:
            while True:
                job, current = await self._inbox.get()
                try:
                    result = await job()
                except Exception as e:
                    logger.exception("Session job failed", extra={"session_id": self.session_id})
                    if not current.done():
                        current.set_exception(e)
                else:
                    if not current.done():
                        current.set_result(result)
                current = None
                if self.is_closed:
                    break
        finally:
            if current is not None and not current.done():
                current.set_result(None)
            while not self._inbox.empty():
                _, future = self._inbox.get_nowait()
                if not future.done():
                    future.set_result(None)

    def transition_state(self, new_state: SessionState) -> None:
        """Transition session to a new state with validation.

        Args:
            new_state: Target state

        Raises:
            ValueError: If transition is invalid
        """
        if new_state not in VALID_TRANSITIONS.get(self.state, set()):
            raise ValueError(f"Invalid state transition: {self.state.value} → {new_state.value}")

        old_state = self.state
        self.state = new_state

        logger.info(
            "Session state transition",
            extra={
                "session_id": self.session_id,
                "remote_peer_id": self.remote_peer_id,
                "role": self.role.value,
                "from_state": old_state.value,
                "to_state": new_state.value,
            },
        )
        self._bus.publish(
            SessionStateChanged(
                peer_id=self.remote_peer_id,
                session_id=self.session_id,
                old_state=old_state.value,
                new_state=new_state.value,
            )
        )

    async def attach_local_tracks(self, audio_track: Any, video_track: Any) -> None:
        """Attach the local outgoing tracks to the transport."""
        if audio_track is not None:
            await self.transport.add_track(audio_track)
            self.audio_track = audio_track
        if video_track is not None:
            await self.transport.add_track(video_track)
            self.video_track = video_track

    async def offer(self, audio_track: Any, video_track: Any) -> None:
        """Offerer job: attach tracks, create and apply an offer, publish it."""
        if self.is_closed:
            return

        try:
            await self.attach_local_tracks(audio_track, video_track)
            description = await self.transport.create_offer()
            await self.transport.set_local_description(description)
        except Exception as e:
            self._negotiation_failed("offer", e)
            return

        if self.is_closed:
            return
        self.transition_state(SessionState.NEGOTIATING)
        self._publish_local_description("offer")

    async def answer(self, audio_track: Any, video_track: Any, remote_description: Any) -> None:
        """Answerer job: apply the remote offer, create and apply an answer, publish it."""
        if self.is_closed:
            return

        try:
            await self.attach_local_tracks(audio_track, video_track)
            await self.transport.set_remote_description(remote_description)
            description = await self.transport.create_answer()
            await self.transport.set_local_description(description)
        except Exception as e:
            self._negotiation_failed("answer", e)
            return

        if self.is_closed:
            return
        self.transition_state(SessionState.NEGOTIATING)
        self._publish_local_description("answer")

    async def apply_answer(self, remote_description: Any) -> bool:
        """Apply the remote answer to our offer.

        The session stays NEGOTIATING; CONNECTED follows the transport's own
        "connected" notification.

        Returns:
            True if the answer was applied
        """
        if self.role is not SessionRole.OFFERER or self.state is not SessionState.NEGOTIATING:
            logger.warning(
                "Ignoring unexpected answer",
                extra={"session_id": self.session_id, "role": self.role.value, "state": self.state.value},
            )
            return False

        try:
            await self.transport.set_remote_description(remote_description)
        except Exception as e:
            self._negotiation_failed("answer", e)
            return False
        return True

    async def add_remote_candidate(self, candidate: Any) -> bool:
        """Hand a remote candidate to the transport. Failures are tolerated.

        Returns:
            True if the transport accepted the candidate
        """
        if self.is_closed:
            return False

        try:
            await self.transport.add_ice_candidate(candidate)
        except Exception as e:
            logger.warning(
                "Failed to apply remote candidate",
                extra={"session_id": self.session_id, "error": str(e)},
            )
            return False
        return True

    async def replace_video_track(
        self, track: Any, generation: int, is_current: Callable[[int], bool]
    ) -> bool:
        """Swap the outgoing video track; never changes ``state``.

        Tries the transport's in-place replacement first, then falls back to
        removing the old track and adding the new one. If both fail the old
        track is re-attached; should that fail too, ``video_track`` becomes
        None.

        Args:
            track: New outgoing video track
            generation: Swap generation this job belongs to
            is_current: Tells whether ``generation`` is still the latest swap

        Returns:
            True if ``track`` is being sent when the job finishes
        """
        if self.is_closed or not is_current(generation):
            return False
        if self.video_track is track:
            return True

        old_track = self.video_track
        seamless = True
        try:
            if old_track is None:
                raise NotImplementedError("No outgoing video track to replace")
            await self.transport.replace_track(old_track, track)
        except Exception as replace_error:
            seamless = False
            logger.info(
                "In-place track replacement unavailable, re-attaching",
                extra={"session_id": self.session_id, "error": str(replace_error) or type(replace_error).__name__},
            )
            detached = False
            try:
                if old_track is not None:
                    await self.transport.remove_track(old_track)
                    detached = True
                await self.transport.add_track(track)
            except Exception as e:
                if detached:
                    await self._reattach(old_track)
                logger.error(
                    "Track replacement abandoned",
                    extra={
                        "session_id": self.session_id,
                        "error": str(e),
                        "previous_track_sent": self.video_track is not None,
                    },
                )
                self._bus.publish(
                    TrackReplacementAbandoned(
                        peer_id=self.remote_peer_id, session_id=self.session_id, error=str(e)
                    )
                )
                return False

        self.video_track = track
        self._bus.publish(
            OutgoingTrackReplaced(
                peer_id=self.remote_peer_id,
                session_id=self.session_id,
                track=track,
                seamless=seamless,
            )
        )
        return True

    async def _reattach(self, old_track: Any) -> None:
        # video_track must match what the transport actually sends
        try:
            await self.transport.add_track(old_track)
        except Exception as e:
            logger.error(
                "Failed to re-attach previous video track",
                extra={"session_id": self.session_id, "error": str(e)},
            )
            self.video_track = None

    def take_pending_candidates(self) -> list[Any]:
        """Remove and return every queued local candidate, oldest first."""
        candidates = list(self.pending_candidates)
        self.pending_candidates.clear()
        return candidates

    def requeue_candidates(self, candidates: list[Any]) -> None:
        """Put undelivered candidates back at the head of the queue."""
        if self.is_closed:
            return
        self.pending_candidates.extendleft(reversed(candidates))

    def mark_closed(self, reason: str) -> bool:
        """Force CLOSED and schedule transport release. Idempotent.

        Returns:
            True if this call closed the session
        """
        if self.is_closed:
            return False

        self.close_reason = reason
        self.transition_state(SessionState.CLOSED)
        self.pending_candidates.clear()
        self._bus.publish(
            SessionClosed(peer_id=self.remote_peer_id, session_id=self.session_id, reason=reason)
        )
        self._shutdown_task = asyncio.create_task(self._shutdown())
        return True

    async def close(self, reason: str = "closed") -> None:
        """Close the session and wait for the transport to be released."""
        self.mark_closed(reason)
        if self._shutdown_task is not None:
            await self._shutdown_task

    async def _shutdown(self) -> None:
        if self._runner is not None and self._runner is not asyncio.current_task():
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass

        if self._transport_closed:
            return
        self._transport_closed = True
        try:
            await self.transport.close()
        except Exception as e:
            logger.warning(
                "Error closing peer transport",
                extra={"session_id": self.session_id, "error": str(e)},
            )

    def _publish_local_description(self, description_type: str) -> None:
        self._bus.publish(
            LocalDescriptionReady(
                peer_id=self.remote_peer_id,
                session_id=self.session_id,
                description_type=description_type,
                description=self.transport.local_description,
            )
        )
        if self.pending_candidates:
            self._bus.publish(
                CandidatesPending(peer_id=self.remote_peer_id, session_id=self.session_id)
            )

    def _negotiation_failed(self, stage: str, error: Exception) -> None:
        if self.is_closed:
            return
        logger.error(
            "Negotiation failed",
            extra={"session_id": self.session_id, "stage": stage, "error": str(error)},
        )
        self.mark_closed("negotiation-failed")

    # Transport notifications

    def _on_local_candidate(self, candidate: Any) -> None:
        if self.is_closed or candidate is None:
            return

        self.pending_candidates.append(candidate)
        if self.state in (SessionState.NEGOTIATING, SessionState.CONNECTED):
            self._bus.publish(
                CandidatesPending(peer_id=self.remote_peer_id, session_id=self.session_id)
            )

    def _on_remote_track(self, track: Any) -> None:
        if self.is_closed:
            return

        logger.info("Remote track received", extra={"session_id": self.session_id})
        self._bus.publish(
            RemoteTrackReceived(peer_id=self.remote_peer_id, session_id=self.session_id, track=track)
        )

    def _on_connection_state_change(self, connection_state: str) -> None:
        logger.debug(
            "Transport connection state",
            extra={"session_id": self.session_id, "connection_state": connection_state},
        )
        if connection_state == "connected" and self.state is SessionState.NEGOTIATING:
            self.transition_state(SessionState.CONNECTED)
        elif connection_state in TERMINAL_CONNECTION_STATES:
            self.mark_closed(f"transport-{connection_state}")


def _consume_exception(future: "asyncio.Future[Any]") -> None:
    # Marks the exception as retrieved
    if not future.cancelled():
        future.exception()
