"""Local media sources and the outgoing video pointer.

The capture facility itself is external: a ``MediaProvider`` hands out
``MediaSource`` objects wrapping an opaque track and takes them back for
release. ``LocalMedia`` owns what one participant has acquired and which
video source currently feeds every session.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from orchestrator.errors import MediaAcquisitionError

logger = logging.getLogger(__name__)


class SourceKind(str, Enum):
    """Kinds of local capture source."""

    CAMERA = "camera"
    SCREEN = "screen"
    MICROPHONE = "microphone"


@dataclass(eq=False)
class MediaSource:
    """An acquired capture source.

    ``track`` is whatever the peer transport sends (an aiortc
    ``MediaStreamTrack`` in production, a plain object in tests).
    """

    kind: SourceKind
    track: Any
    source_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    enabled: bool = True
    released: bool = False
    _ended_callbacks: list[Callable[["MediaSource"], None]] = field(
        default_factory=list, repr=False
    )

    def set_enabled(self, enabled: bool) -> None:
        """Mute or unmute the source without touching any session."""
        self.enabled = enabled
        if self.track is not None and hasattr(self.track, "enabled"):
            self.track.enabled = enabled

    def on_ended(self, callback: Callable[["MediaSource"], None]) -> None:
        """Register a callback for the capture ending on its own."""
        self._ended_callbacks.append(callback)

    def notify_ended(self) -> None:
        """Called by the provider when capture stops outside our control."""
        if self.released:
            return

        logger.info("Media source ended", extra={"kind": self.kind.value, "source_id": self.source_id})
        for callback in list(self._ended_callbacks):
            callback(self)


class MediaProvider(ABC):
    """Device capture facility."""

    @abstractmethod
    async def acquire_local_source(self, kind: SourceKind) -> MediaSource:
        """Start capturing from a local device.

        Args:
            kind: Which device to open

        Returns:
            MediaSource: Live source

        Raises:
            MediaAcquisitionError: If the device is unavailable or refused
        """
        pass

    @abstractmethod
    async def release_source(self, source: MediaSource) -> None:
        """Stop capture and free the device behind ``source``."""
        pass


class LocalMedia:
    """Sources held by the local participant.

    The camera stays acquired for the whole room membership so that a
    screen share can fall back to it. Video sources that stop being current
    are retired and released once no session sends them any more.
    """

    def __init__(self, provider: MediaProvider, audio_enabled: bool = True) -> None:
        self._provider = provider
        self._audio_enabled = audio_enabled
        self.camera: MediaSource | None = None
        self.microphone: MediaSource | None = None
        self._current_video: MediaSource | None = None
        self._generation = 0
        self._retired: list[MediaSource] = []

    @property
    def current_video(self) -> MediaSource | None:
        return self._current_video

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def retired(self) -> list[MediaSource]:
        return list(self._retired)

    async def acquire(self) -> None:
        """Acquire the camera (and microphone) for a room join.

        Raises:
            MediaAcquisitionError: If any device is unavailable; nothing stays acquired
        """
        self.camera = await self.acquire_source(SourceKind.CAMERA)
        if self._audio_enabled:
            try:
                self.microphone = await self.acquire_source(SourceKind.MICROPHONE)
            except MediaAcquisitionError:
                await self.release(self.camera)
                self.camera = None
                raise

        self._current_video = self.camera
        self._generation = 0

    async def acquire_source(self, kind: SourceKind) -> MediaSource:
        """Acquire one source, normalizing provider failures.

        Raises:
            MediaAcquisitionError: If the provider cannot deliver the source
        """
        try:
            source = await self._provider.acquire_local_source(kind)
        except MediaAcquisitionError:
            raise
        except Exception as e:
            raise MediaAcquisitionError(f"Failed to acquire {kind.value}: {e}") from e

        logger.info("Media source acquired", extra={"kind": kind.value, "source_id": source.source_id})
        return source

    def local_tracks(self) -> tuple[Any, Any]:
        """(audio track, current video track); either may be None."""
        audio = self.microphone.track if self.microphone is not None else None
        video = self._current_video.track if self._current_video is not None else None
        return audio, video

    def begin_swap(self, source: MediaSource) -> int:
        """Point the outgoing video at ``source``.

        Returns:
            The swap generation; older generations are stale from now on
        """
        previous = self._current_video
        self._current_video = source
        self._generation += 1

        if previous is not None and previous is not source and previous is not self.camera:
            self._retired.append(previous)
        if source in self._retired:
            self._retired.remove(source)

        logger.info(
            "Outgoing video swap started",
            extra={"generation": self._generation, "kind": source.kind.value},
        )
        return self._generation

    def is_current(self, generation: int) -> bool:
        return generation == self._generation

    async def release_unused(self, tracks_in_use: list[Any]) -> list[MediaSource]:
        """Release retired sources whose track no session still sends.

        Returns:
            The sources released by this call
        """
        unused = [
            source
            for source in self._retired
            if not any(source.track is track for track in tracks_in_use)
        ]
        for source in unused:
            self._retired.remove(source)

        for source in unused:
            await self.release(source)
        return unused

    async def release(self, source: MediaSource) -> None:
        """Release ``source`` through the provider. Safe to call twice."""
        if source.released:
            return

        source.released = True
        try:
            await self._provider.release_source(source)
        except Exception as e:
            logger.warning(
                "Error releasing media source",
                extra={"kind": source.kind.value, "source_id": source.source_id, "error": str(e)},
            )

    async def release_all(self) -> None:
        """Release every source held, current, retired or standby."""
        sources = [self._current_video, self.camera, self.microphone, *self._retired]
        self._retired.clear()
        self._current_video = None
        self.camera = None
        self.microphone = None

        for source in sources:
            if source is not None:
                await self.release(source)
