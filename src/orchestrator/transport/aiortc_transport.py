"""aiortc-backed peer transport and capture provider.

Requires the ``media`` extra (aiortc, which brings PyAV). Descriptions are
exchanged as ``{"type": ..., "sdp": ...}`` objects and candidates as
``{"candidate": ..., "sdpMid": ..., "sdpMLineIndex": ...}`` objects, the
same shapes browsers use, so aiortc peers interoperate with browser peers.
"""

import asyncio
import logging
import sys
from typing import Any

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaPlayer
from aiortc.sdp import candidate_from_sdp
from av import AudioFrame, VideoFrame

from orchestrator.config import IceServerConfig, MediaConfig, PeerConfig
from orchestrator.errors import MediaAcquisitionError, NegotiationError, TrackReplacementError
from orchestrator.media import MediaProvider, MediaSource, SourceKind
from orchestrator.transport.base import PeerTransport, PeerTransportFactory

logger = logging.getLogger(__name__)


def build_rtc_configuration(ice_servers: list[IceServerConfig]) -> RTCConfiguration:
    """Translate configured ICE servers into an aiortc configuration."""
    return RTCConfiguration(
        iceServers=[
            RTCIceServer(urls=server.urls, username=server.username, credential=server.credential)
            for server in ice_servers
        ]
    )


class AiortcPeerTransport(PeerTransport):
    """Peer transport over an ``RTCPeerConnection``.

    aiortc gathers candidates while applying the local description and
    embeds them in it, so ``local_candidate`` is never raised; remote
    trickled candidates are still accepted.
    """

    def __init__(self, remote_peer_id: str, configuration: RTCConfiguration | None = None) -> None:
        super().__init__(remote_peer_id)
        self._pc = RTCPeerConnection(configuration=configuration)
        self._senders: dict[int, Any] = {}  # id(track) -> RTCRtpSender

        @self._pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            logger.debug(
                "Peer connection state changed",
                extra={"remote_peer_id": remote_peer_id, "state": self._pc.connectionState},
            )
            self.emit("connection_state_change", self._pc.connectionState)

        @self._pc.on("track")
        def on_track(track: MediaStreamTrack) -> None:
            logger.info(
                "Remote track received",
                extra={"remote_peer_id": remote_peer_id, "kind": track.kind},
            )
            self.emit("remote_track", track)

    @property
    def connection_state(self) -> str:
        state: str = self._pc.connectionState
        return state

    @property
    def local_description(self) -> dict[str, str] | None:
        description = self._pc.localDescription
        if description is None:
            return None
        return {"type": description.type, "sdp": description.sdp}

    async def add_track(self, track: Any) -> None:
        self._senders[id(track)] = self._pc.addTrack(track)

    async def replace_track(self, old_track: Any, new_track: Any) -> None:
        sender = self._senders.pop(id(old_track), None)
        if sender is None:
            raise TrackReplacementError("Track to replace is not being sent")

        try:
            sender.replaceTrack(new_track)
        except Exception as e:
            self._senders[id(old_track)] = sender
            raise TrackReplacementError(f"replaceTrack failed: {e}") from e
        self._senders[id(new_track)] = sender

    async def remove_track(self, track: Any) -> None:
        # Detaching leaves the transceiver free for the next add_track
        sender = self._senders.pop(id(track), None)
        if sender is not None:
            sender.replaceTrack(None)

    async def create_offer(self) -> RTCSessionDescription:
        return await self._pc.createOffer()

    async def create_answer(self) -> RTCSessionDescription:
        return await self._pc.createAnswer()

    async def set_local_description(self, description: Any) -> None:
        await self._pc.setLocalDescription(description)

    async def set_remote_description(self, description: Any) -> None:
        try:
            remote = RTCSessionDescription(sdp=description["sdp"], type=description["type"])
            await self._pc.setRemoteDescription(remote)
        except (KeyError, TypeError, ValueError) as e:
            raise NegotiationError(f"Invalid remote description: {e}") from e

    async def add_ice_candidate(self, candidate: Any) -> None:
        if not candidate or not candidate.get("candidate"):
            # End-of-candidates marker
            return

        try:
            sdp = candidate["candidate"]
            if sdp.startswith("candidate:"):
                sdp = sdp[len("candidate:") :]
            ice = candidate_from_sdp(sdp)
            ice.sdpMid = candidate.get("sdpMid")
            ice.sdpMLineIndex = candidate.get("sdpMLineIndex")
            await self._pc.addIceCandidate(ice)
        except (AttributeError, IndexError, KeyError, TypeError, ValueError) as e:
            raise NegotiationError(f"Invalid remote candidate: {e}") from e

    async def close(self) -> None:
        self._senders.clear()
        await self._pc.close()


class AiortcTransportFactory(PeerTransportFactory):
    """Creates aiortc transports sharing one ICE configuration."""

    def __init__(self, config: PeerConfig) -> None:
        self._configuration = build_rtc_configuration(config.ice_servers)

    def create(self, remote_peer_id: str) -> AiortcPeerTransport:
        return AiortcPeerTransport(remote_peer_id, self._configuration)


class GatedTrack(MediaStreamTrack):
    """Wraps a capture track so it can be muted in place.

    While ``enabled`` is False, video frames are replaced by black frames and
    audio frames by silence of the same shape, keeping the remote decoder fed.
    """

    def __init__(self, source: MediaStreamTrack) -> None:
        super().__init__()
        self.kind = source.kind
        self.enabled = True
        self._source = source

        @source.on("ended")
        def on_source_ended() -> None:
            self.stop()

    async def recv(self) -> Any:
        frame = await self._source.recv()
        if self.enabled:
            return frame

        if isinstance(frame, VideoFrame):
            blank: Any = VideoFrame(width=frame.width, height=frame.height, format="yuv420p")
            for plane, value in zip(blank.planes, (16, 128, 128), strict=False):
                plane.update(bytes([value]) * plane.buffer_size)
        elif isinstance(frame, AudioFrame):
            blank = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
            blank.sample_rate = frame.sample_rate
            for plane in blank.planes:
                plane.update(bytes(plane.buffer_size))
        else:
            return frame

        blank.pts = frame.pts
        blank.time_base = frame.time_base
        return blank

    def stop(self) -> None:
        super().stop()
        self._source.stop()


# (file, format) defaults per platform when the configuration leaves them unset
_PLATFORM_DEVICES: dict[str, dict[SourceKind, tuple[str, str]]] = {
    "linux": {
        SourceKind.CAMERA: ("/dev/video0", "v4l2"),
        SourceKind.SCREEN: (":0.0", "x11grab"),
        SourceKind.MICROPHONE: ("default", "pulse"),
    },
    "darwin": {
        SourceKind.CAMERA: ("default:none", "avfoundation"),
        SourceKind.SCREEN: ("1:none", "avfoundation"),
        SourceKind.MICROPHONE: ("none:default", "avfoundation"),
    },
    "win32": {
        SourceKind.CAMERA: ("video=Integrated Camera", "dshow"),
        SourceKind.SCREEN: ("desktop", "gdigrab"),
        SourceKind.MICROPHONE: ("audio=Microphone", "dshow"),
    },
}


class AiortcMediaProvider(MediaProvider):
    """Capture provider backed by ``aiortc.contrib.media.MediaPlayer``."""

    def __init__(self, config: MediaConfig, platform: str = sys.platform) -> None:
        self.config = config
        self._defaults = _PLATFORM_DEVICES.get(platform, _PLATFORM_DEVICES["linux"])
        self._players: dict[str, MediaPlayer] = {}

    def device_for(self, kind: SourceKind) -> tuple[str, str]:
        """(file, format) for ``kind``, configuration first then platform default."""
        default_file, default_format = self._defaults[kind]
        configured = {
            SourceKind.CAMERA: (self.config.camera_device, self.config.camera_format),
            SourceKind.SCREEN: (self.config.screen_device, self.config.screen_format),
            SourceKind.MICROPHONE: (self.config.microphone_device, self.config.microphone_format),
        }[kind]
        return configured[0] or default_file, configured[1] or default_format

    async def acquire_local_source(self, kind: SourceKind) -> MediaSource:
        file, device_format = self.device_for(kind)
        options: dict[str, str] = {}
        if kind is not SourceKind.MICROPHONE:
            options = {"video_size": self.config.video_size, "framerate": str(self.config.framerate)}

        try:
            player = await asyncio.to_thread(MediaPlayer, file, format=device_format, options=options)
        except Exception as e:
            raise MediaAcquisitionError(f"Cannot open {kind.value} {file} ({device_format}): {e}") from e

        capture = player.audio if kind is SourceKind.MICROPHONE else player.video
        if capture is None:
            for other in (player.audio, player.video):
                if other is not None:
                    other.stop()
            raise MediaAcquisitionError(f"{kind.value} {file} has no usable {kind.value} stream")

        track = GatedTrack(capture)
        source = MediaSource(kind=kind, track=track)
        self._players[source.source_id] = player

        @track.on("ended")
        def on_ended() -> None:
            source.notify_ended()

        logger.info(
            "Capture started",
            extra={"kind": kind.value, "device": file, "format": device_format},
        )
        return source

    async def release_source(self, source: MediaSource) -> None:
        player = self._players.pop(source.source_id, None)
        source.track.stop()
        if player is not None:
            for capture in (player.audio, player.video):
                if capture is not None:
                    capture.stop()
        logger.info("Capture stopped", extra={"kind": source.kind.value})
