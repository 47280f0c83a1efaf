"""Command-line mesh call participant.

Joins a room through the signaling relay using the aiortc transport and
local capture devices, prints session activity, and accepts slash commands
for screen sharing and muting.
"""

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

from orchestrator.config import PeerConfig
from orchestrator.errors import MeshCallError
from orchestrator.events import (
    MeshEvent,
    OutgoingTrackReplaced,
    RemoteTrackReceived,
    SessionClosed,
    SessionStateChanged,
    SignalingStateChanged,
    Subscription,
    TrackReplacementAbandoned,
)
from orchestrator.peer import PeerOrchestrator

# Configure logging
logger = logging.getLogger(__name__)

HELP_TEXT = """
Commands:
  /share       - Share your screen instead of the camera
  /stop-share  - Go back to the camera
  /mute        - Toggle microphone
  /camera      - Toggle camera
  /peers       - List sessions
  /leave       - Leave the room
  /join [room] - Join a room (the configured one by default)
  /quit        - Exit client
  /help        - Show this help
"""


class RemoteMediaSink:
    """Consumes remote tracks so their frames are pulled and discarded.

    Blackholes are kept per remote peer and stopped when that peer's
    session closes.
    """

    def __init__(self, blackhole_factory: Callable[[], Any] | None = None) -> None:
        if blackhole_factory is None:
            from aiortc.contrib.media import MediaBlackhole

            blackhole_factory = MediaBlackhole
        self._blackhole_factory = blackhole_factory
        self._blackholes: dict[str, list[tuple[str, Any]]] = {}

    @property
    def peer_ids(self) -> list[str]:
        return sorted(self._blackholes)

    async def consume(self, peer_id: str, session_id: str, track: Any) -> None:
        blackhole = self._blackhole_factory()
        blackhole.addTrack(track)
        await blackhole.start()
        self._blackholes.setdefault(peer_id, []).append((session_id, blackhole))

    async def release(self, peer_id: str, session_id: str) -> None:
        """Stop the blackholes of one closed session."""
        entries = self._blackholes.pop(peer_id, [])
        remaining = [(sid, blackhole) for sid, blackhole in entries if sid != session_id]
        for sid, blackhole in entries:
            if sid == session_id:
                await blackhole.stop()
        if remaining:
            self._blackholes[peer_id] = remaining

    async def stop(self) -> None:
        for entries in self._blackholes.values():
            for _, blackhole in entries:
                await blackhole.stop()
        self._blackholes.clear()


def describe_event(event: MeshEvent) -> str | None:
    """One-line description of an event, or None if not worth printing."""
    if isinstance(event, SessionStateChanged):
        return f"[{event.peer_id}] {event.old_state} → {event.new_state}"
    if isinstance(event, RemoteTrackReceived):
        kind = getattr(event.track, "kind", "media")
        return f"[{event.peer_id}] receiving {kind}"
    if isinstance(event, SessionClosed):
        return f"[{event.peer_id}] session closed ({event.reason})"
    if isinstance(event, OutgoingTrackReplaced) and not event.seamless:
        return f"[{event.peer_id}] video re-attached as a new track"
    if isinstance(event, TrackReplacementAbandoned):
        return f"[{event.peer_id}] video swap failed: {event.error}"
    if isinstance(event, SignalingStateChanged) and not event.available:
        return f"signaling unavailable: {event.detail}"
    return None


class CLIClient:
    """Interactive mesh call participant."""

    def __init__(
        self,
        orchestrator: PeerOrchestrator,
        room: str | None = None,
        sink: RemoteMediaSink | None = None,
    ) -> None:
        """Initialize CLI client.

        Args:
            orchestrator: Orchestrator driving the call
            room: Room joined on start (``config.room`` if None)
            sink: Consumer for remote tracks
        """
        self.orchestrator = orchestrator
        self.room = room
        self.sink = sink
        self.running = True

    async def handle_command(self, text: str) -> None:
        """Execute one slash command.

        Args:
            text: Input line, with or without the leading slash
        """
        command, _, argument = text.lstrip("/").strip().partition(" ")
        command = command.lower()
        orchestrator = self.orchestrator

        try:
            if command == "quit":
                self.running = False
                print("\nGoodbye!")

            elif command == "help":
                print(HELP_TEXT)

            elif command == "share":
                await orchestrator.share_screen()
                print("Sharing screen")

            elif command == "stop-share":
                if await orchestrator.stop_sharing():
                    print("Back to camera")
                else:
                    print("Not sharing")

            elif command == "mute":
                print("Microphone on" if orchestrator.toggle_audio() else "Microphone off")

            elif command == "camera":
                print("Camera on" if orchestrator.toggle_video() else "Camera off")

            elif command == "peers":
                sessions = orchestrator.sessions
                if not sessions:
                    print("No sessions")
                for peer_id, session in sorted(sessions.items()):
                    print(f"  {peer_id}: {session.state.value} ({session.role.value})")

            elif command == "leave":
                await orchestrator.leave()
                print("Left room")

            elif command == "join":
                await orchestrator.join(argument.strip() or self.room)
                print(f"Joined room {orchestrator.room_id} as {orchestrator.peer_id}")

            else:
                print(f"Unknown command: {command}")
                print("Type /help for available commands")

        except (MeshCallError, RuntimeError, ValueError) as e:
            logger.error(f"Command /{command} failed: {e}")
            print(f"Error: {e}")

    async def event_loop(self, events: Subscription) -> None:
        """Print session activity and feed remote tracks to the sink.

        A closed session's tracks are released from the sink.
        """
        async for event in events:
            line = describe_event(event)
            if line is not None:
                print(f"\n{line}")
            if self.sink is None:
                continue
            if isinstance(event, RemoteTrackReceived):
                await self.sink.consume(event.peer_id, event.session_id, event.track)
            elif isinstance(event, SessionClosed):
                await self.sink.release(event.peer_id, event.session_id)

    async def input_loop(self) -> None:
        """Handle user input from stdin."""
        print("\n" + "=" * 60)
        print(f"Mesh call: room {self.orchestrator.room_id} as {self.orchestrator.peer_id}")
        print("=" * 60)
        print(HELP_TEXT)

        loop = asyncio.get_running_loop()

        while self.running:
            try:
                text = await loop.run_in_executor(None, input, "> ")
            except EOFError:
                # Handle Ctrl+D
                self.running = False
                break

            text = text.strip()
            if not text:
                continue
            if not text.startswith("/"):
                print("Commands start with /, type /help")
                continue
            await self.handle_command(text)

    async def run(self) -> int:
        """Run the CLI client.

        Returns:
            Process exit code
        """
        events = self.orchestrator.subscribe()
        try:
            await self.orchestrator.join(self.room)
        except MeshCallError as e:
            events.close()
            logger.error(f"Could not join: {e}")
            print(f"Could not join: {e}")
            return 1

        def signal_handler() -> None:
            self.running = False
            input_task.cancel()

        events_task = asyncio.create_task(self.event_loop(events))
        input_task = asyncio.create_task(self.input_loop())

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        try:
            await input_task
        except asyncio.CancelledError:
            print("\n\nInterrupted!")
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)

            await self.orchestrator.leave()
            events.close()
            events_task.cancel()
            await asyncio.gather(events_task, return_exceptions=True)
            if self.sink is not None:
                await self.sink.stop()
        return 0


async def run_client(config: PeerConfig, room: str | None = None) -> int:
    """Build an aiortc-backed orchestrator and run the CLI against it.

    Args:
        config: Peer configuration
        room: Room to join (``config.room`` if None)

    Returns:
        Process exit code
    """
    try:
        from orchestrator.transport.aiortc_transport import (
            AiortcMediaProvider,
            AiortcTransportFactory,
        )
    except ImportError as e:
        logger.error(f"Media stack unavailable ({e}); install with: pip install 'mesh-call[media]'")
        return 1

    orchestrator = PeerOrchestrator(
        config=config,
        media_provider=AiortcMediaProvider(config.media),
        transport_factory=AiortcTransportFactory(config),
    )
    client = CLIClient(orchestrator, room=room, sink=RemoteMediaSink())
    return await client.run()


def main() -> None:
    """Main entry point for CLI client."""
    parser = argparse.ArgumentParser(description="Mesh video call participant")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(__file__).parent.parent.parent / "configs" / "peer.yaml",
        help="Path to peer config YAML file",
    )
    parser.add_argument("--room", type=str, default=None, help="Room to join")
    parser.add_argument(
        "--signaling-url",
        type=str,
        default=None,
        help="Relay URL (default from config, ws://localhost:3000)",
    )
    parser.add_argument("--peer-id", type=str, default=None, help="Local peer id (random if unset)")
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    config = PeerConfig.from_yaml_with_defaults(args.config)
    overrides: dict[str, Any] = {}
    if args.signaling_url is not None:
        overrides["signaling_url"] = args.signaling_url
    if args.peer_id is not None:
        overrides["peer_id"] = args.peer_id
    if args.verbose:
        overrides["log_level"] = "DEBUG"
    if overrides:
        config = PeerConfig.model_validate({**config.model_dump(), **overrides})

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    room = args.room or config.room
    if not room:
        parser.error("no room given: pass --room or set room in the config")

    try:
        sys.exit(asyncio.run(run_client(config, room)))
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)


if __name__ == "__main__":
    main()
