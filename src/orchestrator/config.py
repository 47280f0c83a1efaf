"""Configuration schema for the peer orchestrator.

Defines Pydantic models for loading and validating peer configuration
from YAML files and environment variables.
"""

import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class IceServerConfig(BaseModel):
    """STUN/TURN server handed to the peer transport."""

    urls: list[str] = Field(..., min_length=1, description="stun:/turn:/turns: URLs")
    username: str | None = Field(default=None, description="TURN username")
    credential: str | None = Field(default=None, description="TURN credential")

    @field_validator("urls", mode="before")
    @classmethod
    def coerce_urls(cls, v: str | list[str]) -> list[str]:
        """Accept a single URL string as shorthand for a one-element list."""
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("urls")
    @classmethod
    def validate_urls(cls, v: list[str]) -> list[str]:
        """Validate ICE URL schemes."""
        for url in v:
            if not url.startswith(("stun:", "turn:", "turns:")):
                raise ValueError(f"ICE server URL must start with stun:, turn: or turns:, got '{url}'")
        return v


class MediaConfig(BaseModel):
    """Local capture devices.

    Device names and formats are passed to the capture backend unchanged;
    None selects the platform default.
    """

    camera_device: str | None = Field(default=None, description="Camera device (e.g. /dev/video0)")
    camera_format: str | None = Field(default=None, description="Capture format (e.g. v4l2)")
    microphone_device: str | None = Field(default=None, description="Microphone device")
    microphone_format: str | None = Field(default=None, description="Capture format (e.g. pulse)")
    screen_device: str | None = Field(default=None, description="Display to capture (e.g. :0.0)")
    screen_format: str | None = Field(default=None, description="Capture format (e.g. x11grab)")
    video_size: str = Field(default="640x480", description="Capture resolution WIDTHxHEIGHT")
    framerate: int = Field(default=30, ge=1, le=120, description="Capture frame rate")
    audio_enabled: bool = Field(default=True, description="Capture and send microphone audio")

    @field_validator("video_size")
    @classmethod
    def validate_video_size(cls, v: str) -> str:
        """Validate WIDTHxHEIGHT format."""
        width, sep, height = v.partition("x")
        if not sep or not width.isdigit() or not height.isdigit():
            raise ValueError(f"video_size must look like 640x480, got '{v}'")
        return v


class PeerConfig(BaseModel):
    """Root peer configuration."""

    signaling_url: str = Field(
        default="ws://localhost:3000",
        description="Signaling relay websocket URL",
    )
    room: str | None = Field(default=None, description="Room to join when none is given")
    peer_id: str | None = Field(
        default=None,
        description="Local peer id (random 6 characters if unset)",
    )
    ice_servers: list[IceServerConfig] = Field(
        default_factory=lambda: [IceServerConfig(urls=["stun:stun.l.google.com:19302"])],
        description="ICE servers for the peer transport",
    )
    glare_policy: Literal["ignore", "lexicographic"] = Field(
        default="ignore",
        description=(
            "How to treat an offer from a peer we are already offering to: "
            "'ignore' keeps the first session, 'lexicographic' lets the lower peer id win"
        ),
    )
    max_message_size: int = Field(
        default=2**20,
        ge=1024,
        description="Largest accepted websocket frame in bytes",
    )
    media: MediaConfig = Field(default_factory=MediaConfig)
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )

    @field_validator("signaling_url")
    @classmethod
    def validate_signaling_url(cls, v: str) -> str:
        """Validate websocket URL scheme."""
        if not v.startswith(("ws://", "wss://")):
            raise ValueError(f"signaling_url must start with ws:// or wss://, got '{v}'")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize the logging level name."""
        if v.upper() not in VALID_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {VALID_LOG_LEVELS}, got '{v}'")
        return v.upper()

    @classmethod
    def from_yaml(cls, path: Path) -> "PeerConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        return cls.model_validate(_apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "PeerConfig":
        """Load configuration from YAML or use defaults if file doesn't exist."""
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(_apply_env_overrides({}))


def _apply_env_overrides(data: dict) -> dict:
    if signaling_url := os.getenv("SIGNALING_URL"):
        data["signaling_url"] = signaling_url

    if room := os.getenv("MESH_ROOM"):
        data["room"] = room

    if peer_id := os.getenv("MESH_PEER_ID"):
        data["peer_id"] = peer_id

    return data
