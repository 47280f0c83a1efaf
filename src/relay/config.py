"""Configuration schema for the signaling relay.

Defines Pydantic models for loading and validating relay configuration
from YAML files and environment variables.
"""

import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class HealthConfig(BaseModel):
    """HTTP health endpoint configuration."""

    enabled: bool = Field(default=True, description="Serve /health, /rooms and /metrics/summary")
    host: str = Field(default="127.0.0.1", description="Bind host address")
    port: int = Field(default=3001, ge=1024, le=65535, description="Bind port")


class RelayConfig(BaseModel):
    """Root relay configuration."""

    host: str = Field(default="0.0.0.0", description="Websocket bind host")  # noqa: S104
    port: int = Field(default=3000, ge=1024, le=65535, description="Websocket bind port")
    max_message_size: int = Field(
        default=2**20,
        ge=1024,
        description="Largest accepted websocket frame in bytes",
    )
    outbound_queue_size: int = Field(
        default=256,
        ge=1,
        description="Envelopes buffered per connection before new ones are dropped",
    )
    health: HealthConfig = Field(default_factory=HealthConfig)
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize the logging level name."""
        if v.upper() not in VALID_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {VALID_LOG_LEVELS}, got '{v}'")
        return v.upper()

    @classmethod
    def from_yaml(cls, path: Path) -> "RelayConfig":
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

        if host := os.getenv("RELAY_HOST"):
            data["host"] = host

        if port := os.getenv("RELAY_PORT"):
            data["port"] = int(port)

        if log_level := os.getenv("RELAY_LOG_LEVEL"):
            data["log_level"] = log_level

        return cls.model_validate(data)

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "RelayConfig":
        """Load configuration from YAML or use defaults if file doesn't exist."""
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls()
