"""Configuration schema for the signaling server.

Defines Pydantic models for loading and validating signaling configuration
from YAML files and environment variables.
"""

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class WebSocketConfig(BaseModel):
    """WebSocket transport configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=5000, ge=1024, le=65535, description="Bind port")
    max_connections: int = Field(default=100, ge=1, description="Maximum concurrent connections")
    max_message_bytes: int = Field(
        default=2**20, ge=1024, description="Maximum inbound message size"
    )
    max_pending_messages: int = Field(
        default=256,
        ge=1,
        description="Outbound messages queued per client before it is dropped as too slow",
    )


class TransportConfig(BaseModel):
    """Transport layer configuration."""

    websocket: WebSocketConfig = Field(default_factory=WebSocketConfig)


def _default_media_codecs() -> list[dict[str, Any]]:
    return [
        {
            "kind": "audio",
            "mimeType": "audio/opus",
            "clockRate": 48000,
            "channels": 2,
        },
        {
            "kind": "video",
            "mimeType": "video/VP8",
            "clockRate": 90000,
        },
    ]


class MediaEngineConfig(BaseModel):
    """Media engine configuration.

    Example usage:
        ```yaml
        media_engine:
          adapter: "loopback"  # or "my_package.engine:MyEngine"
          rtc_min_port: 40000
          rtc_max_port: 40100
          listen_ip: "0.0.0.0"
          announced_ip: "203.0.113.10"
        ```
    """

    adapter: str = Field(
        default="loopback",
        description="Engine adapter: 'loopback' or an import path 'module:Class'",
    )
    rtc_min_port: int = Field(default=40000, ge=1024, le=65535, description="First RTC port")
    rtc_max_port: int = Field(default=40100, ge=1024, le=65535, description="Last RTC port")
    listen_ip: str = Field(default="0.0.0.0", description="RTC listen address")  # noqa: S104
    announced_ip: str | None = Field(
        default=None, description="Public address advertised in ICE candidates"
    )
    enable_udp: bool = Field(default=True, description="Offer UDP candidates")
    enable_tcp: bool = Field(default=True, description="Offer TCP candidates")
    prefer_udp: bool = Field(default=True, description="Prioritize UDP candidates")
    ice_servers: list[dict[str, Any]] = Field(
        default_factory=lambda: [{"urls": "stun:stun.l.google.com:19302"}],
        description="ICE servers handed to clients",
    )
    media_codecs: list[dict[str, Any]] = Field(
        default_factory=_default_media_codecs,
        description="Router media codecs",
    )

    @field_validator("adapter")
    @classmethod
    def validate_adapter(cls, v: str) -> str:
        """Validate adapter is the builtin name or a 'module:Class' path."""
        if v == "loopback":
            return v
        module, sep, attr = v.partition(":")
        if not sep or not module or not attr:
            raise ValueError(
                f"media_engine adapter must be 'loopback' or 'module:Class', got '{v}'"
            )
        return v

    @field_validator("media_codecs")
    @classmethod
    def validate_media_codecs(cls, v: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Validate codec entries carry a known kind, a mime type and a clock rate."""
        if not v:
            raise ValueError("media_codecs must not be empty")
        for codec in v:
            kind = codec.get("kind")
            if kind not in ("audio", "video"):
                raise ValueError(f"Codec kind must be 'audio' or 'video', got {kind!r}")
            mime_type = codec.get("mimeType", "")
            if not mime_type.lower().startswith(f"{kind}/"):
                raise ValueError(f"Codec mimeType {mime_type!r} does not match kind {kind!r}")
            if not isinstance(codec.get("clockRate"), int):
                raise ValueError(f"Codec {mime_type!r} requires an integer clockRate")
        return v

    @model_validator(mode="after")
    def validate_port_range(self) -> "MediaEngineConfig":
        """Validate the RTC port range is not inverted."""
        if self.rtc_max_port < self.rtc_min_port:
            raise ValueError(
                f"rtc_max_port ({self.rtc_max_port}) must be >= rtc_min_port ({self.rtc_min_port})"
            )
        return self


class SignalingConfig(BaseModel):
    """Signaling protocol behavior."""

    strict_errors: bool = Field(
        default=False,
        description="Reply with error messages instead of silently dropping bad requests",
    )


class HealthConfig(BaseModel):
    """Health check HTTP server configuration."""

    enabled: bool = Field(default=True, description="Serve health and metrics endpoints")
    host: str = Field(default="127.0.0.1", description="Bind host address")
    port: int | None = Field(
        default=None,
        ge=1024,
        le=65535,
        description="Bind port (defaults to the WebSocket port + 1)",
    )


class SignalingServerConfig(BaseModel):
    """Root signaling server configuration."""

    transport: TransportConfig = Field(default_factory=TransportConfig)
    media_engine: MediaEngineConfig = Field(default_factory=MediaEngineConfig)
    signaling: SignalingConfig = Field(default_factory=SignalingConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)

    # Operational settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    graceful_shutdown_timeout_s: int = Field(
        default=10,
        ge=1,
        description="Graceful shutdown timeout in seconds",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate logging level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @property
    def health_port(self) -> int:
        """Resolved health server port."""
        return self.health.port or self.transport.websocket.port + 1

    @classmethod
    def from_yaml(cls, path: Path) -> "SignalingServerConfig":
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

        _apply_env_overrides(data)

        return cls.model_validate(data)

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "SignalingServerConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        data: dict[str, Any] = {}
        _apply_env_overrides(data)
        return cls.model_validate(data)


def _apply_env_overrides(data: dict[str, Any]) -> None:
    """Apply environment variable overrides to raw config data in place."""
    import os

    websocket = data.setdefault("transport", {}).setdefault("websocket", {})
    if host := os.getenv("SIGNALING_HOST"):
        websocket["host"] = host
    if port := os.getenv("SIGNALING_PORT"):
        websocket["port"] = int(port)

    if announced_ip := os.getenv("ANNOUNCED_IP"):
        data.setdefault("media_engine", {})["announced_ip"] = announced_ip
    if adapter := os.getenv("MEDIA_ENGINE_ADAPTER"):
        data.setdefault("media_engine", {})["adapter"] = adapter

    if strict := os.getenv("SIGNALING_STRICT_ERRORS"):
        data.setdefault("signaling", {})["strict_errors"] = strict.lower() in ("true", "1", "yes")

    if log_level := os.getenv("LOG_LEVEL"):
        data["log_level"] = log_level
