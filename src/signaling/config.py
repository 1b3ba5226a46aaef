"""Configuration schema for the signaling server.

Defines Pydantic models for loading and validating signaling configuration
from YAML files and environment variables.
"""

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


class WebSocketConfig(BaseModel):
    """WebSocket transport configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=8080, ge=1024, le=65535, description="Bind port")
    max_connections: int = Field(default=500, ge=1, description="Maximum concurrent connections")
    max_message_bytes: int = Field(
        default=2**20, ge=1024, description="Maximum inbound message size (SDP can be large)"
    )
    send_timeout_s: float = Field(
        default=5.0, gt=0, description="Timeout for a single outbound send"
    )
    allowed_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:3000"],
        description="Accepted Origin headers (empty list accepts any origin)",
    )


class TransportConfig(BaseModel):
    """Transport layer configuration."""

    websocket: WebSocketConfig = Field(default_factory=WebSocketConfig)


class StoreConfig(BaseModel):
    """Appointment store configuration.

    The ``postgrest`` backend talks to a hosted Supabase project; ``memory``
    serves appointments seeded from ``seed_appointments`` (local development).
    """

    backend: Literal["postgrest", "memory"] = Field(
        default="memory", description="Appointment store backend"
    )
    url: str | None = Field(default=None, description="Supabase project URL")
    api_key: str | None = Field(default=None, description="Supabase service key")
    table: str = Field(default="appointments", description="Appointments table name")
    request_timeout_s: float = Field(default=5.0, gt=0, description="Per-request timeout")
    seed_appointments: list[dict[str, Any]] = Field(
        default_factory=list, description="Rows for the memory backend"
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate that the store URL is HTTP(S) and strip trailing slashes."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Store url must start with http:// or https://, got '{v}'")
        return v.rstrip("/")


class AuthConfig(BaseModel):
    """Connection authentication configuration."""

    required: bool = Field(
        default=False, description="Reject connections without a valid bearer token"
    )
    jwt_secret: str | None = Field(default=None, description="HS256 secret shared with the API")
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    identity_mismatch_policy: Literal["warn", "reject"] = Field(
        default="warn",
        description="What to do when join-room userId differs from the token identity",
    )


class RegistryConfig(BaseModel):
    """Room registry configuration."""

    sweep_interval_s: float = Field(
        default=60.0, ge=1.0, description="Interval between idle-room sweeps"
    )


class HealthConfig(BaseModel):
    """Health check HTTP server configuration."""

    enabled: bool = Field(default=True, description="Serve /health, /ready and /rooms")
    host: str = Field(
        default="127.0.0.1", description="Bind host address; /rooms is unauthenticated"
    )
    port: int = Field(default=8081, ge=1024, le=65535, description="Bind port")


class SignalingConfig(BaseModel):
    """Root signaling server configuration."""

    transport: TransportConfig = Field(default_factory=TransportConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)

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

    @classmethod
    def from_yaml(cls, path: Path) -> "SignalingConfig":
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

        apply_env_overrides(data)
        return cls.model_validate(data)

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "SignalingConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Environment overrides apply in both cases.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        data: dict[str, Any] = {}
        apply_env_overrides(data)
        return cls.model_validate(data)


def apply_env_overrides(data: dict[str, Any]) -> None:
    """Apply environment variable overrides to raw config data in place."""
    import os

    if supabase_url := os.getenv("SUPABASE_URL"):
        data.setdefault("store", {})
        data["store"]["url"] = supabase_url
        data["store"]["backend"] = "postgrest"

    if supabase_key := os.getenv("SUPABASE_KEY"):
        data.setdefault("store", {})
        data["store"]["api_key"] = supabase_key

    if jwt_secret := os.getenv("JWT_SECRET"):
        data.setdefault("auth", {})
        data["auth"]["jwt_secret"] = jwt_secret

    if port := os.getenv("SIGNALING_PORT"):
        data.setdefault("transport", {}).setdefault("websocket", {})
        data["transport"]["websocket"]["port"] = int(port)

    if log_level := os.getenv("LOG_LEVEL"):
        data["log_level"] = log_level
