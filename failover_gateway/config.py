"""Configuration management for the Failover Gateway."""

import os
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

from .models import UpstreamConfig


class ConfigurationError(Exception):
    """Raised when the gateway cannot start with the given configuration."""
    pass


def split_csv(raw: Optional[str]) -> tuple[str, ...]:
    """Split a comma-separated value, trimming entries and dropping blanks."""
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


class GatewayConfig(BaseModel):
    """
    Immutable configuration for the gateway.

    Built once at process start and passed to ``create_app``. The credential
    pool order is the failover order.
    """

    model_config = ConfigDict(frozen=True)

    # Server settings
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080, ge=1, le=65535)
    log_level: str = "INFO"

    # Credential Pool
    credentials: tuple[SecretStr, ...]

    # Access Guard
    shared_secret: Optional[SecretStr] = None
    token_header: str = "x-proxy-token"

    # Origin Policy, empty means allow all
    allowed_origins: tuple[str, ...] = ()

    # Routing
    api_prefix: str = "/v1beta"
    health_path: str = "/healthz"
    public_health: bool = Field(default=False, description="Serve the health endpoint without the shared secret")
    max_body_bytes: int = Field(default=50 * 1024 * 1024, gt=0)

    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)

    @field_validator("credentials")
    @classmethod
    def _pool_not_empty(cls, value: tuple[SecretStr, ...]) -> tuple[SecretStr, ...]:
        value = tuple(c for c in value if c.get_secret_value().strip())
        if not value:
            raise ValueError("credential pool must contain at least one key")
        return value

    @field_validator("shared_secret")
    @classmethod
    def _blank_secret_disables_guard(cls, value: Optional[SecretStr]) -> Optional[SecretStr]:
        if value is not None and not value.get_secret_value():
            return None
        return value

    @property
    def pool_size(self) -> int:
        return len(self.credentials)

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "GatewayConfig":
        """
        Create configuration from environment variables.

        Raises:
            ConfigurationError: If no usable credential is configured or a
                value cannot be parsed.
        """
        env = os.environ if environ is None else environ

        keys = split_csv(env.get("GEMINI_API_KEYS"))
        if not keys:
            raise ConfigurationError("GEMINI_API_KEYS is not set or contains no valid keys")

        values: dict = {
            "credentials": keys,
            "shared_secret": env.get("PROXY_TOKEN") or None,
            "allowed_origins": split_csv(env.get("ALLOWED_ORIGINS")),
        }

        if host := env.get("GATEWAY_HOST"):
            values["host"] = host
        if port := env.get("PORT") or env.get("GATEWAY_PORT"):
            values["port"] = port
        if max_body := env.get("MAX_BODY_BYTES"):
            values["max_body_bytes"] = max_body
        if level := env.get("LOG_LEVEL"):
            values["log_level"] = level.upper()
        if public_health := env.get("PUBLIC_HEALTH"):
            values["public_health"] = public_health.strip().lower() in ("1", "true", "yes", "on")

        upstream: dict = {}
        if base_url := env.get("UPSTREAM_BASE_URL"):
            upstream["base_url"] = base_url.rstrip("/")
        if timeout := env.get("UPSTREAM_TIMEOUT"):
            upstream["timeout"] = timeout
        if upstream:
            values["upstream"] = upstream

        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid gateway configuration: {e}") from e
