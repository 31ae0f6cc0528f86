"""Pydantic models for the Failover Gateway."""

from pydantic import BaseModel, ConfigDict, Field


DEFAULT_UPSTREAM_URL = "https://generativelanguage.googleapis.com"

# Authentication/authorization failure, quota exhaustion, and upstream 5xx.
# Ordinary client errors (400, 404, ...) are deliberately absent: a malformed
# request fails the same way with every credential.
DEFAULT_RETRYABLE_STATUSES = frozenset({401, 403, 429, 500, 502, 503, 504})


class UpstreamConfig(BaseModel):
    """Configuration for the upstream generative-content API."""

    model_config = ConfigDict(frozen=True)

    base_url: str = DEFAULT_UPSTREAM_URL
    timeout: float = Field(default=60.0, gt=0, description="Per-phase timeout in seconds")
    connect_timeout: float = Field(default=10.0, gt=0)
    credential_param: str = Field(default="key", description="Query parameter carrying the credential")
    default_content_type: str = "application/json"
    retryable_statuses: frozenset[int] = DEFAULT_RETRYABLE_STATUSES


class ErrorResponse(BaseModel):
    """Body of every gateway-originated error."""
    error: str
