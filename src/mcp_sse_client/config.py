"""Client options and environment-driven defaults."""

import logging
import os
import typing as t
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

logger = logging.getLogger(__name__)

DEFAULT_PROTOCOL_VERSION: t.Final[str] = "2025-06-18"
LEGACY_PROTOCOL_VERSION: t.Final[str] = "2024-11-05"
DEFAULT_REQUEST_TIMEOUT_S: t.Final[float] = 60.0
DEFAULT_CLIENT_NAME: t.Final[str] = "mcp-sse-client"
DEFAULT_CLIENT_VERSION: t.Final[str] = "1.0.0"


@dataclass(frozen=True)
class ClientOptions:
    """Settings sent during the handshake and with every HTTP request."""

    client_name: str = DEFAULT_CLIENT_NAME
    client_version: str = DEFAULT_CLIENT_VERSION
    protocol_version: str = DEFAULT_PROTOCOL_VERSION
    capabilities: Mapping[str, t.Any] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "capabilities", MappingProxyType(dict(self.capabilities)))
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))


def build_headers(headers: Mapping[str, str] | None = None, token: str | None = None) -> dict[str, str]:
    """Merge extra headers with an optional bearer token."""
    merged = dict(headers or {})
    if token and token.strip():
        merged["Authorization"] = f"Bearer {token.strip()}"
    return merged


def default_sse_url() -> str | None:
    """The event stream URL from ``SSE_URL``, if set."""
    return os.getenv("SSE_URL") or None


def access_token_from_env() -> str | None:
    """The bearer token from ``API_ACCESS_TOKEN``, if set."""
    return os.getenv("API_ACCESS_TOKEN") or None


def parse_request_timeout_s(raw: str | None = None) -> float:
    """Parse a request timeout in seconds, defaulting to ``MCP_REQUEST_TIMEOUT_S``."""
    if raw is None:
        raw = os.getenv("MCP_REQUEST_TIMEOUT_S")
    if raw is None:
        return DEFAULT_REQUEST_TIMEOUT_S
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid request timeout %r; using default %gs", raw, DEFAULT_REQUEST_TIMEOUT_S)
        return DEFAULT_REQUEST_TIMEOUT_S
    if value <= 0:
        logger.warning("Request timeout must be positive, got %r; using default %gs", raw, DEFAULT_REQUEST_TIMEOUT_S)
        return DEFAULT_REQUEST_TIMEOUT_S
    return value
