"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via OCDESK_* env vars.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from urllib.parse import urlparse

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_SERVER_PORT = 4096
DEFAULT_SERVER_URL = f"http://127.0.0.1:{DEFAULT_SERVER_PORT}"
DEFAULT_USERNAME = "opencode"

# Plain http is only acceptable for these hosts.
LOOPBACK_HOSTS = frozenset({"127.0.0.1", "localhost", "::1", "0.0.0.0"})


def is_base_url_safe(raw_url: str) -> bool:
    """Allow http:// only for loopback hosts; everything else needs https://."""
    try:
        parsed = urlparse(raw_url)
        host = parsed.hostname
    except ValueError:
        return False
    if not host:
        return False
    if parsed.scheme == "https":
        return True
    if parsed.scheme == "http":
        return host in LOOPBACK_HOSTS
    return False


@dataclass
class ConnectionConfig:
    """Target server for one project directory."""

    base_url: str
    directory: str
    username: str | None = None
    password: str | None = None

    @property
    def normalized_url(self) -> str:
        return self.base_url.strip().rstrip("/")


def validate_connection_config(config: object) -> ConnectionConfig:
    """Reject malformed or unsafe connection settings synchronously."""
    if not isinstance(config, ConnectionConfig):
        raise ConfigError("Invalid config")
    if not isinstance(config.base_url, str) or not config.base_url.strip():
        raise ConfigError("Server URL is required")
    if not isinstance(config.directory, str) or not config.directory.strip():
        raise ConfigError("Directory is required")
    if not is_base_url_safe(config.base_url.strip()):
        raise ConfigError(
            "Unsafe server URL: use HTTPS for remote servers, "
            "or HTTP only for localhost/127.0.0.1"
        )
    return config


@dataclass
class ClientConfig:
    """Desk client configuration."""

    server_url: str = DEFAULT_SERVER_URL
    username: str | None = None

    # Transport supervisor timing, in seconds.
    health_interval_seconds: float = 30.0
    stale_stream_seconds: float = 45.0
    stream_settle_seconds: float = 0.1
    request_timeout_seconds: float = 30.0
    health_timeout_seconds: float = 5.0

    # Local server bootstrap
    start_local_server: bool = True

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> ClientConfig:
        """Load configuration from OCDESK_* environment variables."""
        desk_vars = {
            k: v for k, v in os.environ.items()
            if k.startswith("OCDESK_") and k != "OCDESK_PASSWORD"
        }
        if desk_vars:
            logger.info(
                "ClientConfig.from_env: OCDESK_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(desk_vars.items())),
            )
        else:
            logger.debug("ClientConfig.from_env: no OCDESK_* env vars set, using defaults")

        return cls(
            server_url=os.getenv("OCDESK_SERVER_URL", cls.server_url),
            username=os.getenv("OCDESK_USERNAME") or None,
            health_interval_seconds=float(os.getenv(
                "OCDESK_HEALTH_INTERVAL", str(cls.health_interval_seconds)
            )),
            stale_stream_seconds=float(os.getenv(
                "OCDESK_STALE_STREAM", str(cls.stale_stream_seconds)
            )),
            request_timeout_seconds=float(os.getenv(
                "OCDESK_REQUEST_TIMEOUT", str(cls.request_timeout_seconds)
            )),
            start_local_server=(
                os.getenv("OCDESK_START_LOCAL_SERVER", "1").lower()
                not in {"0", "false", "no"}
            ),
            log_level=os.getenv("OCDESK_LOG_LEVEL", cls.log_level),
        )
