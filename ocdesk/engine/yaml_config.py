"""YAML configuration loader.

Optional file layered over the OCDESK_* environment variables. Values
present in the file win over the environment.

Example YAML:
    server:
      url: http://127.0.0.1:4096
      username: opencode
      start_local: true

    timing:
      health_interval: 30
      stale_stream: 45
      request_timeout: 30

    projects:
      - ~/code/webapp
      - directory: ~/code/infra
        server_url: https://agents.example.com
        username: ci
        password_env: INFRA_SERVER_PASSWORD
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path

import yaml

from .config import ClientConfig, ConnectionConfig
from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".ocdesk" / "config.yaml"

_TIMING_KEYS = {
    "health_interval": "health_interval_seconds",
    "stale_stream": "stale_stream_seconds",
    "stream_settle": "stream_settle_seconds",
    "request_timeout": "request_timeout_seconds",
    "health_timeout": "health_timeout_seconds",
}


@dataclass
class ProjectEntry:
    """One project listed in the config file."""
    directory: str
    server_url: str | None = None  # falls back to server.url
    username: str | None = None
    password_env: str | None = None  # name of the env var holding the password

    def connection(self, client: ClientConfig) -> ConnectionConfig:
        password = os.getenv(self.password_env) if self.password_env else None
        return ConnectionConfig(
            base_url=self.server_url or client.server_url,
            directory=self.directory,
            username=self.username or client.username,
            password=password,
        )


@dataclass
class DeskConfig:
    client: ClientConfig = field(default_factory=ClientConfig)
    projects: list[ProjectEntry] = field(default_factory=list)


def _parse_project(item: object, index: int) -> ProjectEntry:
    if isinstance(item, str):
        directory, item = item, {}
    elif isinstance(item, dict):
        directory = item.get("directory")
    else:
        raise ConfigError(f"projects[{index}]: expected a path or a mapping")
    if not isinstance(directory, str) or not directory.strip():
        raise ConfigError(f"projects[{index}]: directory is required")
    return ProjectEntry(
        directory=str(Path(directory.strip()).expanduser()),
        server_url=item.get("server_url"),
        username=item.get("username"),
        password_env=item.get("password_env"),
    )


def parse_config(raw: dict, base: ClientConfig | None = None) -> DeskConfig:
    """Build a DeskConfig from an already-parsed YAML document."""
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping")
    client = base or ClientConfig()

    server = raw.get("server") or {}
    if not isinstance(server, dict):
        raise ConfigError("server: expected a mapping")
    overrides: dict = {}
    if server.get("url"):
        overrides["server_url"] = str(server["url"])
    if server.get("username"):
        overrides["username"] = str(server["username"])
    if "start_local" in server:
        overrides["start_local_server"] = bool(server["start_local"])

    timing = raw.get("timing") or {}
    if not isinstance(timing, dict):
        raise ConfigError("timing: expected a mapping")
    for key, attr in _TIMING_KEYS.items():
        if key not in timing:
            continue
        try:
            value = float(timing[key])
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"timing.{key}: expected a number") from exc
        if value <= 0:
            raise ConfigError(f"timing.{key}: must be positive")
        overrides[attr] = value

    projects_raw = raw.get("projects") or []
    if not isinstance(projects_raw, list):
        raise ConfigError("projects: expected a list")
    projects = [_parse_project(item, i) for i, item in enumerate(projects_raw)]

    return DeskConfig(client=replace(client, **overrides), projects=projects)


def load_yaml_config(path: str | Path, base: ClientConfig | None = None) -> DeskConfig:
    """Load and parse a YAML config file.

    Missing files and YAML syntax errors propagate; structural problems
    raise ConfigError.
    """
    path = Path(path).expanduser()
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path)
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    config = parse_config(raw, base)
    logger.info(
        "Loaded config %s (%d project(s), server %s)",
        path, len(config.projects), config.client.server_url,
    )
    return config


def load_default_config(base: ClientConfig | None = None) -> DeskConfig:
    """Load ``~/.ocdesk/config.yaml`` if it exists, else defaults."""
    if not DEFAULT_CONFIG_PATH.is_file():
        logger.debug("No config file at %s; using defaults", DEFAULT_CONFIG_PATH)
        return DeskConfig(client=base or ClientConfig())
    return load_yaml_config(DEFAULT_CONFIG_PATH, base)
