from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from ocdesk.engine.config import (
    DEFAULT_SERVER_URL,
    ClientConfig,
    ConnectionConfig,
    is_base_url_safe,
    validate_connection_config,
)
from ocdesk.engine.errors import ConfigError
from ocdesk.engine.yaml_config import load_yaml_config, parse_config


@pytest.mark.parametrize("url", [
    "http://127.0.0.1:4096",
    "http://localhost:4096/",
    "http://[::1]:4096",
    "https://agents.example.com",
    "https://10.0.0.5:8443",
])
def test_safe_urls(url: str) -> None:
    assert is_base_url_safe(url)


@pytest.mark.parametrize("url", [
    "http://agents.example.com",
    "http://192.168.1.4:4096",
    "ftp://localhost",
    "not a url",
    "",
])
def test_unsafe_urls(url: str) -> None:
    assert not is_base_url_safe(url)


def test_validate_rejects_wrong_type() -> None:
    with pytest.raises(ConfigError, match="Invalid config"):
        validate_connection_config({"base_url": DEFAULT_SERVER_URL})


def test_validate_requires_url_and_directory() -> None:
    with pytest.raises(ConfigError, match="Server URL is required"):
        validate_connection_config(ConnectionConfig(base_url="  ", directory="/a"))
    with pytest.raises(ConfigError, match="Directory is required"):
        validate_connection_config(ConnectionConfig(base_url=DEFAULT_SERVER_URL, directory=""))


def test_validate_rejects_plain_http_to_remote_host() -> None:
    with pytest.raises(ConfigError) as exc_info:
        validate_connection_config(
            ConnectionConfig(base_url="http://agents.example.com", directory="/a")
        )
    assert exc_info.value.reason.startswith("Unsafe server URL")


def test_normalized_url_strips_trailing_slash() -> None:
    config = ConnectionConfig(base_url=" http://127.0.0.1:4096/ ", directory="/a")
    assert config.normalized_url == "http://127.0.0.1:4096"


def test_from_env_defaults() -> None:
    with patch.dict(os.environ, {}, clear=True):
        config = ClientConfig.from_env()
    assert config.server_url == DEFAULT_SERVER_URL
    assert config.health_interval_seconds == 30.0
    assert config.stale_stream_seconds == 45.0
    assert config.start_local_server is True


def test_from_env_overrides() -> None:
    env = {
        "OCDESK_SERVER_URL": "https://agents.example.com",
        "OCDESK_HEALTH_INTERVAL": "10",
        "OCDESK_STALE_STREAM": "20",
        "OCDESK_START_LOCAL_SERVER": "false",
        "OCDESK_LOG_LEVEL": "DEBUG",
    }
    with patch.dict(os.environ, env, clear=True):
        config = ClientConfig.from_env()
    assert config.server_url == "https://agents.example.com"
    assert config.health_interval_seconds == 10.0
    assert config.stale_stream_seconds == 20.0
    assert config.start_local_server is False
    assert config.log_level == "DEBUG"


def test_yaml_config_projects_and_timing(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        "server:\n"
        "  url: https://agents.example.com\n"
        "  start_local: false\n"
        "timing:\n"
        "  health_interval: 12\n"
        "  stale_stream: 20\n"
        "projects:\n"
        "  - /work/webapp\n"
        "  - directory: /work/infra\n"
        "    server_url: http://127.0.0.1:5000\n"
        "    password_env: INFRA_PW\n",
        encoding="utf-8",
    )
    config = load_yaml_config(path)

    assert config.client.server_url == "https://agents.example.com"
    assert config.client.start_local_server is False
    assert config.client.health_interval_seconds == 12.0
    assert config.client.stale_stream_seconds == 20.0
    assert [p.directory for p in config.projects] == ["/work/webapp", "/work/infra"]

    with patch.dict(os.environ, {"INFRA_PW": "s3cret"}):
        infra = config.projects[1].connection(config.client)
    assert infra.base_url == "http://127.0.0.1:5000"
    assert infra.password == "s3cret"

    webapp = config.projects[0].connection(config.client)
    assert webapp.base_url == "https://agents.example.com"
    assert webapp.password is None


def test_yaml_config_rejects_bad_structure() -> None:
    with pytest.raises(ConfigError, match="projects"):
        parse_config({"projects": "not-a-list"})
    with pytest.raises(ConfigError, match="directory is required"):
        parse_config({"projects": [{"server_url": "http://127.0.0.1:1"}]})
    with pytest.raises(ConfigError, match="timing.health_interval"):
        parse_config({"timing": {"health_interval": "soon"}})
    with pytest.raises(ConfigError, match="must be positive"):
        parse_config({"timing": {"stale_stream": 0}})


def test_yaml_config_missing_file_and_syntax_errors_propagate(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "missing.yaml")
    bad = tmp_path / "bad.yaml"
    bad.write_text("projects: [unclosed\n", encoding="utf-8")
    with pytest.raises(yaml.YAMLError):
        load_yaml_config(bad)


def test_empty_yaml_keeps_base_config(tmp_path: Path) -> None:
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")
    base = ClientConfig(server_url="https://base.example.com")
    config = load_yaml_config(path, base)
    assert config.client.server_url == "https://base.example.com"
    assert config.projects == []
