"""Engine package - configuration, errors and the project registry."""
from .config import ClientConfig, ConnectionConfig, is_base_url_safe, validate_connection_config
from .errors import (
    BootError,
    ConfigError,
    DeskError,
    HealthCheckError,
    NotConnectedError,
    ServerRequestError,
)
from .project_registry import ProjectRegistry, ProjectRuntime

__all__ = [
    "BootError",
    "ClientConfig",
    "ConfigError",
    "ConnectionConfig",
    "DeskError",
    "HealthCheckError",
    "NotConnectedError",
    "ProjectRegistry",
    "ProjectRuntime",
    "ServerRequestError",
    "is_base_url_safe",
    "validate_connection_config",
]
