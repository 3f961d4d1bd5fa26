"""Exception hierarchy for the desk client.

Specific exceptions for each failure mode. Transient network failures
are retried by the transport supervisor; configuration and boot errors
are never retried.
"""
from __future__ import annotations


class DeskError(Exception):
    """Base exception for all desk client errors."""


class ConfigError(DeskError):
    """Connection settings rejected before any network call is made."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class HealthCheckError(DeskError):
    """The server's health endpoint did not confirm a healthy server."""
    def __init__(self, base_url: str, reason: str):
        self.base_url = base_url
        self.reason = reason
        super().__init__(f"Health check failed for {base_url}: {reason}")


class NotConnectedError(DeskError):
    """A request was issued on a supervisor that has no live client."""
    def __init__(self, directory: str | None = None):
        self.directory = directory
        if directory:
            super().__init__(f"Not connected to any server for {directory}")
        else:
            super().__init__("Not connected to any server")


class ServerRequestError(DeskError):
    """The server answered a command with a non-success status."""
    def __init__(self, method: str, path: str, status: int, body: str = ""):
        self.method = method
        self.path = path
        self.status = status
        self.body = body
        detail = f": {body[:200]}" if body else ""
        super().__init__(f"{method} {path} failed with {status}{detail}")


class BootError(DeskError):
    """The local server could not be located or started."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)
