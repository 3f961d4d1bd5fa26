"""Conversation and connection status models."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class LinkState(str, Enum):
    """Connection states of a project link. See transport/lifecycle.py."""
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


@dataclass(frozen=True)
class ConnectionStatus:
    """Point-in-time status of one project's connection.

    Only the owning supervisor produces new instances.
    """
    state: LinkState = LinkState.IDLE
    server_url: str | None = None
    server_version: str | None = None
    last_event_at: float | None = None
    error: str | None = None

    @property
    def connected(self) -> bool:
        return self.state == LinkState.CONNECTED


@dataclass(frozen=True)
class RevertMarker:
    message_id: str
    part_id: str | None = None


@dataclass(frozen=True)
class Conversation:
    """A server-side session as seen by the desk."""
    id: str
    directory: str = ""
    parent_id: str | None = None
    title: str = ""
    created_at: float = 0.0
    updated_at: float = 0.0
    revert: RevertMarker | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_root(self) -> bool:
        return not self.parent_id

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> Conversation:
        time = data.get("time") or {}
        revert_raw = data.get("revert")
        revert = None
        if isinstance(revert_raw, dict) and revert_raw.get("messageID"):
            revert = RevertMarker(
                message_id=revert_raw["messageID"],
                part_id=revert_raw.get("partID"),
            )
        return cls(
            id=data["id"],
            directory=data.get("directory") or "",
            parent_id=data.get("parentID") or None,
            title=data.get("title") or "",
            created_at=float(time.get("created") or 0),
            updated_at=float(time.get("updated") or time.get("created") or 0),
            revert=revert,
            raw=dict(data),
        )
