"""Event types delivered to the desk.

Each server stream payload (``{"type", "properties"}``) is parsed into
a typed dataclass tagged with the project directory it came from.
Connection status changes are generated locally by the supervisors.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ocdesk.shared.models.conversation import ConnectionStatus, Conversation
from ocdesk.shared.models.message import Message, Part


@dataclass
class ServerEvent:
    """Base event. Unknown wire types parse to this and are ignored."""
    event_type: str = ""
    directory: str = ""
    # Identity of the supervisor that received the event.
    link_id: int = 0


@dataclass
class ConnectionStatusChanged(ServerEvent):
    event_type: str = "connection.status"
    status: ConnectionStatus = field(default_factory=ConnectionStatus)


@dataclass
class SessionCreated(ServerEvent):
    event_type: str = "session.created"
    info: Conversation | None = None


@dataclass
class SessionUpdated(ServerEvent):
    event_type: str = "session.updated"
    info: Conversation | None = None


@dataclass
class SessionDeleted(ServerEvent):
    event_type: str = "session.deleted"
    info: Conversation | None = None


@dataclass
class MessageUpdated(ServerEvent):
    event_type: str = "message.updated"
    info: Message | None = None


@dataclass
class PartUpdated(ServerEvent):
    event_type: str = "message.part.updated"
    part: Part | None = None


@dataclass
class PartDelta(ServerEvent):
    event_type: str = "message.part.delta"
    session_id: str = ""
    message_id: str = ""
    part_id: str = ""
    field: str = "text"
    delta: str = ""


@dataclass
class PartRemoved(ServerEvent):
    event_type: str = "message.part.removed"
    session_id: str = ""
    message_id: str = ""
    part_id: str = ""


@dataclass
class SessionStatus(ServerEvent):
    event_type: str = "session.status"
    session_id: str = ""
    status_type: str = "idle"


@dataclass
class PermissionAsked(ServerEvent):
    event_type: str = "permission.asked"
    session_id: str = ""
    request: dict[str, Any] = field(default_factory=dict)


@dataclass
class PermissionReplied(ServerEvent):
    event_type: str = "permission.replied"
    session_id: str = ""


@dataclass
class QuestionAsked(ServerEvent):
    event_type: str = "question.asked"
    session_id: str = ""
    request: dict[str, Any] = field(default_factory=dict)


@dataclass
class QuestionReplied(ServerEvent):
    event_type: str = "question.replied"
    session_id: str = ""


@dataclass
class QuestionRejected(ServerEvent):
    event_type: str = "question.rejected"
    session_id: str = ""


@dataclass
class SessionError(ServerEvent):
    event_type: str = "session.error"
    session_id: str | None = None
    error: str = ""


def _session_info(props: dict) -> dict[str, Any]:
    return {"info": Conversation.from_wire(props["info"])}


def _message_info(props: dict) -> dict[str, Any]:
    return {"info": Message.from_wire(props["info"])}


def _part(props: dict) -> dict[str, Any]:
    return {"part": Part.from_wire(props["part"])}


def _part_ref(props: dict) -> dict[str, Any]:
    return {
        "session_id": props.get("sessionID", ""),
        "message_id": props.get("messageID", ""),
        "part_id": props.get("partID", ""),
    }


def _part_delta(props: dict) -> dict[str, Any]:
    return {
        **_part_ref(props),
        "field": props.get("field") or "text",
        "delta": props.get("delta") or "",
    }


def _status(props: dict) -> dict[str, Any]:
    status = props.get("status") or {}
    return {
        "session_id": props.get("sessionID", ""),
        "status_type": status.get("type", "idle") if isinstance(status, dict) else str(status),
    }


def _request(props: dict) -> dict[str, Any]:
    return {"session_id": props.get("sessionID", ""), "request": dict(props)}


def _session_only(props: dict) -> dict[str, Any]:
    return {"session_id": props.get("sessionID", "")}


def _error(props: dict) -> dict[str, Any]:
    err = props.get("error")
    message = ""
    if isinstance(err, dict):
        data = err.get("data")
        if isinstance(data, dict) and "message" in data:
            message = str(data["message"])
        else:
            message = str(err.get("name") or "")
    elif err:
        message = str(err)
    return {"session_id": props.get("sessionID"), "error": message}


_EVENT_MAP: dict[str, tuple[type[ServerEvent], Any]] = {
    "session.created": (SessionCreated, _session_info),
    "session.updated": (SessionUpdated, _session_info),
    "session.deleted": (SessionDeleted, _session_info),
    "message.updated": (MessageUpdated, _message_info),
    "message.part.updated": (PartUpdated, _part),
    "message.part.delta": (PartDelta, _part_delta),
    "message.part.removed": (PartRemoved, _part_ref),
    "session.status": (SessionStatus, _status),
    "permission.asked": (PermissionAsked, _request),
    "permission.replied": (PermissionReplied, _session_only),
    "question.asked": (QuestionAsked, _request),
    "question.replied": (QuestionReplied, _session_only),
    "question.rejected": (QuestionRejected, _session_only),
    "session.error": (SessionError, _error),
}

# Every concrete event class, including the locally generated one.
EVENT_CLASSES: tuple[type[ServerEvent], ...] = (
    ConnectionStatusChanged,
    *(cls for cls, _ in _EVENT_MAP.values()),
)


def parse_server_event(
    data: dict[str, Any], directory: str = "", link_id: int = 0,
) -> ServerEvent:
    """Convert a bare stream payload into a typed event.

    Unknown types, and known types whose properties are malformed,
    come back as a plain ServerEvent.
    """
    event_type = data.get("type", "")
    props = data.get("properties") or {}
    entry = _EVENT_MAP.get(event_type)
    if entry is None or not isinstance(props, dict):
        return ServerEvent(event_type=event_type, directory=directory, link_id=link_id)
    cls, extract = entry
    try:
        fields = extract(props)
    except (KeyError, TypeError, ValueError):
        return ServerEvent(event_type=event_type, directory=directory, link_id=link_id)
    return cls(directory=directory, link_id=link_id, **fields)
