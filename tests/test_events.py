from __future__ import annotations

from ocdesk.adapters.events import (
    EVENT_CLASSES,
    MessageUpdated,
    PartDelta,
    PartRemoved,
    PartUpdated,
    PermissionAsked,
    QuestionRejected,
    ServerEvent,
    SessionCreated,
    SessionError,
    SessionStatus,
    parse_server_event,
)
from ocdesk.shared.models.message import Part


def _event(event_type: str, **props) -> dict:
    return {"type": event_type, "properties": props}


def test_session_created_carries_conversation_and_origin() -> None:
    event = parse_server_event(
        _event(
            "session.created",
            info={
                "id": "c1",
                "directory": "/a",
                "title": "Fix login",
                "time": {"created": 100, "updated": 120},
            },
        ),
        directory="/a",
        link_id=7,
    )
    assert isinstance(event, SessionCreated)
    assert event.directory == "/a"
    assert event.link_id == 7
    assert event.info.id == "c1"
    assert event.info.title == "Fix login"
    assert event.info.updated_at == 120.0
    assert event.info.is_root


def test_message_and_part_events() -> None:
    message = parse_server_event(_event(
        "message.updated",
        info={
            "id": "m1", "sessionID": "c1", "role": "assistant",
            "providerID": "anthropic", "modelID": "sonnet", "mode": "plan",
        },
    ))
    assert isinstance(message, MessageUpdated)
    assert message.info.model.key == "anthropic/sonnet"
    assert message.info.agent == "plan"

    part = parse_server_event(_event(
        "message.part.updated",
        part={
            "id": "p1", "messageID": "m1", "sessionID": "c1", "type": "tool",
            "tool": "task", "state": {"metadata": {"sessionId": "child-1"}},
        },
    ))
    assert isinstance(part, PartUpdated)
    assert part.part.child_session_id == "child-1"
    assert part.part.fields == {"tool": "task"}

    delta = parse_server_event(_event(
        "message.part.delta",
        sessionID="c1", messageID="m1", partID="p2", field="text", delta="Hel",
    ))
    assert isinstance(delta, PartDelta)
    assert (delta.session_id, delta.part_id, delta.field, delta.delta) == ("c1", "p2", "text", "Hel")

    removed = parse_server_event(_event(
        "message.part.removed", sessionID="c1", messageID="m1", partID="p2",
    ))
    assert isinstance(removed, PartRemoved)
    assert removed.part_id == "p2"


def test_status_permission_question_and_error() -> None:
    status = parse_server_event(_event("session.status", sessionID="c1", status={"type": "busy"}))
    assert isinstance(status, SessionStatus)
    assert status.status_type == "busy"

    asked = parse_server_event(_event("permission.asked", sessionID="c1", id="perm-1"))
    assert isinstance(asked, PermissionAsked)
    assert asked.request["id"] == "perm-1"

    rejected = parse_server_event(_event("question.rejected", sessionID="c1"))
    assert isinstance(rejected, QuestionRejected)

    error = parse_server_event(_event(
        "session.error",
        sessionID="c1",
        error={"name": "ProviderAuthError", "data": {"message": "Invalid API key"}},
    ))
    assert isinstance(error, SessionError)
    assert error.error == "Invalid API key"


def test_unknown_and_malformed_events_parse_to_base() -> None:
    unknown = parse_server_event(_event("server.heartbeat"), directory="/a")
    assert type(unknown) is ServerEvent
    assert unknown.event_type == "server.heartbeat"

    malformed = parse_server_event(_event("session.created"))
    assert type(malformed) is ServerEvent

    not_a_dict = parse_server_event({"type": "session.status", "properties": "busy"})
    assert type(not_a_dict) is ServerEvent


def test_event_classes_are_unique_and_typed() -> None:
    assert len(set(EVENT_CLASSES)) == len(EVENT_CLASSES)
    assert all(issubclass(cls, ServerEvent) for cls in EVENT_CLASSES)


def test_task_tool_name_matches_any_case() -> None:
    part = Part(
        id="t1", message_id="m1", session_id="c1", type="tool",
        fields={"tool": "Task"}, data={"state": {"metadata": {"sessionId": "child-2"}}},
    )
    assert part.child_session_id == "child-2"
    assert Part(id="t2", message_id="m1", session_id="c1", type="tool").child_session_id is None
