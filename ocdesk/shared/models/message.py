"""Message, part and queued prompt models.

Records are plain frozen values. The reconciler builds new instances
instead of mutating existing ones, so snapshots handed to readers never
change underneath them.
"""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any

# Wire keys that identify a part rather than carry content.
_PART_IDENTITY_KEYS = frozenset({"id", "messageID", "sessionID", "type"})


def _gen_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass(frozen=True)
class SelectedModel:
    provider_id: str
    model_id: str

    @property
    def key(self) -> str:
        return f"{self.provider_id}/{self.model_id}"

    def to_wire(self) -> dict[str, str]:
        return {"providerID": self.provider_id, "modelID": self.model_id}


@dataclass(frozen=True)
class Message:
    id: str
    session_id: str
    role: str = "assistant"
    provider_id: str | None = None
    model_id: str | None = None
    agent: str | None = None
    variant: str | None = None
    created_at: float = 0.0
    completed_at: float | None = None
    error: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def model(self) -> SelectedModel | None:
        if self.provider_id and self.model_id:
            return SelectedModel(self.provider_id, self.model_id)
        return None

    @classmethod
    def placeholder(cls, message_id: str, session_id: str) -> Message:
        """Stand-in for a message referenced before its snapshot arrived."""
        return cls(id=message_id, session_id=session_id)

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> Message:
        t = data.get("time") or {}
        provider_id = data.get("providerID")
        model_id = data.get("modelID")
        # User messages nest the model selection.
        nested = data.get("model")
        if isinstance(nested, dict) and not (provider_id and model_id):
            provider_id = nested.get("providerID")
            model_id = nested.get("modelID")
        error = data.get("error")
        error_text = None
        if isinstance(error, dict):
            detail = error.get("data") or {}
            error_text = detail.get("message") or error.get("name") or "Error"
        elif isinstance(error, str):
            error_text = error
        return cls(
            id=data["id"],
            session_id=data.get("sessionID", ""),
            role=data.get("role", "assistant"),
            provider_id=provider_id,
            model_id=model_id,
            agent=data.get("agent") or data.get("mode"),
            variant=data.get("variant"),
            created_at=float(t.get("created") or 0),
            completed_at=t.get("completed"),
            error=error_text,
            raw=dict(data),
        )


@dataclass(frozen=True)
class Part:
    """One content fragment of a message.

    ``fields`` holds the string-valued content (``text`` for text and
    reasoning parts); ``data`` holds everything else, such as a tool
    part's ``state``.
    """
    id: str
    message_id: str
    session_id: str
    type: str = "text"
    fields: dict[str, str] = field(default_factory=dict)
    data: dict[str, Any] = field(default_factory=dict)

    def get_field(self, name: str) -> str:
        return self.fields.get(name, "")

    def with_field(self, name: str, value: str) -> Part:
        return replace(self, fields={**self.fields, name: value})

    @property
    def tool(self) -> str | None:
        return self.fields.get("tool") or self.data.get("tool")

    @property
    def child_session_id(self) -> str | None:
        """Conversation id a ``task`` tool delegated to, if exposed yet."""
        if self.type != "tool" or (self.tool or "").lower() != "task":
            return None
        state = self.data.get("state")
        if not isinstance(state, dict):
            return None
        metadata = state.get("metadata")
        if not isinstance(metadata, dict):
            return None
        sid = metadata.get("sessionId")
        return sid if isinstance(sid, str) and sid else None

    @classmethod
    def placeholder(
        cls, part_id: str, message_id: str, session_id: str, field_name: str,
    ) -> Part:
        return cls(
            id=part_id,
            message_id=message_id,
            session_id=session_id,
            fields={field_name: ""},
        )

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> Part:
        fields: dict[str, str] = {}
        rest: dict[str, Any] = {}
        for key, value in data.items():
            if key in _PART_IDENTITY_KEYS:
                continue
            if isinstance(value, str):
                fields[key] = value
            else:
                rest[key] = value
        return cls(
            id=data["id"],
            message_id=data.get("messageID", ""),
            session_id=data.get("sessionID", ""),
            type=data.get("type", "text"),
            fields=fields,
            data=rest,
        )

    def to_wire(self) -> dict[str, Any]:
        return {
            **self.data,
            **self.fields,
            "id": self.id,
            "messageID": self.message_id,
            "sessionID": self.session_id,
            "type": self.type,
        }


@dataclass(frozen=True)
class MessageEntry:
    """A message together with its ordered parts."""
    info: Message
    parts: tuple[Part, ...] = ()

    @property
    def id(self) -> str:
        return self.info.id

    def find_part(self, part_id: str) -> Part | None:
        for p in self.parts:
            if p.id == part_id:
                return p
        return None

    def with_part(self, part: Part) -> MessageEntry:
        """Replace the part with the same id, or append it."""
        for i, p in enumerate(self.parts):
            if p.id == part.id:
                parts = self.parts[:i] + (part,) + self.parts[i + 1:]
                return replace(self, parts=parts)
        return replace(self, parts=self.parts + (part,))

    def without_part(self, part_id: str) -> MessageEntry:
        return replace(self, parts=tuple(p for p in self.parts if p.id != part_id))

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> MessageEntry:
        return cls(
            info=Message.from_wire(data["info"]),
            parts=tuple(Part.from_wire(p) for p in data.get("parts") or []),
        )


@dataclass(frozen=True)
class QueuedPrompt:
    """A prompt waiting for its conversation to go idle.

    Model, agent and variant are captured when the prompt is queued.
    """
    text: str
    attachments: tuple[str, ...] = ()
    model: SelectedModel | None = None
    agent: str | None = None
    variant: str | None = None
    id: str = field(default_factory=_gen_id)
    enqueued_at: float = field(default_factory=time.time)
