"""Delta and snapshot merging for streamed part text.

Two sources write the same part fields: full snapshots (stream
``message.part.updated`` events and REST fetches) and incremental text
deltas. Deltas carry no offset, so a per-field cursor records how far
into the current value the stream has been confirmed. Cursors live in a
side table keyed by ``(part id, field)``; parts stay plain values.

Merge rules:

- a snapshot whose value the held value strictly extends is stale and
  is ignored for that field (held value and cursor are kept);
- any other snapshot value is adopted and the cursor moves to its end;
- a delta is checked against the text at the cursor and either appended,
  recognised as already applied, or dropped with the cursor resynced to
  the end of the held value.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum

from ocdesk.shared.models.message import Part

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CursorEntry:
    """Stream position for one part field.

    ``last_delta``/``last_end`` remember the most recent delta seen at
    this position, applied or dropped, so an immediate redelivery is a
    no-op.
    """
    position: int
    last_delta: str | None = None
    last_end: int | None = None


class DeltaAction(str, Enum):
    APPENDED = "appended"
    OVERLAP_APPENDED = "overlap_appended"
    ALREADY_APPLIED = "already_applied"
    REPEATED = "repeated"
    CLAMPED = "clamped"
    RESYNCED = "resynced"


@dataclass(frozen=True)
class DeltaOutcome:
    value: str
    cursor: CursorEntry
    action: DeltaAction

    @property
    def changed(self) -> bool:
        return self.action in (DeltaAction.APPENDED, DeltaAction.OVERLAP_APPENDED)


def apply_delta(current: str, cursor: CursorEntry | None, delta: str) -> DeltaOutcome:
    """Apply one text delta to *current* at the cursor.

    Without a cursor the field is treated as fully confirmed (cursor at
    the end of the value), which is where a snapshot leaves it.
    """
    length = len(current)
    position = cursor.position if cursor is not None else length

    if position > length:
        return DeltaOutcome(current, CursorEntry(length, delta, length), DeltaAction.CLAMPED)

    if (
        cursor is not None
        and cursor.last_delta is not None
        and delta == cursor.last_delta
        and cursor.last_end == position
    ):
        return DeltaOutcome(current, cursor, DeltaAction.REPEATED)

    position = max(0, position)
    end = position + len(delta)

    if end <= length:
        if current[position:end] == delta:
            return DeltaOutcome(
                current, CursorEntry(end, delta, end), DeltaAction.ALREADY_APPLIED,
            )
        return DeltaOutcome(
            current, CursorEntry(length, delta, length), DeltaAction.RESYNCED,
        )

    overlap = length - position
    if overlap > 0:
        if current[position:] != delta[:overlap]:
            return DeltaOutcome(
                current, CursorEntry(length, delta, length), DeltaAction.RESYNCED,
            )
        return DeltaOutcome(
            current + delta[overlap:],
            CursorEntry(end, delta, end),
            DeltaAction.OVERLAP_APPENDED,
        )
    return DeltaOutcome(current + delta, CursorEntry(end, delta, end), DeltaAction.APPENDED)


class CursorTable:
    """Delta cursors keyed by ``(part id, field)``."""

    def __init__(self) -> None:
        self._entries: dict[tuple[str, str], CursorEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, part_id: str, field: str) -> CursorEntry | None:
        return self._entries.get((part_id, field))

    def position(self, part_id: str, field: str, value: str) -> int:
        entry = self._entries.get((part_id, field))
        return entry.position if entry is not None else len(value)

    def set(self, part_id: str, field: str, entry: CursorEntry) -> None:
        self._entries[(part_id, field)] = entry

    def reset(self, part_id: str, field: str, length: int) -> None:
        """Place the cursor at the end of a freshly adopted value."""
        self._entries[(part_id, field)] = CursorEntry(length)

    def forget_part(self, part_id: str) -> None:
        for key in [k for k in self._entries if k[0] == part_id]:
            del self._entries[key]

    def clear(self) -> None:
        self._entries.clear()


def merge_snapshot(incoming: Part, existing: Part | None, cursors: CursorTable) -> Part:
    """Merge a full snapshot of a part with the held copy.

    Non-string payload always comes from the snapshot; string fields
    follow the stale-snapshot rule above, and a field the snapshot leaves
    out keeps its held value.
    """
    if existing is None:
        for name, value in incoming.fields.items():
            cursors.reset(incoming.id, name, len(value))
        return incoming

    fields = dict(incoming.fields)
    for name, new_value in incoming.fields.items():
        held = existing.fields.get(name)
        if held is not None and len(held) > len(new_value) and held.startswith(new_value):
            fields[name] = held
            continue
        cursors.reset(incoming.id, name, len(new_value))
    for name, held in existing.fields.items():
        if name not in fields:
            fields[name] = held
    return replace(incoming, fields=fields)


def apply_delta_to_part(part: Part, field: str, delta: str, cursors: CursorTable) -> Part:
    """Apply *delta* to ``part.fields[field]`` and record the new cursor."""
    current = part.get_field(field)
    outcome = apply_delta(current, cursors.get(part.id, field), delta)
    if outcome.action == DeltaAction.RESYNCED:
        logger.warning(
            "Delta for part %s field %s does not match held text; dropped",
            part.id, field,
        )
    elif outcome.action == DeltaAction.CLAMPED:
        logger.warning("Cursor for part %s field %s past end; clamped", part.id, field)
    cursors.set(part.id, field, outcome.cursor)
    if field not in part.fields or outcome.changed:
        return part.with_field(field, outcome.value)
    return part
