"""Streaming state reconciler.

The single writer of the desk's conversation state. Stream events (via
``apply``) and REST results (via the ``install_*``/``set_*`` methods)
are the only ways records enter the tree; readers get immutable
``DeskSnapshot`` values.

Where records go:

- the active conversation is fully materialised in ``_messages``;
- sub-conversations discovered through ``task`` tool parts are kept in
  nested buffers while the parent is active;
- every other conversation that streams is kept in a shadow buffer,
  which is handed to the active view when the user switches to it and
  dropped once the conversation goes idle.

While the active conversation's history fetch is in flight its events
are held back and replayed, in arrival order, on top of the fetch result.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any

from ocdesk.adapters.events import (
    ConnectionStatusChanged,
    MessageUpdated,
    PartDelta,
    PartRemoved,
    PartUpdated,
    PermissionAsked,
    PermissionReplied,
    QuestionAsked,
    QuestionRejected,
    QuestionReplied,
    ServerEvent,
    SessionCreated,
    SessionDeleted,
    SessionError,
    SessionStatus,
    SessionUpdated,
)
from ocdesk.shared.models.conversation import ConnectionStatus, Conversation
from ocdesk.shared.models.message import (
    Message,
    MessageEntry,
    Part,
    QueuedPrompt,
    SelectedModel,
)
from ocdesk.state import selection
from ocdesk.state.deltas import CursorTable, apply_delta_to_part, merge_snapshot

logger = logging.getLogger(__name__)

# Status types that mean the server is still working on a conversation.
BUSY_STATUS_TYPES = frozenset({"busy", "retry"})

MessageStore = dict[str, MessageEntry]


class BootState(str, Enum):
    IDLE = "idle"
    CHECKING_SERVER = "checking-server"
    STARTING_SERVER = "starting-server"
    READY = "ready"
    ERROR = "error"


@dataclass(frozen=True)
class DeskSnapshot:
    """Immutable read-side view of the desk state."""
    active_session_id: str | None = None
    messages: tuple[MessageEntry, ...] = ()
    is_loading: bool = False
    is_busy: bool = False
    sessions: tuple[Conversation, ...] = ()
    connections: Mapping[str, ConnectionStatus] = field(default_factory=dict)
    busy_session_ids: frozenset[str] = frozenset()
    unread_session_ids: frozenset[str] = frozenset()
    child_sessions: Mapping[str, tuple[MessageEntry, ...]] = field(default_factory=dict)
    pending_permissions: Mapping[str, dict] = field(default_factory=dict)
    pending_questions: Mapping[str, dict] = field(default_factory=dict)
    queued_prompts: Mapping[str, tuple[QueuedPrompt, ...]] = field(default_factory=dict)
    last_error: str | None = None
    boot_state: BootState = BootState.IDLE
    boot_error: str | None = None
    selected_model: SelectedModel | None = None
    selected_agent: str | None = None
    current_variant: str | None = None


def _sort_newest_first(sessions: Iterable[Conversation]) -> list[Conversation]:
    return sorted(
        sessions,
        key=lambda s: (s.updated_at or s.created_at, s.id),
        reverse=True,
    )


class Reconciler:
    """Event-sourced desk state with snapshot/delta merging."""

    def __init__(self) -> None:
        self.cursors = CursorTable()

        self._connections: dict[str, ConnectionStatus] = {}
        self._sessions: list[Conversation] = []

        self._active_id: str | None = None
        self._messages: MessageStore = {}
        self._loading = False
        self._pending: list[ServerEvent] = []

        self._buffers: dict[str, MessageStore] = {}
        self._children: dict[str, MessageStore] = {}
        self._tracked: set[str] = set()

        self._busy: set[str] = set()
        self._unread: set[str] = set()
        self._permissions: dict[str, dict] = {}
        self._questions: dict[str, dict] = {}
        self._queues: dict[str, list[QueuedPrompt]] = {}

        self.last_error: str | None = None
        self.boot_state = BootState.IDLE
        self.boot_error: str | None = None

        self.providers: list[dict] = []
        self.provider_defaults: dict[str, str] = {}
        self.agents: list[dict] = []
        self.commands: list[dict] = []
        self.selected_model: SelectedModel | None = None
        self.selected_agent: str | None = None
        self.variant_selections: dict[str, str] = {}

        self._listeners: list[Callable[[], None]] = []
        self._idle_listeners: list[Callable[[str], None]] = []
        self._completion_listeners: list[Callable[[str, str], None]] = []

        self._handlers: dict[type[ServerEvent], Callable[[Any], None]] = {
            ConnectionStatusChanged: self._on_connection_status,
            SessionCreated: self._on_session_created,
            SessionUpdated: self._on_session_updated,
            SessionDeleted: self._on_session_deleted,
            MessageUpdated: self._on_message_updated,
            PartUpdated: self._on_part_updated,
            PartDelta: self._on_part_delta,
            PartRemoved: self._on_part_removed,
            SessionStatus: self._on_session_status,
            PermissionAsked: self._on_permission_asked,
            PermissionReplied: self._on_permission_replied,
            QuestionAsked: self._on_question_asked,
            QuestionReplied: self._on_question_cleared,
            QuestionRejected: self._on_question_cleared,
            SessionError: self._on_session_error,
        }

    # ── listeners ──────────────────────────────────────────────

    def subscribe(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Call *listener* after every state change. Returns an unsubscriber."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def on_idle(self, listener: Callable[[str], None]) -> None:
        """Call *listener(session_id)* when a conversation leaves busy."""
        self._idle_listeners.append(listener)

    def on_completion(self, listener: Callable[[str, str], None]) -> None:
        """Call *listener(session_id, title)* when a background conversation finishes."""
        self._completion_listeners.append(listener)

    def _changed(self) -> None:
        for listener in list(self._listeners):
            listener()

    # ── read side ──────────────────────────────────────────────

    @property
    def active_session_id(self) -> str | None:
        return self._active_id

    @property
    def is_loading(self) -> bool:
        return self._loading

    @property
    def handled_event_types(self) -> frozenset[type[ServerEvent]]:
        return frozenset(self._handlers)

    def is_busy(self, session_id: str) -> bool:
        return session_id in self._busy

    def knows_project(self, directory: str) -> bool:
        return directory in self._connections

    def session(self, session_id: str) -> Conversation | None:
        for s in self._sessions:
            if s.id == session_id:
                return s
        return None

    def queue_for(self, session_id: str) -> tuple[QueuedPrompt, ...]:
        return tuple(self._queues.get(session_id, ()))

    def shadow_buffer(self, session_id: str) -> tuple[MessageEntry, ...]:
        return tuple(self._buffers.get(session_id, {}).values())

    @property
    def current_variant(self) -> str | None:
        return selection.resolve_variant(
            self.selected_model, self.variant_selections, self.agents, self.selected_agent,
        )

    def snapshot(self) -> DeskSnapshot:
        active = self._active_id
        return DeskSnapshot(
            active_session_id=active,
            messages=tuple(self._messages.values()),
            is_loading=self._loading,
            is_busy=active is not None and active in self._busy,
            sessions=tuple(self._sessions),
            connections=MappingProxyType(dict(self._connections)),
            busy_session_ids=frozenset(self._busy),
            unread_session_ids=frozenset(self._unread),
            child_sessions=MappingProxyType(
                {sid: tuple(store.values()) for sid, store in self._children.items()}
            ),
            pending_permissions=MappingProxyType(dict(self._permissions)),
            pending_questions=MappingProxyType(dict(self._questions)),
            queued_prompts=MappingProxyType(
                {sid: tuple(items) for sid, items in self._queues.items()}
            ),
            last_error=self.last_error,
            boot_state=self.boot_state,
            boot_error=self.boot_error,
            selected_model=self.selected_model,
            selected_agent=self.selected_agent,
            current_variant=self.current_variant,
        )

    # ── event funnel ───────────────────────────────────────────

    def apply(self, event: ServerEvent) -> None:
        """Fold one inbound event into the state. Unknown types are ignored."""
        handler = self._handlers.get(type(event))
        if handler is None:
            return
        handler(event)
        self._changed()

    def _hold_for_active(self, session_id: str, event: ServerEvent) -> bool:
        """Queue *event* while the active conversation's fetch is in flight."""
        if session_id == self._active_id and self._loading:
            self._pending.append(event)
            return True
        return False

    def _store_for(self, session_id: str) -> MessageStore | None:
        """Store an event for *session_id* lands in, or None to ignore it.

        Background conversations only get a shadow buffer while busy; an
        idle one is refetched when it becomes active.
        """
        if session_id == self._active_id:
            return self._messages
        if session_id in self._tracked:
            return self._children.setdefault(session_id, {})
        if session_id in self._buffers:
            return self._buffers[session_id]
        if session_id in self._busy:
            return self._buffers.setdefault(session_id, {})
        return None

    # connections and conversation list

    def _on_connection_status(self, event: ConnectionStatusChanged) -> None:
        self._connections[event.directory] = event.status

    def _lists(self, info: Conversation | None) -> bool:
        return info is not None and info.is_root and info.directory in self._connections

    def _on_session_created(self, event: SessionCreated) -> None:
        info = event.info
        if not self._lists(info):
            return
        others = [s for s in self._sessions if s.id != info.id]
        self._sessions = _sort_newest_first([info, *others])

    def _on_session_updated(self, event: SessionUpdated) -> None:
        info = event.info
        if not self._lists(info):
            return
        for i, s in enumerate(self._sessions):
            if s.id == info.id:
                # In place: re-sorting while streaming makes the list jump.
                self._sessions[i] = info
                return
        self._sessions.insert(0, info)

    def _on_session_deleted(self, event: SessionDeleted) -> None:
        if event.info is not None:
            self._forget_session(event.info.id)

    def _forget_session(self, session_id: str) -> None:
        self._sessions = [s for s in self._sessions if s.id != session_id]
        self._queues.pop(session_id, None)
        self._drop_store(self._buffers.pop(session_id, None))
        self._unread.discard(session_id)
        self._busy.discard(session_id)
        self._permissions.pop(session_id, None)
        self._questions.pop(session_id, None)
        if self._active_id == session_id:
            self._clear_active()

    def _clear_active(self) -> None:
        self._drop_store(self._messages)
        self._active_id = None
        self._messages = {}
        self._loading = False
        self._pending = []

    def _drop_store(self, store: MessageStore | None) -> None:
        if not store:
            return
        for entry in store.values():
            for part in entry.parts:
                self.cursors.forget_part(part.id)

    # messages and parts

    def _on_message_updated(self, event: MessageUpdated) -> None:
        info = event.info
        if info is None or self._hold_for_active(info.session_id, event):
            return
        store = self._store_for(info.session_id)
        if store is None:
            return
        entry = store.get(info.id)
        store[info.id] = replace(entry, info=info) if entry else MessageEntry(info=info)
        if info.session_id == self._active_id:
            self._sync_selection_from_message(info)

    def _on_part_updated(self, event: PartUpdated) -> None:
        part = event.part
        if part is None:
            return
        if part.session_id == self._active_id:
            child_id = part.child_session_id
            if child_id and child_id not in self._tracked:
                self._tracked.add(child_id)
                self._children.setdefault(child_id, {})
            if self._hold_for_active(part.session_id, event):
                return
        store = self._store_for(part.session_id)
        if store is None:
            return
        entry = self._entry_or_placeholder(store, part.session_id, part.message_id)
        store[part.message_id] = entry.with_part(
            merge_snapshot(part, entry.find_part(part.id), self.cursors)
        )

    def _on_part_delta(self, event: PartDelta) -> None:
        if self._hold_for_active(event.session_id, event):
            return
        store = self._store_for(event.session_id)
        if store is None:
            return
        entry = self._entry_or_placeholder(store, event.session_id, event.message_id)
        part = entry.find_part(event.part_id)
        if part is None:
            part = Part.placeholder(
                event.part_id, event.message_id, event.session_id, event.field,
            )
            self.cursors.reset(part.id, event.field, 0)
        store[event.message_id] = entry.with_part(
            apply_delta_to_part(part, event.field, event.delta, self.cursors)
        )

    def _on_part_removed(self, event: PartRemoved) -> None:
        if self._hold_for_active(event.session_id, event):
            return
        if event.session_id == self._active_id:
            store = self._messages
        elif event.session_id in self._tracked:
            store = self._children.get(event.session_id, {})
        else:
            store = self._buffers.get(event.session_id, {})
        entry = store.get(event.message_id)
        if entry is None:
            return
        store[event.message_id] = entry.without_part(event.part_id)
        self.cursors.forget_part(event.part_id)

    @staticmethod
    def _entry_or_placeholder(
        store: MessageStore, session_id: str, message_id: str,
    ) -> MessageEntry:
        entry = store.get(message_id)
        if entry is None:
            entry = MessageEntry(info=Message.placeholder(message_id, session_id))
            store[message_id] = entry
        return entry

    # busy / idle

    def _on_session_status(self, event: SessionStatus) -> None:
        sid = event.session_id
        busy = event.status_type in BUSY_STATUS_TYPES
        was_busy = sid in self._busy
        if busy:
            self._busy.add(sid)
            return
        self._busy.discard(sid)
        self._drop_store(self._buffers.pop(sid, None))
        if not was_busy:
            return
        if sid != self._active_id:
            self._unread.add(sid)
            conversation = self.session(sid)
            title = conversation.title if conversation else ""
            for listener in list(self._completion_listeners):
                listener(sid, title)
        for listener in list(self._idle_listeners):
            listener(sid)

    # permissions, questions, errors

    def _on_permission_asked(self, event: PermissionAsked) -> None:
        self._permissions[event.session_id] = event.request

    def _on_permission_replied(self, event: PermissionReplied) -> None:
        self._permissions.pop(event.session_id, None)

    def _on_question_asked(self, event: QuestionAsked) -> None:
        self._questions[event.session_id] = event.request

    def _on_question_cleared(self, event: QuestionReplied | QuestionRejected) -> None:
        self._questions.pop(event.session_id, None)

    def _on_session_error(self, event: SessionError) -> None:
        if event.error:
            self.last_error = event.error

    # ── direct operations ──────────────────────────────────────

    def set_active_session(self, session_id: str | None) -> None:
        """Switch the active conversation.

        A busy conversation being left keeps its view as a shadow buffer;
        the one being entered takes over its shadow buffer if it has one.
        """
        previous = self._active_id
        if previous == session_id:
            return
        if previous and self._messages and previous in self._busy:
            self._buffers[previous] = dict(self._messages)
        else:
            self._drop_store(self._messages)

        buffered = self._buffers.pop(session_id, None) if session_id else None
        self._active_id = session_id
        self._messages = dict(buffered) if buffered else {}
        self._loading = session_id is not None
        self._pending = []
        if session_id:
            self._unread.discard(session_id)
        for child in self._children.values():
            self._drop_store(child)
        self._children = {}
        self._tracked = set()
        self._changed()

    def install_messages(self, session_id: str, entries: Iterable[MessageEntry]) -> bool:
        """Install a fetched history for the active conversation.

        Merges with whatever the view already holds, keeps messages the
        fetch did not include, then replays events held back meanwhile.
        Returns False (and changes nothing) if *session_id* is no longer
        active.
        """
        if session_id != self._active_id:
            return False
        existing = self._messages
        merged: MessageStore = {}
        for entry in entries:
            held = existing.get(entry.id)
            parts = []
            for part in entry.parts:
                prev = held.find_part(part.id) if held else None
                parts.append(merge_snapshot(part, prev, self.cursors))
            merged[entry.id] = replace(entry, parts=tuple(parts))
        for mid, entry in existing.items():
            if mid not in merged:
                merged[mid] = entry
        self._messages = merged
        self._finish_loading()
        self._sync_selection_from_history()
        self._changed()
        return True

    def abandon_loading(self, session_id: str) -> None:
        """End the loading guard after a failed fetch, replaying held events."""
        if session_id != self._active_id or not self._loading:
            return
        self._finish_loading()
        self._changed()

    def _finish_loading(self) -> None:
        pending, self._pending = self._pending, []
        self._loading = False
        for event in pending:
            handler = self._handlers.get(type(event))
            if handler is not None:
                handler(event)

    def load_child_session(self, child_id: str, entries: Iterable[MessageEntry]) -> None:
        store: MessageStore = {}
        for entry in entries:
            for part in entry.parts:
                for name, value in part.fields.items():
                    self.cursors.reset(part.id, name, len(value))
            store[entry.id] = entry
        self._drop_store(self._children.get(child_id))
        self._tracked.add(child_id)
        self._children[child_id] = store
        self._changed()

    def child_session_ids(self) -> list[str]:
        """Sub-conversations referenced by the active view's task parts."""
        found: list[str] = []
        for entry in self._messages.values():
            for part in entry.parts:
                child = part.child_session_id
                if child and child not in found:
                    found.append(child)
        return found

    def set_sessions(self, sessions: Iterable[Conversation]) -> None:
        self._sessions = _sort_newest_first(sessions)
        self._changed()

    def merge_project_sessions(self, directory: str, sessions: Iterable[Conversation]) -> None:
        """Replace one project's slice of the conversation list."""
        scoped = [s for s in sessions if s.directory == directory and s.is_root]
        others = [s for s in self._sessions if s.directory != directory]
        self._sessions = _sort_newest_first([*others, *scoped])
        self._changed()

    def init_busy_sessions(self, statuses: Mapping[str, Mapping[str, Any]]) -> None:
        """Seed busy flags from the server's status map."""
        for sid, status in statuses.items():
            status_type = status.get("type") if isinstance(status, Mapping) else None
            if status_type in BUSY_STATUS_TYPES:
                self._busy.add(sid)
            else:
                self._busy.discard(sid)
                self._drop_store(self._buffers.pop(sid, None))
        self._changed()

    def mark_busy(self, session_id: str, busy: bool) -> None:
        """Optimistic busy flag around a prompt dispatch. Fires no idle listeners."""
        if busy:
            self._busy.add(session_id)
        else:
            self._busy.discard(session_id)
        self._changed()

    def mark_read(self, session_id: str) -> None:
        self._unread.discard(session_id)
        self._changed()

    def restore_unread(self, session_ids: Iterable[str]) -> None:
        self._unread.update(sid for sid in session_ids if sid != self._active_id)
        self._changed()

    def remove_project(self, directory: str) -> list[str]:
        """Purge a project's conversations and all per-conversation state."""
        removed = {s.id for s in self._sessions if s.directory == directory}
        self._connections.pop(directory, None)
        self._sessions = [s for s in self._sessions if s.directory != directory]
        self._busy -= removed
        self._unread -= removed
        for sid in removed:
            self._permissions.pop(sid, None)
            self._questions.pop(sid, None)
            self._queues.pop(sid, None)
            self._drop_store(self._buffers.pop(sid, None))
        if self._active_id in removed:
            self._clear_active()
        self._changed()
        return sorted(removed)

    def clear_all_projects(self) -> None:
        self._connections.clear()
        self._sessions = []
        self._clear_active()
        self._buffers.clear()
        self._children.clear()
        self._tracked.clear()
        self.cursors.clear()
        self._changed()

    def set_boot_state(self, state: BootState, error: str | None = None) -> None:
        self.boot_state = state
        self.boot_error = error
        self._changed()

    def set_error(self, message: str | None) -> None:
        self.last_error = message
        self._changed()

    # ── queue storage ──────────────────────────────────────────

    def queue_add(self, session_id: str, prompt: QueuedPrompt) -> None:
        self._queues.setdefault(session_id, []).append(prompt)
        self._changed()

    def queue_shift(self, session_id: str) -> QueuedPrompt | None:
        items = self._queues.get(session_id)
        if not items:
            return None
        head = items.pop(0)
        if not items:
            del self._queues[session_id]
        self._changed()
        return head

    def queue_remove(self, session_id: str, prompt_id: str) -> QueuedPrompt | None:
        items = self._queues.get(session_id) or []
        for i, item in enumerate(items):
            if item.id == prompt_id:
                del items[i]
                if not items:
                    del self._queues[session_id]
                self._changed()
                return item
        return None

    def queue_reorder(self, session_id: str, from_index: int, to_index: int) -> bool:
        items = self._queues.get(session_id) or []
        if len(items) <= 1 or not 0 <= from_index < len(items):
            return False
        target = max(0, min(to_index, len(items) - 1))
        if target == from_index:
            return False
        items.insert(target, items.pop(from_index))
        self._changed()
        return True

    def queue_update(self, session_id: str, prompt_id: str, text: str) -> bool:
        items = self._queues.get(session_id) or []
        for i, item in enumerate(items):
            if item.id == prompt_id:
                if item.text == text:
                    return False
                items[i] = replace(item, text=text)
                self._changed()
                return True
        return False

    def queue_clear(self, session_id: str) -> None:
        if self._queues.pop(session_id, None) is not None:
            self._changed()

    # ── selection ──────────────────────────────────────────────

    def set_providers(self, providers: list[dict], defaults: Mapping[str, str]) -> None:
        self.providers = list(providers)
        self.provider_defaults = dict(defaults)
        if self.selected_model is None or selection.find_model(
            self.providers, self.selected_model.provider_id, self.selected_model.model_id,
        ) is None:
            self.selected_model = selection.resolve_server_default_model(
                self.providers, self.provider_defaults,
            )
        self._changed()

    def set_agents(self, agents: list[dict]) -> None:
        self.agents = list(agents)
        self._changed()

    def set_commands(self, commands: list[dict]) -> None:
        self.commands = list(commands)
        self._changed()

    def set_selected_model(self, model: SelectedModel | None) -> None:
        self.selected_model = model
        self._changed()

    def set_selected_agent(self, agent: str | None) -> None:
        self.selected_agent = None if agent == selection.DEFAULT_AGENT else agent
        self._changed()

    def set_variant(self, variant: str | None) -> None:
        if self.selected_model is None:
            return
        key = self.selected_model.key
        if variant is None:
            self.variant_selections.pop(key, None)
        else:
            self.variant_selections[key] = variant
        self._changed()

    def cycle_variant(self) -> str | None:
        if self.selected_model is None:
            return None
        model = selection.find_model(
            self.providers, self.selected_model.provider_id, self.selected_model.model_id,
        )
        nxt = selection.cycle_variant(
            self.variant_selections.get(self.selected_model.key), model,
        )
        self.set_variant(nxt)
        return nxt

    def _sync_selection_from_message(self, info: Message) -> None:
        if info.role != "assistant":
            return
        model = info.model
        synced_model = None
        if model and selection.find_model(self.providers, model.provider_id, model.model_id):
            self.selected_model = synced_model = model
        if info.agent and selection.is_selectable_agent(self.agents, info.agent):
            self.selected_agent = None if info.agent == selection.DEFAULT_AGENT else info.agent
        if synced_model is not None and "variant" in info.raw:
            if info.variant:
                self.variant_selections[synced_model.key] = info.variant
            else:
                self.variant_selections.pop(synced_model.key, None)

    def _sync_selection_from_history(self) -> None:
        entries = list(self._messages.values())
        if not entries:
            self.selected_agent = None
            return
        model = selection.model_from_history(entries, self.providers)
        if model is not None:
            self.selected_model = model
        self.selected_agent = selection.agent_from_history(entries, self.agents)
        if model is not None:
            variant = selection.variant_from_history(entries)
            if variant:
                self.variant_selections[model.key] = variant
            else:
                self.variant_selections.pop(model.key, None)
