"""Status bar: bottom line with link health, selection and queue depth."""

from __future__ import annotations

from collections.abc import Mapping

from rich.text import Text
from textual.reactive import reactive
from textual.widget import Widget

from ocdesk.shared.models.conversation import ConnectionStatus, LinkState
from ocdesk.state.reconciler import BootState, DeskSnapshot

_STATE_COLORS = {
    LinkState.CONNECTED: "green",
    LinkState.CONNECTING: "yellow",
    LinkState.RECONNECTING: "yellow",
    LinkState.ERROR: "red bold",
    LinkState.IDLE: "dim",
}

# Worst state first; the bar shows the worst link.
_SEVERITY = (
    LinkState.ERROR,
    LinkState.RECONNECTING,
    LinkState.CONNECTING,
    LinkState.IDLE,
    LinkState.CONNECTED,
)


def summarize_connections(connections: Mapping[str, ConnectionStatus]) -> tuple[LinkState, str]:
    """Collapse per-project link states into one label."""
    if not connections:
        return LinkState.IDLE, "no projects"
    states = [status.state for status in connections.values()]
    worst = next(s for s in _SEVERITY if s in states)
    connected = states.count(LinkState.CONNECTED)
    label = f"{connected}/{len(states)} connected"
    if worst != LinkState.CONNECTED:
        detail = next(
            (s.error for s in connections.values() if s.state == worst and s.error),
            worst.value,
        )
        label = f"{label} · {detail}"
    return worst, label


def describe_selection(snapshot: DeskSnapshot) -> str:
    model = snapshot.selected_model.key if snapshot.selected_model else "default model"
    label = f"{model} · {snapshot.selected_agent or 'build'}"
    if snapshot.current_variant:
        label += f" · {snapshot.current_variant}"
    return label


class StatusBar(Widget):
    """Single-line status bar with connection state and the current selection."""

    link_state: reactive[LinkState] = reactive(LinkState.IDLE)
    link_label: reactive[str] = reactive("no projects")
    selection: reactive[str] = reactive("default model · build")
    busy: reactive[bool] = reactive(False)
    queued: reactive[int] = reactive(0)
    boot_label: reactive[str] = reactive("")

    def update_from(self, snapshot: DeskSnapshot) -> None:
        self.link_state, self.link_label = summarize_connections(snapshot.connections)
        self.selection = describe_selection(snapshot)
        self.busy = snapshot.is_busy
        active = snapshot.active_session_id
        self.queued = len(snapshot.queued_prompts.get(active, ())) if active else 0
        if snapshot.boot_state == BootState.ERROR:
            self.boot_label = snapshot.boot_error or "server error"
        elif snapshot.boot_state in (BootState.CHECKING_SERVER, BootState.STARTING_SERVER):
            self.boot_label = snapshot.boot_state.value
        else:
            self.boot_label = ""

    def render(self) -> Text:
        bar = Text()
        if self.boot_label:
            bar.append(f" {self.boot_label} ", style="bold black on yellow")
            bar.append(" ", style="dim")
        bar.append(f"● {self.link_label}", style=_STATE_COLORS.get(self.link_state, "white"))
        bar.append(" │ ", style="dim")
        bar.append(self.selection, style="cyan")
        if self.busy:
            bar.append(" │ ", style="dim")
            bar.append("working", style="yellow")
        if self.queued:
            bar.append(" │ ", style="dim")
            bar.append(f"{self.queued} queued", style="dim")
        return bar
