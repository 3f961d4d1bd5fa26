"""Conversation view and conversation list widgets."""

from __future__ import annotations

from collections.abc import Iterable

from rich.text import Text
from textual.widgets import OptionList, Static
from textual.widgets.option_list import Option

from ocdesk.shared.models.conversation import Conversation
from ocdesk.shared.models.message import MessageEntry

_ROLE_STYLES = {"user": "bold cyan", "assistant": "bold green"}


def render_messages(entries: Iterable[MessageEntry]) -> Text:
    """Render text, reasoning and tool parts as one rich Text block."""
    out = Text()
    for entry in entries:
        info = entry.info
        out.append(f"{info.role or 'message'}\n", style=_ROLE_STYLES.get(info.role, "bold"))
        for part in entry.parts:
            if part.type == "text":
                out.append(part.get_field("text") + "\n")
            elif part.type == "reasoning":
                out.append(part.get_field("text") + "\n", style="dim italic")
            elif part.type == "tool":
                state = part.data.get("state") or {}
                status = state.get("status", "") if isinstance(state, dict) else ""
                out.append(f"⚙ {part.tool} {status}\n", style="magenta")
        if info.error:
            out.append(f"{info.error}\n", style="red")
        out.append("\n")
    return out


class ConversationView(Static):
    """Active conversation transcript."""

    DEFAULT_CSS = """
    ConversationView {
        height: 1fr;
        padding: 0 1;
        overflow-y: auto;
    }
    """

    def show(self, entries: Iterable[MessageEntry], loading: bool = False) -> None:
        text = render_messages(entries)
        if loading:
            text.append("Loading…", style="dim italic")
        self.update(text)


def session_label(conversation: Conversation, busy: bool, unread: bool) -> Text:
    label = Text()
    if busy:
        label.append("● ", style="yellow")
    elif unread:
        label.append("● ", style="cyan")
    label.append(conversation.title or conversation.id)
    return label


class SessionList(OptionList):
    """Root conversations of every open project, newest first."""

    DEFAULT_CSS = """
    SessionList {
        width: 32;
        height: 1fr;
    }
    """

    def show(
        self,
        sessions: Iterable[Conversation],
        busy: frozenset[str],
        unread: frozenset[str],
    ) -> None:
        highlighted = self.highlighted
        self.clear_options()
        self.add_options(
            Option(session_label(s, s.id in busy, s.id in unread), id=s.id)
            for s in sessions
        )
        if highlighted is not None and highlighted < self.option_count:
            self.highlighted = highlighted
