"""ocdesk TUI: Textual application class."""

from __future__ import annotations

import logging

from textual.app import App, ComposeResult
from textual.containers import Horizontal, Vertical
from textual.widgets import Footer, Header, Input, OptionList

from ocdesk.adapters.desk import DeskClient
from ocdesk.engine.yaml_config import ProjectEntry
from ocdesk.tui.widgets.conversation import ConversationView, SessionList
from ocdesk.tui.widgets.status_bar import StatusBar

logger = logging.getLogger(__name__)


class DeskApp(App):
    """Terminal UI for several agent-server projects at once."""

    TITLE = "ocdesk"
    SUB_TITLE = "Agent Desk"

    CSS = """
    #main { height: 1fr; }
    #prompt { dock: bottom; }
    StatusBar { height: 1; dock: bottom; }
    """

    BINDINGS = [
        ("ctrl+q", "quit", "Quit"),
        ("ctrl+n", "new_session", "New Session"),
        ("ctrl+t", "cycle_variant", "Variant"),
        ("ctrl+r", "refresh", "Refresh"),
        ("escape", "abort", "Abort"),
    ]

    def __init__(self, desk: DeskClient, projects: list[ProjectEntry] | None = None) -> None:
        super().__init__()
        self.desk = desk
        self._projects = projects or []
        self._dirty = True
        self._unsubscribe = None

    def compose(self) -> ComposeResult:
        yield Header()
        with Horizontal(id="main"):
            yield SessionList(id="sessions")
            with Vertical():
                yield ConversationView(id="conversation")
                yield Input(placeholder="Message, or /command args", id="prompt")
        yield StatusBar()
        yield Footer()

    async def on_mount(self) -> None:
        self._unsubscribe = self.desk.state.subscribe(self._mark_dirty)
        self.desk.state.on_completion(self._notify_completion)
        self.set_interval(0.1, self._refresh_view)
        self.desk.start()
        self.run_worker(self._connect_projects(), exclusive=True)

    async def _connect_projects(self) -> None:
        if not await self.desk.boot():
            return
        for project in self._projects:
            connection = project.connection(self.desk.config)
            result = await self.desk.add_project(
                connection.directory,
                server_url=connection.base_url,
                username=connection.username,
                password=connection.password,
            )
            if not result.success:
                self.notify(f"{project.directory}: {result.error}", severity="error")

    def _mark_dirty(self) -> None:
        self._dirty = True

    def _notify_completion(self, session_id: str, title: str) -> None:
        prefs = self.desk.preferences
        if prefs is None or prefs.notifications_enabled:
            self.notify(f"Finished: {title or session_id}")

    def _refresh_view(self) -> None:
        if not self._dirty:
            return
        self._dirty = False
        snap = self.desk.state.snapshot()
        self.query_one(SessionList).show(
            snap.sessions, snap.busy_session_ids, snap.unread_session_ids,
        )
        self.query_one(ConversationView).show(snap.messages, loading=snap.is_loading)
        self.query_one(StatusBar).update_from(snap)
        if snap.last_error:
            self.sub_title = snap.last_error

    async def on_option_list_option_selected(self, event: OptionList.OptionSelected) -> None:
        if event.option.id:
            await self.desk.select_session(event.option.id)

    async def on_input_submitted(self, event: Input.Submitted) -> None:
        text = event.value.strip()
        event.input.value = ""
        if not text:
            return
        session_id = self.desk.state.active_session_id
        if session_id is None:
            result = await self.desk.create_session()
            if not result.success:
                self.notify(result.error or "Could not create a conversation", severity="error")
                return
            session_id = result.data["id"]
        if text.startswith("/"):
            command, _, arguments = text[1:].partition(" ")
            result = await self.desk.send_command(session_id, command, arguments)
        else:
            result = await self.desk.send_prompt(session_id, text)
        if not result.success:
            self.notify(result.error or "Send failed", severity="error")

    async def action_new_session(self) -> None:
        await self.desk.create_session()

    def action_cycle_variant(self) -> None:
        variant = self.desk.cycle_variant()
        self.notify(f"Variant: {variant or 'default'}")

    async def action_refresh(self) -> None:
        for directory in self.desk.registry.directories:
            await self.desk.refresh_project(directory)

    async def action_abort(self) -> None:
        session_id = self.desk.state.active_session_id
        if session_id and self.desk.state.is_busy(session_id):
            await self.desk.abort(session_id)

    async def action_quit(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
        await self.desk.aclose()
        await super().action_quit()
