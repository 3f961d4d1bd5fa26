"""Desk client: one registry, bus, router, reconciler and queue per app session.

Supervisors emit into the event bus from their own tasks; a single
consumer task drains the bus through the router into the reconciler, so
state is only ever written from one place. User-level operations live
here and return CommandResults.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from pathlib import Path

from ocdesk.adapters.event_bus import EventBus
from ocdesk.adapters.router import CommandResult, EventRouter
from ocdesk.engine.config import ClientConfig, ConnectionConfig, validate_connection_config
from ocdesk.engine.errors import BootError, ConfigError, DeskError
from ocdesk.engine.project_registry import ProjectRegistry
from ocdesk.shared.models.conversation import Conversation
from ocdesk.shared.models.message import MessageEntry, SelectedModel
from ocdesk.shared.services.local_server import ensure_local_server
from ocdesk.shared.services.preferences import UserPreferences
from ocdesk.state.queue import PromptQueue
from ocdesk.state.reconciler import BootState, Reconciler
from ocdesk.transport.supervisor import ConnectionSupervisor

logger = logging.getLogger(__name__)

SELECTION_SUPERSEDED = "Selection superseded"

SupervisorFactory = Callable[[str], ConnectionSupervisor]


class DeskClient:
    """Application-session facade over the four core components."""

    def __init__(
        self,
        config: ClientConfig | None = None,
        preferences: UserPreferences | None = None,
        supervisor_factory: SupervisorFactory | None = None,
        preferences_path: Path | None = None,
    ) -> None:
        self.config = config or ClientConfig()
        self.preferences = preferences
        self._preferences_path = preferences_path
        self.registry = ProjectRegistry()
        self.bus = EventBus()
        self.state = Reconciler()
        self.router = EventRouter(self.registry, self.state.apply)
        self.queue = PromptQueue(self.state, self.router)
        self._supervisor_factory = supervisor_factory or self._default_supervisor
        self._select_request = 0
        self._consumer: asyncio.Task | None = None

        if preferences is not None:
            self.state.selected_model = preferences.model
            self.state.selected_agent = preferences.selected_agent
            self.state.variant_selections = dict(preferences.variant_selections)
            self.state.restore_unread(preferences.unread_sessions)

    def _default_supervisor(self, directory: str) -> ConnectionSupervisor:
        return ConnectionSupervisor(directory, self.bus.emit, self.config)

    # ── lifecycle ──────────────────────────────────────────────

    def start(self) -> None:
        """Start the bus consumer. Must be called from a running loop."""
        if self._consumer is None or self._consumer.done():
            self.bus.reset()
            self._consumer = asyncio.create_task(self._consume())

    async def _consume(self) -> None:
        async for event in self.bus.consume():
            self._route(event)

    def _route(self, event) -> None:
        try:
            self.router.dispatch(event)
        except Exception:
            logger.exception("Failed to apply %s from %s", event.event_type, event.directory)

    def process_pending(self) -> int:
        """Route every queued event now. Returns how many were routed."""
        events = self.bus.drain_nowait()
        for event in events:
            self._route(event)
        return len(events)

    async def aclose(self) -> None:
        self.bus.close()
        if self._consumer is not None:
            self._consumer.cancel()
            await asyncio.gather(self._consumer, return_exceptions=True)
            self._consumer = None
        await self.queue.aclose()
        for runtime in self.registry.list_projects():
            await runtime.supervisor.aclose()
        self.save_preferences()

    async def boot(self) -> bool:
        """Make sure the local server is up when configured to manage it."""
        if not self.config.start_local_server:
            self.state.set_boot_state(BootState.READY)
            return True
        self.state.set_boot_state(BootState.CHECKING_SERVER)
        try:
            await ensure_local_server(
                self.config.server_url,
                on_starting=lambda: self.state.set_boot_state(BootState.STARTING_SERVER),
            )
        except BootError as exc:
            logger.error("Local server bootstrap failed: %s", exc)
            self.state.set_boot_state(BootState.ERROR, str(exc))
            return False
        self.state.set_boot_state(BootState.READY)
        return True

    # ── projects ───────────────────────────────────────────────

    async def add_project(
        self,
        directory: str,
        server_url: str | None = None,
        username: str | None = None,
        password: str | None = None,
    ) -> CommandResult:
        """Connect a project directory, replacing any existing link for it."""
        connection = ConnectionConfig(
            base_url=server_url or self.config.server_url,
            directory=directory,
            username=username or self.config.username,
            password=password,
        )
        try:
            validate_connection_config(connection)
        except ConfigError as exc:
            return CommandResult.fail(exc.reason)

        previous = self.registry.supervisor_for(directory)
        if previous is not None:
            await previous.aclose()
        supervisor = self._supervisor_factory(directory)
        self.registry.register_project(directory, supervisor, connection)
        try:
            await supervisor.connect(connection)
        except DeskError as exc:
            logger.warning("Could not connect project %s: %s", directory, exc)
            self.process_pending()
            self.registry.unregister_project(directory)
            await supervisor.aclose()
            self.state.remove_project(directory)
            return CommandResult.fail(str(exc))

        self.process_pending()
        await self.refresh_project(directory)
        if not self.state.providers:
            await self.refresh_catalogues()
        self._remember_project(directory, True)
        return CommandResult.ok(
            {"directory": directory, "server_version": supervisor.status.server_version}
        )

    async def remove_project(self, directory: str) -> list[str]:
        """Disconnect a project and purge its conversations from the state."""
        runtime = self.registry.unregister_project(directory)
        if runtime is not None:
            await runtime.supervisor.aclose()
        removed = self.state.remove_project(directory)
        self._remember_project(directory, False)
        return removed

    async def disconnect_all(self) -> None:
        for directory in self.registry.directories:
            runtime = self.registry.unregister_project(directory)
            if runtime is not None:
                await runtime.supervisor.aclose()
        self.state.clear_all_projects()

    async def refresh_project(self, directory: str) -> CommandResult:
        """Reload one project's conversation list and busy flags."""
        result = await self.router.list_sessions(directory)
        if not result.success:
            return result
        self.state.merge_project_sessions(
            directory, [Conversation.from_wire(s) for s in result.data],
        )
        statuses = await self.router.session_statuses(directory)
        if statuses.success and isinstance(statuses.data, dict):
            self.state.init_busy_sessions(statuses.data)
        return result

    async def refresh_catalogues(self) -> None:
        """Load providers, agents and commands from any connected server."""
        providers = await self.router.providers()
        if providers.success and isinstance(providers.data, dict):
            self.state.set_providers(
                providers.data.get("providers") or [],
                providers.data.get("default") or {},
            )
        agents = await self.router.agents()
        if agents.success and isinstance(agents.data, list):
            self.state.set_agents(agents.data)
        commands = await self.router.commands()
        if commands.success and isinstance(commands.data, list):
            self.state.set_commands(commands.data)

    # ── conversations ──────────────────────────────────────────

    async def select_session(self, session_id: str | None) -> CommandResult:
        """Make *session_id* active and load its history.

        A later selection supersedes this one: its fetch result is then
        discarded.
        """
        self._select_request += 1
        request = self._select_request
        self.state.set_active_session(session_id)
        if session_id is None:
            return CommandResult.ok()

        result = await self.router.messages(session_id)
        if request != self._select_request:
            return CommandResult.fail(SELECTION_SUPERSEDED)
        if not result.success:
            self.state.abandon_loading(session_id)
            self.state.set_error(result.error)
            return result
        entries = [MessageEntry.from_wire(m) for m in result.data or []]
        self.state.install_messages(session_id, entries)
        await self._load_children(session_id, request)
        return CommandResult.ok(len(entries))

    async def _load_children(self, session_id: str, request: int) -> None:
        owner = self.registry.owner_of(session_id)
        for child_id in self.state.child_session_ids():
            if owner:
                self.registry.bind_session(child_id, owner)
            result = await self.router.messages(child_id)
            if request != self._select_request:
                return
            if not result.success:
                logger.info("Could not load sub-conversation %s: %s", child_id, result.error)
                continue
            self.state.load_child_session(
                child_id, [MessageEntry.from_wire(m) for m in result.data or []],
            )

    async def create_session(
        self, directory: str | None = None, title: str | None = None,
    ) -> CommandResult:
        result = await self.router.create_session(title, directory)
        if result.success and isinstance(result.data, dict) and result.data.get("id"):
            await self.select_session(result.data["id"])
        return result

    async def delete_session(self, session_id: str) -> CommandResult:
        result = await self.router.delete_session(session_id)
        if result.success and self.state.active_session_id == session_id:
            await self.select_session(None)
        return result

    async def rename_session(self, session_id: str, title: str) -> CommandResult:
        title = title.strip()
        if not title:
            return CommandResult.fail("Title is required")
        return await self.router.update_session(session_id, title)

    # ── prompting ──────────────────────────────────────────────

    async def send_prompt(
        self, session_id: str, text: str, attachments: Sequence[str] = (),
    ) -> CommandResult:
        self.state.set_error(None)
        return await self.queue.submit(session_id, text, attachments)

    async def send_command(self, session_id: str, command: str, arguments: str = "") -> CommandResult:
        self.state.set_error(None)
        self.state.mark_busy(session_id, True)
        result = await self.router.send_command(
            session_id,
            command,
            arguments,
            model=self.state.selected_model,
            agent=self.state.selected_agent,
            variant=self.state.current_variant,
        )
        if not result.success:
            self.state.set_error(result.error)
            self.state.mark_busy(session_id, False)
        return result

    async def abort(self, session_id: str) -> CommandResult:
        return await self.router.abort(session_id)

    async def revert(
        self, session_id: str, message_id: str, part_id: str | None = None,
    ) -> CommandResult:
        return await self.router.revert_session(session_id, message_id, part_id)

    async def unrevert(self, session_id: str) -> CommandResult:
        return await self.router.unrevert_session(session_id)

    async def fork(self, session_id: str, message_id: str | None = None) -> CommandResult:
        result = await self.router.fork_session(session_id, message_id)
        if result.success and isinstance(result.data, dict) and result.data.get("id"):
            await self.select_session(result.data["id"])
        return result

    async def respond_permission(
        self, session_id: str, permission_id: str, response: str,
    ) -> CommandResult:
        return await self.router.respond_permission(session_id, permission_id, response)

    async def reply_question(self, request_id: str, answers: list[list[str]]) -> CommandResult:
        return await self.router.reply_question(request_id, answers)

    async def reject_question(self, request_id: str) -> CommandResult:
        return await self.router.reject_question(request_id)

    # ── selection ──────────────────────────────────────────────

    def set_model(self, model: SelectedModel | None) -> None:
        self.state.set_selected_model(model)
        self.save_preferences()

    def set_agent(self, agent: str | None) -> None:
        self.state.set_selected_agent(agent)
        self.save_preferences()

    def set_variant(self, variant: str | None) -> None:
        self.state.set_variant(variant)
        self.save_preferences()

    def cycle_variant(self) -> str | None:
        variant = self.state.cycle_variant()
        self.save_preferences()
        return variant

    # ── preferences ────────────────────────────────────────────

    def _remember_project(self, directory: str, is_open: bool) -> None:
        if self.preferences is None:
            return
        projects = [d for d in self.preferences.open_projects if d != directory]
        if is_open:
            projects.append(directory)
        self.preferences.open_projects = projects
        self.save_preferences()

    def save_preferences(self) -> None:
        prefs = self.preferences
        if prefs is None:
            return
        snap = self.state.snapshot()
        prefs.model = self.state.selected_model
        prefs.selected_agent = self.state.selected_agent
        prefs.variant_selections = dict(self.state.variant_selections)
        prefs.unread_sessions = sorted(snap.unread_session_ids)
        prefs.save(self._preferences_path)
