"""Routes events in and commands out.

Inbound, every event is checked against the registry: events from a
supervisor that is no longer the registered one for its directory, or
from a directory that was removed, are dropped before they reach the
reconciler. Conversation listings and creation events teach the router
which directory owns which conversation.

Outbound, conversation-scoped commands go to the owning project's
supervisor and nowhere else. Global commands go to any connected
supervisor. Failures come back as a CommandResult rather than raising.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import aiohttp

from ocdesk.adapters.events import (
    ServerEvent,
    SessionCreated,
    SessionDeleted,
    SessionUpdated,
)
from ocdesk.engine.errors import DeskError
from ocdesk.engine.project_registry import ProjectRegistry
from ocdesk.shared.models.message import SelectedModel
from ocdesk.transport.client import ApiClient

logger = logging.getLogger(__name__)

SESSION_NOT_FOUND = "Session connection not found"
NO_CONNECTION = "No connection available"
PROJECT_NOT_CONNECTED = "Project not connected"

# Errors a server call can end with that are reported, not raised.
_CALL_ERRORS = (DeskError, aiohttp.ClientError, asyncio.TimeoutError, ValueError)


@dataclass(frozen=True)
class CommandResult:
    success: bool
    data: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, data: Any = None) -> CommandResult:
        return cls(True, data=data)

    @classmethod
    def fail(cls, error: str) -> CommandResult:
        return cls(False, error=error)


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class EventRouter:
    """Project tagging and conversation-to-project routing."""

    def __init__(
        self,
        registry: ProjectRegistry,
        sink: Callable[[ServerEvent], None],
    ) -> None:
        self.registry = registry
        self._sink = sink

    # ── inbound ────────────────────────────────────────────────

    def dispatch(self, event: ServerEvent) -> bool:
        """Forward *event* to the sink if its origin is still expected.

        Returns False when the event was dropped.
        """
        if not self.registry.is_current_link(event.directory, event.link_id):
            logger.debug(
                "Dropping %s from stale or removed link %s (%d)",
                event.event_type, event.directory, event.link_id,
            )
            return False
        if isinstance(event, (SessionCreated, SessionUpdated)):
            if event.info is None or event.info.directory != event.directory:
                return False
            self.registry.bind_session(event.info.id, event.directory)
        elif isinstance(event, SessionDeleted) and event.info is not None:
            self.registry.unbind_session(event.info.id)
        self._sink(event)
        return True

    # ── resolution ─────────────────────────────────────────────

    def client_for_session(self, session_id: str) -> ApiClient | None:
        """The owning project's client, or None. Never guesses."""
        directory = self.registry.owner_of(session_id)
        if directory is None:
            return None
        supervisor = self.registry.supervisor_for(directory)
        if supervisor is None:
            return None
        try:
            return supervisor.client
        except DeskError:
            return None

    def any_client(self) -> ApiClient | None:
        supervisor = self.registry.any_connected()
        return supervisor.client if supervisor is not None else None

    def client_for_directory(self, directory: str) -> ApiClient | None:
        supervisor = self.registry.supervisor_for(directory)
        if supervisor is None:
            return None
        try:
            return supervisor.client
        except DeskError:
            return None

    async def _session_call(
        self,
        session_id: str,
        call: Callable[[ApiClient], Awaitable[Any]],
    ) -> CommandResult:
        client = self.client_for_session(session_id)
        if client is None:
            return CommandResult.fail(SESSION_NOT_FOUND)
        try:
            return CommandResult.ok(await call(client))
        except _CALL_ERRORS as exc:
            logger.warning("Session command for %s failed: %s", session_id, exc)
            return CommandResult.fail(_describe(exc))

    async def _global_call(
        self, call: Callable[[ApiClient], Awaitable[Any]],
    ) -> CommandResult:
        client = self.any_client()
        if client is None:
            return CommandResult.fail(NO_CONNECTION)
        try:
            return CommandResult.ok(await call(client))
        except _CALL_ERRORS as exc:
            logger.warning("Global command failed: %s", exc)
            return CommandResult.fail(_describe(exc))

    # ── conversations ──────────────────────────────────────────

    async def list_sessions(self, directory: str | None = None) -> CommandResult:
        """List root conversations for one project, or all of them.

        Listing every project skips projects whose request fails.
        """
        if directory:
            client = self.client_for_directory(directory)
            if client is None:
                return CommandResult.fail(PROJECT_NOT_CONNECTED)
            try:
                sessions = await client.list_sessions()
            except _CALL_ERRORS as exc:
                return CommandResult.fail(_describe(exc))
            return CommandResult.ok(self._tag_sessions(sessions, directory))

        collected: list[dict] = []
        for runtime in self.registry.list_projects():
            try:
                sessions = await runtime.supervisor.client.list_sessions()
            except _CALL_ERRORS as exc:
                logger.info("Skipping %s while listing sessions: %s", runtime.directory, exc)
                continue
            collected.extend(self._tag_sessions(sessions, runtime.directory))
        return CommandResult.ok(collected)

    def _tag_sessions(self, sessions: list[dict], directory: str) -> list[dict]:
        # The server scopes listings by directory already; tag rather than filter.
        tagged = []
        for s in sessions:
            self.registry.bind_session(s["id"], directory)
            tagged.append({**s, "directory": s.get("directory") or directory, "_projectDir": directory})
        return tagged

    async def create_session(
        self, title: str | None = None, directory: str | None = None,
    ) -> CommandResult:
        if directory:
            client = self.client_for_directory(directory)
        else:
            client = self.any_client()
        if client is None:
            return CommandResult.fail(NO_CONNECTION)
        try:
            session = await client.create_session(title)
        except _CALL_ERRORS as exc:
            return CommandResult.fail(_describe(exc))
        if isinstance(session, dict) and session.get("id"):
            self.registry.bind_session(session["id"], directory or client.directory)
        return CommandResult.ok(session)

    async def delete_session(self, session_id: str) -> CommandResult:
        result = await self._session_call(session_id, lambda c: c.delete_session(session_id))
        if result.success:
            self.registry.unbind_session(session_id)
        return result

    async def update_session(self, session_id: str, title: str) -> CommandResult:
        return await self._session_call(session_id, lambda c: c.update_session(session_id, title))

    async def session_statuses(self, directory: str | None = None) -> CommandResult:
        client = self.client_for_directory(directory) if directory else self.any_client()
        if client is None:
            return CommandResult.fail(NO_CONNECTION)
        try:
            return CommandResult.ok(await client.session_statuses())
        except _CALL_ERRORS as exc:
            return CommandResult.fail(_describe(exc))

    async def revert_session(
        self, session_id: str, message_id: str, part_id: str | None = None,
    ) -> CommandResult:
        return await self._session_call(
            session_id, lambda c: c.revert_session(session_id, message_id, part_id),
        )

    async def unrevert_session(self, session_id: str) -> CommandResult:
        return await self._session_call(session_id, lambda c: c.unrevert_session(session_id))

    async def fork_session(self, session_id: str, message_id: str | None = None) -> CommandResult:
        result = await self._session_call(
            session_id, lambda c: c.fork_session(session_id, message_id),
        )
        forked = result.data
        if result.success and isinstance(forked, dict) and forked.get("id"):
            owner = self.registry.owner_of(session_id)
            if owner:
                self.registry.bind_session(forked["id"], owner)
        return result

    async def messages(self, session_id: str) -> CommandResult:
        return await self._session_call(session_id, lambda c: c.messages(session_id))

    # ── prompting ──────────────────────────────────────────────

    async def prompt(
        self,
        session_id: str,
        text: str,
        attachments: tuple[str, ...] | list[str] = (),
        model: SelectedModel | None = None,
        agent: str | None = None,
        variant: str | None = None,
    ) -> CommandResult:
        return await self._session_call(
            session_id,
            lambda c: c.prompt(session_id, text, attachments, model, agent, variant),
        )

    async def send_command(
        self,
        session_id: str,
        command: str,
        arguments: str = "",
        model: SelectedModel | None = None,
        agent: str | None = None,
        variant: str | None = None,
    ) -> CommandResult:
        return await self._session_call(
            session_id,
            lambda c: c.send_command(session_id, command, arguments, model, agent, variant),
        )

    async def abort(self, session_id: str) -> CommandResult:
        return await self._session_call(session_id, lambda c: c.abort(session_id))

    async def respond_permission(
        self, session_id: str, permission_id: str, response: str,
    ) -> CommandResult:
        return await self._session_call(
            session_id, lambda c: c.respond_permission(session_id, permission_id, response),
        )

    # ── questions carry no conversation id: try every project ──

    async def _try_all(self, call: Callable[[ApiClient], Awaitable[Any]]) -> CommandResult:
        last_error: str | None = None
        for runtime in self.registry.list_projects():
            try:
                await call(runtime.supervisor.client)
                return CommandResult.ok()
            except _CALL_ERRORS as exc:
                last_error = _describe(exc)
        return CommandResult.fail(last_error or NO_CONNECTION)

    async def reply_question(self, request_id: str, answers: list[list[str]]) -> CommandResult:
        return await self._try_all(lambda c: c.reply_question(request_id, answers))

    async def reject_question(self, request_id: str) -> CommandResult:
        return await self._try_all(lambda c: c.reject_question(request_id))

    # ── global operations ──────────────────────────────────────

    async def providers(self) -> CommandResult:
        return await self._global_call(lambda c: c.providers())

    async def all_providers(self) -> CommandResult:
        return await self._global_call(lambda c: c.all_providers())

    async def provider_auth_methods(self) -> CommandResult:
        return await self._global_call(lambda c: c.provider_auth_methods())

    async def set_provider_auth(self, provider_id: str, auth: dict) -> CommandResult:
        return await self._global_call(lambda c: c.set_provider_auth(provider_id, auth))

    async def remove_provider_auth(self, provider_id: str) -> CommandResult:
        return await self._global_call(lambda c: c.remove_provider_auth(provider_id))

    async def oauth_authorize(self, provider_id: str, method: int | None = None) -> CommandResult:
        return await self._global_call(lambda c: c.oauth_authorize(provider_id, method))

    async def oauth_callback(
        self, provider_id: str, method: int | None = None, code: str | None = None,
    ) -> CommandResult:
        return await self._global_call(lambda c: c.oauth_callback(provider_id, method, code))

    async def dispose_instance(self) -> CommandResult:
        return await self._global_call(lambda c: c.dispose_instance())

    async def agents(self) -> CommandResult:
        return await self._global_call(lambda c: c.agents())

    async def commands(self) -> CommandResult:
        return await self._global_call(lambda c: c.commands())

    async def skills(self) -> CommandResult:
        return await self._global_call(lambda c: c.skills())

    async def mcp_status(self) -> CommandResult:
        return await self._global_call(lambda c: c.mcp_status())

    async def add_mcp(self, name: str, config: dict) -> CommandResult:
        return await self._global_call(lambda c: c.add_mcp(name, config))

    async def connect_mcp(self, name: str) -> CommandResult:
        return await self._global_call(lambda c: c.connect_mcp(name))

    async def disconnect_mcp(self, name: str) -> CommandResult:
        return await self._global_call(lambda c: c.disconnect_mcp(name))

    async def get_config(self) -> CommandResult:
        return await self._global_call(lambda c: c.get_config())

    async def update_config(self, config: dict) -> CommandResult:
        if not isinstance(config, dict):
            return CommandResult.fail("Invalid config")
        return await self._global_call(lambda c: c.update_config(config))
