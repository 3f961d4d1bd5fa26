from __future__ import annotations

import pytest

from ocdesk.adapters.events import SessionCreated, SessionDeleted, SessionStatus
from ocdesk.adapters.router import (
    NO_CONNECTION,
    PROJECT_NOT_CONNECTED,
    SESSION_NOT_FOUND,
    CommandResult,
    EventRouter,
)
from ocdesk.engine.config import ConnectionConfig
from ocdesk.engine.errors import NotConnectedError, ServerRequestError
from ocdesk.engine.project_registry import ProjectRegistry
from ocdesk.shared.models.conversation import Conversation


class FakeClient:
    def __init__(self, directory: str, sessions: list[dict] | None = None) -> None:
        self.directory = directory
        self.sessions = sessions or []
        self.calls: list[tuple] = []
        self.fail_with: Exception | None = None

    async def _record(self, *call):
        self.calls.append(call)
        if self.fail_with is not None:
            raise self.fail_with
        return True

    async def list_sessions(self):
        if self.fail_with is not None:
            raise self.fail_with
        return self.sessions

    async def prompt(self, session_id, text, attachments, model, agent, variant):
        return await self._record("prompt", session_id, text)

    async def abort(self, session_id):
        return await self._record("abort", session_id)

    async def fork_session(self, session_id, message_id):
        await self._record("fork", session_id, message_id)
        return {"id": f"{session_id}-fork"}

    async def create_session(self, title):
        await self._record("create", title)
        return {"id": "new", "directory": self.directory}

    async def delete_session(self, session_id):
        return await self._record("delete", session_id)

    async def reply_question(self, request_id, answers):
        return await self._record("reply_question", request_id)

    async def providers(self):
        return await self._record("providers")


class FakeSupervisor:
    _ids = iter(range(100, 1000))

    def __init__(self, client: FakeClient | None, connected: bool = True) -> None:
        self.link_id = next(self._ids)
        self.connected = connected
        self._client = client

    @property
    def client(self) -> FakeClient:
        if self._client is None:
            raise NotConnectedError()
        return self._client


def _setup(*directories: str) -> tuple[EventRouter, dict[str, FakeClient], list]:
    registry = ProjectRegistry()
    received: list = []
    router = EventRouter(registry, received.append)
    clients = {}
    for directory in directories:
        client = FakeClient(directory)
        clients[directory] = client
        registry.register_project(
            directory,
            FakeSupervisor(client),
            ConnectionConfig(base_url="http://127.0.0.1:4096", directory=directory),
        )
    return router, clients, received


def _link(router: EventRouter, directory: str) -> int:
    return router.registry.supervisor_for(directory).link_id


def test_events_from_current_link_reach_the_sink() -> None:
    router, _, received = _setup("/a")
    event = SessionStatus(directory="/a", link_id=_link(router, "/a"), session_id="c1")
    assert router.dispatch(event)
    assert received == [event]


def test_events_from_stale_or_removed_links_are_dropped() -> None:
    router, _, received = _setup("/a", "/b")
    stale = SessionStatus(directory="/a", link_id=1, session_id="c1")
    assert not router.dispatch(stale)

    link_b = _link(router, "/b")
    router.registry.unregister_project("/b")
    assert not router.dispatch(SessionStatus(directory="/b", link_id=link_b, session_id="c2"))
    assert received == []


def test_created_conversation_is_bound_to_its_project() -> None:
    router, _, received = _setup("/a", "/b")
    created = SessionCreated(
        directory="/a", link_id=_link(router, "/a"),
        info=Conversation(id="c1", directory="/a"),
    )
    assert router.dispatch(created)
    assert router.registry.owner_of("c1") == "/a"

    mislabelled = SessionCreated(
        directory="/a", link_id=_link(router, "/a"),
        info=Conversation(id="c9", directory="/b"),
    )
    assert not router.dispatch(mislabelled)
    assert router.registry.owner_of("c9") is None

    deleted = SessionDeleted(
        directory="/a", link_id=_link(router, "/a"),
        info=Conversation(id="c1", directory="/a"),
    )
    router.dispatch(deleted)
    assert router.registry.owner_of("c1") is None
    assert len(received) == 2


@pytest.mark.asyncio
async def test_commands_go_only_to_the_owning_project() -> None:
    router, clients, _ = _setup("/a", "/b")
    router.registry.bind_session("c1", "/a")
    router.registry.bind_session("c2", "/b")

    await router.prompt("c2", "hi")
    await router.abort("c1")

    assert clients["/a"].calls == [("abort", "c1")]
    assert clients["/b"].calls == [("prompt", "c2", "hi")]


@pytest.mark.asyncio
async def test_unknown_conversation_fails_without_guessing() -> None:
    router, clients, _ = _setup("/a")
    result = await router.prompt("nobody", "hi")
    assert result == CommandResult.fail(SESSION_NOT_FOUND)
    assert clients["/a"].calls == []


@pytest.mark.asyncio
async def test_torn_down_supervisor_is_not_routable() -> None:
    registry = ProjectRegistry()
    router = EventRouter(registry, lambda event: None)
    registry.register_project(
        "/a", FakeSupervisor(None, connected=False),
        ConnectionConfig(base_url="http://127.0.0.1:4096", directory="/a"),
    )
    registry.bind_session("c1", "/a")
    assert await router.abort("c1") == CommandResult.fail(SESSION_NOT_FOUND)
    assert await router.providers() == CommandResult.fail(NO_CONNECTION)


@pytest.mark.asyncio
async def test_server_errors_become_failed_results() -> None:
    router, clients, _ = _setup("/a")
    router.registry.bind_session("c1", "/a")
    clients["/a"].fail_with = ServerRequestError("POST", "/session/c1/abort", 500, "boom")
    result = await router.abort("c1")
    assert not result.success
    assert "failed with 500" in result.error


@pytest.mark.asyncio
async def test_listing_binds_conversations_and_skips_failing_projects() -> None:
    router, clients, _ = _setup("/a", "/b")
    clients["/a"].sessions = [{"id": "c1", "directory": "/a"}, {"id": "c2"}]
    clients["/b"].fail_with = ServerRequestError("GET", "/session", 502)

    result = await router.list_sessions()

    assert result.success
    assert [s["id"] for s in result.data] == ["c1", "c2"]
    assert all(s["directory"] == "/a" for s in result.data)
    assert router.registry.owner_of("c2") == "/a"

    single = await router.list_sessions("/b")
    assert not single.success
    missing = await router.list_sessions("/zzz")
    assert missing == CommandResult.fail(PROJECT_NOT_CONNECTED)


@pytest.mark.asyncio
async def test_create_and_fork_bind_new_conversations() -> None:
    router, _, _ = _setup("/a", "/b")
    created = await router.create_session("New", directory="/b")
    assert created.success
    assert router.registry.owner_of("new") == "/b"

    router.registry.bind_session("c1", "/a")
    forked = await router.fork_session("c1", "m3")
    assert forked.data == {"id": "c1-fork"}
    assert router.registry.owner_of("c1-fork") == "/a"


@pytest.mark.asyncio
async def test_delete_unbinds_on_success() -> None:
    router, _, _ = _setup("/a")
    router.registry.bind_session("c1", "/a")
    assert (await router.delete_session("c1")).success
    assert router.registry.owner_of("c1") is None


@pytest.mark.asyncio
async def test_question_reply_tries_each_project() -> None:
    router, clients, _ = _setup("/a", "/b")
    clients["/a"].fail_with = ServerRequestError("POST", "/question/q1/reply", 404)
    result = await router.reply_question("q1", [["yes"]])
    assert result.success
    assert clients["/b"].calls == [("reply_question", "q1")]


@pytest.mark.asyncio
async def test_update_config_rejects_non_mapping() -> None:
    router, _, _ = _setup("/a")
    assert await router.update_config(["nope"]) == CommandResult.fail("Invalid config")
