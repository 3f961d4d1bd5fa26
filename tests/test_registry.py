from __future__ import annotations

import pytest

from ocdesk.engine.config import ConnectionConfig
from ocdesk.engine.project_registry import ProjectRegistry


class StubSupervisor:
    def __init__(self, link_id: int, connected: bool = True) -> None:
        self.link_id = link_id
        self.connected = connected


def _conn(directory: str) -> ConnectionConfig:
    return ConnectionConfig(base_url="http://127.0.0.1:4096", directory=directory)


def test_register_and_lookup() -> None:
    registry = ProjectRegistry()
    sup = StubSupervisor(1)
    runtime = registry.register_project("/a", sup, _conn("/a"))

    assert registry.has_project("/a")
    assert registry.get_project("/a") is runtime
    assert registry.supervisor_for("/a") is sup
    assert registry.supervisor_for("/b") is None
    assert registry.directories == ["/a"]
    with pytest.raises(KeyError):
        registry.get_project("/b")


def test_replacing_a_supervisor_changes_the_current_link() -> None:
    registry = ProjectRegistry()
    registry.register_project("/a", StubSupervisor(1), _conn("/a"))
    registry.register_project("/a", StubSupervisor(2), _conn("/a"))
    assert not registry.is_current_link("/a", 1)
    assert registry.is_current_link("/a", 2)
    assert not registry.is_current_link("/b", 2)


def test_unregister_forgets_owned_conversations() -> None:
    registry = ProjectRegistry()
    registry.register_project("/a", StubSupervisor(1), _conn("/a"))
    registry.register_project("/b", StubSupervisor(2), _conn("/b"))
    registry.bind_session("c1", "/a")
    registry.bind_session("c2", "/a")
    registry.bind_session("c3", "/b")

    assert registry.unregister_project("/a") is not None
    assert registry.owner_of("c1") is None
    assert registry.owner_of("c3") == "/b"
    assert registry.unregister_project("/a") is None


def test_bind_ignores_blank_values() -> None:
    registry = ProjectRegistry()
    registry.bind_session("", "/a")
    registry.bind_session("c1", "")
    assert registry.owner_of("") is None
    assert registry.owner_of("c1") is None


def test_any_connected_skips_disconnected_projects() -> None:
    registry = ProjectRegistry()
    registry.register_project("/a", StubSupervisor(1, connected=False), _conn("/a"))
    assert registry.any_connected() is None
    live = StubSupervisor(2)
    registry.register_project("/b", live, _conn("/b"))
    assert registry.any_connected() is live
