"""Multi-project registry.

Owns the two lookup tables the router needs: project directory to its
supervisor, and conversation id to the directory that owns it. One
registry lives for the whole desk session and is handed to the router.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from ocdesk.engine.config import ConnectionConfig

if TYPE_CHECKING:
    from ocdesk.transport.supervisor import ConnectionSupervisor

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProjectRuntime:
    """Runtime container for one connected project directory."""

    directory: str
    supervisor: ConnectionSupervisor
    connection: ConnectionConfig
    created_at: datetime = field(default_factory=_utc_now)
    last_active: datetime = field(default_factory=_utc_now)


class ProjectRegistry:
    """Directory → supervisor and conversation → directory tables."""

    def __init__(self) -> None:
        self._projects: dict[str, ProjectRuntime] = {}
        self._session_owners: dict[str, str] = {}

    # ── projects ───────────────────────────────────────────────

    def register_project(
        self,
        directory: str,
        supervisor: ConnectionSupervisor,
        connection: ConnectionConfig,
    ) -> ProjectRuntime:
        """Register *supervisor* as the one live link for *directory*.

        Returns the new runtime; a previously registered supervisor for
        the same directory is the caller's to tear down.
        """
        runtime = ProjectRuntime(
            directory=directory, supervisor=supervisor, connection=connection,
        )
        previous = self._projects.get(directory)
        if previous is not None and previous.supervisor is not supervisor:
            logger.info("Replacing supervisor for %s", directory)
        self._projects[directory] = runtime
        return runtime

    def unregister_project(self, directory: str) -> ProjectRuntime | None:
        """Remove a project and every conversation mapped to it."""
        runtime = self._projects.pop(directory, None)
        self.forget_sessions_for(directory)
        return runtime

    def get_project(self, directory: str) -> ProjectRuntime:
        if directory not in self._projects:
            raise KeyError(f"Project not registered: {directory}")
        return self._projects[directory]

    def has_project(self, directory: str) -> bool:
        return directory in self._projects

    def supervisor_for(self, directory: str) -> ConnectionSupervisor | None:
        runtime = self._projects.get(directory)
        return runtime.supervisor if runtime else None

    def list_projects(self) -> list[ProjectRuntime]:
        return list(self._projects.values())

    @property
    def directories(self) -> list[str]:
        return list(self._projects)

    def is_current_link(self, directory: str, link_id: int) -> bool:
        """True when *link_id* is the supervisor registered for *directory*."""
        runtime = self._projects.get(directory)
        return runtime is not None and runtime.supervisor.link_id == link_id

    def any_connected(self) -> ConnectionSupervisor | None:
        for runtime in self._projects.values():
            if runtime.supervisor.connected:
                return runtime.supervisor
        return None

    # ── conversation ownership ─────────────────────────────────

    def bind_session(self, session_id: str, directory: str) -> None:
        if not session_id or not directory:
            return
        self._session_owners[session_id] = directory

    def unbind_session(self, session_id: str) -> None:
        self._session_owners.pop(session_id, None)

    def owner_of(self, session_id: str) -> str | None:
        return self._session_owners.get(session_id)

    def forget_sessions_for(self, directory: str) -> list[str]:
        dropped = [sid for sid, d in self._session_owners.items() if d == directory]
        for sid in dropped:
            del self._session_owners[sid]
        return dropped
