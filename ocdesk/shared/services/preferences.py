"""User preferences, persisted to ~/.ocdesk/preferences.json.

Holds what the desk restores on the next launch: the model and agent
selection, per-model variant choices, the open projects, conversations
with unseen activity and the notification toggle. Settings are global,
not per-project.
"""
from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path

from ocdesk.shared.models.message import SelectedModel

logger = logging.getLogger(__name__)

PREFS_PATH = Path.home() / ".ocdesk" / "preferences.json"


@dataclass
class UserPreferences:
    """User preference settings.

    Attributes:
        selected_model: ``"providerID/modelID"`` or None for the server default.
        selected_agent: Agent name, None for the server's default agent.
        variant_selections: Variant chosen per ``"providerID/modelID"`` key.
        open_projects: Project directories to reconnect on launch.
        unread_sessions: Conversations that finished in the background.
        notifications_enabled: Desktop notification toggle.
    """

    selected_model: str | None = None
    selected_agent: str | None = None
    variant_selections: dict[str, str] = field(default_factory=dict)
    open_projects: list[str] = field(default_factory=list)
    unread_sessions: list[str] = field(default_factory=list)
    notifications_enabled: bool = True

    def validate(self) -> None:
        """Coerce anything malformed back to its default."""
        if not isinstance(self.selected_model, str) or "/" not in self.selected_model:
            self.selected_model = None
        if not isinstance(self.selected_agent, str) or not self.selected_agent.strip():
            self.selected_agent = None
        if isinstance(self.variant_selections, dict):
            self.variant_selections = {
                k: v for k, v in self.variant_selections.items()
                if isinstance(k, str) and isinstance(v, str)
            }
        else:
            self.variant_selections = {}
        self.open_projects = _clean_strings(self.open_projects)
        self.unread_sessions = _clean_strings(self.unread_sessions)
        if not isinstance(self.notifications_enabled, bool):
            self.notifications_enabled = True

    @property
    def model(self) -> SelectedModel | None:
        if not self.selected_model:
            return None
        provider_id, _, model_id = self.selected_model.partition("/")
        return SelectedModel(provider_id, model_id)

    @model.setter
    def model(self, value: SelectedModel | None) -> None:
        self.selected_model = value.key if value else None

    def save(self, path: Path | None = None) -> None:
        """Persist preferences to disk."""
        target = path or PREFS_PATH
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            target.write_text(json.dumps(asdict(self), indent=2))
        except OSError:
            logger.warning("Failed to save preferences to %s", target)

    @classmethod
    def load(cls, path: Path | None = None) -> UserPreferences:
        """Load preferences from disk, returning defaults if missing/corrupt."""
        target = path or PREFS_PATH
        try:
            if target.exists():
                data = json.loads(target.read_text())
                prefs = cls(**{
                    k: v for k, v in data.items()
                    if k in cls.__dataclass_fields__
                })
                prefs.validate()
                logger.debug("Loaded preferences from %s", target)
                return prefs
            logger.debug("Preferences file not found at %s; using defaults", target)
        except (OSError, ValueError, TypeError, AttributeError):
            logger.warning("Failed to load preferences from %s; using defaults", target)
        return cls()


def _clean_strings(values: object) -> list[str]:
    if not isinstance(values, list):
        return []
    cleaned: list[str] = []
    for value in values:
        if not isinstance(value, str):
            continue
        stripped = value.strip()
        if stripped and stripped not in cleaned:
            cleaned.append(stripped)
    return cleaned
