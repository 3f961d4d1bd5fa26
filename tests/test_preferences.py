from __future__ import annotations

import json
from pathlib import Path

from ocdesk.shared.models.message import SelectedModel
from ocdesk.shared.services.preferences import UserPreferences


def test_missing_file_gives_defaults(tmp_path: Path) -> None:
    prefs = UserPreferences.load(tmp_path / "nope.json")
    assert prefs == UserPreferences()


def test_save_then_load(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "preferences.json"
    prefs = UserPreferences(
        selected_agent="plan",
        variant_selections={"anthropic/sonnet": "high"},
        open_projects=["/work/app"],
        unread_sessions=["c1"],
        notifications_enabled=False,
    )
    prefs.model = SelectedModel("anthropic", "sonnet")
    prefs.save(path)

    loaded = UserPreferences.load(path)
    assert loaded == prefs
    assert loaded.model == SelectedModel("anthropic", "sonnet")


def test_corrupt_file_gives_defaults(tmp_path: Path) -> None:
    path = tmp_path / "preferences.json"
    path.write_text("{not json")
    assert UserPreferences.load(path) == UserPreferences()


def test_malformed_values_are_coerced(tmp_path: Path) -> None:
    path = tmp_path / "preferences.json"
    path.write_text(json.dumps({
        "selected_model": "no-slash",
        "selected_agent": "  ",
        "variant_selections": {"a/b": "high", "c/d": 3},
        "open_projects": ["/work/app", "/work/app", 7, " "],
        "unread_sessions": "c1",
        "notifications_enabled": "yes",
        "unknown_key": True,
    }))
    prefs = UserPreferences.load(path)
    assert prefs.selected_model is None
    assert prefs.selected_agent is None
    assert prefs.variant_selections == {"a/b": "high"}
    assert prefs.open_projects == ["/work/app"]
    assert prefs.unread_sessions == []
    assert prefs.notifications_enabled is True


def test_clearing_the_model() -> None:
    prefs = UserPreferences(selected_model="anthropic/sonnet")
    prefs.model = None
    assert prefs.selected_model is None
    assert prefs.model is None
