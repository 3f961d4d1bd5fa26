from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from ocdesk.engine.errors import BootError
from ocdesk.shared.services import local_server
from ocdesk.shared.services.local_server import (
    BINARY_NOT_FOUND,
    ensure_local_server,
    find_opencode_binary,
    wait_for_healthy,
)


def _probe(*answers: bool):
    remaining = list(answers)
    calls: list[int] = []

    async def probe() -> bool:
        calls.append(1)
        return remaining.pop(0) if remaining else answers[-1]

    probe.calls = calls
    return probe


@pytest.mark.asyncio
async def test_running_server_is_reused() -> None:
    spawn = AsyncMock()
    with patch.object(local_server, "spawn_server", spawn):
        already = await ensure_local_server(probe=_probe(True))
    assert already is True
    spawn.assert_not_called()


@pytest.mark.asyncio
async def test_missing_binary_is_a_boot_error() -> None:
    with patch.object(local_server, "find_opencode_binary", return_value=None):
        with pytest.raises(BootError) as exc_info:
            await ensure_local_server(probe=_probe(False))
    assert exc_info.value.reason == BINARY_NOT_FOUND


@pytest.mark.asyncio
async def test_server_is_spawned_and_awaited() -> None:
    spawn = AsyncMock()
    starting: list[bool] = []
    probe = _probe(False, False, True)
    with patch.object(local_server, "find_opencode_binary", return_value="/usr/bin/opencode"), \
            patch.object(local_server, "spawn_server", spawn):
        already = await ensure_local_server(
            port=4100, probe=probe, interval=0, on_starting=lambda: starting.append(True),
        )
    assert already is False
    assert starting == [True]
    spawn.assert_awaited_once_with("/usr/bin/opencode", 4100)
    assert len(probe.calls) == 3


@pytest.mark.asyncio
async def test_wait_for_healthy_times_out() -> None:
    with pytest.raises(BootError, match="did not become healthy"):
        await wait_for_healthy(_probe(False), timeout=0, interval=0)


def test_find_binary_prefers_path() -> None:
    with patch("shutil.which", return_value="/opt/bin/opencode"):
        assert find_opencode_binary() == "/opt/bin/opencode"


def test_find_binary_falls_back_to_home_install(tmp_path: Path) -> None:
    binary = tmp_path / ".opencode" / "bin" / "opencode"
    binary.parent.mkdir(parents=True)
    binary.write_text("")
    with patch("shutil.which", return_value=None), \
            patch.object(Path, "home", return_value=tmp_path):
        assert find_opencode_binary() == str(binary)

    with patch("shutil.which", return_value=None), \
            patch.object(Path, "home", return_value=tmp_path / "empty"):
        assert find_opencode_binary() is None
