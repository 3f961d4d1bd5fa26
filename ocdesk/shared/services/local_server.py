"""Local agent server bootstrap.

Finds the ``opencode`` executable and starts ``opencode serve`` in its own
session when nothing healthy is listening on the local port yet. The
spawned server outlives the desk.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import subprocess
import time
from collections.abc import Awaitable, Callable
from pathlib import Path

import aiohttp

from ocdesk.engine.config import DEFAULT_SERVER_PORT, DEFAULT_SERVER_URL
from ocdesk.engine.errors import BootError

logger = logging.getLogger(__name__)

STARTUP_POLL_INTERVAL = 0.5
STARTUP_TIMEOUT = 15.0
PROBE_TIMEOUT = 3.0

BINARY_NOT_FOUND = (
    "Could not find the opencode binary. Make sure it is installed at "
    "~/.opencode/bin/opencode or available on your PATH."
)

Probe = Callable[[], Awaitable[bool]]


def find_opencode_binary() -> str | None:
    """PATH first, then the installer's default location."""
    found = shutil.which("opencode")
    if found:
        return found
    name = "opencode.exe" if os.name == "nt" else "opencode"
    fallback = Path.home() / ".opencode" / "bin" / name
    if fallback.exists():
        return str(fallback)
    return None


async def is_server_healthy(base_url: str = DEFAULT_SERVER_URL) -> bool:
    """True when ``/global/health`` answers ``healthy: true``."""
    timeout = aiohttp.ClientTimeout(total=PROBE_TIMEOUT)
    try:
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(f"{base_url.rstrip('/')}/global/health") as resp:
                if resp.status >= 400:
                    return False
                data = await resp.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError):
        return False
    return isinstance(data, dict) and data.get("healthy") is True


async def wait_for_healthy(
    probe: Probe,
    timeout: float = STARTUP_TIMEOUT,
    interval: float = STARTUP_POLL_INTERVAL,
) -> None:
    """Poll *probe* until it succeeds; raise BootError after *timeout*."""
    start = time.monotonic()
    while True:
        if await probe():
            return
        if time.monotonic() - start > timeout:
            raise BootError(f"Server did not become healthy within {timeout:g}s")
        await asyncio.sleep(interval)


async def spawn_server(binary: str, port: int = DEFAULT_SERVER_PORT) -> asyncio.subprocess.Process:
    logger.info("Starting local server: %s serve --port %d", binary, port)
    try:
        return await asyncio.create_subprocess_exec(
            binary, "serve", "--port", str(port),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as exc:
        raise BootError(f"Failed to start opencode server: {exc}") from exc


async def ensure_local_server(
    base_url: str = DEFAULT_SERVER_URL,
    port: int = DEFAULT_SERVER_PORT,
    probe: Probe | None = None,
    timeout: float = STARTUP_TIMEOUT,
    interval: float = STARTUP_POLL_INTERVAL,
    on_starting: Callable[[], None] | None = None,
) -> bool:
    """Make sure a healthy local server is listening.

    Returns True if one was already running, False if it was started here.
    Raises BootError when the binary is missing or the server never
    becomes healthy.
    """
    probe = probe or (lambda: is_server_healthy(base_url))
    if await probe():
        logger.info("Local server already running at %s", base_url)
        return True

    binary = find_opencode_binary()
    if binary is None:
        raise BootError(BINARY_NOT_FOUND)

    if on_starting is not None:
        on_starting()
    await spawn_server(binary, port)
    await wait_for_healthy(probe, timeout=timeout, interval=interval)
    logger.info("Local server healthy at %s", base_url)
    return False
