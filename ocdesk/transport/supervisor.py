"""Per-project connection supervisor.

Owns the request client and the event stream for one project directory,
and keeps the stream alive:

- a single scheduler task (``_supervise``) opens the stream, waits for
  it to end and walks the reconnect ladder when it ends unexpectedly;
- a health task probes the server every ``health_interval_seconds``,
  restarts a stream that has gone quiet and forces a reconnect when the
  probe fails.

Every continuation carries the lifecycle token it was started with and
exits silently once ``teardown()`` has moved the token on.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import replace

from ocdesk.adapters.events import (
    ConnectionStatusChanged,
    ServerEvent,
    parse_server_event,
)
from ocdesk.engine.config import ClientConfig, ConnectionConfig, validate_connection_config
from ocdesk.engine.errors import HealthCheckError, NotConnectedError
from ocdesk.shared.models.conversation import ConnectionStatus, LinkState
from ocdesk.transport.client import ApiClient
from ocdesk.transport.lifecycle import Trigger, backoff_delay, next_state

logger = logging.getLogger(__name__)

EventSink = Callable[[ServerEvent], Awaitable[None]]
ClientFactory = Callable[[ConnectionConfig], ApiClient]

_link_ids = itertools.count(1)


class ConnectionSupervisor:
    """Keeps one project's server link healthy."""

    def __init__(
        self,
        directory: str,
        emit: EventSink,
        config: ClientConfig | None = None,
        client_factory: ClientFactory | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.directory = directory
        self.link_id = next(_link_ids)
        self._emit_event = emit
        self._settings = config or ClientConfig()
        self._client_factory = client_factory or self._default_client_factory
        self._sleep = sleep
        self._clock = clock

        self._token = 0
        self._client: ApiClient | None = None
        self._connection: ConnectionConfig | None = None
        self._status = ConnectionStatus()
        self._last_event_at: float | None = None
        self._restart_requested = False
        self.attempt = 0

        self._supervise_task: asyncio.Task | None = None
        self._health_task: asyncio.Task | None = None
        self._stream_task: asyncio.Task | None = None
        self._closing: set[asyncio.Task] = set()

    def _default_client_factory(self, connection: ConnectionConfig) -> ApiClient:
        return ApiClient(
            connection,
            request_timeout=self._settings.request_timeout_seconds,
            health_timeout=self._settings.health_timeout_seconds,
        )

    # ── public surface ─────────────────────────────────────────

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def connected(self) -> bool:
        return self._status.state == LinkState.CONNECTED

    @property
    def client(self) -> ApiClient:
        """The live request client; raises NotConnectedError when torn down."""
        if self._client is None:
            raise NotConnectedError(self.directory)
        return self._client

    async def connect(self, connection: ConnectionConfig) -> None:
        """Replace any previous link with a fresh one and probe it.

        Raises ConfigError for unsafe settings (before any network call)
        and HealthCheckError when the first probe fails.
        """
        validate_connection_config(connection)
        self.teardown()
        token = self._token
        self._connection = connection
        self._client = self._client_factory(connection)
        await self._transition(
            token,
            Trigger.CONNECT,
            server_url=connection.normalized_url,
            server_version=None,
            last_event_at=None,
            error=None,
        )

        try:
            version = await self._client.check_health()
        except HealthCheckError as exc:
            if not self._is_current(token):
                return
            logger.warning("Initial health check failed for %s: %s", self.directory, exc)
            await self._transition(token, Trigger.PROBE_FAILED, error=str(exc))
            raise
        if not self._is_current(token):
            return

        await self._transition(token, Trigger.PROBE_OK, server_version=version)
        logger.info(
            "Connected to %s for %s (server %s)",
            connection.normalized_url, self.directory, version,
        )
        self._supervise_task = asyncio.create_task(self._supervise(token))
        self._health_task = asyncio.create_task(self._health_loop(token))

    def teardown(self) -> None:
        """Invalidate all pending work and release the client. Idempotent."""
        self._token += 1
        for task in (self._stream_task, self._supervise_task, self._health_task):
            if task is not None and not task.done():
                task.cancel()
        self._stream_task = None
        self._supervise_task = None
        self._health_task = None
        self._restart_requested = False
        self.attempt = 0
        client, self._client = self._client, None
        self._connection = None
        if client is not None:
            self._schedule_close(client)

    async def aclose(self) -> None:
        """Tear down and wait for the client to be released."""
        self.teardown()
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)

    async def disconnect(self) -> None:
        """Tear down and report the link as idle."""
        await self.aclose()
        self._status = ConnectionStatus()
        self._last_event_at = None
        await self._emit_status()

    # ── internals ──────────────────────────────────────────────

    def _is_current(self, token: int) -> bool:
        return token == self._token

    def _schedule_close(self, client: ApiClient) -> None:
        try:
            task = asyncio.get_running_loop().create_task(client.close())
        except RuntimeError:
            # No loop left to close on; aiohttp warns about the unclosed session.
            return
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _transition(self, token: int, trigger: Trigger, **changes) -> None:
        if not self._is_current(token):
            return
        state = next_state(self._status.state, trigger)
        self._status = replace(self._status, state=state, **changes)
        await self._emit_status()

    async def _emit_status(self) -> None:
        await self._emit_event(
            ConnectionStatusChanged(
                directory=self.directory, link_id=self.link_id, status=self._status,
            )
        )

    async def _supervise(self, token: int) -> None:
        """Scheduler loop: keep exactly one stream open while current."""
        while self._is_current(token):
            self._restart_requested = False
            stream = asyncio.create_task(self._read_stream(token))
            self._stream_task = stream
            await asyncio.wait({stream})
            if not self._is_current(token):
                return
            if not stream.cancelled() and stream.exception() is not None:
                logger.warning(
                    "Event stream for %s failed: %s", self.directory, stream.exception(),
                )
            if self._restart_requested:
                await self._sleep(self._settings.stream_settle_seconds)
                continue
            if not stream.cancelled():
                logger.warning("Event stream for %s ended, reconnecting", self.directory)
            if not await self._reconnect(token):
                return

    async def _reconnect(self, token: int) -> bool:
        """Walk the backoff ladder until a probe succeeds."""
        trigger = Trigger.STREAM_LOST
        while self._is_current(token):
            delay = backoff_delay(self.attempt)
            self.attempt += 1
            await self._transition(token, trigger, error=f"Reconnecting in {delay:g}s...")
            await self._sleep(delay)
            if not self._is_current(token):
                return False
            try:
                version = await self.client.check_health()
            except (HealthCheckError, NotConnectedError) as exc:
                if not self._is_current(token):
                    return False
                logger.warning(
                    "Reconnect attempt %d for %s failed: %s",
                    self.attempt, self.directory, exc,
                )
                trigger = Trigger.PROBE_FAILED
                continue
            if not self._is_current(token):
                return False
            await self._transition(
                token, Trigger.PROBE_OK, server_version=version, error=None,
            )
            logger.info("Reconnected to %s for %s", self._status.server_url, self.directory)
            return True
        return False

    async def _read_stream(self, token: int) -> None:
        client = self.client
        async for raw in client.events():
            if not self._is_current(token):
                return
            self.attempt = 0
            self._last_event_at = self._clock()
            self._status = replace(self._status, last_event_at=time.time())
            await self._emit_event(
                parse_server_event(raw, directory=self.directory, link_id=self.link_id)
            )

    async def _health_loop(self, token: int) -> None:
        while self._is_current(token):
            await self._sleep(self._settings.health_interval_seconds)
            if not self._is_current(token):
                return
            if self._status.state != LinkState.CONNECTED:
                continue
            try:
                await self.client.check_health()
            except (HealthCheckError, NotConnectedError) as exc:
                if not self._is_current(token) or not self.connected:
                    continue
                logger.warning(
                    "Health check failed for %s while connected: %s", self.directory, exc,
                )
                await self._transition(
                    token, Trigger.HEALTH_FAILED, error="Server unreachable",
                )
                self._abort_stream()
                continue
            if not self._is_current(token):
                return
            last = self._last_event_at
            stale = self._settings.stale_stream_seconds
            if last is not None and self.connected and self._clock() - last > stale:
                logger.warning(
                    "Event stream for %s silent for over %gs, restarting",
                    self.directory, stale,
                )
                self._restart_requested = True
                self._abort_stream()

    def _abort_stream(self) -> None:
        if self._stream_task is not None and not self._stream_task.done():
            self._stream_task.cancel()
