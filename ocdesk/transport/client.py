"""HTTP client for one agent server, scoped to one project directory.

Thin wrapper over an ``aiohttp.ClientSession``: every method maps to one
server endpoint and returns the decoded JSON body. Non-2xx answers raise
ServerRequestError; the router turns those into CommandResults.
"""
from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import quote

import aiohttp

from ocdesk.engine.config import DEFAULT_USERNAME, ConnectionConfig
from ocdesk.engine.errors import HealthCheckError, ServerRequestError
from ocdesk.shared.models.message import SelectedModel
from ocdesk.transport.sse import iter_sse_events

logger = logging.getLogger(__name__)

DIRECTORY_HEADER = "x-opencode-directory"

_DATA_URI_MIME = re.compile(r"^data:(image/[^;,]+)")
_EXTENSION_MIME = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
    "svg": "image/svg+xml",
}

PERMISSION_RESPONSES = frozenset({"once", "always", "reject"})


def detect_image_mime(url: str) -> str:
    """Guess an attachment's MIME type from a data URI or file extension."""
    match = _DATA_URI_MIME.match(url)
    if match:
        return match.group(1)
    ext = url.rsplit(".", 1)[-1].lower() if "." in url else ""
    return _EXTENSION_MIME.get(ext, "image/png")


def build_prompt_parts(text: str, attachments: list[str] | tuple[str, ...] = ()) -> list[dict]:
    parts: list[dict[str, Any]] = [{"type": "text", "text": text}]
    for url in attachments:
        parts.append({"type": "file", "mime": detect_image_mime(url), "url": url})
    return parts


def _seg(value: str) -> str:
    return quote(value, safe="")


class ApiClient:
    """Request client for one server/directory pair."""

    def __init__(
        self,
        config: ConnectionConfig,
        request_timeout: float = 30.0,
        health_timeout: float = 5.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.base_url = config.normalized_url
        self.directory = config.directory.strip()
        self._request_timeout = request_timeout
        self._health_timeout = health_timeout
        headers = {DIRECTORY_HEADER: self.directory}
        auth = None
        if config.password:
            auth = aiohttp.BasicAuth(config.username or DEFAULT_USERNAME, config.password)
        self._headers = headers
        self._auth = auth
        self._owns_session = session is None
        self._session = session or aiohttp.ClientSession()

    @property
    def closed(self) -> bool:
        return self._session.closed

    async def close(self) -> None:
        if self._owns_session and not self._session.closed:
            await self._session.close()

    # ── plumbing ───────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        client_timeout = aiohttp.ClientTimeout(total=timeout or self._request_timeout)
        async with self._session.request(
            method,
            url,
            json=json,
            params=params,
            headers=self._headers,
            auth=self._auth,
            timeout=client_timeout,
        ) as resp:
            body = await resp.text()
            if resp.status >= 400:
                logger.warning("%s %s -> %d", method, path, resp.status)
                raise ServerRequestError(method, path, resp.status, body)
            if not body:
                return None
            try:
                return await resp.json(content_type=None)
            except ValueError:
                return body

    async def _get(self, path: str, **kwargs: Any) -> Any:
        return await self._request("GET", path, **kwargs)

    async def _post(self, path: str, body: Any = None, **kwargs: Any) -> Any:
        return await self._request("POST", path, json=body, **kwargs)

    # ── health & events ────────────────────────────────────────

    async def check_health(self) -> str:
        """Probe the server; return its version or raise HealthCheckError."""
        try:
            data = await self._get("/global/health", timeout=self._health_timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError, ServerRequestError) as exc:
            raise HealthCheckError(self.base_url, str(exc) or type(exc).__name__) from exc
        if not isinstance(data, dict):
            raise HealthCheckError(self.base_url, "Malformed health response")
        version = data.get("version")
        if not version:
            raise HealthCheckError(self.base_url, "Server did not report a version")
        if data.get("healthy") is not True:
            raise HealthCheckError(self.base_url, "Server reports unhealthy")
        return str(version)

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        """Subscribe to the server's event stream.

        Returns when the server closes the stream; raises on transport
        errors. Cancel the consuming task to abort.
        """
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self._request_timeout)
        async with self._session.get(
            f"{self.base_url}/event",
            headers={**self._headers, "Accept": "text/event-stream"},
            auth=self._auth,
            timeout=timeout,
        ) as resp:
            if resp.status >= 400:
                body = await resp.text()
                raise ServerRequestError("GET", "/event", resp.status, body)
            async for event in iter_sse_events(resp.content):
                yield event

    # ── sessions ───────────────────────────────────────────────

    async def list_sessions(self) -> list[dict]:
        data = await self._get("/session", params={"roots": "true", "limit": "10000"})
        return data or []

    async def create_session(self, title: str | None = None) -> dict:
        title = title.strip() if isinstance(title, str) else ""
        return await self._post("/session", {"title": title} if title else {})

    async def delete_session(self, session_id: str) -> Any:
        return await self._request("DELETE", f"/session/{_seg(session_id)}")

    async def update_session(self, session_id: str, title: str) -> dict:
        return await self._request(
            "PATCH", f"/session/{_seg(session_id)}", json={"title": title}
        )

    async def session_statuses(self) -> dict[str, dict]:
        return await self._get("/session/status") or {}

    async def revert_session(
        self, session_id: str, message_id: str, part_id: str | None = None,
    ) -> dict:
        body = {"messageID": message_id}
        if part_id:
            body["partID"] = part_id
        return await self._post(f"/session/{_seg(session_id)}/revert", body)

    async def unrevert_session(self, session_id: str) -> dict:
        return await self._post(f"/session/{_seg(session_id)}/unrevert")

    async def fork_session(self, session_id: str, message_id: str | None = None) -> dict:
        body = {"messageID": message_id} if message_id else {}
        return await self._post(f"/session/{_seg(session_id)}/fork", body)

    # ── messages & prompting ───────────────────────────────────

    async def messages(self, session_id: str) -> list[dict]:
        return await self._get(f"/session/{_seg(session_id)}/message") or []

    async def prompt(
        self,
        session_id: str,
        text: str,
        attachments: list[str] | tuple[str, ...] = (),
        model: SelectedModel | None = None,
        agent: str | None = None,
        variant: str | None = None,
    ) -> None:
        body: dict[str, Any] = {"parts": build_prompt_parts(text, attachments)}
        if model:
            body["model"] = model.to_wire()
        if agent:
            body["agent"] = agent
        if variant:
            body["variant"] = variant
        await self._post(f"/session/{_seg(session_id)}/prompt_async", body)

    async def send_command(
        self,
        session_id: str,
        command: str,
        arguments: str = "",
        model: SelectedModel | None = None,
        agent: str | None = None,
        variant: str | None = None,
    ) -> None:
        body: dict[str, Any] = {"command": command, "arguments": arguments}
        if model:
            body["model"] = model.key
        if agent:
            body["agent"] = agent
        if variant:
            body["variant"] = variant
        await self._post(f"/session/{_seg(session_id)}/command", body)

    async def abort(self, session_id: str) -> None:
        await self._post(f"/session/{_seg(session_id)}/abort")

    async def respond_permission(
        self, session_id: str, permission_id: str, response: str,
    ) -> None:
        if response not in PERMISSION_RESPONSES:
            raise ValueError(f"Unknown permission response: {response!r}")
        await self._post(
            f"/session/{_seg(session_id)}/permissions/{_seg(permission_id)}",
            {"response": response},
        )

    # ── questions ──────────────────────────────────────────────

    async def reply_question(self, request_id: str, answers: list[list[str]]) -> None:
        await self._post(f"/question/{_seg(request_id)}/reply", {"answers": answers})

    async def reject_question(self, request_id: str) -> None:
        await self._post(f"/question/{_seg(request_id)}/reject")

    # ── providers & auth ───────────────────────────────────────

    async def providers(self) -> dict:
        return await self._get("/config/providers") or {"providers": [], "default": {}}

    async def all_providers(self) -> dict:
        return await self._get("/provider") or {"all": [], "default": {}, "connected": []}

    async def provider_auth_methods(self) -> dict:
        return await self._get("/provider/auth") or {}

    async def set_provider_auth(self, provider_id: str, auth: dict) -> Any:
        return await self._request("PUT", f"/auth/{_seg(provider_id)}", json=auth)

    async def remove_provider_auth(self, provider_id: str) -> Any:
        return await self._request("DELETE", f"/auth/{_seg(provider_id)}")

    async def oauth_authorize(self, provider_id: str, method: int | None = None) -> Any:
        body = {} if method is None else {"method": method}
        return await self._post(f"/provider/{_seg(provider_id)}/oauth/authorize", body)

    async def oauth_callback(
        self, provider_id: str, method: int | None = None, code: str | None = None,
    ) -> Any:
        body: dict[str, Any] = {}
        if method is not None:
            body["method"] = method
        if code is not None:
            body["code"] = code
        return await self._post(f"/provider/{_seg(provider_id)}/oauth/callback", body)

    async def dispose_instance(self) -> Any:
        return await self._post("/instance/dispose")

    # ── catalogues ─────────────────────────────────────────────

    async def agents(self) -> list[dict]:
        return await self._get("/agent") or []

    async def commands(self) -> list[dict]:
        return await self._get("/command") or []

    async def skills(self) -> list[dict]:
        return await self._get("/skill") or []

    # ── MCP servers ────────────────────────────────────────────

    async def mcp_status(self) -> dict:
        return await self._get("/mcp") or {}

    async def add_mcp(self, name: str, config: dict) -> dict:
        return await self._post("/mcp", {"name": name, "config": config}) or {}

    async def connect_mcp(self, name: str) -> None:
        await self._post(f"/mcp/{_seg(name)}/connect")

    async def disconnect_mcp(self, name: str) -> None:
        await self._post(f"/mcp/{_seg(name)}/disconnect")

    # ── global config ──────────────────────────────────────────

    async def get_config(self) -> dict:
        return await self._get("/config") or {}

    async def update_config(self, config: dict) -> dict:
        return await self._request("PATCH", "/config", json=config) or {}
