"""Server-Sent Events decoding.

The server writes one JSON document per ``data:`` block. Payloads come
in two shapes: a bare ``{"type", "properties"}`` event, or an envelope
``{"directory", "payload": {...}}``. Both unwrap to the bare event.
"""
from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

logger = logging.getLogger(__name__)


class SSEDecoder:
    """Incremental line-based SSE decoder.

    Feed it lines (without the trailing newline); it returns a complete
    data payload whenever a blank line ends an event block.
    """

    def __init__(self) -> None:
        self._data: list[str] = []

    def feed(self, line: str) -> str | None:
        if line == "":
            if not self._data:
                return None
            payload = "\n".join(self._data)
            self._data = []
            return payload
        if line.startswith(":"):
            return None  # comment / keep-alive
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            self._data.append(value)
        # event:, id: and retry: lines carry nothing we use.
        return None


def unwrap_payload(doc: Any) -> dict[str, Any] | None:
    """Return the bare ``{type, properties}`` event from either wire shape."""
    if not isinstance(doc, dict):
        return None
    if "properties" in doc or ("type" in doc and "payload" not in doc):
        event = doc
    else:
        event = doc.get("payload")
    if not isinstance(event, dict) or not isinstance(event.get("type"), str):
        return None
    return event


async def iter_sse_events(
    lines: AsyncIterable[bytes],
) -> AsyncIterator[dict[str, Any]]:
    """Yield decoded events from a byte-line stream (e.g. aiohttp content)."""
    decoder = SSEDecoder()
    async for raw in lines:
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        payload = decoder.feed(line)
        if payload is None:
            continue
        try:
            doc = json.loads(payload)
        except json.JSONDecodeError as exc:
            logger.warning("Dropping malformed SSE payload: %s", exc)
            continue
        event = unwrap_payload(doc)
        if event is None:
            logger.debug("Ignoring SSE payload without event type: %.200s", payload)
            continue
        yield event
