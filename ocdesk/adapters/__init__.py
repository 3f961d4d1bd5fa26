"""Adapters package - routing between supervisors, state and the UI.

Holds the typed event definitions, the event bus that carries them off
the supervisor tasks, the router that checks their origin, and the desk
client facade (import it from ``ocdesk.adapters.desk``).
"""
from __future__ import annotations

__all__ = [
    "CommandResult",
    "EventBus",
    "EventRouter",
    "ServerEvent",
    "parse_server_event",
]

from ocdesk.adapters.event_bus import EventBus
from ocdesk.adapters.events import ServerEvent, parse_server_event
from ocdesk.adapters.router import CommandResult, EventRouter
