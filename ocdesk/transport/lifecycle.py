"""Project link state machine.

Transitions are pure functions of (state, trigger). Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    IDLE ──> CONNECTING ──┬──> CONNECTED ──> RECONNECTING ──> CONNECTED
                          │        ^              │  ^
                          │        └─ STALE       └──┘ probe failed
                          └──> ERROR ──> CONNECTING

    Any state ──> IDLE  (explicit disconnect)
    Any state ──> CONNECTING  (connect replaces the previous link)
"""
from __future__ import annotations

from enum import Enum

from ocdesk.shared.models.conversation import LinkState

# Seconds to wait before reconnect attempt N (capped at the last step).
BACKOFF_STEPS: tuple[float, ...] = (0.5, 1.0, 2.0, 5.0)


class Trigger(str, Enum):
    """Things that happen to a link."""
    CONNECT = "connect"
    PROBE_OK = "probe_ok"
    PROBE_FAILED = "probe_failed"
    STREAM_LOST = "stream_lost"
    HEALTH_FAILED = "health_failed"
    STREAM_STALE = "stream_stale"
    DISCONNECT = "disconnect"


VALID_TRANSITIONS: dict[LinkState, set[LinkState]] = {
    LinkState.IDLE: {
        LinkState.CONNECTING,
        LinkState.IDLE,
    },
    LinkState.CONNECTING: {
        LinkState.CONNECTED,
        LinkState.ERROR,
        LinkState.CONNECTING,
        LinkState.IDLE,
    },
    LinkState.CONNECTED: {
        LinkState.RECONNECTING,
        LinkState.CONNECTED,  # silent stream restart
        LinkState.CONNECTING,
        LinkState.IDLE,
    },
    LinkState.RECONNECTING: {
        LinkState.CONNECTED,
        LinkState.RECONNECTING,
        LinkState.CONNECTING,
        LinkState.IDLE,
    },
    LinkState.ERROR: {
        LinkState.CONNECTING,
        LinkState.IDLE,
    },
}

_TRIGGER_TARGETS: dict[tuple[LinkState, Trigger], LinkState] = {
    (LinkState.CONNECTING, Trigger.PROBE_OK): LinkState.CONNECTED,
    (LinkState.CONNECTING, Trigger.PROBE_FAILED): LinkState.ERROR,
    (LinkState.CONNECTED, Trigger.STREAM_LOST): LinkState.RECONNECTING,
    (LinkState.CONNECTED, Trigger.HEALTH_FAILED): LinkState.RECONNECTING,
    (LinkState.CONNECTED, Trigger.STREAM_STALE): LinkState.CONNECTED,
    (LinkState.RECONNECTING, Trigger.PROBE_OK): LinkState.CONNECTED,
    (LinkState.RECONNECTING, Trigger.PROBE_FAILED): LinkState.RECONNECTING,
    (LinkState.RECONNECTING, Trigger.STREAM_LOST): LinkState.RECONNECTING,
}


def validate_transition(current: LinkState, target: LinkState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none"
        raise ValueError(
            f"Invalid link transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )


def next_state(current: LinkState, trigger: Trigger) -> LinkState:
    """Return the state reached from *current* when *trigger* happens."""
    if trigger == Trigger.DISCONNECT:
        target = LinkState.IDLE
    elif trigger == Trigger.CONNECT:
        target = LinkState.CONNECTING
    else:
        try:
            target = _TRIGGER_TARGETS[(current, trigger)]
        except KeyError:
            raise ValueError(
                f"Trigger {trigger.value} is not valid in state {current.value}"
            ) from None
    validate_transition(current, target)
    return target


def backoff_delay(attempt: int) -> float:
    """Delay before reconnect attempt *attempt* (0-based)."""
    if attempt < 0:
        attempt = 0
    return BACKOFF_STEPS[min(attempt, len(BACKOFF_STEPS) - 1)]
