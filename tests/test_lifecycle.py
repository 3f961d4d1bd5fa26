from __future__ import annotations

import pytest

from ocdesk.shared.models.conversation import LinkState
from ocdesk.transport.lifecycle import (
    BACKOFF_STEPS,
    Trigger,
    backoff_delay,
    next_state,
    validate_transition,
)


def test_backoff_ladder_caps_at_last_step() -> None:
    assert [backoff_delay(i) for i in range(7)] == [0.5, 1.0, 2.0, 5.0, 5.0, 5.0, 5.0]
    assert BACKOFF_STEPS[-1] == 5.0


def test_negative_attempt_uses_first_step() -> None:
    assert backoff_delay(-3) == 0.5


def test_first_connect_happy_path() -> None:
    state = next_state(LinkState.IDLE, Trigger.CONNECT)
    assert state == LinkState.CONNECTING
    assert next_state(state, Trigger.PROBE_OK) == LinkState.CONNECTED


def test_failed_first_probe_is_error_not_reconnecting() -> None:
    assert next_state(LinkState.CONNECTING, Trigger.PROBE_FAILED) == LinkState.ERROR


def test_reconnect_loop_stays_in_reconnecting_until_probe_ok() -> None:
    state = next_state(LinkState.CONNECTED, Trigger.STREAM_LOST)
    assert state == LinkState.RECONNECTING
    state = next_state(state, Trigger.PROBE_FAILED)
    assert state == LinkState.RECONNECTING
    assert next_state(state, Trigger.PROBE_OK) == LinkState.CONNECTED


def test_health_failure_moves_connected_to_reconnecting() -> None:
    assert next_state(LinkState.CONNECTED, Trigger.HEALTH_FAILED) == LinkState.RECONNECTING


def test_stale_restart_keeps_connected() -> None:
    assert next_state(LinkState.CONNECTED, Trigger.STREAM_STALE) == LinkState.CONNECTED


@pytest.mark.parametrize("state", list(LinkState))
def test_disconnect_and_connect_allowed_from_any_state(state: LinkState) -> None:
    assert next_state(state, Trigger.DISCONNECT) == LinkState.IDLE
    assert next_state(state, Trigger.CONNECT) == LinkState.CONNECTING


def test_trigger_not_valid_in_state_raises() -> None:
    with pytest.raises(ValueError, match="not valid in state idle"):
        next_state(LinkState.IDLE, Trigger.PROBE_OK)
    with pytest.raises(ValueError):
        next_state(LinkState.ERROR, Trigger.STREAM_LOST)


def test_validate_transition_rejects_error_to_connected() -> None:
    with pytest.raises(ValueError, match="Invalid link transition: error -> connected"):
        validate_transition(LinkState.ERROR, LinkState.CONNECTED)
