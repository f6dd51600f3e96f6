from __future__ import annotations

import pytest

from gekto.engine.lifecycle import (
    VALID_TRANSITIONS,
    is_valid_transition,
    validate_transition,
)
from gekto.engine.models import SessionState


def test_every_state_has_an_entry() -> None:
    assert set(VALID_TRANSITIONS) == set(SessionState)


def test_error_is_terminal() -> None:
    assert VALID_TRANSITIONS[SessionState.ERROR] == set()
    for target in SessionState:
        assert not is_valid_transition(SessionState.ERROR, target)


def test_every_state_can_fail() -> None:
    for state in SessionState:
        if state is SessionState.ERROR:
            continue
        assert is_valid_transition(state, SessionState.ERROR)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (SessionState.LOADING, SessionState.READY),
        (SessionState.READY, SessionState.WORKING),
        (SessionState.WORKING, SessionState.READY),
        (SessionState.WORKING, SessionState.WAITING_INPUT),
        (SessionState.WAITING_INPUT, SessionState.WORKING),
    ],
)
def test_turn_cycle_is_valid(current: SessionState, target: SessionState) -> None:
    validate_transition("s1", current, target)


def test_loading_cannot_jump_to_working() -> None:
    with pytest.raises(ValueError, match="loading -> working"):
        validate_transition("s1", SessionState.LOADING, SessionState.WORKING)
