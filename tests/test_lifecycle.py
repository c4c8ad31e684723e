"""Command and turn state machine tables."""

from __future__ import annotations

import pytest

from basebrain.engine.errors import InvalidTransitionError
from basebrain.engine.lifecycle import (
    COMMAND_TRANSITIONS,
    validate_command_transition,
    validate_turn_transition,
)
from basebrain.engine.models import CommandStatus, TurnPhase


def test_happy_path_command_transitions():
    validate_command_transition(CommandStatus.PENDING, CommandStatus.APPROVED)
    validate_command_transition(CommandStatus.APPROVED, CommandStatus.RUNNING)
    validate_command_transition(CommandStatus.RUNNING, CommandStatus.COMPLETED)
    validate_command_transition(CommandStatus.RUNNING, CommandStatus.TERMINATED)
    validate_command_transition(CommandStatus.PENDING, CommandStatus.REJECTED)


@pytest.mark.parametrize(
    "current,target",
    [
        (CommandStatus.PENDING, CommandStatus.RUNNING),
        (CommandStatus.REJECTED, CommandStatus.PENDING),
        (CommandStatus.TERMINATED, CommandStatus.RUNNING),
        (CommandStatus.COMPLETED, CommandStatus.FAILED),
        (CommandStatus.PENDING, CommandStatus.TERMINATED),
    ],
)
def test_invalid_command_transitions_raise(current, target):
    with pytest.raises(InvalidTransitionError) as exc_info:
        validate_command_transition(current, target)
    assert isinstance(exc_info.value, ValueError)
    assert current.value in str(exc_info.value)


def test_terminal_states_have_no_exits():
    for status in CommandStatus:
        if status.is_terminal:
            assert COMMAND_TRANSITIONS[status] == set()
        assert status.is_terminal != status.is_active


def test_turn_phase_transitions():
    validate_turn_transition(TurnPhase.THINKING, TurnPhase.ACTING)
    validate_turn_transition(TurnPhase.ACTING, TurnPhase.WAITING_APPROVAL)
    validate_turn_transition(TurnPhase.WAITING_APPROVAL, TurnPhase.WAITING_COMMAND)
    validate_turn_transition(TurnPhase.WAITING_COMMAND, TurnPhase.OBSERVING)
    validate_turn_transition(TurnPhase.OBSERVING, TurnPhase.THINKING)
    validate_turn_transition(TurnPhase.THINKING, TurnPhase.THINKING)
    with pytest.raises(InvalidTransitionError):
        validate_turn_transition(TurnPhase.THINKING, TurnPhase.WAITING_COMMAND)
    with pytest.raises(InvalidTransitionError):
        validate_turn_transition(TurnPhase.DONE, TurnPhase.THINKING)
