"""Command and turn state machines.

Defines valid transitions and enforces them. Invalid transitions
raise InvalidTransitionError rather than silently proceeding.

Command State Diagram:

    PENDING ──> APPROVED ──> RUNNING ──┬──> COMPLETED
       │                               ├──> FAILED
       │                               └──> TERMINATED
       └──> REJECTED

    APPROVED ──> FAILED  (spawn failure)

All moves are one-way. A rejected or terminated command is never
retried in place; the agent has to prepare a new one.

Turn Phase Diagram:

    THINKING ──> DONE
        │
        └──> ACTING ──┬──> OBSERVING ──> THINKING
                      └──> WAITING_APPROVAL ──> WAITING_COMMAND ──> OBSERVING
"""
from __future__ import annotations

from .errors import InvalidTransitionError
from .models import CommandStatus, TurnPhase

COMMAND_TRANSITIONS: dict[CommandStatus, set[CommandStatus]] = {
    CommandStatus.PENDING: {
        CommandStatus.APPROVED,
        CommandStatus.REJECTED,
    },
    CommandStatus.APPROVED: {
        CommandStatus.RUNNING,
        CommandStatus.FAILED,
    },
    CommandStatus.RUNNING: {
        CommandStatus.COMPLETED,
        CommandStatus.FAILED,
        CommandStatus.TERMINATED,
    },
    CommandStatus.REJECTED: set(),
    CommandStatus.COMPLETED: set(),
    CommandStatus.FAILED: set(),
    CommandStatus.TERMINATED: set(),
}

TURN_TRANSITIONS: dict[TurnPhase, set[TurnPhase]] = {
    TurnPhase.THINKING: {TurnPhase.ACTING, TurnPhase.DONE},
    TurnPhase.ACTING: {
        TurnPhase.OBSERVING,
        TurnPhase.WAITING_APPROVAL,
        TurnPhase.DONE,
    },
    TurnPhase.WAITING_APPROVAL: {
        TurnPhase.WAITING_COMMAND,
        TurnPhase.OBSERVING,  # rejected
    },
    TurnPhase.WAITING_COMMAND: {TurnPhase.OBSERVING},
    TurnPhase.OBSERVING: {
        TurnPhase.THINKING,
        TurnPhase.ACTING,  # next tool call of the same round-trip
        TurnPhase.DONE,
    },
    TurnPhase.DONE: set(),
}


def validate_command_transition(current: CommandStatus, target: CommandStatus) -> None:
    """Validate a command transition. Raises InvalidTransitionError if invalid."""
    allowed = COMMAND_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise InvalidTransitionError(
            "command", current.value, target.value,
            sorted(s.value for s in allowed),
        )


def validate_turn_transition(current: TurnPhase, target: TurnPhase) -> None:
    """Validate a turn phase transition. Raises InvalidTransitionError if invalid."""
    if current == target:
        return
    allowed = TURN_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise InvalidTransitionError(
            "turn", current.value, target.value,
            sorted(s.value for s in allowed),
        )
