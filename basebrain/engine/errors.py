"""Exception hierarchy for the agent engine.

Tool-level and command-level failures are converted into ToolOutcome
values before they reach the agent loop; these exceptions exist so the
boundaries that do the converting can tell the failure modes apart.
"""
from __future__ import annotations


class BasebrainError(Exception):
    """Base exception for all engine errors."""


class ValidationError(BasebrainError):
    """Bad tool arguments or a path that escapes the project root."""
    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message)


class ConflictError(BasebrainError):
    """A single-slot resource is already taken."""


class CommandConflictError(ConflictError):
    """A command is already pending or running."""
    def __init__(self, active_command_id: str):
        self.active_command_id = active_command_id
        super().__init__(
            "A command is already pending or running. Please wait for the "
            "user to approve/reject it or for it to complete before running "
            "another command."
        )


class TurnInProgressError(ConflictError):
    """Another turn is already running on the same conversation."""
    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(
            f"A turn is already running for conversation {conversation_id}"
        )


class NotFoundError(BasebrainError):
    """A file, command, message or conversation does not exist."""
    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class ProcessError(BasebrainError):
    """Spawning or talking to a shell process failed."""
    def __init__(self, command_id: str, reason: str):
        self.command_id = command_id
        self.reason = reason
        super().__init__(f"Command {command_id} failed: {reason}")


class StreamError(BasebrainError):
    """A single streamed event line could not be parsed."""
    def __init__(self, line: str, reason: str):
        self.line = line
        self.reason = reason
        super().__init__(f"Malformed stream line ({reason}): {line[:120]}")


class ModelServiceError(BasebrainError):
    """The model service rejected the request or broke the stream."""
    def __init__(self, message: str, status: int | None = None):
        self.status = status
        super().__init__(message)


class InvalidTransitionError(BasebrainError, ValueError):
    """A state machine was asked to make a move it does not allow."""
    def __init__(self, machine: str, current: str, target: str, allowed: list[str]):
        self.machine = machine
        self.current = current
        self.target = target
        allowed_str = ", ".join(allowed) or "none (terminal)"
        super().__init__(
            f"Invalid {machine} transition: {current} -> {target}. "
            f"Allowed from {current}: {allowed_str}"
        )
