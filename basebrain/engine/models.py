"""Core data models for the agent engine.

Enums and dataclasses shared by the executor, dispatcher and loop.
Kept in one module to avoid circular imports.
"""
from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from basebrain.shared.models.message import TokenUsage, ToolCall, ToolResult


class CommandStatus(str, Enum):
    """Command lifecycle states. See lifecycle.py for transition rules."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TERMINATED = "terminated"

    @property
    def is_active(self) -> bool:
        # APPROVED is a transient hop between PENDING and RUNNING.
        return self in (
            CommandStatus.PENDING, CommandStatus.APPROVED, CommandStatus.RUNNING,
        )

    @property
    def is_terminal(self) -> bool:
        return self in (
            CommandStatus.REJECTED,
            CommandStatus.COMPLETED,
            CommandStatus.FAILED,
            CommandStatus.TERMINATED,
        )


class TurnPhase(str, Enum):
    """Agent loop phases within one user turn."""
    THINKING = "thinking"
    ACTING = "acting"
    WAITING_APPROVAL = "waiting_approval"
    WAITING_COMMAND = "waiting_command"
    OBSERVING = "observing"
    DONE = "done"


def _make_command_id() -> str:
    return f"cmd_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass
class CommandExecution:
    """In-memory record of one shell command. Never persisted."""
    command: str
    cwd: str
    id: str = field(default_factory=_make_command_id)
    description: str = ""
    status: CommandStatus = CommandStatus.PENDING
    output: str = ""
    exit_code: int | None = None
    requires_input: bool = False
    input_prompt: str | None = None
    start_time: float | None = None
    end_time: float | None = None

    @property
    def duration_ms(self) -> int | None:
        if self.start_time is None:
            return None
        end = self.end_time if self.end_time is not None else time.time()
        return int((end - self.start_time) * 1000)

    def snapshot(self) -> CommandExecution:
        return replace(self)

    def to_status(self) -> dict[str, Any]:
        return {
            "commandId": self.id,
            "command": self.command,
            "cwd": self.cwd,
            "status": self.status.value,
            "output": self.output,
            "exitCode": self.exit_code,
            "requiresInput": self.requires_input,
            "inputPrompt": self.input_prompt,
            "duration": self.duration_ms,
        }


@dataclass(frozen=True)
class ToolOutcome:
    """Uniform result shape for every dispatched tool."""
    success: bool
    data: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, data: Any = None) -> ToolOutcome:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, data: Any = None) -> ToolOutcome:
        return cls(success=False, data=data, error=error)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            payload["data"] = self.data
        if self.error is not None:
            payload["error"] = self.error
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class StreamEventType(str, Enum):
    THINKING_START = "thinking_start"
    THINKING = "thinking"
    THINKING_END = "thinking_end"
    CONTENT = "content"
    TOOL_CALLS = "tool_calls"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class StreamEvent:
    """One decoded frame from the model's streaming endpoint."""
    type: StreamEventType
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    usage: TokenUsage | None = None
    has_tool_calls: bool = False
    error: str | None = None


@dataclass(frozen=True)
class TurnState:
    """Immutable accumulator threaded through the agent loop.

    Each round-trip produces a new value via ``dataclasses.replace``;
    nothing in the loop mutates a TurnState in place.
    """
    history: tuple[dict[str, Any], ...] = ()
    pending_results: tuple[ToolResult, ...] = ()
    iteration: int = 0
    phase: TurnPhase = TurnPhase.THINKING
    content: str = ""
    thinking: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    tool_results: tuple[ToolResult, ...] = ()
    usage: TokenUsage = field(default_factory=TokenUsage)
    recent_actions: tuple[str, ...] = ()
    stop_reason: str | None = None
