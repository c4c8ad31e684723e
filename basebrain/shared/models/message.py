"""Conversation, message and tool call models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import json
import uuid
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _gen_id() -> str:
    return str(uuid.uuid4())


TITLE_MAX_CHARS = 50


def generate_title(first_message: str) -> str:
    """Derive a conversation title from its first user message."""
    cleaned = first_message.strip().replace("\n", " ")
    if len(cleaned) <= TITLE_MAX_CHARS:
        return cleaned
    return cleaned[:TITLE_MAX_CHARS - 3] + "..."


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class MessageStatus(str, Enum):
    """Why an assistant message stopped growing."""
    COMPLETED = "completed"
    STOPPED = "stopped"
    STEP_LIMIT = "step_limit"
    REPEATED_ACTION = "repeated_action"
    ERROR = "error"


@dataclass(frozen=True)
class ToolCall:
    """A structured action request emitted by the model.

    ``arguments`` is kept as the raw JSON string the model produced; the
    duplicate-action guard compares these strings verbatim.
    """
    id: str
    name: str
    arguments: str

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> ToolCall:
        function = data.get("function") or {}
        arguments = function.get("arguments", data.get("arguments", ""))
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        return cls(
            id=str(data.get("id") or _gen_id()),
            name=str(function.get("name") or data.get("name") or ""),
            arguments=arguments,
        )


@dataclass(frozen=True)
class ToolResult:
    """Outcome of one ToolCall, matched to it by ``tool_call_id``."""
    tool_call_id: str
    name: str
    result: str

    def to_dict(self) -> dict[str, str]:
        return {
            "tool_call_id": self.tool_call_id,
            "name": self.name,
            "result": self.result,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolResult:
        return cls(
            tool_call_id=str(data["tool_call_id"]),
            name=str(data.get("name", "")),
            result=str(data.get("result", "")),
        )


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class Message:
    role: MessageRole
    content: str
    conversation_id: str = ""
    thinking: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    usage: TokenUsage | None = None
    status: MessageStatus = MessageStatus.COMPLETED
    id: str = field(default_factory=_gen_id)
    created_at: datetime = field(default_factory=_utcnow)
    # Assigned by the store; insertion order within a conversation.
    seq: int = 0

    def to_history(self) -> dict[str, Any]:
        """Render as an entry of the outgoing model history."""
        entry: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            entry["tool_calls"] = [tc.to_wire() for tc in self.tool_calls]
        return entry


@dataclass
class Conversation:
    project_root: str
    title: str | None = None
    id: str = field(default_factory=_gen_id)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
