"""Abstract base for model streaming clients.

A ModelClient sends the conversation so far to a model service and
yields decoded StreamEvents as they arrive. The agent loop depends
only on this contract, not on how the bytes travel.
"""
from __future__ import annotations

import abc
import json
import logging
from typing import Any, AsyncIterator

from basebrain.shared.models.message import TokenUsage, ToolCall, ToolResult

from ..errors import StreamError
from ..models import StreamEvent, StreamEventType

logger = logging.getLogger(__name__)

SSE_DATA_PREFIX = "data:"
SSE_DONE_SENTINEL = "[DONE]"


def _parse_usage(raw: Any) -> TokenUsage | None:
    if not isinstance(raw, dict):
        return None
    return TokenUsage(
        prompt_tokens=int(raw.get("prompt_tokens") or 0),
        completion_tokens=int(raw.get("completion_tokens") or 0),
    )


def event_from_payload(payload: dict[str, Any]) -> StreamEvent:
    """Build a StreamEvent from one decoded JSON frame."""
    try:
        kind = StreamEventType(payload.get("type"))
    except ValueError:
        raise StreamError(json.dumps(payload)[:200], f"unknown event type {payload.get('type')!r}") from None

    if kind in (StreamEventType.THINKING, StreamEventType.CONTENT):
        return StreamEvent(type=kind, content=str(payload.get("content") or ""))
    if kind == StreamEventType.TOOL_CALLS:
        raw_calls = payload.get("tool_calls") or []
        if not isinstance(raw_calls, list):
            raise StreamError(json.dumps(payload)[:200], "tool_calls is not a list")
        calls = tuple(ToolCall.from_wire(c) for c in raw_calls if isinstance(c, dict))
        return StreamEvent(type=kind, tool_calls=calls, has_tool_calls=bool(calls))
    if kind == StreamEventType.DONE:
        return StreamEvent(
            type=kind,
            usage=_parse_usage(payload.get("usage")),
            has_tool_calls=bool(payload.get("hasToolCalls", False)),
        )
    if kind == StreamEventType.ERROR:
        return StreamEvent(type=kind, error=str(payload.get("error") or "Unknown model error"))
    return StreamEvent(type=kind)


def parse_event_line(line: str) -> StreamEvent | None:
    """Decode one line of the event stream.

    Returns None for lines that carry no event (blank lines, SSE
    comments, the ``[DONE]`` sentinel). Raises StreamError for a data
    line whose payload cannot be decoded.
    """
    line = line.strip()
    if not line or line.startswith(":"):
        return None
    if not line.startswith(SSE_DATA_PREFIX):
        return None
    body = line[len(SSE_DATA_PREFIX):].strip()
    if not body or body == SSE_DONE_SENTINEL:
        return None
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as exc:
        raise StreamError(line, f"invalid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise StreamError(line, "payload is not an object")
    return event_from_payload(payload)


def build_request_body(
    history: list[dict[str, Any]],
    project_root: str,
    tool_results: list[ToolResult] | tuple[ToolResult, ...] = (),
) -> dict[str, Any]:
    body: dict[str, Any] = {"messages": list(history), "projectPath": project_root}
    if tool_results:
        body["toolResults"] = [
            {"tool_call_id": r.tool_call_id, "result": r.result} for r in tool_results
        ]
    return body


class ModelClient(abc.ABC):
    """Streaming model client interface."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short client name for logs."""

    @abc.abstractmethod
    async def stream(
        self,
        history: list[dict[str, Any]],
        project_root: str,
        tool_results: list[ToolResult] | tuple[ToolResult, ...] = (),
    ) -> AsyncIterator[StreamEvent]:
        """Send one round-trip request and yield events as they arrive.

        Raises ModelServiceError when the service refuses the request.
        Malformed individual lines are skipped, not raised.
        """
        yield  # pragma: no cover

    async def close(self) -> None:
        """Release transport resources. Default is a no-op."""
