"""Agent loop: one user turn of streaming, tool dispatch and observation.

The loop threads a single immutable TurnState through every step.
Each round-trip streams one model response; if the model asks for
tools they run strictly one after another, their results become the
context for the next round-trip, and the cycle repeats until the
model stops asking, a safety bound trips, or the user cancels.

Safety bounds are engine-wide (EngineConfig):
- max_iterations round-trips per turn
- the ActionGuard, which halts before a tool call that repeats the
  same name and raw arguments too often within a short window
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field, replace
from typing import Any

from basebrain.shared.models.message import (
    Message,
    MessageRole,
    MessageStatus,
    TokenUsage,
    ToolCall,
    ToolResult,
)
from basebrain.shared.services.store import SQLiteStore

from .commands import CommandExecutor
from .config import EngineConfig, fire_event
from .dispatcher import COMMAND_TOOL, ToolDispatcher
from .errors import ModelServiceError, NotFoundError, TurnInProgressError
from .lifecycle import validate_turn_transition
from .models import (
    CommandExecution,
    CommandStatus,
    StreamEventType,
    ToolOutcome,
    TurnPhase,
    TurnState,
)
from .providers.base import ModelClient
from .snapshots import SnapshotRecorder

logger = logging.getLogger(__name__)

STOPPED_NOTICE = "\n\n*[Generation stopped by user]*"
STEP_LIMIT_NOTICE = (
    "\n\n*[Step limit reached: stopped after {limit} model round-trips. "
    "Send another message to continue.]*"
)
REPEATED_ACTION_NOTICE = (
    "\n\n*[Repeated action detected: `{tool}` was requested {count} times "
    "with the same arguments. Stopping to avoid a loop.]*"
)

_STOP_STATUS: dict[str, MessageStatus] = {
    "completed": MessageStatus.COMPLETED,
    "stopped": MessageStatus.STOPPED,
    "step_limit": MessageStatus.STEP_LIMIT,
    "repeated_action": MessageStatus.REPEATED_ACTION,
    "error": MessageStatus.ERROR,
}


class ActionGuard:
    """Detects the same tool call being issued over and over.

    Keys are the tool name plus the raw argument string exactly as the
    model produced it. Argument objects with the same content but a
    different key order do not count as repeats.
    """

    def __init__(self, window: int = 5, threshold: int = 3) -> None:
        self._window = window
        self._threshold = threshold

    @staticmethod
    def key(call: ToolCall) -> str:
        return f"{call.name}\x00{call.arguments}"

    def occurrences(self, recent: tuple[str, ...], key: str) -> int:
        return recent[-self._window:].count(key)

    def would_repeat(self, recent: tuple[str, ...], key: str) -> bool:
        """True if dispatching *key* again would exceed the threshold."""
        return self.occurrences(recent, key) >= self._threshold

    def record(self, recent: tuple[str, ...], key: str) -> tuple[str, ...]:
        return (recent + (key,))[-self._window:]


@dataclass
class _RoundBuffer:
    """Deltas of the in-flight round-trip.

    Filled by the stream task; kept outside TurnState so a cancelled
    stream still leaves its partial text behind.
    """
    content: str = ""
    thinking: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    more: bool = False
    usage: TokenUsage | None = None


@dataclass
class _TurnContext:
    conversation_id: str
    project_root: str
    user_message: Message
    assistant_message: Message
    recorder: SnapshotRecorder


def _truncate_output(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    dropped = len(text) - limit
    return f"[... {dropped} earlier characters truncated ...]\n" + text[-limit:]


class AgentLoop:
    """Runs user turns against a model client and a tool dispatcher."""

    def __init__(
        self,
        client: ModelClient,
        store: SQLiteStore,
        dispatcher: ToolDispatcher | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._client = client
        self._store = store
        self._dispatcher = dispatcher or ToolDispatcher(
            CommandExecutor(
                event_callback=self._config.event_callback,
                input_scan_lines=self._config.input_scan_lines,
                poll_interval=self._config.command_poll_interval_seconds,
            )
        )
        self._guard = ActionGuard(
            window=self._config.repeat_window,
            threshold=self._config.repeat_threshold,
        )
        self._active: set[str] = set()
        self._abort_requested: set[str] = set()
        self._stream_tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def executor(self) -> CommandExecutor:
        return self._dispatcher.executor

    @property
    def dispatcher(self) -> ToolDispatcher:
        return self._dispatcher

    def is_running(self, conversation_id: str) -> bool:
        return conversation_id in self._active

    def cancel(self, conversation_id: str) -> bool:
        """Abort the in-flight model request of a running turn.

        Running shell commands are not touched; use the executor's
        terminate() for those. Returns False if no turn is running.
        """
        if conversation_id not in self._active:
            return False
        self._abort_requested.add(conversation_id)
        task = self._stream_tasks.get(conversation_id)
        if task is not None and not task.done():
            task.cancel()
        logger.info("Cancel requested for conversation %s", conversation_id)
        return True

    # ── Turn driver ──

    async def run_turn(
        self,
        conversation_id: str,
        user_input: str,
        project_root: str | None = None,
    ) -> Message:
        """Run one full turn and return the persisted assistant message."""
        conversation = self._store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation", conversation_id)
        if conversation_id in self._active:
            raise TurnInProgressError(conversation_id)
        self._active.add(conversation_id)
        self._abort_requested.discard(conversation_id)

        try:
            prior = self._store.list_messages(conversation_id)
            user_message = self._store.add_message(Message(
                role=MessageRole.USER,
                content=user_input,
                conversation_id=conversation_id,
            ))
            assistant = self._store.add_message(Message(
                role=MessageRole.ASSISTANT,
                content="",
                conversation_id=conversation_id,
            ))
            ctx = _TurnContext(
                conversation_id=conversation_id,
                project_root=project_root or conversation.project_root,
                user_message=user_message,
                assistant_message=assistant,
                recorder=SnapshotRecorder(),
            )
            history = tuple(m.to_history() for m in prior) + (user_message.to_history(),)
            logger.info(
                "Turn started conversation=%s user_message=%s history=%d",
                conversation_id, user_message.id, len(history),
            )
            await fire_event(self._config.event_callback, {
                "event": "turn_started",
                "conversation_id": conversation_id,
                "user_message_id": user_message.id,
                "assistant_message_id": assistant.id,
            })

            state = await self._drive(ctx, TurnState(history=history))
            return await self._finalize(ctx, state)
        finally:
            self._active.discard(conversation_id)
            self._abort_requested.discard(conversation_id)
            self._stream_tasks.pop(conversation_id, None)

    async def _drive(self, ctx: _TurnContext, state: TurnState) -> TurnState:
        buffer = _RoundBuffer()
        try:
            while True:
                if ctx.conversation_id in self._abort_requested:
                    return self._stop(state, "stopped", STOPPED_NOTICE)
                if state.iteration >= self._config.max_iterations:
                    logger.warning(
                        "Turn hit step limit (%d) conversation=%s",
                        self._config.max_iterations, ctx.conversation_id,
                    )
                    return self._stop(
                        state, "step_limit",
                        STEP_LIMIT_NOTICE.format(limit=self._config.max_iterations),
                    )

                state = self._enter(state, TurnPhase.THINKING)
                buffer = _RoundBuffer()
                await self._stream_round(ctx, state, buffer)
                state, calls = self._absorb_round(state, buffer)
                round_content = buffer.content
                # Absorbed; anything left in the buffer is unsaved partial output.
                buffer = _RoundBuffer()

                if not calls:
                    return self._enter(replace(state, stop_reason="completed"), TurnPhase.DONE)

                state = await self._act(ctx, state, round_content, calls)
                if state.stop_reason is not None:
                    return state
                self._store.update_message(self._render(ctx, state, MessageStatus.COMPLETED))
        except asyncio.CancelledError:
            # Keep whatever the interrupted round produced.
            state = self._stop(self._keep_partial(state, buffer), "stopped", STOPPED_NOTICE)
            if ctx.conversation_id in self._abort_requested:
                logger.info("Turn stopped by user conversation=%s", ctx.conversation_id)
                return state
            # The turn task itself was cancelled: persist, then let it propagate.
            logger.info("Turn task cancelled conversation=%s", ctx.conversation_id)
            await self._finalize(ctx, state)
            raise
        except ModelServiceError as exc:
            logger.warning(
                "Model service error ends turn conversation=%s status=%s: %s",
                ctx.conversation_id, exc.status, exc,
            )
            return self._fail(self._keep_partial(state, buffer), exc)
        except Exception as exc:
            logger.exception("Turn failed conversation=%s", ctx.conversation_id)
            await self._finalize(ctx, self._fail(self._keep_partial(state, buffer), exc))
            raise

    # ── THINKING ──

    async def _stream_round(
        self,
        ctx: _TurnContext,
        state: TurnState,
        buffer: _RoundBuffer,
    ) -> None:
        task = asyncio.create_task(self._consume_stream(ctx, state, buffer))
        self._stream_tasks[ctx.conversation_id] = task
        try:
            await task
        finally:
            self._stream_tasks.pop(ctx.conversation_id, None)

    async def _consume_stream(
        self,
        ctx: _TurnContext,
        state: TurnState,
        buffer: _RoundBuffer,
    ) -> None:
        callback = self._config.event_callback
        async for event in self._client.stream(
            list(state.history), ctx.project_root, state.pending_results,
        ):
            if event.type == StreamEventType.THINKING:
                buffer.thinking += event.content
                await fire_event(callback, {
                    "event": "thinking_delta",
                    "conversation_id": ctx.conversation_id,
                    "text": event.content,
                })
            elif event.type == StreamEventType.CONTENT:
                buffer.content += event.content
                await fire_event(callback, {
                    "event": "content_delta",
                    "conversation_id": ctx.conversation_id,
                    "text": event.content,
                })
            elif event.type == StreamEventType.TOOL_CALLS:
                buffer.tool_calls.extend(event.tool_calls)
                buffer.more = buffer.more or event.has_tool_calls
            elif event.type == StreamEventType.DONE:
                buffer.usage = event.usage
                buffer.more = event.has_tool_calls
            elif event.type == StreamEventType.ERROR:
                raise ModelServiceError(event.error or "Model service reported an error")

    def _absorb_round(
        self,
        state: TurnState,
        buffer: _RoundBuffer,
    ) -> tuple[TurnState, tuple[ToolCall, ...]]:
        """Fold one finished round-trip into the turn state."""
        history = state.history + tuple(
            {"role": "tool", "tool_call_id": r.tool_call_id, "content": r.result}
            for r in state.pending_results
        )
        calls: tuple[ToolCall, ...] = ()
        if buffer.tool_calls and buffer.more:
            calls = tuple(buffer.tool_calls)
        elif buffer.tool_calls:
            logger.debug(
                "Ignoring %d tool call(s): round reported no further tool calls",
                len(buffer.tool_calls),
            )
        usage = state.usage + buffer.usage if buffer.usage is not None else state.usage
        return replace(
            state,
            history=history,
            pending_results=(),
            iteration=state.iteration + 1,
            content=state.content + buffer.content,
            thinking=state.thinking + buffer.thinking,
            usage=usage,
        ), calls

    # ── ACTING / OBSERVING ──

    async def _act(
        self,
        ctx: _TurnContext,
        state: TurnState,
        round_content: str,
        calls: tuple[ToolCall, ...],
    ) -> TurnState:
        results: list[ToolResult] = []
        dispatched: list[ToolCall] = []
        for call in calls:
            state = self._enter(state, TurnPhase.ACTING)
            key = self._guard.key(call)
            if self._guard.would_repeat(state.recent_actions, key):
                count = self._guard.occurrences(state.recent_actions, key)
                logger.warning(
                    "Repeated action detected tool=%s count=%d conversation=%s",
                    call.name, count, ctx.conversation_id,
                )
                state = self._record_round(state, round_content, dispatched, results)
                return self._stop(
                    state, "repeated_action",
                    REPEATED_ACTION_NOTICE.format(tool=call.name, count=count + 1),
                )
            state = replace(state, recent_actions=self._guard.record(state.recent_actions, key))

            await fire_event(self._config.event_callback, {
                "event": "tool_call",
                "conversation_id": ctx.conversation_id,
                "tool_call_id": call.id,
                "name": call.name,
                "arguments": call.arguments,
            })
            outcome = await self._dispatcher.execute(
                call.name, call.arguments, ctx.project_root, ctx.recorder,
            )
            if call.name == COMMAND_TOOL and outcome.success:
                state, outcome = await self._await_command(ctx, state, outcome)
            state = self._enter(state, TurnPhase.OBSERVING)

            result = ToolResult(tool_call_id=call.id, name=call.name, result=outcome.to_json())
            dispatched.append(call)
            results.append(result)
            await fire_event(self._config.event_callback, {
                "event": "tool_result",
                "conversation_id": ctx.conversation_id,
                "tool_call_id": call.id,
                "name": call.name,
                "success": outcome.success,
                "result": result.result,
            })

        return self._record_round(state, round_content, dispatched, results)

    def _record_round(
        self,
        state: TurnState,
        round_content: str,
        calls: list[ToolCall],
        results: list[ToolResult],
    ) -> TurnState:
        history = state.history
        if calls:
            history = history + ({
                "role": "assistant",
                "content": round_content,
                "tool_calls": [c.to_wire() for c in calls],
            },)
        return replace(
            state,
            history=history,
            pending_results=tuple(results),
            tool_calls=state.tool_calls + tuple(calls),
            tool_results=state.tool_results + tuple(results),
        )

    async def _await_command(
        self,
        ctx: _TurnContext,
        state: TurnState,
        prepared: ToolOutcome,
    ) -> tuple[TurnState, ToolOutcome]:
        """Suspend for approval, then for the process to finish."""
        executor = self.executor
        command_id = prepared.data["commandId"]
        state = self._enter(state, TurnPhase.WAITING_APPROVAL)
        pending = executor.get_status(command_id)
        await fire_event(self._config.event_callback, {
            "event": "command_pending",
            "conversation_id": ctx.conversation_id,
            **pending.to_status(),
        })

        decided = await self._decide(pending)
        if decided.status == CommandStatus.REJECTED:
            logger.info("Command %s rejected by user", command_id)
            return state, ToolOutcome.fail(
                "Command was rejected by user",
                data={"commandId": command_id, "status": decided.status.value},
            )

        state = self._enter(state, TurnPhase.WAITING_COMMAND)
        final = await executor.wait_for_completion(command_id)
        return state, self._command_outcome(final)

    async def _decide(self, pending: CommandExecution) -> CommandExecution:
        executor = self.executor
        callback = self._config.approval_callback
        if callback is None:
            return await executor.wait_for_decision(pending.id)
        try:
            approved = bool(await callback(pending))
        except Exception:
            logger.warning("approval callback failed; rejecting %s", pending.id, exc_info=True)
            approved = False
        # An external caller may have decided while the callback ran.
        current = executor.get_status(pending.id)
        if current.status != CommandStatus.PENDING:
            return current
        if approved:
            return await executor.approve(pending.id)
        return executor.reject(pending.id)

    def _command_outcome(self, execution: CommandExecution) -> ToolOutcome:
        data = {
            "commandId": execution.id,
            "command": execution.command,
            "status": execution.status.value,
            "output": _truncate_output(execution.output, self._config.tool_output_limit),
            "exitCode": execution.exit_code,
            "duration": execution.duration_ms,
        }
        if execution.status == CommandStatus.COMPLETED:
            return ToolOutcome.ok(data)
        if execution.status == CommandStatus.TERMINATED:
            return ToolOutcome.fail("Command was terminated", data=data)
        return ToolOutcome.fail(f"Command exited with code {execution.exit_code}", data=data)

    # ── State helpers ──

    @staticmethod
    def _enter(state: TurnState, phase: TurnPhase) -> TurnState:
        validate_turn_transition(state.phase, phase)
        return replace(state, phase=phase)

    @staticmethod
    def _fail(state: TurnState, exc: BaseException) -> TurnState:
        prefix = f"{state.content}\n\n" if state.content else ""
        return replace(
            state,
            content=f"{prefix}Error: {exc}",
            phase=TurnPhase.DONE,
            stop_reason="error",
        )

    @staticmethod
    def _keep_partial(state: TurnState, buffer: _RoundBuffer) -> TurnState:
        return replace(
            state,
            content=state.content + buffer.content,
            thinking=state.thinking + buffer.thinking,
        )

    @staticmethod
    def _stop(state: TurnState, reason: str, notice: str) -> TurnState:
        return replace(
            state,
            content=state.content + notice,
            phase=TurnPhase.DONE,
            stop_reason=reason,
        )

    def _render(self, ctx: _TurnContext, state: TurnState, status: MessageStatus) -> Message:
        return replace(
            ctx.assistant_message,
            content=state.content,
            thinking=state.thinking or None,
            tool_calls=list(state.tool_calls),
            tool_results=list(state.tool_results),
            usage=state.usage,
            status=status,
        )

    async def _finalize(self, ctx: _TurnContext, state: TurnState) -> Message:
        status = _STOP_STATUS.get(state.stop_reason or "completed", MessageStatus.COMPLETED)
        message = self._render(ctx, state, status)
        self._store.update_message(message)
        ctx.recorder.commit(ctx.user_message.id, self._store)
        logger.info(
            "Turn finished conversation=%s status=%s round_trips=%d tools=%d tokens=%d",
            ctx.conversation_id, status.value, state.iteration,
            len(state.tool_calls), state.usage.total_tokens,
        )
        await fire_event(self._config.event_callback, {
            "event": "turn_finished",
            "conversation_id": ctx.conversation_id,
            "message_id": message.id,
            "status": status.value,
            "usage": state.usage.to_dict(),
        })
        return message


def tool_result_payload(result: ToolResult) -> dict[str, Any]:
    """Decode a ToolResult's JSON body; non-JSON bodies come back as text."""
    try:
        payload = json.loads(result.result)
    except json.JSONDecodeError:
        return {"success": False, "error": result.result}
    return payload if isinstance(payload, dict) else {"success": True, "data": payload}
