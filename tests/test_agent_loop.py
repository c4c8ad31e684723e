"""AgentLoop turns driven by a scripted in-process model client."""

from __future__ import annotations

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock

import pytest

from basebrain.engine.agent_loop import (
    STEP_LIMIT_NOTICE,
    STOPPED_NOTICE,
    ActionGuard,
    AgentLoop,
    _truncate_output,
)
from basebrain.engine.commands import CommandExecutor
from basebrain.engine.config import EngineConfig
from basebrain.engine.dispatcher import ToolDispatcher
from basebrain.engine.errors import NotFoundError, TurnInProgressError
from basebrain.engine.models import CommandStatus, StreamEvent, StreamEventType
from basebrain.engine.providers.base import ModelClient
from basebrain.engine.rollback import RollbackEngine
from basebrain.shared.models.message import MessageStatus, ToolCall
from basebrain.shared.models.snapshot import SnapshotAction
from basebrain.shared.services.store import SQLiteStore


def content(text: str) -> StreamEvent:
    return StreamEvent(type=StreamEventType.CONTENT, content=text)


def done(more: bool = False) -> StreamEvent:
    return StreamEvent(type=StreamEventType.DONE, has_tool_calls=more)


def calls(*tool_calls: ToolCall) -> list[StreamEvent]:
    return [
        StreamEvent(type=StreamEventType.TOOL_CALLS, tool_calls=tool_calls, has_tool_calls=True),
        done(more=True),
    ]


def call(call_id: str, name: str, **arguments: Any) -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=json.dumps(arguments))


class ScriptedClient(ModelClient):
    """Replays canned event rounds and records every request."""

    def __init__(self, script):
        # A list of rounds, or a callable taking the round index.
        self._script = script
        self.requests: list[dict[str, Any]] = []
        self.block = asyncio.Event()

    @property
    def name(self) -> str:
        return "scripted"

    def _round(self, index: int):
        if callable(self._script):
            return self._script(index)
        if index < len(self._script):
            return self._script[index]
        return [content("(script exhausted)"), done()]

    async def stream(self, history, project_root, tool_results=()):
        index = len(self.requests)
        self.requests.append({
            "history": list(history),
            "project_root": project_root,
            "tool_results": list(tool_results),
        })
        for event in self._round(index):
            if event is None:
                # Hang until cancelled.
                await self.block.wait()
                continue
            await asyncio.sleep(0)
            yield event


@pytest.fixture
def store(tmp_path):
    return SQLiteStore(tmp_path / "bb.db")


@pytest.fixture
def project(tmp_path):
    root = tmp_path / "proj"
    root.mkdir()
    return root


async def _wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


# ── ActionGuard ──


def test_action_guard_window_and_threshold():
    guard = ActionGuard(window=5, threshold=3)
    key = guard.key(call("x", "read_file", path="a"))
    recent: tuple[str, ...] = ()
    for _ in range(3):
        assert not guard.would_repeat(recent, key)
        recent = guard.record(recent, key)
    assert guard.would_repeat(recent, key)

    for i in range(5):
        recent = guard.record(recent, f"other{i}")
    assert len(recent) == 5
    assert not guard.would_repeat(recent, key)


def test_truncate_output_keeps_tail():
    assert _truncate_output("short", 10) == "short"
    truncated = _truncate_output("abcdefghij", 4)
    assert truncated.endswith("\nghij")
    assert "6 earlier characters truncated" in truncated


# ── Turns ──


@pytest.mark.asyncio
async def test_plain_reply_completes(store, project):
    conv = store.create_conversation(str(project))
    client = ScriptedClient([[content("Hel"), content("lo"), done()]])
    loop = AgentLoop(client, store)

    message = await loop.run_turn(conv.id, "hi")

    assert message.content == "Hello"
    assert message.status == MessageStatus.COMPLETED
    stored = store.list_messages(conv.id)
    assert [m.role.value for m in stored] == ["user", "assistant"]
    assert stored[1].content == "Hello"
    assert client.requests[0]["project_root"] == str(project)
    assert client.requests[0]["tool_results"] == []


@pytest.mark.asyncio
async def test_prior_history_is_sent(store, project):
    conv = store.create_conversation(str(project))
    client = ScriptedClient([[content("one"), done()], [content("two"), done()]])
    loop = AgentLoop(client, store)

    await loop.run_turn(conv.id, "first")
    await loop.run_turn(conv.id, "second")

    history = client.requests[1]["history"]
    assert [(h["role"], h["content"]) for h in history] == [
        ("user", "first"), ("assistant", "one"), ("user", "second"),
    ]


@pytest.mark.asyncio
async def test_tool_results_feed_the_next_round(store, project):
    (project / "a.txt").write_text("A")
    conv = store.create_conversation(str(project))
    client = ScriptedClient([
        calls(call("c1", "read_file", path="a.txt")),
        calls(call("c2", "exists", path="b.txt")),
        [content("done"), done()],
    ])
    loop = AgentLoop(client, store)

    message = await loop.run_turn(conv.id, "look")

    assert len(client.requests) == 3
    sent = client.requests[1]["tool_results"]
    assert [r.tool_call_id for r in sent] == ["c1"]
    assert json.loads(sent[0].result)["data"]["content"] == "A"

    history = client.requests[2]["history"]
    assert history[1]["role"] == "assistant"
    assert history[1]["tool_calls"][0]["function"]["name"] == "read_file"
    assert history[2] == {"role": "tool", "tool_call_id": "c1", "content": sent[0].result}
    assert [r.tool_call_id for r in client.requests[2]["tool_results"]] == ["c2"]

    assert message.status == MessageStatus.COMPLETED
    assert [tc.id for tc in message.tool_calls] == ["c1", "c2"]
    assert len(message.tool_results) == 2


@pytest.mark.asyncio
async def test_tool_calls_ignored_without_more_flag(store, project):
    conv = store.create_conversation(str(project))
    client = ScriptedClient([[
        StreamEvent(
            type=StreamEventType.TOOL_CALLS,
            tool_calls=(call("c1", "write_file", path="a.txt", content="x"),),
            has_tool_calls=True,
        ),
        done(more=False),
    ]])
    loop = AgentLoop(client, store)

    message = await loop.run_turn(conv.id, "go")

    assert len(client.requests) == 1
    assert message.tool_results == []
    assert not (project / "a.txt").exists()


@pytest.mark.asyncio
async def test_step_limit_stops_after_max_round_trips(store, project):
    conv = store.create_conversation(str(project))
    client = ScriptedClient(lambda i: calls(call(f"c{i}", "exists", path=f"f{i}.txt")))
    loop = AgentLoop(client, store, config=EngineConfig(max_iterations=15))

    message = await loop.run_turn(conv.id, "loop forever")

    assert len(client.requests) == 15
    assert message.status == MessageStatus.STEP_LIMIT
    assert message.content.endswith(STEP_LIMIT_NOTICE.format(limit=15))
    assert len(message.tool_results) == 15
    assert store.get_message(message.id).status == MessageStatus.STEP_LIMIT


@pytest.mark.asyncio
async def test_repeated_action_halts_before_fourth_dispatch(store, project):
    conv = store.create_conversation(str(project))
    client = ScriptedClient(lambda i: calls(call(f"c{i}", "write_file", path="a.txt", content="x")))
    loop = AgentLoop(client, store)

    message = await loop.run_turn(conv.id, "write it")

    assert len(client.requests) == 4
    assert len(message.tool_results) == 3
    assert message.status == MessageStatus.REPEATED_ACTION
    assert "`write_file` was requested 4 times" in message.content

    user = store.list_messages(conv.id)[0]
    snaps = store.get_snapshots_for_message(user.id)
    assert [(s.file_path, s.action) for s in snaps] == [("a.txt", SnapshotAction.CREATED)]


@pytest.mark.asyncio
async def test_run_command_waits_for_external_approval(store, project):
    conv = store.create_conversation(str(project))
    client = ScriptedClient([
        calls(call("c1", "run_command", command="echo hello")),
        [content("All done"), done()],
    ])
    loop = AgentLoop(client, store)
    executor = loop.executor

    turn = asyncio.create_task(loop.run_turn(conv.id, "say hello"))
    try:
        await _wait_until(lambda: any(
            c.status == CommandStatus.PENDING for c in executor.list_commands()
        ))
        assert loop.is_running(conv.id)
        pending = executor.list_commands()[0]
        await executor.approve(pending.id)
        message = await asyncio.wait_for(turn, timeout=10)
    finally:
        await executor.shutdown()

    assert message.content == "All done"
    payload = json.loads(client.requests[1]["tool_results"][0].result)
    assert payload["success"] is True
    assert payload["data"]["exitCode"] == 0
    assert payload["data"]["output"] == "hello\n"
    assert payload["data"]["status"] == "completed"


@pytest.mark.asyncio
async def test_approval_callback_approves(store, project):
    conv = store.create_conversation(str(project))
    approve = AsyncMock(return_value=True)
    client = ScriptedClient([
        calls(call("c1", "run_command", command="exit 4")),
        [content("ok"), done()],
    ])
    loop = AgentLoop(client, store, config=EngineConfig(approval_callback=approve))

    try:
        await loop.run_turn(conv.id, "fail please")
    finally:
        await loop.executor.shutdown()

    approve.assert_awaited_once()
    assert approve.await_args.args[0].command == "exit 4"
    payload = json.loads(client.requests[1]["tool_results"][0].result)
    assert payload["success"] is False
    assert payload["error"] == "Command exited with code 4"
    assert payload["data"]["exitCode"] == 4


@pytest.mark.asyncio
async def test_rejected_command_never_runs(store, project):
    conv = store.create_conversation(str(project))
    client = ScriptedClient([
        calls(call("c1", "run_command", command="touch made.txt")),
        [content("fine"), done()],
    ])
    loop = AgentLoop(
        client, store,
        config=EngineConfig(approval_callback=AsyncMock(return_value=False)),
    )

    await loop.run_turn(conv.id, "touch")

    payload = json.loads(client.requests[1]["tool_results"][0].result)
    assert payload["success"] is False
    assert payload["error"] == "Command was rejected by user"
    assert loop.executor.list_commands()[0].status == CommandStatus.REJECTED
    assert loop.executor.active_command_id is None
    assert not (project / "made.txt").exists()


@pytest.mark.asyncio
async def test_cancel_keeps_partial_content(store, project):
    conv = store.create_conversation(str(project))
    streaming = asyncio.Event()

    async def on_event(event):
        if event["event"] == "content_delta":
            streaming.set()

    client = ScriptedClient([[content("partial"), None, content(" never"), done()]])
    loop = AgentLoop(client, store, config=EngineConfig(event_callback=on_event))

    turn = asyncio.create_task(loop.run_turn(conv.id, "write an essay"))
    await asyncio.wait_for(streaming.wait(), timeout=5)
    assert loop.cancel(conv.id)
    message = await asyncio.wait_for(turn, timeout=5)

    assert message.content == "partial" + STOPPED_NOTICE
    assert message.status == MessageStatus.STOPPED
    assert store.get_message(message.id).content == "partial" + STOPPED_NOTICE
    assert not loop.is_running(conv.id)
    assert not loop.cancel(conv.id)


@pytest.mark.asyncio
async def test_error_event_ends_turn(store, project):
    conv = store.create_conversation(str(project))
    client = ScriptedClient([[
        content("Hi"),
        StreamEvent(type=StreamEventType.ERROR, error="boom"),
    ]])
    loop = AgentLoop(client, store)

    message = await loop.run_turn(conv.id, "hello")

    assert message.status == MessageStatus.ERROR
    assert message.content == "Hi\n\nError: boom"


@pytest.mark.asyncio
async def test_one_turn_per_conversation(store, project):
    conv = store.create_conversation(str(project))
    client = ScriptedClient([[None, done()]])
    loop = AgentLoop(client, store)

    turn = asyncio.create_task(loop.run_turn(conv.id, "first"))
    await _wait_until(lambda: len(client.requests) == 1)

    with pytest.raises(TurnInProgressError):
        await loop.run_turn(conv.id, "second")

    loop.cancel(conv.id)
    message = await asyncio.wait_for(turn, timeout=5)
    assert message.status == MessageStatus.STOPPED
    assert store.count_messages(conv.id) == 2


@pytest.mark.asyncio
async def test_unknown_conversation(store):
    loop = AgentLoop(ScriptedClient([]), store)
    with pytest.raises(NotFoundError):
        await loop.run_turn("missing", "hi")


@pytest.mark.asyncio
async def test_events_are_reported(store, project):
    conv = store.create_conversation(str(project))
    seen: list[str] = []

    async def on_event(event):
        seen.append(event["event"])

    client = ScriptedClient([
        calls(call("c1", "exists", path="a.txt")),
        [content("ok"), done()],
    ])
    loop = AgentLoop(client, store, config=EngineConfig(event_callback=on_event))

    await loop.run_turn(conv.id, "check")

    assert seen[0] == "turn_started"
    assert seen[-1] == "turn_finished"
    assert seen.index("tool_call") < seen.index("tool_result") < seen.index("content_delta")


# ── Snapshots survive every way a turn can end ──


def _write_then(second_round):
    return ScriptedClient([
        calls(call("w1", "write_file", path="notes/a.txt", content="x")),
        second_round,
    ])


def _assert_undoable(store, conv_id, project):
    user = store.list_messages(conv_id)[0]
    snaps = store.get_snapshots_for_message(user.id)
    assert [(s.file_path, s.action) for s in snaps] == [("notes/a.txt", SnapshotAction.CREATED)]
    assert (project / "notes" / "a.txt").exists()

    result = RollbackEngine(store).rollback(conv_id, user.id, str(project))
    assert result.ok
    assert not (project / "notes" / "a.txt").exists()


@pytest.mark.asyncio
async def test_user_cancel_after_write_keeps_snapshot(store, project):
    conv = store.create_conversation(str(project))
    client = _write_then([content("thinking it over"), None, done()])
    loop = AgentLoop(client, store)

    turn = asyncio.create_task(loop.run_turn(conv.id, "write then stop"))
    await _wait_until(lambda: len(client.requests) == 2)
    loop.cancel(conv.id)
    message = await asyncio.wait_for(turn, timeout=5)

    assert message.status == MessageStatus.STOPPED
    assert len(message.tool_results) == 1
    _assert_undoable(store, conv.id, project)


@pytest.mark.asyncio
async def test_error_after_write_keeps_snapshot(store, project):
    conv = store.create_conversation(str(project))
    client = _write_then([StreamEvent(type=StreamEventType.ERROR, error="boom")])
    loop = AgentLoop(client, store)

    message = await loop.run_turn(conv.id, "write then fail")

    assert message.status == MessageStatus.ERROR
    assert message.content.endswith("Error: boom")
    _assert_undoable(store, conv.id, project)


@pytest.mark.asyncio
async def test_cancelled_turn_task_persists_before_propagating(store, project):
    conv = store.create_conversation(str(project))
    client = _write_then([content("partial"), None, done()])
    loop = AgentLoop(client, store)

    turn = asyncio.create_task(loop.run_turn(conv.id, "write then interrupt"))
    await _wait_until(lambda: len(client.requests) == 2)
    await asyncio.sleep(0.05)
    turn.cancel()
    with pytest.raises(asyncio.CancelledError):
        await turn

    assistant = store.list_messages(conv.id)[1]
    assert assistant.status == MessageStatus.STOPPED
    assert assistant.content == "partial" + STOPPED_NOTICE
    assert [tc.id for tc in assistant.tool_calls] == ["w1"]
    assert not loop.is_running(conv.id)
    _assert_undoable(store, conv.id, project)


@pytest.mark.asyncio
async def test_unexpected_failure_persists_error_and_reraises(store, project):
    conv = store.create_conversation(str(project))
    client = _write_then(calls(call("w2", "exists", path="b.txt")))
    dispatcher = ToolDispatcher(CommandExecutor())
    real_execute = dispatcher.execute

    async def execute(name, *args, **kwargs):
        if name == "exists":
            raise RuntimeError("dispatcher exploded")
        return await real_execute(name, *args, **kwargs)

    dispatcher.execute = execute
    loop = AgentLoop(client, store, dispatcher=dispatcher)

    with pytest.raises(RuntimeError):
        await loop.run_turn(conv.id, "write then crash")

    assistant = store.list_messages(conv.id)[1]
    assert assistant.status == MessageStatus.ERROR
    assert assistant.content.endswith("Error: dispatcher exploded")
    _assert_undoable(store, conv.id, project)


def test_executor_takes_poll_interval_from_config(store):
    loop = AgentLoop(
        ScriptedClient([]),
        store,
        config=EngineConfig(command_poll_interval_seconds=0.05),
    )
    assert loop.executor.poll_interval == 0.05
