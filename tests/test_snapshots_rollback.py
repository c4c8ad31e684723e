"""Per-turn file snapshots and the rollback engine."""

from __future__ import annotations

import pytest

from basebrain.engine.commands import CommandExecutor
from basebrain.engine.dispatcher import ToolDispatcher
from basebrain.engine.rollback import RollbackEngine
from basebrain.engine.snapshots import SnapshotRecorder
from basebrain.shared.models.message import Message, MessageRole
from basebrain.shared.models.snapshot import FileSnapshot, SnapshotAction
from basebrain.shared.services.store import SQLiteStore


@pytest.fixture
def project(tmp_path):
    root = tmp_path / "proj"
    root.mkdir()
    return root


@pytest.fixture
def store(tmp_path):
    return SQLiteStore(tmp_path / "bb.db")


async def _turn(store, dispatcher, conv_id, root, calls):
    """Simulate one turn: a user message plus tool calls, then commit."""
    user = store.add_message(Message(role=MessageRole.USER, content="go", conversation_id=conv_id))
    recorder = SnapshotRecorder()
    outcomes = []
    for name, args in calls:
        outcomes.append(await dispatcher.execute(name, args, str(root), recorder))
    store.add_message(Message(role=MessageRole.ASSISTANT, content="ok", conversation_id=conv_id))
    recorder.commit(user.id, store)
    return user, outcomes


def test_first_capture_per_path_wins(project):
    recorder = SnapshotRecorder()
    (project / "a.txt").write_text("original")

    first = recorder.capture_before("write_file", "a.txt", str(project))
    second = recorder.capture_before("write_file", "./a.txt", str(project))

    assert first.action == SnapshotAction.MODIFIED
    assert first.content_before == "original"
    assert second is None
    assert len(recorder.pending) == 1


def test_capture_classifies_actions(project):
    recorder = SnapshotRecorder()
    (project / "gone.txt").write_text("bye")

    created = recorder.capture_before("write_file", "new.txt", str(project))
    deleted = recorder.capture_before("delete_file", "gone.txt", str(project))

    assert created.action == SnapshotAction.CREATED
    assert created.content_before is None
    assert deleted.action == SnapshotAction.DELETED
    assert deleted.content_before == "bye"


def test_commit_writes_once(project, store):
    conv = store.create_conversation(str(project))
    user = store.add_message(Message(role=MessageRole.USER, content="x", conversation_id=conv.id))
    recorder = SnapshotRecorder()
    recorder.capture_before("write_file", "a.txt", str(project))

    assert len(recorder.commit(user.id, store)) == 1
    assert recorder.commit(user.id, store) == []
    assert recorder.committed
    assert len(store.get_snapshots_for_message(user.id)) == 1


@pytest.mark.asyncio
async def test_many_writes_to_new_file_roll_back_to_nothing(project, store):
    conv = store.create_conversation(str(project))
    dispatcher = ToolDispatcher(CommandExecutor())
    writes = [("write_file", {"path": "out/a.txt", "content": f"v{i}"}) for i in range(4)]
    user, outcomes = await _turn(store, dispatcher, conv.id, project, writes)

    assert all(o.success for o in outcomes)
    snaps = store.get_snapshots_for_message(user.id)
    assert [(s.file_path, s.action) for s in snaps] == [("out/a.txt", SnapshotAction.CREATED)]

    result = RollbackEngine(store).rollback(conv.id, user.id, str(project))
    assert result.ok
    assert result.restored_paths == ["out/a.txt"]
    assert result.messages_removed == 2
    assert not (project / "out" / "a.txt").exists()
    assert not (project / "out").exists()
    assert store.list_messages(conv.id) == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("target_turn", "expected"),
    [(0, None), (1, "v1"), (2, "v2")],
)
async def test_rollback_reverses_turns_newest_first(project, store, target_turn, expected):
    conv = store.create_conversation(str(project))
    dispatcher = ToolDispatcher(CommandExecutor())
    turns = [
        [("write_file", {"path": "a.txt", "content": "v1"})],
        [("write_file", {"path": "a.txt", "content": "v2"})],
        [("delete_file", {"path": "a.txt"})],
    ]
    users = []
    for calls in turns:
        user, outcomes = await _turn(store, dispatcher, conv.id, project, calls)
        assert outcomes[0].success
        users.append(user)
    assert not (project / "a.txt").exists()

    result = RollbackEngine(store).rollback(conv.id, users[target_turn].id, str(project))

    assert result.ok
    target = project / "a.txt"
    if expected is None:
        assert not target.exists()
    else:
        assert target.read_text() == expected
    remaining = store.list_messages(conv.id)
    assert len(remaining) == 2 * target_turn


def test_rollback_unknown_message(project, store):
    conv = store.create_conversation(str(project))
    result = RollbackEngine(store).rollback(conv.id, "missing", str(project))
    assert not result.found
    assert not result.ok
    assert result.errors == ["Message not found: missing"]


def test_rollback_continues_past_failures(project, store):
    conv = store.create_conversation(str(project))
    user = store.add_message(Message(role=MessageRole.USER, content="x", conversation_id=conv.id))
    (project / "dir.txt").mkdir()
    store.create_snapshots([
        FileSnapshot(message_id=user.id, file_path="dir.txt", action=SnapshotAction.CREATED),
        FileSnapshot(
            message_id=user.id, file_path="b.txt",
            action=SnapshotAction.MODIFIED, content_before="before",
        ),
    ])

    result = RollbackEngine(store).rollback(conv.id, user.id, str(project))

    assert result.found
    assert result.restored_paths == ["b.txt"]
    assert len(result.errors) == 1
    assert result.errors[0].startswith("dir.txt: ")
    assert (project / "b.txt").read_text() == "before"
    assert result.to_dict()["messagesRemoved"] == 1
