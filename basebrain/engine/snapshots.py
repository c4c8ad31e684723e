"""Pre-mutation file capture for per-turn undo.

A SnapshotRecorder lives for exactly one turn. The dispatcher calls
``capture_before`` ahead of every mutating tool; the agent loop calls
``commit`` once when the turn ends, anchoring everything captured to
the user message that started the turn.
"""
from __future__ import annotations

import logging
from typing import Protocol

from basebrain.shared.models.snapshot import FileSnapshot, PendingSnapshot, SnapshotAction
from basebrain.shared.services.filesystem import ProjectFilesystem

from .errors import NotFoundError

logger = logging.getLogger(__name__)

MUTATING_TOOLS: frozenset[str] = frozenset({
    "write_file",
    "create_file",
    "delete_file",
    "append_file",
})


class SnapshotSink(Protocol):
    def create_snapshots(self, snapshots: list[FileSnapshot]) -> list[FileSnapshot]: ...


class SnapshotRecorder:
    """Per-turn buffer of pending snapshots.

    Only the first capture of a given path is kept: it already holds the
    state the file had before the turn touched it, which is all a
    rollback needs.
    """

    def __init__(self) -> None:
        self._pending: list[PendingSnapshot] = []
        self._seen: set[str] = set()
        self._committed = False

    @property
    def pending(self) -> tuple[PendingSnapshot, ...]:
        return tuple(self._pending)

    @property
    def committed(self) -> bool:
        return self._committed

    def capture_before(
        self,
        tool_name: str,
        path: str,
        project_root: str,
        fs: ProjectFilesystem | None = None,
    ) -> PendingSnapshot | None:
        """Record *path*'s current state before *tool_name* mutates it.

        Returns the new pending entry, or None if the path was already
        captured this turn. Path validation errors propagate so the
        dispatcher can fail the tool call before anything is touched.
        """
        fs = fs or ProjectFilesystem(project_root)
        key = fs.relative(fs.resolve(path))
        if key in self._seen:
            logger.debug("Snapshot for %s already captured this turn", key)
            return None

        try:
            content = fs.read_text(path)
        except NotFoundError:
            entry = PendingSnapshot(file_path=key, action=SnapshotAction.CREATED)
        else:
            action = SnapshotAction.DELETED if tool_name == "delete_file" else SnapshotAction.MODIFIED
            entry = PendingSnapshot(file_path=key, action=action, content_before=content)

        self._seen.add(key)
        self._pending.append(entry)
        logger.debug("Captured %s snapshot for %s (%s)", entry.action.value, key, tool_name)
        return entry

    def commit(self, anchor_message_id: str, store: SnapshotSink) -> list[FileSnapshot]:
        """Persist everything captured, anchored to *anchor_message_id*.

        Safe to call more than once; only the first call writes.
        """
        if self._committed:
            return []
        self._committed = True
        if not self._pending:
            return []
        snapshots = [
            FileSnapshot(
                message_id=anchor_message_id,
                file_path=p.file_path,
                action=p.action,
                content_before=p.content_before,
                content_after=p.content_after,
            )
            for p in self._pending
        ]
        saved = store.create_snapshots(snapshots)
        logger.info(
            "Committed %d file snapshot(s) anchored to message %s",
            len(saved), anchor_message_id,
        )
        return saved
