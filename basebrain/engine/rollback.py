"""Rollback engine: undo the file effects of one or more turns.

Snapshots at or after the target message are reverse-applied newest
first, then the target message and everything after it is deleted.
Each file is reverted independently; a failure on one path is logged
and reported but does not stop the others.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from basebrain.shared.models.message import Message
from basebrain.shared.models.snapshot import FileSnapshot, SnapshotAction
from basebrain.shared.services.durable_write import atomic_write_text
from basebrain.shared.services.filesystem import ProjectFilesystem

from .errors import BasebrainError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class RollbackStore(Protocol):
    def get_message(self, message_id: str) -> Message | None: ...
    def get_snapshots_after_message(
        self, conversation_id: str, message_id: str,
    ) -> list[FileSnapshot]: ...
    def delete_messages_from(self, conversation_id: str, message_id: str) -> int: ...


@dataclass
class RollbackResult:
    """Outcome of a rollback. Partial failure is normal, not exceptional."""
    restored_paths: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    messages_removed: int = 0
    found: bool = True

    @property
    def ok(self) -> bool:
        return self.found and not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "restoredPaths": list(self.restored_paths),
            "errors": list(self.errors),
            "messagesRemoved": self.messages_removed,
            "found": self.found,
        }


class RollbackEngine:
    """Reverse-applies file snapshots and truncates conversation history."""

    def __init__(self, store: RollbackStore) -> None:
        self._store = store

    def rollback(
        self,
        conversation_id: str,
        target_message_id: str,
        project_root: str,
    ) -> RollbackResult:
        message = self._store.get_message(target_message_id)
        if message is None or message.conversation_id != conversation_id:
            err = NotFoundError("Message", target_message_id)
            logger.info("Rollback skipped: %s", err)
            return RollbackResult(errors=[str(err)], found=False)

        fs = ProjectFilesystem(project_root)
        snapshots = self._store.get_snapshots_after_message(conversation_id, target_message_id)
        logger.info(
            "Rolling back conversation %s to message %s: %d snapshot(s)",
            conversation_id, target_message_id, len(snapshots),
        )

        result = RollbackResult()
        for snapshot in snapshots:
            try:
                self._revert(snapshot, fs)
            except (OSError, BasebrainError) as exc:
                logger.warning(
                    "Rollback failed for %s (%s): %s",
                    snapshot.file_path, snapshot.action.value, exc,
                )
                result.errors.append(f"{snapshot.file_path}: {exc}")
                continue
            result.restored_paths.append(snapshot.file_path)

        result.messages_removed = self._store.delete_messages_from(
            conversation_id, target_message_id,
        )
        logger.info(
            "Rollback complete: restored=%d failed=%d messages_removed=%d",
            len(result.restored_paths), len(result.errors), result.messages_removed,
        )
        return result

    @staticmethod
    def _revert(snapshot: FileSnapshot, fs: ProjectFilesystem) -> None:
        target = fs.resolve(snapshot.file_path)
        if snapshot.action == SnapshotAction.CREATED:
            if target.is_dir():
                raise ValidationError("Expected a file but found a folder", path=snapshot.file_path)
            if target.exists() or target.is_symlink():
                target.unlink()
                fs.prune_empty_parents(target)
            return

        if snapshot.content_before is None:
            raise ValidationError(
                f"No prior content recorded for {snapshot.action.value} file",
                path=snapshot.file_path,
            )
        # modified and deleted both end with the old bytes on disk;
        # atomic_write_text recreates missing parents for deleted files.
        atomic_write_text(target, snapshot.content_before)
