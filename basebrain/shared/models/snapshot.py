"""File snapshot model used for per-turn undo."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SnapshotAction(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True)
class PendingSnapshot:
    """Pre-mutation state captured during a turn, not yet durable."""
    file_path: str
    action: SnapshotAction
    content_before: str | None = None
    content_after: str | None = None


@dataclass
class FileSnapshot:
    """Durable snapshot, anchored to the user message that started the turn."""
    message_id: str
    file_path: str
    action: SnapshotAction
    content_before: str | None = None
    content_after: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_utcnow)
    # Capture order, assigned by the store.
    seq: int = 0
