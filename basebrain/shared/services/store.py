"""SQLite-backed store for conversations, messages and file snapshots.

Each operation opens its own short-lived connection, so a store object
can be shared freely between the agent loop, the rollback engine and
the CLI. Foreign keys are enabled per connection; deleting a message
cascades to the snapshots anchored to it.
"""
from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from basebrain.shared.models.message import (
    Conversation,
    Message,
    MessageRole,
    MessageStatus,
    TokenUsage,
    ToolCall,
    ToolResult,
    generate_title,
)
from basebrain.shared.models.snapshot import FileSnapshot, SnapshotAction

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        project_root TEXT NOT NULL,
        title TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        conversation_id TEXT NOT NULL
            REFERENCES conversations(id) ON DELETE CASCADE,
        role TEXT NOT NULL,
        content TEXT NOT NULL DEFAULT '',
        thinking TEXT,
        tool_calls_json TEXT NOT NULL DEFAULT '[]',
        tool_results_json TEXT NOT NULL DEFAULT '[]',
        usage_json TEXT,
        status TEXT NOT NULL DEFAULT 'completed',
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, seq)",
    """
    CREATE TABLE IF NOT EXISTS file_snapshots (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        message_id TEXT NOT NULL
            REFERENCES messages(id) ON DELETE CASCADE,
        file_path TEXT NOT NULL,
        action TEXT NOT NULL,
        content_before TEXT,
        content_after TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_snapshots_message ON file_snapshots(message_id, seq)",
)


def _iso_utc(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat()


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _row_to_conversation(row: sqlite3.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        project_root=row["project_root"],
        title=row["title"],
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    usage = None
    if row["usage_json"]:
        data = json.loads(row["usage_json"])
        usage = TokenUsage(
            prompt_tokens=int(data.get("prompt_tokens", 0)),
            completion_tokens=int(data.get("completion_tokens", 0)),
        )
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        role=MessageRole(row["role"]),
        content=row["content"],
        thinking=row["thinking"],
        tool_calls=[ToolCall.from_wire(d) for d in json.loads(row["tool_calls_json"])],
        tool_results=[ToolResult.from_dict(d) for d in json.loads(row["tool_results_json"])],
        usage=usage,
        status=MessageStatus(row["status"]),
        created_at=_parse_ts(row["created_at"]),
        seq=int(row["seq"]),
    )


def _row_to_snapshot(row: sqlite3.Row) -> FileSnapshot:
    return FileSnapshot(
        id=row["id"],
        message_id=row["message_id"],
        file_path=row["file_path"],
        action=SnapshotAction(row["action"]),
        content_before=row["content_before"],
        content_after=row["content_after"],
        created_at=_parse_ts(row["created_at"]),
        seq=int(row["seq"]),
    )


def _message_columns(message: Message) -> tuple:
    return (
        message.role.value,
        message.content,
        message.thinking,
        json.dumps([tc.to_wire() for tc in message.tool_calls]),
        json.dumps([tr.to_dict() for tr in message.tool_results]),
        json.dumps(message.usage.to_dict()) if message.usage is not None else None,
        message.status.value,
    )


class SQLiteStore:
    """Conversation, message and snapshot persistence."""

    def __init__(self, db_path: str | Path):
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    # ── Conversations ──

    def create_conversation(
        self,
        project_root: str,
        title: str | None = None,
    ) -> Conversation:
        conversation = Conversation(project_root=project_root, title=title)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO conversations(id, project_root, title, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    conversation.id,
                    conversation.project_root,
                    conversation.title,
                    _iso_utc(conversation.created_at),
                    _iso_utc(conversation.updated_at),
                ),
            )
        logger.debug("Created conversation %s for %s", conversation.id, project_root)
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,),
            ).fetchone()
        return _row_to_conversation(row) if row is not None else None

    def list_conversations(self, project_root: str | None = None) -> list[Conversation]:
        """Most recently updated first."""
        with self._connect() as conn:
            if project_root is None:
                rows = conn.execute(
                    "SELECT * FROM conversations ORDER BY updated_at DESC",
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM conversations WHERE project_root = ?
                    ORDER BY updated_at DESC
                    """,
                    (project_root,),
                ).fetchall()
        return [_row_to_conversation(r) for r in rows]

    def rename_conversation(self, conversation_id: str, title: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE conversations SET title = ?, updated_at = ? WHERE id = ?",
                (title, _iso_utc(datetime.now(timezone.utc)), conversation_id),
            )
        return cur.rowcount > 0

    def delete_conversation(self, conversation_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM conversations WHERE id = ?", (conversation_id,),
            )
        return cur.rowcount > 0

    # ── Messages ──

    def add_message(self, message: Message) -> Message:
        """Insert *message*, assigning its ``seq``.

        The first user message of an untitled conversation also names it.
        """
        now = _iso_utc(datetime.now(timezone.utc))
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO messages(
                    role, content, thinking, tool_calls_json,
                    tool_results_json, usage_json, status,
                    id, conversation_id, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                _message_columns(message) + (
                    message.id,
                    message.conversation_id,
                    _iso_utc(message.created_at),
                ),
            )
            message.seq = int(cur.lastrowid)
            conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (now, message.conversation_id),
            )
            if message.role == MessageRole.USER:
                conn.execute(
                    "UPDATE conversations SET title = ? WHERE id = ? AND title IS NULL",
                    (generate_title(message.content), message.conversation_id),
                )
        return message

    def update_message(self, message: Message) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE messages SET
                    role = ?, content = ?, thinking = ?, tool_calls_json = ?,
                    tool_results_json = ?, usage_json = ?, status = ?
                WHERE id = ?
                """,
                _message_columns(message) + (message.id,),
            )

    def get_message(self, message_id: str) -> Message | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM messages WHERE id = ?", (message_id,),
            ).fetchone()
        return _row_to_message(row) if row is not None else None

    def list_messages(self, conversation_id: str) -> list[Message]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM messages WHERE conversation_id = ? ORDER BY seq ASC",
                (conversation_id,),
            ).fetchall()
        return [_row_to_message(r) for r in rows]

    def last_messages(self, conversation_id: str, limit: int) -> list[Message]:
        """The newest *limit* messages, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM messages WHERE conversation_id = ?
                ORDER BY seq DESC LIMIT ?
                """,
                (conversation_id, limit),
            ).fetchall()
        return [_row_to_message(r) for r in reversed(rows)]

    def count_messages(self, conversation_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM messages WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
        return int(row["n"])

    def delete_messages_from(self, conversation_id: str, message_id: str) -> int:
        """Delete *message_id* and every later message. Snapshots cascade."""
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM messages
                WHERE conversation_id = ?
                  AND seq >= (SELECT seq FROM messages WHERE id = ? AND conversation_id = ?)
                """,
                (conversation_id, message_id, conversation_id),
            )
        return cur.rowcount

    # ── Snapshots ──

    def create_snapshot(self, snapshot: FileSnapshot) -> FileSnapshot:
        return self.create_snapshots([snapshot])[0]

    def create_snapshots(self, snapshots: list[FileSnapshot]) -> list[FileSnapshot]:
        """Insert *snapshots* in order inside one transaction."""
        with self._connect() as conn:
            for snap in snapshots:
                cur = conn.execute(
                    """
                    INSERT INTO file_snapshots(
                        id, message_id, file_path, action,
                        content_before, content_after, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        snap.id,
                        snap.message_id,
                        snap.file_path,
                        snap.action.value,
                        snap.content_before,
                        snap.content_after,
                        _iso_utc(snap.created_at),
                    ),
                )
                snap.seq = int(cur.lastrowid)
        return snapshots

    def get_snapshots_for_message(self, message_id: str) -> list[FileSnapshot]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM file_snapshots WHERE message_id = ? ORDER BY seq ASC",
                (message_id,),
            ).fetchall()
        return [_row_to_snapshot(r) for r in rows]

    def get_snapshots_after_message(
        self,
        conversation_id: str,
        message_id: str,
    ) -> list[FileSnapshot]:
        """Snapshots anchored at or after *message_id*, most recent first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT s.* FROM file_snapshots s
                JOIN messages m ON m.id = s.message_id
                WHERE m.conversation_id = ?
                  AND m.seq >= (SELECT seq FROM messages WHERE id = ? AND conversation_id = ?)
                ORDER BY m.seq DESC, s.seq DESC
                """,
                (conversation_id, message_id, conversation_id),
            ).fetchall()
        return [_row_to_snapshot(r) for r in rows]

    def delete_snapshots_after_message(
        self,
        conversation_id: str,
        message_id: str,
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM file_snapshots
                WHERE message_id IN (
                    SELECT id FROM messages
                    WHERE conversation_id = ?
                      AND seq >= (SELECT seq FROM messages WHERE id = ? AND conversation_id = ?)
                )
                """,
                (conversation_id, message_id, conversation_id),
            )
        return cur.rowcount
