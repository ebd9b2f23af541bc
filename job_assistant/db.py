"""SQLite persistence layer."""

from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from job_assistant.errors import PersistenceError
from job_assistant.models import Activity, ActivityType, Conversation, Message

SCHEMA_VERSION = 2

_MESSAGES_TABLE = """
CREATE TABLE IF NOT EXISTS messages (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    conversation_id TEXT NOT NULL,
    agent_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    correlation_id TEXT,
    created_at TEXT NOT NULL,
    UNIQUE(conversation_id, correlation_id),
    FOREIGN KEY(conversation_id) REFERENCES conversations(id)
);
"""


class Database:
    """Small SQLite wrapper with explicit schema management."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create or migrate schema."""

        with self._connect() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                self._create_schema(conn)
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            elif row["version"] == 1:
                self._migrate_v1(conn)
                conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))
            elif row["version"] != SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {row['version']} (expected {SCHEMA_VERSION})"
                )

    def _migrate_v1(self, conn: sqlite3.Connection) -> None:
        # v1 deduplicated correlation ids across all conversations.
        conn.executescript(
            f"""
            ALTER TABLE messages RENAME TO messages_v1;
            {_MESSAGES_TABLE}
            INSERT INTO messages(seq, id, conversation_id, agent_id, role, content, correlation_id, created_at)
                SELECT seq, id, conversation_id, agent_id, role, content, correlation_id, created_at
                FROM messages_v1;
            DROP TABLE messages_v1;
            CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, seq);
            """
        )

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(_MESSAGES_TABLE)
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                agent_id TEXT NOT NULL,
                name TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS activities (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL,
                agent_id TEXT NOT NULL,
                type TEXT NOT NULL,
                tool_name TEXT,
                params_json TEXT,
                result_json TEXT,
                success INTEGER,
                content TEXT,
                batch_id TEXT,
                is_redacted INTEGER NOT NULL DEFAULT 0,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                FOREIGN KEY(conversation_id) REFERENCES conversations(id)
            );

            CREATE TABLE IF NOT EXISTS tool_executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                tool_name TEXT NOT NULL,
                input_json TEXT NOT NULL,
                output_json TEXT NOT NULL,
                succeeded INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS gmail_credentials (
                user_id TEXT PRIMARY KEY,
                access_token TEXT NOT NULL,
                expires_at TEXT,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, seq);
            CREATE INDEX IF NOT EXISTS idx_activities_conversation ON activities(conversation_id, started_at);
            """
        )

    # Conversations

    def ensure_conversation(
        self,
        conversation_id: str | None,
        user_id: str,
        agent_id: str,
        name: str,
    ) -> Conversation:
        """Return the conversation, creating it on first use and bumping ``updated_at``."""
        now = _utc_now_iso()
        conversation_id = conversation_id or uuid.uuid4().hex
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO conversations(id, user_id, agent_id, name, created_at, updated_at)
                VALUES(?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET updated_at=excluded.updated_at
                """,
                (conversation_id, user_id, agent_id, name, now, now),
            )
            row = conn.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
        return _row_to_conversation(row)

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
        return _row_to_conversation(row) if row else None

    def list_conversations(self, user_id: str, agent_id: str | None = None) -> list[Conversation]:
        query = "SELECT * FROM conversations WHERE user_id = ?"
        params: list[Any] = [user_id]
        if agent_id:
            query += " AND agent_id = ?"
            params.append(agent_id)
        query += " ORDER BY updated_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_conversation(row) for row in rows]

    # Messages

    def append_message(
        self,
        conversation_id: str,
        agent_id: str,
        role: str,
        content: str,
        correlation_id: str | None = None,
    ) -> Message:
        """Append a message.

        ``correlation_id`` is unique within a conversation; repeating it returns
        the row already stored for that conversation.
        """
        message_id = uuid.uuid4().hex
        now = _utc_now_iso()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO messages(id, conversation_id, agent_id, role, content, correlation_id, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(conversation_id, correlation_id) DO NOTHING
                    """,
                    (message_id, conversation_id, agent_id, role, content, correlation_id, now),
                )
                if correlation_id is not None:
                    row = conn.execute(
                        "SELECT * FROM messages WHERE conversation_id = ? AND correlation_id = ?",
                        (conversation_id, correlation_id),
                    ).fetchone()
                else:
                    row = conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
                conn.execute(
                    "UPDATE conversations SET updated_at = ? WHERE id = ?", (now, conversation_id)
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to append message to {conversation_id}: {exc}") from exc
        if row is None or row["conversation_id"] != conversation_id or row["role"] != role:
            raise PersistenceError(
                f"Correlation id {correlation_id!r} in {conversation_id} is already used by another message"
            )
        return _row_to_message(row)

    def find_message(self, conversation_id: str, correlation_id: str) -> Message | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM messages WHERE conversation_id = ? AND correlation_id = ?",
                (conversation_id, correlation_id),
            ).fetchone()
        return _row_to_message(row) if row else None

    def list_messages(self, conversation_id: str) -> list[Message]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM messages WHERE conversation_id = ? ORDER BY created_at ASC, seq ASC",
                (conversation_id,),
            ).fetchall()
        return [_row_to_message(row) for row in rows]

    def get_recent_messages(self, conversation_id: str, limit: int) -> list[dict[str, str]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT role, content
                FROM messages
                WHERE conversation_id = ?
                ORDER BY seq DESC
                LIMIT ?
                """,
                (conversation_id, limit),
            ).fetchall()
        ordered = list(reversed(rows))
        return [{"role": row["role"], "content": row["content"]} for row in ordered]

    # Activities

    def save_activity(self, conversation_id: str, activity: Activity) -> None:
        """Upsert an activity by id. Params and results must already be redacted."""
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO activities(
                        id, conversation_id, agent_id, type, tool_name, params_json, result_json,
                        success, content, batch_id, is_redacted, started_at, completed_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        params_json=excluded.params_json,
                        result_json=excluded.result_json,
                        success=excluded.success,
                        content=excluded.content,
                        is_redacted=excluded.is_redacted,
                        completed_at=excluded.completed_at
                    """,
                    (
                        activity.id,
                        conversation_id,
                        activity.agent_id,
                        activity.type.value,
                        activity.tool_name,
                        json.dumps(activity.params, default=str),
                        json.dumps(activity.result, default=str),
                        None if activity.success is None else int(activity.success),
                        activity.content,
                        activity.batch_id,
                        int(activity.is_redacted),
                        activity.started_at.isoformat(),
                        activity.completed_at.isoformat() if activity.completed_at else None,
                    ),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to save activity {activity.id}: {exc}") from exc

    def list_activities(self, conversation_id: str, limit: int = 50) -> list[Activity]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM activities
                WHERE conversation_id = ?
                ORDER BY started_at ASC
                LIMIT ?
                """,
                (conversation_id, limit),
            ).fetchall()
        return [_row_to_activity(row) for row in rows]

    # Tools and credentials

    def log_tool_execution(
        self,
        user_id: str,
        tool_name: str,
        tool_input: Any,
        tool_output: Any,
        succeeded: bool,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tool_executions(user_id, tool_name, input_json, output_json, succeeded, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    tool_name,
                    json.dumps(tool_input, default=str),
                    json.dumps(tool_output, default=str),
                    int(succeeded),
                    _utc_now_iso(),
                ),
            )

    def list_tool_executions(self, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT tool_name, input_json, output_json, succeeded, created_at
                FROM tool_executions
                WHERE user_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
        return [dict(row) for row in rows]

    def save_gmail_credentials(self, user_id: str, access_token: str, expires_at: datetime | None = None) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO gmail_credentials(user_id, access_token, expires_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    access_token=excluded.access_token,
                    expires_at=excluded.expires_at,
                    updated_at=excluded.updated_at
                """,
                (
                    user_id,
                    access_token,
                    expires_at.astimezone(timezone.utc).isoformat() if expires_at else None,
                    _utc_now_iso(),
                ),
            )

    def get_gmail_access_token(self, user_id: str) -> str | None:
        """Return a still-valid access token, or None when missing or expired."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT access_token, expires_at FROM gmail_credentials WHERE user_id = ?", (user_id,)
            ).fetchone()
        if row is None:
            return None
        if row["expires_at"] and datetime.fromisoformat(row["expires_at"]) <= datetime.now(timezone.utc):
            return None
        return row["access_token"]


def _row_to_conversation(row: sqlite3.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        user_id=row["user_id"],
        agent_id=row["agent_id"],
        name=row["name"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        agent_id=row["agent_id"],
        role=row["role"],
        content=row["content"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_activity(row: sqlite3.Row) -> Activity:
    return Activity(
        id=row["id"],
        type=ActivityType(row["type"]),
        agent_id=row["agent_id"],
        started_at=datetime.fromisoformat(row["started_at"]),
        tool_name=row["tool_name"],
        params=json.loads(row["params_json"]) if row["params_json"] else None,
        result=json.loads(row["result_json"]) if row["result_json"] else None,
        success=None if row["success"] is None else bool(row["success"]),
        content=row["content"],
        completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
        batch_id=row["batch_id"],
        is_redacted=bool(row["is_redacted"]),
    )


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
