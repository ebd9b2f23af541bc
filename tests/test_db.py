import sqlite3
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from job_assistant.db import Database
from job_assistant.errors import PersistenceError
from job_assistant.models import Activity, ActivityType


def _db(tmp_path) -> Database:
    db = Database(tmp_path / "assistant.db")
    db.initialize()
    return db


def test_conversation_is_created_once_and_touched(tmp_path):
    db = _db(tmp_path)

    created = db.ensure_conversation(None, "user-1", "job-agent", "Find jobs")
    again = db.ensure_conversation(created.id, "user-1", "job-agent", "ignored name")

    assert again.id == created.id
    assert again.name == "Find jobs"
    assert again.updated_at >= created.updated_at
    assert [c.id for c in db.list_conversations("user-1", "job-agent")] == [created.id]
    assert db.list_conversations("user-1", "other-agent") == []
    assert db.list_conversations("user-2") == []


def test_messages_are_ordered_and_windowed(tmp_path):
    db = _db(tmp_path)
    conversation = db.ensure_conversation(None, "user-1", "job-agent", "chat")
    for index in range(4):
        role = "user" if index % 2 == 0 else "assistant"
        db.append_message(conversation.id, "job-agent", role, f"m{index}")

    assert [m.content for m in db.list_messages(conversation.id)] == ["m0", "m1", "m2", "m3"]
    assert db.get_recent_messages(conversation.id, limit=2) == [
        {"role": "user", "content": "m2"},
        {"role": "assistant", "content": "m3"},
    ]


def test_append_message_is_idempotent_per_correlation_id(tmp_path):
    db = _db(tmp_path)
    conversation = db.ensure_conversation(None, "user-1", "job-agent", "chat")

    first = db.append_message(conversation.id, "job-agent", "assistant", "answer", correlation_id="turn-1:assistant")
    retry = db.append_message(conversation.id, "job-agent", "assistant", "answer", correlation_id="turn-1:assistant")

    assert retry.id == first.id
    assert len(db.list_messages(conversation.id)) == 1


def test_correlation_id_is_scoped_to_its_conversation(tmp_path):
    db = _db(tmp_path)
    mine = db.ensure_conversation(None, "user-1", "job-agent", "chat")
    theirs = db.ensure_conversation(None, "user-2", "job-agent", "chat")

    first = db.append_message(mine.id, "job-agent", "user", "q1", correlation_id="corr-1:user")
    second = db.append_message(theirs.id, "job-agent", "user", "q2", correlation_id="corr-1:user")

    assert second.id != first.id
    assert second.conversation_id == theirs.id
    assert [m.content for m in db.list_messages(mine.id)] == ["q1"]
    assert [m.content for m in db.list_messages(theirs.id)] == ["q2"]
    assert db.find_message(theirs.id, "corr-1:user").id == second.id
    assert db.find_message(theirs.id, "corr-1:assistant") is None


def test_correlation_id_held_by_another_role_is_rejected(tmp_path):
    db = _db(tmp_path)
    conversation = db.ensure_conversation(None, "user-1", "job-agent", "chat")
    db.append_message(conversation.id, "job-agent", "user", "q", correlation_id="turn-1")

    with pytest.raises(PersistenceError, match="already used"):
        db.append_message(conversation.id, "job-agent", "assistant", "a", correlation_id="turn-1")

    assert [m.role for m in db.list_messages(conversation.id)] == ["user"]


def test_initialize_migrates_global_correlation_ids(tmp_path):
    db = _db(tmp_path)
    with sqlite3.connect(tmp_path / "assistant.db") as conn:
        conn.executescript(
            """
            DROP TABLE messages;
            CREATE TABLE messages (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                conversation_id TEXT NOT NULL,
                agent_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                correlation_id TEXT UNIQUE,
                created_at TEXT NOT NULL
            );
            INSERT INTO messages(id, conversation_id, agent_id, role, content, correlation_id, created_at)
                VALUES ('m1', 'c1', 'job-agent', 'user', 'hello', 'corr-1:user', '2026-01-01T00:00:00+00:00');
            UPDATE schema_version SET version = 1;
            """
        )

    db.initialize()

    assert [m.id for m in db.list_messages("c1")] == ["m1"]
    db.append_message("c2", "job-agent", "user", "hi", correlation_id="corr-1:user")
    assert [m.content for m in db.list_messages("c2")] == ["hi"]
    with sqlite3.connect(tmp_path / "assistant.db") as conn:
        assert conn.execute("SELECT version FROM schema_version").fetchone()[0] == 2


def test_append_message_wraps_sqlite_errors(tmp_path):
    db = _db(tmp_path)

    with patch.object(db, "_connect", side_effect=sqlite3.OperationalError("disk I/O error")):
        with pytest.raises(PersistenceError):
            db.append_message("c1", "job-agent", "assistant", "answer")


def test_activity_upsert_keeps_one_row(tmp_path):
    db = _db(tmp_path)
    conversation = db.ensure_conversation(None, "user-1", "job-agent", "chat")
    started = datetime.now(timezone.utc)
    activity = Activity(
        id="toolu_1",
        type=ActivityType.TOOL_CALL,
        agent_id="job-agent",
        started_at=started,
        tool_name="job_search",
        params={"keywords": "engineer"},
    )
    db.save_activity(conversation.id, activity)
    activity.result = {"jobs": [], "total": 0}
    activity.success = True
    activity.completed_at = started + timedelta(seconds=1)
    db.save_activity(conversation.id, activity)

    stored = db.list_activities(conversation.id)

    assert len(stored) == 1
    assert stored[0].result == {"jobs": [], "total": 0}
    assert stored[0].success is True
    assert stored[0].is_complete


def test_tool_execution_log(tmp_path):
    db = _db(tmp_path)
    db.log_tool_execution("user-1", "job_search", {"keywords": "x"}, {"total": 0}, succeeded=True)

    rows = db.list_tool_executions("user-1")

    assert rows[0]["tool_name"] == "job_search"
    assert rows[0]["succeeded"] == 1


def test_gmail_token_expiry(tmp_path):
    db = _db(tmp_path)
    db.save_gmail_credentials("fresh", "tok-1", datetime.now(timezone.utc) + timedelta(hours=1))
    db.save_gmail_credentials("stale", "tok-2", datetime.now(timezone.utc) - timedelta(minutes=1))

    assert db.get_gmail_access_token("fresh") == "tok-1"
    assert db.get_gmail_access_token("stale") is None
    assert db.get_gmail_access_token("nobody") is None


def test_initialize_rejects_unknown_schema_version(tmp_path):
    db = _db(tmp_path)
    with sqlite3.connect(tmp_path / "assistant.db") as conn:
        conn.execute("UPDATE schema_version SET version = 99")

    with pytest.raises(RuntimeError):
        db.initialize()
