"""Postgres store behaviour against stubbed pools (no database needed)."""

import contextlib
import json
import re
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from formfind.storage.errors import ConstraintViolation, DuplicateIdError
from formfind.storage.models import Message
from formfind.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeResult:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    """Records statements and answers them from a list of canned results."""

    def __init__(self, results=None):
        self.results = list(results or [])
        self.statements = []
        self.transactions = 0

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.results:
            return self.results.pop(0)
        return FakeResult()

    @contextlib.contextmanager
    def transaction(self):
        self.transactions += 1
        yield


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextlib.contextmanager
    def connection(self):
        yield self.conn


def _store(tmp_path: Path, pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.fs_root = tmp_path
    from formfind.logging import get_logger

    store.logger = get_logger("test")
    return store


def test_schema_check_lists_missing_tables(tmp_path):
    present = {"public.app_user", "public.auth_session", "public.chat", "public.message"}

    class SchemaConn(FakeConnection):
        def execute(self, sql, params=None):
            return FakeResult([{"oid": params[0] if params[0] in present else None}])

    store = _store(tmp_path, FakePool(SchemaConn()))
    with pytest.raises(RuntimeError) as excinfo:
        store._verify_required_schema()
    assert "message_v2, vote, vote_v2" in str(excinfo.value)
    assert "scripts/schema.sql" in str(excinfo.value)


def test_schema_check_rejects_uuid_id_columns(tmp_path):
    class SchemaConn(FakeConnection):
        def execute(self, sql, params=None):
            if "information_schema" in sql:
                return FakeResult([{"table_name": "chat", "column_name": "id"}])
            return FakeResult([{"oid": params[0]}])

    store = _store(tmp_path, FakePool(SchemaConn()))
    with pytest.raises(RuntimeError) as excinfo:
        store._verify_required_schema()
    assert "chat.id" in str(excinfo.value)


def test_schema_accepts_caller_assigned_ids():
    schema = (Path(__file__).resolve().parents[1] / "scripts" / "schema.sql").read_text()
    for table in ("chat", "message", "message_v2", "vote", "vote_v2"):
        body = re.search(
            rf"CREATE TABLE IF NOT EXISTS {table} \((.*?)\n\);", schema, re.S
        ).group(1)
        for column in ("id", "chat_id", "message_id"):
            declared = re.search(rf"^\s+{column} (\w+)", body, re.M)
            if declared:
                assert declared.group(1) == "TEXT", f"{table}.{column}"


def test_invalid_role_rejected_before_db_access(tmp_path):
    store = _store(tmp_path, DummyPool())
    with pytest.raises(ConstraintViolation):
        store.save_messages([Message(id="m1", chat_id="c1", role="narrator", parts=[])])


def test_save_messages_checks_both_generations(tmp_path):
    conn = FakeConnection([FakeResult([{"generation": "legacy", "chat_id": "c1"}])])
    store = _store(tmp_path, FakePool(conn))
    with pytest.raises(DuplicateIdError):
        store.save_messages(
            [Message(id="m1", chat_id="c1", role="user", parts=[{"type": "text", "text": "x"}])]
        )
    assert "FROM message_v2" in conn.statements[0][0]
    assert "FROM message WHERE" in conn.statements[0][0]
    assert not any(sql.startswith("INSERT") for sql, _ in conn.statements)


def test_save_messages_writes_normalized_json(tmp_path):
    conn = FakeConnection([FakeResult([])])
    store = _store(tmp_path, FakePool(conn))
    stored = store.save_messages(
        [
            Message(
                id="m1",
                chat_id="c1",
                role="user",
                parts=[{"type": "text", "text": "x", "junk": 1}],
                attachments=[{"url": "https://x/a.png", "size": 4}],
            )
        ]
    )
    insert_sql, params = conn.statements[-1]
    assert insert_sql.startswith("INSERT INTO message_v2")
    assert json.loads(params[3]) == [{"type": "text", "text": "x"}]
    assert json.loads(params[4]) == [{"url": "https://x/a.png"}]
    assert stored[0].parts == [{"type": "text", "text": "x"}]
    assert conn.transactions == 1


def test_delete_chat_removes_children_first_in_one_transaction(tmp_path):
    conn = FakeConnection([FakeResult(), FakeResult(), FakeResult(), FakeResult(), FakeResult(rowcount=1)])
    store = _store(tmp_path, FakePool(conn))
    assert store.delete_chat("c1") is True
    tables = [sql.split()[2] for sql, _ in conn.statements]
    assert tables == ["vote_v2", "vote", "message_v2", "message", "chat"]
    assert conn.transactions == 1


def test_delete_missing_chat_returns_false(tmp_path):
    conn = FakeConnection([FakeResult()] * 4 + [FakeResult(rowcount=0)])
    store = _store(tmp_path, FakePool(conn))
    assert store.delete_chat("c1") is False


def test_history_merges_and_normalizes_legacy_rows(tmp_path):
    now = datetime.utcnow()
    current = [
        {
            "id": "m2",
            "chat_id": "c1",
            "role": "user",
            "parts": json.dumps([{"type": "text", "text": "new"}]),
            "attachments": None,
            "created_at": now,
        }
    ]
    legacy = [
        {"id": "m1", "chat_id": "c1", "role": "assistant", "content": "old", "created_at": now - timedelta(minutes=1)}
    ]
    conn = FakeConnection([FakeResult(current), FakeResult(legacy)])
    store = _store(tmp_path, FakePool(conn))
    history = store.get_messages_by_chat_id("c1")
    assert [m.id for m in history] == ["m1", "m2"]
    assert history[0].parts == [{"type": "text", "text": "old"}]
    assert history[1].attachments == []


def test_vote_targets_legacy_table_for_legacy_message(tmp_path):
    conn = FakeConnection([FakeResult([{"generation": "legacy", "chat_id": "c1"}])])
    store = _store(tmp_path, FakePool(conn))
    vote = store.vote_message("c1", "m1", False)
    assert vote.generation == "legacy"
    upsert_sql, params = conn.statements[-1]
    assert upsert_sql.startswith("INSERT INTO vote (")
    assert "ON CONFLICT" in upsert_sql
    assert params == ("c1", "m1", False)


def test_vote_on_message_of_other_chat_is_rejected(tmp_path):
    conn = FakeConnection([FakeResult([{"generation": "current", "chat_id": "other"}])])
    store = _store(tmp_path, FakePool(conn))
    with pytest.raises(ConstraintViolation):
        store.vote_message("c1", "m1", True)
