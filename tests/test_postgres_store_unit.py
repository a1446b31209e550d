import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

import pytest
from psycopg import errors

from warden.storage.errors import ConstraintViolation, NotFound
from warden.storage.models import UserStatus, UserUpdate
from warden.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self._row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self._row


class RecordingConnection:
    """Captures executed SQL and answers with queued cursors."""

    def __init__(self, results=None, error=None):
        self.executed = []
        self._results = list(results or [])
        self._error = error

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        if self._error is not None:
            raise self._error
        return self._results.pop(0) if self._results else FakeCursor()


def _store(conn=None, identifier_field="email") -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    store.identifier_field = identifier_field
    store.logger = None
    if conn is not None:

        @contextmanager
        def _connect():
            yield conn

        store._connect = _connect
    return store


def _user_row(**overrides):
    row = {
        "id": uuid.uuid4(),
        "email": "alice@example.com",
        "username": "alice",
        "password_hash": "h",
        "activated": True,
        "status": "enabled",
        "activation_hash": None,
        "password_reset_hash": None,
        "temp_password": None,
        "last_login": None,
        "ip_address": None,
        "created_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
        "updated_at": None,
    }
    row.update(overrides)
    return row


def test_rejects_unknown_identifier_field():
    with pytest.raises(ValueError):
        PostgresStore("postgresql://unused", identifier_field="phone")


def test_find_by_id_rejects_non_uuid_without_querying():
    store = _store()
    with pytest.raises(NotFound):
        store.find_by_id("42")


def test_get_session_with_non_uuid_is_none():
    store = _store()
    assert store.get_session("not-a-uuid") is None
    store.revoke_session("not-a-uuid")


def test_find_by_identifier_uses_configured_column():
    row = _user_row(status="disabled")
    conn = RecordingConnection([FakeCursor(row)])
    store = _store(conn, identifier_field="username")

    user = store.find_by_identifier("alice")

    sql, params = conn.executed[0]
    assert "WHERE username = %s" in sql
    assert params == ("alice",)
    assert user.id == str(row["id"])
    assert user.status == UserStatus.DISABLED


def test_find_by_identifier_missing():
    store = _store(RecordingConnection([FakeCursor(None)]))
    with pytest.raises(NotFound):
        store.find_by_identifier("ghost")


def test_update_builds_assignments_from_set_fields():
    row = _user_row()
    conn = RecordingConnection([FakeCursor(row)])
    store = _store(conn)

    store.update(
        str(row["id"]),
        UserUpdate(password_reset_hash=None, status=UserStatus.DISABLED),
        touch_timestamp=False,
    )

    sql, params = conn.executed[0]
    assert sql.startswith("UPDATE warden_user SET password_reset_hash = %s, status = %s WHERE id = %s")
    assert params == [None, "disabled", str(row["id"])]


def test_update_touches_timestamp():
    row = _user_row()
    conn = RecordingConnection([FakeCursor(row)])
    store = _store(conn)

    store.update(str(row["id"]), UserUpdate(activated=True))

    sql, _ = conn.executed[0]
    assert "updated_at = now()" in sql


def test_update_missing_row_raises():
    store = _store(RecordingConnection([FakeCursor(None)]))
    with pytest.raises(NotFound):
        store.update(str(uuid.uuid4()), UserUpdate(activated=True))


def test_duplicate_user_maps_to_constraint_violation():
    store = _store(RecordingConnection(error=errors.UniqueViolation("duplicate key")))
    with pytest.raises(ConstraintViolation):
        store.create_user("alice@example.com")


def test_session_for_missing_user_maps_to_constraint_violation():
    store = _store(RecordingConnection(error=errors.ForeignKeyViolation("fk")))
    with pytest.raises(ConstraintViolation):
        store.create_session(str(uuid.uuid4()))


def test_create_session_stores_hash_not_token():
    conn = RecordingConnection()
    store = _store(conn)
    user_id = str(uuid.uuid4())

    session, token = store.create_session(user_id, remember=True, origin="1.2.3.4")

    _, params = conn.executed[0]
    assert token
    assert token not in params
    assert session.remember_hash in params
    assert params[1] == user_id


def test_revoke_user_sessions_keeps_current():
    conn = RecordingConnection([FakeCursor(rowcount=2)])
    store = _store(conn)
    user_id, keep = str(uuid.uuid4()), str(uuid.uuid4())

    assert store.revoke_user_sessions(user_id, except_session_id=keep) == 2

    sql, params = conn.executed[0]
    assert "id <> %s" in sql
    assert params == (user_id, keep)
