from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from gatehide.storage.errors import ConstraintViolation
from gatehide.storage.models import Namespace
from gatehide.storage.postgres import PostgresStore

NOW = datetime(2026, 4, 1, 8, 30, tzinfo=timezone.utc)


class FakeResult:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, responses):
        self.responses = responses
        self.statements = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        response = self.responses.pop(0) if self.responses else FakeResult()
        if isinstance(response, Exception):
            raise response
        return response


class FakePool:
    def __init__(self, *responses):
        self.conn = FakeConnection(list(responses))

    def connection(self):
        return self.conn


def _store(*responses) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unused"
    store.pool = FakePool(*responses)
    return store


def _session_row(**overrides):
    row = {
        "id": 5,
        "identity_id": 3,
        "namespace": "admin",
        "session_token": "tok",
        "device_info": "laptop",
        "ip_address": "198.51.100.7",
        "user_agent": "curl/8",
        "is_active": True,
        "last_activity_at": NOW,
        "created_at": NOW,
        "expires_at": NOW + timedelta(hours=24),
    }
    row.update(overrides)
    return row


def test_identity_queries_pick_namespace_table():
    row = {"id": 1, "email": "ops@example.com", "name": "Ops", "created_at": NOW, "updated_at": NOW}
    store = _store(FakeResult([row]))

    identity = store.get_identity_by_email(Namespace.ADMIN, "ops@example.com")

    assert identity.namespace is Namespace.ADMIN
    assert identity.email == "ops@example.com"
    sql, params = store.pool.conn.statements[0]
    assert "FROM app_admin" in sql
    assert params == ("ops@example.com",)


def test_unique_violation_maps_to_constraint_violation():
    store = _store(errors.UniqueViolation("duplicate key"))
    with pytest.raises(ConstraintViolation) as exc:
        store.create_identity(Namespace.USER, "player@example.com", "Player")
    assert exc.value.detail == {"field": "email", "namespace": "user"}


def test_save_password_for_missing_row():
    store = _store(FakeResult(rowcount=0))
    with pytest.raises(ConstraintViolation):
        store.save_password(Namespace.USER, 9, "hash", "argon2id")


def test_password_record_without_hash():
    store = _store(FakeResult([{"password_hash": None, "password_algo": None}]))
    assert store.get_password_record(Namespace.USER, 1) is None


def test_session_row_mapping():
    store = _store(FakeResult([_session_row(expires_at=(NOW + timedelta(hours=1)).isoformat())]))

    sess = store.get_session_by_token("tok")

    assert sess.namespace is Namespace.ADMIN
    assert sess.identity_id == 3
    assert sess.expires_at == NOW + timedelta(hours=1)
    assert sess.is_valid(NOW)


def test_deactivate_except_current_excludes_token():
    store = _store(FakeResult(rowcount=2))

    assert store.deactivate_identity_sessions(Namespace.USER, 3, except_token="keep") == 2
    sql, params = store.pool.conn.statements[0]
    assert "session_token <> %s" in sql
    assert params == ("user", 3, "keep")


def test_mark_reset_token_used_guards_on_used_at():
    store = _store(FakeResult(rowcount=1), FakeResult(rowcount=0))

    assert store.mark_reset_token_used("hash", NOW)
    assert not store.mark_reset_token_used("hash", NOW)
    sql, _ = store.pool.conn.statements[0]
    assert "used_at IS NULL" in sql


def test_reset_token_row_mapping():
    row = {
        "id": 2,
        "identity_id": 3,
        "namespace": "user",
        "token_hash": "abc",
        "expires_at": NOW + timedelta(minutes=15),
        "used_at": None,
        "created_at": NOW,
    }
    store = _store(FakeResult([row]))

    record = store.get_reset_token("abc")

    assert record.token == "abc"
    assert record.is_valid(NOW)
    assert not record.is_valid(NOW + timedelta(minutes=15))


def test_store_verification_code_replaces_pending():
    row = {
        "id": 8,
        "identity_id": 3,
        "namespace": "user",
        "email": "new@example.com",
        "code_hash": "h",
        "expires_at": NOW + timedelta(minutes=10),
        "created_at": NOW,
    }
    store = _store(FakeResult(rowcount=1), FakeResult([row]))

    record = store.store_verification_code(
        Namespace.USER, 3, "new@example.com", "h", NOW + timedelta(minutes=10)
    )

    assert record.id == 8
    statements = [sql for sql, _ in store.pool.conn.statements]
    assert statements[0].startswith("DELETE FROM email_verification_code")
    assert statements[1].startswith("INSERT INTO email_verification_code")


def test_parse_ts_handles_strings_and_garbage():
    assert PostgresStore._parse_ts(NOW.isoformat()) == NOW
    assert PostgresStore._parse_ts("not-a-date") is None
    assert PostgresStore._parse_ts(None) is None
