"""Tests for the in-memory store and the Postgres store's SQL plumbing."""

import json
from contextlib import contextmanager
from datetime import timedelta

import pytest
from psycopg import errors

from sevr.storage.errors import ConstraintViolation, StatePersistenceError
from sevr.storage.memory import MemoryStore
from sevr.storage.models import utcnow
from sevr.storage.postgres import PostgresStore


class TestMemoryStoreUsers:
    def test_create_and_lookup(self):
        store = MemoryStore()
        user = store.create_user("  Someone@Example.com ")
        assert user.email == "someone@example.com"
        assert store.get_user(user.id) is user
        assert store.get_user_by_email("SOMEONE@example.com") is user

    def test_duplicate_email(self):
        store = MemoryStore()
        store.create_user("dup@example.com")
        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_user("Dup@Example.com")
        assert exc_info.value.detail == {"field": "email"}

    def test_delete_removes_blob(self):
        store = MemoryStore()
        user = store.create_user("gone@example.com")
        store.put_vault_blob(user.id, "c", "i")
        assert store.delete_user(user.id) is True
        assert store.get_vault_blob(user.id) is None
        assert store.delete_user(user.id) is False


class TestMemoryStoreOtps:
    def test_latest_live_code(self):
        store = MemoryStore()
        now = utcnow()
        store.create_otp("a@x.com", "111111", now + timedelta(minutes=5))
        newest = store.create_otp("a@x.com", "222222", now + timedelta(minutes=10))
        store.create_otp("b@x.com", "333333", now + timedelta(minutes=20))
        assert store.get_latest_otp("a@x.com", now).id == newest.id

    def test_expiry_boundary_is_strict(self):
        store = MemoryStore()
        now = utcnow()
        store.create_otp("a@x.com", "111111", now)
        assert store.get_latest_otp("a@x.com", now) is None
        assert store.cleanup_expired_otps(now) == 0
        assert store.cleanup_expired_otps(now + timedelta(microseconds=1)) == 1

    def test_used_codes_are_reaped(self):
        store = MemoryStore()
        otp = store.create_otp("a@x.com", "111111", utcnow() + timedelta(minutes=10))
        store.mark_otp_used(otp.id)
        assert store.get_latest_otp("a@x.com") is None
        assert store.cleanup_expired_otps() == 1

    def test_increment_attempts(self):
        store = MemoryStore()
        otp = store.create_otp("a@x.com", "111111", utcnow() + timedelta(minutes=10))
        assert store.increment_otp_attempts(otp.id).attempts == 1
        assert store.increment_otp_attempts(otp.id).attempts == 2
        assert store.increment_otp_attempts("missing") is None

    def test_mark_used_reports_first_caller_only(self):
        store = MemoryStore()
        otp = store.create_otp("a@x.com", "111111", utcnow() + timedelta(minutes=10))
        assert store.mark_otp_used(otp.id) is True
        assert store.mark_otp_used(otp.id) is False
        assert store.mark_otp_used("missing") is False

    def test_mark_used_respects_attempt_cap(self):
        store = MemoryStore()
        otp = store.create_otp("a@x.com", "111111", utcnow() + timedelta(minutes=10))
        store.increment_otp_attempts(otp.id)
        assert store.mark_otp_used(otp.id, max_attempts=1) is False
        assert store.otps[otp.id].used is False
        assert store.mark_otp_used(otp.id) is True


class TestMemoryStoreRefreshTokens:
    def test_live_rows_only(self):
        store = MemoryStore()
        user = store.create_user("r@x.com")
        now = utcnow()
        store.create_refresh_token(user.id, "live", now + timedelta(days=1))
        store.create_refresh_token(user.id, "old", now - timedelta(seconds=1))
        assert store.get_refresh_token("live", now) is not None
        assert store.get_refresh_token("old", now) is None
        assert store.revoke_refresh_token("live") is True
        assert store.revoke_refresh_token("live") is False
        assert store.get_refresh_token("live", now) is None


class TestMemoryStorePersistence:
    def test_snapshot_round_trip(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("persist@example.com")
        store.set_encryption_metadata(user.id, "salt", "verifier", "recovery")
        store.put_vault_blob(user.id, "cipher", "iv")
        store.create_refresh_token(user.id, "hash", utcnow() + timedelta(days=1))

        snapshot = json.loads((tmp_path / "state" / "memory_store.json").read_text())
        assert [u["email"] for u in snapshot["users"]] == ["persist@example.com"]

        reloaded = MemoryStore(fs_root=str(tmp_path))
        restored = reloaded.get_user(user.id)
        assert restored.encryption_salt == "salt"
        assert restored.created_at == user.created_at
        assert reloaded.get_vault_blob(user.id).ciphertext == "cipher"
        assert reloaded.get_refresh_token("hash") is not None

    def test_no_snapshot_without_root(self, tmp_path):
        store = MemoryStore()
        store.create_user("ephemeral@example.com")
        assert not (tmp_path / "state").exists()

    def test_unwritable_snapshot_raises(self, tmp_path, monkeypatch):
        store = MemoryStore(fs_root=str(tmp_path))

        def refuse(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr("pathlib.Path.write_text", refuse)
        with pytest.raises(StatePersistenceError):
            store.create_user("nospace@example.com")


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = list(rows or [])
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None


class FakeConnection:
    def __init__(self, responses):
        self.responses = responses
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        response = self.responses.pop(0) if self.responses else FakeCursor()
        if isinstance(response, Exception):
            raise response
        return response


class FakePool:
    def __init__(self, *responses):
        self.conn = FakeConnection(list(responses))
        self.checkouts = 0

    @contextmanager
    def connection(self):
        self.checkouts += 1
        yield self.conn


def _store(pool):
    store = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://unused"
    store.logger = None
    return store


class TestPostgresStoreUnit:
    def test_unique_violation_maps_to_constraint(self):
        store = _store(FakePool(errors.UniqueViolation("duplicate key")))
        with pytest.raises(ConstraintViolation):
            store.create_user("dup@example.com")

    def test_latest_otp_query(self):
        now = utcnow()
        row = {
            "id": "o1",
            "email": "a@x.com",
            "code": "123456",
            "expires_at": now + timedelta(minutes=10),
            "attempts": 2,
            "used": False,
        }
        pool = FakePool(FakeCursor([row]))
        otp = _store(pool).get_latest_otp("a@x.com", now)
        assert (otp.id, otp.attempts) == ("o1", 2)
        sql, params = pool.conn.statements[0]
        assert "used = FALSE AND expires_at > %s" in sql
        assert "ORDER BY expires_at DESC" in sql
        assert params == ("a@x.com", now)

    def test_change_password_uses_one_connection(self):
        now = utcnow()
        blob_row = {"user_id": "u1", "ciphertext": "c", "iv": "i", "updated_at": now}
        pool = FakePool(FakeCursor(rowcount=1), FakeCursor([blob_row]))
        blob = _store(pool).change_password("u1", "s", "v", "r", ciphertext="c", iv="i")
        assert blob.ciphertext == "c"
        assert pool.checkouts == 1
        assert pool.conn.statements[0][0].startswith("UPDATE app_user")
        assert "ON CONFLICT (user_id) DO UPDATE" in pool.conn.statements[1][0]

    def test_revoke_user_tokens_returns_rowcount(self):
        pool = FakePool(FakeCursor(rowcount=3))
        assert _store(pool).revoke_user_refresh_tokens("u1") == 3

    def test_mark_otp_used_is_conditional(self):
        pool = FakePool(FakeCursor(rowcount=1), FakeCursor(rowcount=0))
        store = _store(pool)
        assert store.mark_otp_used("o1", max_attempts=5) is True
        assert store.mark_otp_used("o1") is False
        first_sql, first_params = pool.conn.statements[0]
        assert "WHERE id = %s AND used = FALSE AND attempts < %s" in first_sql
        assert first_params == ("o1", 5)
        second_sql, second_params = pool.conn.statements[1]
        assert second_sql.endswith("WHERE id = %s AND used = FALSE")
        assert second_params == ("o1",)
