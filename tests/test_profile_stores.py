from contextlib import contextmanager
from datetime import datetime, timezone

import psycopg
import pytest

from flashdeck.logging import get_logger
from flashdeck.storage.errors import ConstraintViolation, ProfileNotFound, StoreError
from flashdeck.storage.memory import MemoryStore
from flashdeck.storage.models import Session
from flashdeck.storage.postgres import PostgresProfileStore

DELETED_AT = datetime(2026, 3, 1, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, row=None, rowcount=1):
        self.row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self.row


class FakeConnection:
    def __init__(self, cursor=None, error=None):
        self.cursor = cursor or FakeCursor()
        self.error = error
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.error is not None:
            raise self.error
        return self.cursor


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _postgres_store(conn) -> PostgresProfileStore:
    # Bypass __init__ so no pool is opened
    store: PostgresProfileStore = PostgresProfileStore.__new__(PostgresProfileStore)
    store.pool = FakePool(conn)
    store.logger = get_logger("tests")
    return store


class TestPostgresProfileStore:
    def test_reads_deleted_flag(self):
        store = _postgres_store(FakeConnection(FakeCursor(row={"is_deleted": True})))
        assert store.get_is_deleted("user-1") is True

    def test_missing_row(self):
        store = _postgres_store(FakeConnection(FakeCursor(row=None)))
        with pytest.raises(ProfileNotFound):
            store.get_is_deleted("user-1")

    def test_driver_error_becomes_store_error(self):
        store = _postgres_store(FakeConnection(error=psycopg.OperationalError("server closed the connection")))
        with pytest.raises(StoreError) as excinfo:
            store.get_is_deleted("user-1")
        assert excinfo.value.detail == {"user_id": "user-1"}

    def test_mark_deleted_updates_flag_and_timestamp(self):
        conn = FakeConnection()
        store = _postgres_store(conn)

        store.mark_deleted("user-1", DELETED_AT)

        sql, params = conn.statements[0]
        assert sql.startswith("UPDATE profiles SET is_deleted = TRUE, deleted_at = %s")
        assert params == (DELETED_AT, "user-1")

    def test_mark_deleted_without_row(self):
        store = _postgres_store(FakeConnection(FakeCursor(rowcount=0)))
        with pytest.raises(ProfileNotFound):
            store.mark_deleted("user-1", DELETED_AT)

    def test_create_profile_inserts_live_row(self):
        conn = FakeConnection()
        _postgres_store(conn).create_profile("user-1")

        sql, params = conn.statements[0]
        assert sql.startswith("INSERT INTO profiles (user_id, is_deleted, updated_at)")
        assert params == ("user-1",)

    def test_create_profile_twice(self):
        conn = FakeConnection(error=psycopg.errors.UniqueViolation("duplicate key"))
        with pytest.raises(ConstraintViolation):
            _postgres_store(conn).create_profile("user-1")

    def test_create_profile_driver_error(self):
        conn = FakeConnection(error=psycopg.OperationalError("connection refused"))
        with pytest.raises(StoreError) as excinfo:
            _postgres_store(conn).create_profile("user-1")
        assert not isinstance(excinfo.value, ConstraintViolation)


class TestMemoryStore:
    def test_create_user_normalizes_email(self):
        store = MemoryStore()
        user = store.create_user("  Alice@Example.COM ")

        assert user.email == "alice@example.com"
        assert store.get_user_by_email("ALICE@example.com") == user
        with pytest.raises(ProfileNotFound):
            store.get_is_deleted(user.id)

    def test_create_profile(self):
        store = MemoryStore()
        user = store.create_user("alice@example.com")

        store.create_profile(user.id)

        assert store.get_is_deleted(user.id) is False
        with pytest.raises(ConstraintViolation):
            store.create_profile(user.id)

    def test_delete_user_removes_credentials_sessions_and_profile(self):
        store = MemoryStore()
        user = store.create_user("alice@example.com")
        store.save_password(user.id, "hash", "argon2id")
        store.create_profile(user.id)
        session = store.save_session(
            Session(
                user_id=user.id,
                email=user.email,
                access_token="access-1",
                refresh_token="refresh-1",
                expires_at=DELETED_AT,
            )
        )

        assert store.delete_user(user.id)

        assert store.get_user(user.id) is None
        assert store.get_password_record(user.id) is None
        assert store.get_session_by_refresh_token(session.refresh_token) is None
        with pytest.raises(ProfileNotFound):
            store.get_profile(user.id)
        assert not store.delete_user(user.id)

    def test_duplicate_email(self):
        store = MemoryStore()
        store.create_user("alice@example.com")
        with pytest.raises(ConstraintViolation):
            store.create_user("Alice@example.com")

    def test_mark_deleted(self):
        store = MemoryStore()
        user = store.create_user("alice@example.com")
        store.create_profile(user.id)

        store.mark_deleted(user.id, DELETED_AT)

        profile = store.get_profile(user.id)
        assert profile.is_deleted
        assert profile.deleted_at == DELETED_AT

    def test_unknown_profile(self):
        with pytest.raises(ProfileNotFound):
            MemoryStore().get_is_deleted("missing")
