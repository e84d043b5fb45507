"""Tests for MediGuardDatabase: schema creation, versioning, lifecycle."""

from __future__ import annotations

import sqlite3

import pytest

from mediguard.core.storage.database import SCHEMA_VERSION, DatabaseError, MediGuardDatabase


class TestLifecycle:
    def test_double_initialize_keeps_connection(self):
        db = MediGuardDatabase(":memory:")
        db.initialize()
        conn = db.connection
        db.initialize()
        assert db.connection is conn
        db.close()

    def test_connection_before_init_raises(self):
        with pytest.raises(DatabaseError, match="not initialized"):
            _ = MediGuardDatabase(":memory:").connection

    def test_context_manager_closes(self):
        with MediGuardDatabase(":memory:") as db:
            assert db.connection is not None
        with pytest.raises(DatabaseError):
            _ = db.connection

    def test_double_close_is_safe(self):
        db = MediGuardDatabase(":memory:")
        db.initialize()
        db.close()
        db.close()


class TestSchema:
    def test_tables_created(self):
        with MediGuardDatabase(":memory:") as db:
            tables = {
                row[0]
                for row in db.connection.execute(
                    "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
                )
            }
        assert {
            "users",
            "pills",
            "schedules",
            "notification_targets",
            "verification_attempts",
            "schema_version",
            "audit_log",
        } <= tables

    def test_schedule_time_index_exists(self):
        with MediGuardDatabase(":memory:") as db:
            indexes = {row[0] for row in db.connection.execute("SELECT name FROM sqlite_master WHERE type='index'")}
        assert "idx_schedules_time" in indexes
        assert "idx_audit_schedule" in indexes

    def test_schema_version_recorded(self):
        with MediGuardDatabase(":memory:") as db:
            assert db.get_schema_version() == SCHEMA_VERSION

    def test_device_pair_is_unique(self):
        with MediGuardDatabase(":memory:") as db:
            insert = (
                "INSERT INTO notification_targets (id, user_id, device_token, created_at, updated_at) "
                "VALUES (?, 'u', 'tok', 'now', 'now')"
            )
            db.connection.execute(insert, ("a",))
            with pytest.raises(sqlite3.IntegrityError):
                db.connection.execute(insert, ("b",))

    def test_foreign_keys_enabled(self):
        with MediGuardDatabase(":memory:") as db:
            assert db.connection.execute("PRAGMA foreign_keys").fetchone()[0] == 1


class TestFileDatabase:
    def test_reopen_keeps_version_and_data(self, tmp_path):
        path = tmp_path / "nested" / "mediguard.db"
        with MediGuardDatabase(str(path)) as db:
            db.connection.execute(
                "INSERT INTO users (user_id, role, created_at, updated_at) VALUES ('u1', 'patient', 'x', 'x')"
            )
            db.connection.commit()

        with MediGuardDatabase(str(path)) as db:
            assert db.get_schema_version() == SCHEMA_VERSION
            rows = db.connection.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0]
            assert rows == 1
            assert db.connection.execute("SELECT user_id FROM users").fetchone()[0] == "u1"
