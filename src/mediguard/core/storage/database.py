"""SQLite database management for the MediGuard data bank.

Handles connection lifecycle, schema creation, and migrations.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

logger = logging.getLogger(__name__)

# Current schema version
SCHEMA_VERSION = 2

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_V1 = """
-- Role directory mirrored from the identity layer (no credentials here)
CREATE TABLE IF NOT EXISTS users (
    user_id      TEXT PRIMARY KEY,
    display_name TEXT NOT NULL DEFAULT '',
    role         TEXT NOT NULL DEFAULT 'patient',
    created_at   TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Pill catalog: one row per registered medication image
CREATE TABLE IF NOT EXISTS pills (
    pill_id                 TEXT PRIMARY KEY,
    display_name            TEXT NOT NULL,
    owner_id                TEXT,
    feature_vector_json     TEXT NOT NULL,
    registration_confidence REAL NOT NULL DEFAULT 1.0,
    feature_count           INTEGER NOT NULL,
    created_at              TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS schedules (
    schedule_id              TEXT PRIMARY KEY,
    patient_id               TEXT NOT NULL,
    expected_pill_id         TEXT,
    expected_medication_name TEXT NOT NULL DEFAULT '',
    time_of_day              TEXT NOT NULL,
    days_of_week             TEXT NOT NULL DEFAULT '',
    active                   INTEGER NOT NULL DEFAULT 1,
    last_fired_minute        TEXT,
    created_by               TEXT,
    created_at               TEXT NOT NULL DEFAULT (datetime('now'))
);

-- One row per (user, device); re-registration updates metadata in place
CREATE TABLE IF NOT EXISTS notification_targets (
    id              TEXT PRIMARY KEY,
    user_id         TEXT NOT NULL,
    device_token    TEXT NOT NULL,
    platform_hint   TEXT NOT NULL DEFAULT '',
    device_info_enc TEXT,
    created_at      TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at      TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE (user_id, device_token)
);

-- Server-side escalation counters, one per schedule per calendar day
CREATE TABLE IF NOT EXISTS verification_attempts (
    schedule_id   TEXT NOT NULL,
    day           TEXT NOT NULL,
    failure_count INTEGER NOT NULL DEFAULT 0,
    updated_at    TEXT NOT NULL,
    expires_at    TEXT NOT NULL,
    PRIMARY KEY (schedule_id, day)
);

CREATE TABLE IF NOT EXISTS schema_version (
    version    INTEGER NOT NULL,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_users_role          ON users(role);
CREATE INDEX IF NOT EXISTS idx_pills_owner         ON pills(owner_id);
CREATE INDEX IF NOT EXISTS idx_schedules_patient   ON schedules(patient_id);
CREATE INDEX IF NOT EXISTS idx_schedules_time      ON schedules(time_of_day, active);
CREATE INDEX IF NOT EXISTS idx_targets_user        ON notification_targets(user_id);
CREATE INDEX IF NOT EXISTS idx_attempts_expires    ON verification_attempts(expires_at);
"""

# ---------------------------------------------------------------------------
# V2: Audit log table (PHI-free access and dispatch trail)
# ---------------------------------------------------------------------------

_SCHEMA_V2 = """
CREATE TABLE IF NOT EXISTS audit_log (
    id              TEXT PRIMARY KEY,
    timestamp       TEXT NOT NULL DEFAULT (datetime('now')),
    action          TEXT NOT NULL,
    tool_name       TEXT,
    tool_input_hash TEXT,
    caller_id       TEXT,
    caller_role     TEXT,
    schedule_id     TEXT,
    outcome         TEXT,
    duration_ms     REAL,
    status          TEXT NOT NULL DEFAULT 'success',
    error_type      TEXT,
    metadata_json   TEXT
);

CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_audit_action    ON audit_log(action);
CREATE INDEX IF NOT EXISTS idx_audit_schedule  ON audit_log(schedule_id);
"""


# Ordered (version, description, DDL). Every script is idempotent, so the
# base tables can be replayed on each start.
_MIGRATIONS: tuple[tuple[int, str, str], ...] = (
    (1, "pills, schedules, devices, attempt counters", _SCHEMA_V1),
    (2, "audit_log table", _SCHEMA_V2),
)


class DatabaseError(Exception):
    """Raised when database operations fail."""


class MediGuardDatabase:
    """Owns the single SQLite connection shared by the repository, the
    attempt counter store and the audit logger.

    ``db_path`` may be a file (parent directories are created, ``~`` is
    expanded) or ``":memory:"``, which the tests use.

    Usage::

        with MediGuardDatabase("~/.mediguard/mediguard.db") as db:
            repo = MediGuardRepository(db, encryptor)
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise DatabaseError("Database not initialized. Call initialize() first.")
        return self._conn

    def initialize(self) -> None:
        """Open the connection and migrate the schema. A no-op when already open."""
        if self._conn is not None:
            return

        target = self._db_path
        if target != ":memory:":
            db_file = Path(target).expanduser()
            db_file.parent.mkdir(parents=True, exist_ok=True)
            target = str(db_file)

        # The trigger loop and tool handlers share this connection across tasks
        conn = sqlite3.connect(target, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        self._conn = conn

        self._migrate()
        logger.info("MediGuard database initialized: %s", self._db_path)

    def _migrate(self) -> None:
        conn = self.connection
        # Base tables first so schema_version exists before it is read
        conn.executescript(_MIGRATIONS[0][2])
        before = self.get_schema_version()

        for version, description, script in _MIGRATIONS[1:]:
            if version > before:
                conn.executescript(script)
                logger.info("Applied schema migration V%d: %s", version, description)

        if before < SCHEMA_VERSION:
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            conn.commit()
            logger.info("Schema updated from version %d to %d", before, SCHEMA_VERSION)

    def get_schema_version(self) -> int:
        row = self.connection.execute("SELECT MAX(version) FROM schema_version").fetchone()
        return row[0] or 0

    def close(self) -> None:
        if self._conn is None:
            return
        self._conn.close()
        self._conn = None
        logger.info("MediGuard database closed")

    def __enter__(self) -> MediGuardDatabase:
        self.initialize()
        return self

    def __exit__(self, *args) -> None:
        self.close()
