"""MediGuard repository: CRUD over the SQLite data bank.

The repository mediates between domain records (PillRecord, ScheduleRecord,
NotificationTarget, UserRecord) and the database. Writes that can be retried
by flaky mobile clients are expressed as single-statement upserts keyed by
their uniqueness invariant.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable

from mediguard.core.storage.database import MediGuardDatabase
from mediguard.core.storage.encryption import FieldEncryptor
from mediguard.core.storage.models import (
    NotificationTarget,
    PillRecord,
    ScheduleRecord,
    UserRecord,
)

logger = logging.getLogger(__name__)

# Patch keys accepted by update_schedule, mapped to their column
_SCHEDULE_PATCH_COLUMNS = {
    "expected_pill_id": "expected_pill_id",
    "expected_medication_name": "expected_medication_name",
    "time_of_day": "time_of_day",
    "days_of_week": "days_of_week",
    "active": "active",
}


class RepositoryError(Exception):
    """Raised when repository operations fail."""


def _encode_days(days: Iterable[int]) -> str:
    return ",".join(str(d) for d in sorted(set(days)))


def _decode_days(raw: str | None) -> frozenset[int]:
    if not raw:
        return frozenset()
    return frozenset(int(part) for part in raw.split(",") if part != "")


class MediGuardRepository:
    """CRUD repository for pills, schedules, notification targets and users.

    Usage::

        db = MediGuardDatabase(":memory:")
        db.initialize()
        repo = MediGuardRepository(db, FieldEncryptor(key))

        repo.save_pill(pill)
        due = repo.active_schedules_at("08:00")
    """

    def __init__(self, database: MediGuardDatabase, encryptor: FieldEncryptor) -> None:
        self._db = database
        self._enc = encryptor

    @property
    def database(self) -> MediGuardDatabase:
        return self._db

    @staticmethod
    def _new_id() -> str:
        return str(uuid.uuid4())

    @staticmethod
    def _now_iso() -> str:
        return datetime.now(timezone.utc).isoformat()

    # ------------------------------------------------------------------
    # Users (role directory)
    # ------------------------------------------------------------------

    def upsert_user(self, user: UserRecord) -> None:
        """Insert a user or refresh display name and role in place."""
        conn = self._db.connection
        now = self._now_iso()
        conn.execute(
            """INSERT INTO users (user_id, display_name, role, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(user_id) DO UPDATE SET
                   display_name = excluded.display_name,
                   role = excluded.role,
                   updated_at = excluded.updated_at""",
            (user.user_id, user.display_name, user.role, user.created_at or now, now),
        )
        conn.commit()

    def get_user(self, user_id: str) -> UserRecord | None:
        row = self._db.connection.execute(
            "SELECT * FROM users WHERE user_id = ?", (user_id,)
        ).fetchone()
        return self._row_to_user(row) if row is not None else None

    def get_users_by_role(self, role: str) -> list[UserRecord]:
        rows = self._db.connection.execute(
            "SELECT * FROM users WHERE role = ? ORDER BY created_at, user_id", (role,)
        ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def list_users(self, role: str | None = None) -> list[UserRecord]:
        """Every user, oldest first, optionally narrowed to one role."""
        if role is not None:
            return self.get_users_by_role(role)
        rows = self._db.connection.execute(
            "SELECT * FROM users ORDER BY created_at, user_id"
        ).fetchall()
        return [self._row_to_user(row) for row in rows]

    # ------------------------------------------------------------------
    # Pills
    # ------------------------------------------------------------------

    def save_pill(self, pill: PillRecord) -> str:
        """Persist a new pill record.

        Args:
            pill: The record to save. If ``pill.pill_id`` is empty, a UUID
                is generated.

        Returns:
            The pill ID.
        """
        conn = self._db.connection
        pid = pill.pill_id or self._new_id()
        try:
            conn.execute(
                """INSERT INTO pills (
                    pill_id, display_name, owner_id, feature_vector_json,
                    registration_confidence, feature_count, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    pid,
                    pill.display_name,
                    pill.owner_id,
                    json.dumps(pill.feature_vector, separators=(",", ":")),
                    pill.registration_confidence,
                    pill.feature_count or len(pill.feature_vector),
                    pill.created_at or self._now_iso(),
                ),
            )
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            raise RepositoryError(f"Could not save pill {pid}: {exc}") from exc
        conn.commit()
        logger.info("Saved pill %s (%s, %d features)", pid, pill.display_name, len(pill.feature_vector))
        return pid

    def get_pill(self, pill_id: str) -> PillRecord | None:
        row = self._db.connection.execute(
            "SELECT * FROM pills WHERE pill_id = ?", (pill_id,)
        ).fetchone()
        return self._row_to_pill(row) if row is not None else None

    def list_pills(self, *, owner_id: str | None = None) -> list[PillRecord]:
        """List catalog entries in registration order."""
        if owner_id:
            rows = self._db.connection.execute(
                "SELECT * FROM pills WHERE owner_id = ? ORDER BY created_at, rowid",
                (owner_id,),
            ).fetchall()
        else:
            rows = self._db.connection.execute(
                "SELECT * FROM pills ORDER BY created_at, rowid"
            ).fetchall()
        return [self._row_to_pill(row) for row in rows]

    def find_pills_by_name(self, name: str) -> list[PillRecord]:
        """Pills whose display name equals ``name`` case-insensitively."""
        wanted = name.strip().casefold()
        return [p for p in self.list_pills() if p.display_name.strip().casefold() == wanted]

    def count_pills(self) -> int:
        row = self._db.connection.execute("SELECT COUNT(*) FROM pills").fetchone()
        return row[0]

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    def save_schedule(self, schedule: ScheduleRecord) -> str:
        conn = self._db.connection
        sid = schedule.schedule_id or self._new_id()
        conn.execute(
            """INSERT INTO schedules (
                schedule_id, patient_id, expected_pill_id, expected_medication_name,
                time_of_day, days_of_week, active, last_fired_minute, created_by, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                sid,
                schedule.patient_id,
                schedule.expected_pill_id,
                schedule.expected_medication_name,
                schedule.time_of_day,
                _encode_days(schedule.days_of_week),
                int(schedule.active),
                schedule.last_fired_minute,
                schedule.created_by,
                schedule.created_at or self._now_iso(),
            ),
        )
        conn.commit()
        logger.info(
            "Saved schedule %s for patient %s at %s", sid, schedule.patient_id, schedule.time_of_day
        )
        return sid

    def get_schedule(self, schedule_id: str) -> ScheduleRecord | None:
        row = self._db.connection.execute(
            "SELECT * FROM schedules WHERE schedule_id = ?", (schedule_id,)
        ).fetchone()
        return self._row_to_schedule(row) if row is not None else None

    def list_schedules(
        self,
        *,
        patient_id: str | None = None,
        active_only: bool = False,
    ) -> list[ScheduleRecord]:
        conditions: list[str] = []
        params: list[Any] = []
        if patient_id:
            conditions.append("patient_id = ?")
            params.append(patient_id)
        if active_only:
            conditions.append("active = 1")

        query = "SELECT * FROM schedules"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY time_of_day, created_at"
        rows = self._db.connection.execute(query, params).fetchall()
        return [self._row_to_schedule(row) for row in rows]

    def update_schedule(self, schedule_id: str, patch: dict[str, Any]) -> bool:
        """Apply a partial update. Unknown keys are rejected.

        Returns:
            True if the schedule exists and was updated.
        """
        unknown = set(patch) - set(_SCHEDULE_PATCH_COLUMNS)
        if unknown:
            raise RepositoryError(f"Unsupported schedule fields: {sorted(unknown)}")
        if not patch:
            return self.get_schedule(schedule_id) is not None

        assignments: list[str] = []
        params: list[Any] = []
        for key, value in patch.items():
            if key == "days_of_week":
                value = _encode_days(value or ())
            elif key == "active":
                value = int(bool(value))
            # Column names come from the fixed map above
            assignments.append(f"{_SCHEDULE_PATCH_COLUMNS[key]} = ?")
            params.append(value)

        # A new time of day starts a fresh dedup window
        if "time_of_day" in patch:
            assignments.append("last_fired_minute = NULL")

        params.append(schedule_id)
        conn = self._db.connection
        cursor = conn.execute(
            f"UPDATE schedules SET {', '.join(assignments)} WHERE schedule_id = ?",
            params,
        )
        conn.commit()
        return cursor.rowcount == 1

    def deactivate_schedule(self, schedule_id: str) -> bool:
        """Soft-disable a schedule. History rows are never deleted."""
        return self.update_schedule(schedule_id, {"active": False})

    def active_schedules_at(self, time_of_day: str) -> list[ScheduleRecord]:
        """Active schedules configured for exactly ``time_of_day`` (HH:MM)."""
        rows = self._db.connection.execute(
            """SELECT * FROM schedules
               WHERE active = 1 AND time_of_day = ?
               ORDER BY created_at, schedule_id""",
            (time_of_day,),
        ).fetchall()
        return [self._row_to_schedule(row) for row in rows]

    def claim_fire(self, schedule_id: str, minute_key: str) -> bool:
        """Atomically mark a schedule as fired for ``minute_key``.

        The compare-and-set runs as one UPDATE, so two overlapping callers
        for the same minute cannot both win.

        Returns:
            True if this call claimed the minute, False if it was already fired
            (or the schedule is inactive or missing).
        """
        conn = self._db.connection
        cursor = conn.execute(
            """UPDATE schedules SET last_fired_minute = ?
               WHERE schedule_id = ? AND active = 1
                 AND (last_fired_minute IS NULL OR last_fired_minute != ?)""",
            (minute_key, schedule_id, minute_key),
        )
        conn.commit()
        return cursor.rowcount == 1

    # ------------------------------------------------------------------
    # Notification targets
    # ------------------------------------------------------------------

    def upsert_notification_target(self, target: NotificationTarget) -> str:
        """Insert a device or update its metadata in place.

        Keyed by ``(user_id, device_token)``; never creates a duplicate row.

        Returns:
            The ID of the (possibly pre-existing) row.
        """
        conn = self._db.connection
        now = self._now_iso()
        conn.execute(
            """INSERT INTO notification_targets
                   (id, user_id, device_token, platform_hint, device_info_enc, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(user_id, device_token) DO UPDATE SET
                   platform_hint = excluded.platform_hint,
                   device_info_enc = COALESCE(excluded.device_info_enc, notification_targets.device_info_enc),
                   updated_at = excluded.updated_at""",
            (
                target.id or self._new_id(),
                target.user_id,
                target.device_token,
                target.platform_hint,
                self._enc.encrypt(target.device_info) or None,
                now,
                now,
            ),
        )
        conn.commit()
        row = conn.execute(
            "SELECT id FROM notification_targets WHERE user_id = ? AND device_token = ?",
            (target.user_id, target.device_token),
        ).fetchone()
        return row[0]

    def get_notification_targets(self, user_ids: Iterable[str]) -> list[NotificationTarget]:
        """All registered devices for the given users."""
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        rows = self._db.connection.execute(
            f"""SELECT * FROM notification_targets
                WHERE user_id IN ({placeholders})
                ORDER BY user_id, created_at""",
            ids,
        ).fetchall()
        return [self._row_to_target(row) for row in rows]

    def list_notification_targets(self, user_id: str) -> list[NotificationTarget]:
        return self.get_notification_targets([user_id])

    def list_all_notification_targets(self) -> list[NotificationTarget]:
        rows = self._db.connection.execute(
            "SELECT * FROM notification_targets ORDER BY user_id, created_at"
        ).fetchall()
        return [self._row_to_target(row) for row in rows]

    def count_notification_targets(self) -> int:
        row = self._db.connection.execute(
            "SELECT COUNT(*) FROM notification_targets"
        ).fetchone()
        return row[0]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_user(row: Any) -> UserRecord:
        return UserRecord(
            user_id=row["user_id"],
            display_name=row["display_name"] or "",
            role=row["role"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_pill(row: Any) -> PillRecord:
        try:
            vector = json.loads(row["feature_vector_json"])
        except (json.JSONDecodeError, TypeError) as exc:
            raise RepositoryError(f"Corrupt feature vector for pill {row['pill_id']}") from exc
        return PillRecord(
            pill_id=row["pill_id"],
            display_name=row["display_name"],
            owner_id=row["owner_id"],
            feature_vector=[float(v) for v in vector],
            registration_confidence=row["registration_confidence"],
            feature_count=row["feature_count"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_schedule(row: Any) -> ScheduleRecord:
        return ScheduleRecord(
            schedule_id=row["schedule_id"],
            patient_id=row["patient_id"],
            expected_pill_id=row["expected_pill_id"],
            expected_medication_name=row["expected_medication_name"] or "",
            time_of_day=row["time_of_day"],
            days_of_week=_decode_days(row["days_of_week"]),
            active=bool(row["active"]),
            last_fired_minute=row["last_fired_minute"],
            created_by=row["created_by"],
            created_at=row["created_at"],
        )

    def _row_to_target(self, row: Any) -> NotificationTarget:
        return NotificationTarget(
            id=row["id"],
            user_id=row["user_id"],
            device_token=row["device_token"],
            platform_hint=row["platform_hint"] or "",
            device_info=self._enc.decrypt(row["device_info_enc"] or ""),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
