"""Server-side verification attempt counters.

One counter per ``(schedule_id, calendar_day)``. Counters expire after a
TTL (one day by default) so a missed dose yesterday never counts toward an
escalation today, and they survive client restarts because they live in the
data bank rather than in the app.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from mediguard.core.storage.database import MediGuardDatabase

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AttemptCounterStore:
    """Keyed failure counters with expiry.

    Usage::

        store = AttemptCounterStore(db, ttl=timedelta(days=1))
        count = store.increment("sched-1", "2026-03-02")   # 1
        store.reset("sched-1", "2026-03-02")
    """

    def __init__(
        self,
        database: MediGuardDatabase,
        *,
        ttl: timedelta = timedelta(days=1),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._db = database
        self._ttl = ttl
        self._clock = clock

    def _now(self) -> datetime:
        # Stored timestamps are compared as strings, so always UTC
        return self._clock().astimezone(timezone.utc)

    def increment(self, schedule_id: str, day: str) -> int:
        """Add one failure and return the new count.

        An expired counter restarts at 1. The upsert is a single statement so
        concurrent retries of the same request cannot lose an increment.
        """
        now = self._now()
        now_iso = now.isoformat()
        expires_iso = (now + self._ttl).isoformat()
        conn = self._db.connection
        conn.execute(
            """INSERT INTO verification_attempts
                   (schedule_id, day, failure_count, updated_at, expires_at)
               VALUES (?, ?, 1, ?, ?)
               ON CONFLICT(schedule_id, day) DO UPDATE SET
                   failure_count = CASE
                       WHEN verification_attempts.expires_at <= excluded.updated_at THEN 1
                       ELSE verification_attempts.failure_count + 1
                   END,
                   updated_at = excluded.updated_at,
                   expires_at = excluded.expires_at""",
            (schedule_id, day, now_iso, expires_iso),
        )
        conn.commit()
        return self.get(schedule_id, day)

    def get(self, schedule_id: str, day: str) -> int:
        """Current count, or 0 if absent or expired."""
        row = self._db.connection.execute(
            """SELECT failure_count FROM verification_attempts
               WHERE schedule_id = ? AND day = ? AND expires_at > ?""",
            (schedule_id, day, self._now().isoformat()),
        ).fetchone()
        return row[0] if row is not None else 0

    def reset(self, schedule_id: str, day: str) -> None:
        conn = self._db.connection
        conn.execute(
            "DELETE FROM verification_attempts WHERE schedule_id = ? AND day = ?",
            (schedule_id, day),
        )
        conn.commit()

    def purge_expired(self) -> int:
        """Drop expired counters. Returns the number removed."""
        conn = self._db.connection
        cursor = conn.execute(
            "DELETE FROM verification_attempts WHERE expires_at <= ?",
            (self._now().isoformat(),),
        )
        conn.commit()
        if cursor.rowcount:
            logger.info("Purged %d expired verification counters", cursor.rowcount)
        return cursor.rowcount
