"""Schedule index: which active reminders are due at a given instant.

Times of day are civil times in one configured zone. A record is due when
its ``HH:MM`` equals the local time truncated to the minute and its weekday
set is empty or contains the local weekday (0 = Sunday ... 6 = Saturday).

Each record fires at most once per local calendar minute. The fire decision
and the ``last_fired_minute`` write are one atomic compare-and-set in the
repository, so overlapping queries within a minute cannot double-send.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from mediguard.core.errors import ValidationError
from mediguard.core.storage.models import ScheduleRecord
from mediguard.core.storage.repository import MediGuardRepository

logger = logging.getLogger(__name__)

_TIME_OF_DAY = re.compile(r"^(\d{1,2}):(\d{2})$")


def normalize_time_of_day(value: str) -> str:
    """Validate a 24h ``H:MM``/``HH:MM`` string and zero-pad it."""
    match = _TIME_OF_DAY.match((value or "").strip())
    if not match:
        raise ValidationError(f"time_of_day must be HH:MM (24h), got {value!r}")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValidationError(f"time_of_day out of range: {value!r}")
    return f"{hour:02d}:{minute:02d}"


def normalize_days_of_week(days: Iterable[int] | None) -> frozenset[int]:
    """Validate weekday numbers (0 = Sunday). ``None`` or empty means every day."""
    if not days:
        return frozenset()
    out: set[int] = set()
    for day in days:
        if isinstance(day, bool) or not isinstance(day, int) or not 0 <= day <= 6:
            raise ValidationError(f"days_of_week entries must be integers 0-6, got {day!r}")
        out.add(day)
    return frozenset(out)


def load_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown time zone: {name!r}") from exc


class ScheduleIndex:
    """Queryable view of active schedules keyed by local minute.

    Usage::

        index = ScheduleIndex(repository, tz="Asia/Kolkata")
        for record in index.due_now(datetime.now(timezone.utc)):
            ...
    """

    def __init__(self, repository: MediGuardRepository, *, tz: str | ZoneInfo = "UTC") -> None:
        self._repo = repository
        self._tz = tz if isinstance(tz, ZoneInfo) else load_zone(tz)

    @property
    def tz(self) -> ZoneInfo:
        return self._tz

    def local_time(self, instant: datetime) -> datetime:
        """Convert an instant to schedule-local time. Naive instants are UTC."""
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        return instant.astimezone(self._tz)

    def calendar_day(self, instant: datetime) -> str:
        """Local calendar day ``YYYY-MM-DD`` for ``instant``."""
        return self.local_time(instant).strftime("%Y-%m-%d")

    @staticmethod
    def weekday(local: datetime) -> int:
        """0 = Sunday ... 6 = Saturday."""
        return (local.weekday() + 1) % 7

    def due_now(self, instant: datetime) -> list[ScheduleRecord]:
        """Records due at ``instant``, each claimed for this minute exactly once."""
        local = self.local_time(instant).replace(second=0, microsecond=0)
        time_of_day = local.strftime("%H:%M")
        minute_key = local.strftime("%Y-%m-%dT%H:%M")
        weekday = self.weekday(local)

        due: list[ScheduleRecord] = []
        for record in self._repo.active_schedules_at(time_of_day):
            if not record.runs_on(weekday):
                continue
            if not self._repo.claim_fire(record.schedule_id, minute_key):
                logger.debug("Schedule %s already fired for %s", record.schedule_id, minute_key)
                continue
            record.last_fired_minute = minute_key
            due.append(record)

        if due:
            logger.info("%d schedule(s) due at %s %s", len(due), minute_key, self._tz.key)
        return due
