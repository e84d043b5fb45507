"""Recurring reminder trigger.

A single asyncio task wakes on every period boundary (each wall-clock minute
by default), asks the schedule index what is due, and hands each due record
to the dispatch coordinator. Ticks never overlap: a tick requested while
another is running is skipped, which keeps the once-per-minute dedup sound.

A tick that overruns its period does not cost the next one: the loop ticks
the missed boundaries late rather than skipping their minutes, up to
``MAX_CATCH_UP_PERIODS``.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Literal

from mediguard.domains.medication.domain_logic.dispatch import DispatchCoordinator, DispatchResult
from mediguard.domains.medication.domain_logic.schedule_index import ScheduleIndex

logger = logging.getLogger(__name__)

LoopState = Literal["idle", "ticking"]

# Beyond this many missed periods (e.g. after a suspend) the loop jumps ahead
MAX_CATCH_UP_PERIODS = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TickReport:
    """What one tick did."""

    at: str
    skipped: bool = False
    due: int = 0
    results: dict[str, DispatchResult] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "at": self.at,
            "skipped": self.skipped,
            "due": self.due,
            "dispatched": {sid: r.as_dict() for sid, r in self.results.items()},
            "errors": dict(self.errors),
        }


class TriggerLoop:
    """Idle -> Ticking -> Idle, once per ``interval_s``.

    Usage::

        loop = TriggerLoop(index, coordinator, interval_s=60)
        loop.start()
        ...
        await loop.stop()
    """

    def __init__(
        self,
        index: ScheduleIndex,
        coordinator: DispatchCoordinator,
        *,
        interval_s: float = 60.0,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self._index = index
        self._coordinator = coordinator
        self._interval_s = interval_s
        self._clock = clock
        self._sleep = sleep
        self._last_purge_day: str | None = None
        self._busy = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self.ticks_run = 0
        self.ticks_skipped = 0

    @property
    def state(self) -> LoopState:
        return "ticking" if self._busy.locked() else "idle"

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self, now: datetime | None = None) -> TickReport:
        """Run one tick, or skip it if one is already in progress."""
        now = now or self._clock()
        report = TickReport(at=now.isoformat())

        if self._busy.locked():
            self.ticks_skipped += 1
            logger.warning("Reminder tick at %s skipped: previous tick still running", report.at)
            report.skipped = True
            return report

        async with self._busy:
            self.ticks_run += 1
            due = self._index.due_now(now)
            report.due = len(due)
            for record in due:
                try:
                    report.results[record.schedule_id] = await self._coordinator.dispatch_reminder(record)
                except Exception as exc:
                    # One bad record must not starve the rest of the tick
                    logger.exception("Reminder dispatch failed for schedule %s", record.schedule_id)
                    report.errors[record.schedule_id] = f"{type(exc).__name__}: {exc}"
            self._purge_once_per_day(now)
        return report

    def _purge_once_per_day(self, now: datetime) -> None:
        day = self._index.calendar_day(now)
        if day == self._last_purge_day:
            return
        self._last_purge_day = day
        try:
            self._coordinator.purge_expired_attempts()
        except Exception:
            logger.exception("Purging expired verification counters failed")

    def next_boundary(self, after: datetime) -> datetime:
        """First period boundary strictly after ``after`` (epoch aligned, UTC)."""
        periods = math.floor(after.timestamp() / self._interval_s) + 1
        return datetime.fromtimestamp(periods * self._interval_s, tz=timezone.utc)

    async def run_forever(self) -> None:
        """Tick now, then on every period boundary.

        Each tick evaluates its own boundary instant, so a slow tick delays
        the next one without dropping its minute.
        """
        logger.info("Reminder trigger started (every %.0fs, tz=%s)", self._interval_s, self._index.tz.key)
        instant = self._clock()
        while True:
            try:
                await self.tick(instant)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Reminder tick failed")

            instant = self.next_boundary(instant)
            now = self._clock()
            behind = (now - instant).total_seconds()
            if behind > MAX_CATCH_UP_PERIODS * self._interval_s:
                skipped_to = self.next_boundary(now) - timedelta(seconds=self._interval_s)
                logger.warning(
                    "Reminder trigger fell %.0fs behind; resuming at %s",
                    behind,
                    skipped_to.isoformat(),
                )
                instant = skipped_to
                behind = 0.0
            await self._sleep(max(0.0, -behind))

    def start(self) -> asyncio.Task:
        """Schedule the loop on the running event loop."""
        if self.running:
            return self._task
        self._task = asyncio.create_task(self.run_forever(), name="mediguard-trigger-loop")
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Reminder trigger stopped after %d tick(s)", self.ticks_run)
