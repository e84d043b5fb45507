"""Dispatch and escalation coordinator.

Turns due reminders into push batches for the patient's devices, counts
failed verifications per schedule per day, and fans out caregiver alerts
once the failure threshold is reached.

Delivery is best effort. Malformed tokens are skipped, failed chunks are
collected, and the overall result still reports success for whatever was
delivered. Escalation delivery failures are logged and never propagate into
the verification flow that triggered them.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Literal, Sequence

from mediguard.core.errors import NotFoundError, TransientExternalFailure
from mediguard.core.push import DeliveryTicket, PushMessage, PushTransport
from mediguard.core.storage.attempts import AttemptCounterStore
from mediguard.core.storage.models import NotificationTarget, ScheduleRecord
from mediguard.core.storage.repository import MediGuardRepository
from mediguard.domains.medication.domain_logic.match_models import (
    ExpectedNotRegistered,
    Match,
    NoMatch,
)
from mediguard.domains.medication.domain_logic.schedule_index import ScheduleIndex

if TYPE_CHECKING:
    from mediguard.core.audit.logger import AuditLogger

logger = logging.getLogger(__name__)

DispatchStatus = Literal["sent", "partial", "no_targets", "failed"]

CAREGIVER_ROLE = "caregiver"

REMINDER_TITLE = "Medication Reminder"
ALERT_TITLE = "Medication Alert"
CONFIRMED_TITLE = "Medication Taken"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class FailedTarget:
    user_id: str
    target: str
    reason: str


@dataclass
class DispatchResult:
    """Aggregate outcome of one notification fan-out across all chunks."""

    status: DispatchStatus
    tickets: list[DeliveryTicket] = field(default_factory=list)
    failed_targets: list[FailedTarget] = field(default_factory=list)

    @property
    def delivered(self) -> int:
        return sum(1 for t in self.tickets if t.ok)

    @property
    def is_partial_failure(self) -> bool:
        return self.status == "partial"

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "delivered": self.delivered,
            "tickets": [
                {"target": t.target, "status": t.status, "detail": t.detail, "ticket_id": t.ticket_id}
                for t in self.tickets
            ],
            "failed_targets": [
                {"user_id": f.user_id, "target": f.target, "reason": f.reason}
                for f in self.failed_targets
            ],
        }


@dataclass(frozen=True)
class EscalationAction:
    """Instruction to alert every caregiver about repeated verification failure."""

    schedule_id: str
    patient_id: str
    patient_name: str
    medication_name: str
    failure_count: int
    day: str

    def payload(self) -> dict[str, Any]:
        return {
            "type": "verification_failed",
            "patientId": self.patient_id,
            "patientName": self.patient_name,
            "medicationName": self.medication_name,
            "scheduleId": self.schedule_id,
            "failureCount": self.failure_count,
        }

    def body(self) -> str:
        return (
            f"Patient {self.patient_name} failed to verify {self.medication_name} "
            f"after {self.failure_count} attempts"
        )


def chunked(items: Sequence[Any], size: int) -> list[list[Any]]:
    if size < 1:
        raise ValueError("Chunk size must be at least 1")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

class DispatchCoordinator:
    """Sends reminders, tracks verification failures and escalates.

    Usage::

        coordinator = DispatchCoordinator(repo, transport, attempts, index)
        result = await coordinator.dispatch_reminder(schedule)
        action = coordinator.record_verification_outcome(schedule.schedule_id, verdict)
        if action is not None:
            await coordinator.escalate(action)
    """

    def __init__(
        self,
        repository: MediGuardRepository,
        transport: PushTransport,
        attempts: AttemptCounterStore,
        schedule_index: ScheduleIndex,
        *,
        escalation_threshold: int = 3,
        send_timeout_s: float = 15.0,
        audit_logger: AuditLogger | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if escalation_threshold < 1:
            raise ValueError("escalation_threshold must be at least 1")
        self._repo = repository
        self._transport = transport
        self._attempts = attempts
        self._index = schedule_index
        self._threshold = escalation_threshold
        self._send_timeout_s = send_timeout_s
        self._audit = audit_logger
        self._clock = clock

    @property
    def escalation_threshold(self) -> int:
        return self._threshold

    def accepts_target(self, token: str) -> bool:
        """Whether the transport can address ``token``."""
        return self._transport.is_valid_target(token)

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    async def dispatch_reminder(self, record: ScheduleRecord) -> DispatchResult:
        """Notify every device of the schedule's patient."""
        medication = record.expected_medication_name or "your medication"
        data = {
            "type": "reminder",
            "scheduleId": record.schedule_id,
            "medicationName": record.expected_medication_name,
            "scheduledTime": record.time_of_day,
            "pillId": record.expected_pill_id,
        }
        result = await self.send_to_users(
            [record.patient_id],
            title=REMINDER_TITLE,
            body=f"Time to take your medicine: {medication}",
            data=data,
        )

        if result.status == "no_targets":
            logger.info("No notification targets for patient %s", record.patient_id)
        else:
            logger.info(
                "Reminder for schedule %s: %s (%d delivered, %d failed)",
                record.schedule_id,
                result.status,
                result.delivered,
                len(result.failed_targets),
            )
        if self._audit is not None:
            self._audit.log_dispatch(
                action="reminder_dispatch",
                schedule_id=record.schedule_id,
                outcome=result.status,
                sent=result.delivered,
                failed=len(result.failed_targets),
            )
        return result

    async def send_test_reminder(self, user_id: str, medication_name: str = "Test Medication") -> DispatchResult:
        """Ad-hoc reminder for checking a user's devices."""
        return await self.send_to_users(
            [user_id],
            title=REMINDER_TITLE,
            body=f"Time to take your medicine: {medication_name}",
            data={"type": "reminder", "scheduleId": None, "medicationName": medication_name, "test": True},
        )

    # ------------------------------------------------------------------
    # Verification outcomes and escalation
    # ------------------------------------------------------------------

    def record_verification_outcome(
        self,
        schedule_id: str,
        outcome: Match | NoMatch | ExpectedNotRegistered,
        *,
        at: datetime | None = None,
    ) -> EscalationAction | None:
        """Advance or reset the failure counter for today's session.

        ``NoMatch`` counts a failure; reaching the threshold returns an
        ``EscalationAction`` and ends the session (the counter restarts).
        ``Match`` resets the counter. ``ExpectedNotRegistered`` is a
        configuration gap and leaves the counter untouched.
        """
        schedule = self._repo.get_schedule(schedule_id)
        if schedule is None:
            raise NotFoundError(f"Schedule {schedule_id!r} not found")

        day = self._index.calendar_day(at or self._clock())

        if isinstance(outcome, Match):
            self._attempts.reset(schedule_id, day)
            return None

        if isinstance(outcome, ExpectedNotRegistered):
            logger.warning(
                "Schedule %s expects an unregistered medication; not counted as a failure",
                schedule_id,
            )
            return None

        count = self._attempts.increment(schedule_id, day)
        logger.info(
            "Verification failure %d/%d for schedule %s (%s)",
            count,
            self._threshold,
            schedule_id,
            day,
        )
        # Exactly one verdict per session lands on the threshold
        if count != self._threshold:
            return None

        # Escalation closes this reminder-to-resolution cycle
        self._attempts.reset(schedule_id, day)
        patient = self._repo.get_user(schedule.patient_id)
        return EscalationAction(
            schedule_id=schedule_id,
            patient_id=schedule.patient_id,
            patient_name=(patient.display_name if patient and patient.display_name else schedule.patient_id),
            medication_name=schedule.expected_medication_name or "Unknown medication",
            failure_count=count,
            day=day,
        )

    def failure_count(self, schedule_id: str, *, at: datetime | None = None) -> int:
        return self._attempts.get(schedule_id, self._index.calendar_day(at or self._clock()))

    def abandon(self, schedule_id: str, *, at: datetime | None = None) -> None:
        """Drop today's session counter for a schedule."""
        self._attempts.reset(schedule_id, self._index.calendar_day(at or self._clock()))

    def purge_expired_attempts(self) -> int:
        """Drop counters of sessions that never reached a verdict that ends them."""
        return self._attempts.purge_expired()

    async def escalate(self, action: EscalationAction) -> DispatchResult:
        """Alert every caregiver. Never raises for delivery problems."""
        caregivers = [u.user_id for u in self._repo.get_users_by_role(CAREGIVER_ROLE)]
        result = await self.send_to_users(
            caregivers,
            title=ALERT_TITLE,
            body=action.body(),
            data=action.payload(),
        )
        if result.failed_targets:
            logger.warning(
                "Escalation for schedule %s: %d caregiver device(s) not notified",
                action.schedule_id,
                len(result.failed_targets),
            )
        logger.info(
            "Escalated schedule %s to %d caregiver(s): %s",
            action.schedule_id,
            len(caregivers),
            result.status,
        )
        if self._audit is not None:
            self._audit.log_dispatch(
                action="escalation",
                schedule_id=action.schedule_id,
                outcome=result.status,
                sent=result.delivered,
                failed=len(result.failed_targets),
                metadata={"failure_count": action.failure_count, "caregivers": len(caregivers)},
            )
        return result

    async def notify_confirmed(self, schedule: ScheduleRecord, medication_name: str) -> DispatchResult:
        """Informational caregiver notice after a successful verification."""
        caregivers = [u.user_id for u in self._repo.get_users_by_role(CAREGIVER_ROLE)]
        patient = self._repo.get_user(schedule.patient_id)
        patient_name = patient.display_name if patient and patient.display_name else schedule.patient_id
        return await self.send_to_users(
            caregivers,
            title=CONFIRMED_TITLE,
            body=f"Patient {patient_name} successfully took {medication_name}",
            data={
                "type": "verification_success",
                "patientId": schedule.patient_id,
                "patientName": patient_name,
                "medicationName": medication_name,
                "scheduleId": schedule.schedule_id,
            },
        )

    async def send_to_role(
        self,
        role: str,
        *,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
    ) -> DispatchResult:
        """Broadcast one message to every device of every user holding ``role``."""
        users = [u.user_id for u in self._repo.get_users_by_role(role)]
        result = await self.send_to_users(users, title=title, body=body, data=dict(data or {}))
        if result.status == "no_targets":
            logger.info("No notification targets for role %s", role)
        else:
            logger.info("Broadcast to role %s: %s (%d delivered)", role, result.status, result.delivered)
        if self._audit is not None:
            self._audit.log_dispatch(
                action="role_broadcast",
                schedule_id=None,
                outcome=result.status,
                sent=result.delivered,
                failed=len(result.failed_targets),
                metadata={"role": role, "users": len(users)},
            )
        return result

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def send_to_users(
        self,
        user_ids: Sequence[str],
        *,
        title: str,
        body: str,
        data: dict[str, Any],
    ) -> DispatchResult:
        """Build one message per valid device and send in transport-sized chunks.

        Chunks go out concurrently; tickets from every chunk are aggregated
        before returning.
        """
        targets = self._repo.get_notification_targets(user_ids)
        failed: list[FailedTarget] = []
        messages: list[PushMessage] = []
        for target in targets:
            if not self._transport.is_valid_target(target.device_token):
                logger.warning("Skipping malformed push token for user %s", target.user_id)
                failed.append(FailedTarget(target.user_id, target.device_token, "invalid_token"))
                continue
            messages.append(self._message_for(target, title, body, data))

        if not messages:
            return DispatchResult(status="no_targets", failed_targets=failed)

        chunks = chunked(messages, self._transport.max_batch_size)
        results = await asyncio.gather(*(self._send_chunk(chunk) for chunk in chunks))

        tickets: list[DeliveryTicket] = []
        for chunk_tickets in results:
            tickets.extend(chunk_tickets)
        for ticket in tickets:
            if not ticket.ok:
                failed.append(FailedTarget(ticket.user_id, ticket.target, ticket.detail or ticket.status))

        delivered = sum(1 for t in tickets if t.ok)
        if delivered == 0:
            status: DispatchStatus = "failed"
        elif failed:
            status = "partial"
        else:
            status = "sent"
        return DispatchResult(status=status, tickets=tickets, failed_targets=failed)

    async def _send_chunk(self, chunk: list[PushMessage]) -> list[DeliveryTicket]:
        """Send one chunk; a transport failure marks every message in it as errored."""
        try:
            tickets = await asyncio.wait_for(
                self._transport.send_batch(chunk), timeout=self._send_timeout_s
            )
        except asyncio.TimeoutError:
            logger.warning("Push chunk of %d timed out after %.1fs", len(chunk), self._send_timeout_s)
            return [self._error_ticket(m, "timeout") for m in chunk]
        except TransientExternalFailure as exc:
            logger.warning("Push chunk of %d failed: %s", len(chunk), exc)
            return [self._error_ticket(m, str(exc)) for m in chunk]
        except Exception as exc:
            logger.exception("Unexpected error sending push chunk of %d", len(chunk))
            return [self._error_ticket(m, type(exc).__name__) for m in chunk]

        # Transports report by target; restore the user id for failure reports
        by_target = {m.target: m.user_id for m in chunk}
        for ticket in tickets:
            if not ticket.user_id:
                ticket.user_id = by_target.get(ticket.target, "")
        return tickets

    @staticmethod
    def _error_ticket(message: PushMessage, detail: str) -> DeliveryTicket:
        return DeliveryTicket(target=message.target, status="error", detail=detail, user_id=message.user_id)

    @staticmethod
    def _message_for(
        target: NotificationTarget, title: str, body: str, data: dict[str, Any]
    ) -> PushMessage:
        return PushMessage(
            target=target.device_token,
            title=title,
            body=body,
            data=dict(data),
            user_id=target.user_id,
        )
