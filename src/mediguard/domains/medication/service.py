"""Caller-facing medication operations.

Every operation takes an explicit ``Caller``. Authorization is role based:
caregivers and admins may act on any patient's records, a patient only on
their own.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from mediguard.core.audit.logger import AuditEvent, AuditLogger
from mediguard.core.errors import (
    ExtractionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from mediguard.core.extractor import FeatureExtractor
from mediguard.core.storage.models import (
    ROLES,
    Caller,
    NotificationTarget,
    PillRecord,
    ScheduleRecord,
    UserRecord,
)
from mediguard.core.storage.repository import MediGuardRepository
from mediguard.domains.medication.domain_logic.dispatch import DispatchCoordinator, DispatchResult
from mediguard.domains.medication.domain_logic.match_models import (
    Match,
    MatchPolicy,
    NoMatch,
    SimilarityWeights,
    Verdict,
    VerificationContext,
)
from mediguard.domains.medication.domain_logic.matcher import decide
from mediguard.domains.medication.domain_logic.schedule_index import (
    normalize_days_of_week,
    normalize_time_of_day,
)
from mediguard.domains.medication.domain_logic.similarity import DEFAULT_WEIGHTS, average_vectors

logger = logging.getLogger(__name__)

UNKNOWN_PILL_NAME = "unknown"

_PATCHABLE = frozenset({
    "expected_pill_id",
    "expected_medication_name",
    "time_of_day",
    "days_of_week",
    "active",
})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class VerificationResult:
    """A verdict plus what it did to the schedule's escalation state."""

    verdict: Verdict
    schedule_id: str | None = None
    failure_count: int = 0
    escalated: bool = False
    escalation: DispatchResult | None = None

    def as_dict(self) -> dict[str, Any]:
        out = self.verdict.as_dict()
        if self.schedule_id is not None:
            out["schedule_id"] = self.schedule_id
            out["failure_count"] = self.failure_count
            out["escalated"] = self.escalated
            if self.escalation is not None:
                out["escalation_status"] = self.escalation.status
        return out


class MedicationService:
    """Pill catalog, verification, schedules and device registration.

    Usage::

        service = MedicationService(repo, extractor, coordinator)
        pill = await service.register_pill(Caller("u-1"), "Metformin", photo)
        result = await service.verify(Caller("u-1"), photo, schedule_id="s-1")
    """

    def __init__(
        self,
        repository: MediGuardRepository,
        extractor: FeatureExtractor,
        coordinator: DispatchCoordinator,
        *,
        policy: MatchPolicy | None = None,
        weights: SimilarityWeights = DEFAULT_WEIGHTS,
        registration_extractions: int = 2,
        notify_on_confirm: bool = True,
        audit_logger: AuditLogger | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if registration_extractions not in (1, 2):
            raise ValueError("registration_extractions must be 1 or 2")
        self._repo = repository
        self._extractor = extractor
        self._coordinator = coordinator
        self._policy = policy or MatchPolicy()
        self._weights = weights
        self._registration_extractions = registration_extractions
        self._notify_on_confirm = notify_on_confirm
        self._audit = audit_logger
        self._clock = clock

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    @staticmethod
    def _require_patient_access(caller: Caller, patient_id: str) -> None:
        if caller.is_caregiver or caller.id == patient_id:
            return
        raise PermissionDeniedError(
            f"{caller.role} {caller.id!r} may not act on records of patient {patient_id!r}"
        )

    def _schedule_for(self, caller: Caller, schedule_id: str) -> ScheduleRecord:
        schedule = self._repo.get_schedule(schedule_id)
        if schedule is None:
            raise NotFoundError(f"Schedule {schedule_id!r} not found")
        self._require_patient_access(caller, schedule.patient_id)
        return schedule

    # ------------------------------------------------------------------
    # Pill catalog
    # ------------------------------------------------------------------

    async def register_pill(self, caller: Caller, name: str, image_bytes: bytes) -> PillRecord:
        """Extract one or two embeddings of the photo and store their mean."""
        display_name = (name or "").strip() or UNKNOWN_PILL_NAME

        vectors = [await self._extractor.extract(image_bytes)]
        if self._registration_extractions == 2:
            vectors.append(await self._extractor.extract(image_bytes, augment=True))
        if any(not v for v in vectors):
            raise ExtractionError("Extractor returned an empty feature vector")
        try:
            feature_vector = average_vectors(vectors)
        except ValueError as exc:
            raise ExtractionError(f"Inconsistent embeddings for one image: {exc}") from exc

        pill = PillRecord(
            pill_id=str(uuid.uuid4()),
            display_name=display_name,
            owner_id=caller.id,
            feature_vector=feature_vector,
            registration_confidence=1.0,
            feature_count=len(feature_vector),
        )
        self._repo.save_pill(pill)
        stored = self._repo.get_pill(pill.pill_id) or pill
        logger.info(
            "Registered pill %s (%d features, %d extraction(s))",
            pill.pill_id,
            pill.feature_count,
            len(vectors),
        )
        return stored

    def list_pills(self, caller: Caller, owner_id: str | None = None) -> list[PillRecord]:
        if owner_id is not None:
            self._require_patient_access(caller, owner_id)
        elif not caller.is_caregiver:
            owner_id = caller.id
        return self._repo.list_pills(owner_id=owner_id)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def verify(
        self,
        caller: Caller,
        image_bytes: bytes,
        schedule_id: str | None = None,
        *,
        filter_by_user: bool = False,
    ) -> VerificationResult:
        """Identify the pill in a photo, optionally against a schedule's expectation.

        A schedule-bound verdict advances or resets that schedule's failure
        counter and may escalate to caregivers. Cancellation before the
        verdict leaves the counter untouched.
        """
        start_time = time.monotonic()
        schedule: ScheduleRecord | None = None
        if schedule_id:
            schedule = self._schedule_for(caller, schedule_id)
            context = VerificationContext(
                expected_pill_id=schedule.expected_pill_id,
                expected_name=schedule.expected_medication_name or None,
            )
        else:
            context = VerificationContext(owner_id=caller.id if filter_by_user else None)

        probe = await self._extractor.extract(image_bytes)
        verdict = decide(
            probe,
            self._repo.list_pills(),
            context,
            policy=self._policy,
            weights=self._weights,
        )

        result = VerificationResult(verdict=verdict)
        if schedule is not None:
            # Settling must finish once a verdict exists, even if the caller goes away
            result = await asyncio.shield(self._settle(schedule, verdict))

        if self._audit is not None:
            metadata: dict[str, Any] = {"candidates_filtered": bool(context.has_expectation or context.owner_id)}
            if isinstance(verdict, (Match, NoMatch)):
                metadata["confidence"] = verdict.confidence_level
            if schedule is not None:
                metadata["failure_count"] = result.failure_count
                metadata["escalated"] = result.escalated
            self._audit.log_verification(
                caller_id=caller.id,
                schedule_id=schedule_id,
                outcome=verdict.kind,
                duration_ms=(time.monotonic() - start_time) * 1000,
                metadata=metadata,
            )
        return result

    async def _settle(self, schedule: ScheduleRecord, verdict: Verdict) -> VerificationResult:
        result = VerificationResult(verdict=verdict, schedule_id=schedule.schedule_id)
        now = self._clock()
        action = self._coordinator.record_verification_outcome(schedule.schedule_id, verdict, at=now)

        if action is not None:
            result.failure_count = action.failure_count
            result.escalated = True
            try:
                result.escalation = await self._coordinator.escalate(action)
            except Exception:
                logger.exception("Caregiver escalation failed for schedule %s", schedule.schedule_id)
            return result

        result.failure_count = self._coordinator.failure_count(schedule.schedule_id, at=now)
        if isinstance(verdict, Match) and self._notify_on_confirm:
            try:
                await self._coordinator.notify_confirmed(schedule, verdict.name)
            except Exception:
                logger.exception("Confirmation notice failed for schedule %s", schedule.schedule_id)
        return result

    def abandon_verification(self, caller: Caller, schedule_id: str) -> None:
        """End the current verification session without a verdict."""
        schedule = self._schedule_for(caller, schedule_id)
        self._coordinator.abandon(schedule.schedule_id)
        logger.info("Verification session abandoned for schedule %s", schedule_id)

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    def create_schedule(
        self,
        caller: Caller,
        *,
        time_of_day: str,
        patient_id: str | None = None,
        expected_pill_id: str | None = None,
        expected_medication_name: str = "",
        days_of_week: Iterable[int] | None = None,
    ) -> ScheduleRecord:
        patient_id = patient_id or caller.id
        self._require_patient_access(caller, patient_id)

        name = (expected_medication_name or "").strip()
        if expected_pill_id:
            pill = self._repo.get_pill(expected_pill_id)
            if pill is None:
                raise NotFoundError(f"Pill {expected_pill_id!r} not found")
            name = name or pill.display_name
        if not name:
            raise ValidationError("A medication name or expected pill id is required")

        schedule = ScheduleRecord(
            schedule_id=str(uuid.uuid4()),
            patient_id=patient_id,
            time_of_day=normalize_time_of_day(time_of_day),
            expected_pill_id=expected_pill_id or None,
            expected_medication_name=name,
            days_of_week=normalize_days_of_week(days_of_week),
            created_by=caller.id,
        )
        self._repo.save_schedule(schedule)
        self._audit_schedule_change(caller, schedule.schedule_id, "created")
        logger.info("Schedule %s created for patient %s at %s", schedule.schedule_id, patient_id, schedule.time_of_day)
        return self._repo.get_schedule(schedule.schedule_id) or schedule

    def update_schedule(self, caller: Caller, schedule_id: str, patch: dict[str, Any]) -> ScheduleRecord:
        current = self._schedule_for(caller, schedule_id)

        unknown = set(patch) - _PATCHABLE
        if unknown:
            raise ValidationError(f"Fields not patchable: {', '.join(sorted(unknown))}")

        clean: dict[str, Any] = {}
        for key, value in patch.items():
            if key == "time_of_day":
                clean[key] = normalize_time_of_day(value)
            elif key == "days_of_week":
                clean[key] = normalize_days_of_week(value)
            elif key == "active":
                if not isinstance(value, bool):
                    raise ValidationError("active must be a boolean")
                clean[key] = value
            elif key == "expected_pill_id":
                if value and self._repo.get_pill(value) is None:
                    raise NotFoundError(f"Pill {value!r} not found")
                clean[key] = value or None
            else:
                clean[key] = (value or "").strip()

        pill_id = clean.get("expected_pill_id", current.expected_pill_id)
        name = clean.get("expected_medication_name", current.expected_medication_name)
        if not name and pill_id:
            pill = self._repo.get_pill(pill_id)
            if pill is not None:
                name = clean["expected_medication_name"] = pill.display_name
        if not name and not pill_id:
            raise ValidationError("A medication name or expected pill id is required")

        if clean:
            self._repo.update_schedule(schedule_id, clean)
            self._audit_schedule_change(caller, schedule_id, "updated", fields=sorted(clean))
        return self._repo.get_schedule(schedule_id) or self._schedule_for(caller, schedule_id)

    def delete_schedule(self, caller: Caller, schedule_id: str) -> None:
        """Soft-disable; the record stays for history."""
        self._schedule_for(caller, schedule_id)
        self._repo.deactivate_schedule(schedule_id)
        self._audit_schedule_change(caller, schedule_id, "deactivated")
        logger.info("Schedule %s deactivated by %s", schedule_id, caller.id)

    def list_schedules(
        self,
        caller: Caller,
        patient_id: str | None = None,
        *,
        active_only: bool = False,
    ) -> list[ScheduleRecord]:
        if patient_id is not None:
            self._require_patient_access(caller, patient_id)
        elif not caller.is_caregiver:
            patient_id = caller.id
        return self._repo.list_schedules(patient_id=patient_id, active_only=active_only)

    def _audit_schedule_change(self, caller: Caller, schedule_id: str, change: str, **extra: Any) -> None:
        if self._audit is None:
            return
        self._audit.log_event(AuditEvent(
            action="schedule_change",
            caller_id=caller.id,
            caller_role=caller.role,
            schedule_id=schedule_id,
            outcome=change,
            metadata=extra,
        ))

    # ------------------------------------------------------------------
    # Users and devices
    # ------------------------------------------------------------------

    def register_user(self, caller: Caller, user_id: str, display_name: str = "", role: str = "patient") -> UserRecord:
        if role not in ROLES:
            raise ValidationError(f"role must be one of {', '.join(ROLES)}")
        if not user_id:
            raise ValidationError("user_id is required")
        if caller.id != user_id and caller.role != "admin":
            raise PermissionDeniedError("Only admins may register other users")
        self._repo.upsert_user(UserRecord(user_id=user_id, display_name=display_name, role=role))
        return self._repo.get_user(user_id) or UserRecord(user_id=user_id, display_name=display_name, role=role)

    def register_notification_target(
        self,
        caller: Caller,
        token: str,
        *,
        user_id: str | None = None,
        device_info: dict[str, Any] | None = None,
        platform_hint: str = "",
    ) -> str:
        """Upsert a device for push delivery; returns the target id."""
        user_id = user_id or caller.id
        self._require_patient_access(caller, user_id)
        token = (token or "").strip()
        if not self._coordinator.accepts_target(token):
            raise ValidationError("Invalid push token format")

        target_id = self._repo.upsert_notification_target(NotificationTarget(
            user_id=user_id,
            device_token=token,
            platform_hint=platform_hint or (device_info or {}).get("platform", ""),
            device_info=device_info,
        ))
        logger.info("Push target registered for user %s", user_id)
        return target_id

    async def send_test_reminder(
        self,
        caller: Caller,
        user_id: str | None = None,
        medication_name: str = "Test Medication",
    ) -> DispatchResult:
        user_id = user_id or caller.id
        self._require_patient_access(caller, user_id)
        return await self._coordinator.send_test_reminder(user_id, medication_name)

    def list_users(self, caller: Caller, role: str | None = None) -> list[UserRecord]:
        if not caller.is_caregiver:
            raise PermissionDeniedError("Only caregivers and admins may list users")
        role = role or None
        if role is not None and role not in ROLES:
            raise ValidationError(f"role must be one of {', '.join(ROLES)}")
        return self._repo.list_users(role)

    def list_notification_targets(self, caller: Caller, user_id: str | None = None) -> list[NotificationTarget]:
        """Registered devices of one user, or of everyone for caregivers and admins."""
        if user_id is None and caller.is_caregiver:
            return self._repo.list_all_notification_targets()
        user_id = user_id or caller.id
        self._require_patient_access(caller, user_id)
        return self._repo.list_notification_targets(user_id)

    async def send_to_role(
        self,
        caller: Caller,
        role: str,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
    ) -> DispatchResult:
        if not caller.is_caregiver:
            raise PermissionDeniedError("Only caregivers and admins may broadcast to a role")
        if not role or not (title or "").strip() or not (body or "").strip():
            raise ValidationError("role, title, and body are required")
        if role not in ROLES:
            raise ValidationError(f"role must be one of {', '.join(ROLES)}")
        return await self._coordinator.send_to_role(role, title=title.strip(), body=body.strip(), data=data)
