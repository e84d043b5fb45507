"""Tests for MedicationService (registration, verification, schedules, devices)."""

from __future__ import annotations

import asyncio

import pytest
from conftest import expo_token

from mediguard.core.errors import NotFoundError, PermissionDeniedError, ValidationError
from mediguard.core.storage.models import Caller, NotificationTarget, UserRecord
from mediguard.domains.medication.domain_logic.match_models import (
    ExpectedNotRegistered,
    Match,
    NoMatch,
)
from mediguard.domains.medication.service import MedicationService


def _run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio required)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


PATIENT = Caller("patient-1", "patient")
OTHER_PATIENT = Caller("patient-2", "patient")
CAREGIVER = Caller("cg-1", "caregiver")

PILL_A = b"photo-of-metformin"
PILL_B = b"photo-of-aspirin"


def _unit(i: int, dim: int = 8) -> list[float]:
    return [1.0 if j == i else 0.0 for j in range(dim)]


@pytest.fixture
def world(repository, mock_extractor):
    """A patient with one registered pill, one schedule and a caregiver with a device."""
    mock_extractor.register(PILL_A, _unit(0))
    mock_extractor.register(PILL_B, _unit(1))
    repository.upsert_user(UserRecord(user_id="patient-1", display_name="Asha", role="patient"))
    repository.upsert_user(UserRecord(user_id="cg-1", display_name="Ravi", role="caregiver"))
    repository.upsert_notification_target(NotificationTarget(user_id="cg-1", device_token=expo_token(1)))
    return repository


@pytest.fixture
def scheduled(world, service):
    pill = _run(service.register_pill(PATIENT, "Metformin", PILL_A))
    schedule = service.create_schedule(CAREGIVER, time_of_day="08:00", patient_id="patient-1", expected_pill_id=pill.pill_id)
    return pill, schedule


# ------------------------------------------------------------------
# Registration
# ------------------------------------------------------------------

class TestRegisterPill:
    def test_two_extractions_averaged(self, world, service, mock_extractor):
        pill = _run(service.register_pill(PATIENT, "Metformin", PILL_A))

        assert [augment for _, augment in mock_extractor.calls] == [False, True]
        assert pill.feature_vector[0] == pytest.approx(1.025)
        assert pill.feature_count == 8
        assert pill.registration_confidence == 1.0
        assert pill.owner_id == "patient-1"
        assert world.get_pill(pill.pill_id) is not None

    def test_blank_name_defaults_to_unknown(self, world, service):
        assert _run(service.register_pill(PATIENT, "  ", PILL_A)).display_name == "unknown"

    def test_single_extraction(self, world, mock_extractor, coordinator):
        service = MedicationService(world, mock_extractor, coordinator, registration_extractions=1)
        pill = _run(service.register_pill(PATIENT, "x", PILL_A))
        assert pill.feature_vector == _unit(0)
        assert len(mock_extractor.calls) == 1

    def test_list_pills_scoped_for_patients(self, world, service):
        _run(service.register_pill(PATIENT, "Mine", PILL_A))
        _run(service.register_pill(OTHER_PATIENT, "Theirs", PILL_B))

        assert [p.display_name for p in service.list_pills(PATIENT)] == ["Mine"]
        assert len(service.list_pills(CAREGIVER)) == 2
        with pytest.raises(PermissionDeniedError):
            service.list_pills(PATIENT, owner_id="patient-2")


# ------------------------------------------------------------------
# Verification
# ------------------------------------------------------------------

class TestVerify:
    def test_correct_pill_matches_and_confirms(self, scheduled, service, mock_transport):
        pill, schedule = scheduled
        result = _run(service.verify(PATIENT, PILL_A, schedule.schedule_id))

        assert isinstance(result.verdict, Match)
        assert result.verdict.pill_id == pill.pill_id
        assert result.escalated is False
        assert result.failure_count == 0
        assert mock_transport.sent_messages[0].data["type"] == "verification_success"

    def test_three_wrong_pills_escalate(self, scheduled, service, mock_transport):
        _, schedule = scheduled
        results = [_run(service.verify(PATIENT, PILL_B, schedule.schedule_id)) for _ in range(3)]

        assert all(isinstance(r.verdict, NoMatch) for r in results)
        assert [r.failure_count for r in results] == [1, 2, 3]
        assert [r.escalated for r in results] == [False, False, True]
        alert = mock_transport.sent_messages[-1]
        assert alert.data["type"] == "verification_failed"
        assert alert.data["patientName"] == "Asha"
        assert results[2].as_dict()["escalation_status"] == "sent"

    def test_match_between_failures_resets(self, scheduled, service):
        _, schedule = scheduled
        for image in (PILL_B, PILL_B, PILL_A, PILL_B):
            result = _run(service.verify(PATIENT, image, schedule.schedule_id))
        assert result.failure_count == 1
        assert result.escalated is False

    def test_escalation_delivery_failure_does_not_raise(self, scheduled, service, mock_transport):
        _, schedule = scheduled
        _run(service.verify(PATIENT, PILL_B, schedule.schedule_id))
        _run(service.verify(PATIENT, PILL_B, schedule.schedule_id))
        mock_transport.fail_next = 1

        result = _run(service.verify(PATIENT, PILL_B, schedule.schedule_id))

        assert result.escalated is True
        assert result.escalation.status == "failed"

    def test_escalation_exception_is_swallowed(self, scheduled, service, coordinator, monkeypatch):
        _, schedule = scheduled

        async def _explode(action):
            raise RuntimeError("push service on fire")

        monkeypatch.setattr(coordinator, "escalate", _explode)
        for _ in range(3):
            result = _run(service.verify(PATIENT, PILL_B, schedule.schedule_id))
        assert result.escalated is True
        assert result.escalation is None

    def test_expected_medication_not_registered(self, world, service, coordinator):
        schedule = service.create_schedule(PATIENT, time_of_day="09:00", expected_medication_name="Lisinopril")
        _run(service.register_pill(PATIENT, "Metformin", PILL_A))

        result = _run(service.verify(PATIENT, PILL_A, schedule.schedule_id))

        assert isinstance(result.verdict, ExpectedNotRegistered)
        assert coordinator.failure_count(schedule.schedule_id) == 0

    def test_expected_name_matches_case_insensitively(self, world, service):
        _run(service.register_pill(PATIENT, "Metformin", PILL_A))
        schedule = service.create_schedule(PATIENT, time_of_day="09:00", expected_medication_name="METFORMIN")
        assert isinstance(_run(service.verify(PATIENT, PILL_A, schedule.schedule_id)).verdict, Match)

    def test_unknown_schedule(self, world, service):
        with pytest.raises(NotFoundError):
            _run(service.verify(PATIENT, PILL_A, "missing"))

    def test_other_patient_cannot_verify(self, scheduled, service):
        _, schedule = scheduled
        with pytest.raises(PermissionDeniedError):
            _run(service.verify(OTHER_PATIENT, PILL_A, schedule.schedule_id))

    def test_open_verification_searches_catalog(self, world, service):
        _run(service.register_pill(PATIENT, "Metformin", PILL_A))
        _run(service.register_pill(OTHER_PATIENT, "Aspirin", PILL_B))

        result = _run(service.verify(PATIENT, PILL_B))
        assert result.verdict.name == "Aspirin"
        assert result.schedule_id is None

        filtered = _run(service.verify(PATIENT, PILL_B, filter_by_user=True))
        assert isinstance(filtered.verdict, NoMatch)

    def test_cancelled_before_verdict_leaves_counter(self, scheduled, service, coordinator, mock_extractor, monkeypatch):
        _, schedule = scheduled
        started = asyncio.Event()

        async def _hang(image_bytes, *, augment=False):
            started.set()
            await asyncio.sleep(10)

        monkeypatch.setattr(mock_extractor, "extract", _hang)

        async def _cancel():
            task = asyncio.create_task(service.verify(PATIENT, PILL_B, schedule.schedule_id))
            await started.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        _run(_cancel())
        assert coordinator.failure_count(schedule.schedule_id) == 0

    def test_verification_audited(self, scheduled, service, audit_logger):
        _, schedule = scheduled
        _run(service.verify(PATIENT, PILL_B, schedule.schedule_id))
        events = audit_logger.get_events(action="verification")
        assert events[0]["outcome"] == "no_match"
        assert events[0]["schedule_id"] == schedule.schedule_id

    def test_abandon_resets_counter(self, scheduled, service, coordinator):
        _, schedule = scheduled
        _run(service.verify(PATIENT, PILL_B, schedule.schedule_id))
        service.abandon_verification(PATIENT, schedule.schedule_id)
        assert coordinator.failure_count(schedule.schedule_id) == 0


# ------------------------------------------------------------------
# Schedules
# ------------------------------------------------------------------

class TestSchedules:
    def test_create_defaults_to_caller(self, world, service):
        schedule = service.create_schedule(PATIENT, time_of_day="8:30", expected_medication_name="Metformin", days_of_week=[1, 3])
        assert schedule.patient_id == "patient-1"
        assert schedule.time_of_day == "08:30"
        assert schedule.days_of_week == frozenset({1, 3})
        assert schedule.created_by == "patient-1"

    def test_name_taken_from_pill(self, scheduled):
        pill, schedule = scheduled
        assert schedule.expected_medication_name == "Metformin"
        assert schedule.expected_pill_id == pill.pill_id

    def test_name_or_pill_required(self, world, service):
        with pytest.raises(ValidationError):
            service.create_schedule(PATIENT, time_of_day="08:00")

    def test_unknown_pill(self, world, service):
        with pytest.raises(NotFoundError):
            service.create_schedule(PATIENT, time_of_day="08:00", expected_pill_id="nope")

    def test_patient_cannot_schedule_for_another(self, world, service):
        with pytest.raises(PermissionDeniedError):
            service.create_schedule(PATIENT, time_of_day="08:00", patient_id="patient-2", expected_medication_name="x")

    def test_update_patch(self, scheduled, service, world):
        _, schedule = scheduled
        world.claim_fire(schedule.schedule_id, "2026-03-02T08:00")

        updated = service.update_schedule(PATIENT, schedule.schedule_id, {"time_of_day": "9:15", "days_of_week": [0]})

        assert updated.time_of_day == "09:15"
        assert updated.days_of_week == frozenset({0})
        assert updated.last_fired_minute is None

    def test_update_rejects_unknown_fields(self, scheduled, service):
        _, schedule = scheduled
        with pytest.raises(ValidationError):
            service.update_schedule(PATIENT, schedule.schedule_id, {"patient_id": "patient-2"})

    def test_update_cannot_clear_name_and_pill(self, scheduled, service, world):
        _, schedule = scheduled
        with pytest.raises(ValidationError, match="medication name or expected pill id"):
            service.update_schedule(
                CAREGIVER, schedule.schedule_id, {"expected_medication_name": "", "expected_pill_id": ""}
            )
        stored = world.get_schedule(schedule.schedule_id)
        assert stored.expected_medication_name == "Metformin"
        assert stored.expected_pill_id is not None

    def test_update_clearing_pill_keeps_stored_name(self, scheduled, service):
        _, schedule = scheduled
        updated = service.update_schedule(CAREGIVER, schedule.schedule_id, {"expected_pill_id": None})
        assert updated.expected_pill_id is None
        assert updated.expected_medication_name == "Metformin"

    def test_update_clearing_name_falls_back_to_pill(self, scheduled, service):
        pill, schedule = scheduled
        updated = service.update_schedule(CAREGIVER, schedule.schedule_id, {"expected_medication_name": "  "})
        assert updated.expected_medication_name == pill.display_name

    def test_update_by_stranger_denied(self, scheduled, service):
        _, schedule = scheduled
        with pytest.raises(PermissionDeniedError):
            service.update_schedule(OTHER_PATIENT, schedule.schedule_id, {"active": False})

    def test_delete_is_soft(self, scheduled, service, world):
        _, schedule = scheduled
        service.delete_schedule(CAREGIVER, schedule.schedule_id)
        stored = world.get_schedule(schedule.schedule_id)
        assert stored is not None
        assert stored.active is False
        assert service.list_schedules(PATIENT, active_only=True) == []

    def test_delete_unknown(self, world, service):
        with pytest.raises(NotFoundError):
            service.delete_schedule(CAREGIVER, "missing")

    def test_list_scoped_for_patients(self, world, service):
        service.create_schedule(PATIENT, time_of_day="08:00", expected_medication_name="a")
        service.create_schedule(OTHER_PATIENT, time_of_day="09:00", expected_medication_name="b")
        assert len(service.list_schedules(PATIENT)) == 1
        assert len(service.list_schedules(CAREGIVER)) == 2
        assert len(service.list_schedules(CAREGIVER, "patient-2")) == 1


# ------------------------------------------------------------------
# Users and devices
# ------------------------------------------------------------------

class TestUsersAndDevices:
    def test_register_self(self, service):
        user = service.register_user(PATIENT, "patient-1", "Asha", "patient")
        assert user.display_name == "Asha"

    def test_invalid_role(self, service):
        with pytest.raises(ValidationError):
            service.register_user(PATIENT, "patient-1", role="doctor")

    def test_only_admin_registers_others(self, service):
        with pytest.raises(PermissionDeniedError):
            service.register_user(PATIENT, "someone-else", role="caregiver")
        assert service.register_user(Caller("root", "admin"), "someone-else", role="caregiver").role == "caregiver"

    def test_register_device_upserts(self, service, repository):
        first = service.register_notification_target(PATIENT, expo_token(5), device_info={"platform": "ios"})
        second = service.register_notification_target(PATIENT, expo_token(5), device_info={"platform": "ios", "v": 2})
        assert first == second
        targets = repository.list_notification_targets("patient-1")
        assert len(targets) == 1
        assert targets[0].device_info == {"platform": "ios", "v": 2}
        assert targets[0].platform_hint == "ios"

    def test_malformed_token_rejected(self, service):
        with pytest.raises(ValidationError):
            service.register_notification_target(PATIENT, "definitely-not-expo")

    def test_test_reminder(self, service, repository, mock_transport):
        service.register_notification_target(PATIENT, expo_token(5))
        result = _run(service.send_test_reminder(PATIENT))
        assert result.status == "sent"
        assert mock_transport.sent_messages[0].data["test"] is True


# ------------------------------------------------------------------
# Directory and role broadcast
# ------------------------------------------------------------------

class TestDirectory:
    def test_list_users_filters_by_role(self, world, service):
        assert sorted(u.user_id for u in service.list_users(CAREGIVER)) == ["cg-1", "patient-1"]
        assert [u.user_id for u in service.list_users(CAREGIVER, "caregiver")] == ["cg-1"]
        assert service.list_users(CAREGIVER, "admin") == []

    def test_list_users_requires_caregiver(self, world, service):
        with pytest.raises(PermissionDeniedError):
            service.list_users(PATIENT)

    def test_list_users_rejects_unknown_role(self, world, service):
        with pytest.raises(ValidationError):
            service.list_users(CAREGIVER, "doctor")

    def test_caregiver_sees_every_target(self, world, service):
        service.register_notification_target(PATIENT, expo_token(7), platform_hint="android")
        targets = service.list_notification_targets(CAREGIVER)
        assert sorted(t.user_id for t in targets) == ["cg-1", "patient-1"]

    def test_patient_sees_only_own_targets(self, world, service):
        service.register_notification_target(PATIENT, expo_token(7))
        assert [t.device_token for t in service.list_notification_targets(PATIENT)] == [expo_token(7)]
        with pytest.raises(PermissionDeniedError):
            service.list_notification_targets(PATIENT, "cg-1")

    def test_send_to_role_reaches_every_holder(self, world, service, mock_transport):
        world.upsert_user(UserRecord(user_id="cg-2", display_name="Mira", role="caregiver"))
        world.upsert_notification_target(NotificationTarget(user_id="cg-2", device_token=expo_token(2)))

        result = _run(service.send_to_role(CAREGIVER, "caregiver", "Heads up", "Clinic closed", {"k": "v"}))

        assert result.status == "sent"
        assert result.delivered == 2
        assert {m.target for m in mock_transport.sent_messages} == {expo_token(1), expo_token(2)}
        assert mock_transport.sent_messages[0].data == {"k": "v"}

    def test_send_to_role_without_devices(self, world, service, mock_transport):
        result = _run(service.send_to_role(CAREGIVER, "admin", "Heads up", "Clinic closed"))
        assert result.status == "no_targets"
        assert mock_transport.sent_messages == []

    def test_send_to_role_requires_title_and_body(self, world, service):
        with pytest.raises(ValidationError, match="role, title, and body are required"):
            _run(service.send_to_role(CAREGIVER, "caregiver", "", "Clinic closed"))
        with pytest.raises(ValidationError):
            _run(service.send_to_role(CAREGIVER, "", "Heads up", "Clinic closed"))

    def test_patient_cannot_broadcast(self, world, service):
        with pytest.raises(PermissionDeniedError):
            _run(service.send_to_role(PATIENT, "caregiver", "Heads up", "Clinic closed"))
