"""Tests for the dispatch and escalation coordinator."""

from __future__ import annotations

import asyncio

import pytest
from conftest import expo_token, make_schedule

from mediguard.core.errors import NotFoundError
from mediguard.core.push.mock import MockPushTransport
from mediguard.core.storage.models import NotificationTarget, UserRecord
from mediguard.domains.medication.domain_logic.dispatch import (
    DispatchCoordinator,
    EscalationAction,
    chunked,
)
from mediguard.domains.medication.domain_logic.match_models import (
    ExpectedNotRegistered,
    Match,
    NoMatch,
    ScoreBundle,
)


def _run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio required)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


NO_MATCH = NoMatch(best_score=0.4, confidence_level="VERY_LOW", threshold=0.65)
MATCH = Match(
    pill_id="p1", name="Metformin", score=0.9, confidence_level="HIGH",
    is_unambiguous=True, scores=ScoreBundle(0.95, 0.8, 0.9), threshold=0.70,
)


def _add_devices(repository, user_id: str, count: int, start: int = 0) -> None:
    for i in range(start, start + count):
        repository.upsert_notification_target(NotificationTarget(user_id=user_id, device_token=expo_token(i)))


@pytest.fixture
def schedule(repository):
    repository.upsert_user(UserRecord(user_id="patient-1", display_name="Asha", role="patient"))
    record = make_schedule()
    repository.save_schedule(record)
    return record


# ------------------------------------------------------------------
# Reminders
# ------------------------------------------------------------------

class TestDispatchReminder:
    def test_one_message_per_device(self, repository, coordinator, mock_transport, schedule):
        _add_devices(repository, "patient-1", 2)
        result = _run(coordinator.dispatch_reminder(schedule))

        assert result.status == "sent"
        assert result.delivered == 2
        message = mock_transport.sent_messages[0]
        assert message.title == "Medication Reminder"
        assert message.body == "Time to take your medicine: Metformin"
        assert message.data["type"] == "reminder"
        assert message.data["scheduleId"] == "sched-1"
        assert message.data["scheduledTime"] == "08:00"

    def test_no_targets_is_not_an_error(self, coordinator, schedule, mock_transport):
        result = _run(coordinator.dispatch_reminder(schedule))
        assert result.status == "no_targets"
        assert mock_transport.batches == []

    def test_malformed_token_skipped(self, repository, coordinator, schedule):
        _add_devices(repository, "patient-1", 1)
        repository.upsert_notification_target(NotificationTarget(user_id="patient-1", device_token="not-a-token"))

        result = _run(coordinator.dispatch_reminder(schedule))

        assert result.status == "partial"
        assert result.delivered == 1
        assert [f.reason for f in result.failed_targets] == ["invalid_token"]

    def test_only_malformed_tokens_is_no_targets(self, repository, coordinator, schedule):
        repository.upsert_notification_target(NotificationTarget(user_id="patient-1", device_token="garbage"))
        result = _run(coordinator.dispatch_reminder(schedule))
        assert result.status == "no_targets"
        assert len(result.failed_targets) == 1

    def test_chunks_respect_batch_size(self, repository, attempts, schedule_index, schedule):
        transport = MockPushTransport(max_batch_size=3)
        coordinator = DispatchCoordinator(repository, transport, attempts, schedule_index)
        _add_devices(repository, "patient-1", 7)

        result = _run(coordinator.dispatch_reminder(schedule))

        assert sorted(len(b) for b in transport.batches) == [1, 3, 3]
        assert result.delivered == 7
        assert len(result.tickets) == 7

    def test_failed_chunk_reported_others_delivered(self, repository, attempts, schedule_index, schedule):
        transport = MockPushTransport(max_batch_size=2, fail_next=1)
        coordinator = DispatchCoordinator(repository, transport, attempts, schedule_index)
        _add_devices(repository, "patient-1", 4)

        result = _run(coordinator.dispatch_reminder(schedule))

        assert result.status == "partial"
        assert result.delivered == 2
        assert len(result.failed_targets) == 2
        assert all(f.user_id == "patient-1" for f in result.failed_targets)

    def test_rejected_device_is_partial(self, repository, attempts, schedule_index, schedule):
        transport = MockPushTransport(rejected_targets={expo_token(0)})
        coordinator = DispatchCoordinator(repository, transport, attempts, schedule_index)
        _add_devices(repository, "patient-1", 2)

        result = _run(coordinator.dispatch_reminder(schedule))

        assert result.status == "partial"
        assert result.failed_targets[0].reason == "DeviceNotRegistered"

    def test_all_chunks_failing_is_failed(self, repository, attempts, schedule_index, schedule):
        transport = MockPushTransport(fail_next=5)
        coordinator = DispatchCoordinator(repository, transport, attempts, schedule_index)
        _add_devices(repository, "patient-1", 1)
        assert _run(coordinator.dispatch_reminder(schedule)).status == "failed"

    def test_dispatch_is_audited(self, repository, coordinator, audit_logger, schedule):
        _add_devices(repository, "patient-1", 1)
        _run(coordinator.dispatch_reminder(schedule))
        events = audit_logger.get_events(action="reminder_dispatch")
        assert events[0]["outcome"] == "sent"
        assert expo_token(0) not in (events[0]["metadata_json"] or "")


# ------------------------------------------------------------------
# Verification outcomes
# ------------------------------------------------------------------

class TestRecordOutcome:
    def test_third_failure_escalates_once(self, coordinator, schedule):
        actions = [coordinator.record_verification_outcome("sched-1", NO_MATCH) for _ in range(3)]
        assert actions[:2] == [None, None]
        action = actions[2]
        assert isinstance(action, EscalationAction)
        assert action.failure_count == 3
        assert action.patient_name == "Asha"
        assert action.medication_name == "Metformin"

    def test_match_resets_counter(self, coordinator, schedule):
        coordinator.record_verification_outcome("sched-1", NO_MATCH)
        coordinator.record_verification_outcome("sched-1", NO_MATCH)
        assert coordinator.record_verification_outcome("sched-1", MATCH) is None
        assert coordinator.record_verification_outcome("sched-1", NO_MATCH) is None
        assert coordinator.failure_count("sched-1") == 1

    def test_counter_restarts_after_escalation(self, coordinator, schedule):
        results = [coordinator.record_verification_outcome("sched-1", NO_MATCH) for _ in range(6)]
        assert sum(1 for r in results if r is not None) == 2

    def test_overshooting_verdict_does_not_escalate_again(self, coordinator, schedule, attempts):
        # A concurrent verdict already pushed the counter to the threshold
        for _ in range(3):
            attempts.increment("sched-1", "2026-03-02")
        assert coordinator.record_verification_outcome("sched-1", NO_MATCH) is None
        assert coordinator.failure_count("sched-1") == 4

    def test_purge_expired_attempts(self, coordinator, schedule, clock):
        coordinator.record_verification_outcome("sched-1", NO_MATCH)
        assert coordinator.purge_expired_attempts() == 0
        clock.advance(days=2)
        assert coordinator.purge_expired_attempts() == 1

    def test_expected_not_registered_does_not_count(self, coordinator, schedule):
        gap = ExpectedNotRegistered(expected_pill_id="p9", expected_name=None)
        for _ in range(5):
            assert coordinator.record_verification_outcome("sched-1", gap) is None
        assert coordinator.failure_count("sched-1") == 0

    def test_counters_are_per_day(self, coordinator, schedule, clock):
        coordinator.record_verification_outcome("sched-1", NO_MATCH)
        coordinator.record_verification_outcome("sched-1", NO_MATCH)
        clock.advance(days=1)
        assert coordinator.record_verification_outcome("sched-1", NO_MATCH) is None
        assert coordinator.failure_count("sched-1") == 1

    def test_abandon_resets(self, coordinator, schedule):
        coordinator.record_verification_outcome("sched-1", NO_MATCH)
        coordinator.abandon("sched-1")
        assert coordinator.failure_count("sched-1") == 0

    def test_unknown_schedule(self, coordinator):
        with pytest.raises(NotFoundError):
            coordinator.record_verification_outcome("missing", NO_MATCH)

    def test_threshold_validated(self, repository, mock_transport, attempts, schedule_index):
        with pytest.raises(ValueError):
            DispatchCoordinator(repository, mock_transport, attempts, schedule_index, escalation_threshold=0)


# ------------------------------------------------------------------
# Escalation fan-out
# ------------------------------------------------------------------

class TestEscalate:
    def _action(self) -> EscalationAction:
        return EscalationAction(
            schedule_id="sched-1", patient_id="patient-1", patient_name="Asha",
            medication_name="Metformin", failure_count=3, day="2026-03-02",
        )

    def test_every_caregiver_notified(self, repository, coordinator, mock_transport, schedule):
        for cid in ("cg-1", "cg-2"):
            repository.upsert_user(UserRecord(user_id=cid, role="caregiver"))
        _add_devices(repository, "cg-1", 1, start=10)
        _add_devices(repository, "cg-2", 2, start=20)
        _add_devices(repository, "patient-1", 1, start=30)

        result = _run(coordinator.escalate(self._action()))

        assert result.delivered == 3
        recipients = {m.user_id for m in mock_transport.sent_messages}
        assert recipients == {"cg-1", "cg-2"}
        message = mock_transport.sent_messages[0]
        assert message.title == "Medication Alert"
        assert message.body == "Patient Asha failed to verify Metformin after 3 attempts"
        assert message.data == {
            "type": "verification_failed",
            "patientId": "patient-1",
            "patientName": "Asha",
            "medicationName": "Metformin",
            "scheduleId": "sched-1",
            "failureCount": 3,
        }

    def test_one_caregiver_failure_does_not_block_others(self, repository, attempts, schedule_index, schedule):
        transport = MockPushTransport(rejected_targets={expo_token(10)})
        coordinator = DispatchCoordinator(repository, transport, attempts, schedule_index)
        for cid in ("cg-1", "cg-2"):
            repository.upsert_user(UserRecord(user_id=cid, role="caregiver"))
        _add_devices(repository, "cg-1", 1, start=10)
        _add_devices(repository, "cg-2", 1, start=20)

        result = _run(coordinator.escalate(self._action()))

        assert result.status == "partial"
        assert result.delivered == 1
        assert [f.user_id for f in result.failed_targets] == ["cg-1"]

    def test_no_caregivers(self, coordinator, schedule, audit_logger):
        result = _run(coordinator.escalate(self._action()))
        assert result.status == "no_targets"
        assert audit_logger.count_events(action="escalation") == 1

    def test_confirmation_notice(self, repository, coordinator, mock_transport, schedule):
        repository.upsert_user(UserRecord(user_id="cg-1", role="caregiver"))
        _add_devices(repository, "cg-1", 1, start=10)

        _run(coordinator.notify_confirmed(schedule, "Metformin"))

        message = mock_transport.sent_messages[0]
        assert message.data["type"] == "verification_success"
        assert "Asha" in message.body


class TestHelpers:
    def test_chunked(self):
        assert chunked([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]

    def test_chunked_rejects_zero(self):
        with pytest.raises(ValueError):
            chunked([1], 0)

    def test_send_test_reminder(self, repository, coordinator, mock_transport):
        _add_devices(repository, "patient-1", 1)
        result = _run(coordinator.send_test_reminder("patient-1", "Aspirin"))
        assert result.status == "sent"
        assert mock_transport.sent_messages[0].body == "Time to take your medicine: Aspirin"
