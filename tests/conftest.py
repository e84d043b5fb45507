"""Shared test fixtures for MediGuard tests."""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

# ---------------------------------------------------------------------------
# Test hermeticity
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _force_hermetic_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("EXTRACTOR_PROVIDER", "mock")
    monkeypatch.setenv("PUSH_PROVIDER", "mock")
    monkeypatch.setenv("SCHEDULER_ENABLED", "false")
    monkeypatch.setenv("SCHEDULE_TIMEZONE", "UTC")
    monkeypatch.setenv("DB_PATH", ":memory:")
    monkeypatch.setenv("ENCRYPTION_KEY", "")
    monkeypatch.setenv("EXPO_ACCESS_TOKEN", "")

# Allow running tests without `pip install -e .` by making `src/` importable.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_SRC_DIR = _PROJECT_ROOT / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))

from mediguard.core.storage.models import PillRecord, ScheduleRecord  # noqa: E402


def expo_token(n: int) -> str:
    """A well-formed Expo push token."""
    return f"ExponentPushToken[device-{n:04d}]"


def make_pill(pill_id: str, vector: list[float], name: str | None = None, owner_id: str = "patient-1") -> PillRecord:
    return PillRecord(
        pill_id=pill_id,
        display_name=name or pill_id,
        owner_id=owner_id,
        feature_vector=list(vector),
        feature_count=len(vector),
    )


def make_schedule(**overrides: Any) -> ScheduleRecord:
    defaults: dict[str, Any] = dict(
        schedule_id="sched-1",
        patient_id="patient-1",
        time_of_day="08:00",
        expected_pill_id=None,
        expected_medication_name="Metformin",
        created_by="caregiver-1",
    )
    defaults.update(overrides)
    return ScheduleRecord(**defaults)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

class FixedClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FixedClock:
    # A Monday
    return FixedClock(datetime(2026, 3, 2, 8, 0, 15, tzinfo=timezone.utc))


# ---------------------------------------------------------------------------
# In-memory storage fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def db():
    """Create an in-memory MediGuardDatabase for testing."""
    from mediguard.core.storage.database import MediGuardDatabase

    database = MediGuardDatabase(":memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def field_encryptor():
    """Create a FieldEncryptor with a test key."""
    from cryptography.fernet import Fernet

    from mediguard.core.storage.encryption import FieldEncryptor

    return FieldEncryptor(Fernet.generate_key().decode())


@pytest.fixture
def repository(db, field_encryptor):
    """Create a MediGuardRepository backed by in-memory SQLite."""
    from mediguard.core.storage.repository import MediGuardRepository

    return MediGuardRepository(db, field_encryptor)


@pytest.fixture
def audit_logger(db):
    """Create an AuditLogger backed by in-memory SQLite."""
    from mediguard.core.audit.logger import AuditLogger

    return AuditLogger(db)


@pytest.fixture
def attempts(db, clock):
    from mediguard.core.storage.attempts import AttemptCounterStore

    return AttemptCounterStore(db, clock=clock)


# ---------------------------------------------------------------------------
# External collaborators
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_extractor():
    from mediguard.core.extractor.mock import MockFeatureExtractor

    return MockFeatureExtractor(dimension=8)


@pytest.fixture
def mock_transport():
    from mediguard.core.push.mock import MockPushTransport

    return MockPushTransport()


@dataclass
class _TextBlock:
    """Mimics fastmcp content block structure."""

    type: str
    text: str


class MockMCPClient:
    """Mock fastmcp.Client returning canned extractor responses."""

    def __init__(self, payload: dict[str, Any] | None = None) -> None:
        self.payload = payload or {"status": "ok", "model_version": "test-v1", "vector": [0.1, 0.2, 0.3]}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.raise_on_call: Exception | None = None
        self.delay_s: float = 0.0

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> list[Any]:
        import asyncio

        self.calls.append((tool_name, arguments))
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.raise_on_call is not None:
            raise self.raise_on_call
        if tool_name == "health_check":
            return [_TextBlock(type="text", text=json.dumps({"status": "ok"}))]
        return [_TextBlock(type="text", text=json.dumps(self.payload))]

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        pass


@pytest.fixture
def mock_mcp_client() -> MockMCPClient:
    return MockMCPClient()


# ---------------------------------------------------------------------------
# Domain wiring
# ---------------------------------------------------------------------------

@pytest.fixture
def schedule_index(repository):
    from mediguard.domains.medication.domain_logic.schedule_index import ScheduleIndex

    return ScheduleIndex(repository, tz="UTC")


@pytest.fixture
def coordinator(repository, mock_transport, attempts, schedule_index, audit_logger, clock):
    from mediguard.domains.medication.domain_logic.dispatch import DispatchCoordinator

    return DispatchCoordinator(
        repository,
        mock_transport,
        attempts,
        schedule_index,
        escalation_threshold=3,
        send_timeout_s=2.0,
        audit_logger=audit_logger,
        clock=clock,
    )


@pytest.fixture
def service(repository, mock_extractor, coordinator, audit_logger, clock):
    from mediguard.domains.medication.service import MedicationService

    return MedicationService(
        repository,
        mock_extractor,
        coordinator,
        audit_logger=audit_logger,
        clock=clock,
    )
