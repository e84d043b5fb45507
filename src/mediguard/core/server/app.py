"""MediGuard MCP server: application factory.

This module provides:
- create_app() for testability (integration tests create fresh server instances)
- Module-level `mcp` variable for FastMCP discovery
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Callable

from fastmcp import FastMCP

from mediguard.core.audit.logger import AuditLogger
from mediguard.core.config.settings import get_settings
from mediguard.core.extractor import FeatureExtractor
from mediguard.core.extractor.client import ExtractorMCPClient
from mediguard.core.extractor.mock import MockFeatureExtractor
from mediguard.core.push import PushTransport
from mediguard.core.push.expo import ExpoPushTransport
from mediguard.core.push.mock import MockPushTransport
from mediguard.core.storage.attempts import AttemptCounterStore
from mediguard.core.storage.database import MediGuardDatabase
from mediguard.core.storage.encryption import EncryptionError, FieldEncryptor
from mediguard.core.storage.repository import MediGuardRepository
from mediguard.domains.medication.domain_logic.dispatch import DispatchCoordinator
from mediguard.domains.medication.domain_logic.match_models import MatchPolicy, SimilarityWeights
from mediguard.domains.medication.domain_logic.schedule_index import ScheduleIndex
from mediguard.domains.medication.domain_logic.trigger_loop import TriggerLoop
from mediguard.domains.medication.service import MedicationService
from mediguard.domains.medication.tools.audit_tools import register_audit_tools
from mediguard.domains.medication.tools.notification_tools import register_notification_tools
from mediguard.domains.medication.tools.pill_tools import register_pill_tools
from mediguard.domains.medication.tools.schedule_tools import register_schedule_tools
from mediguard.domains.medication.tools.verification_tools import register_verification_tools

logger = logging.getLogger(__name__)

SERVER_NAME = "MediGuard"
SERVER_VERSION = "0.1.0"


def _open_repository(db_path: str, encryption_key: str) -> MediGuardRepository:
    if encryption_key:
        encryptor = FieldEncryptor(encryption_key)
    else:
        logger.warning(
            "No ENCRYPTION_KEY configured; using an ephemeral key. "
            "Stored device metadata will be unreadable after a restart."
        )
        encryptor = FieldEncryptor(FieldEncryptor.generate_key())

    database = MediGuardDatabase(db_path)
    database.initialize()
    logger.info("Data bank initialized: %s (schema v%d)", db_path, database.get_schema_version())
    return MediGuardRepository(database, encryptor)


def create_app(
    *,
    repository_override: MediGuardRepository | None = None,
    extractor_override: FeatureExtractor | None = None,
    transport_override: PushTransport | None = None,
    clock_override: Callable[[], datetime] | None = None,
) -> FastMCP:
    """Create and configure the MediGuard MCP server.

    This is the main application factory. It:
    1. Opens the SQLite data bank (pills, schedules, devices, counters, audit)
    2. Creates the feature extractor client and the push transport
    3. Wires the matcher, schedule index, dispatch coordinator and trigger loop
    4. Registers all tools
    5. Runs the trigger loop for the server's lifetime when enabled
    """
    settings = get_settings()

    # --- Storage ---
    if repository_override is not None:
        repository = repository_override
    else:
        try:
            repository = _open_repository(settings.db_path, settings.encryption_key)
        except EncryptionError as exc:
            raise RuntimeError(f"Invalid ENCRYPTION_KEY: {exc}") from exc
    database = repository.database
    audit_logger = AuditLogger(database)

    # --- Feature extractor ---
    if extractor_override is not None:
        extractor = extractor_override
    elif settings.extractor_provider == "mock":
        extractor = MockFeatureExtractor()
        logger.info("Using mock feature extractor")
    else:
        from fastmcp import Client as MCPClient

        extractor = ExtractorMCPClient(MCPClient(settings.extractor_url), timeout_s=settings.extractor_timeout_s)
        logger.info("Feature extractor configured for %s", settings.extractor_url)

    # --- Push transport ---
    if transport_override is not None:
        transport = transport_override
    elif settings.push_provider == "mock":
        transport = MockPushTransport(max_batch_size=settings.push_max_batch_size)
        logger.info("Using mock push transport")
    else:
        transport = ExpoPushTransport(
            url=settings.expo_push_url,
            access_token=settings.expo_access_token,
            timeout_s=settings.push_timeout_s,
            max_batch_size=settings.push_max_batch_size,
            channel_id=settings.push_channel_id,
        )

    # --- Domain wiring ---
    clock_kwargs = {"clock": clock_override} if clock_override is not None else {}
    attempts = AttemptCounterStore(
        database, ttl=timedelta(hours=settings.attempt_ttl_hours), **clock_kwargs
    )
    index = ScheduleIndex(repository, tz=settings.schedule_timezone)
    coordinator = DispatchCoordinator(
        repository,
        transport,
        attempts,
        index,
        escalation_threshold=settings.escalation_threshold,
        send_timeout_s=settings.push_timeout_s + 5.0,
        audit_logger=audit_logger,
        **clock_kwargs,
    )
    service = MedicationService(
        repository,
        extractor,
        coordinator,
        policy=MatchPolicy.from_settings(settings),
        weights=SimilarityWeights(settings.cosine_weight, settings.euclidean_weight),
        registration_extractions=settings.registration_extractions,
        notify_on_confirm=settings.notify_caregivers_on_confirm,
        audit_logger=audit_logger,
        **clock_kwargs,
    )
    trigger_loop = TriggerLoop(index, coordinator, interval_s=settings.tick_interval_s, **clock_kwargs)

    @asynccontextmanager
    async def lifespan(app: FastMCP):
        if settings.scheduler_enabled:
            trigger_loop.start()
        try:
            yield {}
        finally:
            await trigger_loop.stop()
            attempts.purge_expired()

    # --- Server instance ---
    server = FastMCP(
        SERVER_NAME,
        instructions=(
            "MediGuard medication verification server. Registers pills from "
            "photos, verifies that the pill a patient is about to take matches "
            "their schedule, sends reminders and alerts caregivers after "
            "repeated failed verifications."
        ),
        lifespan=lifespan,
    )

    @server.tool
    def health_check() -> dict:
        """Check server health and return basic status information."""
        return {
            "status": "ok",
            "server": SERVER_NAME,
            "version": SERVER_VERSION,
            "extractor": extractor.model_version,
            "push_provider": type(transport).__name__,
            "scheduler_enabled": settings.scheduler_enabled,
            "scheduler_state": trigger_loop.state,
            "schedule_timezone": index.tz.key,
            "pills_registered": repository.count_pills(),
            "notification_targets": repository.count_notification_targets(),
        }

    register_pill_tools(server, service, audit_logger)
    register_verification_tools(server, service, audit_logger)
    register_schedule_tools(server, service, audit_logger)
    register_notification_tools(server, service, trigger_loop, audit_logger)
    register_audit_tools(server, audit_logger)
    logger.info("MediGuard tools registered")

    return server


# Module-level instance for FastMCP discovery.
# Lazy: only created when this module is loaded directly (not when tests import create_app).
def __getattr__(name: str):
    if name == "mcp":
        global mcp  # noqa: PLW0603
        mcp = create_app()
        return mcp
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
