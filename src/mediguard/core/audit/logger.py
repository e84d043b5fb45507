"""Audit logger: PHI-free trail of verifications, dispatches and escalations.

Every caller-facing tool invocation, verification verdict, reminder dispatch
and caregiver escalation is recorded in the ``audit_log`` table. Nothing that
identifies a medication image is stored:

* ``tool_input_hash`` is a SHA-256 of canonical JSON, never the raw input.
* Verdicts are stored as their kind and confidence level, never as vectors.
* Dispatch entries carry counts, never device tokens.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from mediguard.core.storage.database import MediGuardDatabase

logger = logging.getLogger(__name__)


def _hash_input(data: Any) -> str:
    """SHA-256 of canonical JSON, or empty string if not serializable."""
    try:
        canonical = json.dumps(data, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()
    except (TypeError, ValueError):
        return ""


@dataclass
class AuditEvent:
    """A single audit log entry."""

    action: str                     # 'tool_invocation' | 'verification' | 'reminder_dispatch' | 'escalation' | 'schedule_change'
    tool_name: str = ""
    tool_input_hash: str = ""
    caller_id: str | None = None
    caller_role: str | None = None
    schedule_id: str | None = None
    outcome: str | None = None      # verdict kind or dispatch status
    duration_ms: float | None = None
    status: str = "success"         # 'success' | 'failure'
    error_type: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class AuditLogger:
    """Records audit events to the ``audit_log`` SQLite table.

    Writes are committed immediately. A failed write is logged and dropped:
    auditing never blocks the verification or reminder flow that produced it.

    Usage::

        audit = AuditLogger(db)
        audit.log_verification(
            caller_id="u-1", schedule_id="s-1", outcome="no_match",
            metadata={"confidence": "LOW", "failure_count": 2},
        )
    """

    def __init__(self, database: MediGuardDatabase) -> None:
        self._db = database

    # ---------------------------------------------------------------
    # Write
    # ---------------------------------------------------------------

    def log_event(self, event: AuditEvent) -> str:
        """Insert an audit event and return its UUID, or "" if the write failed."""
        event_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc).isoformat()
        metadata_json = (
            json.dumps(event.metadata, separators=(",", ":"), default=str)
            if event.metadata
            else None
        )

        try:
            conn = self._db.connection
            conn.execute(
                """INSERT INTO audit_log
                   (id, timestamp, action, tool_name, tool_input_hash,
                    caller_id, caller_role, schedule_id, outcome,
                    duration_ms, status, error_type, metadata_json)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    event_id,
                    now,
                    event.action,
                    event.tool_name or None,
                    event.tool_input_hash or None,
                    event.caller_id,
                    event.caller_role,
                    event.schedule_id,
                    event.outcome,
                    event.duration_ms,
                    event.status,
                    event.error_type,
                    metadata_json,
                ),
            )
            conn.commit()
        except Exception:
            logger.exception("Failed to write audit event, event lost")
            return ""

        return event_id

    def log_tool_call(
        self,
        tool_name: str,
        tool_input: Any = None,
        *,
        caller_id: str | None = None,
        caller_role: str | None = None,
        schedule_id: str | None = None,
        outcome: str | None = None,
        duration_ms: float | None = None,
        status: str = "success",
        error_type: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Convenience wrapper for logging a tool invocation.

        ``tool_input`` is hashed, never stored raw.
        """
        return self.log_event(AuditEvent(
            action="tool_invocation",
            tool_name=tool_name,
            tool_input_hash=_hash_input(tool_input) if tool_input else "",
            caller_id=caller_id,
            caller_role=caller_role,
            schedule_id=schedule_id,
            outcome=outcome,
            duration_ms=duration_ms,
            status=status,
            error_type=error_type,
            metadata=metadata or {},
        ))

    def log_verification(
        self,
        *,
        caller_id: str | None,
        schedule_id: str | None,
        outcome: str,
        duration_ms: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Record a verdict (kind and confidence only)."""
        return self.log_event(AuditEvent(
            action="verification",
            caller_id=caller_id,
            schedule_id=schedule_id,
            outcome=outcome,
            duration_ms=duration_ms,
            metadata=metadata or {},
        ))

    def log_dispatch(
        self,
        *,
        action: str,
        schedule_id: str | None,
        outcome: str,
        sent: int = 0,
        failed: int = 0,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Record a reminder dispatch or caregiver escalation summary."""
        status = "failure" if outcome == "failed" else "success"
        return self.log_event(AuditEvent(
            action=action,
            schedule_id=schedule_id,
            outcome=outcome,
            status=status,
            metadata={**(metadata or {}), "sent": sent, "failed": failed},
        ))

    # ---------------------------------------------------------------
    # Read
    # ---------------------------------------------------------------

    def get_events(
        self,
        *,
        action: str | None = None,
        schedule_id: str | None = None,
        since: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Query audit events with optional filters, newest first."""
        conditions: list[str] = []
        params: list[Any] = []

        if action:
            conditions.append("action = ?")
            params.append(action)
        if schedule_id:
            conditions.append("schedule_id = ?")
            params.append(schedule_id)
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)

        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        query = f"SELECT * FROM audit_log{where} ORDER BY timestamp DESC LIMIT ?"
        params.append(limit)

        rows = self._db.connection.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def count_events(self, *, action: str | None = None, since: str | None = None) -> int:
        """Count audit events, optionally by action and lower time bound."""
        conditions: list[str] = []
        params: list[Any] = []
        if action:
            conditions.append("action = ?")
            params.append(action)
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)
        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        row = self._db.connection.execute(
            f"SELECT COUNT(*) FROM audit_log{where}", params
        ).fetchone()
        return row[0]
