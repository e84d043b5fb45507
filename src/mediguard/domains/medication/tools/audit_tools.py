"""MCP tools for viewing the audit trail.

The audit log holds no images, vectors or device tokens: only which tool ran,
for which schedule, with what outcome, and hashed input references.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

from mediguard.core.errors import MediGuardError, PermissionDeniedError
from mediguard.domains.medication.tools.responses import caller_from, error

if TYPE_CHECKING:
    from mediguard.core.audit.logger import AuditLogger

logger = logging.getLogger(__name__)

_SUMMARY_ACTIONS = ("verification", "reminder_dispatch", "escalation", "schedule_change")


def register_audit_tools(
    mcp: FastMCP,
    audit_logger: AuditLogger,
) -> None:
    """Register audit trail tools on the MCP server."""

    @mcp.tool
    async def audit_summary(
        ctx: Context,
        caller_id: str,
        days: int = 7,
        schedule_id: str = "",
        caller_role: str = "caregiver",
    ) -> str:
        """View recent verifications, reminders and caregiver escalations.

        Args:
            caller_id: ID of the requesting user.
            days: Number of days to look back (default: 7).
            schedule_id: Optional schedule to narrow the event list.
            caller_role: Must be 'caregiver' or 'admin'.
        """
        try:
            caller = caller_from(caller_id, caller_role)
            if not caller.is_caregiver:
                raise PermissionDeniedError("Only caregivers and admins may view the audit trail")
        except MediGuardError as exc:
            return error(exc)

        since = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        counts = {action: audit_logger.count_events(action=action, since=since) for action in _SUMMARY_ACTIONS}
        recent_events = audit_logger.get_events(since=since, schedule_id=schedule_id or None, limit=20)

        display_events = []
        for event in recent_events:
            display_events.append({
                "timestamp": event.get("timestamp"),
                "action": event.get("action"),
                "tool_name": event.get("tool_name"),
                "schedule_id": event.get("schedule_id"),
                "outcome": event.get("outcome"),
                "status": event.get("status"),
                "duration_ms": event.get("duration_ms"),
            })

        return json.dumps({
            "status": "ok",
            "period_days": days,
            "total_events": audit_logger.count_events(since=since),
            "counts": counts,
            "recent_events": display_events,
        }, indent=2)
