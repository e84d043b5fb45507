"""MCP tools for medication schedules.

Caregivers manage any patient's reminders; a patient manages their own.
Deleting a schedule only deactivates it.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

from mediguard.core.errors import MediGuardError
from mediguard.domains.medication.tools.responses import ToolCall, caller_from, error, ok

if TYPE_CHECKING:
    from mediguard.core.audit.logger import AuditLogger
    from mediguard.domains.medication.service import MedicationService

logger = logging.getLogger(__name__)


def register_schedule_tools(
    mcp: FastMCP,
    service: MedicationService,
    audit_logger: AuditLogger | None = None,
) -> None:
    """Register schedule management tools on the MCP server."""

    @mcp.tool
    async def create_schedule(
        ctx: Context,
        caller_id: str,
        time_of_day: str,
        medication_name: str = "",
        pill_id: str = "",
        patient_id: str = "",
        days_of_week: list[int] | None = None,
        caller_role: str = "patient",
    ) -> str:
        """Create a daily or weekly medication reminder.

        Args:
            caller_id: ID of the requesting user.
            time_of_day: Reminder time as HH:MM, 24h (e.g., '08:00').
            medication_name: Medication to take. Defaults to the pill's name when pill_id is given.
            pill_id: Optional registered pill expected at this reminder.
            patient_id: Patient the reminder is for. Defaults to the caller.
            days_of_week: Weekdays (0 = Sunday ... 6 = Saturday). Empty means every day.
            caller_role: 'patient', 'caregiver' or 'admin'.
        """
        try:
            with ToolCall(
                audit_logger, "create_schedule", caller_id, caller_role,
                tool_input={"time_of_day": time_of_day, "days_of_week": days_of_week},
            ) as call:
                schedule = service.create_schedule(
                    caller_from(caller_id, caller_role),
                    time_of_day=time_of_day,
                    patient_id=patient_id or None,
                    expected_pill_id=pill_id or None,
                    expected_medication_name=medication_name,
                    days_of_week=days_of_week,
                )
                call.schedule_id = schedule.schedule_id
                call.outcome = "created"
        except MediGuardError as exc:
            return error(exc)
        return ok({"schedule": schedule.as_dict()})

    @mcp.tool
    async def update_schedule(
        ctx: Context,
        caller_id: str,
        schedule_id: str,
        time_of_day: str | None = None,
        medication_name: str | None = None,
        pill_id: str | None = None,
        days_of_week: list[int] | None = None,
        active: bool | None = None,
        caller_role: str = "patient",
    ) -> str:
        """Change a reminder. Only the fields you pass are updated.

        Args:
            caller_id: ID of the requesting user.
            schedule_id: Reminder to change.
            time_of_day: New time as HH:MM, 24h.
            medication_name: New medication name.
            pill_id: New expected pill ('' clears it).
            days_of_week: New weekdays (0 = Sunday); [] means every day.
            active: Turn the reminder on or off.
            caller_role: 'patient', 'caregiver' or 'admin'.
        """
        patch = {
            key: value
            for key, value in (
                ("time_of_day", time_of_day),
                ("expected_medication_name", medication_name),
                ("expected_pill_id", pill_id),
                ("days_of_week", days_of_week),
                ("active", active),
            )
            if value is not None
        }
        try:
            with ToolCall(
                audit_logger, "update_schedule", caller_id, caller_role,
                tool_input={"fields": sorted(patch)}, schedule_id=schedule_id,
            ) as call:
                schedule = service.update_schedule(caller_from(caller_id, caller_role), schedule_id, patch)
                call.outcome = "updated"
        except MediGuardError as exc:
            return error(exc)
        return ok({"schedule": schedule.as_dict()})

    @mcp.tool
    async def delete_schedule(
        ctx: Context,
        caller_id: str,
        schedule_id: str,
        caller_role: str = "patient",
    ) -> str:
        """Deactivate a reminder. Its history is kept.

        Args:
            caller_id: ID of the requesting user.
            schedule_id: Reminder to deactivate.
            caller_role: 'patient', 'caregiver' or 'admin'.
        """
        try:
            with ToolCall(audit_logger, "delete_schedule", caller_id, caller_role, schedule_id=schedule_id) as call:
                service.delete_schedule(caller_from(caller_id, caller_role), schedule_id)
                call.outcome = "deactivated"
        except MediGuardError as exc:
            return error(exc)
        return ok({"schedule_id": schedule_id, "message": "Schedule deactivated"})

    @mcp.tool
    async def list_schedules(
        ctx: Context,
        caller_id: str,
        patient_id: str = "",
        active_only: bool = False,
        caller_role: str = "patient",
    ) -> str:
        """List medication reminders.

        Args:
            caller_id: ID of the requesting user.
            patient_id: Patient to list. Patients always see only their own.
            active_only: Hide deactivated reminders.
            caller_role: 'patient', 'caregiver' or 'admin'.
        """
        try:
            with ToolCall(audit_logger, "list_schedules", caller_id, caller_role) as call:
                schedules = service.list_schedules(
                    caller_from(caller_id, caller_role),
                    patient_id or None,
                    active_only=active_only,
                )
                call.outcome = str(len(schedules))
        except MediGuardError as exc:
            return error(exc)
        return ok({"count": len(schedules), "schedules": [s.as_dict() for s in schedules]})
