"""MCP tools for users, devices and reminder delivery."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from fastmcp import Context, FastMCP

from mediguard.core.errors import MediGuardError, PermissionDeniedError, ValidationError
from mediguard.domains.medication.tools.responses import ToolCall, caller_from, error, ok

if TYPE_CHECKING:
    from mediguard.core.audit.logger import AuditLogger
    from mediguard.domains.medication.domain_logic.trigger_loop import TriggerLoop
    from mediguard.domains.medication.service import MedicationService

logger = logging.getLogger(__name__)


def register_notification_tools(
    mcp: FastMCP,
    service: MedicationService,
    trigger_loop: TriggerLoop,
    audit_logger: AuditLogger | None = None,
) -> None:
    """Register user, device and reminder tools on the MCP server."""

    @mcp.tool
    async def register_user(
        ctx: Context,
        caller_id: str,
        user_id: str = "",
        display_name: str = "",
        role: str = "patient",
        caller_role: str = "patient",
    ) -> str:
        """Add or update a user in the role directory used for caregiver alerts.

        Args:
            caller_id: ID of the requesting user.
            user_id: User to register. Defaults to the caller.
            display_name: Name shown in caregiver alerts.
            role: 'patient', 'caregiver' or 'admin'.
            caller_role: Role of the requesting user.
        """
        try:
            with ToolCall(audit_logger, "register_user", caller_id, caller_role, tool_input={"role": role}) as call:
                user = service.register_user(
                    caller_from(caller_id, caller_role), user_id or caller_id, display_name, role
                )
                call.outcome = user.role
        except MediGuardError as exc:
            return error(exc)
        return ok({"user": {"user_id": user.user_id, "display_name": user.display_name, "role": user.role}})

    @mcp.tool
    async def list_users(
        ctx: Context,
        caller_id: str,
        role: str = "",
        caller_role: str = "caregiver",
    ) -> str:
        """List users in the role directory (caregiver/admin only).

        Args:
            caller_id: ID of the requesting user.
            role: Optional filter: 'patient', 'caregiver' or 'admin'.
            caller_role: Must be 'caregiver' or 'admin'.
        """
        try:
            with ToolCall(audit_logger, "list_users", caller_id, caller_role, tool_input={"role": role}) as call:
                users = service.list_users(caller_from(caller_id, caller_role), role or None)
                call.outcome = str(len(users))
        except MediGuardError as exc:
            return error(exc)
        return ok({
            "users": [
                {
                    "user_id": u.user_id,
                    "display_name": u.display_name,
                    "role": u.role,
                    "created_at": u.created_at,
                }
                for u in users
            ],
            "count": len(users),
        })

    @mcp.tool
    async def list_notification_targets(
        ctx: Context,
        caller_id: str,
        user_id: str = "",
        caller_role: str = "patient",
    ) -> str:
        """List registered push devices.

        Patients see their own devices. Caregivers and admins see one user's
        devices, or every device when ``user_id`` is omitted.

        Args:
            caller_id: ID of the requesting user.
            user_id: Device owner to filter by.
            caller_role: 'patient', 'caregiver' or 'admin'.
        """
        try:
            with ToolCall(audit_logger, "list_notification_targets", caller_id, caller_role) as call:
                targets = service.list_notification_targets(caller_from(caller_id, caller_role), user_id or None)
                call.outcome = str(len(targets))
        except MediGuardError as exc:
            return error(exc)
        return ok({
            "targets": [
                {"user_id": t.user_id, "token": t.device_token, "platform": t.platform_hint or None}
                for t in targets
            ],
            "count": len(targets),
        })

    @mcp.tool
    async def send_to_role(
        ctx: Context,
        caller_id: str,
        role: str,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
        caller_role: str = "caregiver",
    ) -> str:
        """Push one message to every device of every user with a role.

        Args:
            caller_id: ID of the requesting user.
            role: Recipient role: 'patient', 'caregiver' or 'admin'.
            title: Notification title.
            body: Notification text.
            data: Optional payload delivered with the notification.
            caller_role: Must be 'caregiver' or 'admin'.
        """
        try:
            with ToolCall(audit_logger, "send_to_role", caller_id, caller_role, tool_input={"role": role}) as call:
                result = await service.send_to_role(caller_from(caller_id, caller_role), role, title, body, data)
                call.outcome = result.status
        except MediGuardError as exc:
            return error(exc)
        if result.status == "no_targets":
            return ok({"sent": False, "message": "No tokens for this role", "dispatch": result.as_dict()})
        return ok({"sent": result.delivered > 0, "dispatch": result.as_dict()})

    @mcp.tool
    async def register_notification_target(
        ctx: Context,
        caller_id: str,
        push_token: str,
        user_id: str = "",
        device_info: dict[str, Any] | None = None,
        platform: str = "",
        caller_role: str = "patient",
    ) -> str:
        """Register a device's push token. Re-registering updates it in place.

        Args:
            caller_id: ID of the requesting user.
            push_token: Expo push token, e.g. 'ExponentPushToken[xxxx]'.
            user_id: Owner of the device. Defaults to the caller.
            device_info: Optional device metadata (stored encrypted).
            platform: Optional platform hint ('ios', 'android').
            caller_role: 'patient', 'caregiver' or 'admin'.
        """
        try:
            with ToolCall(audit_logger, "register_notification_target", caller_id, caller_role) as call:
                target_id = service.register_notification_target(
                    caller_from(caller_id, caller_role),
                    push_token,
                    user_id=user_id or None,
                    device_info=device_info,
                    platform_hint=platform,
                )
                call.outcome = "registered"
        except MediGuardError as exc:
            return error(exc)
        return ok({"target_id": target_id, "message": "Push token registered"})

    @mcp.tool
    async def send_test_reminder(
        ctx: Context,
        caller_id: str,
        user_id: str = "",
        medication_name: str = "Test Medication",
        caller_role: str = "patient",
    ) -> str:
        """Send a sample reminder to every device of a user.

        Args:
            caller_id: ID of the requesting user.
            user_id: Recipient. Defaults to the caller.
            medication_name: Name shown in the test reminder.
            caller_role: 'patient', 'caregiver' or 'admin'.
        """
        try:
            with ToolCall(audit_logger, "send_test_reminder", caller_id, caller_role) as call:
                result = await service.send_test_reminder(
                    caller_from(caller_id, caller_role), user_id or None, medication_name
                )
                call.outcome = result.status
        except MediGuardError as exc:
            return error(exc)
        return ok({"dispatch": result.as_dict()})

    @mcp.tool
    async def run_reminder_tick(
        ctx: Context,
        caller_id: str,
        at: str = "",
        caller_role: str = "admin",
    ) -> str:
        """Run one reminder tick now (admin/caregiver only).

        Reminders already sent this minute are not sent again.

        Args:
            caller_id: ID of the requesting user.
            at: Optional ISO 8601 instant to evaluate instead of now.
            caller_role: Must be 'caregiver' or 'admin'.
        """
        try:
            with ToolCall(audit_logger, "run_reminder_tick", caller_id, caller_role) as call:
                caller = caller_from(caller_id, caller_role)
                if not caller.is_caregiver:
                    raise PermissionDeniedError("Only caregivers and admins may run reminder ticks")
                instant = _parse_instant(at) if at else None
                report = await trigger_loop.tick(instant)
                call.outcome = "skipped" if report.skipped else str(report.due)
        except MediGuardError as exc:
            return error(exc)
        return ok({"tick": report.as_dict(), "state": trigger_loop.state})


def _parse_instant(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise ValidationError(f"at must be an ISO 8601 timestamp, got {value!r}") from exc
