"""MCP tools for pill verification."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

from mediguard.core.errors import MediGuardError
from mediguard.domains.medication.tools.responses import ToolCall, caller_from, decode_image, error, ok

if TYPE_CHECKING:
    from mediguard.core.audit.logger import AuditLogger
    from mediguard.domains.medication.service import MedicationService

logger = logging.getLogger(__name__)


def register_verification_tools(
    mcp: FastMCP,
    service: MedicationService,
    audit_logger: AuditLogger | None = None,
) -> None:
    """Register verification tools on the MCP server."""

    @mcp.tool
    async def verify_pill(
        ctx: Context,
        caller_id: str,
        image_base64: str,
        schedule_id: str = "",
        filter_by_user: bool = False,
        caller_role: str = "patient",
    ) -> str:
        """Check whether the pill in a photo is the one that should be taken.

        With a ``schedule_id`` the photo is compared with that schedule's
        medication, and repeated failures alert the caregivers. Without one,
        the whole catalog is searched.

        Args:
            caller_id: ID of the user taking the photo.
            image_base64: Base64-encoded photo of the pill.
            schedule_id: Optional reminder this verification answers.
            filter_by_user: Without a schedule, only compare against the caller's own pills.
            caller_role: 'patient', 'caregiver' or 'admin'.
        """
        try:
            with ToolCall(
                audit_logger, "verify_pill", caller_id, caller_role,
                tool_input={"schedule_id": schedule_id, "filter_by_user": filter_by_user},
                schedule_id=schedule_id or None,
            ) as call:
                caller = caller_from(caller_id, caller_role)
                result = await service.verify(
                    caller,
                    decode_image(image_base64),
                    schedule_id or None,
                    filter_by_user=filter_by_user,
                )
                call.outcome = result.verdict.kind
        except MediGuardError as exc:
            return error(exc)
        return ok(result.as_dict())

    @mcp.tool
    async def abandon_verification(
        ctx: Context,
        caller_id: str,
        schedule_id: str,
        caller_role: str = "patient",
    ) -> str:
        """Give up on verifying a scheduled dose and clear today's failure count.

        Args:
            caller_id: ID of the requesting user.
            schedule_id: The reminder being abandoned.
            caller_role: 'patient', 'caregiver' or 'admin'.
        """
        try:
            with ToolCall(audit_logger, "abandon_verification", caller_id, caller_role, schedule_id=schedule_id) as call:
                service.abandon_verification(caller_from(caller_id, caller_role), schedule_id)
                call.outcome = "abandoned"
        except MediGuardError as exc:
            return error(exc)
        return ok({"schedule_id": schedule_id, "message": "Verification session reset"})
