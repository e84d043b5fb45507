"""MCP tools for the pill catalog.

Registration turns a reference photo into a stored feature vector. Vectors
never leave the server; listings show catalog metadata only.
"""

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


def register_pill_tools(
    mcp: FastMCP,
    service: MedicationService,
    audit_logger: AuditLogger | None = None,
) -> None:
    """Register pill catalog tools on the MCP server."""

    @mcp.tool
    async def register_pill(
        ctx: Context,
        caller_id: str,
        image_base64: str,
        name: str = "",
        caller_role: str = "patient",
    ) -> str:
        """Register a medication from a clear photo of the pill.

        Args:
            caller_id: ID of the user registering the pill (becomes its owner).
            image_base64: Base64-encoded JPEG/PNG photo of the pill.
            name: Medication name (e.g., 'Metformin 500mg'). Defaults to 'unknown'.
            caller_role: 'patient', 'caregiver' or 'admin'.
        """
        try:
            with ToolCall(audit_logger, "register_pill", caller_id, caller_role, tool_input={"name": name}) as call:
                caller = caller_from(caller_id, caller_role)
                pill = await service.register_pill(caller, name, decode_image(image_base64))
                call.outcome = "registered"
        except MediGuardError as exc:
            return error(exc)
        return ok({"message": "Pill registered successfully", "pill": pill.summary()})

    @mcp.tool
    async def list_pills(
        ctx: Context,
        caller_id: str,
        caller_role: str = "patient",
        owner_id: str = "",
    ) -> str:
        """List registered medications (without feature vectors).

        Patients see their own pills; caregivers see every pill unless
        ``owner_id`` narrows the list.

        Args:
            caller_id: ID of the requesting user.
            caller_role: 'patient', 'caregiver' or 'admin'.
            owner_id: Optional owner to filter by.
        """
        try:
            with ToolCall(audit_logger, "list_pills", caller_id, caller_role) as call:
                caller = caller_from(caller_id, caller_role)
                pills = service.list_pills(caller, owner_id or None)
                call.outcome = str(len(pills))
        except MediGuardError as exc:
            return error(exc)
        return ok({"count": len(pills), "pills": [p.summary() for p in pills]})
