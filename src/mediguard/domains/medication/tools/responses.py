"""Shared plumbing for the medication MCP tools.

Tools return JSON strings. Taxonomy errors become structured error responses
instead of MCP protocol errors so a mobile client can branch on
``error_type``; anything else propagates.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import time
from typing import TYPE_CHECKING, Any

from mediguard.core.errors import MediGuardError, ValidationError
from mediguard.core.storage.models import ROLES, Caller

if TYPE_CHECKING:
    from mediguard.core.audit.logger import AuditLogger

logger = logging.getLogger(__name__)


def caller_from(caller_id: str, caller_role: str) -> Caller:
    if not caller_id:
        raise ValidationError("caller_id is required")
    if caller_role not in ROLES:
        raise ValidationError(f"caller_role must be one of {', '.join(ROLES)}")
    return Caller(id=caller_id, role=caller_role)


def decode_image(image_base64: str) -> bytes:
    """Decode a base64 image (a ``data:`` URI prefix is tolerated)."""
    if not image_base64:
        raise ValidationError("image_base64 is required")
    payload = image_base64.split(",", 1)[1] if image_base64.startswith("data:") else image_base64
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError("image_base64 is not valid base64") from exc


def ok(payload: dict[str, Any]) -> str:
    return json.dumps({"status": "ok", **payload}, default=str)


def error(exc: MediGuardError) -> str:
    return json.dumps({
        "status": "error",
        "error_type": type(exc).__name__,
        "message": str(exc),
    })


class ToolCall:
    """Times one tool invocation and writes its audit entry on exit.

    Usage::

        with ToolCall(audit_logger, "verify_pill", caller_id, caller_role) as call:
            ...
            call.outcome = verdict.kind
    """

    def __init__(
        self,
        audit_logger: AuditLogger | None,
        tool_name: str,
        caller_id: str,
        caller_role: str,
        *,
        tool_input: Any = None,
        schedule_id: str | None = None,
    ) -> None:
        self._audit = audit_logger
        self.tool_name = tool_name
        self.caller_id = caller_id
        self.caller_role = caller_role
        self.tool_input = tool_input
        self.schedule_id = schedule_id
        self.outcome: str | None = None
        self.metadata: dict[str, Any] = {}
        self._start = 0.0

    def __enter__(self) -> ToolCall:
        self._start = time.monotonic()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self._audit is not None:
            self._audit.log_tool_call(
                self.tool_name,
                self.tool_input,
                caller_id=self.caller_id or None,
                caller_role=self.caller_role or None,
                schedule_id=self.schedule_id,
                outcome=self.outcome,
                duration_ms=(time.monotonic() - self._start) * 1000,
                status="success" if exc is None else "failure",
                error_type=type(exc).__name__ if exc is not None else None,
                metadata=self.metadata,
            )
        if exc is not None and not isinstance(exc, MediGuardError):
            logger.error("Tool %s failed: %s", self.tool_name, exc)
        return False
