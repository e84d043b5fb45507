"""Push delivery transports: abstraction over the device notification service."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, runtime_checkable

DeliveryStatus = Literal["delivered", "rejected", "error"]


@dataclass
class PushMessage:
    """One notification addressed to one device token."""

    target: str
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)
    user_id: str = ""


@dataclass
class DeliveryTicket:
    """Per-message result reported by the transport."""

    target: str
    status: DeliveryStatus
    detail: str = ""
    ticket_id: str | None = None
    user_id: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "delivered"


@runtime_checkable
class PushTransport(Protocol):
    """Accepts batches of notifications and returns one ticket per message.

    ``send_batch`` never receives more than ``max_batch_size`` messages; the
    dispatch coordinator chunks before calling. Timeouts and unreachable
    endpoints surface as ``TransportUnavailableError``.
    """

    @property
    def max_batch_size(self) -> int:
        ...

    def is_valid_target(self, token: str) -> bool:
        """Whether ``token`` is a well-formed address for this transport."""
        ...

    async def send_batch(self, messages: list[PushMessage]) -> list[DeliveryTicket]:
        ...
