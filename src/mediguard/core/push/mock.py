"""In-process push transport for development and tests."""

from __future__ import annotations

import uuid

from mediguard.core.errors import TransportUnavailableError
from mediguard.core.push import DeliveryTicket, PushMessage
from mediguard.core.push.expo import is_expo_push_token


class MockPushTransport:
    """Records every batch and reports all messages as delivered.

    ``rejected_targets`` are answered with a ``rejected`` ticket, and
    ``fail_next`` batches raise ``TransportUnavailableError`` to simulate an
    outage.
    """

    def __init__(
        self,
        *,
        max_batch_size: int = 100,
        rejected_targets: set[str] | None = None,
        fail_next: int = 0,
    ) -> None:
        self._max_batch_size = max_batch_size
        self.rejected_targets = set(rejected_targets or ())
        self.fail_next = fail_next
        self.batches: list[list[PushMessage]] = []

    @property
    def max_batch_size(self) -> int:
        return self._max_batch_size

    @property
    def sent_messages(self) -> list[PushMessage]:
        return [m for batch in self.batches for m in batch]

    def is_valid_target(self, token: str) -> bool:
        return is_expo_push_token(token)

    async def send_batch(self, messages: list[PushMessage]) -> list[DeliveryTicket]:
        if len(messages) > self._max_batch_size:
            raise ValueError(f"Batch of {len(messages)} exceeds {self._max_batch_size}")
        if self.fail_next > 0:
            self.fail_next -= 1
            raise TransportUnavailableError("mock transport outage")

        self.batches.append(list(messages))
        tickets = []
        for m in messages:
            if m.target in self.rejected_targets:
                tickets.append(DeliveryTicket(
                    target=m.target, status="rejected",
                    detail="DeviceNotRegistered", user_id=m.user_id,
                ))
            else:
                tickets.append(DeliveryTicket(
                    target=m.target, status="delivered",
                    ticket_id=str(uuid.uuid4()), user_id=m.user_id,
                ))
        return tickets
