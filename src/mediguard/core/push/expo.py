"""Expo push transport over HTTPS.

Posts a JSON array of messages to the Expo push endpoint and maps the
returned push tickets onto ``DeliveryTicket``. Expo accepts at most 100
messages per request.
"""

from __future__ import annotations

import logging
import re
from typing import Any

import httpx

from mediguard.core.errors import TransportUnavailableError
from mediguard.core.push import DeliveryTicket, PushMessage

logger = logging.getLogger(__name__)

EXPO_MAX_BATCH_SIZE = 100

_BRACKETED_TOKEN = re.compile(r"^Expo(nent)?PushToken\[.+\]$")
_BARE_TOKEN = re.compile(
    r"^[a-z\d]{8}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{12}$", re.IGNORECASE
)

# Ticket error codes that mean the device itself refused the message
_REJECTION_CODES = {"DeviceNotRegistered", "InvalidCredentials", "MessageTooBig"}


def is_expo_push_token(token: str) -> bool:
    """Same acceptance rule as the Expo server SDK."""
    if not isinstance(token, str) or not token:
        return False
    return bool(_BRACKETED_TOKEN.match(token) or _BARE_TOKEN.match(token))


class ExpoPushTransport:
    """PushTransport backed by the Expo push service.

    Usage::

        transport = ExpoPushTransport(timeout_s=10.0)
        tickets = await transport.send_batch([PushMessage(target=token, title="Hi", body="...")])

    An ``httpx.AsyncClient`` may be injected (tests use ``httpx.MockTransport``);
    otherwise a short-lived client is opened per batch.
    """

    def __init__(
        self,
        *,
        url: str = "https://exp.host/--/api/v2/push/send",
        access_token: str = "",
        timeout_s: float = 10.0,
        max_batch_size: int = EXPO_MAX_BATCH_SIZE,
        channel_id: str = "medication-reminders",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._access_token = access_token
        self._timeout_s = timeout_s
        self._max_batch_size = min(max_batch_size, EXPO_MAX_BATCH_SIZE)
        self._channel_id = channel_id
        self._client = client

    @property
    def max_batch_size(self) -> int:
        return self._max_batch_size

    def is_valid_target(self, token: str) -> bool:
        return is_expo_push_token(token)

    async def send_batch(self, messages: list[PushMessage]) -> list[DeliveryTicket]:
        if not messages:
            return []
        if len(messages) > self._max_batch_size:
            raise ValueError(
                f"Batch of {len(messages)} exceeds Expo limit of {self._max_batch_size}"
            )

        payload = [self._to_expo(m) for m in messages]
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"

        try:
            if self._client is not None:
                response = await self._client.post(
                    self._url, json=payload, headers=headers, timeout=self._timeout_s
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                    response = await client.post(self._url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransportUnavailableError(
                f"Expo push timed out after {self._timeout_s}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportUnavailableError(f"Expo push request failed: {exc}") from exc

        if response.status_code >= 500 or response.status_code == 429:
            raise TransportUnavailableError(
                f"Expo push unavailable (HTTP {response.status_code})"
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise TransportUnavailableError("Expo push returned a non-JSON body") from exc

        if response.status_code >= 400:
            # Request-level rejection: every message in the batch failed
            detail = _request_error_detail(body) or f"HTTP {response.status_code}"
            logger.warning("Expo rejected push batch of %d: %s", len(messages), detail)
            return [
                DeliveryTicket(target=m.target, status="rejected", detail=detail, user_id=m.user_id)
                for m in messages
            ]

        return _tickets_from_response(messages, body)

    def _to_expo(self, message: PushMessage) -> dict[str, Any]:
        return {
            "to": message.target,
            "title": message.title,
            "body": message.body,
            "data": message.data,
            "sound": "default",
            "priority": "high",
            "channelId": self._channel_id,
        }


def _request_error_detail(body: Any) -> str:
    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            first = errors[0]
            if isinstance(first, dict):
                return str(first.get("message") or first.get("code") or first)
            return str(first)
    return ""


def _tickets_from_response(messages: list[PushMessage], body: Any) -> list[DeliveryTicket]:
    """Pair Expo tickets with messages by position.

    Expo returns tickets in request order. Missing tickets are reported as
    errors rather than assumed delivered.
    """
    data = body.get("data") if isinstance(body, dict) else None
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        data = []

    tickets: list[DeliveryTicket] = []
    for index, message in enumerate(messages):
        raw = data[index] if index < len(data) else None
        if not isinstance(raw, dict):
            tickets.append(DeliveryTicket(
                target=message.target, status="error",
                detail="missing ticket", user_id=message.user_id,
            ))
            continue

        if raw.get("status") == "ok":
            tickets.append(DeliveryTicket(
                target=message.target, status="delivered",
                ticket_id=raw.get("id"), user_id=message.user_id,
            ))
            continue

        details = raw.get("details") or {}
        code = details.get("error") if isinstance(details, dict) else None
        status = "rejected" if code in _REJECTION_CODES else "error"
        tickets.append(DeliveryTicket(
            target=message.target,
            status=status,
            detail=str(code or raw.get("message") or "unknown error"),
            user_id=message.user_id,
        ))
    return tickets
