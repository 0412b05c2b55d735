"""Webhook notifications for protocol events.

Posts a JSON payload to every enabled channel subscribed to an event:

    {"event": "block", "timestamp": "...", "protocol_state": {...},
     "blocking_record": {...}}

Delivery is best effort. HTTP failures are logged and reported in the send
result, never raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from criticality.config import NotificationChannel, NotificationConfig
from criticality.domain.interfaces import NotificationServiceInterface
from criticality.domain.models import (
    BlockingRecord,
    NotificationEvent,
    ProtocolState,
    utc_now_iso,
)
from criticality.infrastructure.persistence.state_file import (
    record_to_dict,
    state_to_dict,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChannelSendResult:
    endpoint: str
    success: bool
    status_code: int | None = None
    error: str | None = None


@dataclass(frozen=True)
class NotificationSendResult:
    """Aggregate of per-channel delivery results."""

    results: tuple[ChannelSendResult, ...] = ()

    @property
    def all_succeeded(self) -> bool:
        return all(r.success for r in self.results)

    @property
    def any_succeeded(self) -> bool:
        return any(r.success for r in self.results)


def build_payload(
    event: NotificationEvent, payload: BlockingRecord | ProtocolState
) -> dict[str, Any]:
    """Webhook body for an event and its subject."""
    body: dict[str, Any] = {"event": event.value, "timestamp": utc_now_iso()}
    if isinstance(payload, BlockingRecord):
        substate: dict[str, Any] = {
            "kind": "Blocking",
            "query": payload.query,
            "blockedAt": payload.blocked_at,
        }
        if payload.options is not None:
            substate["options"] = list(payload.options)
        if payload.timeout_ms is not None:
            substate["timeoutMs"] = payload.timeout_ms
        body["blocking_record"] = record_to_dict(payload)
        body["protocol_state"] = {"phase": payload.phase.value, "substate": substate}
    else:
        body["protocol_state"] = state_to_dict(payload)
    return body


class WebhookNotificationService(NotificationServiceInterface):
    """
    Sends protocol events to configured webhook channels with httpx.

    Pass a client to control transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        config: NotificationConfig,
        client: httpx.Client | None = None,
        timeout: float = 10.0,
    ):
        self._config = config
        self._client = client or httpx.Client(timeout=timeout)

    def _subscribed(self, event: NotificationEvent) -> list[NotificationChannel]:
        if not self._config.enabled:
            return []
        return [c for c in self._config.channels if c.enabled and event in c.events]

    def has_subscribers(self, event: NotificationEvent) -> bool:
        return bool(self._subscribed(event))

    def _post(self, endpoint: str, body: dict[str, Any]) -> ChannelSendResult:
        try:
            response = self._client.post(endpoint, json=body)
        except httpx.HTTPError as e:
            logger.warning("Webhook failed for %s: %s", endpoint, e)
            return ChannelSendResult(endpoint=endpoint, success=False, error=str(e))

        if response.is_success:
            return ChannelSendResult(
                endpoint=endpoint, success=True, status_code=response.status_code
            )
        error = f"HTTP {response.status_code}: {response.reason_phrase}"
        logger.warning("Webhook failed for %s: %s", endpoint, error)
        return ChannelSendResult(
            endpoint=endpoint,
            success=False,
            status_code=response.status_code,
            error=error,
        )

    def send(
        self, event: NotificationEvent, body: dict[str, Any]
    ) -> NotificationSendResult:
        """Post a prepared body to every subscribed channel."""
        results = tuple(self._post(c.endpoint, body) for c in self._subscribed(event))
        logger.debug(
            "Sent %s notification to %d channel(s)", event.value, len(results)
        )
        return NotificationSendResult(results=results)

    def notify(
        self, event: NotificationEvent, payload: BlockingRecord | ProtocolState
    ) -> NotificationSendResult:
        return self.send(event, build_payload(event, payload))

    def close(self) -> None:
        self._client.close()
