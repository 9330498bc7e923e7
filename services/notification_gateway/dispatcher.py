from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from shared.contracts.models import DeliveryReceipt, NotificationMessage

logger = logging.getLogger(__name__)


class NotificationDispatcher(Protocol):
    def send(self, message: NotificationMessage) -> DeliveryReceipt: ...


@dataclass
class RecordingDispatcher:
    """Keeps outbound messages in memory instead of delivering them."""

    sent: list[NotificationMessage] = field(default_factory=list)

    def send(self, message: NotificationMessage) -> DeliveryReceipt:
        self.sent.append(message)
        logger.debug("Recorded %s reminder for %s", message.channel.value, message.recipient)
        return DeliveryReceipt(status="sent", channel=message.channel, detail="recorded")


class HttpNotificationDispatcher:
    """Posts messages to the notification gateway service."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.Client(timeout=timeout)

    def send(self, message: NotificationMessage) -> DeliveryReceipt:
        response = self.client.post(f"{self.base_url}/send", json=message.model_dump(mode="json"))
        response.raise_for_status()
        return DeliveryReceipt.model_validate(response.json())

    def close(self) -> None:
        self.client.close()
