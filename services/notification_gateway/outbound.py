from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List

from shared.contracts.enums import ChannelType
from shared.contracts.models import DeliveryReceipt, NotificationMessage


@dataclass
class DeliveryResult:
    mode: str
    payload: Dict[str, object]


class EmailSendAPI:
    def send(self, to: str, subject: str, body: str) -> DeliveryResult:
        return DeliveryResult(mode="EMAIL", payload={"to": to, "subject": subject, "body": body})


class PushSendAPI:
    def send(self, endpoint: str, title: str, body: str, data: Dict[str, object]) -> DeliveryResult:
        return DeliveryResult(
            mode="PUSH",
            payload={
                "endpoint": endpoint,
                "title": title,
                "body": body,
                "data": data,
            },
        )


class AuditTrail:
    def __init__(self) -> None:
        self.records: List[Dict[str, object]] = []


class NotificationGateway:
    def __init__(self, email_api: EmailSendAPI, push_api: PushSendAPI, audit_trail: AuditTrail) -> None:
        self.email_api = email_api
        self.push_api = push_api
        self.audit_trail = audit_trail

    def deliver(self, message: NotificationMessage) -> DeliveryReceipt:
        if message.channel == ChannelType.EMAIL:
            if "@" not in message.recipient:
                self._log_delivery(message, "failed")
                return DeliveryReceipt(status="failed", channel=message.channel, detail="invalid email recipient")
            result = self.email_api.send(to=message.recipient, subject=message.subject, body=message.body)
        else:
            data = {key: value for key, value in message.metadata.items() if key in {"dose_ids", "url"}}
            result = self.push_api.send(
                endpoint=message.recipient,
                title=message.subject,
                body=message.body,
                data=data,
            )

        self._log_delivery(message, "sent")
        return DeliveryReceipt(status="sent", channel=message.channel, detail=result.mode.lower())

    def _log_delivery(self, message: NotificationMessage, status: str) -> None:
        self.audit_trail.records.append(
            {
                "type": "reminder_delivery",
                "channel": message.channel.value,
                "recipient": message.recipient,
                "status": status,
                "logged_at": datetime.now(timezone.utc).isoformat(),
            }
        )
