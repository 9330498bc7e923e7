from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI

from services.notification_gateway.outbound import AuditTrail, EmailSendAPI, NotificationGateway, PushSendAPI
from shared.contracts.models import DeliveryReceipt, NotificationMessage

app = FastAPI(title="notification_gateway")
gateway = NotificationGateway(EmailSendAPI(), PushSendAPI(), AuditTrail())
MESSAGE_LOG: list[dict[str, Any]] = []
MAX_LOG_ENTRIES = 1000


def _append_log(entry: dict[str, Any]) -> None:
    MESSAGE_LOG.append(entry)
    if len(MESSAGE_LOG) > MAX_LOG_ENTRIES:
        del MESSAGE_LOG[0 : len(MESSAGE_LOG) - MAX_LOG_ENTRIES]


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok", "service": "notification_gateway"}


@app.post("/send")
def send_message(message: NotificationMessage) -> DeliveryReceipt:
    receipt = gateway.deliver(message)
    _append_log(
        {
            "direction": "outbound",
            "sent_at": datetime.now(timezone.utc).isoformat(),
            "status": receipt.status,
            "message": message.model_dump(mode="json"),
        }
    )
    return receipt


@app.get("/logs")
def logs() -> list[dict[str, Any]]:
    return MESSAGE_LOG
