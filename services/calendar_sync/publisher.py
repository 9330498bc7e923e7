from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from shared.contracts.models import ScheduleEvent

logger = logging.getLogger(__name__)


class CalendarPublisher(Protocol):
    def publish(self, event: ScheduleEvent) -> None: ...


@dataclass
class RecordingCalendarPublisher:
    events: list[ScheduleEvent] = field(default_factory=list)

    def publish(self, event: ScheduleEvent) -> None:
        self.events.append(event)


class HttpCalendarPublisher:
    def __init__(self, url: str, timeout: float = 10.0, client: httpx.Client | None = None) -> None:
        self.url = url
        self.client = client or httpx.Client(timeout=timeout)

    def publish(self, event: ScheduleEvent) -> None:
        response = self.client.post(self.url, json=event.model_dump(mode="json"))
        response.raise_for_status()

    def close(self) -> None:
        self.client.close()


def publish_schedule_event(publisher: CalendarPublisher | None, event: ScheduleEvent) -> bool:
    """Forward a schedule change to calendar sync; failures are logged, not raised."""
    if publisher is None:
        return False
    try:
        publisher.publish(event)
    except Exception:
        logger.warning(
            "Calendar sync failed for %s on schedule %s",
            event.event_type.value,
            event.schedule_id,
            exc_info=True,
        )
        return False
    return True
