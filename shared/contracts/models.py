from __future__ import annotations

import re
import uuid
from datetime import date, datetime, timezone
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .enums import ChannelType, DoseStatus, EventType, Frequency, RiskLevel

TIME_OF_DAY_PATTERN = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def parse_time_of_day(value: str) -> tuple[int, int] | None:
    """Return (hour, minute) for a well-formed ``HH:MM`` string, else None."""
    if not isinstance(value, str):
        return None
    match = TIME_OF_DAY_PATTERN.match(value.strip())
    if match is None:
        return None
    return int(match.group(1)), int(match.group(2))


def _normalize_times(times: list[str]) -> list[str]:
    normalized: list[str] = []
    for raw in times:
        parsed = parse_time_of_day(raw)
        if parsed is None:
            raise ValueError(f"invalid time of day {raw!r}; expected HH:MM")
        value = f"{parsed[0]:02d}:{parsed[1]:02d}"
        if value not in normalized:
            normalized.append(value)
    if not normalized:
        raise ValueError("at least one time of day is required")
    return normalized


class ScheduleCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=255)
    dosage: str = Field(min_length=1, max_length=128)
    frequency: Frequency = Frequency.DAILY
    times: list[str] = Field(min_length=1)
    start_date: date
    end_date: date | None = None
    active: bool = True
    notes: str | None = None

    @field_validator("times")
    @classmethod
    def validate_times(cls, value: list[str]) -> list[str]:
        return _normalize_times(value)

    @model_validator(mode="after")
    def validate_date_range(self) -> "ScheduleCreate":
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class ScheduleUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=255)
    dosage: str | None = Field(default=None, min_length=1, max_length=128)
    frequency: Frequency | None = None
    times: list[str] | None = None
    start_date: date | None = None
    end_date: date | None = None
    active: bool | None = None
    notes: str | None = None

    @field_validator("times")
    @classmethod
    def validate_times(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        return _normalize_times(value)

    @model_validator(mode="after")
    def validate_date_range(self) -> "ScheduleUpdate":
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class ScheduleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    name: str
    dosage: str
    frequency: Frequency
    times: list[str]
    start_date: date
    end_date: date | None = None
    active: bool
    notes: str | None = None


class DoseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    schedule_id: str
    user_id: str
    scheduled_for: datetime
    status: DoseStatus
    actioned_at: datetime | None = None
    snoozed_until: datetime | None = None
    notes: str | None = None
    is_late: bool = False


class DoseStatusUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Checked against the transition table by the service, not here.
    status: str
    notes: str | None = None
    snooze_minutes: int | None = Field(default=None, ge=1, le=240)
    override: bool = False


class SkipRequest(BaseModel):
    reason: str | None = None


class SnoozeRequest(BaseModel):
    minutes: int | None = Field(default=None, ge=1, le=240)


class NotificationPreferencesUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email_notifications: bool | None = None
    push_notifications: bool | None = None
    reminder_timing_minutes: int | None = Field(default=None, ge=5, le=120)
    timezone: str | None = Field(default=None, min_length=1, max_length=64)

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str | None) -> str | None:
        if value is None:
            return value
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {value!r}") from exc
        return value

    @model_validator(mode="after")
    def _not_empty(self) -> "NotificationPreferencesUpdate":
        if not self.model_fields_set:
            raise ValueError("at least one preference must be provided")
        return self


class PushSubscriptionIn(BaseModel):
    # A missing or incomplete subscription unsubscribes the user.
    subscription: dict[str, Any] | None = None

    def is_complete(self) -> bool:
        return bool(self.subscription and self.subscription.get("endpoint") and self.subscription.get("keys"))


class UserSettingsOut(BaseModel):
    id: str
    full_name: str
    email: str | None = None
    timezone: str
    email_notifications: bool
    push_notifications: bool
    push_subscribed: bool
    reminder_timing_minutes: int | None = None

    @classmethod
    def from_user(cls, user: Any) -> "UserSettingsOut":
        return cls(
            id=user.id,
            full_name=user.full_name,
            email=user.email,
            timezone=user.timezone,
            email_notifications=user.notify_email,
            push_notifications=user.notify_push,
            push_subscribed=bool((user.push_subscription or {}).get("endpoint")),
            reminder_timing_minutes=user.reminder_timing_minutes,
        )


class WeeklyAdherence(BaseModel):
    label: str
    iso_year: int
    week: int
    taken: int
    total: int
    rate: float


class AdherenceStats(BaseModel):
    window_start: datetime
    window_end: datetime
    total: int
    taken: int
    missed: int
    skipped: int
    adherence_rate: int
    weekly_trend: list[WeeklyAdherence] = Field(default_factory=list)


class UpcomingDose(BaseModel):
    dose_id: str
    name: str
    dosage: str | None = None
    scheduled_for: datetime


class HistoryEntry(BaseModel):
    dose_name: str
    scheduled: datetime
    status: DoseStatus
    day_of_week: str
    hour: int = Field(ge=0, le=23)


class PredictionFeatures(BaseModel):
    user_id: str
    upcoming_dose: UpcomingDose
    history_days: int
    sufficient_data: bool
    history: list[HistoryEntry] = Field(default_factory=list)


class RiskPrediction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    summary: str
    risk_level: RiskLevel = Field(alias="riskLevel")
    proactive_nudge: str | None = Field(default=None, alias="proactiveNudge")


class NotificationMessage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    recipient: str = Field(min_length=1)
    channel: ChannelType
    subject: str
    body: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))


class DeliveryReceipt(BaseModel):
    status: Literal["sent", "failed"]
    channel: ChannelType
    detail: str | None = None


class Event(BaseModel):
    model_config = ConfigDict(extra="allow")

    event_type: EventType
    user_id: str
    event_id: str = Field(default_factory=lambda: f"evt_{uuid.uuid4().hex}")
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))
    payload: dict[str, Any] = Field(default_factory=dict)


class DoseDueEvent(Event):
    event_type: EventType = EventType.DOSE_DUE
    dose_id: str
    schedule_id: str
    medication_name: str
    dosage: str
    due_at: datetime


class ScheduleEvent(Event):
    schedule_id: str
    schedule: ScheduleOut | None = None

    @model_validator(mode="after")
    def validate_event_type(self) -> "ScheduleEvent":
        allowed = {EventType.SCHEDULE_CREATED, EventType.SCHEDULE_UPDATED, EventType.SCHEDULE_DELETED}
        if self.event_type not in allowed:
            raise ValueError(f"{self.event_type.value} is not a schedule event")
        if self.event_type != EventType.SCHEDULE_DELETED and self.schedule is None:
            raise ValueError("schedule is required unless the schedule was deleted")
        return self
