from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db.models import DoseInstance, MedicationSchedule, User
from services.notification_gateway.dispatcher import NotificationDispatcher
from services.scheduler.transitions import OPEN_STATUSES, due_at_column
from shared.contracts.enums import ChannelType
from shared.contracts.models import DoseDueEvent, NotificationMessage

logger = logging.getLogger(__name__)

LOOKAHEAD_MINUTES = 15
MIN_REMINDER_TIMING_MINUTES = 5
MAX_REMINDER_TIMING_MINUTES = 120


@dataclass(frozen=True)
class DueReminder:
    dose_id: str
    schedule_id: str
    user_id: str
    medication_name: str
    dosage: str
    scheduled_for: datetime
    due_at: datetime
    lead_minutes: int = LOOKAHEAD_MINUTES


@dataclass
class ReminderScanReport:
    scanned_at: datetime
    due: int = 0
    sent: int = 0
    failed_deliveries: int = 0
    notified_users: list[str] = field(default_factory=list)
    skipped_users: list[str] = field(default_factory=list)


def _normalize_now(now: datetime | None) -> datetime:
    base = now or datetime.now(timezone.utc)
    return base.replace(tzinfo=timezone.utc) if base.tzinfo is None else base.astimezone(timezone.utc)


def _user_zone(user: User) -> ZoneInfo:
    try:
        return ZoneInfo(user.timezone or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r for user %s; using UTC", user.timezone, user.id)
        return ZoneInfo("UTC")


def scan_due_doses(
    session: Session,
    now: datetime | None = None,
    lookahead_minutes: int = LOOKAHEAD_MINUTES,
) -> list[DueReminder]:
    """Open doses due within ``[now, now + lead]``; read only.

    The lead is the owner's ``reminder_timing_minutes`` when set, otherwise
    ``lookahead_minutes``.
    """
    now = _normalize_now(now)
    window_end = now + timedelta(minutes=max(lookahead_minutes, MAX_REMINDER_TIMING_MINUTES))
    due_at = due_at_column()

    rows = session.execute(
        select(
            DoseInstance.id,
            DoseInstance.schedule_id,
            DoseInstance.user_id,
            MedicationSchedule.name,
            MedicationSchedule.dosage,
            DoseInstance.scheduled_for,
            due_at.label("due_at"),
            User.reminder_timing_minutes,
        )
        .join(MedicationSchedule, MedicationSchedule.id == DoseInstance.schedule_id)
        .join(User, User.id == DoseInstance.user_id)
        .where(
            DoseInstance.status.in_(OPEN_STATUSES),
            MedicationSchedule.active.is_(True),
            due_at.between(now, window_end),
        )
        .order_by(due_at, DoseInstance.id)
    ).all()

    reminders: list[DueReminder] = []
    for row in rows:
        lead = row.reminder_timing_minutes or lookahead_minutes
        if row.due_at > now + timedelta(minutes=lead):
            continue
        reminders.append(
            DueReminder(
                dose_id=row.id,
                schedule_id=row.schedule_id,
                user_id=row.user_id,
                medication_name=row.name,
                dosage=row.dosage,
                scheduled_for=row.scheduled_for,
                due_at=row.due_at,
                lead_minutes=lead,
            )
        )
    return reminders


def build_reminder_messages(user: User, reminders: list[DueReminder]) -> list[NotificationMessage]:
    """Render one message per enabled, reachable channel for ``user``."""
    if not reminders:
        return []

    zone = _user_zone(user)
    count = len(reminders)
    plural = "s" if count > 1 else ""
    local_times = [reminder.due_at.astimezone(zone).strftime("%I:%M %p").lstrip("0") for reminder in reminders]
    events = [
        DoseDueEvent(
            user_id=user.id,
            dose_id=reminder.dose_id,
            schedule_id=reminder.schedule_id,
            medication_name=reminder.medication_name,
            dosage=reminder.dosage,
            due_at=reminder.due_at,
        ).model_dump(mode="json")
        for reminder in reminders
    ]
    metadata = {
        "user_id": user.id,
        "dose_ids": [reminder.dose_id for reminder in reminders],
        "events": events,
    }

    messages: list[NotificationMessage] = []
    if user.notify_email and user.email:
        first_name = (user.full_name or "").split(" ")[0] or "there"
        lines = [
            f"- {local_time}  {reminder.medication_name} ({reminder.dosage})"
            for local_time, reminder in zip(local_times, reminders)
        ]
        body = "\n".join(
            [
                f"Hi {first_name},",
                "",
                f"You have {count} upcoming dose{plural}:",
                *lines,
            ]
        )
        messages.append(
            NotificationMessage(
                recipient=user.email,
                channel=ChannelType.EMAIL,
                subject=f"{count} dose{plural} due soon",
                body=body,
                metadata=metadata,
            )
        )

    subscription = user.push_subscription or {}
    if user.notify_push and subscription.get("endpoint"):
        first = reminders[0]
        messages.append(
            NotificationMessage(
                recipient=subscription["endpoint"],
                channel=ChannelType.PUSH,
                subject=f"{count} dose{plural} due in {first.lead_minutes} min",
                body=f"Your next dose of {first.medication_name} is due at {local_times[0]}.",
                metadata={**metadata, "subscription": subscription, "url": "/dashboard"},
            )
        )
    return messages


def dispatch_reminders(
    session: Session,
    dispatcher: NotificationDispatcher,
    now: datetime | None = None,
    lookahead_minutes: int = LOOKAHEAD_MINUTES,
) -> ReminderScanReport:
    """Scan for due doses and hand one batch per user to the dispatcher.

    A user without a reachable channel, or a failing delivery, is logged and
    skipped; the rest of the batch still goes out.
    """
    now = _normalize_now(now)
    reminders = scan_due_doses(session, now=now, lookahead_minutes=lookahead_minutes)
    report = ReminderScanReport(scanned_at=now, due=len(reminders))
    if not reminders:
        logger.debug("No open doses due at %s", now.isoformat())
        return report

    by_user: dict[str, list[DueReminder]] = defaultdict(list)
    for reminder in reminders:
        by_user[reminder.user_id].append(reminder)
    users = {user.id: user for user in session.scalars(select(User).where(User.id.in_(list(by_user))))}

    for user_id, user_reminders in by_user.items():
        user = users.get(user_id)
        messages = build_reminder_messages(user, user_reminders) if user else []
        if not messages:
            logger.warning("Skipping reminders for user %s: no contactable channel", user_id)
            report.skipped_users.append(user_id)
            continue

        delivered = False
        for message in messages:
            try:
                receipt = dispatcher.send(message)
            except Exception:
                report.failed_deliveries += 1
                logger.exception(
                    "Reminder delivery via %s failed for user %s",
                    message.channel.value,
                    user_id,
                    extra={"dose_user_id": user_id},
                )
                continue
            if receipt.status != "sent":
                report.failed_deliveries += 1
                logger.warning(
                    "Reminder delivery via %s rejected for user %s: %s",
                    message.channel.value,
                    user_id,
                    receipt.detail,
                )
                continue
            report.sent += 1
            delivered = True

        if delivered:
            report.notified_users.append(user_id)

    logger.info(
        "Reminder scan: %d due, %d sent, %d failed, %d users skipped",
        report.due,
        report.sent,
        report.failed_deliveries,
        len(report.skipped_users),
    )
    return report
