"""Dose status lifecycle.

Every transition is a single conditional UPDATE keyed on (id, owner,
allowed source statuses), so two concurrent actions on the same dose cannot
both succeed and a foreign owner sees the same not-found as a missing id.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import case, func, literal, select, update
from sqlalchemy.orm import Session

from app.db.models import DoseInstance
from app.db.types import UTCDateTime
from services.scheduler.errors import (
    DoseNotFoundError,
    DoseStateConflictError,
    DoseTimingError,
    InvalidStatusError,
)
from shared.contracts.enums import DoseStatus

logger = logging.getLogger(__name__)

LATE_THRESHOLD_MINUTES = 30
DEFAULT_SNOOZE_MINUTES = 30
MAX_SNOOZE_MINUTES = 240
MISSED_GRACE_MINUTES = 60

OPEN_STATUSES = frozenset({DoseStatus.PENDING, DoseStatus.SNOOZED})
TERMINAL_STATUSES = frozenset({DoseStatus.TAKEN, DoseStatus.MISSED, DoseStatus.SKIPPED})
ACTION_STATUSES = TERMINAL_STATUSES | {DoseStatus.SNOOZED}

TRANSITIONS: dict[DoseStatus, frozenset[DoseStatus]] = {
    DoseStatus.PENDING: ACTION_STATUSES,
    DoseStatus.SNOOZED: ACTION_STATUSES,
    DoseStatus.TAKEN: frozenset(),
    DoseStatus.MISSED: frozenset(),
    DoseStatus.SKIPPED: frozenset(),
}


def _normalize_now(now: datetime | None) -> datetime:
    base = now or datetime.now(timezone.utc)
    return base.replace(tzinfo=timezone.utc) if base.tzinfo is None else base.astimezone(timezone.utc)


def due_at_column():
    """SQL expression for the instant a dose is next due."""
    return func.coalesce(DoseInstance.snoozed_until, DoseInstance.scheduled_for)


def parse_action_status(value: DoseStatus | str) -> DoseStatus:
    if isinstance(value, DoseStatus):
        candidate = value
    else:
        try:
            candidate = DoseStatus(str(value).strip().lower())
        except ValueError:
            candidate = None
    if candidate not in ACTION_STATUSES:
        allowed = ", ".join(sorted(status.value for status in ACTION_STATUSES))
        raise InvalidStatusError(f"invalid status {value!r}; expected one of {allowed}")
    return candidate


def allowed_sources(target: DoseStatus, override: bool = False) -> frozenset[DoseStatus]:
    sources = {status for status, targets in TRANSITIONS.items() if target in targets}
    if override and target in TERMINAL_STATUSES:
        sources |= TERMINAL_STATUSES
    return frozenset(sources)


def transition_dose(
    session: Session,
    dose_id: str,
    user_id: str,
    status: DoseStatus | str,
    *,
    at: datetime | None = None,
    notes: str | None = None,
    snooze_minutes: int | None = None,
    override: bool = False,
    late_threshold_minutes: int = LATE_THRESHOLD_MINUTES,
    default_snooze_minutes: int = DEFAULT_SNOOZE_MINUTES,
) -> DoseInstance:
    """Apply a user or system action to one dose and return the updated row.

    Raises InvalidStatusError / DoseTimingError for bad input,
    DoseNotFoundError when (dose_id, user_id) does not resolve and
    DoseStateConflictError when the dose already left the allowed states.
    """
    target = parse_action_status(status)
    at = _normalize_now(at)
    sources = allowed_sources(target, override)

    conditions = [
        DoseInstance.id == dose_id,
        DoseInstance.user_id == user_id,
        DoseInstance.status.in_(sources),
    ]
    values: dict = {"status": target}
    if notes is not None:
        values["notes"] = notes

    if target == DoseStatus.TAKEN:
        conditions.append(DoseInstance.scheduled_for <= at)
        values["actioned_at"] = at
        values["snoozed_until"] = None
        values["is_late"] = DoseInstance.scheduled_for < at - timedelta(minutes=late_threshold_minutes)
    elif target == DoseStatus.SNOOZED:
        minutes = default_snooze_minutes if snooze_minutes is None else snooze_minutes
        if not 1 <= minutes <= MAX_SNOOZE_MINUTES:
            raise DoseTimingError(f"snooze duration must be between 1 and {MAX_SNOOZE_MINUTES} minutes")
        scheduled_for = session.scalar(
            select(DoseInstance.scheduled_for).where(DoseInstance.id == dose_id, DoseInstance.user_id == user_id)
        )
        if scheduled_for is None:
            raise DoseNotFoundError(dose_id)
        # A snooze never moves the due time before the slot.
        values["snoozed_until"] = max(at, scheduled_for) + timedelta(minutes=minutes)
    else:
        # Recording a miss or skip ahead of time still never predates the slot.
        values["actioned_at"] = case(
            (DoseInstance.scheduled_for > at, DoseInstance.scheduled_for),
            else_=literal(at, UTCDateTime()),
        )
        values["snoozed_until"] = None
        values["is_late"] = False

    result = session.execute(
        update(DoseInstance)
        .where(*conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        _raise_for_rejected_transition(session, dose_id, user_id, target, sources, at)

    dose = session.scalars(
        select(DoseInstance)
        .where(DoseInstance.id == dose_id, DoseInstance.user_id == user_id)
        .execution_options(populate_existing=True)
    ).one()
    logger.info(
        "Dose %s marked %s",
        dose_id,
        target.value,
        extra={"dose_id": dose_id, "dose_status": target.value},
    )
    return dose


def _raise_for_rejected_transition(
    session: Session,
    dose_id: str,
    user_id: str,
    target: DoseStatus,
    sources: frozenset[DoseStatus],
    at: datetime,
) -> None:
    current = session.execute(
        select(DoseInstance.status, DoseInstance.scheduled_for).where(
            DoseInstance.id == dose_id, DoseInstance.user_id == user_id
        )
    ).one_or_none()
    if current is None:
        raise DoseNotFoundError(dose_id)

    current_status, scheduled_for = current
    if target == DoseStatus.TAKEN and current_status in sources and at < scheduled_for:
        raise DoseTimingError("a dose cannot be marked taken before its scheduled time")
    raise DoseStateConflictError(
        f"dose is already {DoseStatus(current_status).value}; cannot mark it {target.value}"
    )


def expire_overdue_doses(
    session: Session,
    now: datetime | None = None,
    grace_minutes: int = MISSED_GRACE_MINUTES,
) -> int:
    """Mark open doses whose due time passed the grace period as missed."""
    now = _normalize_now(now)
    cutoff = now - timedelta(minutes=grace_minutes)
    result = session.execute(
        update(DoseInstance)
        .where(
            DoseInstance.status.in_(OPEN_STATUSES),
            DoseInstance.scheduled_for < cutoff,
            due_at_column() < cutoff,
        )
        .values(status=DoseStatus.MISSED, actioned_at=now, snoozed_until=None, is_late=False)
        .execution_options(synchronize_session=False)
    )
    expired = result.rowcount or 0
    if expired:
        logger.info("Marked %d overdue doses as missed", expired)
    return expired
