"""Expansion of medication schedules into concrete dose instances.

Every instant is computed on the UTC clock. Idempotence rests on the
``(schedule_id, scheduled_for)`` unique constraint: rows that already exist
are dropped by the database instead of being looked up first.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import insert, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.db.models import DoseInstance, MedicationSchedule
from shared.contracts.enums import DoseStatus, Frequency
from shared.contracts.models import parse_time_of_day

logger = logging.getLogger(__name__)

HORIZON_DAYS = 7
DOSE_UNIQUE_COLUMNS = ["schedule_id", "scheduled_for"]


@dataclass(frozen=True)
class MaterializationResult:
    schedule_id: str
    staged: int
    skipped_times: tuple[str, ...] = ()


def _normalize_now(now: datetime | None) -> datetime:
    base = now or datetime.now(timezone.utc)
    return base.replace(tzinfo=timezone.utc) if base.tzinfo is None else base.astimezone(timezone.utc)


def utc_midnight(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def plan_dose_times(
    schedule: MedicationSchedule,
    now: datetime | None = None,
    horizon_days: int = HORIZON_DAYS,
) -> tuple[list[datetime], list[str]]:
    """Return the due instants for the horizon and the time strings that failed to parse."""
    if not schedule.active:
        return [], []

    clock_times: list[tuple[int, int]] = []
    skipped: list[str] = []
    for raw in schedule.times or []:
        parsed = parse_time_of_day(raw)
        if parsed is None:
            logger.warning("Skipping invalid time %r on schedule %s", raw, schedule.id)
            skipped.append(str(raw))
            continue
        if parsed not in clock_times:
            clock_times.append(parsed)

    today = _normalize_now(now).date()
    start_instant = utc_midnight(schedule.start_date)
    first_day = max(schedule.start_date, today)
    weekly = Frequency(schedule.frequency) == Frequency.WEEKLY

    due: list[datetime] = []
    for offset in range(horizon_days):
        day = first_day + timedelta(days=offset)
        if schedule.end_date is not None and day > schedule.end_date:
            break
        if weekly and day.weekday() != schedule.start_date.weekday():
            continue
        for hour, minute in clock_times:
            candidate = datetime.combine(day, time(hour, minute), tzinfo=timezone.utc)
            if candidate < start_instant:
                continue
            due.append(candidate)
    return due, skipped


def _insert_ignoring_duplicates(session: Session, rows: list[dict]) -> None:
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(DoseInstance).on_conflict_do_nothing(index_elements=DOSE_UNIQUE_COLUMNS)
    elif dialect == "sqlite":
        stmt = sqlite.insert(DoseInstance).on_conflict_do_nothing(index_elements=DOSE_UNIQUE_COLUMNS)
    else:
        _insert_rows_individually(session, rows)
        return
    session.execute(stmt, rows)


def _insert_rows_individually(session: Session, rows: list[dict]) -> None:
    for row in rows:
        try:
            with session.begin_nested():
                session.execute(insert(DoseInstance).values(**row))
        except IntegrityError:
            existing = session.scalar(
                select(DoseInstance.id).where(
                    DoseInstance.schedule_id == row["schedule_id"],
                    DoseInstance.scheduled_for == row["scheduled_for"],
                )
            )
            if existing is None:
                raise


def materialize_schedule(
    session: Session,
    schedule: MedicationSchedule,
    now: datetime | None = None,
    horizon_days: int = HORIZON_DAYS,
) -> MaterializationResult:
    """Stage and insert pending doses for ``schedule`` over the horizon.

    Already materialized slots are left untouched. Any database error other
    than a duplicate slot propagates to the caller.
    """
    if schedule.id is None:
        session.flush()

    due, skipped = plan_dose_times(schedule, now=now, horizon_days=horizon_days)
    rows = [
        {
            "id": str(uuid.uuid4()),
            "user_id": schedule.user_id,
            "schedule_id": schedule.id,
            "scheduled_for": scheduled_for,
            "status": DoseStatus.PENDING,
            "is_late": False,
        }
        for scheduled_for in due
    ]

    if rows:
        try:
            _insert_ignoring_duplicates(session, rows)
        except SQLAlchemyError:
            logger.exception(
                "Dose insertion failed for schedule %s",
                schedule.id,
                extra={"dose_schedule_id": schedule.id},
            )
            raise
        logger.info("Staged %d doses for schedule %s", len(rows), schedule.id)

    return MaterializationResult(schedule_id=schedule.id, staged=len(rows), skipped_times=tuple(skipped))


def top_up_active_schedules(
    session: Session,
    now: datetime | None = None,
    horizon_days: int = HORIZON_DAYS,
) -> list[MaterializationResult]:
    """Re-run materialization for every live schedule, committing per schedule."""
    now = _normalize_now(now)
    schedules = session.scalars(
        select(MedicationSchedule)
        .where(
            MedicationSchedule.active.is_(True),
            or_(MedicationSchedule.end_date.is_(None), MedicationSchedule.end_date >= now.date()),
        )
        .order_by(MedicationSchedule.created_at)
    ).all()

    results: list[MaterializationResult] = []
    for schedule in schedules:
        schedule_id = schedule.id
        try:
            results.append(materialize_schedule(session, schedule, now=now, horizon_days=horizon_days))
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            logger.warning("Top-up skipped schedule %s after a storage error", schedule_id)
    return results
