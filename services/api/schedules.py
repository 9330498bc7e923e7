from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.db.models import DoseInstance, MedicationSchedule
from services.calendar_sync.publisher import CalendarPublisher, publish_schedule_event
from services.scheduler.errors import ScheduleNotFoundError, ScheduleValidationError
from services.scheduler.materializer import HORIZON_DAYS, materialize_schedule
from shared.contracts.enums import DoseStatus, EventType
from shared.contracts.models import ScheduleCreate, ScheduleEvent, ScheduleOut, ScheduleUpdate

logger = logging.getLogger(__name__)

# Fields whose change invalidates already materialized future doses.
TIMING_FIELDS = frozenset({"frequency", "times", "start_date", "end_date", "active"})


def _utc(now: datetime | None) -> datetime:
    base = now or datetime.now(timezone.utc)
    return base.replace(tzinfo=timezone.utc) if base.tzinfo is None else base.astimezone(timezone.utc)


def _schedule_event(event_type: EventType, schedule: MedicationSchedule) -> ScheduleEvent:
    return ScheduleEvent(
        event_type=event_type,
        user_id=schedule.user_id,
        schedule_id=schedule.id,
        schedule=None if event_type == EventType.SCHEDULE_DELETED else ScheduleOut.model_validate(schedule),
    )


def get_schedule(session: Session, user_id: str, schedule_id: str) -> MedicationSchedule:
    schedule = session.scalar(
        select(MedicationSchedule).where(
            MedicationSchedule.id == schedule_id,
            MedicationSchedule.user_id == user_id,
        )
    )
    if schedule is None:
        raise ScheduleNotFoundError(schedule_id)
    return schedule


def list_schedules(session: Session, user_id: str) -> list[MedicationSchedule]:
    return list(
        session.scalars(
            select(MedicationSchedule)
            .where(MedicationSchedule.user_id == user_id)
            .order_by(MedicationSchedule.created_at, MedicationSchedule.name)
        )
    )


def create_schedule(
    session: Session,
    user_id: str,
    payload: ScheduleCreate,
    *,
    now: datetime | None = None,
    horizon_days: int = HORIZON_DAYS,
    publisher: CalendarPublisher | None = None,
) -> MedicationSchedule:
    """Persist a schedule and its first horizon of doses in one commit."""
    schedule = MedicationSchedule(user_id=user_id, **payload.model_dump())
    try:
        session.add(schedule)
        session.flush()
        materialize_schedule(session, schedule, now=_utc(now), horizon_days=horizon_days)
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        raise

    logger.info("Created schedule %s for user %s", schedule.id, user_id)
    publish_schedule_event(publisher, _schedule_event(EventType.SCHEDULE_CREATED, schedule))
    return schedule


def update_schedule(
    session: Session,
    user_id: str,
    schedule_id: str,
    payload: ScheduleUpdate,
    *,
    now: datetime | None = None,
    horizon_days: int = HORIZON_DAYS,
    publisher: CalendarPublisher | None = None,
) -> MedicationSchedule:
    """Apply a partial update; timing changes rebuild the pending future doses."""
    now = _utc(now)
    schedule = get_schedule(session, user_id, schedule_id)
    changes = payload.model_dump(exclude_unset=True)
    for key in ("name", "dosage", "frequency", "times", "start_date", "active"):
        if key in changes and changes[key] is None:
            raise ScheduleValidationError(f"{key} cannot be null")

    start_date = changes.get("start_date", schedule.start_date)
    end_date = changes.get("end_date", schedule.end_date)
    if end_date is not None and end_date < start_date:
        raise ScheduleValidationError("end_date must not be before start_date")

    timing_changed = any(
        key in TIMING_FIELDS and getattr(schedule, key) != value for key, value in changes.items()
    )
    for key, value in changes.items():
        setattr(schedule, key, value)

    try:
        if timing_changed:
            session.execute(
                delete(DoseInstance)
                .where(
                    DoseInstance.schedule_id == schedule.id,
                    DoseInstance.status == DoseStatus.PENDING,
                    DoseInstance.scheduled_for > now,
                )
                .execution_options(synchronize_session=False)
            )
            session.flush()
            materialize_schedule(session, schedule, now=now, horizon_days=horizon_days)
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        raise

    logger.info("Updated schedule %s (timing changed: %s)", schedule.id, timing_changed)
    publish_schedule_event(publisher, _schedule_event(EventType.SCHEDULE_UPDATED, schedule))
    return schedule


def delete_schedule(
    session: Session,
    user_id: str,
    schedule_id: str,
    *,
    publisher: CalendarPublisher | None = None,
) -> None:
    schedule = get_schedule(session, user_id, schedule_id)
    event = _schedule_event(EventType.SCHEDULE_DELETED, schedule)
    try:
        session.execute(
            delete(DoseInstance)
            .where(DoseInstance.schedule_id == schedule.id)
            .execution_options(synchronize_session=False)
        )
        session.delete(schedule)
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        raise

    logger.info("Deleted schedule %s and its doses", schedule_id)
    publish_schedule_event(publisher, event)
