from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db.models import DoseInstance
from services.api.schedules import get_schedule
from services.scheduler.errors import DoseRangeError
from services.scheduler.transitions import OPEN_STATUSES, due_at_column

MAX_RANGE_DAYS = 62


def list_doses(
    session: Session,
    user_id: str,
    start: datetime,
    end: datetime,
) -> list[DoseInstance]:
    if end < start:
        raise DoseRangeError("end must not be before start")
    if end - start > timedelta(days=MAX_RANGE_DAYS):
        raise DoseRangeError(f"range must not exceed {MAX_RANGE_DAYS} days")
    return list(
        session.scalars(
            select(DoseInstance)
            .where(
                DoseInstance.user_id == user_id,
                DoseInstance.scheduled_for >= start,
                DoseInstance.scheduled_for <= end,
            )
            .order_by(DoseInstance.scheduled_for, DoseInstance.id)
        )
    )


def list_schedule_doses(session: Session, user_id: str, schedule_id: str) -> list[DoseInstance]:
    schedule = get_schedule(session, user_id, schedule_id)
    return list(
        session.scalars(
            select(DoseInstance)
            .where(DoseInstance.schedule_id == schedule.id, DoseInstance.user_id == user_id)
            .order_by(DoseInstance.scheduled_for.desc())
        )
    )


def list_upcoming_doses(
    session: Session,
    user_id: str,
    now: datetime,
    limit: int = 20,
) -> list[DoseInstance]:
    due_at = due_at_column()
    return list(
        session.scalars(
            select(DoseInstance)
            .where(
                DoseInstance.user_id == user_id,
                DoseInstance.status.in_(OPEN_STATUSES),
                due_at >= now,
            )
            .order_by(due_at, DoseInstance.id)
            .limit(limit)
        )
    )
