from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db.models import DoseInstance, MedicationSchedule
from services.scheduler.errors import DoseNotFoundError
from shared.contracts.enums import DoseStatus
from shared.contracts.models import HistoryEntry, PredictionFeatures, UpcomingDose

HISTORY_DAYS = 14
MIN_HISTORY = 5
DAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


def load_upcoming_dose(session: Session, user_id: str, dose_id: str) -> UpcomingDose:
    row = session.execute(
        select(DoseInstance.id, DoseInstance.scheduled_for, MedicationSchedule.name, MedicationSchedule.dosage)
        .join(MedicationSchedule, MedicationSchedule.id == DoseInstance.schedule_id)
        .where(DoseInstance.id == dose_id, DoseInstance.user_id == user_id)
    ).one_or_none()
    if row is None:
        raise DoseNotFoundError(dose_id)
    return UpcomingDose(dose_id=row.id, name=row.name, dosage=row.dosage, scheduled_for=row.scheduled_for)


def build_prediction_features(
    session: Session,
    user_id: str,
    upcoming_dose: UpcomingDose,
    now: datetime | None = None,
    history_days: int = HISTORY_DAYS,
    min_history: int = MIN_HISTORY,
) -> PredictionFeatures:
    """Collect the recent taken/missed history a risk scorer looks at.

    Returns ``sufficient_data=False`` with an empty history when fewer than
    ``min_history`` qualifying doses exist.
    """
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(days=history_days)

    rows = session.execute(
        select(MedicationSchedule.name, DoseInstance.scheduled_for, DoseInstance.status)
        .outerjoin(MedicationSchedule, MedicationSchedule.id == DoseInstance.schedule_id)
        .where(
            DoseInstance.user_id == user_id,
            DoseInstance.scheduled_for >= since,
            DoseInstance.scheduled_for <= now,
            DoseInstance.status.in_([DoseStatus.TAKEN, DoseStatus.MISSED]),
        )
        .order_by(DoseInstance.scheduled_for)
    ).all()

    if len(rows) < min_history:
        return PredictionFeatures(
            user_id=user_id,
            upcoming_dose=upcoming_dose,
            history_days=history_days,
            sufficient_data=False,
        )

    history = [
        HistoryEntry(
            dose_name=name or "Unknown",
            scheduled=scheduled_for,
            status=status,
            day_of_week=DAY_NAMES[scheduled_for.weekday()],
            hour=scheduled_for.hour,
        )
        for name, scheduled_for, status in rows
    ]
    return PredictionFeatures(
        user_id=user_id,
        upcoming_dose=upcoming_dose,
        history_days=history_days,
        sufficient_data=True,
        history=history,
    )
