from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.db.models import DoseInstance
from shared.contracts.enums import DoseStatus
from shared.contracts.models import AdherenceStats, WeeklyAdherence

WINDOW_DAYS = 30


def percentage(part: int, whole: int, places: int = 0) -> Decimal:
    """``part / whole * 100`` rounded half-up to ``places`` decimals; 0 when whole is 0."""
    if whole <= 0:
        return Decimal(0)
    ratio = Decimal(part) * 100 / Decimal(whole)
    return ratio.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def compute_adherence_stats(
    session: Session,
    user_id: str,
    now: datetime | None = None,
    window_days: int = WINDOW_DAYS,
) -> AdherenceStats:
    now = now or datetime.now(timezone.utc)
    now = now.replace(tzinfo=timezone.utc) if now.tzinfo is None else now.astimezone(timezone.utc)
    window_start = now - timedelta(days=window_days)
    in_window = (
        DoseInstance.user_id == user_id,
        DoseInstance.scheduled_for >= window_start,
        DoseInstance.scheduled_for <= now,
    )

    counts: dict[DoseStatus, int] = {
        DoseStatus(status): count
        for status, count in session.execute(
            select(DoseInstance.status, func.count(DoseInstance.id))
            .where(*in_window)
            .group_by(DoseInstance.status)
        ).all()
    }
    total = sum(counts.values())
    taken = counts.get(DoseStatus.TAKEN, 0)

    weeks: dict[tuple[int, int], list[int]] = defaultdict(lambda: [0, 0])
    for scheduled_for, status in session.execute(
        select(DoseInstance.scheduled_for, DoseInstance.status).where(*in_window)
    ).all():
        iso_year, iso_week, _ = scheduled_for.isocalendar()
        bucket = weeks[(iso_year, iso_week)]
        bucket[1] += 1
        if DoseStatus(status) == DoseStatus.TAKEN:
            bucket[0] += 1

    weekly_trend = [
        WeeklyAdherence(
            label=f"Week {iso_week}",
            iso_year=iso_year,
            week=iso_week,
            taken=week_taken,
            total=week_total,
            rate=float(percentage(week_taken, week_total, places=1)),
        )
        for (iso_year, iso_week), (week_taken, week_total) in sorted(weeks.items())
    ]

    return AdherenceStats(
        window_start=window_start,
        window_end=now,
        total=total,
        taken=taken,
        missed=counts.get(DoseStatus.MISSED, 0),
        skipped=counts.get(DoseStatus.SKIPPED, 0),
        adherence_rate=int(percentage(taken, total)),
        weekly_trend=weekly_trend,
    )
