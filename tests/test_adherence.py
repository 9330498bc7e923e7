from datetime import datetime, timedelta, timezone
from decimal import Decimal

from app.db.models import DoseInstance
from services.insights.adherence import compute_adherence_stats, percentage
from shared.contracts.enums import DoseStatus

NOW = datetime(2026, 3, 30, 23, 0, tzinfo=timezone.utc)


def _seed(session, schedule, statuses, start):
    for index, status in enumerate(statuses):
        scheduled_for = start + timedelta(hours=6 * index)
        session.add(
            DoseInstance(
                user_id=schedule.user_id,
                schedule_id=schedule.id,
                scheduled_for=scheduled_for,
                status=status,
                actioned_at=None if status == DoseStatus.PENDING else scheduled_for,
            )
        )
    session.commit()


def test_seventy_twenty_ten_history_gives_seventy_percent(session, make_user, make_schedule):
    schedule = make_schedule(make_user(), materialize=False)
    statuses = [DoseStatus.TAKEN] * 70 + [DoseStatus.MISSED] * 20 + [DoseStatus.SKIPPED] * 10
    _seed(session, schedule, statuses, start=NOW - timedelta(days=28))

    stats = compute_adherence_stats(session, schedule.user_id, now=NOW)

    assert stats.total == 100
    assert (stats.taken, stats.missed, stats.skipped) == (70, 20, 10)
    assert stats.adherence_rate == 70
    assert sum(week.total for week in stats.weekly_trend) == 100


def test_empty_history_is_zero_not_an_error(session, make_user):
    stats = compute_adherence_stats(session, make_user().id, now=NOW)
    assert stats.total == 0
    assert stats.adherence_rate == 0
    assert stats.weekly_trend == []


def test_window_excludes_old_future_and_foreign_doses(session, make_user, make_schedule):
    owner = make_schedule(make_user(), materialize=False)
    other = make_schedule(make_user(), materialize=False)
    _seed(session, owner, [DoseStatus.TAKEN], start=NOW - timedelta(days=31))
    _seed(session, owner, [DoseStatus.PENDING], start=NOW + timedelta(hours=1))
    _seed(session, owner, [DoseStatus.TAKEN, DoseStatus.MISSED], start=NOW - timedelta(days=2))
    _seed(session, other, [DoseStatus.TAKEN] * 3, start=NOW - timedelta(days=1))

    stats = compute_adherence_stats(session, owner.user_id, now=NOW)

    assert stats.total == 2
    assert stats.adherence_rate == 50


def test_weekly_trend_groups_by_iso_week_in_order(session, make_user, make_schedule):
    schedule = make_schedule(make_user(), materialize=False)
    # ISO week 12 of 2026 starts Monday 16 March, week 13 on 23 March.
    _seed(session, schedule, [DoseStatus.TAKEN, DoseStatus.TAKEN, DoseStatus.MISSED], start=datetime(2026, 3, 17, 8, tzinfo=timezone.utc))
    _seed(session, schedule, [DoseStatus.TAKEN, DoseStatus.SKIPPED], start=datetime(2026, 3, 24, 8, tzinfo=timezone.utc))

    stats = compute_adherence_stats(session, schedule.user_id, now=NOW)

    assert [(week.label, week.taken, week.total) for week in stats.weekly_trend] == [
        ("Week 12", 2, 3),
        ("Week 13", 1, 2),
    ]
    assert stats.weekly_trend[0].rate == 66.7
    assert stats.weekly_trend[1].rate == 50.0


def test_percentage_rounds_half_up():
    assert percentage(1, 8) == Decimal("13")
    assert percentage(2, 3, places=1) == Decimal("66.7")
    assert percentage(5, 0) == 0
