from datetime import date, datetime, timedelta, timezone

from sqlalchemy import func, select

from app.db.models import DoseInstance
from services.scheduler.materializer import (
    materialize_schedule,
    plan_dose_times,
    top_up_active_schedules,
)
from shared.contracts.enums import DoseStatus, Frequency

NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


def _doses(session, schedule):
    return session.scalars(
        select(DoseInstance).where(DoseInstance.schedule_id == schedule.id).order_by(DoseInstance.scheduled_for)
    ).all()


def test_two_times_over_seven_days_yields_fourteen_pending_doses(session, make_user, make_schedule):
    schedule = make_schedule(make_user())

    doses = _doses(session, schedule)
    assert len(doses) == 14
    assert all(dose.status == DoseStatus.PENDING for dose in doses)
    assert doses[0].scheduled_for == datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
    assert doses[-1].scheduled_for == datetime(2026, 3, 8, 20, 0, tzinfo=timezone.utc)
    assert all(dose.user_id == schedule.user_id for dose in doses)


def test_materialization_is_idempotent(session, make_user, make_schedule):
    schedule = make_schedule(make_user())
    before = [(dose.id, dose.scheduled_for) for dose in _doses(session, schedule)]

    materialize_schedule(session, schedule, now=NOW)
    session.commit()
    materialize_schedule(session, schedule, now=NOW + timedelta(minutes=5))
    session.commit()

    after = [(dose.id, dose.scheduled_for) for dose in _doses(session, schedule)]
    assert after == before


def test_rerun_keeps_actioned_doses_untouched(session, make_user, make_schedule):
    schedule = make_schedule(make_user())
    first = _doses(session, schedule)[0]
    first.status = DoseStatus.TAKEN
    first.actioned_at = first.scheduled_for + timedelta(minutes=3)
    session.commit()

    materialize_schedule(session, schedule, now=NOW)
    session.commit()
    session.refresh(first)

    assert first.status == DoseStatus.TAKEN
    assert len(_doses(session, schedule)) == 14


def test_late_start_is_clipped_to_the_start_date(session, make_user, make_schedule):
    start = NOW.date() + timedelta(days=3)
    schedule = make_schedule(make_user(), start_date=start)

    doses = _doses(session, schedule)
    assert len(doses) == 14
    start_instant = datetime(start.year, start.month, start.day, tzinfo=timezone.utc)
    assert all(dose.scheduled_for >= start_instant for dose in doses)


def test_end_date_is_inclusive_and_stops_materialization(session, make_user, make_schedule):
    schedule = make_schedule(make_user(), end_date=NOW.date() + timedelta(days=2))

    days = {dose.scheduled_for.date() for dose in _doses(session, schedule)}
    assert days == {date(2026, 3, 2), date(2026, 3, 3), date(2026, 3, 4)}


def test_weekly_schedule_materializes_on_start_weekday_only(session, make_user, make_schedule):
    # Wednesday start; horizon from Monday covers one Wednesday.
    schedule = make_schedule(
        make_user(),
        frequency=Frequency.WEEKLY,
        times=["09:30"],
        start_date=date(2026, 2, 25),
    )

    doses = _doses(session, schedule)
    assert [dose.scheduled_for for dose in doses] == [datetime(2026, 3, 4, 9, 30, tzinfo=timezone.utc)]


def test_malformed_times_are_skipped_not_fatal(session, make_user, make_schedule):
    schedule = make_schedule(make_user(), materialize=False, times=["08:00", "25:99", "noon"])

    result = materialize_schedule(session, schedule, now=NOW)
    session.commit()

    assert result.staged == 7
    assert result.skipped_times == ("25:99", "noon")
    assert len(_doses(session, schedule)) == 7


def test_inactive_schedule_plans_nothing(make_user, make_schedule):
    schedule = make_schedule(make_user(), materialize=False, active=False)
    due, skipped = plan_dose_times(schedule, now=NOW)
    assert due == []
    assert skipped == []


def test_top_up_extends_the_horizon_and_skips_ended_schedules(session, make_user, make_schedule):
    user = make_user()
    live = make_schedule(user)
    ended = make_schedule(
        user,
        name="Amoxicillin",
        start_date=date(2026, 2, 20),
        end_date=date(2026, 2, 27),
        materialize=False,
    )

    results = top_up_active_schedules(session, now=NOW + timedelta(days=1))

    assert [result.schedule_id for result in results] == [live.id]
    assert len(_doses(session, live)) == 16
    count = session.scalar(select(func.count(DoseInstance.id)).where(DoseInstance.schedule_id == ended.id))
    assert count == 0
