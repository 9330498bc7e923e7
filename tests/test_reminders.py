from datetime import datetime, timedelta, timezone

from services.notification_gateway.dispatcher import RecordingDispatcher
from services.scheduler.reminders import build_reminder_messages, dispatch_reminders, scan_due_doses
from shared.contracts.enums import ChannelType, DoseStatus
from shared.contracts.models import DeliveryReceipt

NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


class ExplodingDispatcher:
    """Fails email deliveries, accepts everything else."""

    def __init__(self) -> None:
        self.sent = []

    def send(self, message):
        if message.channel == ChannelType.EMAIL:
            raise RuntimeError("smtp down")
        self.sent.append(message)
        return DeliveryReceipt(status="sent", channel=message.channel)


def test_window_edge_is_inclusive(session, make_user, make_schedule, make_dose):
    schedule = make_schedule(make_user(), materialize=False)
    at_edge = make_dose(schedule, NOW + timedelta(minutes=15))
    past_edge = make_dose(schedule, NOW + timedelta(minutes=15, seconds=1))
    at_now = make_dose(schedule, NOW)

    due_ids = [reminder.dose_id for reminder in scan_due_doses(session, now=NOW)]

    assert due_ids == [at_now.id, at_edge.id]
    assert past_edge.id not in due_ids


def test_scan_skips_terminal_and_includes_snoozed(session, make_user, make_schedule, make_dose):
    schedule = make_schedule(make_user(), materialize=False)
    make_dose(schedule, NOW + timedelta(minutes=5), status=DoseStatus.TAKEN, actioned_at=NOW + timedelta(minutes=5))
    snoozed = make_dose(
        schedule,
        NOW - timedelta(minutes=40),
        status=DoseStatus.SNOOZED,
        snoozed_until=NOW + timedelta(minutes=10),
    )

    reminders = scan_due_doses(session, now=NOW)

    assert [reminder.dose_id for reminder in reminders] == [snoozed.id]
    assert reminders[0].due_at == NOW + timedelta(minutes=10)


def test_scan_ignores_inactive_schedules(session, make_user, make_schedule, make_dose):
    schedule = make_schedule(make_user(), materialize=False, active=False)
    make_dose(schedule, NOW + timedelta(minutes=5))

    assert scan_due_doses(session, now=NOW) == []


def test_scan_is_read_only(session, make_user, make_schedule, make_dose):
    schedule = make_schedule(make_user(), materialize=False)
    dose = make_dose(schedule, NOW + timedelta(minutes=5))

    scan_due_doses(session, now=NOW)
    session.refresh(dose)

    assert dose.status == DoseStatus.PENDING


def test_messages_render_in_user_timezone_per_channel(make_user, make_schedule, make_dose, session):
    user = make_user(
        full_name="Ana Lima",
        timezone="America/Sao_Paulo",
        push_subscription={"endpoint": "https://push.example/abc", "keys": {}},
    )
    schedule = make_schedule(user, materialize=False)
    make_dose(schedule, NOW + timedelta(minutes=10))

    messages = build_reminder_messages(user, scan_due_doses(session, now=NOW))

    assert [message.channel for message in messages] == [ChannelType.EMAIL, ChannelType.PUSH]
    email, push = messages
    assert email.recipient == user.email
    assert email.body.startswith("Hi Ana,")
    # 10:10 UTC is 07:10 in Sao Paulo
    assert "7:10 AM" in email.body
    assert push.recipient == "https://push.example/abc"
    assert push.metadata["events"][0]["event_type"] == "dose_due"


def test_dispatch_skips_users_without_channels(session, make_user, make_schedule, make_dose):
    reachable = make_user()
    silent = make_user(email=None, notify_push=False)
    make_dose(make_schedule(reachable, materialize=False), NOW + timedelta(minutes=5))
    make_dose(make_schedule(silent, materialize=False), NOW + timedelta(minutes=5))
    dispatcher = RecordingDispatcher()

    report = dispatch_reminders(session, dispatcher, now=NOW)

    assert report.due == 2
    assert report.sent == 1
    assert report.notified_users == [reachable.id]
    assert report.skipped_users == [silent.id]
    assert [message.recipient for message in dispatcher.sent] == [reachable.email]


def test_dispatch_failure_does_not_abort_the_batch(session, make_user, make_schedule, make_dose):
    both = make_user(push_subscription={"endpoint": "https://push.example/1"})
    email_only = make_user()
    make_dose(make_schedule(both, materialize=False), NOW + timedelta(minutes=5))
    make_dose(make_schedule(email_only, materialize=False), NOW + timedelta(minutes=6))
    dispatcher = ExplodingDispatcher()

    report = dispatch_reminders(session, dispatcher, now=NOW)

    assert report.failed_deliveries == 2
    assert report.sent == 1
    assert report.notified_users == [both.id]
    assert [message.channel for message in dispatcher.sent] == [ChannelType.PUSH]


def test_nothing_due_sends_nothing(session):
    dispatcher = RecordingDispatcher()
    report = dispatch_reminders(session, dispatcher, now=NOW)
    assert report.due == 0
    assert dispatcher.sent == []


def test_scan_uses_each_users_reminder_timing(session, make_user, make_schedule, make_dose):
    early_bird = make_user(reminder_timing_minutes=60)
    default_user = make_user()
    hour_ahead = make_dose(make_schedule(early_bird, materialize=False), NOW + timedelta(minutes=60))
    make_dose(make_schedule(early_bird, materialize=False, name="Aspirin"), NOW + timedelta(minutes=61))
    make_dose(make_schedule(default_user, materialize=False), NOW + timedelta(minutes=30))
    near = make_dose(make_schedule(default_user, materialize=False, name="Statin"), NOW + timedelta(minutes=15))

    reminders = scan_due_doses(session, now=NOW)

    assert [reminder.dose_id for reminder in reminders] == [near.id, hour_ahead.id]
    assert [reminder.lead_minutes for reminder in reminders] == [15, 60]


def test_push_subject_reports_the_users_timing(session, make_user, make_schedule, make_dose):
    user = make_user(reminder_timing_minutes=45, push_subscription={"endpoint": "https://push.example/45"})
    make_dose(make_schedule(user, materialize=False), NOW + timedelta(minutes=40))

    messages = build_reminder_messages(user, scan_due_doses(session, now=NOW))

    assert messages[-1].channel == ChannelType.PUSH
    assert messages[-1].subject == "1 dose due in 45 min"
