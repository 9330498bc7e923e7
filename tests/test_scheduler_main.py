from datetime import datetime, timezone

from fastapi.testclient import TestClient

from dosetrack import DoseTrackFlow
from services.insights.risk_client import UnavailableRiskScorer
from services.notification_gateway.dispatcher import RecordingDispatcher
from services.scheduler.main import TICK_JOB_ID, app, build_scheduler, get_flow


def test_tick_endpoint_runs_all_steps(session_factory, settings, make_user, make_schedule):
    user = make_user()
    make_schedule(user, materialize=False, times=["00:00"], start_date=datetime.now(timezone.utc).date())
    flow = DoseTrackFlow(session_factory, RecordingDispatcher(), UnavailableRiskScorer(), settings=settings)
    app.dependency_overrides[get_flow] = lambda: flow
    try:
        response = TestClient(app).post("/jobs/tick")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 200
    body = response.json()
    assert body["materialized"] == 7
    assert body["failed_steps"] == []
    assert body["reminders"]["due"] >= 0


def test_health():
    assert TestClient(app).get("/health").json() == {"status": "ok", "service": "scheduler"}


def test_tick_job_never_overlaps():
    scheduler = build_scheduler(60)
    job = scheduler.get_job(TICK_JOB_ID)

    assert job.max_instances == 1
    assert job.coalesce is True
    assert job.trigger.interval.total_seconds() == 60
