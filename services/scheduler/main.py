import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime
from functools import lru_cache
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import Depends, FastAPI
from pydantic import BaseModel

from app.core.config import get_settings
from app.core.logging import setup_logging
from app.db.session import get_sessionmaker
from dosetrack import DoseTrackFlow, TickReport

logger = logging.getLogger(__name__)

TICK_JOB_ID = "dose_tick"


class TickOut(BaseModel):
    ran_at: datetime
    materialized: int
    expired: int
    reminders: dict[str, Any] | None = None
    failed_steps: list[str]


@lru_cache
def get_flow() -> DoseTrackFlow:
    return DoseTrackFlow.from_settings(get_sessionmaker())


def _tick_out(report: TickReport) -> TickOut:
    return TickOut(
        ran_at=report.ran_at,
        materialized=report.materialized,
        expired=report.expired,
        reminders=asdict(report.reminders) if report.reminders else None,
        failed_steps=report.failed_steps,
    )


def run_scheduled_tick() -> None:
    try:
        get_flow().run_tick()
    except Exception:
        # Keep the job alive; the next interval retries.
        logger.exception("Scheduled tick failed")


def build_scheduler(interval_seconds: int) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        run_scheduled_tick,
        IntervalTrigger(seconds=interval_seconds),
        id=TICK_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    return scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings.log_format, settings.log_level)
    scheduler = None
    if settings.scheduler_enabled:
        scheduler = build_scheduler(settings.scan_interval_seconds)
        scheduler.start()
        logger.info("Dose tick scheduled every %ss", settings.scan_interval_seconds)
    else:
        logger.info("SCHEDULER_ENABLED is off; ticks run only via POST /jobs/tick")
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.shutdown(wait=False)


app = FastAPI(title="scheduler", lifespan=lifespan)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok", "service": "scheduler"}


@app.post("/jobs/tick")
def trigger_tick(flow: DoseTrackFlow = Depends(get_flow)) -> TickOut:
    return _tick_out(flow.run_tick())
