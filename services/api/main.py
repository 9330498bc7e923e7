import logging
from datetime import datetime, timedelta, timezone
from functools import lru_cache

from fastapi import Depends, FastAPI, Header, Query, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.logging import setup_logging
from app.db.session import get_session, get_sessionmaker
from dosetrack import DoseTrackFlow
from services.api.doses import list_doses, list_schedule_doses, list_upcoming_doses
from services.api.schedules import get_schedule, list_schedules
from services.api.users import get_user, save_push_subscription, update_notification_preferences
from services.scheduler.errors import (
    DoseNotFoundError,
    DoseRangeError,
    DoseStateConflictError,
    DoseTimingError,
    DoseTrackError,
    InvalidStatusError,
    ScheduleNotFoundError,
    ScheduleValidationError,
    UserNotFoundError,
)
from services.scheduler.materializer import utc_midnight
from shared.contracts.enums import DoseStatus
from shared.contracts.models import (
    AdherenceStats,
    DoseOut,
    DoseStatusUpdate,
    NotificationPreferencesUpdate,
    PushSubscriptionIn,
    RiskPrediction,
    ScheduleCreate,
    ScheduleOut,
    ScheduleUpdate,
    SkipRequest,
    SnoozeRequest,
    UserSettingsOut,
)

logger = logging.getLogger(__name__)

settings = get_settings()
setup_logging(settings.log_format, settings.log_level)

app = FastAPI(title="api")


@lru_cache
def get_flow() -> DoseTrackFlow:
    return DoseTrackFlow.from_settings(get_sessionmaker())


def current_user_id(x_user_id: str = Header(..., min_length=1)) -> str:
    return x_user_id


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)


async def handle_invalid_request(request: Request, exc: DoseTrackError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


async def handle_not_found(request: Request, exc: DoseTrackError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


for error_cls in (ScheduleValidationError, InvalidStatusError, DoseTimingError, DoseRangeError):
    app.add_exception_handler(error_cls, handle_invalid_request)
for error_cls in (DoseNotFoundError, ScheduleNotFoundError, UserNotFoundError):
    app.add_exception_handler(error_cls, handle_not_found)


@app.exception_handler(DoseStateConflictError)
async def handle_conflict(request: Request, exc: DoseStateConflictError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(SQLAlchemyError)
async def handle_storage_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("Storage failure on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "internal storage error"})


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok", "service": "api"}


# Schedules


@app.post("/schedules", status_code=201)
def create_schedule(
    payload: ScheduleCreate,
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
    flow: DoseTrackFlow = Depends(get_flow),
) -> ScheduleOut:
    schedule = flow.create_schedule(session, user_id, payload)
    return ScheduleOut.model_validate(schedule)


@app.get("/schedules")
def read_schedules(
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
) -> list[ScheduleOut]:
    return [ScheduleOut.model_validate(row) for row in list_schedules(session, user_id)]


@app.get("/schedules/{schedule_id}")
def read_schedule(
    schedule_id: str,
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
) -> ScheduleOut:
    return ScheduleOut.model_validate(get_schedule(session, user_id, schedule_id))


@app.patch("/schedules/{schedule_id}")
def patch_schedule(
    schedule_id: str,
    payload: ScheduleUpdate,
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
    flow: DoseTrackFlow = Depends(get_flow),
) -> ScheduleOut:
    schedule = flow.update_schedule(session, user_id, schedule_id, payload)
    return ScheduleOut.model_validate(schedule)


@app.delete("/schedules/{schedule_id}", status_code=204)
def remove_schedule(
    schedule_id: str,
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
    flow: DoseTrackFlow = Depends(get_flow),
) -> Response:
    flow.delete_schedule(session, user_id, schedule_id)
    return Response(status_code=204)


@app.get("/schedules/{schedule_id}/doses")
def read_schedule_doses(
    schedule_id: str,
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
) -> list[DoseOut]:
    return [DoseOut.model_validate(row) for row in list_schedule_doses(session, user_id, schedule_id)]


# Doses


@app.get("/doses")
def read_doses(
    start: datetime = Query(...),
    end: datetime = Query(...),
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
) -> list[DoseOut]:
    rows = list_doses(session, user_id, _as_utc(start), _as_utc(end))
    return [DoseOut.model_validate(row) for row in rows]


@app.get("/doses/today")
def read_today(
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
) -> list[DoseOut]:
    start = utc_midnight(datetime.now(timezone.utc).date())
    end = start + timedelta(days=1) - timedelta(microseconds=1)
    return [DoseOut.model_validate(row) for row in list_doses(session, user_id, start, end)]


@app.get("/doses/upcoming")
def read_upcoming(
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
) -> list[DoseOut]:
    rows = list_upcoming_doses(session, user_id, datetime.now(timezone.utc), limit=limit)
    return [DoseOut.model_validate(row) for row in rows]


@app.get("/doses/stats")
def read_stats(
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
    flow: DoseTrackFlow = Depends(get_flow),
) -> AdherenceStats:
    return flow.adherence_stats(session, user_id)


@app.post("/doses/{dose_id}/status")
def update_dose_status(
    dose_id: str,
    payload: DoseStatusUpdate,
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
    flow: DoseTrackFlow = Depends(get_flow),
) -> DoseOut:
    dose = flow.record_action(
        session,
        dose_id,
        user_id,
        payload.status,
        notes=payload.notes,
        snooze_minutes=payload.snooze_minutes,
        override=payload.override,
    )
    return DoseOut.model_validate(dose)


@app.post("/doses/{dose_id}/take")
def take_dose(
    dose_id: str,
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
    flow: DoseTrackFlow = Depends(get_flow),
) -> DoseOut:
    return DoseOut.model_validate(flow.record_action(session, dose_id, user_id, DoseStatus.TAKEN))


@app.post("/doses/{dose_id}/skip")
def skip_dose(
    dose_id: str,
    payload: SkipRequest | None = None,
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
    flow: DoseTrackFlow = Depends(get_flow),
) -> DoseOut:
    notes = payload.reason if payload else None
    return DoseOut.model_validate(flow.record_action(session, dose_id, user_id, DoseStatus.SKIPPED, notes=notes))


@app.post("/doses/{dose_id}/snooze")
def snooze_dose(
    dose_id: str,
    payload: SnoozeRequest | None = None,
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
    flow: DoseTrackFlow = Depends(get_flow),
) -> DoseOut:
    minutes = payload.minutes if payload else None
    dose = flow.record_action(session, dose_id, user_id, DoseStatus.SNOOZED, snooze_minutes=minutes)
    return DoseOut.model_validate(dose)


@app.get("/doses/{dose_id}/prediction")
def read_prediction(
    dose_id: str,
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
    flow: DoseTrackFlow = Depends(get_flow),
) -> RiskPrediction:
    return flow.predict_risk(session, user_id, dose_id)


# Reminder settings


@app.get("/notifications")
def read_notification_settings(
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
) -> UserSettingsOut:
    return UserSettingsOut.from_user(get_user(session, user_id))


@app.patch("/notifications")
def patch_notification_settings(
    payload: NotificationPreferencesUpdate,
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
) -> UserSettingsOut:
    return UserSettingsOut.from_user(update_notification_preferences(session, user_id, payload))


@app.post("/subscribe")
def subscribe_push(
    payload: PushSubscriptionIn,
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
) -> UserSettingsOut:
    return UserSettingsOut.from_user(save_push_subscription(session, user_id, payload))
