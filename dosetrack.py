from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.db.models import DoseInstance, MedicationSchedule
from services.api import schedules as schedule_service
from services.calendar_sync.publisher import CalendarPublisher, HttpCalendarPublisher
from services.insights.adherence import compute_adherence_stats
from services.insights.features import build_prediction_features, load_upcoming_dose
from services.insights.risk_client import (
    HttpRiskScorer,
    RiskScorer,
    UnavailableRiskScorer,
    predict_adherence_risk,
)
from services.notification_gateway.dispatcher import (
    HttpNotificationDispatcher,
    NotificationDispatcher,
    RecordingDispatcher,
)
from services.scheduler.materializer import top_up_active_schedules
from services.scheduler.reminders import ReminderScanReport, dispatch_reminders
from services.scheduler.transitions import expire_overdue_doses, transition_dose
from shared.contracts.enums import DoseStatus
from shared.contracts.models import AdherenceStats, RiskPrediction, ScheduleCreate, ScheduleUpdate

logger = logging.getLogger(__name__)


@dataclass
class TickReport:
    ran_at: datetime
    materialized: int = 0
    expired: int = 0
    reminders: ReminderScanReport | None = None
    failed_steps: list[str] = field(default_factory=list)


class DoseTrackFlow:
    """Wires storage, collaborators and settings into the dose engine operations."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        dispatcher: NotificationDispatcher,
        risk_scorer: RiskScorer,
        calendar_publisher: CalendarPublisher | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.risk_scorer = risk_scorer
        self.calendar_publisher = calendar_publisher
        self.settings = settings or get_settings()

    @classmethod
    def from_settings(cls, session_factory: Callable[[], Session], settings: Settings | None = None) -> "DoseTrackFlow":
        settings = settings or get_settings()
        timeout = settings.downstream_timeout_seconds

        if settings.notification_gateway_url:
            dispatcher: NotificationDispatcher = HttpNotificationDispatcher(
                settings.notification_gateway_url, timeout=timeout
            )
        else:
            logger.info("NOTIFICATION_GATEWAY_URL not set; reminders are recorded only")
            dispatcher = RecordingDispatcher()

        scorer: RiskScorer = (
            HttpRiskScorer(settings.risk_scorer_url, timeout=timeout)
            if settings.risk_scorer_url
            else UnavailableRiskScorer()
        )
        publisher = (
            HttpCalendarPublisher(settings.calendar_sync_url, timeout=timeout)
            if settings.calendar_sync_url
            else None
        )
        return cls(
            session_factory=session_factory,
            dispatcher=dispatcher,
            risk_scorer=scorer,
            calendar_publisher=publisher,
            settings=settings,
        )

    # Schedules

    def create_schedule(
        self, session: Session, user_id: str, payload: ScheduleCreate, now: datetime | None = None
    ) -> MedicationSchedule:
        return schedule_service.create_schedule(
            session,
            user_id,
            payload,
            now=now,
            horizon_days=self.settings.horizon_days,
            publisher=self.calendar_publisher,
        )

    def update_schedule(
        self,
        session: Session,
        user_id: str,
        schedule_id: str,
        payload: ScheduleUpdate,
        now: datetime | None = None,
    ) -> MedicationSchedule:
        return schedule_service.update_schedule(
            session,
            user_id,
            schedule_id,
            payload,
            now=now,
            horizon_days=self.settings.horizon_days,
            publisher=self.calendar_publisher,
        )

    def delete_schedule(self, session: Session, user_id: str, schedule_id: str) -> None:
        schedule_service.delete_schedule(session, user_id, schedule_id, publisher=self.calendar_publisher)

    # Doses

    def record_action(
        self,
        session: Session,
        dose_id: str,
        user_id: str,
        status: DoseStatus | str,
        *,
        at: datetime | None = None,
        notes: str | None = None,
        snooze_minutes: int | None = None,
        override: bool = False,
    ) -> DoseInstance:
        try:
            dose = transition_dose(
                session,
                dose_id,
                user_id,
                status,
                at=at,
                notes=notes,
                snooze_minutes=snooze_minutes,
                override=override,
                late_threshold_minutes=self.settings.late_threshold_minutes,
                default_snooze_minutes=self.settings.default_snooze_minutes,
            )
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            raise
        return dose

    def adherence_stats(self, session: Session, user_id: str, now: datetime | None = None) -> AdherenceStats:
        return compute_adherence_stats(
            session, user_id, now=now, window_days=self.settings.adherence_window_days
        )

    def predict_risk(
        self, session: Session, user_id: str, dose_id: str, now: datetime | None = None
    ) -> RiskPrediction:
        upcoming = load_upcoming_dose(session, user_id, dose_id)
        features = build_prediction_features(
            session,
            user_id,
            upcoming,
            now=now,
            history_days=self.settings.prediction_history_days,
            min_history=self.settings.prediction_min_history,
        )
        return predict_adherence_risk(self.risk_scorer, features)

    # Periodic work

    def run_tick(self, now: datetime | None = None) -> TickReport:
        """Top up horizons, expire overdue doses, then send due reminders.

        Each step runs in its own session; a storage failure in one step is
        logged and the remaining steps still run.
        """
        now = now or datetime.now(timezone.utc)
        report = TickReport(ran_at=now)

        with self.session_factory() as session:
            try:
                results = top_up_active_schedules(session, now=now, horizon_days=self.settings.horizon_days)
                report.materialized = sum(result.staged for result in results)
            except SQLAlchemyError:
                session.rollback()
                report.failed_steps.append("materialize")
                logger.exception("Horizon top-up failed")

        with self.session_factory() as session:
            try:
                report.expired = expire_overdue_doses(
                    session, now=now, grace_minutes=self.settings.missed_grace_minutes
                )
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                report.failed_steps.append("expire")
                logger.exception("Overdue dose sweep failed")

        with self.session_factory() as session:
            try:
                report.reminders = dispatch_reminders(
                    session,
                    self.dispatcher,
                    now=now,
                    lookahead_minutes=self.settings.reminder_lookahead_minutes,
                )
            except SQLAlchemyError:
                report.failed_steps.append("remind")
                logger.exception("Reminder scan failed")

        logger.info(
            "Tick at %s: %d staged, %d expired, failed steps %s",
            now.isoformat(),
            report.materialized,
            report.expired,
            report.failed_steps or "none",
        )
        return report
