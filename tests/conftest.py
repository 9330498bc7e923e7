from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import Settings
from app.db.models import Base, DoseInstance, MedicationSchedule, User
from app.db.session import _enable_sqlite_foreign_keys
from services.scheduler.materializer import materialize_schedule
from shared.contracts.enums import DoseStatus, Frequency

# Monday 2 March 2026, 10:00 UTC
NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, expire_on_commit=False, class_=Session)


@pytest.fixture
def session(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def settings() -> Settings:
    return Settings(DATABASE_URL="sqlite://", SCHEDULER_ENABLED=False)


@pytest.fixture
def make_user(session):
    counter = {"n": 0}

    def _make(**overrides) -> User:
        counter["n"] += 1
        values = {
            "full_name": f"Test User {counter['n']}",
            "email": f"user{counter['n']}@example.com",
            "timezone": "UTC",
        }
        values.update(overrides)
        user = User(**values)
        session.add(user)
        session.commit()
        return user

    return _make


@pytest.fixture
def make_schedule(session):
    def _make(user: User, materialize: bool = True, now: datetime = NOW, **overrides) -> MedicationSchedule:
        values = {
            "name": "Metformin",
            "dosage": "500mg",
            "frequency": Frequency.DAILY,
            "times": ["08:00", "20:00"],
            "start_date": now.date(),
        }
        values.update(overrides)
        schedule = MedicationSchedule(user_id=user.id, **values)
        session.add(schedule)
        session.flush()
        if materialize:
            materialize_schedule(session, schedule, now=now)
        session.commit()
        return schedule

    return _make


@pytest.fixture
def make_dose(session):
    def _make(
        schedule: MedicationSchedule,
        scheduled_for: datetime,
        status: DoseStatus = DoseStatus.PENDING,
        actioned_at: datetime | None = None,
        snoozed_until: datetime | None = None,
    ) -> DoseInstance:
        dose = DoseInstance(
            user_id=schedule.user_id,
            schedule_id=schedule.id,
            scheduled_for=scheduled_for,
            status=status,
            actioned_at=actioned_at,
            snoozed_until=snoozed_until,
        )
        session.add(dose)
        session.commit()
        return dose

    return _make

