from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from app.db.types import UTCDateTime
from shared.contracts.enums import DoseStatus, Frequency


def _new_id() -> str:
    return str(uuid.uuid4())


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class Base(DeclarativeBase):
    """Declarative base for application models."""


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class User(TimestampMixin, Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint(
            "reminder_timing_minutes IS NULL OR reminder_timing_minutes BETWEEN 5 AND 120",
            name="ck_users_reminder_timing_range",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), unique=True, index=True)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")

    notify_email: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notify_push: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    push_subscription: Mapped[dict | None] = mapped_column(JSON)
    # Minutes of warning before a dose; NULL uses the service default.
    reminder_timing_minutes: Mapped[int | None] = mapped_column(Integer)

    schedules: Mapped[list[MedicationSchedule]] = relationship(back_populates="user")
    doses: Mapped[list[DoseInstance]] = relationship(back_populates="user")


class MedicationSchedule(TimestampMixin, Base):
    __tablename__ = "medication_schedules"
    __table_args__ = (
        CheckConstraint(
            "end_date IS NULL OR end_date >= start_date",
            name="ck_medication_schedules_date_range",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    dosage: Mapped[str] = mapped_column(String(128), nullable=False)
    frequency: Mapped[Frequency] = mapped_column(
        Enum(Frequency, name="schedule_frequency", values_callable=_enum_values),
        nullable=False,
        default=Frequency.DAILY,
    )
    times: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notes: Mapped[str | None] = mapped_column(Text)

    user: Mapped[User] = relationship(back_populates="schedules")
    doses: Mapped[list[DoseInstance]] = relationship(
        back_populates="schedule",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class DoseInstance(TimestampMixin, Base):
    __tablename__ = "dose_instances"
    __table_args__ = (
        UniqueConstraint("schedule_id", "scheduled_for", name="uq_dose_instances_schedule_scheduled_for"),
        CheckConstraint(
            "actioned_at IS NULL OR actioned_at >= scheduled_for",
            name="ck_dose_instances_actioned_after_scheduled",
        ),
        Index("ix_dose_instances_user_id_scheduled_for", "user_id", "scheduled_for"),
        Index("ix_dose_instances_status_scheduled_for", "status", "scheduled_for"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    # Cached copy of the schedule owner, kept for per-user queries.
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    schedule_id: Mapped[str] = mapped_column(
        ForeignKey("medication_schedules.id", ondelete="CASCADE"), nullable=False
    )
    scheduled_for: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    status: Mapped[DoseStatus] = mapped_column(
        Enum(DoseStatus, name="dose_status", values_callable=_enum_values),
        nullable=False,
        default=DoseStatus.PENDING,
    )
    actioned_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    snoozed_until: Mapped[datetime | None] = mapped_column(UTCDateTime())
    notes: Mapped[str | None] = mapped_column(Text)
    is_late: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    user: Mapped[User] = relationship(back_populates="doses")
    schedule: Mapped[MedicationSchedule] = relationship(back_populates="doses")
