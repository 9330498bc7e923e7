"""Per-user reminder settings: channel toggles, timing and push subscription."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db.models import User
from services.scheduler.errors import UserNotFoundError
from shared.contracts.models import NotificationPreferencesUpdate, PushSubscriptionIn

logger = logging.getLogger(__name__)

PREFERENCE_COLUMNS = {
    "email_notifications": "notify_email",
    "push_notifications": "notify_push",
    "reminder_timing_minutes": "reminder_timing_minutes",
    "timezone": "timezone",
}
NULLABLE_PREFERENCES = frozenset({"reminder_timing_minutes"})


def get_user(session: Session, user_id: str) -> User:
    user = session.scalar(select(User).where(User.id == user_id))
    if user is None:
        raise UserNotFoundError(user_id)
    return user


def update_notification_preferences(
    session: Session,
    user_id: str,
    payload: NotificationPreferencesUpdate,
) -> User:
    """Apply the fields present in ``payload``.

    An explicit null resets ``reminder_timing_minutes`` to the service default;
    other null fields are left unchanged.
    """
    user = get_user(session, user_id)
    for field_name, value in payload.model_dump(exclude_unset=True).items():
        if value is None and field_name not in NULLABLE_PREFERENCES:
            continue
        setattr(user, PREFERENCE_COLUMNS[field_name], value)
    session.commit()
    session.refresh(user)
    logger.info("Updated notification preferences for user %s", user_id, extra={"dose_user_id": user_id})
    return user


def save_push_subscription(session: Session, user_id: str, payload: PushSubscriptionIn) -> User:
    user = get_user(session, user_id)
    if payload.is_complete():
        user.push_subscription = payload.subscription
        user.notify_push = True
        logger.info("Saved push subscription for user %s", user_id, extra={"dose_user_id": user_id})
    else:
        user.push_subscription = None
        logger.info("Cleared push subscription for user %s", user_id, extra={"dose_user_id": user_id})
    session.commit()
    session.refresh(user)
    return user
