"""In-app user notices, recorded at most once per kind per day."""

from __future__ import annotations

from datetime import date
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from postflow.core.clock import usage_day
from postflow.core.logger import get_logger
from postflow.storage.models import UserNotification


NOTICE_LOW_CREDITS = "low_credits"
NOTICE_CREDITS_EXPIRING = "credits_expiring"

logger = get_logger("postflow.notifications")


def notify_once_per_day(
    session: Session,
    *,
    user_id: str,
    kind: str,
    message: str,
    notice_date: Optional[date] = None,
) -> bool:
    """Store a notice unless one of the same kind already exists for the day."""

    day = notice_date or usage_day()
    existing = session.scalar(
        select(UserNotification.id).where(
            UserNotification.user_id == user_id,
            UserNotification.kind == kind,
            UserNotification.notice_date == day,
        )
    )
    if existing is not None:
        return False

    try:
        session.add(UserNotification(user_id=user_id, kind=kind, message=message[:500], notice_date=day))
        session.commit()
    except IntegrityError:
        session.rollback()
        return False
    logger.info("user_notified", user_id=user_id, kind=kind)
    return True


def list_notifications(session: Session, *, user_id: str, limit: int = 50) -> List[UserNotification]:
    return list(
        session.scalars(
            select(UserNotification)
            .where(UserNotification.user_id == user_id)
            .order_by(UserNotification.created_at.desc())
            .limit(max(1, limit))
        ).all()
    )
