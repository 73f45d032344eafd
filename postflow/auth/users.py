"""First-sight provisioning of users authenticated by the identity provider."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from postflow.core.clock import utc_now
from postflow.core.config import get_settings
from postflow.core.logger import get_logger
from postflow.storage.models import User
from postflow.tiers.config import get_tier_limits


DEFAULT_TIER = "free"

logger = get_logger("postflow.auth.users")


def is_admin_email(email: str) -> bool:
    settings = get_settings()
    normalized = email.strip().lower()
    if not normalized:
        return False
    if normalized in settings.admin_email_set():
        return True
    domain = settings.admin_email_domain.strip().lower().lstrip("@")
    return bool(domain) and normalized.endswith(f"@{domain}")


def get_or_create_user(session: Session, *, user_id: str, email: str) -> User:
    """Return the user row, creating it with the default tier allocation when missing."""

    user = session.scalar(select(User).where(User.id == user_id))
    if user is not None:
        return user

    user = User(
        id=user_id,
        email=email,
        tier=DEFAULT_TIER,
        credit_balance=get_tier_limits(DEFAULT_TIER).monthly_credits,
        reserved_credits=0,
        last_credit_reset_at=utc_now(),
    )
    try:
        session.add(user)
        session.commit()
    except IntegrityError:
        session.rollback()
        existing = session.scalar(select(User).where(User.id == user_id))
        if existing is None:
            raise
        return existing
    logger.info("user_provisioned", user_id=user_id, tier=DEFAULT_TIER)
    return user
