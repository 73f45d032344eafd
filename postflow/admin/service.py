"""Read-only aggregates for the admin dashboard."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from postflow.storage.models import (
    POST_STATUS_FAILED,
    CreditReservation,
    CreditTransaction,
    Post,
    User,
)


@dataclass(frozen=True)
class PublishingError:
    post_id: str
    user_id: str
    user_email: Optional[str]
    platform: str
    error_message: Optional[str]
    scheduled_date: Optional[datetime]
    updated_at: Optional[datetime]


@dataclass(frozen=True)
class PlatformStats:
    total_posts: int
    by_status: Dict[str, int] = field(default_factory=dict)
    by_platform: Dict[str, Dict[str, int]] = field(default_factory=dict)


@dataclass(frozen=True)
class CreditOverview:
    total_users: int
    total_balance: int
    total_reserved: int
    total_available: int
    reservations_by_status: Dict[str, int] = field(default_factory=dict)
    tier_distribution: Dict[str, int] = field(default_factory=dict)


def list_publishing_errors(session: Session, *, limit: int = 50, platform: Optional[str] = None) -> List[PublishingError]:
    statement = (
        select(Post, User.email)
        .join(User, User.id == Post.user_id, isouter=True)
        .where(Post.status == POST_STATUS_FAILED)
    )
    if platform:
        statement = statement.where(Post.platform == platform)
    statement = statement.order_by(Post.updated_at.desc()).limit(max(1, min(limit, 500)))
    return [
        PublishingError(
            post_id=post.id,
            user_id=post.user_id,
            user_email=email,
            platform=post.platform,
            error_message=post.error_message,
            scheduled_date=post.scheduled_date,
            updated_at=post.updated_at,
        )
        for post, email in session.execute(statement).all()
    ]


def get_platform_stats(session: Session) -> PlatformStats:
    by_platform: Dict[str, Dict[str, int]] = {}
    by_status: Dict[str, int] = {}
    rows = session.execute(
        select(Post.platform, Post.status, func.count(Post.id)).group_by(Post.platform, Post.status)
    ).all()
    for platform, status, count in rows:
        by_platform.setdefault(str(platform), {})[str(status)] = int(count)
        by_status[str(status)] = by_status.get(str(status), 0) + int(count)
    return PlatformStats(total_posts=sum(by_status.values()), by_status=by_status, by_platform=by_platform)


def get_credit_overview(session: Session) -> CreditOverview:
    total_users, total_balance, total_reserved = session.execute(
        select(
            func.count(User.id),
            func.coalesce(func.sum(User.credit_balance), 0),
            func.coalesce(func.sum(User.reserved_credits), 0),
        )
    ).one()
    reservations = {
        str(status): int(count)
        for status, count in session.execute(
            select(CreditReservation.status, func.count(CreditReservation.id)).group_by(CreditReservation.status)
        ).all()
    }
    tiers = {
        str(tier): int(count)
        for tier, count in session.execute(select(User.tier, func.count(User.id)).group_by(User.tier)).all()
    }
    return CreditOverview(
        total_users=int(total_users),
        total_balance=int(total_balance),
        total_reserved=int(total_reserved),
        total_available=int(total_balance) - int(total_reserved),
        reservations_by_status=reservations,
        tier_distribution=tiers,
    )


def list_credit_transactions(
    session: Session,
    *,
    user_id: Optional[str] = None,
    limit: int = 100,
) -> List[CreditTransaction]:
    statement = select(CreditTransaction)
    if user_id:
        statement = statement.where(CreditTransaction.user_id == user_id)
    statement = statement.order_by(CreditTransaction.created_at.desc()).limit(max(1, min(limit, 500)))
    return list(session.scalars(statement).all())
