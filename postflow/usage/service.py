"""Daily usage counters (posts per platform, generations) keyed by user and day."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional
import uuid

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from postflow.core.clock import ensure_utc, usage_day, utc_now
from postflow.storage.models import (
    PLATFORMS,
    POST_STATUS_SCHEDULED,
    AutomationRule,
    ConnectedAccount,
    DailyUsageCounter,
    Post,
)


METRIC_GENERATIONS = "generations"
POSTS_METRIC_PREFIX = "posts:"


@dataclass(frozen=True)
class DailyUsageSnapshot:
    user_id: str
    usage_date: date
    posts_count: int
    generations_count: int
    platform_breakdown: Dict[str, int] = field(default_factory=dict)


def posts_metric(platform: str) -> str:
    return f"{POSTS_METRIC_PREFIX}{platform}"


def _insert_for(session: Session):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql_insert(DailyUsageCounter)
    if dialect == "sqlite":
        return sqlite_insert(DailyUsageCounter)
    raise RuntimeError(f"Usage counters require INSERT ... ON CONFLICT support (dialect: {dialect})")


def _increment(
    session: Session,
    *,
    user_id: str,
    metric: str,
    amount: int,
    occurred_at: Optional[datetime],
) -> None:
    """Insert-or-add in one statement so concurrent bumps neither collide nor lose updates."""

    if amount <= 0:
        raise ValueError("Usage amount must be positive")

    timestamp = ensure_utc(occurred_at) if occurred_at is not None else utc_now()
    statement = _insert_for(session).values(
        id=str(uuid.uuid4()),
        user_id=user_id,
        metric=metric,
        usage_date=usage_day(timestamp),
        count=amount,
        updated_at=timestamp,
    )
    statement = statement.on_conflict_do_update(
        index_elements=["user_id", "usage_date", "metric"],
        set_={"count": DailyUsageCounter.__table__.c.count + amount, "updated_at": timestamp},
    )
    session.execute(statement)


def increment_posts(
    session: Session,
    *,
    user_id: str,
    platform: str,
    amount: int = 1,
    occurred_at: Optional[datetime] = None,
) -> None:
    """Stage a post-count bump; the caller commits with its own unit of work."""

    _increment(
        session,
        user_id=user_id,
        metric=posts_metric(platform),
        amount=amount,
        occurred_at=occurred_at,
    )


def increment_generations(
    session: Session,
    *,
    user_id: str,
    amount: int = 1,
    occurred_at: Optional[datetime] = None,
) -> None:
    _increment(
        session,
        user_id=user_id,
        metric=METRIC_GENERATIONS,
        amount=amount,
        occurred_at=occurred_at,
    )


def _snapshot_from_rows(user_id: str, day: date, rows: List[DailyUsageCounter]) -> DailyUsageSnapshot:
    breakdown: Dict[str, int] = {platform: 0 for platform in PLATFORMS}
    generations = 0
    for row in rows:
        if row.metric == METRIC_GENERATIONS:
            generations += int(row.count)
        elif row.metric.startswith(POSTS_METRIC_PREFIX):
            platform = row.metric[len(POSTS_METRIC_PREFIX) :]
            breakdown[platform] = breakdown.get(platform, 0) + int(row.count)
    return DailyUsageSnapshot(
        user_id=user_id,
        usage_date=day,
        posts_count=sum(breakdown.values()),
        generations_count=generations,
        platform_breakdown=breakdown,
    )


def get_daily_usage(
    session: Session,
    *,
    user_id: str,
    usage_date: Optional[date] = None,
) -> DailyUsageSnapshot:
    day = usage_date or usage_day()
    rows = list(
        session.scalars(
            select(DailyUsageCounter).where(
                DailyUsageCounter.user_id == user_id,
                DailyUsageCounter.usage_date == day,
            )
            .execution_options(populate_existing=True)
        ).all()
    )
    return _snapshot_from_rows(user_id, day, rows)


def get_usage_summary(
    session: Session,
    *,
    user_id: str,
    days: int = 30,
    end_date: Optional[date] = None,
) -> List[DailyUsageSnapshot]:
    """One snapshot per day with recorded usage in the trailing window, newest first."""

    last_day = end_date or usage_day()
    first_day = last_day - timedelta(days=max(1, days) - 1)
    rows = session.scalars(
        select(DailyUsageCounter)
        .where(
            DailyUsageCounter.user_id == user_id,
            DailyUsageCounter.usage_date >= first_day,
            DailyUsageCounter.usage_date <= last_day,
        )
        .order_by(DailyUsageCounter.usage_date.desc())
        .execution_options(populate_existing=True)
    ).all()

    grouped: Dict[date, List[DailyUsageCounter]] = {}
    for row in rows:
        grouped.setdefault(row.usage_date, []).append(row)
    return [_snapshot_from_rows(user_id, day, grouped[day]) for day in sorted(grouped, reverse=True)]


def count_scheduled_posts(session: Session, *, user_id: str) -> int:
    total = session.scalar(
        select(func.count(Post.id)).where(
            Post.user_id == user_id,
            Post.status == POST_STATUS_SCHEDULED,
        )
    )
    return int(total or 0)


def count_connections_by_platform(session: Session, *, user_id: str) -> Dict[str, int]:
    rows = session.execute(
        select(ConnectedAccount.platform, func.count(ConnectedAccount.id))
        .where(
            ConnectedAccount.user_id == user_id,
            ConnectedAccount.is_active.is_(True),
        )
        .group_by(ConnectedAccount.platform)
    ).all()
    return {str(platform): int(count) for platform, count in rows}


def count_automation_rules(session: Session, *, user_id: str, active_only: bool = False) -> int:
    statement = select(func.count(AutomationRule.id)).where(AutomationRule.user_id == user_id)
    if active_only:
        statement = statement.where(AutomationRule.is_active.is_(True))
    return int(session.scalar(statement) or 0)
