"""Per-user limits report: current usage against every tier limit."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from postflow.core.config import get_settings
from postflow.core.errors import UserNotFound
from postflow.credits.ledger import get_credit_snapshot
from postflow.storage.models import PLATFORMS, User
from postflow.tiers.config import get_tier_limits
from postflow.usage.service import (
    count_automation_rules,
    count_connections_by_platform,
    count_scheduled_posts,
    get_daily_usage,
)


@dataclass(frozen=True)
class LimitStatus:
    current: int
    limit: int
    remaining: int
    percentage: int
    is_at_limit: bool


@dataclass(frozen=True)
class CreditStatus:
    total: int
    reserved: int
    available: int
    percentage: int
    is_low: bool


@dataclass(frozen=True)
class LimitsReport:
    tier: str
    credits: CreditStatus
    connected_accounts_total: LimitStatus
    connected_accounts_by_platform: Dict[str, LimitStatus]
    queue_size: LimitStatus
    advance_scheduling_days: int
    daily_generations: LimitStatus
    daily_posts_total: LimitStatus
    daily_posts_by_platform: Dict[str, LimitStatus]
    automation_enabled: bool
    automation_rules: LimitStatus


def limit_status(current: int, limit: int) -> LimitStatus:
    return LimitStatus(
        current=current,
        limit=limit,
        remaining=max(0, limit - current),
        percentage=round(current * 100 / limit) if limit > 0 else 0,
        is_at_limit=current >= limit,
    )


def build_limits_report(session: Session, *, user_id: str, low_threshold_percent: Optional[int] = None) -> LimitsReport:
    user = session.scalar(select(User).where(User.id == user_id))
    if user is None:
        raise UserNotFound(f"User not found: {user_id}", user_id=user_id)

    limits = get_tier_limits(user.tier)
    threshold = low_threshold_percent if low_threshold_percent is not None else get_settings().low_credit_threshold_percent

    snapshot = get_credit_snapshot(session, user_id)
    credit_percentage = (
        round(snapshot.balance * 100 / limits.monthly_credits) if limits.monthly_credits > 0 else 0
    )

    connections = count_connections_by_platform(session, user_id=user_id)
    usage = get_daily_usage(session, user_id=user_id)

    return LimitsReport(
        tier=user.tier,
        credits=CreditStatus(
            total=snapshot.balance,
            reserved=snapshot.reserved,
            available=snapshot.available,
            percentage=credit_percentage,
            is_low=credit_percentage < threshold,
        ),
        connected_accounts_total=limit_status(sum(connections.values()), limits.total_connected_accounts),
        connected_accounts_by_platform={
            platform: limit_status(connections.get(platform, 0), limits.connected_accounts_per_platform)
            for platform in PLATFORMS
        },
        queue_size=limit_status(count_scheduled_posts(session, user_id=user_id), limits.queue_size),
        advance_scheduling_days=limits.advance_scheduling_days,
        daily_generations=limit_status(usage.generations_count, limits.daily_generations),
        daily_posts_total=limit_status(usage.posts_count, limits.daily_posts_per_platform * len(PLATFORMS)),
        daily_posts_by_platform={
            platform: limit_status(usage.platform_breakdown.get(platform, 0), limits.daily_posts_per_platform)
            for platform in PLATFORMS
        },
        automation_enabled=limits.automation_enabled,
        automation_rules=limit_status(count_automation_rules(session, user_id=user_id), limits.max_automation_rules),
    )
