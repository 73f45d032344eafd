"""Pure tier-limit decisions shared by scheduling, publishing and automation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import math
from typing import Iterable, Mapping, Optional

from postflow.core.clock import ensure_utc, utc_now
from postflow.tiers.config import get_tier_limits


SECONDS_PER_DAY = 86400

REASON_QUEUE_FULL = "queue_full"
REASON_IN_PAST = "in_past"
REASON_ADVANCE_WINDOW = "advance_window"


@dataclass(frozen=True)
class LimitCheckResult:
    allowed: bool
    limit: int
    current: int
    message: Optional[str] = None
    reason: Optional[str] = None


def can_connect(tier: str, counts_by_platform: Mapping[str, int], platform: str) -> LimitCheckResult:
    limits = get_tier_limits(tier)
    current_for_platform = int(counts_by_platform.get(platform, 0))
    total_current = sum(int(count) for count in counts_by_platform.values())

    if current_for_platform >= limits.connected_accounts_per_platform:
        return LimitCheckResult(
            allowed=False,
            limit=limits.connected_accounts_per_platform,
            current=current_for_platform,
            message=(
                f"You've reached the maximum of {limits.connected_accounts_per_platform} "
                f"{platform} account(s) for your {tier} tier"
            ),
            reason="platform_limit",
        )
    if total_current >= limits.total_connected_accounts:
        return LimitCheckResult(
            allowed=False,
            limit=limits.total_connected_accounts,
            current=total_current,
            message=(
                f"You've reached the maximum of {limits.total_connected_accounts} "
                f"total connected accounts for your {tier} tier"
            ),
            reason="total_limit",
        )
    return LimitCheckResult(
        allowed=True,
        limit=limits.connected_accounts_per_platform,
        current=current_for_platform,
    )


def can_post(tier: str, platform: str, platform_breakdown: Mapping[str, int]) -> LimitCheckResult:
    limits = get_tier_limits(tier)
    current = int(platform_breakdown.get(platform, 0))
    if current >= limits.daily_posts_per_platform:
        return LimitCheckResult(
            allowed=False,
            limit=limits.daily_posts_per_platform,
            current=current,
            message=f"You've reached the daily limit of {limits.daily_posts_per_platform} posts for {platform}",
        )
    return LimitCheckResult(allowed=True, limit=limits.daily_posts_per_platform, current=current)


def can_schedule(
    tier: str,
    queue_size: int,
    scheduled_date: datetime,
    *,
    now: Optional[datetime] = None,
) -> LimitCheckResult:
    """Check queue capacity, then that the date is in the future and inside the advance window."""

    limits = get_tier_limits(tier)
    if queue_size >= limits.queue_size:
        return LimitCheckResult(
            allowed=False,
            limit=limits.queue_size,
            current=queue_size,
            message=(
                f"Your scheduled queue is full ({limits.queue_size} posts). "
                "Delete or publish some posts first."
            ),
            reason=REASON_QUEUE_FULL,
        )

    reference = ensure_utc(now) if now is not None else utc_now()
    target = ensure_utc(scheduled_date)
    if target <= reference:
        return LimitCheckResult(
            allowed=False,
            limit=limits.advance_scheduling_days,
            current=0,
            message="Scheduled date must be in the future",
            reason=REASON_IN_PAST,
        )

    days_in_advance = math.ceil((target - reference).total_seconds() / SECONDS_PER_DAY)
    if days_in_advance > limits.advance_scheduling_days:
        return LimitCheckResult(
            allowed=False,
            limit=limits.advance_scheduling_days,
            current=days_in_advance,
            message=f"Your {tier} tier allows scheduling up to {limits.advance_scheduling_days} days in advance",
            reason=REASON_ADVANCE_WINDOW,
        )

    return LimitCheckResult(allowed=True, limit=limits.queue_size, current=queue_size)


def can_generate(tier: str, today_generations: int) -> LimitCheckResult:
    limits = get_tier_limits(tier)
    if today_generations >= limits.daily_generations:
        return LimitCheckResult(
            allowed=False,
            limit=limits.daily_generations,
            current=today_generations,
            message=(
                f"You've used all {limits.daily_generations} AI generations for today. "
                "Upgrade or wait until tomorrow."
            ),
        )
    return LimitCheckResult(allowed=True, limit=limits.daily_generations, current=today_generations)


def can_use_automation(tier: str, rules_count: int) -> LimitCheckResult:
    limits = get_tier_limits(tier)
    if not limits.automation_enabled:
        return LimitCheckResult(
            allowed=False,
            limit=0,
            current=rules_count,
            message=f"Automation is not available on the {tier} tier. Upgrade to use automation.",
            reason="automation_disabled",
        )
    if rules_count >= limits.max_automation_rules:
        return LimitCheckResult(
            allowed=False,
            limit=limits.max_automation_rules,
            current=rules_count,
            message=f"You've reached the maximum of {limits.max_automation_rules} automation rules for your {tier} tier",
            reason="rule_limit",
        )
    return LimitCheckResult(allowed=True, limit=limits.max_automation_rules, current=rules_count)


def has_enough_credits(balance: int, reserved: int, cost: int) -> LimitCheckResult:
    available = balance - reserved
    if available < cost:
        return LimitCheckResult(
            allowed=False,
            limit=cost,
            current=available,
            message=f"Insufficient credits. You need {cost} but only have {available} available.",
        )
    return LimitCheckResult(allowed=True, limit=cost, current=available)


def calculate_post_credits(platforms: Iterable[str]) -> int:
    # One credit per target platform.
    return len(list(platforms))
