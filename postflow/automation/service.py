"""Automation rules: tier-gated CRUD and execution through generation and scheduling."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from postflow.core.clock import ensure_utc, utc_now
from postflow.core.config import get_settings
from postflow.core.errors import AutomationLimitExceeded, RuleNotFound, UserNotFound, ValidationFailed
from postflow.core.logger import get_logger
from postflow.events.sender import EventSender
from postflow.generation.service import ContentGenerator, generate_content_draft
from postflow.posts.store import validate_platform
from postflow.scheduling.service import schedule_post
from postflow.storage.models import AutomationRule, User
from postflow.tiers.config import get_tier_limits
from postflow.tiers.policy import can_use_automation
from postflow.usage.service import count_automation_rules


FREQUENCIES = ("daily", "weekly", "monthly")

logger = get_logger("postflow.automation")


@dataclass(frozen=True)
class AutomationRunResult:
    rule_id: str
    status: str
    post_id: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    message: Optional[str] = None


def _load_user(session: Session, user_id: str) -> User:
    user = session.scalar(select(User).where(User.id == user_id))
    if user is None:
        raise UserNotFound(f"User not found: {user_id}", user_id=user_id)
    return user


def get_rule_for_owner(session: Session, *, rule_id: str, user_id: str) -> AutomationRule:
    rule = session.scalar(
        select(AutomationRule).where(AutomationRule.id == rule_id, AutomationRule.user_id == user_id)
    )
    if rule is None:
        raise RuleNotFound(f"Automation rule not found: {rule_id}", rule_id=rule_id)
    return rule


def list_rules(session: Session, *, user_id: str) -> List[AutomationRule]:
    return list(
        session.scalars(
            select(AutomationRule)
            .where(AutomationRule.user_id == user_id)
            .order_by(AutomationRule.created_at.asc())
        ).all()
    )


def create_rule(
    session: Session,
    *,
    user_id: str,
    name: str,
    topic: str,
    platform: str,
    frequency: str = "daily",
    tone: str = "professional",
    language: str = "en",
) -> AutomationRule:
    if frequency not in FREQUENCIES:
        raise ValidationFailed(f"Unsupported frequency: {frequency}", field="frequency", allowed=list(FREQUENCIES))
    if not name.strip() or not topic.strip():
        raise ValidationFailed("Rule name and topic are required", field="topic")
    platform = validate_platform(platform)

    user = _load_user(session, user_id)
    decision = can_use_automation(user.tier, count_automation_rules(session, user_id=user_id))
    if not decision.allowed:
        raise AutomationLimitExceeded(
            decision.message or "Automation limit reached",
            limit=decision.limit,
            current=decision.current,
        )

    rule = AutomationRule(
        user_id=user_id,
        name=name.strip(),
        topic=topic.strip(),
        platform=platform,
        frequency=frequency,
        tone=tone,
        language=language,
        is_active=True,
    )
    try:
        session.add(rule)
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.info("automation_rule_created", user_id=user_id, rule_id=rule.id, platform=platform)
    return rule


def toggle_rule(session: Session, *, user_id: str, rule_id: str) -> AutomationRule:
    rule = get_rule_for_owner(session, rule_id=rule_id, user_id=user_id)
    if not rule.is_active:
        user = _load_user(session, user_id)
        if not get_tier_limits(user.tier).automation_enabled:
            raise AutomationLimitExceeded(
                f"Automation is not available on the {user.tier} tier",
                limit=0,
                current=count_automation_rules(session, user_id=user_id),
            )
    rule.is_active = not rule.is_active
    session.commit()
    return rule


def delete_rule(session: Session, *, user_id: str, rule_id: str) -> None:
    rule = get_rule_for_owner(session, rule_id=rule_id, user_id=user_id)
    session.delete(rule)
    session.commit()


def execute_automation_rule(
    session: Session,
    *,
    rule_id: str,
    user_id: str,
    generator: ContentGenerator,
    event_sender: EventSender,
    now: Optional[datetime] = None,
) -> AutomationRunResult:
    """Generate a draft from the rule and schedule it through the regular scheduling path."""

    reference = ensure_utc(now) if now is not None else utc_now()
    rule = get_rule_for_owner(session, rule_id=rule_id, user_id=user_id)
    if not rule.is_active:
        return AutomationRunResult(rule_id=rule_id, status="skipped", message="Rule is inactive")

    user = _load_user(session, user_id)
    if not get_tier_limits(user.tier).automation_enabled:
        return AutomationRunResult(
            rule_id=rule_id,
            status="skipped",
            message=f"Automation is not available on the {user.tier} tier",
        )

    generated = generate_content_draft(
        session,
        user_id=user_id,
        topic=rule.topic,
        platform=rule.platform,
        generator=generator,
        tone=rule.tone,
        language=rule.language,
        automation_rule_id=rule.id,
    )
    scheduled_for = reference + timedelta(minutes=get_settings().automation_schedule_delay_minutes)
    outcome = schedule_post(
        session,
        user_id=user_id,
        post_id=generated.post.id,
        scheduled_date=scheduled_for,
        event_sender=event_sender,
        now=reference,
    )

    rule.last_run_at = reference
    session.commit()
    logger.info("automation_rule_executed", rule_id=rule_id, user_id=user_id, post_id=outcome.post.id)
    return AutomationRunResult(
        rule_id=rule_id,
        status="scheduled",
        post_id=outcome.post.id,
        scheduled_for=scheduled_for,
    )
