"""AI-assisted draft generation: quota and credit checks around the generator call."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from postflow.core.errors import (
    GenerationFailed,
    GenerationLimitExceeded,
    InsufficientCredits,
    UserNotFound,
    ValidationFailed,
)
from postflow.core.logger import get_logger
from postflow.credits.ledger import deduct_credits, get_available_credits
from postflow.posts.store import create_post, validate_platform
from postflow.storage.models import GenerationLog, Post, User
from postflow.tiers.policy import can_generate
from postflow.usage.service import get_daily_usage, increment_generations


GENERATION_COST = 1

logger = get_logger("postflow.generation")


class ContentGenerator(Protocol):
    def generate_content(
        self,
        *,
        topic: str,
        platform: str,
        tone: str,
        language: str,
        options: Optional[Mapping[str, Any]] = None,
    ) -> str:
        ...


@dataclass(frozen=True)
class GenerationOutcome:
    post: Post
    credits_used: int
    credits_remaining: int
    generations_today: int
    generations_limit: int


def _log_failure(session: Session, *, user_id: str, platform: str, topic: str, error: str) -> None:
    session.add(
        GenerationLog(
            user_id=user_id,
            platform=platform,
            topic=topic[:500],
            status="failed",
            credits_used=0,
            error_message=error[:2000],
        )
    )
    session.commit()


def generate_content_draft(
    session: Session,
    *,
    user_id: str,
    topic: str,
    platform: str,
    generator: ContentGenerator,
    tone: str = "professional",
    language: str = "en",
    options: Optional[Mapping[str, Any]] = None,
    automation_rule_id: Optional[str] = None,
) -> GenerationOutcome:
    """Generate text for ``platform`` and store it as a draft; one credit per successful call."""

    platform = validate_platform(platform)
    if not topic or not topic.strip():
        raise ValidationFailed("Topic must not be empty", field="topic")

    user = session.scalar(select(User).where(User.id == user_id))
    if user is None:
        raise UserNotFound(f"User not found: {user_id}", user_id=user_id)

    usage = get_daily_usage(session, user_id=user_id)
    decision = can_generate(user.tier, usage.generations_count)
    if not decision.allowed:
        raise GenerationLimitExceeded(
            decision.message or "Daily generation limit reached",
            limit=decision.limit,
            current=decision.current,
        )

    available = get_available_credits(session, user_id)
    if available < GENERATION_COST:
        raise InsufficientCredits(required=GENERATION_COST, available=available)

    try:
        text = generator.generate_content(
            topic=topic.strip(),
            platform=platform,
            tone=tone,
            language=language,
            options=options,
        )
    except Exception as exc:
        logger.warning("content_generation_failed", user_id=user_id, platform=platform, error=str(exc))
        _log_failure(session, user_id=user_id, platform=platform, topic=topic, error=str(exc))
        raise GenerationFailed("Content generation failed", reason=str(exc)) from exc

    if not text or not text.strip():
        _log_failure(session, user_id=user_id, platform=platform, topic=topic, error="empty content")
        raise GenerationFailed("Content generation returned no text")

    try:
        post = create_post(
            session,
            user_id=user_id,
            platform=platform,
            content=text,
            automation_rule_id=automation_rule_id,
        )
        deduct_credits(
            session,
            user_id=user_id,
            amount=GENERATION_COST,
            reason=f"AI generation for {platform}",
            post_id=post.id,
            commit=False,
        )
        increment_generations(session, user_id=user_id)
        session.add(
            GenerationLog(
                user_id=user_id,
                platform=platform,
                topic=topic.strip()[:500],
                status="success",
                post_id=post.id,
                credits_used=GENERATION_COST,
            )
        )
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info("content_generated", user_id=user_id, platform=platform, post_id=post.id)
    return GenerationOutcome(
        post=post,
        credits_used=GENERATION_COST,
        credits_remaining=get_available_credits(session, user_id),
        generations_today=usage.generations_count + 1,
        generations_limit=decision.limit,
    )
