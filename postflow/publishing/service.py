"""Publishing orchestrator: per-platform fan-out, partial success and credit accounting."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from postflow.channels.base import PlatformPublishResult, PublishAccount, PublishContent, PublisherRegistry
from postflow.core.clock import ensure_utc, utc_now
from postflow.core.errors import (
    DailyPostLimitExceeded,
    InsufficientCredits,
    PostNotFound,
    UserNotFound,
    ValidationFailed,
)
from postflow.core.logger import get_logger
from postflow.credits.ledger import (
    consume_reservation,
    deduct_credits,
    get_active_reservation,
    get_available_credits,
    get_credit_snapshot,
    release_expired_reservations,
    release_reservation,
)
from postflow.posts.store import create_post, mark_failed, mark_posted, validate_platform
from postflow.storage.models import POST_STATUS_SCHEDULED, ConnectedAccount, Post, User
from postflow.storage.security import decrypt_token
from postflow.tiers.policy import calculate_post_credits, can_post, has_enough_credits
from postflow.usage.service import get_daily_usage, increment_posts


STATUS_SUCCESS = "success"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"

INSUFFICIENT_CREDITS_SKIP_MESSAGE = "Insufficient credits - post skipped"

logger = get_logger("postflow.publishing")


@dataclass(frozen=True)
class PlatformResult:
    platform: str
    success: bool
    post_id: Optional[str] = None
    platform_post_id: Optional[str] = None
    post_url: Optional[str] = None
    error: Optional[str] = None
    charged: bool = False


@dataclass(frozen=True)
class PublishOutcome:
    status: str
    results: List[PlatformResult] = field(default_factory=list)
    credits_deducted: int = 0
    credits_remaining: int = 0
    message: Optional[str] = None

    @property
    def any_success(self) -> bool:
        return any(result.success for result in self.results)


def classify(results: Sequence[PlatformResult]) -> str:
    succeeded = sum(1 for result in results if result.success)
    if results and succeeded == len(results):
        return STATUS_SUCCESS
    if succeeded == 0:
        return STATUS_FAILED
    return STATUS_PARTIAL


def _normalize_platforms(platforms: Sequence[str]) -> List[str]:
    normalized: List[str] = []
    for platform in platforms:
        value = validate_platform(platform)
        if value not in normalized:
            normalized.append(value)
    if not normalized:
        raise ValidationFailed("At least one platform is required", field="platforms")
    return normalized


def _resolve_account(session: Session, *, user_id: str, platform: str) -> Optional[ConnectedAccount]:
    return session.scalar(
        select(ConnectedAccount)
        .where(
            ConnectedAccount.user_id == user_id,
            ConnectedAccount.platform == platform,
            ConnectedAccount.is_active.is_(True),
        )
        .order_by(ConnectedAccount.created_at.asc())
    )


def _call_publisher(session: Session, post: Post, publishers: PublisherRegistry) -> PlatformPublishResult:
    """Run one platform attempt; every failure comes back as a result, never an exception."""

    publisher = publishers.get(post.platform)
    if publisher is None:
        return PlatformPublishResult(success=False, error=f"No publisher configured for {post.platform}")

    account = _resolve_account(session, user_id=post.user_id, platform=post.platform)
    if account is None:
        return PlatformPublishResult(success=False, error=f"No connected {post.platform} account")

    try:
        access_token = decrypt_token(account.access_token_encrypted)
    except ValueError:
        return PlatformPublishResult(success=False, error=f"Stored {post.platform} token could not be decrypted")

    content = PublishContent(text=post.content, image_url=post.image_url, link=post.link)
    try:
        result = publisher.publish(
            PublishAccount(
                platform=post.platform,
                external_account_id=account.external_account_id,
                access_token=access_token,
                account_name=account.account_name,
            ),
            content,
        )
    except Exception as exc:
        logger.warning("platform_publish_failed", post_id=post.id, platform=post.platform, error=str(exc))
        return PlatformPublishResult(success=False, error=str(exc) or type(exc).__name__)

    if not result.success and not result.error:
        return PlatformPublishResult(success=False, error="Publisher reported failure")
    return result


def _load_user(session: Session, user_id: str) -> User:
    user = session.scalar(select(User).where(User.id == user_id))
    if user is None:
        raise UserNotFound(f"User not found: {user_id}", user_id=user_id)
    return user


def _settle_direct(
    session: Session,
    *,
    post: Post,
    outcome: PlatformPublishResult,
) -> PlatformResult:
    """Record one immediate-publish attempt and charge it only if it succeeded."""

    charged = False
    try:
        if outcome.success:
            mark_posted(post, platform_post_id=outcome.platform_post_id, post_url=outcome.post_url)
            try:
                deduct_credits(
                    session,
                    user_id=post.user_id,
                    amount=1,
                    reason=f"Published to {post.platform}",
                    post_id=post.id,
                    commit=False,
                )
                charged = True
            except InsufficientCredits:
                # Balance moved between the pre-check and the charge; the post is already live.
                logger.error("publish_charge_failed", post_id=post.id, user_id=post.user_id, platform=post.platform)
            increment_posts(session, user_id=post.user_id, platform=post.platform)
        else:
            mark_failed(post, error_message=outcome.error or "Publish failed")
        session.commit()
    except Exception:
        session.rollback()
        raise

    return PlatformResult(
        platform=post.platform,
        success=outcome.success,
        post_id=post.id,
        platform_post_id=outcome.platform_post_id,
        post_url=outcome.post_url,
        error=None if outcome.success else post.error_message,
        charged=charged,
    )


def publish_now(
    session: Session,
    *,
    user_id: str,
    platforms: Sequence[str],
    content: str,
    publishers: PublisherRegistry,
    image_url: Optional[str] = None,
    link: Optional[str] = None,
) -> PublishOutcome:
    """Publish one piece of content to several platforms, charging one credit per success."""

    targets = _normalize_platforms(platforms)
    if not content or not content.strip():
        raise ValidationFailed("Post content must not be empty", field="content")
    if "instagram" in targets and not (image_url or "").strip():
        raise ValidationFailed("Instagram posts require an image", field="image_url")

    user = _load_user(session, user_id)
    usage = get_daily_usage(session, user_id=user_id)
    for platform in targets:
        decision = can_post(user.tier, platform, usage.platform_breakdown)
        if not decision.allowed:
            raise DailyPostLimitExceeded(
                decision.message or "Daily post limit reached",
                limit=decision.limit,
                current=decision.current,
                platform=platform,
            )

    cost = calculate_post_credits(targets)
    release_expired_reservations(session, user_id=user_id)
    snapshot = get_credit_snapshot(session, user_id)
    credit_check = has_enough_credits(snapshot.balance, snapshot.reserved, cost)
    if not credit_check.allowed:
        raise InsufficientCredits(required=cost, available=max(0, credit_check.current))

    try:
        posts = [
            create_post(
                session,
                user_id=user_id,
                platform=platform,
                content=content,
                image_url=image_url,
                link=link,
            )
            for platform in targets
        ]
        session.commit()
    except Exception:
        session.rollback()
        raise

    results: List[PlatformResult] = []
    for post in posts:
        outcome = _call_publisher(session, post, publishers)
        results.append(_settle_direct(session, post=post, outcome=outcome))

    status = classify(results)
    credits_deducted = sum(1 for result in results if result.charged)
    logger.info(
        "publish_now_completed",
        user_id=user_id,
        status=status,
        platforms=targets,
        credits_deducted=credits_deducted,
    )
    return PublishOutcome(
        status=status,
        results=results,
        credits_deducted=credits_deducted,
        credits_remaining=get_available_credits(session, user_id),
    )


def _lock_post(session: Session, post_id: str) -> Optional[Post]:
    # A second concurrent run blocks here and then sees the settled status.
    return session.scalar(
        select(Post).where(Post.id == post_id).with_for_update().execution_options(populate_existing=True)
    )


def publish_scheduled_post(
    session: Session,
    *,
    post_id: str,
    publishers: PublisherRegistry,
    now: Optional[datetime] = None,
) -> PublishOutcome:
    """Publish a due scheduled post; safe to call repeatedly for the same post."""

    reference = ensure_utc(now) if now is not None else utc_now()
    post = _lock_post(session, post_id)
    if post is None:
        session.rollback()
        raise PostNotFound(f"Post not found: {post_id}", post_id=post_id)

    if post.status != POST_STATUS_SCHEDULED:
        session.rollback()
        logger.info("scheduled_post_already_settled", post_id=post_id, status=post.status)
        return PublishOutcome(
            status=STATUS_SKIPPED,
            message=f"Post is {post.status}, nothing to publish",
            credits_remaining=get_available_credits(session, post.user_id, now=reference),
        )

    try:
        release_expired_reservations(session, now=reference, user_id=post.user_id, commit=False)
        reservation = get_active_reservation(session, post_id=post.id)
        if reservation is None and get_available_credits(session, post.user_id, now=reference) < 1:
            mark_failed(post, error_message=INSUFFICIENT_CREDITS_SKIP_MESSAGE)
            session.commit()
            logger.warning("scheduled_post_skipped_insufficient_credits", post_id=post.id, user_id=post.user_id)
            result = PlatformResult(
                platform=post.platform,
                success=False,
                post_id=post.id,
                error=INSUFFICIENT_CREDITS_SKIP_MESSAGE,
            )
            return PublishOutcome(
                status=STATUS_FAILED,
                results=[result],
                credits_remaining=get_available_credits(session, post.user_id, now=reference),
                message=INSUFFICIENT_CREDITS_SKIP_MESSAGE,
            )

        outcome = _call_publisher(session, post, publishers)
        charged = False
        if outcome.success:
            mark_posted(post, platform_post_id=outcome.platform_post_id, post_url=outcome.post_url)
            if reservation is not None:
                consume_reservation(session, post_id=post.id, now=reference, commit=False)
                charged = True
            else:
                try:
                    deduct_credits(
                        session,
                        user_id=post.user_id,
                        amount=1,
                        reason=f"Published scheduled post to {post.platform}",
                        post_id=post.id,
                        commit=False,
                    )
                    charged = True
                except InsufficientCredits:
                    logger.error("publish_charge_failed", post_id=post.id, user_id=post.user_id, platform=post.platform)
            increment_posts(session, user_id=post.user_id, platform=post.platform, occurred_at=reference)
        else:
            mark_failed(post, error_message=outcome.error or "Publish failed")
            release_reservation(session, post_id=post.id, now=reference, commit=False)
        session.commit()
    except Exception:
        session.rollback()
        raise

    result = PlatformResult(
        platform=post.platform,
        success=outcome.success,
        post_id=post.id,
        platform_post_id=outcome.platform_post_id,
        post_url=outcome.post_url,
        error=None if outcome.success else post.error_message,
        charged=charged,
    )
    logger.info(
        "scheduled_post_processed",
        post_id=post.id,
        user_id=post.user_id,
        platform=post.platform,
        success=outcome.success,
        used_reservation=reservation is not None,
    )
    return PublishOutcome(
        status=classify([result]),
        results=[result],
        credits_deducted=1 if charged else 0,
        credits_remaining=get_available_credits(session, post.user_id, now=reference),
        message=None if outcome.success else post.error_message,
    )
