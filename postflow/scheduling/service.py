"""Schedule posts: quota and credit checks, atomic reserve+transition, then event emission."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from postflow.core.clock import ensure_utc, utc_now
from postflow.core.errors import (
    AdvanceWindowExceeded,
    InsufficientCredits,
    InvalidTransition,
    QueueLimitExceeded,
    UserNotFound,
    ValidationFailed,
)
from postflow.core.logger import get_logger
from postflow.credits.ledger import get_available_credits, get_credit_snapshot, release_reservation, reserve_credits
from postflow.events.kinds import JobKind
from postflow.events.sender import EventSender
from postflow.posts.store import delete_post, get_post_for_owner, mark_scheduled
from postflow.storage.models import POST_STATUS_DRAFT, Post, User
from postflow.tiers.policy import (
    REASON_ADVANCE_WINDOW,
    REASON_QUEUE_FULL,
    calculate_post_credits,
    can_schedule,
    has_enough_credits,
)
from postflow.usage.service import count_scheduled_posts


logger = get_logger("postflow.scheduling")


@dataclass(frozen=True)
class ScheduleOutcome:
    post: Post
    credits_reserved: int
    credits_available: int
    queue_position: int
    queue_limit: int
    event_emitted: bool
    event_id: Optional[str] = None


def _lock_user(session: Session, user_id: str) -> User:
    # Serializes concurrent schedule requests for one user on row-locking backends.
    user = session.scalar(
        select(User).where(User.id == user_id).with_for_update().execution_options(populate_existing=True)
    )
    if user is None:
        raise UserNotFound(f"User not found: {user_id}", user_id=user_id)
    return user


def emit_scheduled_post_event(
    event_sender: EventSender,
    *,
    post: Post,
) -> Optional[str]:
    """Best-effort trigger; the recovery sweep picks the post up if this is lost."""

    payload = {
        "post_id": post.id,
        "user_id": post.user_id,
        "platform": post.platform,
        "scheduled_at": ensure_utc(post.scheduled_date).isoformat() if post.scheduled_date else None,
    }
    try:
        return event_sender.send(
            JobKind.SCHEDULED_POST.event_name,
            payload,
            deliver_at=ensure_utc(post.scheduled_date) if post.scheduled_date else None,
        )
    except Exception as exc:
        logger.warning(
            "schedule_event_emit_failed",
            post_id=post.id,
            user_id=post.user_id,
            error=str(exc),
        )
        return None


def schedule_post(
    session: Session,
    *,
    user_id: str,
    post_id: str,
    scheduled_date: datetime,
    event_sender: EventSender,
    now: Optional[datetime] = None,
) -> ScheduleOutcome:
    reference = ensure_utc(now) if now is not None else utc_now()

    try:
        post = get_post_for_owner(session, post_id=post_id, user_id=user_id)
        user = _lock_user(session, user_id)
        if post.status != POST_STATUS_DRAFT:
            raise InvalidTransition(
                f"Only draft posts can be scheduled (post is {post.status})",
                post_id=post.id,
                current_status=post.status,
            )

        queue_size = count_scheduled_posts(session, user_id=user_id)
        decision = can_schedule(user.tier, queue_size, scheduled_date, now=reference)
        if not decision.allowed:
            if decision.reason == REASON_QUEUE_FULL:
                raise QueueLimitExceeded(decision.message or "Queue is full", limit=decision.limit, current=decision.current)
            if decision.reason == REASON_ADVANCE_WINDOW:
                raise AdvanceWindowExceeded(
                    decision.message or "Scheduled date is too far ahead",
                    limit=decision.limit,
                    current=decision.current,
                )
            raise ValidationFailed(decision.message or "Invalid scheduled date", field="scheduled_date")

        cost = calculate_post_credits([post.platform])
        snapshot = get_credit_snapshot(session, user_id, now=reference)
        credit_check = has_enough_credits(snapshot.balance, snapshot.reserved, cost)
        if not credit_check.allowed:
            raise InsufficientCredits(required=cost, available=max(0, credit_check.current))

        reserve_credits(
            session,
            user_id=user_id,
            post_id=post.id,
            amount=cost,
            now=reference,
            commit=False,
        )
        mark_scheduled(post, scheduled_date=scheduled_date)
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info(
        "post_scheduled",
        post_id=post.id,
        user_id=user_id,
        platform=post.platform,
        scheduled_date=ensure_utc(scheduled_date).isoformat(),
        credits_reserved=cost,
    )

    event_id = emit_scheduled_post_event(event_sender, post=post)
    return ScheduleOutcome(
        post=post,
        credits_reserved=cost,
        credits_available=get_available_credits(session, user_id, now=reference),
        queue_position=queue_size + 1,
        queue_limit=decision.limit,
        event_emitted=event_id is not None,
        event_id=event_id,
    )


def cancel_scheduled_post(session: Session, *, user_id: str, post_id: str) -> bool:
    """Delete a draft or scheduled post and drop its credit hold; returns whether a hold was released."""

    try:
        post = get_post_for_owner(session, post_id=post_id, user_id=user_id)
        released = release_reservation(session, post_id=post.id, commit=False)
        delete_post(session, post)
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info("scheduled_post_cancelled", post_id=post_id, user_id=user_id, reservation_released=released)
    return released
