"""Post records and their forward-only status transitions."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from postflow.core.clock import ensure_utc, utc_now
from postflow.core.errors import InvalidTransition, PostNotFound, PostOwnershipError, ValidationFailed
from postflow.storage.models import (
    PLATFORMS,
    POST_STATUS_DRAFT,
    POST_STATUS_FAILED,
    POST_STATUS_POSTED,
    POST_STATUS_SCHEDULED,
    Post,
)


ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    POST_STATUS_DRAFT: frozenset({POST_STATUS_SCHEDULED, POST_STATUS_POSTED, POST_STATUS_FAILED}),
    POST_STATUS_SCHEDULED: frozenset({POST_STATUS_POSTED, POST_STATUS_FAILED}),
    POST_STATUS_POSTED: frozenset(),
    POST_STATUS_FAILED: frozenset(),
}

ERROR_MESSAGE_MAX_CHARS = 2000


def validate_platform(platform: str) -> str:
    normalized = (platform or "").strip().lower()
    if normalized not in PLATFORMS:
        raise ValidationFailed(
            f"Unsupported platform: {platform}",
            field="platform",
            allowed=list(PLATFORMS),
        )
    return normalized


def create_post(
    session: Session,
    *,
    user_id: str,
    platform: str,
    content: str,
    image_url: Optional[str] = None,
    link: Optional[str] = None,
    automation_rule_id: Optional[str] = None,
) -> Post:
    if not content or not content.strip():
        raise ValidationFailed("Post content must not be empty", field="content")
    post = Post(
        user_id=user_id,
        platform=validate_platform(platform),
        content=content.strip(),
        image_url=image_url or None,
        link=link or None,
        status=POST_STATUS_DRAFT,
        automation_rule_id=automation_rule_id,
    )
    session.add(post)
    session.flush()
    return post


def get_post(session: Session, post_id: str) -> Optional[Post]:
    return session.scalar(
        select(Post).where(Post.id == post_id).execution_options(populate_existing=True)
    )


def get_post_for_owner(session: Session, *, post_id: str, user_id: str) -> Post:
    """Return the post, distinguishing a missing post from someone else's post."""

    post = get_post(session, post_id)
    if post is None:
        raise PostNotFound(f"Post not found: {post_id}", post_id=post_id)
    if post.user_id != user_id:
        raise PostOwnershipError("Post belongs to another user", post_id=post_id)
    return post


def list_user_posts(
    session: Session,
    *,
    user_id: str,
    status: Optional[str] = None,
    limit: int = 50,
) -> List[Post]:
    statement = select(Post).where(Post.user_id == user_id)
    if status is not None:
        statement = statement.where(Post.status == status)
    statement = statement.order_by(Post.created_at.desc()).limit(max(1, limit))
    return list(session.scalars(statement).all())


def list_due_scheduled_posts(
    session: Session,
    *,
    now: Optional[datetime] = None,
    limit: int = 100,
) -> List[Post]:
    reference = ensure_utc(now) if now is not None else utc_now()
    statement = (
        select(Post)
        .where(
            Post.status == POST_STATUS_SCHEDULED,
            Post.scheduled_date <= reference,
        )
        .order_by(Post.scheduled_date.asc())
        .limit(max(1, limit))
    )
    return list(session.scalars(statement).all())


def _transition(post: Post, target: str) -> None:
    allowed = ALLOWED_TRANSITIONS.get(post.status, frozenset())
    if target not in allowed:
        raise InvalidTransition(
            f"Cannot move post from {post.status} to {target}",
            post_id=post.id,
            current_status=post.status,
            target_status=target,
        )
    post.status = target
    post.updated_at = utc_now()


def mark_scheduled(post: Post, *, scheduled_date: datetime) -> Post:
    _transition(post, POST_STATUS_SCHEDULED)
    post.scheduled_date = ensure_utc(scheduled_date)
    post.error_message = None
    return post


def mark_posted(
    post: Post,
    *,
    platform_post_id: Optional[str],
    post_url: Optional[str],
    published_at: Optional[datetime] = None,
) -> Post:
    _transition(post, POST_STATUS_POSTED)
    post.platform_post_id = platform_post_id
    post.post_url = post_url
    post.published_at = ensure_utc(published_at) if published_at is not None else utc_now()
    post.error_message = None
    return post


def mark_failed(post: Post, *, error_message: str) -> Post:
    _transition(post, POST_STATUS_FAILED)
    post.error_message = (error_message or "Unknown error")[:ERROR_MESSAGE_MAX_CHARS]
    return post


def delete_post(session: Session, post: Post) -> None:
    if post.status not in {POST_STATUS_DRAFT, POST_STATUS_SCHEDULED}:
        raise InvalidTransition(
            f"Cannot delete a {post.status} post",
            post_id=post.id,
            current_status=post.status,
        )
    session.delete(post)
