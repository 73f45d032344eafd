"""Post drafting, scheduling and publishing API routes."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from postflow.api.dependencies import get_event_sender, get_metrics, get_publishers
from postflow.auth.dependencies import require_user
from postflow.auth.jwt import AuthContext
from postflow.channels.base import PublisherRegistry
from postflow.core.metrics import MetricsRegistry
from postflow.events.sender import EventSender
from postflow.posts.store import create_post, list_user_posts
from postflow.publishing.service import STATUS_FAILED, publish_now
from postflow.scheduling.service import cancel_scheduled_post, schedule_post
from postflow.schemas.posts import (
    CancelScheduleResponse,
    CreatePostRequest,
    PlatformResultResponse,
    PostResponse,
    PublishNowRequest,
    PublishNowResponse,
    SchedulePostRequest,
    SchedulePostResponse,
)
from postflow.storage.db import get_session
from postflow.storage.models import Post


router = APIRouter(prefix="/posts", tags=["posts"])


def post_to_response(post: Post) -> PostResponse:
    return PostResponse(
        id=post.id,
        platform=post.platform,
        content=post.content,
        status=post.status,
        image_url=post.image_url,
        link=post.link,
        scheduled_date=post.scheduled_date,
        platform_post_id=post.platform_post_id,
        post_url=post.post_url,
        published_at=post.published_at,
        error_message=post.error_message,
    )


@router.get("", response_model=List[PostResponse])
def list_posts_endpoint(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    auth: AuthContext = Depends(require_user),
    session: Session = Depends(get_session),
) -> List[PostResponse]:
    posts = list_user_posts(session, user_id=auth.user_id, status=status_filter, limit=limit)
    return [post_to_response(post) for post in posts]


@router.post("", response_model=PostResponse, status_code=status.HTTP_201_CREATED)
def create_post_endpoint(
    payload: CreatePostRequest,
    auth: AuthContext = Depends(require_user),
    session: Session = Depends(get_session),
) -> PostResponse:
    try:
        post = create_post(
            session,
            user_id=auth.user_id,
            platform=payload.platform,
            content=payload.content,
            image_url=payload.image_url,
            link=payload.link,
        )
        session.commit()
    except Exception:
        session.rollback()
        raise
    return post_to_response(post)


@router.post("/schedule", response_model=SchedulePostResponse)
def schedule_post_endpoint(
    payload: SchedulePostRequest,
    auth: AuthContext = Depends(require_user),
    session: Session = Depends(get_session),
    event_sender: EventSender = Depends(get_event_sender),
    metrics: MetricsRegistry = Depends(get_metrics),
) -> SchedulePostResponse:
    outcome = schedule_post(
        session,
        user_id=auth.user_id,
        post_id=payload.post_id,
        scheduled_date=payload.scheduled_date,
        event_sender=event_sender,
    )
    metrics.record_credits(operation="reserved", amount=outcome.credits_reserved)
    return SchedulePostResponse(
        post=post_to_response(outcome.post),
        credits_reserved=outcome.credits_reserved,
        credits_available=outcome.credits_available,
        queue_position=outcome.queue_position,
        queue_limit=outcome.queue_limit,
    )


@router.delete("/{post_id}/schedule", response_model=CancelScheduleResponse)
def cancel_schedule_endpoint(
    post_id: str,
    auth: AuthContext = Depends(require_user),
    session: Session = Depends(get_session),
    metrics: MetricsRegistry = Depends(get_metrics),
) -> CancelScheduleResponse:
    released = cancel_scheduled_post(session, user_id=auth.user_id, post_id=post_id)
    if released:
        metrics.record_credits(operation="released", amount=1)
    return CancelScheduleResponse(post_id=post_id, cancelled=True, credits_released=released)


@router.post("/publish", response_model=PublishNowResponse)
def publish_now_endpoint(
    payload: PublishNowRequest,
    auth: AuthContext = Depends(require_user),
    session: Session = Depends(get_session),
    publishers: PublisherRegistry = Depends(get_publishers),
    metrics: MetricsRegistry = Depends(get_metrics),
):
    outcome = publish_now(
        session,
        user_id=auth.user_id,
        platforms=payload.platforms,
        content=payload.content,
        publishers=publishers,
        image_url=payload.image_url,
        link=payload.link,
    )
    for result in outcome.results:
        metrics.record_platform_publish(platform=result.platform, outcome="success" if result.success else "failure")
    if outcome.credits_deducted:
        metrics.record_credits(operation="deducted", amount=outcome.credits_deducted)

    response = PublishNowResponse(
        status=outcome.status,
        results=[
            PlatformResultResponse(
                platform=result.platform,
                success=result.success,
                post_id=result.post_id,
                platform_post_id=result.platform_post_id,
                post_url=result.post_url,
                error=result.error,
            )
            for result in outcome.results
        ],
        credits_deducted=outcome.credits_deducted,
        credits_remaining=outcome.credits_remaining,
    )
    if outcome.status == STATUS_FAILED:
        return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content=response.model_dump(mode="json"))
    return response
