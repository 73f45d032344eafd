"""Content generation API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from postflow.api.dependencies import get_generator, get_metrics
from postflow.auth.dependencies import require_user
from postflow.auth.jwt import AuthContext
from postflow.core.metrics import MetricsRegistry
from postflow.generation.service import ContentGenerator, generate_content_draft
from postflow.posts.router import post_to_response
from postflow.schemas.generation import GenerateContentRequest, GenerateContentResponse
from postflow.storage.db import get_session


router = APIRouter(prefix="/generation", tags=["generation"])


@router.post("", response_model=GenerateContentResponse, status_code=status.HTTP_201_CREATED)
def generate_content_endpoint(
    payload: GenerateContentRequest,
    auth: AuthContext = Depends(require_user),
    session: Session = Depends(get_session),
    generator: ContentGenerator = Depends(get_generator),
    metrics: MetricsRegistry = Depends(get_metrics),
) -> GenerateContentResponse:
    outcome = generate_content_draft(
        session,
        user_id=auth.user_id,
        topic=payload.topic,
        platform=payload.platform,
        generator=generator,
        tone=payload.tone,
        language=payload.language,
        options=payload.options,
    )
    metrics.record_credits(operation="deducted", amount=outcome.credits_used)
    return GenerateContentResponse(
        post=post_to_response(outcome.post),
        credits_used=outcome.credits_used,
        credits_remaining=outcome.credits_remaining,
        generations_today=outcome.generations_today,
        generations_limit=outcome.generations_limit,
    )
