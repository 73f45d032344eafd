"""Automation rule API routes."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from postflow.auth.dependencies import require_user
from postflow.auth.jwt import AuthContext
from postflow.automation.service import create_rule, delete_rule, list_rules, toggle_rule
from postflow.schemas.automation import CreateRuleRequest, RuleResponse
from postflow.storage.db import get_session
from postflow.storage.models import AutomationRule


router = APIRouter(prefix="/automation", tags=["automation"])


def _rule_response(rule: AutomationRule) -> RuleResponse:
    return RuleResponse(
        id=rule.id,
        name=rule.name,
        topic=rule.topic,
        platform=rule.platform,
        frequency=rule.frequency,
        tone=rule.tone,
        language=rule.language,
        is_active=rule.is_active,
        last_run_at=rule.last_run_at,
    )


@router.get("/rules", response_model=List[RuleResponse])
def list_rules_endpoint(
    auth: AuthContext = Depends(require_user),
    session: Session = Depends(get_session),
) -> List[RuleResponse]:
    return [_rule_response(rule) for rule in list_rules(session, user_id=auth.user_id)]


@router.post("/rules", response_model=RuleResponse, status_code=status.HTTP_201_CREATED)
def create_rule_endpoint(
    payload: CreateRuleRequest,
    auth: AuthContext = Depends(require_user),
    session: Session = Depends(get_session),
) -> RuleResponse:
    rule = create_rule(
        session,
        user_id=auth.user_id,
        name=payload.name,
        topic=payload.topic,
        platform=payload.platform,
        frequency=payload.frequency,
        tone=payload.tone,
        language=payload.language,
    )
    return _rule_response(rule)


@router.patch("/rules/{rule_id}/toggle", response_model=RuleResponse)
def toggle_rule_endpoint(
    rule_id: str,
    auth: AuthContext = Depends(require_user),
    session: Session = Depends(get_session),
) -> RuleResponse:
    return _rule_response(toggle_rule(session, user_id=auth.user_id, rule_id=rule_id))


@router.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_rule_endpoint(
    rule_id: str,
    auth: AuthContext = Depends(require_user),
    session: Session = Depends(get_session),
) -> Response:
    delete_rule(session, user_id=auth.user_id, rule_id=rule_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
