"""User notification API routes."""

from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from postflow.auth.dependencies import require_user
from postflow.auth.jwt import AuthContext
from postflow.notifications.service import list_notifications
from postflow.storage.db import get_session


router = APIRouter(prefix="/notifications", tags=["notifications"])


class NotificationResponse(BaseModel):
    id: str
    kind: str
    message: str
    notice_date: date
    created_at: Optional[datetime] = None


@router.get("", response_model=List[NotificationResponse])
def list_notifications_endpoint(
    limit: int = Query(default=50, ge=1, le=200),
    auth: AuthContext = Depends(require_user),
    session: Session = Depends(get_session),
) -> List[NotificationResponse]:
    return [
        NotificationResponse(
            id=item.id,
            kind=item.kind,
            message=item.message,
            notice_date=item.notice_date,
            created_at=item.created_at,
        )
        for item in list_notifications(session, user_id=auth.user_id, limit=limit)
    ]
