"""FastAPI dependencies for auth and admin enforcement."""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from postflow.auth.jwt import AuthContext
from postflow.auth.middleware import AUTH_CONTEXT_KEY
from postflow.auth.users import get_or_create_user, is_admin_email
from postflow.storage.db import get_session


def get_optional_auth_context(request: Request) -> Optional[AuthContext]:
    return getattr(request.state, AUTH_CONTEXT_KEY, None)


def require_auth_context(auth: Optional[AuthContext] = Depends(get_optional_auth_context)) -> AuthContext:
    if auth is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return auth


def require_user(
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> AuthContext:
    get_or_create_user(session, user_id=auth.user_id, email=auth.email)
    return auth


def require_admin(auth: AuthContext = Depends(require_auth_context)) -> AuthContext:
    if not is_admin_email(auth.email):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return auth
