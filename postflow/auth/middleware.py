"""Resolve the caller from the bearer token before a request reaches a router.

Routers that require a user read the context from ``request.state`` through
``postflow.auth.dependencies``; a missing or rejected token leaves it ``None``
and the dependency answers 401.
"""

from __future__ import annotations

from typing import Mapping, Optional

from fastapi import HTTPException, Request

from postflow.auth.jwt import AuthContext, decode_access_token
from postflow.core.logger import get_logger


AUTH_CONTEXT_KEY = "auth_context"
BEARER_SCHEME = "bearer"

logger = get_logger("postflow.auth")


def bearer_token(headers: Mapping[str, str]) -> Optional[str]:
    scheme, _, token = (headers.get("authorization") or "").partition(" ")
    if scheme.lower() != BEARER_SCHEME:
        return None
    return token.strip() or None


def resolve_request_auth_context(request: Request) -> Optional[AuthContext]:
    token = bearer_token(request.headers)
    if token is None:
        return None
    try:
        return decode_access_token(token)
    except HTTPException:
        logger.info("auth_token_rejected", path=request.url.path)
        return None
