"""Connected social accounts: OAuth handshake, tier-limited storage and disconnection."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
import json
import secrets
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from postflow.connections.relay import OAuthProvider
from postflow.core.clock import utc_now
from postflow.core.config import get_settings
from postflow.core.errors import (
    AccountNotFound,
    ConnectionLimitExceeded,
    ExternalServiceError,
    UserNotFound,
    ValidationFailed,
)
from postflow.core.logger import get_logger
from postflow.core.state_store import KeyValueStateStore
from postflow.posts.store import validate_platform
from postflow.storage.models import ConnectedAccount, User
from postflow.storage.security import decrypt_token, encrypt_token
from postflow.tiers.policy import can_connect
from postflow.usage.service import count_connections_by_platform


logger = get_logger("postflow.connections")


@dataclass(frozen=True)
class ConnectionStart:
    authorization_url: str
    state: str


def _load_user(session: Session, user_id: str) -> User:
    user = session.scalar(select(User).where(User.id == user_id))
    if user is None:
        raise UserNotFound(f"User not found: {user_id}", user_id=user_id)
    return user


def _redirect_uri(platform: str) -> str:
    base = get_settings().oauth_redirect_base_url.strip().rstrip("/")
    return f"{base}/connections/{platform}/callback"


def _ensure_can_connect(session: Session, user: User, platform: str) -> None:
    decision = can_connect(user.tier, count_connections_by_platform(session, user_id=user.id), platform)
    if not decision.allowed:
        raise ConnectionLimitExceeded(
            decision.message or "Connection limit reached",
            limit=decision.limit,
            current=decision.current,
            platform=platform,
        )


def list_connections(session: Session, *, user_id: str) -> List[ConnectedAccount]:
    return list(
        session.scalars(
            select(ConnectedAccount)
            .where(ConnectedAccount.user_id == user_id)
            .order_by(ConnectedAccount.platform.asc(), ConnectedAccount.created_at.asc())
        ).all()
    )


def begin_connection(
    session: Session,
    *,
    user_id: str,
    platform: str,
    provider: OAuthProvider,
    state_store: KeyValueStateStore,
) -> ConnectionStart:
    platform = validate_platform(platform)
    user = _load_user(session, user_id)
    _ensure_can_connect(session, user, platform)

    state = secrets.token_urlsafe(24)
    state_store.put(
        state,
        json.dumps({"user_id": user_id, "platform": platform}, separators=(",", ":"), sort_keys=True),
        ttl_seconds=get_settings().oauth_state_ttl_seconds,
    )
    try:
        url = provider.authorization_url(platform=platform, state=state, redirect_uri=_redirect_uri(platform))
    except Exception as exc:
        state_store.pop(state)
        raise ExternalServiceError("Could not start the account connection", platform=platform, reason=str(exc)) from exc
    logger.info("connection_started", user_id=user_id, platform=platform)
    return ConnectionStart(authorization_url=url, state=state)


def complete_connection(
    session: Session,
    *,
    user_id: str,
    platform: str,
    code: str,
    state: str,
    provider: OAuthProvider,
    state_store: KeyValueStateStore,
) -> ConnectedAccount:
    """Validate the one-time state, exchange the code and store the encrypted tokens."""

    platform = validate_platform(platform)
    raw_state = state_store.pop(state)
    try:
        saved = json.loads(raw_state) if raw_state else {}
    except ValueError:
        saved = {}
    if saved.get("user_id") != user_id or saved.get("platform") != platform:
        raise ValidationFailed("Invalid or expired OAuth state", field="state")

    user = _load_user(session, user_id)
    redirect_uri = _redirect_uri(platform)
    try:
        tokens = provider.exchange_code_for_token(platform=platform, code=code, redirect_uri=redirect_uri)
        profile = provider.get_user_profile(platform=platform, access_token=tokens.access_token)
    except Exception as exc:
        logger.warning("connection_exchange_failed", user_id=user_id, platform=platform, error=str(exc))
        raise ExternalServiceError("Could not complete the account connection", platform=platform, reason=str(exc)) from exc

    account = session.scalar(
        select(ConnectedAccount).where(
            ConnectedAccount.user_id == user_id,
            ConnectedAccount.platform == platform,
            ConnectedAccount.external_account_id == profile.external_account_id,
        )
    )
    if account is None or not account.is_active:
        _ensure_can_connect(session, user, platform)

    now = utc_now()
    expires_at = now + timedelta(seconds=tokens.expires_in) if tokens.expires_in else None
    if account is None:
        account = ConnectedAccount(
            user_id=user_id,
            platform=platform,
            external_account_id=profile.external_account_id,
        )
        session.add(account)
    account.account_name = profile.account_name
    account.access_token_encrypted = encrypt_token(tokens.access_token)
    account.refresh_token_encrypted = encrypt_token(tokens.refresh_token) if tokens.refresh_token else None
    account.token_expires_at = expires_at
    account.is_active = True
    account.updated_at = now
    try:
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.info("connection_completed", user_id=user_id, platform=platform, account_id=account.id)
    return account


def disconnect_account(
    session: Session,
    *,
    user_id: str,
    platform: str,
    provider: OAuthProvider,
    account_id: Optional[str] = None,
) -> int:
    """Revoke tokens best-effort and delete the platform's accounts; returns how many were removed."""

    platform = validate_platform(platform)
    statement = select(ConnectedAccount).where(
        ConnectedAccount.user_id == user_id,
        ConnectedAccount.platform == platform,
    )
    if account_id is not None:
        statement = statement.where(ConnectedAccount.id == account_id)
    accounts = list(session.scalars(statement).all())
    if not accounts:
        raise AccountNotFound(f"No connected {platform} account", platform=platform, account_id=account_id)

    for account in accounts:
        try:
            provider.revoke_token(platform=platform, token=decrypt_token(account.access_token_encrypted))
        except Exception as exc:
            logger.warning("connection_revoke_failed", user_id=user_id, platform=platform, error=str(exc))
        session.delete(account)
    session.commit()
    logger.info("connection_removed", user_id=user_id, platform=platform, count=len(accounts))
    return len(accounts)
