"""Connected account API routes."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from postflow.api.dependencies import get_oauth, get_state_store
from postflow.auth.dependencies import require_user
from postflow.auth.jwt import AuthContext
from postflow.connections.relay import OAuthProvider
from postflow.connections.service import (
    begin_connection,
    complete_connection,
    disconnect_account,
    list_connections,
)
from postflow.core.state_store import KeyValueStateStore
from postflow.schemas.connections import (
    ConnectionCallbackRequest,
    ConnectionResponse,
    ConnectionStartResponse,
    DisconnectResponse,
)
from postflow.storage.db import get_session
from postflow.storage.models import ConnectedAccount


router = APIRouter(prefix="/connections", tags=["connections"])


def _connection_response(account: ConnectedAccount) -> ConnectionResponse:
    return ConnectionResponse(
        id=account.id,
        platform=account.platform,
        external_account_id=account.external_account_id,
        account_name=account.account_name,
        is_active=account.is_active,
        token_expires_at=account.token_expires_at,
    )


@router.get("", response_model=List[ConnectionResponse])
def list_connections_endpoint(
    auth: AuthContext = Depends(require_user),
    session: Session = Depends(get_session),
) -> List[ConnectionResponse]:
    return [_connection_response(account) for account in list_connections(session, user_id=auth.user_id)]


@router.post("/{platform}/start", response_model=ConnectionStartResponse)
def start_connection_endpoint(
    platform: str,
    auth: AuthContext = Depends(require_user),
    session: Session = Depends(get_session),
    provider: OAuthProvider = Depends(get_oauth),
    state_store: KeyValueStateStore = Depends(get_state_store),
) -> ConnectionStartResponse:
    start = begin_connection(
        session,
        user_id=auth.user_id,
        platform=platform,
        provider=provider,
        state_store=state_store,
    )
    return ConnectionStartResponse(authorization_url=start.authorization_url, state=start.state)


@router.post("/{platform}/callback", response_model=ConnectionResponse)
def connection_callback_endpoint(
    platform: str,
    payload: ConnectionCallbackRequest,
    auth: AuthContext = Depends(require_user),
    session: Session = Depends(get_session),
    provider: OAuthProvider = Depends(get_oauth),
    state_store: KeyValueStateStore = Depends(get_state_store),
) -> ConnectionResponse:
    account = complete_connection(
        session,
        user_id=auth.user_id,
        platform=platform,
        code=payload.code,
        state=payload.state,
        provider=provider,
        state_store=state_store,
    )
    return _connection_response(account)


@router.delete("/{platform}", response_model=DisconnectResponse)
def disconnect_endpoint(
    platform: str,
    account_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(require_user),
    session: Session = Depends(get_session),
    provider: OAuthProvider = Depends(get_oauth),
) -> DisconnectResponse:
    removed = disconnect_account(
        session,
        user_id=auth.user_id,
        platform=platform,
        provider=provider,
        account_id=account_id,
    )
    return DisconnectResponse(platform=platform, removed=removed)
