"""OAuth relay client that performs the platform-specific OAuth exchanges over HTTP."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Optional, Protocol
from urllib.parse import urlencode

import httpx

from postflow.core.config import get_settings


class OAuthRelayError(RuntimeError):
    """Raised when the OAuth relay rejects or fails a request."""


@dataclass(frozen=True)
class OAuthTokens:
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None


@dataclass(frozen=True)
class AccountProfile:
    external_account_id: str
    account_name: Optional[str] = None


class OAuthProvider(Protocol):
    def authorization_url(self, *, platform: str, state: str, redirect_uri: str) -> str:
        ...

    def exchange_code_for_token(self, *, platform: str, code: str, redirect_uri: str) -> OAuthTokens:
        ...

    def get_user_profile(self, *, platform: str, access_token: str) -> AccountProfile:
        ...

    def revoke_token(self, *, platform: str, token: str) -> None:
        ...


class OAuthRelayClient:
    def __init__(
        self,
        *,
        relay_url: str,
        relay_token: str = "",
        timeout_seconds: int = 20,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._relay_url = relay_url.strip().rstrip("/")
        self._relay_token = relay_token.strip()
        self._timeout_seconds = max(1, timeout_seconds)
        self._client = client

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._relay_token:
            headers["Authorization"] = f"Bearer {self._relay_token}"
        return headers

    def _post(self, platform: str, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self._relay_url:
            raise OAuthRelayError("oauth_relay_url_missing")

        url = f"{self._relay_url}/{platform}/{path}"
        if self._client is not None:
            response = self._client.post(url, headers=self._headers(), json=payload)
        else:
            with httpx.Client(timeout=self._timeout_seconds) as client:
                response = client.post(url, headers=self._headers(), json=payload)

        if response.status_code < 200 or response.status_code >= 300:
            detail = response.text.strip()
            if len(detail) > 200:
                detail = detail[:200] + "..."
            raise OAuthRelayError(f"{platform}_oauth_{path}_failed status={response.status_code} detail={detail}")

        try:
            body = response.json()
        except Exception as exc:  # pragma: no cover
            raise OAuthRelayError(f"{platform}_oauth_invalid_json_response") from exc
        if not isinstance(body, dict):
            raise OAuthRelayError(f"{platform}_oauth_invalid_payload")
        return body

    def authorization_url(self, *, platform: str, state: str, redirect_uri: str) -> str:
        if not self._relay_url:
            raise OAuthRelayError("oauth_relay_url_missing")
        query = urlencode({"state": state, "redirect_uri": redirect_uri})
        return f"{self._relay_url}/{platform}/authorize?{query}"

    def exchange_code_for_token(self, *, platform: str, code: str, redirect_uri: str) -> OAuthTokens:
        body = self._post(platform, "token", {"code": code, "redirect_uri": redirect_uri})
        access_token = body.get("access_token")
        if not access_token:
            raise OAuthRelayError(f"{platform}_oauth_missing_access_token")
        expires_in = body.get("expires_in")
        return OAuthTokens(
            access_token=str(access_token),
            refresh_token=str(body["refresh_token"]) if body.get("refresh_token") else None,
            expires_in=int(expires_in) if expires_in is not None else None,
        )

    def get_user_profile(self, *, platform: str, access_token: str) -> AccountProfile:
        body = self._post(platform, "profile", {"access_token": access_token})
        account_id = body.get("id")
        if not account_id:
            raise OAuthRelayError(f"{platform}_oauth_missing_account_id")
        return AccountProfile(
            external_account_id=str(account_id),
            account_name=str(body["name"]) if body.get("name") else None,
        )

    def revoke_token(self, *, platform: str, token: str) -> None:
        self._post(platform, "revoke", {"token": token})


@lru_cache(maxsize=1)
def get_oauth_provider() -> OAuthRelayClient:
    settings = get_settings()
    return OAuthRelayClient(
        relay_url=settings.oauth_relay_url,
        relay_token=settings.oauth_relay_token,
        timeout_seconds=settings.publisher_timeout_seconds,
    )
