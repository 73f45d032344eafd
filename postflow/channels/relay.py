"""Publisher that forwards posts to the platform publishing relay over HTTP."""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, Optional

import httpx

from postflow.channels.base import PlatformPublishResult, PublishAccount, PublishContent, PublisherRegistry
from postflow.core.config import get_settings
from postflow.storage.models import PLATFORMS


class PublisherRelayError(RuntimeError):
    """Raised when the publishing relay rejects or fails a request."""


class RelayPublisher:
    def __init__(
        self,
        *,
        platform: str,
        relay_url: str,
        relay_token: str = "",
        timeout_seconds: int = 20,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.platform = platform
        self._relay_url = relay_url.strip().rstrip("/")
        self._relay_token = relay_token.strip()
        self._timeout_seconds = max(1, timeout_seconds)
        self._client = client

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._relay_token:
            headers["Authorization"] = f"Bearer {self._relay_token}"
        return headers

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self._relay_url:
            raise PublisherRelayError("publisher_relay_url_missing")

        url = f"{self._relay_url}/{self.platform}/{path}"
        if self._client is not None:
            response = self._client.post(url, headers=self._headers(), json=payload)
        else:
            with httpx.Client(timeout=self._timeout_seconds) as client:
                response = client.post(url, headers=self._headers(), json=payload)

        if response.status_code < 200 or response.status_code >= 300:
            detail = response.text.strip()
            if len(detail) > 200:
                detail = detail[:200] + "..."
            raise PublisherRelayError(
                f"{self.platform}_relay_failed status={response.status_code} detail={detail}"
            )

        try:
            body = response.json()
        except Exception as exc:  # pragma: no cover
            raise PublisherRelayError(f"{self.platform}_relay_invalid_json_response") from exc
        if not isinstance(body, dict):
            raise PublisherRelayError(f"{self.platform}_relay_invalid_payload")
        return body

    def publish(self, account: PublishAccount, content: PublishContent) -> PlatformPublishResult:
        body = self._post(
            "publish",
            {
                "account_id": account.external_account_id,
                "access_token": account.access_token,
                "text": content.text,
                "image_url": content.image_url,
                "link": content.link,
            },
        )
        if body.get("success") is False:
            return PlatformPublishResult(success=False, error=str(body.get("error") or "publish_rejected"))

        post_id = body.get("id") or body.get("post_id")
        if not post_id:
            raise PublisherRelayError(f"{self.platform}_relay_missing_post_id")
        return PlatformPublishResult(
            success=True,
            platform_post_id=str(post_id),
            post_url=str(body["url"]) if body.get("url") else None,
        )

    def revoke_token(self, token: str) -> None:
        self._post("revoke", {"access_token": token})


def build_relay_registry(
    *,
    relay_url: str,
    relay_token: str = "",
    timeout_seconds: int = 20,
    client: Optional[httpx.Client] = None,
) -> PublisherRegistry:
    return PublisherRegistry(
        RelayPublisher(
            platform=platform,
            relay_url=relay_url,
            relay_token=relay_token,
            timeout_seconds=timeout_seconds,
            client=client,
        )
        for platform in PLATFORMS
    )


@lru_cache(maxsize=1)
def get_publisher_registry() -> PublisherRegistry:
    settings = get_settings()
    return build_relay_registry(
        relay_url=settings.publisher_relay_url,
        relay_token=settings.publisher_relay_token,
        timeout_seconds=settings.publisher_timeout_seconds,
    )
