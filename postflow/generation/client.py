"""Webhook client for the content generation service."""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, Mapping, Optional

import httpx

from postflow.core.config import get_settings


class ContentGeneratorError(RuntimeError):
    """Raised when the generation webhook fails."""


class WebhookContentGenerator:
    def __init__(
        self,
        *,
        webhook_url: str,
        webhook_token: str = "",
        timeout_seconds: int = 60,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._webhook_url = webhook_url.strip()
        self._webhook_token = webhook_token.strip()
        self._timeout_seconds = max(1, timeout_seconds)
        self._client = client

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._webhook_token:
            headers["Authorization"] = f"Bearer {self._webhook_token}"
        return headers

    def generate_content(
        self,
        *,
        topic: str,
        platform: str,
        tone: str,
        language: str,
        options: Optional[Mapping[str, Any]] = None,
    ) -> str:
        if not self._webhook_url:
            raise ContentGeneratorError("content_generator_url_missing")

        payload: Dict[str, Any] = {
            "topic": topic,
            "platform": platform,
            "tone": tone,
            "language": language,
            "options": dict(options or {}),
        }
        if self._client is not None:
            response = self._client.post(self._webhook_url, headers=self._headers(), json=payload)
        else:
            with httpx.Client(timeout=self._timeout_seconds) as client:
                response = client.post(self._webhook_url, headers=self._headers(), json=payload)

        if response.status_code < 200 or response.status_code >= 300:
            detail = response.text.strip()
            if len(detail) > 200:
                detail = detail[:200] + "..."
            raise ContentGeneratorError(f"content_generator_failed status={response.status_code} detail={detail}")

        try:
            body = response.json()
        except Exception as exc:  # pragma: no cover
            raise ContentGeneratorError("content_generator_invalid_json_response") from exc

        text = body.get("content") if isinstance(body, dict) else None
        if not isinstance(text, str) or not text.strip():
            raise ContentGeneratorError("content_generator_empty_content")
        return text.strip()


@lru_cache(maxsize=1)
def get_content_generator() -> WebhookContentGenerator:
    settings = get_settings()
    return WebhookContentGenerator(
        webhook_url=settings.content_generator_url,
        webhook_token=settings.content_generator_token,
        timeout_seconds=settings.content_generator_timeout_seconds,
    )
