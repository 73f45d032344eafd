"""Shared publisher contracts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Protocol


@dataclass(frozen=True)
class PublishAccount:
    platform: str
    external_account_id: str
    access_token: str
    account_name: Optional[str] = None


@dataclass(frozen=True)
class PublishContent:
    text: str
    image_url: Optional[str] = None
    link: Optional[str] = None


@dataclass(frozen=True)
class PlatformPublishResult:
    success: bool
    platform_post_id: Optional[str] = None
    post_url: Optional[str] = None
    error: Optional[str] = None


class PlatformPublisher(Protocol):
    platform: str

    def publish(self, account: PublishAccount, content: PublishContent) -> PlatformPublishResult:
        raise NotImplementedError

    def revoke_token(self, token: str) -> None:
        raise NotImplementedError


class PublisherRegistry:
    """Resolve the publisher responsible for a platform."""

    def __init__(self, publishers: Iterable[PlatformPublisher] = ()) -> None:
        self._publishers: Dict[str, PlatformPublisher] = {}
        for publisher in publishers:
            self.register(publisher)

    def register(self, publisher: PlatformPublisher) -> None:
        self._publishers[publisher.platform] = publisher

    def get(self, platform: str) -> Optional[PlatformPublisher]:
        return self._publishers.get(platform)

    def platforms(self) -> list[str]:
        return sorted(self._publishers)
