"""Per-platform publisher contracts and adapters."""

from postflow.channels.base import (
    PlatformPublisher,
    PlatformPublishResult,
    PublishAccount,
    PublishContent,
    PublisherRegistry,
)

__all__ = [
    "PlatformPublisher",
    "PlatformPublishResult",
    "PublishAccount",
    "PublishContent",
    "PublisherRegistry",
]
