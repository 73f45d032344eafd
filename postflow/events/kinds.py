"""Job kinds and the event each kind is triggered by."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Mapping, Tuple


class JobKind(str, Enum):
    SCHEDULED_POST = "scheduled_post"
    AUTOMATION_RULE = "automation_rule"
    CREDIT_EXPIRY_CHECK = "credit_expiry_check"
    LOW_CREDIT_CHECK = "low_credit_check"
    MONTHLY_CREDIT_RESET = "monthly_credit_reset"

    @property
    def event_name(self) -> str:
        return _EVENT_NAMES[self]

    @property
    def required_payload_keys(self) -> Tuple[str, ...]:
        return _REQUIRED_KEYS.get(self, ())

    @classmethod
    def from_event_name(cls, event_name: str) -> "JobKind":
        for kind, name in _EVENT_NAMES.items():
            if name == event_name:
                return kind
        raise ValueError(f"Unknown event name: {event_name}")


_EVENT_NAMES: Dict[JobKind, str] = {
    JobKind.SCHEDULED_POST: "post/scheduled.process",
    JobKind.AUTOMATION_RULE: "automation/rule.execute",
    JobKind.CREDIT_EXPIRY_CHECK: "credits/check.expiry",
    JobKind.LOW_CREDIT_CHECK: "credits/check.low",
    JobKind.MONTHLY_CREDIT_RESET: "credits/reset.monthly",
}

_REQUIRED_KEYS: Dict[JobKind, Tuple[str, ...]] = {
    JobKind.SCHEDULED_POST: ("post_id", "user_id"),
    JobKind.AUTOMATION_RULE: ("rule_id", "user_id"),
}


def validate_payload(kind: JobKind, payload: Mapping[str, Any]) -> Dict[str, Any]:
    missing = [key for key in kind.required_payload_keys if not payload.get(key)]
    if missing:
        raise ValueError(f"Payload for {kind.value} is missing: {', '.join(missing)}")
    return dict(payload)
