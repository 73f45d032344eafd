"""Typed domain errors shared by services and mapped to HTTP responses by the API."""

from __future__ import annotations

from typing import Any, Dict


class PostflowError(RuntimeError):
    """Base class for errors surfaced to callers as structured failures."""

    code = "postflow_error"

    def __init__(self, message: str, **details: Any) -> None:
        self.message = message
        self.details: Dict[str, Any] = {key: value for key, value in details.items() if value is not None}
        super().__init__(message)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "message": self.message}
        payload.update(self.details)
        return payload


class ValidationFailed(PostflowError):
    code = "validation_failed"


class AuthorizationError(PostflowError):
    code = "unauthorized"


class PostOwnershipError(AuthorizationError):
    code = "post_not_owned"


class NotFoundError(PostflowError):
    code = "not_found"


class PostNotFound(NotFoundError):
    code = "post_not_found"


class UserNotFound(NotFoundError):
    code = "user_not_found"


class JobNotFound(NotFoundError):
    code = "job_not_found"


class RuleNotFound(NotFoundError):
    code = "automation_rule_not_found"


class AccountNotFound(NotFoundError):
    code = "connected_account_not_found"


class QuotaExceeded(PostflowError):
    code = "quota_exceeded"

    def __init__(self, message: str, *, limit: int | None = None, current: int | None = None, **details: Any) -> None:
        super().__init__(message, limit=limit, current=current, **details)
        self.limit = limit
        self.current = current


class QueueLimitExceeded(QuotaExceeded):
    code = "queue_limit_exceeded"


class AdvanceWindowExceeded(QuotaExceeded):
    code = "advance_window_exceeded"


class DailyPostLimitExceeded(QuotaExceeded):
    code = "daily_post_limit_exceeded"


class ConnectionLimitExceeded(QuotaExceeded):
    code = "connection_limit_exceeded"


class AutomationLimitExceeded(QuotaExceeded):
    code = "automation_limit_exceeded"


class GenerationLimitExceeded(QuotaExceeded):
    code = "generation_limit_exceeded"


class CreditError(PostflowError):
    code = "credit_error"


class InsufficientCredits(CreditError):
    code = "insufficient_credits"

    def __init__(self, *, required: int, available: int, message: str | None = None) -> None:
        super().__init__(
            message or f"Insufficient credits: {required} required, {available} available",
            required=required,
            available=available,
        )
        self.required = required
        self.available = available


class DuplicateReservation(CreditError):
    code = "duplicate_reservation"


class NoActiveReservation(CreditError):
    code = "no_active_reservation"


class InvalidTransition(PostflowError):
    code = "invalid_transition"


class JobNotRetryable(PostflowError):
    code = "job_not_retryable"


class GenerationFailed(PostflowError):
    code = "generation_failed"


class EventEmitError(RuntimeError):
    """Raised by event senders when the transport rejects an event."""


class ExternalServiceError(PostflowError):
    code = "external_service_error"
