"""Mapping of domain errors to HTTP responses."""

from __future__ import annotations

from typing import Tuple, Type

from fastapi import Request, status
from fastapi.responses import JSONResponse

from postflow.core.errors import (
    AuthorizationError,
    CreditError,
    ExternalServiceError,
    GenerationFailed,
    InsufficientCredits,
    InvalidTransition,
    JobNotRetryable,
    NotFoundError,
    PostflowError,
    QuotaExceeded,
    ValidationFailed,
)


# Checked in order; subclasses before their bases.
ERROR_STATUS_CODES: Tuple[Tuple[Type[PostflowError], int], ...] = (
    (ValidationFailed, status.HTTP_400_BAD_REQUEST),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (QuotaExceeded, status.HTTP_403_FORBIDDEN),
    (InsufficientCredits, status.HTTP_402_PAYMENT_REQUIRED),
    (CreditError, status.HTTP_409_CONFLICT),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (JobNotRetryable, status.HTTP_409_CONFLICT),
    (GenerationFailed, status.HTTP_502_BAD_GATEWAY),
    (ExternalServiceError, status.HTTP_502_BAD_GATEWAY),
)


def status_code_for(exc: PostflowError) -> int:
    for error_type, code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def postflow_error_handler(request: Request, exc: PostflowError) -> JSONResponse:
    del request
    return JSONResponse(status_code=status_code_for(exc), content=exc.to_payload())
