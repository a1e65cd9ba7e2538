"""Mapping from the error taxonomy to HTTP responses."""

from __future__ import annotations

from fastapi import HTTPException

from deep_reason.domain.enums import ErrorKind
from deep_reason.domain.errors import DeepReasonError

_HTTP_STATUS: dict[ErrorKind, int] = {
    ErrorKind.SESSION_NOT_FOUND: 404,
    ErrorKind.TOURNAMENT_NOT_FOUND: 404,
    ErrorKind.INVALID_TRANSITION: 409,
    ErrorKind.SESSION_BUSY: 409,
    ErrorKind.NO_VIABLE_HYPOTHESIS: 409,
    ErrorKind.INVALID_CONTEXT: 422,
    ErrorKind.INVALID_TOURNAMENT_CONFIG: 422,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.TRANSPORT_ERROR: 502,
    ErrorKind.TIMEOUT: 504,
}


def http_status_for(error: DeepReasonError) -> int:
    return _HTTP_STATUS.get(error.kind, 500)


def to_http_exception(error: DeepReasonError) -> HTTPException:
    """HTTPException carrying the error's payload and any Retry-After hint."""
    headers = None
    if error.retry_after is not None:
        headers = {"Retry-After": str(max(int(round(error.retry_after)), 1))}
    return HTTPException(
        status_code=http_status_for(error),
        detail=error.to_dict(),
        headers=headers,
    )
