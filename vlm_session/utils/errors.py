"""Utilities for creating error responses."""

from http import HTTPStatus

from ..models.errors import (
    ContextOverflowError,
    ImageStagingError,
    SessionError,
    SessionNotReadyError,
    TokenizationError,
    UsageError,
)


def create_error_response(
    message: str,
    err_type: str = "internal_error",
    status_code: int | HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR,
    param: str | None = None,
    code: str | None = None,
) -> dict[str, object]:
    """Create a standardized error response dictionary."""
    return {
        "error": {
            "message": message,
            "type": err_type,
            "param": param,
            "code": str(
                code or (status_code.value if isinstance(status_code, HTTPStatus) else status_code)
            ),
        }
    }


def classify_error(exc: BaseException) -> tuple[str, HTTPStatus]:
    """Map a session exception to an error type and HTTP status."""
    if isinstance(exc, SessionNotReadyError):
        return "model_not_ready", HTTPStatus.SERVICE_UNAVAILABLE
    if isinstance(exc, (ImageStagingError, TokenizationError)):
        return "invalid_request_error", HTTPStatus.BAD_REQUEST
    if isinstance(exc, ContextOverflowError):
        return "context_length_exceeded", HTTPStatus.BAD_REQUEST
    if isinstance(exc, UsageError):
        return "usage_error", HTTPStatus.CONFLICT
    if isinstance(exc, SessionError):
        return "server_error", HTTPStatus.INTERNAL_SERVER_ERROR
    return "internal_error", HTTPStatus.INTERNAL_SERVER_ERROR
