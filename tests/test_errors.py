"""Tests for error classification and response payloads."""

from http import HTTPStatus

import pytest

from vlm_session.models.errors import (
    ContextOverflowError,
    DecodeError,
    ImageStagingError,
    LoadFailureReason,
    ModelLoadError,
    SessionBusyError,
    SessionNotReadyError,
    TokenizationError,
)
from vlm_session.utils.errors import classify_error, create_error_response


@pytest.mark.parametrize(
    "exc,expected",
    [
        (SessionNotReadyError("x"), ("model_not_ready", HTTPStatus.SERVICE_UNAVAILABLE)),
        (ImageStagingError("x"), ("invalid_request_error", HTTPStatus.BAD_REQUEST)),
        (TokenizationError("x"), ("invalid_request_error", HTTPStatus.BAD_REQUEST)),
        (ContextOverflowError("x"), ("context_length_exceeded", HTTPStatus.BAD_REQUEST)),
        (SessionBusyError("x"), ("usage_error", HTTPStatus.CONFLICT)),
        (DecodeError("x"), ("server_error", HTTPStatus.INTERNAL_SERVER_ERROR)),
        (RuntimeError("x"), ("internal_error", HTTPStatus.INTERNAL_SERVER_ERROR)),
    ],
)
def test_classify_error(exc, expected) -> None:
    assert classify_error(exc) == expected


def test_create_error_response_shape() -> None:
    payload = create_error_response("boom", "server_error", HTTPStatus.BAD_GATEWAY)
    assert payload == {
        "error": {"message": "boom", "type": "server_error", "param": None, "code": "502"}
    }


def test_model_load_error_message() -> None:
    error = ModelLoadError("initialize_context", LoadFailureReason.RESOURCE_EXHAUSTION, "oom")
    assert str(error) == "initialize_context failed (resource_exhaustion): oom"
    assert error.step == "initialize_context"
