"""Custom exceptions for the session and runtime binding."""

from __future__ import annotations

from enum import Enum


class LoadFailureReason(str, Enum):
    """Why an initialization step could not produce its resource."""

    FILE_NOT_FOUND = "file_not_found"
    INCOMPATIBLE_FORMAT = "incompatible_model_format"
    RESOURCE_EXHAUSTION = "resource_exhaustion"
    RUNTIME_INTERNAL = "runtime_internal_error"


class RuntimeCallError(RuntimeError):
    """Raised by a runtime binding when a native call fails.

    Parameters
    ----------
    message : str
        Human-readable description of the failing call.
    code : int | None, optional
        Native status code, when the call reports one.
    """

    def __init__(self, message: str, *, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class SessionError(RuntimeError):
    """Base exception for session manager errors."""


class ModelLoadError(SessionError):
    """Raised when an initialization step fails.

    The session has already been torn down to ``Unloaded`` when this
    propagates.
    """

    def __init__(self, step: str, reason: LoadFailureReason, detail: str | None = None) -> None:
        self.step = step
        self.reason = reason
        message = f"{step} failed ({reason.value})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class TokenizationError(SessionError):
    """Raised when the prompt/image combination cannot be tokenized."""

    def __init__(self, message: str, *, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class DecodeError(SessionError):
    """Raised when prompt evaluation or a decode step fails."""

    def __init__(self, message: str, *, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class ContextOverflowError(DecodeError):
    """Raised when a step would write past the end of the context window."""


class UsageError(SessionError):
    """Raised for programmer errors (wrong call order, misuse of buffers)."""


class SessionNotReadyError(UsageError):
    """Raised when a turn is requested before initialization completed."""


class SessionBusyError(UsageError):
    """Raised when a second operation enters the session while one is in flight."""


class BatchCapacityError(UsageError):
    """Raised when more entries are added to a decode batch than it can hold."""


class ImageStagingError(ValueError):
    """Raised when a pixel buffer or image file cannot be staged as a bitmap."""
