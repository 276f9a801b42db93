"""Session configuration dataclass and helpers.

This module exposes ``SessionConfig``, a dataclass that holds every tunable
of a vision chat session (model files, context/batch sizing, sampling, queue
and logging settings). The dataclass performs normalization and validation in
``__post_init__`` so CLI, environment and programmatic callers all end up with
the same canonical values.
"""

from __future__ import annotations

from dataclasses import dataclass
import os
from typing import Any

from loguru import logger

from .const import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_BIND_HOST,
    DEFAULT_CHAT_TEMPLATE,
    DEFAULT_CONTEXT_LENGTH,
    DEFAULT_LOG_FILE,
    DEFAULT_LOG_LEVEL,
    DEFAULT_MAX_TOKENS,
    DEFAULT_N_GPU_LAYERS,
    DEFAULT_NO_LOG_FILE,
    DEFAULT_PORT,
    DEFAULT_QUEUE_SIZE,
    DEFAULT_QUEUE_TIMEOUT,
    DEFAULT_SEED,
    DEFAULT_TEMPERATURE,
    MAX_AUTO_THREADS,
    RESERVED_CORES,
)

_TRUE_BOOL_LITERALS = {"1", "true", "yes", "on"}
_FALSE_BOOL_LITERALS = {"0", "false", "no", "off"}


@dataclass
class SessionConfig:
    """Container for session configuration values.

    The class mirrors the Click CLI options. ``model_path`` and ``mmproj_path``
    may be left empty for configs that are only used to build the HTTP layer
    in tests; ``VisionChat.load_models`` requires both.
    """

    model_path: str | None = None
    mmproj_path: str | None = None
    context_length: int = DEFAULT_CONTEXT_LENGTH
    batch_size: int = DEFAULT_BATCH_SIZE
    n_threads: int | None = None
    n_gpu_layers: int = DEFAULT_N_GPU_LAYERS
    temperature: float = DEFAULT_TEMPERATURE
    seed: int = DEFAULT_SEED
    max_tokens: int = DEFAULT_MAX_TOKENS
    chat_template: str | None = DEFAULT_CHAT_TEMPLATE
    chat_template_file: str | None = None
    queue_size: int = DEFAULT_QUEUE_SIZE
    queue_timeout: int = DEFAULT_QUEUE_TIMEOUT
    host: str = DEFAULT_BIND_HOST
    port: int = DEFAULT_PORT
    log_file: str | None = DEFAULT_LOG_FILE
    no_log_file: bool = DEFAULT_NO_LOG_FILE
    log_level: str = DEFAULT_LOG_LEVEL
    verbose: bool = False

    def __post_init__(self) -> None:
        """Normalize and validate fields after instantiation.

        Notes
        -----
        - Blank optional strings become ``None``.
        - Integer fields are coerced from strings and must be positive
          (``max_tokens`` may be zero, ``n_threads`` may be ``None``).
        - ``chat_template_file`` replaces the named template; supplying both
          explicitly is rejected.
        - ``log_level`` is normalized to uppercase.

        Raises
        ------
        ValueError
            If any value is out of range or cannot be coerced.
        """
        self.model_path = _blank_to_none(self.model_path)
        self.mmproj_path = _blank_to_none(self.mmproj_path)
        self.chat_template_file = _blank_to_none(self.chat_template_file)
        self.log_file = _blank_to_none(self.log_file)

        self.context_length = _coerce_positive_int(self.context_length, field_name="context_length")
        self.batch_size = _coerce_positive_int(self.batch_size, field_name="batch_size")
        self.queue_size = _coerce_positive_int(self.queue_size, field_name="queue_size")
        self.queue_timeout = _coerce_positive_int(self.queue_timeout, field_name="queue_timeout")
        self.port = _coerce_positive_int(self.port, field_name="port")
        if self.n_threads is not None:
            self.n_threads = _coerce_positive_int(self.n_threads, field_name="n_threads")

        self.max_tokens = _coerce_int(self.max_tokens, field_name="max_tokens")
        if self.max_tokens < 0:
            raise ValueError("max_tokens must not be negative")
        self.n_gpu_layers = _coerce_int(self.n_gpu_layers, field_name="n_gpu_layers")
        self.seed = _coerce_int(self.seed, field_name="seed")

        try:
            self.temperature = float(self.temperature)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"temperature must be a number (got {self.temperature!r})") from exc
        if self.temperature < 0:
            raise ValueError("temperature must not be negative")

        if self.batch_size > self.context_length:
            logger.warning(
                f"batch_size ({self.batch_size}) exceeds context_length "
                f"({self.context_length}); clamping batch_size"
            )
            self.batch_size = self.context_length

        self.no_log_file = _coerce_bool(self.no_log_file, field_name="no_log_file")
        self.verbose = _coerce_bool(self.verbose, field_name="verbose")

        if isinstance(self.chat_template, str):
            self.chat_template = self.chat_template.strip() or None
        if self.chat_template_file:
            if self.chat_template not in (None, DEFAULT_CHAT_TEMPLATE):
                raise ValueError("chat_template and chat_template_file are mutually exclusive")
            self.chat_template = None

        if isinstance(self.log_level, str):
            self.log_level = self.log_level.upper()


def select_thread_count(requested: int | None = None, available_cores: int | None = None) -> int:
    """Return the decode thread count for this machine.

    The count is clamped to ``[1, min(8, cores - 2)]`` and is never zero. An
    explicit ``requested`` value is honored within the same bounds.
    """
    cores = available_cores if available_cores is not None else (os.cpu_count() or 1)
    ceiling = max(1, min(MAX_AUTO_THREADS, cores - RESERVED_CORES))
    if requested is None:
        return ceiling
    return max(1, min(int(requested), ceiling))


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _coerce_bool(value: Any, *, field_name: str) -> bool:
    """Normalize a boolean-like value that may come from CLI or environment."""

    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _TRUE_BOOL_LITERALS:
            return True
        if normalized in _FALSE_BOOL_LITERALS:
            return False
        raise ValueError(f"{field_name} must be a boolean value (got '{value}')")
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    raise ValueError(f"{field_name} must be a boolean value (got {value!r})")


def _coerce_int(value: Any, *, field_name: str) -> int:
    if isinstance(value, bool):
        raise TypeError(f"{field_name} must be an integer value (got boolean)")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError as exc:
            raise ValueError(f"{field_name} must be an integer value") from exc
    raise TypeError(f"{field_name} must be an integer value (got {type(value).__name__})")


def _coerce_positive_int(value: Any, *, field_name: str) -> int:
    """Normalize a positive integer value, raising when invalid."""

    candidate = _coerce_int(value, field_name=field_name)
    if candidate <= 0:
        raise ValueError(f"{field_name} must be a positive integer")
    return candidate
