"""Request and response schemas for the session HTTP API."""

from __future__ import annotations

from enum import Enum
import time
from typing import Any
import uuid

from pydantic import BaseModel, ConfigDict, Field


def get_id() -> str:
    return f"gen-{uuid.uuid4().hex[:24]}"


class SessionBaseModel(BaseModel):
    """Base model for session API schemas."""

    model_config = ConfigDict(extra="forbid")


class HealthCheckStatus(str, Enum):
    """Health check status."""

    OK = "ok"


class HealthCheckResponse(SessionBaseModel):
    """Response model for the health check endpoint."""

    status: HealthCheckStatus = Field(..., description="The status of the health check.")
    model_id: str | None = Field(None, description="Path of the loaded language model, if any.")
    model_status: str = Field(..., description="Session state (ready/unloaded/...).")


class GenerateRequest(SessionBaseModel):
    """Request body for one chat turn."""

    prompt: str = Field(..., description="User message for this turn.")
    max_tokens: int | None = Field(
        None, ge=0, description="Upper bound on sampled tokens. Defaults to the server setting."
    )
    stream: bool = Field(False, description="Stream fragments as server-sent events.")


class UsageInfo(SessionBaseModel):
    prompt_positions: int = 0
    generated_tokens: int = 0
    n_past: int = 0


class GenerateResponse(SessionBaseModel):
    """Response body for a non-streaming chat turn."""

    id: str = Field(default_factory=get_id)
    object: str = "generation"
    created: int = Field(default_factory=lambda: int(time.time()))
    text: str
    stop_reason: str | None = None
    usage: UsageInfo


class GenerateChunk(SessionBaseModel):
    """One streamed fragment."""

    id: str
    object: str = "generation.chunk"
    created: int
    text: str


class ImageSubmitRequest(SessionBaseModel):
    """Request body carrying an encoded image (PNG, JPEG, ...)."""

    image: str = Field(..., description="Base64 image data, optionally as a data URL.")


class ImageSubmitResponse(SessionBaseModel):
    """Response body after an image has been queued."""

    queued: bool = True
    width: int
    height: int
    pending_images: int


class SessionStatusResponse(SessionBaseModel):
    """Session and worker statistics."""

    session: dict[str, Any]
    worker: dict[str, Any]
    last_generation: dict[str, Any]
