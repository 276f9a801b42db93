"""API endpoints for the vision chat session server."""

from __future__ import annotations

import asyncio
import base64
import binascii
from collections.abc import AsyncGenerator
from http import HTTPStatus
import json
import time
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger

from ..core.chat import VisionChat
from ..models.errors import ImageStagingError, SessionError
from ..schemas.session import (
    GenerateChunk,
    GenerateRequest,
    GenerateResponse,
    HealthCheckResponse,
    HealthCheckStatus,
    ImageSubmitRequest,
    ImageSubmitResponse,
    SessionStatusResponse,
    UsageInfo,
    get_id,
)
from ..utils.errors import classify_error, create_error_response

router = APIRouter()


def _get_chat(raw_request: Request) -> VisionChat | None:
    return getattr(raw_request.app.state, "chat", None)


def _not_initialized() -> JSONResponse:
    return JSONResponse(
        content=create_error_response(
            "Vision chat session not initialized",
            "service_unavailable",
            HTTPStatus.SERVICE_UNAVAILABLE,
        ),
        status_code=HTTPStatus.SERVICE_UNAVAILABLE,
    )


def _error_response(exc: BaseException) -> JSONResponse:
    err_type, status = classify_error(exc)
    return JSONResponse(
        content=create_error_response(str(exc), err_type, status),
        status_code=status,
    )


def _decode_image_payload(payload: str) -> bytes:
    """Decode base64 image data, accepting ``data:image/...;base64,`` URLs."""
    if payload.startswith("data:"):
        _, _, payload = payload.partition(",")
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ImageStagingError(f"Image payload is not valid base64: {exc}") from exc


@router.get("/health", response_model=None)
async def health(raw_request: Request) -> HealthCheckResponse | JSONResponse:
    """Health check endpoint.

    Returns 503 while no session has been attached to the application.
    """
    chat = _get_chat(raw_request)
    if chat is None:
        return JSONResponse(
            status_code=HTTPStatus.SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "model_id": None, "model_status": "uninitialized"},
        )
    return HealthCheckResponse(
        status=HealthCheckStatus.OK,
        model_id=chat.config.model_path,
        model_status="ready" if chat.is_ready() else chat.session.state.name.lower(),
    )


@router.get("/v1/session", response_model=None)
async def session_status(raw_request: Request) -> SessionStatusResponse | JSONResponse:
    """Return session, worker and last-generation statistics."""
    chat = _get_chat(raw_request)
    if chat is None:
        return _not_initialized()
    return SessionStatusResponse(**chat.get_stats())


@router.post("/v1/images", response_model=None)
async def submit_image(
    request: ImageSubmitRequest, raw_request: Request
) -> ImageSubmitResponse | JSONResponse:
    """Decode an uploaded image and queue it for the next turn."""
    chat = _get_chat(raw_request)
    if chat is None:
        return _not_initialized()
    try:
        bitmap = await chat.asubmit_image_bytes(_decode_image_payload(request.image))
    except (ImageStagingError, SessionError) as exc:
        logger.warning(f"Rejected image upload: {exc}")
        return _error_response(exc)
    except asyncio.QueueFull as exc:
        return _error_response_busy(exc)
    return ImageSubmitResponse(
        width=bitmap.width,
        height=bitmap.height,
        pending_images=len(chat.session.pending_images),
    )


@router.post("/v1/generate", response_model=None)
async def generate(
    request: GenerateRequest, raw_request: Request
) -> GenerateResponse | StreamingResponse | JSONResponse:
    """Run one chat turn, either as a JSON response or as server-sent events."""
    chat = _get_chat(raw_request)
    if chat is None:
        return _not_initialized()
    if not chat.is_ready():
        return JSONResponse(
            content=create_error_response(
                "Models are not loaded", "model_not_ready", HTTPStatus.SERVICE_UNAVAILABLE
            ),
            status_code=HTTPStatus.SERVICE_UNAVAILABLE,
        )

    if request.stream:
        try:
            fragments = chat.agenerate_stream(request.prompt, request.max_tokens)
        except asyncio.QueueFull as exc:
            return _error_response_busy(exc)
        except SessionError as exc:
            return _error_response(exc)
        return StreamingResponse(
            handle_stream_response(fragments),
            media_type="text/event-stream",
        )

    try:
        text, stats, n_past = await chat.agenerate_with_usage(request.prompt, request.max_tokens)
    except asyncio.QueueFull as exc:
        return _error_response_busy(exc)
    except (SessionError, TimeoutError) as exc:
        logger.error(f"Generation failed: {type(exc).__name__}: {exc}")
        return _error_response(exc)

    return GenerateResponse(
        text=text,
        stop_reason=stats.stop_reason.value if stats.stop_reason else None,
        usage=UsageInfo(
            prompt_positions=stats.prompt_positions,
            generated_tokens=stats.generated_tokens,
            n_past=n_past,
        ),
    )


@router.post("/v1/session/reset", response_model=None)
async def reset_session(raw_request: Request) -> dict[str, Any] | JSONResponse:
    """Forget the conversation while keeping the models loaded."""
    chat = _get_chat(raw_request)
    if chat is None:
        return _not_initialized()
    try:
        await chat.areset_conversation()
    except SessionError as exc:
        return _error_response(exc)
    return {"status": "reset", "n_past": chat.session.n_past}


def _error_response_busy(exc: BaseException) -> JSONResponse:
    return JSONResponse(
        content=create_error_response(
            f"Too many pending requests: {exc}", "rate_limit_exceeded", HTTPStatus.TOO_MANY_REQUESTS
        ),
        status_code=HTTPStatus.TOO_MANY_REQUESTS,
    )


def _yield_sse_chunk(data: Any) -> str:
    if hasattr(data, "model_dump_json"):
        return f"data: {data.model_dump_json()}\n\n"
    return f"data: {json.dumps(data)}\n\n"


async def handle_stream_response(generator: AsyncGenerator[str, None]) -> AsyncGenerator[str, None]:
    """Wrap session fragments as SSE events.

    Errors raised while generating become a single error event; the stream
    always ends with ``[DONE]``.
    """
    chunk_id = get_id()
    created_time = int(time.time())
    try:
        async for fragment in generator:
            yield _yield_sse_chunk(GenerateChunk(id=chunk_id, created=created_time, text=fragment))
    except Exception as e:
        logger.exception(f"Error in stream wrapper: {type(e).__name__}: {e}")
        err_type, status = classify_error(e)
        yield _yield_sse_chunk(create_error_response(str(e), err_type, status))
    yield "data: [DONE]\n\n"
