"""Application factory, logging setup and server entry point."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
import os
import sys
import time
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger
import uvicorn

from .api.endpoints import router
from .config import SessionConfig, _coerce_bool
from .core.chat import VisionChat
from .version import __version__

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "✦ <level>{message}</level>"
)


def configure_logging(
    log_file: str | None = None, no_log_file: bool = False, log_level: str = "INFO"
) -> None:
    """Configure loguru sinks from CLI/config parameters."""
    logger.remove()

    logger.add(sys.stderr, level=log_level, format=LOG_FORMAT, colorize=True)

    if not no_log_file:
        file_path = log_file if log_file else "logs/app.log"
        logger.add(
            file_path,
            rotation="500 MB",
            retention="10 days",
            level=log_level,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
        )


# Environment variable -> (SessionConfig field, caster)
ENV_OVERRIDES: dict[str, tuple[str, Callable[[str], Any]]] = {
    "VLM_MODEL_PATH": ("model_path", str),
    "VLM_MMPROJ_PATH": ("mmproj_path", str),
    "VLM_CONTEXT_LENGTH": ("context_length", int),
    "VLM_BATCH_SIZE": ("batch_size", int),
    "VLM_THREADS": ("n_threads", int),
    "VLM_GPU_LAYERS": ("n_gpu_layers", int),
    "VLM_MAX_TOKENS": ("max_tokens", int),
    "VLM_TEMPERATURE": ("temperature", float),
    "VLM_SEED": ("seed", int),
    "VLM_CHAT_TEMPLATE": ("chat_template", str),
    "VLM_CHAT_TEMPLATE_FILE": ("chat_template_file", str),
    "VLM_QUEUE_SIZE": ("queue_size", int),
    "VLM_QUEUE_TIMEOUT": ("queue_timeout", int),
    "VLM_HOST": ("host", str),
    "VLM_PORT": ("port", int),
    "VLM_LOG_FILE": ("log_file", str),
    "VLM_NO_LOG_FILE": ("no_log_file", lambda value: _coerce_bool(value, field_name="VLM_NO_LOG_FILE")),
    "VLM_LOG_LEVEL": ("log_level", str),
    "VLM_VERBOSE": ("verbose", lambda value: _coerce_bool(value, field_name="VLM_VERBOSE")),
}


def config_from_env(environ: dict[str, str] | None = None) -> SessionConfig:
    """Create a ``SessionConfig`` with environment variables overriding defaults.

    Invalid values are logged and the default is kept.
    """
    environ = os.environ if environ is None else environ
    defaults = SessionConfig()
    values: dict[str, Any] = {}
    for env_var, (attr, caster) in ENV_OVERRIDES.items():
        raw_value = environ.get(env_var)
        if raw_value is None:
            continue
        try:
            values[attr] = caster(raw_value)
        except ValueError:
            logger.warning(
                f"Invalid value for {env_var}: {raw_value!r}. "
                f"Keeping default {getattr(defaults, attr)!r}."
            )
    return SessionConfig(**values)


def create_lifespan(config: SessionConfig, chat: VisionChat | None = None):
    """Factory for a lifespan context manager owning the app's ``VisionChat``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        session_chat = chat or VisionChat(config)
        session_chat.open()
        try:
            if not session_chat.is_ready() and config.model_path and config.mmproj_path:
                logger.info(f"Loading models: {config.model_path} + {config.mmproj_path}")
                await session_chat.aload_models(config.model_path, config.mmproj_path)
                logger.info("Vision chat session initialized successfully")
                logger.info(f"  Context Length: {config.context_length}")
                logger.info(f"  Chat Template: {config.chat_template or config.chat_template_file}")
            elif not session_chat.is_ready():
                logger.warning("No model paths configured; session starts unloaded")
        except Exception as e:
            logger.error(f"Failed to initialize vision chat session: {e}")
            session_chat.close()
            raise

        app.state.chat = session_chat
        yield

        logger.info("Shutting down application")
        app.state.chat = None
        session_chat.close()
        logger.info("Resources cleaned up successfully")

    return lifespan


def create_app(
    config: SessionConfig | None = None,
    *,
    chat: VisionChat | None = None,
    configure_log: bool = True,
) -> FastAPI:
    """Construct the FastAPI app for one vision chat session."""
    config = config or config_from_env()
    if configure_log:
        configure_logging(
            log_file=config.log_file, no_log_file=config.no_log_file, log_level=config.log_level
        )

    application = FastAPI(
        title="Vision chat session API",
        description="Multi-turn image + text chat over a local llama.cpp vision model",
        version=__version__,
        lifespan=create_lifespan(config, chat),
    )
    application.state.config = config
    application.include_router(router)

    @application.middleware("http")
    async def add_process_time_header(request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        response.headers["X-Process-Time"] = str(time.time() - start_time)
        return response

    @application.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.opt(exception=exc).error(f"Global exception handler caught: {exc}")
        return JSONResponse(
            status_code=500,
            content={"error": {"message": "Internal server error", "type": "internal_error"}},
        )

    return application


async def start(config: SessionConfig) -> None:
    """Build the app for ``config`` and serve it with uvicorn until shutdown."""
    app = create_app(config)
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=config.host,
            port=config.port,
            log_level=config.log_level.lower(),
            access_log=True,
        )
    )
    await server.serve()
