"""Command-line interface for the vision chat session.

This module defines the Click command group used by the package:

- ``chat`` runs an interactive multi-turn conversation in the terminal.
- ``describe`` loads the models, stages one image and prints a description.
- ``launch`` serves the session over HTTP with uvicorn.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
import sys
import threading
from typing import Any

import click
from loguru import logger

from .config import SessionConfig
from .const import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_BIND_HOST,
    DEFAULT_CHAT_TEMPLATE,
    DEFAULT_CONTEXT_LENGTH,
    DEFAULT_LOG_LEVEL,
    DEFAULT_MAX_TOKENS,
    DEFAULT_N_GPU_LAYERS,
    DEFAULT_PORT,
    DEFAULT_QUEUE_SIZE,
    DEFAULT_QUEUE_TIMEOUT,
    DEFAULT_SEED,
    DEFAULT_TEMPERATURE,
    DESCRIBE_PROMPT,
)
from .core.chat import VisionChat
from .main import LOG_FORMAT, configure_logging, start
from .version import __version__


class UpperChoice(click.Choice):
    """Case-insensitive choice type that returns the canonical, uppercase value."""

    def convert(self, value: Any, param: click.Parameter | None, ctx: click.Context | None) -> Any:
        if isinstance(value, str):
            value = value.upper()
        return super().convert(value, param, ctx)


# Configure basic logging for CLI (overridden once the session config is known)
logger.remove()
logger.add(sys.stderr, format=LOG_FORMAT, colorize=True, level="INFO")


@click.group()
@click.version_option(
    version=__version__,
    message="""
✨ %(prog)s - multimodal chat sessions for local llama.cpp vision models ✨
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
🚀 Version: %(version)s
""",
)
def cli() -> None:
    """Top-level Click command group for the vision chat CLI."""


def session_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Attach the model, sampling and logging options shared by every command."""
    options = [
        click.option(
            "--model-path",
            required=True,
            envvar="VLM_MODEL_PATH",
            help="Path to the language model GGUF file.",
        ),
        click.option(
            "--mmproj-path",
            required=True,
            envvar="VLM_MMPROJ_PATH",
            help="Path to the vision projector (mmproj) GGUF file.",
        ),
        click.option(
            "--context-length",
            default=DEFAULT_CONTEXT_LENGTH,
            type=click.IntRange(1),
            help="Maximum number of context positions.",
        ),
        click.option(
            "--batch-size",
            default=DEFAULT_BATCH_SIZE,
            type=click.IntRange(1),
            help="Decode batch capacity.",
        ),
        click.option(
            "--threads",
            "n_threads",
            default=None,
            type=click.IntRange(1),
            help="Decode threads (clamped to min(8, cores - 2)). Defaults to the clamp ceiling.",
        ),
        click.option(
            "--gpu-layers",
            "n_gpu_layers",
            default=DEFAULT_N_GPU_LAYERS,
            type=int,
            help="Layers to offload to the GPU (-1 for all, 0 to disable acceleration).",
        ),
        click.option(
            "--temperature", default=DEFAULT_TEMPERATURE, type=click.FloatRange(0), help="Sampling temperature."
        ),
        click.option("--seed", default=DEFAULT_SEED, type=int, help="Sampler seed."),
        click.option(
            "--max-tokens",
            default=DEFAULT_MAX_TOKENS,
            type=click.IntRange(0),
            help="Upper bound on generated tokens per turn.",
        ),
        click.option(
            "--chat-template",
            default=DEFAULT_CHAT_TEMPLATE,
            help="Named template (vicuna, deepseek, chatml, gemma), 'auto' for the model's own, or inline Jinja.",
        ),
        click.option(
            "--chat-template-file",
            default=None,
            type=click.Path(exists=True, dir_okay=False),
            help="Jinja chat template file; overrides --chat-template.",
        ),
        click.option("--log-file", default=None, type=str, help="Path to log file (default logs/app.log)."),
        click.option("--no-log-file", is_flag=True, help="Disable file logging entirely."),
        click.option(
            "--log-level",
            default=DEFAULT_LOG_LEVEL,
            type=UpperChoice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]),
            help="Set the logging level. Default is INFO.",
        ),
        click.option("--verbose", is_flag=True, help="Log rendered prompts and generation statistics."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _build_config(**kwargs: Any) -> SessionConfig:
    try:
        config = SessionConfig(**kwargs)
    except (TypeError, ValueError) as exc:
        raise click.BadParameter(str(exc)) from exc
    configure_logging(
        log_file=config.log_file, no_log_file=config.no_log_file, log_level=config.log_level
    )
    return config


def _open_chat(config: SessionConfig) -> VisionChat:
    chat = VisionChat(config).open()
    if not chat.load_models(config.model_path, config.mmproj_path):
        chat.close()
        raise click.ClickException("Failed to load models; see the log for details")
    return chat


def stream_turn(chat: VisionChat, prompt: str, max_tokens: int | None = None) -> BaseException | None:
    """Stream one turn to stdout and wait for its completion signal."""
    done = threading.Event()
    outcome: dict[str, BaseException | None] = {"error": None}

    def on_token(fragment: str) -> None:
        click.echo(fragment, nl=False)

    def on_complete(error: BaseException | None) -> None:
        outcome["error"] = error
        click.echo()
        done.set()

    chat.generate_stream(prompt, max_tokens, on_token, on_complete)
    done.wait()
    return outcome["error"]


@cli.command(help="Chat with a vision model in the terminal")
@session_options
@click.option("--image", "images", multiple=True, type=click.Path(exists=True, dir_okay=False), help="Image to attach to the first turn (repeatable).")
def chat(images: tuple[str, ...], **kwargs: Any) -> None:
    """Run an interactive conversation.

    Lines starting with ``/image <path>`` queue an image for the next turn,
    ``/reset`` forgets the conversation and ``/quit`` exits.
    """
    config = _build_config(**kwargs)
    with _open_chat(config) as session_chat:
        for path in images:
            if not session_chat.submit_image(path):
                raise click.ClickException(f"Could not load image {path}")

        click.echo("Type a message, /image <path>, /reset or /quit.")
        while True:
            try:
                line = click.prompt("you", prompt_suffix="> ", default="", show_default=False)
            except click.Abort:
                break
            line = line.strip()
            if not line:
                continue
            if line in ("/quit", "/exit"):
                break
            if line == "/reset":
                session_chat.reset_conversation()
                click.echo("Conversation reset.")
                continue
            if line.startswith("/image"):
                path = line[len("/image") :].strip()
                if session_chat.submit_image(path):
                    click.echo(f"Queued {path}")
                else:
                    click.echo(f"Could not load image {path}", err=True)
                continue

            stream_turn(session_chat, line)


@cli.command(help="Describe an image in one shot")
@session_options
@click.argument("image", type=click.Path(exists=True, dir_okay=False))
@click.option("--prompt", default=DESCRIBE_PROMPT, show_default=True, help="Question to ask about the image.")
def describe(image: str, prompt: str, **kwargs: Any) -> None:
    """Load the models, stage IMAGE and print the model's description."""
    config = _build_config(**kwargs)
    with _open_chat(config) as session_chat:
        if not session_chat.submit_image(image):
            raise click.ClickException(f"Could not load image {image}")
        error = stream_turn(session_chat, prompt)
    if error is not None:
        raise click.ClickException(str(error))


@cli.command(help="Serve the session over HTTP")
@session_options
@click.option("--port", default=DEFAULT_PORT, type=int, help="Port to run the server on")
@click.option("--host", default=DEFAULT_BIND_HOST, help="Host to run the server on")
@click.option("--queue-timeout", default=DEFAULT_QUEUE_TIMEOUT, type=int, help="Request timeout in seconds")
@click.option("--queue-size", default=DEFAULT_QUEUE_SIZE, type=int, help="Maximum queue size for pending requests")
def launch(**kwargs: Any) -> None:
    """Start the FastAPI/Uvicorn server with the supplied flags."""
    config = _build_config(**kwargs)
    asyncio.run(start(config))
