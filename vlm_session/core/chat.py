"""Caller-facing vision chat handle.

``VisionChat`` is the one object an application holds: it owns a
``SessionManager``, the ``InferenceWorker`` every session call runs on, and
the ``StreamingBridge`` that delivers callback-style streams. Opening it starts
the worker; closing it tears the session down on that same worker and then
stops it, so teardown can never overlap an in-flight generation.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from ..config import SessionConfig
from ..models.errors import ImageStagingError, ModelLoadError, UsageError
from ..models.runtime import ModelRuntime
from .bitmap import (
    Bitmap,
    PixelLayout,
    load_bitmap_from_bytes,
    load_bitmap_from_file,
    stage_from_buffer,
)
from .inference_worker import InferenceWorker
from .session import GenerationStats, SessionManager
from .streaming import CompletionCallback, StreamingBridge, TokenCallback


class VisionChat:
    """Owning handle over one multimodal chat session.

    Parameters
    ----------
    config : SessionConfig | None, optional
        Session settings; defaults are used when omitted.
    runtime : ModelRuntime | None, optional
        Runtime binding. Defaults to the llama.cpp binding, imported lazily so
        the native library is only needed when it is actually used.
    bridge : StreamingBridge | None, optional
        Streaming bridge for callback streams. A bridge dispatching on its
        own thread is created when omitted.

    Examples
    --------
    >>> with VisionChat(config) as chat:
    ...     chat.load_models("model.gguf", "mmproj.gguf")
    ...     chat.submit_image("cat.jpg")
    ...     print(chat.generate("What is in this picture?", 128))
    """

    def __init__(
        self,
        config: SessionConfig | None = None,
        runtime: ModelRuntime | None = None,
        *,
        bridge: StreamingBridge | None = None,
    ) -> None:
        self.config = config or SessionConfig()
        if runtime is None:
            from ..models.llama_cpp_runtime import LlamaCppRuntime

            runtime = LlamaCppRuntime()
        self.session = SessionManager(runtime, verbose=self.config.verbose)
        self.worker = InferenceWorker(
            queue_size=self.config.queue_size, timeout=self.config.queue_timeout
        )
        self.bridge = bridge or StreamingBridge()
        self._closed = False

    # ------------------------------------------------------------------
    # Ownership
    # ------------------------------------------------------------------

    def open(self) -> VisionChat:
        if self._closed:
            raise UsageError("VisionChat has been closed and cannot be reopened")
        self.worker.start()
        return self

    def close(self) -> None:
        """Tear the session down on the worker, then stop the worker.

        Safe to call more than once.
        """
        if self._closed:
            return
        self._closed = True
        if self.worker.running:
            try:
                self.worker.submit_sync(self.session.cleanup).result()
            finally:
                self.worker.stop()
        else:
            self.session.cleanup()
        self.bridge.close()

    def __enter__(self) -> VisionChat:
        return self.open()

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def is_ready(self) -> bool:
        return self.session.is_ready()

    # ------------------------------------------------------------------
    # Synchronous interface
    # ------------------------------------------------------------------

    def load_models(self, language_path: str | None = None, vision_path: str | None = None) -> bool:
        """Run the whole initialization sequence; return whether it succeeded.

        Paths default to ``config.model_path`` and ``config.mmproj_path``.
        """
        language_path = language_path or self.config.model_path
        vision_path = vision_path or self.config.mmproj_path
        if not language_path or not vision_path:
            logger.error("Both a language model path and a vision projector path are required")
            return False
        try:
            self._call(self._initialize, language_path, vision_path)
        except (ModelLoadError, UsageError) as exc:
            logger.error(f"Failed to load models: {exc}")
            return False
        return True

    def submit_image(self, path: str | Path) -> bool:
        """Decode an image file and queue it for the next turn."""
        try:
            bitmap = load_bitmap_from_file(path)
        except ImageStagingError as exc:
            logger.error(str(exc))
            return False
        return self._submit_bitmap(bitmap)

    def submit_image_buffer(
        self,
        raw_pixels: bytes | bytearray | memoryview,
        width: int,
        height: int,
        layout: PixelLayout = PixelLayout.RGBA,
    ) -> bool:
        """Stage a raw pixel buffer and queue it for the next turn."""
        try:
            bitmap = stage_from_buffer(raw_pixels, width, height, layout)
        except ImageStagingError as exc:
            logger.error(str(exc))
            return False
        return self._submit_bitmap(bitmap)

    def generate(self, prompt: str, max_tokens: int | None = None) -> str:
        """Run one turn and block until the full response is available."""
        return self._call(self.session.generate, prompt, self._max_tokens(max_tokens))

    def generate_stream(
        self,
        prompt: str,
        max_tokens: int | None,
        on_token: TokenCallback,
        on_complete: CompletionCallback | None = None,
    ) -> int:
        """Run one turn in the background, streaming fragments to ``on_token``.

        Returns immediately with the call id. ``on_complete`` is invoked
        exactly once after the last fragment, with ``None`` on success or the
        exception that ended the turn (preceded by an ``"Error: ..."``
        fragment).

        Raises
        ------
        UsageError
            If the chat is not open. Nothing is registered in that case.
        """
        self._require_open()
        call_id = self.bridge.register(on_token, on_complete)
        fragments = self.session.generate_tokens(prompt, self._max_tokens(max_tokens))
        try:
            self.worker.submit_sync(self.bridge.run, call_id, fragments)
        except Exception as exc:
            fragments.close()
            self.bridge.fail(call_id, exc)
        return call_id

    def reset_conversation(self) -> None:
        self._call(self.session.reset_conversation)

    def count_prompt_positions(self, prompt: str) -> int:
        return self._call(self.session.count_prompt_positions, prompt)

    def get_stats(self) -> dict[str, Any]:
        stats = self.session.last_stats
        return {
            "session": self.session.get_stats(),
            "worker": self.worker.get_stats(),
            "last_generation": {
                "prompt_positions": stats.prompt_positions,
                "generated_tokens": stats.generated_tokens,
                "tokens_per_second": round(stats.tokens_per_second, 2),
                "stop_reason": stats.stop_reason.value if stats.stop_reason else None,
            },
        }

    # ------------------------------------------------------------------
    # Async interface
    # ------------------------------------------------------------------

    async def aload_models(
        self, language_path: str | None = None, vision_path: str | None = None
    ) -> None:
        """Run the initialization sequence from async code; raises on failure."""
        language_path = language_path or self.config.model_path
        vision_path = vision_path or self.config.mmproj_path
        if not language_path or not vision_path:
            raise UsageError("Both a language model path and a vision projector path are required")
        self._require_open()
        await self.worker.submit(self._initialize, language_path, vision_path)

    async def asubmit_image_bytes(self, data: bytes) -> Bitmap:
        """Decode an encoded image and queue it; returns the staged bitmap."""
        bitmap = load_bitmap_from_bytes(data)
        self._require_open()
        await self.worker.submit(self.session.submit_bitmap, bitmap)
        return bitmap

    async def agenerate(self, prompt: str, max_tokens: int | None = None) -> str:
        self._require_open()
        return await self.worker.submit(self.session.generate, prompt, self._max_tokens(max_tokens))

    async def agenerate_with_usage(
        self, prompt: str, max_tokens: int | None = None
    ) -> tuple[str, GenerationStats, int]:
        """Run one turn; return its text, stats and ``n_past`` as of that turn's end."""
        self._require_open()
        return await self.worker.submit(
            self._generate_with_usage, prompt, self._max_tokens(max_tokens)
        )

    def agenerate_stream(self, prompt: str, max_tokens: int | None = None) -> AsyncGenerator[str, None]:
        """Stream fragments of one turn as an async generator."""
        self._require_open()
        return self.worker.submit_stream(
            self.session.generate_tokens, prompt, self._max_tokens(max_tokens)
        )

    async def areset_conversation(self) -> None:
        self._require_open()
        await self.worker.submit(self.session.reset_conversation)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _initialize(self, language_path: str, vision_path: str) -> None:
        config = self.config
        session = self.session
        session.load_language_model(language_path, n_gpu_layers=config.n_gpu_layers)
        session.load_vision_model(
            vision_path, thread_count=config.n_threads, use_gpu=config.n_gpu_layers != 0
        )
        session.initialize_context(
            config.context_length, config.n_threads, batch_size=config.batch_size
        )
        session.initialize_batch(config.batch_size)
        session.initialize_sampler(config.temperature, config.seed)
        session.initialize_chat_template(
            config.chat_template, template_file=config.chat_template_file
        )

    def _generate_with_usage(self, prompt: str, max_tokens: int) -> tuple[str, GenerationStats, int]:
        text = self.session.generate(prompt, max_tokens)
        return text, self.session.last_stats, self.session.n_past

    def _submit_bitmap(self, bitmap: Bitmap) -> bool:
        try:
            self._call(self.session.submit_bitmap, bitmap)
        except UsageError as exc:
            logger.error(f"Cannot submit image: {exc}")
            return False
        return True

    def _max_tokens(self, max_tokens: int | None) -> int:
        return self.config.max_tokens if max_tokens is None else max_tokens

    def _require_open(self) -> None:
        if self._closed:
            raise UsageError("VisionChat is closed")
        if not self.worker.running:
            raise UsageError("VisionChat is not open; call open() or use it as a context manager")

    def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        if self.worker.is_worker_thread():
            return func(*args)
        self._require_open()
        return self.worker.submit_sync(func, *args).result()
