"""Stateful multimodal chat session over a native model runtime.

``SessionManager`` owns every native handle of one conversation (language
model, vision projector, decoding context, decode batch, sampler chain) plus
the pending-image queue and the ``n_past`` position counter. Handles are
created in a fixed order and released in reverse order; any failure while
building the session tears it back down to ``UNLOADED`` before the error
propagates.

The manager performs no internal scheduling. Only one operation may be inside
it at a time; a second concurrent entry is rejected with
``SessionBusyError``. ``VisionChat`` serializes calls on a single worker
thread so callers never see that error in practice.
"""

from __future__ import annotations

import codecs
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum, IntEnum
from pathlib import Path
import threading
import time
from typing import Any

from loguru import logger

from ..config import select_thread_count
from ..const import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_CHAT_TEMPLATE,
    DEFAULT_CONTEXT_LENGTH,
    DEFAULT_N_GPU_LAYERS,
    DEFAULT_SEED,
    DEFAULT_TEMPERATURE,
)
from ..models.errors import (
    ContextOverflowError,
    DecodeError,
    LoadFailureReason,
    ModelLoadError,
    RuntimeCallError,
    SessionBusyError,
    SessionNotReadyError,
    TokenizationError,
    UsageError,
)
from ..models.runtime import ModelRuntime
from ..utils.debug_logging import log_debug_prompt, log_debug_stats
from .batch import DecodeBatch
from .bitmap import Bitmap, PendingImageQueue
from .chat_template import (
    ASSISTANT_ROLE,
    USER_ROLE,
    ChatMessage,
    ChatTemplate,
    resolve_chat_template,
)

# Single conversation per context.
SEQ_ID = 0

# Initial buffer size for token_to_piece; grown on demand.
PIECE_BUFFER_SIZE = 64


class SessionState(IntEnum):
    """Initialization stages, in the order their resources are created."""

    UNLOADED = 0
    LANGUAGE_LOADED = 1
    VISION_LOADED = 2
    CONTEXT_READY = 3
    BATCH_READY = 4
    SAMPLER_READY = 5
    READY = 6


class StopReason(str, Enum):
    """Why a generation loop ended."""

    END_TOKEN = "end_token"
    ANTIPROMPT = "antiprompt"
    MAX_TOKENS = "max_tokens"


@dataclass
class GenerationStats:
    """Bookkeeping for the most recent generation call."""

    prompt_positions: int = 0
    # Tokens emitted and decoded; the token that stopped the loop is excluded.
    generated_tokens: int = 0
    elapsed: float = 0.0
    stop_reason: StopReason | None = None

    @property
    def tokens_per_second(self) -> float:
        return self.generated_tokens / self.elapsed if self.elapsed > 0 else 0.0


class SessionManager:
    """Owns the native resources of one multimodal conversation.

    Parameters
    ----------
    runtime : ModelRuntime
        Binding used for every native call.
    verbose : bool, optional
        Log rendered prompts and generation statistics.
    """

    def __init__(self, runtime: ModelRuntime, *, verbose: bool = False) -> None:
        self.runtime = runtime
        self.verbose = verbose

        self._model: Any = None
        self._vision: Any = None
        self._ctx: Any = None
        self._batch: DecodeBatch | None = None
        self._sampler: Any = None
        self._template: ChatTemplate | None = None
        self._antiprompt_tokens: tuple[int, ...] = ()

        self._state = SessionState.UNLOADED
        self._n_past = 0
        self._n_ctx = 0
        self._n_batch = DEFAULT_BATCH_SIZE
        self._n_threads = 1

        self.pending_images = PendingImageQueue()
        self.history: list[ChatMessage] = []
        self.last_stats = GenerationStats()

        self._busy = threading.Lock()

    def __enter__(self) -> SessionManager:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.cleanup()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def n_past(self) -> int:
        return self._n_past

    @property
    def max_context_length(self) -> int:
        return self._n_ctx

    @property
    def antiprompt_tokens(self) -> tuple[int, ...]:
        return self._antiprompt_tokens

    @property
    def chat_template(self) -> ChatTemplate | None:
        return self._template

    def is_ready(self) -> bool:
        return self._state is SessionState.READY

    def get_stats(self) -> dict[str, Any]:
        """Return a snapshot of the session state for status reporting."""
        return {
            "state": self._state.name.lower(),
            "ready": self.is_ready(),
            "n_past": self._n_past,
            "max_context_length": self._n_ctx,
            "pending_images": len(self.pending_images),
            "chat_template": self._template.name if self._template else None,
            "turns": len(self.history),
        }

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def load_language_model(self, path: str, *, n_gpu_layers: int = DEFAULT_N_GPU_LAYERS) -> None:
        """Load the language model, discarding any existing session first.

        Raises
        ------
        ModelLoadError
            ``FILE_NOT_FOUND`` if ``path`` is not a readable file,
            ``INCOMPATIBLE_FORMAT`` if the runtime rejects it.
        """
        step = "load_language_model"
        with self._exclusive(), self._load_step(
            step,
            requires=SessionState.UNLOADED,
            produces=SessionState.LANGUAGE_LOADED,
            reason=LoadFailureReason.INCOMPATIBLE_FORMAT,
        ):
            _require_file(step, path)
            self._model = self.runtime.load_language_model(path, n_gpu_layers=n_gpu_layers)
            logger.info(f"Loaded language model from {path}")

    def load_vision_model(
        self, path: str, *, thread_count: int | None = None, use_gpu: bool = True
    ) -> None:
        """Load the vision projector for the loaded language model.

        ``thread_count`` is clamped like the decode thread count.
        """
        step = "load_vision_model"
        with self._exclusive(), self._load_step(
            step,
            requires=SessionState.LANGUAGE_LOADED,
            produces=SessionState.VISION_LOADED,
            reason=LoadFailureReason.INCOMPATIBLE_FORMAT,
        ):
            _require_file(step, path)
            self._vision = self.runtime.load_vision_model(
                path, self._model, n_threads=select_thread_count(thread_count), use_gpu=use_gpu
            )
            logger.info(f"Loaded vision projector from {path}")

    def initialize_context(
        self,
        max_context_length: int = DEFAULT_CONTEXT_LENGTH,
        thread_count: int | None = None,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        """Create the decoding context (KV cache) of ``max_context_length`` positions.

        ``thread_count`` is clamped to ``[1, min(8, cores - 2)]``; ``None``
        picks the ceiling.
        """
        step = "initialize_context"
        with self._exclusive(), self._load_step(
            step,
            requires=SessionState.VISION_LOADED,
            produces=SessionState.CONTEXT_READY,
            reason=LoadFailureReason.RESOURCE_EXHAUSTION,
        ):
            if max_context_length <= 0 or batch_size <= 0:
                raise ValueError("max_context_length and batch_size must be positive")
            n_threads = select_thread_count(thread_count)
            n_batch = min(batch_size, max_context_length)
            self._ctx = self.runtime.create_context(
                self._model, n_ctx=max_context_length, n_batch=n_batch, n_threads=n_threads
            )
            self._n_ctx = max_context_length
            self._n_batch = n_batch
            self._n_threads = n_threads
            self._n_past = 0
            logger.info(
                f"Created context: n_ctx={max_context_length}, n_batch={n_batch}, "
                f"threads={n_threads}"
            )

    def initialize_batch(self, capacity: int = DEFAULT_BATCH_SIZE) -> None:
        """Allocate the reusable decode batch."""
        step = "initialize_batch"
        with self._exclusive(), self._load_step(
            step,
            requires=SessionState.CONTEXT_READY,
            produces=SessionState.BATCH_READY,
            reason=LoadFailureReason.RESOURCE_EXHAUSTION,
        ):
            if capacity <= 0:
                raise ValueError(f"Batch capacity must be positive, got {capacity}")
            native = self.runtime.create_batch(capacity)
            self._batch = DecodeBatch(capacity, native=native)

    def initialize_sampler(
        self, temperature: float = DEFAULT_TEMPERATURE, seed: int = DEFAULT_SEED
    ) -> None:
        """Build the sampler chain: temperature scaling then seeded selection."""
        step = "initialize_sampler"
        with self._exclusive(), self._load_step(
            step,
            requires=SessionState.BATCH_READY,
            produces=SessionState.SAMPLER_READY,
            reason=LoadFailureReason.RESOURCE_EXHAUSTION,
        ):
            self._sampler = self.runtime.create_sampler(
                self._model, temperature=temperature, seed=seed
            )
            logger.debug(f"Created sampler: temperature={temperature}, seed={seed}")

    def initialize_chat_template(
        self, template_name: str | None = DEFAULT_CHAT_TEMPLATE, *, template_file: str | None = None
    ) -> None:
        """Resolve the chat template and derive its antiprompt tokens.

        Templates that declare an ``antiprompt`` string have it tokenized once
        here; all others leave the antiprompt list empty.
        """
        step = "initialize_chat_template"
        with self._exclusive(), self._load_step(
            step,
            requires=SessionState.SAMPLER_READY,
            produces=SessionState.READY,
            reason=LoadFailureReason.RUNTIME_INTERNAL,
        ):
            bos_token, eos_token = self.runtime.special_token_text(self._model)
            try:
                template = resolve_chat_template(
                    template_name,
                    model_template=self.runtime.model_chat_template(self._model),
                    bos_token=bos_token,
                    eos_token=eos_token,
                    template_file=template_file,
                )
            except ValueError as exc:
                raise ModelLoadError(step, LoadFailureReason.INCOMPATIBLE_FORMAT, str(exc)) from exc

            antiprompt_tokens: tuple[int, ...] = ()
            if template.antiprompt:
                antiprompt_tokens = tuple(
                    self.runtime.tokenize_text(
                        self._model, template.antiprompt, add_special=False, parse_special=True
                    )
                )
            self._template = template
            self._antiprompt_tokens = antiprompt_tokens
            logger.info(f"Session ready (chat template: {template.name})")

    def cleanup(self) -> None:
        """Release every handle in reverse creation order.

        Safe to call repeatedly and on a partially initialized session.
        """
        with self._exclusive():
            self._teardown()

    # ------------------------------------------------------------------
    # Turn handling
    # ------------------------------------------------------------------

    def submit_bitmap(self, bitmap: Bitmap) -> None:
        """Queue a staged bitmap for the next tokenization."""
        if self._state < SessionState.VISION_LOADED:
            raise SessionNotReadyError("Cannot submit an image before the vision model is loaded")
        self.pending_images.push(bitmap)
        logger.debug(
            f"Queued {bitmap.width}x{bitmap.height} image ({len(self.pending_images)} pending)"
        )

    def eval_message(self, message: str, *, add_bos: bool) -> int:
        """Render, tokenize and evaluate one user message.

        Every queued bitmap is consumed by this call, whether it succeeds or
        not. On success ``n_past`` advances by the number of evaluated
        positions, which is returned.

        Raises
        ------
        SessionNotReadyError
            If initialization has not completed.
        TokenizationError
            If the prompt cannot be rendered or tokenized with the queued images.
        DecodeError
            If evaluation fails; ``ContextOverflowError`` when the prompt does
            not fit into the remaining context.
        """
        with self._exclusive():
            return self._eval_message(message, add_bos=add_bos)

    def generate_tokens(self, prompt: str, max_tokens: int) -> Iterator[str]:
        """Run one turn and yield decoded text fragments as they are produced.

        The first turn of a session is evaluated with a beginning-of-sequence
        token; later turns continue at the current ``n_past``. The loop stops
        at the end-of-generation token, at an antiprompt match, or after
        ``max_tokens`` samples. ``max_tokens <= 0`` yields nothing.

        Every sampled token that is emitted is also decoded, so ``n_past``
        covers the whole visible transcript when the turn finishes.
        """
        with self._exclusive():
            self._require_ready()
            if max_tokens <= 0:
                logger.debug("max_tokens <= 0, skipping generation")
                return

            started = time.perf_counter()
            message = self._with_media_markers(prompt)
            prompt_positions = self._eval_message(message, add_bos=self._n_past == 0)

            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            generated: list[int] = []
            emitted = 0
            pieces: list[str] = []
            stop_reason = StopReason.MAX_TOKENS

            for _ in range(max_tokens):
                token = self._sample()
                generated.append(token)
                if self.runtime.is_end_token(self._model, token):
                    stop_reason = StopReason.END_TOKEN
                    break
                if self._matches_antiprompt(generated):
                    stop_reason = StopReason.ANTIPROMPT
                    break

                fragment = decoder.decode(self._token_to_bytes(token))
                if fragment:
                    pieces.append(fragment)
                    yield fragment
                self._decode_token(token)
                emitted += 1

            tail = decoder.decode(b"", final=True)
            if tail:
                pieces.append(tail)
                yield tail

            self.history.append(ChatMessage(ASSISTANT_ROLE, "".join(pieces)))
            self.last_stats = GenerationStats(
                prompt_positions=prompt_positions,
                generated_tokens=emitted,
                elapsed=time.perf_counter() - started,
                stop_reason=stop_reason,
            )
            if self.verbose:
                log_debug_stats(
                    prompt_positions,
                    len(generated),
                    self._n_past,
                    self.last_stats.tokens_per_second,
                    stop_reason.value,
                )

    def generate(self, prompt: str, max_tokens: int) -> str:
        """Run one turn and return the full response text."""
        return "".join(self.generate_tokens(prompt, max_tokens))

    def reset_conversation(self) -> None:
        """Forget the conversation while keeping every loaded handle."""
        with self._exclusive():
            self._require_ready()
            try:
                self.runtime.truncate_context(self._ctx, seq_id=SEQ_ID, n_keep=0)
            except RuntimeCallError as exc:
                raise DecodeError(f"Failed to clear context: {exc}", code=exc.code) from exc
            self._n_past = 0
            self.pending_images.clear()
            self.history.clear()
            self.last_stats = GenerationStats()
            logger.info("Conversation reset")

    def count_prompt_positions(self, prompt: str) -> int:
        """Return the context positions ``prompt`` would occupy with the queued images.

        Nothing is evaluated and the image queue is left untouched.
        """
        with self._exclusive():
            self._require_ready()
            rendered = self._render(self._with_media_markers(prompt))
            chunks = self._tokenize(
                rendered, add_bos=self._n_past == 0, bitmaps=self.pending_images.snapshot()
            )
            try:
                return self.runtime.chunk_positions(chunks)
            except RuntimeCallError as exc:
                raise TokenizationError(
                    f"Unable to count prompt positions: {exc}", code=exc.code
                ) from exc
            finally:
                self.runtime.free_chunks(chunks)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        if not self._busy.acquire(blocking=False):
            raise SessionBusyError("Another operation is already running on this session")
        try:
            yield
        finally:
            self._busy.release()

    @contextmanager
    def _load_step(
        self,
        step: str,
        *,
        requires: SessionState,
        produces: SessionState,
        reason: LoadFailureReason,
    ) -> Iterator[None]:
        """Run one initialization step with cleanup-then-fail semantics."""
        if self._state >= produces:
            logger.info(f"{step}: discarding existing session before reloading")
            self._teardown()
        if self._state is not requires:
            current = self._state
            self._teardown()
            raise UsageError(f"{step} requires state {requires.name}, session was {current.name}")

        try:
            yield
        except ModelLoadError as exc:
            logger.error(str(exc))
            self._teardown()
            raise
        except RuntimeCallError as exc:
            error = ModelLoadError(step, reason, str(exc))
            logger.error(str(error))
            self._teardown()
            raise error from exc
        except Exception as exc:
            error = ModelLoadError(step, LoadFailureReason.RUNTIME_INTERNAL, f"{type(exc).__name__}: {exc}")
            logger.error(str(error))
            self._teardown()
            raise error from exc
        self._state = produces

    def _teardown(self) -> None:
        had_resources = self._state is not SessionState.UNLOADED or self._model is not None

        if self._sampler is not None:
            self._release("sampler", self.runtime.free_sampler, self._sampler)
            self._sampler = None
        if self._batch is not None:
            self._release("batch", self.runtime.free_batch, self._batch.native)
            self._batch = None
        if self._ctx is not None:
            self._release("context", self.runtime.free_context, self._ctx)
            self._ctx = None
        if self._vision is not None:
            self._release("vision context", self.runtime.free_vision_model, self._vision)
            self._vision = None
        if self._model is not None:
            self._release("language model", self.runtime.free_language_model, self._model)
            self._model = None

        self._template = None
        self._antiprompt_tokens = ()
        self._n_past = 0
        self._n_ctx = 0
        self.pending_images.clear()
        self.history.clear()
        self._state = SessionState.UNLOADED
        if had_resources:
            logger.info("Session cleaned up")

    @staticmethod
    def _release(label: str, free: Any, handle: Any) -> None:
        try:
            free(handle)
        except Exception as exc:
            logger.error(f"Failed to free {label}: {type(exc).__name__}: {exc}")

    def _require_ready(self) -> None:
        if not self.is_ready():
            raise SessionNotReadyError(
                f"Session is not ready (state: {self._state.name}); load the models first"
            )

    def _with_media_markers(self, prompt: str) -> str:
        pending = len(self.pending_images)
        if pending == 0:
            return prompt
        marker = self.runtime.media_marker()
        missing = pending - prompt.count(marker)
        if missing <= 0:
            return prompt
        return f"{marker}\n" * missing + prompt

    def _render(self, message: str) -> str:
        assert self._template is not None
        try:
            prompt = self._template.render([ChatMessage(USER_ROLE, message)], add_generation_prompt=True)
        except Exception as exc:
            raise TokenizationError(f"Failed to render chat template: {exc}") from exc
        if self.verbose:
            log_debug_prompt(prompt)
        return prompt

    def _tokenize(self, prompt: str, *, add_bos: bool, bitmaps: list[Bitmap]) -> Any:
        try:
            return self.runtime.tokenize(
                self._vision, prompt, add_special=add_bos, parse_special=True, bitmaps=bitmaps
            )
        except RuntimeCallError as exc:
            logger.error(f"Unable to tokenize prompt (code {exc.code})")
            raise TokenizationError(f"Unable to tokenize prompt: {exc}", code=exc.code) from exc

    def _eval_message(self, message: str, *, add_bos: bool) -> int:
        bitmaps = self.pending_images.drain()
        self._require_ready()
        prompt = self._render(message)
        chunks = self._tokenize(prompt, add_bos=add_bos, bitmaps=bitmaps)
        try:
            try:
                n_positions = self.runtime.chunk_positions(chunks)
            except RuntimeCallError as exc:
                raise TokenizationError(f"Unable to size prompt: {exc}", code=exc.code) from exc
            if self._n_past + n_positions > self._n_ctx:
                raise ContextOverflowError(
                    f"Prompt needs {n_positions} positions but only "
                    f"{self._n_ctx - self._n_past} of {self._n_ctx} remain"
                )
            try:
                new_n_past = self.runtime.eval_chunks(
                    self._vision,
                    self._ctx,
                    chunks,
                    n_past=self._n_past,
                    seq_id=SEQ_ID,
                    n_batch=self._n_batch,
                    logits_last=True,
                )
            except RuntimeCallError as exc:
                logger.error(f"Unable to eval prompt (code {exc.code})")
                self._discard_uncommitted()
                raise DecodeError(f"Unable to eval prompt: {exc}", code=exc.code) from exc
        finally:
            self.runtime.free_chunks(chunks)

        evaluated = new_n_past - self._n_past
        self._n_past = new_n_past
        self.history.append(ChatMessage(USER_ROLE, message))
        logger.debug(f"Evaluated {evaluated} prompt positions (n_past={self._n_past})")
        return evaluated

    def _sample(self) -> int:
        try:
            return self.runtime.sample(self._sampler, self._ctx)
        except RuntimeCallError as exc:
            raise DecodeError(f"Sampling failed: {exc}", code=exc.code) from exc

    def _matches_antiprompt(self, generated: list[int]) -> bool:
        size = len(self._antiprompt_tokens)
        if size == 0 or len(generated) < size:
            return False
        return tuple(generated[-size:]) == self._antiprompt_tokens

    def _token_to_bytes(self, token: int) -> bytes:
        try:
            n, data = self.runtime.token_to_piece(self._model, token, PIECE_BUFFER_SIZE)
            if n < 0:
                n, data = self.runtime.token_to_piece(self._model, token, -n)
        except RuntimeCallError as exc:
            raise DecodeError(f"Failed to convert token {token} to text: {exc}", code=exc.code) from exc
        if n < 0:
            raise DecodeError(f"Failed to convert token {token} to text (needs {-n} bytes)")
        return data[:n]

    def _decode_token(self, token: int) -> None:
        assert self._batch is not None
        if self._n_past + 1 > self._n_ctx:
            raise ContextOverflowError(f"Context window of {self._n_ctx} positions is full")
        self._batch.clear()
        self._batch.add(token, self._n_past, (SEQ_ID,), True)
        try:
            self.runtime.decode(self._ctx, self._batch)
        except RuntimeCallError as exc:
            logger.error(f"Failed to decode token at position {self._n_past} (code {exc.code})")
            self._discard_uncommitted()
            raise DecodeError(f"Failed to decode token: {exc}", code=exc.code) from exc
        self._n_past += 1

    def _discard_uncommitted(self) -> None:
        try:
            self.runtime.truncate_context(self._ctx, seq_id=SEQ_ID, n_keep=self._n_past)
        except RuntimeCallError as exc:
            logger.warning(f"Could not drop partially evaluated positions: {exc}")


def _require_file(step: str, path: str) -> None:
    if not path or not Path(path).is_file():
        raise ModelLoadError(step, LoadFailureReason.FILE_NOT_FOUND, f"{path} does not exist")
