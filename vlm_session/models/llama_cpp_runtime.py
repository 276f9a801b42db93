"""llama.cpp runtime binding built on the llama-cpp-python low-level API.

This binding talks to ``llama_cpp`` (language model, context, batch, sampler,
vocabulary) and ``llama_cpp.mtmd_cpp`` (vision projector, multimodal
tokenization, chunk evaluation) through ctypes. It keeps no conversation
state of its own: every handle it returns is owned by the session, which
hands it back here to be freed.

Native log output from llama.cpp is forwarded into loguru.
"""

from __future__ import annotations

from collections.abc import Sequence
import ctypes
from dataclasses import dataclass
import threading
from typing import TYPE_CHECKING, Any

import llama_cpp
from llama_cpp import mtmd_cpp
from loguru import logger

from .errors import RuntimeCallError

if TYPE_CHECKING:
    from ..core.batch import DecodeBatch
    from ..core.bitmap import Bitmap

# ggml log levels
_GGML_LOG_LEVEL_WARN = 3
_GGML_LOG_LEVEL_ERROR = 4
_GGML_LOG_LEVEL_CONT = 5

_backend_lock = threading.Lock()
_backend_ready = False
_last_log_level = 0


@llama_cpp.llama_log_callback
def _forward_native_log(level: int, text: bytes, user_data: ctypes.c_void_p) -> None:
    global _last_log_level
    if level == _GGML_LOG_LEVEL_CONT:
        level = _last_log_level
    else:
        _last_log_level = level
    message = text.decode("utf-8", errors="replace").rstrip()
    if not message:
        return
    if level == _GGML_LOG_LEVEL_ERROR:
        logger.opt(depth=1).error(f"[llama.cpp] {message}")
    elif level == _GGML_LOG_LEVEL_WARN:
        logger.opt(depth=1).warning(f"[llama.cpp] {message}")
    else:
        logger.opt(depth=1).debug(f"[llama.cpp] {message}")


def _ensure_backend() -> None:
    global _backend_ready
    with _backend_lock:
        if _backend_ready:
            return
        llama_cpp.llama_log_set(_forward_native_log, ctypes.c_void_p(0))
        llama_cpp.llama_backend_init()
        _backend_ready = True


@dataclass
class LlamaModelHandle:
    """Loaded language model plus its vocabulary pointer."""

    model: Any
    vocab: Any
    path: str


@dataclass
class ChunkList:
    """Tokenized multimodal input owned by the native side."""

    chunks: Any
    bitmaps: list[Any]


class LlamaCppRuntime:
    """``ModelRuntime`` implementation over llama-cpp-python.

    Parameters
    ----------
    media_marker : str | None, optional
        Placeholder the multimodal tokenizer replaces with image embeddings.
        Defaults to the library's own marker.
    """

    def __init__(self, media_marker: str | None = None) -> None:
        _ensure_backend()
        self._media_marker = media_marker

    # ------------------------------------------------------------------
    # Handle lifecycle
    # ------------------------------------------------------------------

    def load_language_model(self, path: str, *, n_gpu_layers: int) -> LlamaModelHandle:
        params = llama_cpp.llama_model_default_params()
        params.n_gpu_layers = n_gpu_layers
        model = llama_cpp.llama_model_load_from_file(path.encode("utf-8"), params)
        if model is None:
            raise RuntimeCallError(f"Failed to load model from file: {path}")
        vocab = llama_cpp.llama_model_get_vocab(model)
        if vocab is None:
            llama_cpp.llama_model_free(model)
            raise RuntimeCallError(f"Failed to get vocab from model: {path}")
        return LlamaModelHandle(model=model, vocab=vocab, path=path)

    def free_language_model(self, model: LlamaModelHandle) -> None:
        llama_cpp.llama_model_free(model.model)

    def load_vision_model(
        self, path: str, model: LlamaModelHandle, *, n_threads: int, use_gpu: bool
    ) -> Any:
        params = mtmd_cpp.mtmd_context_params_default()
        params.use_gpu = use_gpu
        params.print_timings = False
        params.n_threads = n_threads
        if self._media_marker is not None:
            params.media_marker = self._media_marker.encode("utf-8")
        vision = mtmd_cpp.mtmd_init_from_file(path.encode("utf-8"), model.model, params)
        if vision is None:
            raise RuntimeCallError(f"Failed to load vision projector from file: {path}")
        return vision

    def free_vision_model(self, vision: Any) -> None:
        mtmd_cpp.mtmd_free(vision)

    def create_context(
        self, model: LlamaModelHandle, *, n_ctx: int, n_batch: int, n_threads: int
    ) -> Any:
        params = llama_cpp.llama_context_default_params()
        params.n_ctx = n_ctx
        params.n_batch = n_batch
        params.n_threads = n_threads
        params.n_threads_batch = n_threads
        ctx = llama_cpp.llama_init_from_model(model.model, params)
        if ctx is None:
            raise RuntimeCallError(f"Failed to create a context of {n_ctx} positions")
        return ctx

    def free_context(self, ctx: Any) -> None:
        llama_cpp.llama_free(ctx)

    def truncate_context(self, ctx: Any, *, seq_id: int, n_keep: int) -> None:
        memory = llama_cpp.llama_get_memory(ctx)
        if n_keep <= 0:
            llama_cpp.llama_memory_clear(memory, True)
            return
        if not llama_cpp.llama_memory_seq_rm(memory, seq_id, n_keep, -1):
            raise RuntimeCallError(f"Failed to remove positions >= {n_keep} from sequence {seq_id}")

    def create_batch(self, capacity: int) -> Any:
        return llama_cpp.llama_batch_init(capacity, 0, 1)

    def free_batch(self, native_batch: Any) -> None:
        llama_cpp.llama_batch_free(native_batch)

    def create_sampler(self, model: LlamaModelHandle, *, temperature: float, seed: int) -> Any:
        params = llama_cpp.llama_sampler_chain_default_params()
        chain = llama_cpp.llama_sampler_chain_init(params)
        if chain is None:
            raise RuntimeCallError("Failed to create sampler chain")
        for stage in (
            llama_cpp.llama_sampler_init_temp(temperature),
            llama_cpp.llama_sampler_init_dist(seed),
        ):
            if stage is None:
                llama_cpp.llama_sampler_free(chain)
                raise RuntimeCallError("Failed to initialize sampler")
            llama_cpp.llama_sampler_chain_add(chain, stage)
        return chain

    def free_sampler(self, sampler: Any) -> None:
        llama_cpp.llama_sampler_free(sampler)

    # ------------------------------------------------------------------
    # Vocabulary and templates
    # ------------------------------------------------------------------

    def media_marker(self) -> str:
        if self._media_marker is None:
            self._media_marker = mtmd_cpp.mtmd_default_marker().decode("utf-8")
        return self._media_marker

    def model_chat_template(self, model: LlamaModelHandle) -> str | None:
        template = llama_cpp.llama_model_chat_template(model.model, None)
        return template.decode("utf-8") if template else None

    def special_token_text(self, model: LlamaModelHandle) -> tuple[str, str]:
        texts = []
        for token in (llama_cpp.llama_vocab_bos(model.vocab), llama_cpp.llama_vocab_eos(model.vocab)):
            if token < 0:
                texts.append("")
                continue
            n, data = self._piece(model, token, 64, special=True)
            if n < 0:
                n, data = self._piece(model, token, -n, special=True)
            texts.append(data[: max(n, 0)].decode("utf-8", errors="replace"))
        return texts[0], texts[1]

    def tokenize_text(
        self, model: LlamaModelHandle, text: str, *, add_special: bool, parse_special: bool
    ) -> list[int]:
        data = text.encode("utf-8")
        capacity = len(data) + 2
        tokens = (llama_cpp.llama_token * capacity)()
        n = llama_cpp.llama_tokenize(
            model.vocab, data, len(data), tokens, capacity, add_special, parse_special
        )
        if n < 0:
            capacity = -n
            tokens = (llama_cpp.llama_token * capacity)()
            n = llama_cpp.llama_tokenize(
                model.vocab, data, len(data), tokens, capacity, add_special, parse_special
            )
            if n < 0:
                raise RuntimeCallError(f"Failed to tokenize {text!r}", code=n)
        return list(tokens[:n])

    def token_to_piece(self, model: LlamaModelHandle, token: int, capacity: int) -> tuple[int, bytes]:
        return self._piece(model, token, capacity, special=False)

    @staticmethod
    def _piece(model: LlamaModelHandle, token: int, capacity: int, *, special: bool) -> tuple[int, bytes]:
        buf = (ctypes.c_char * capacity)()
        n = llama_cpp.llama_token_to_piece(model.vocab, token, buf, capacity, 0, special)
        if n < 0:
            return n, b""
        return n, bytes(buf[:n])

    def is_end_token(self, model: LlamaModelHandle, token: int) -> bool:
        return bool(llama_cpp.llama_vocab_is_eog(model.vocab, token))

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def tokenize(
        self,
        vision: Any,
        text: str,
        *,
        add_special: bool,
        parse_special: bool,
        bitmaps: Sequence[Bitmap],
    ) -> ChunkList:
        native_bitmaps = []
        try:
            for bitmap in bitmaps:
                pixels = (ctypes.c_uint8 * len(bitmap.data)).from_buffer_copy(bitmap.data)
                native = mtmd_cpp.mtmd_bitmap_init(bitmap.width, bitmap.height, pixels)
                if native is None:
                    raise RuntimeCallError(
                        f"Failed to create a {bitmap.width}x{bitmap.height} native bitmap"
                    )
                native_bitmaps.append(native)

            input_text = mtmd_cpp.mtmd_input_text()
            input_text.text = text.encode("utf-8")
            input_text.add_special = add_special
            input_text.parse_special = parse_special

            bitmap_array = (mtmd_cpp.mtmd_bitmap_p_ctypes * len(native_bitmaps))(*native_bitmaps)
            chunks = mtmd_cpp.mtmd_input_chunks_init()
            if chunks is None:
                raise RuntimeCallError("Failed to allocate input chunks")
            result = mtmd_cpp.mtmd_tokenize(
                vision, chunks, ctypes.byref(input_text), bitmap_array, len(native_bitmaps)
            )
            if result != 0:
                mtmd_cpp.mtmd_input_chunks_free(chunks)
                raise RuntimeCallError("mtmd_tokenize failed", code=result)
        except BaseException:
            for native in native_bitmaps:
                mtmd_cpp.mtmd_bitmap_free(native)
            raise
        return ChunkList(chunks=chunks, bitmaps=native_bitmaps)

    def chunk_positions(self, chunks: ChunkList) -> int:
        total = 0
        for i in range(mtmd_cpp.mtmd_input_chunks_size(chunks.chunks)):
            chunk = mtmd_cpp.mtmd_input_chunks_get(chunks.chunks, i)
            total += mtmd_cpp.mtmd_input_chunk_get_n_tokens(chunk)
        return total

    def free_chunks(self, chunks: ChunkList) -> None:
        mtmd_cpp.mtmd_input_chunks_free(chunks.chunks)
        for native in chunks.bitmaps:
            mtmd_cpp.mtmd_bitmap_free(native)
        chunks.bitmaps.clear()

    def eval_chunks(
        self,
        vision: Any,
        ctx: Any,
        chunks: ChunkList,
        *,
        n_past: int,
        seq_id: int,
        n_batch: int,
        logits_last: bool,
    ) -> int:
        n_chunks = mtmd_cpp.mtmd_input_chunks_size(chunks.chunks)
        position = n_past
        for i in range(n_chunks):
            chunk = mtmd_cpp.mtmd_input_chunks_get(chunks.chunks, i)
            new_n_past = llama_cpp.llama_pos(0)
            result = mtmd_cpp.mtmd_helper_eval_chunk_single(
                vision,
                ctx,
                chunk,
                position,
                seq_id,
                n_batch,
                logits_last and i == n_chunks - 1,
                ctypes.byref(new_n_past),
            )
            if result != 0:
                raise RuntimeCallError(f"Failed to evaluate chunk {i} of {n_chunks}", code=result)
            position = new_n_past.value
        return position

    def decode(self, ctx: Any, batch: DecodeBatch) -> None:
        native = batch.native
        native.n_tokens = 0
        for idx, entry in enumerate(batch.entries):
            native.token[idx] = entry.token
            native.pos[idx] = entry.pos
            native.n_seq_id[idx] = len(entry.seq_ids)
            for i, seq_id in enumerate(entry.seq_ids):
                native.seq_id[idx][i] = seq_id
            native.logits[idx] = entry.logits
        native.n_tokens = len(batch)
        result = llama_cpp.llama_decode(ctx, native)
        if result != 0:
            raise RuntimeCallError("llama_decode failed", code=result)

    def sample(self, sampler: Any, ctx: Any) -> int:
        return llama_cpp.llama_sampler_sample(sampler, ctx, -1)
