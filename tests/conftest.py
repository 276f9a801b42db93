"""Shared test fixtures and helpers for the test suite.

The ``StubRuntime`` implements the ``ModelRuntime`` protocol with a tiny
scripted vocabulary so the session can be exercised end to end without a
native library. It records every call and can be told to fail any of them.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from vlm_session.config import SessionConfig
from vlm_session.core.batch import BatchEntry, DecodeBatch
from vlm_session.core.bitmap import Bitmap
from vlm_session.core.chat import VisionChat
from vlm_session.core.session import SessionManager
from vlm_session.models.errors import RuntimeCallError

EOS_TOKEN = 2
MEDIA_MARKER = "<__media__>"
IMAGE_POSITIONS = 4

# token id -> text piece
STUB_VOCAB: dict[int, str] = {
    1: "<s>",
    EOS_TOKEN: "</s>",
    10: "Hello",
    11: " world",
    12: " again",
    13: "ASSISTANT",
    14: ":",
    15: "\n",
    16: "x" * 100,
}


@dataclass
class StubHandle:
    kind: str
    serial: int


@dataclass
class StubChunks:
    text: str
    bitmaps: list[Bitmap]
    add_special: bool
    n_positions: int


@dataclass
class StubRuntime:
    """Scripted ``ModelRuntime`` used by the tests."""

    script: list[int] = field(default_factory=list)
    filler_token: int = 10
    chat_template: str | None = None
    fail_on: dict[str, Exception] = field(default_factory=dict)
    calls: list[tuple[str, Any]] = field(default_factory=list)
    created: list[StubHandle] = field(default_factory=list)
    freed: list[StubHandle] = field(default_factory=list)
    decoded: list[BatchEntry] = field(default_factory=list)
    tokenized: list[StubChunks] = field(default_factory=list)
    _sampled: int = 0

    def _record(self, name: str, detail: Any = None) -> None:
        self.calls.append((name, detail))
        error = self.fail_on.get(name)
        if error is not None:
            raise error

    def _new(self, kind: str) -> StubHandle:
        handle = StubHandle(kind, len(self.created))
        self.created.append(handle)
        return handle

    def _free(self, name: str, handle: Any) -> None:
        self._record(name, handle)
        self.freed.append(handle)

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def live_handles(self) -> list[StubHandle]:
        freed_ids = {id(handle) for handle in self.freed}
        return [handle for handle in self.created if id(handle) not in freed_ids]

    # lifecycle
    def load_language_model(self, path: str, *, n_gpu_layers: int) -> StubHandle:
        self._record("load_language_model", path)
        return self._new("model")

    def free_language_model(self, model: Any) -> None:
        self._free("free_language_model", model)

    def load_vision_model(self, path: str, model: Any, *, n_threads: int, use_gpu: bool) -> StubHandle:
        self._record("load_vision_model", {"path": path, "n_threads": n_threads, "use_gpu": use_gpu})
        return self._new("vision")

    def free_vision_model(self, vision: Any) -> None:
        self._free("free_vision_model", vision)

    def create_context(self, model: Any, *, n_ctx: int, n_batch: int, n_threads: int) -> StubHandle:
        self._record("create_context", {"n_ctx": n_ctx, "n_batch": n_batch, "n_threads": n_threads})
        return self._new("context")

    def free_context(self, ctx: Any) -> None:
        self._free("free_context", ctx)

    def truncate_context(self, ctx: Any, *, seq_id: int, n_keep: int) -> None:
        self._record("truncate_context", n_keep)

    def create_batch(self, capacity: int) -> StubHandle:
        self._record("create_batch", capacity)
        return self._new("batch")

    def free_batch(self, native_batch: Any) -> None:
        self._free("free_batch", native_batch)

    def create_sampler(self, model: Any, *, temperature: float, seed: int) -> StubHandle:
        self._record("create_sampler", {"temperature": temperature, "seed": seed})
        return self._new("sampler")

    def free_sampler(self, sampler: Any) -> None:
        self._free("free_sampler", sampler)

    # vocabulary
    def media_marker(self) -> str:
        return MEDIA_MARKER

    def model_chat_template(self, model: Any) -> str | None:
        return self.chat_template

    def special_token_text(self, model: Any) -> tuple[str, str]:
        return STUB_VOCAB[1], STUB_VOCAB[EOS_TOKEN]

    def tokenize_text(self, model: Any, text: str, *, add_special: bool, parse_special: bool) -> list[int]:
        self._record("tokenize_text", text)
        tokens = [1] if add_special else []
        pieces = sorted(STUB_VOCAB.items(), key=lambda item: -len(item[1]))
        i = 0
        while i < len(text):
            for token, piece in pieces:
                if text.startswith(piece, i):
                    tokens.append(token)
                    i += len(piece)
                    break
            else:
                tokens.append(1000 + ord(text[i]))
                i += 1
        return tokens

    def token_to_piece(self, model: Any, token: int, capacity: int) -> tuple[int, bytes]:
        self.calls.append(("token_to_piece", capacity))
        if token in STUB_VOCAB:
            data = STUB_VOCAB[token].encode("utf-8")
        else:
            data = chr(token - 1000).encode("utf-8")
        if len(data) > capacity:
            return -len(data), b""
        return len(data), data

    def is_end_token(self, model: Any, token: int) -> bool:
        return token == EOS_TOKEN

    # evaluation
    def tokenize(
        self,
        vision: Any,
        text: str,
        *,
        add_special: bool,
        parse_special: bool,
        bitmaps: Sequence[Bitmap],
    ) -> StubChunks:
        self._record("tokenize", text)
        positions = len(self.tokenize_text(None, text.replace(MEDIA_MARKER, ""), add_special=add_special, parse_special=True))
        positions += IMAGE_POSITIONS * len(bitmaps)
        chunks = StubChunks(text, list(bitmaps), add_special, positions)
        self.tokenized.append(chunks)
        return chunks

    def chunk_positions(self, chunks: StubChunks) -> int:
        return chunks.n_positions

    def free_chunks(self, chunks: StubChunks) -> None:
        self.calls.append(("free_chunks", chunks))

    def eval_chunks(
        self,
        vision: Any,
        ctx: Any,
        chunks: StubChunks,
        *,
        n_past: int,
        seq_id: int,
        n_batch: int,
        logits_last: bool,
    ) -> int:
        self._record("eval_chunks", {"n_past": n_past, "logits_last": logits_last})
        return n_past + chunks.n_positions

    def decode(self, ctx: Any, batch: DecodeBatch) -> None:
        self._record("decode", batch.entries)
        self.decoded.extend(batch.entries)

    def sample(self, sampler: Any, ctx: Any) -> int:
        self._record("sample")
        index = self._sampled
        self._sampled += 1
        if index < len(self.script):
            return self.script[index]
        return self.filler_token


@pytest.fixture
def stub_runtime() -> StubRuntime:
    return StubRuntime()


@pytest.fixture
def model_files(tmp_path: Path) -> tuple[str, str]:
    """Create placeholder language-model and projector files."""
    language = tmp_path / "model.gguf"
    vision = tmp_path / "mmproj.gguf"
    language.write_bytes(b"GGUF")
    vision.write_bytes(b"GGUF")
    return str(language), str(vision)


def initialize_session(
    session: SessionManager,
    model_files: tuple[str, str],
    *,
    template: str | None = "vicuna",
    context_length: int = 4096,
    capacity: int = 512,
) -> SessionManager:
    language, vision = model_files
    session.load_language_model(language)
    session.load_vision_model(vision)
    session.initialize_context(context_length, 2)
    session.initialize_batch(capacity)
    session.initialize_sampler(0.2, 1234)
    session.initialize_chat_template(template)
    return session


@pytest.fixture
def ready_session(stub_runtime: StubRuntime, model_files: tuple[str, str]) -> Iterator[SessionManager]:
    session = initialize_session(SessionManager(stub_runtime), model_files)
    yield session
    session.cleanup()


@pytest.fixture
def make_bitmap() -> Callable[..., Bitmap]:
    def _factory(width: int = 2, height: int = 2) -> Bitmap:
        return Bitmap(width=width, height=height, data=bytes(width * height * 3))

    return _factory


@pytest.fixture
def make_chat(
    stub_runtime: StubRuntime, model_files: tuple[str, str]
) -> Iterator[Callable[..., VisionChat]]:
    """Factory for opened ``VisionChat`` instances backed by the stub runtime."""
    opened: list[VisionChat] = []

    def _factory(load: bool = True, **config_overrides: Any) -> VisionChat:
        language, vision = model_files
        config = SessionConfig(
            model_path=language, mmproj_path=vision, no_log_file=True, **config_overrides
        )
        chat = VisionChat(config, runtime=stub_runtime).open()
        opened.append(chat)
        if load:
            assert chat.load_models()
        return chat

    yield _factory
    for chat in opened:
        chat.close()


def raise_runtime_error(message: str = "native failure", code: int = -1) -> RuntimeCallError:
    return RuntimeCallError(message, code=code)
