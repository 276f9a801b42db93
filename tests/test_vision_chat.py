"""Tests for the owning ``VisionChat`` handle."""

from __future__ import annotations

import asyncio
from io import BytesIO
from pathlib import Path
import threading

from PIL import Image
import pytest
from conftest import EOS_TOKEN, raise_runtime_error

from vlm_session.config import SessionConfig
from vlm_session.core.bitmap import PixelLayout
from vlm_session.core.chat import VisionChat
from vlm_session.core.session import GenerationStats, StopReason
from vlm_session.models.errors import SessionNotReadyError, UsageError


def _png_bytes(width: int = 3, height: int = 2) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", (width, height), (0, 0, 255)).save(buffer, format="PNG")
    return buffer.getvalue()


class _StreamRecorder:
    def __init__(self) -> None:
        self.fragments: list[str] = []
        self.completions: list[BaseException | None] = []
        self.done = threading.Event()

    def on_token(self, fragment: str) -> None:
        self.fragments.append(fragment)

    def on_complete(self, error: BaseException | None) -> None:
        self.completions.append(error)
        self.done.set()


def test_load_models_reports_success(make_chat) -> None:
    chat = make_chat()
    assert chat.is_ready()
    assert chat.get_stats()["session"]["state"] == "ready"


def test_load_models_applies_config(make_chat, stub_runtime) -> None:
    make_chat(context_length=1024, batch_size=64, n_threads=1, temperature=0.0, seed=9)

    calls = dict(stub_runtime.calls)
    assert calls["create_context"] == {"n_ctx": 1024, "n_batch": 64, "n_threads": 1}
    assert calls["load_vision_model"]["n_threads"] == 1
    assert calls["create_batch"] == 64
    assert calls["create_sampler"] == {"temperature": 0.0, "seed": 9}


def test_load_models_failure_returns_false(make_chat, stub_runtime) -> None:
    stub_runtime.fail_on["create_context"] = raise_runtime_error("out of memory")
    chat = make_chat(load=False)

    assert chat.load_models() is False
    assert not chat.is_ready()
    assert stub_runtime.live_handles() == []


def test_load_models_requires_both_paths(stub_runtime) -> None:
    with VisionChat(SessionConfig(no_log_file=True), runtime=stub_runtime) as chat:
        assert chat.load_models() is False
    assert stub_runtime.calls == []


def test_submit_image_from_file(make_chat, tmp_path: Path) -> None:
    chat = make_chat()
    path = tmp_path / "blue.png"
    path.write_bytes(_png_bytes())

    assert chat.submit_image(path) is True
    assert chat.get_stats()["session"]["pending_images"] == 1


def test_submit_image_failures_return_false(make_chat, tmp_path: Path) -> None:
    chat = make_chat()
    assert chat.submit_image(tmp_path / "missing.png") is False
    assert chat.submit_image_buffer(bytes(5), 2, 2, PixelLayout.RGBA) is False
    assert chat.get_stats()["session"]["pending_images"] == 0


def test_submit_image_before_load_returns_false(make_chat) -> None:
    chat = make_chat(load=False)
    assert chat.submit_image_buffer(bytes(12), 2, 2, PixelLayout.RGB) is False


def test_image_is_used_by_the_next_turn(make_chat, stub_runtime) -> None:
    chat = make_chat()
    assert chat.submit_image_buffer(bytes(16), 2, 2, PixelLayout.BGRA)

    chat.generate("what is this?", 1)

    assert len(stub_runtime.tokenized[0].bitmaps) == 1
    assert stub_runtime.tokenized[0].bitmaps[0].data == bytes(12)


def test_generate_uses_configured_max_tokens(make_chat) -> None:
    chat = make_chat(max_tokens=2)
    assert chat.generate("hi") == "HelloHello"
    assert chat.get_stats()["last_generation"]["generated_tokens"] == 2


def test_generate_before_load_raises(make_chat) -> None:
    chat = make_chat(load=False)
    with pytest.raises(SessionNotReadyError):
        chat.generate("hi", 4)


def test_generate_stream_delivers_fragments_then_one_completion(make_chat, stub_runtime) -> None:
    stub_runtime.script = [10, 11, EOS_TOKEN]
    chat = make_chat()
    recorder = _StreamRecorder()

    call_id = chat.generate_stream("hi", 8, recorder.on_token, recorder.on_complete)

    assert recorder.done.wait(timeout=5)
    chat.bridge.flush(timeout=5)
    assert recorder.fragments == ["Hello", " world"]
    assert recorder.completions == [None]
    assert not chat.bridge.is_active(call_id)


def test_generate_stream_reports_errors_as_fragment(make_chat) -> None:
    chat = make_chat(load=False)
    recorder = _StreamRecorder()

    chat.generate_stream("hi", 8, recorder.on_token, recorder.on_complete)

    assert recorder.done.wait(timeout=5)
    assert len(recorder.fragments) == 1
    assert recorder.fragments[0].startswith("Error: Session is not ready")
    assert len(recorder.completions) == 1
    assert isinstance(recorder.completions[0], SessionNotReadyError)


def test_generate_stream_on_closed_chat_raises(make_chat) -> None:
    chat = make_chat()
    chat.close()
    recorder = _StreamRecorder()

    with pytest.raises(UsageError):
        chat.generate_stream("hi", 8, recorder.on_token, recorder.on_complete)
    assert recorder.completions == []


def test_turns_share_one_conversation(make_chat, stub_runtime) -> None:
    chat = make_chat()
    chat.generate("first", 1)
    n_past = chat.session.n_past

    chat.generate("second", 1)

    assert chat.session.n_past > n_past
    assert stub_runtime.tokenized[1].add_special is False


def test_reset_and_count(make_chat) -> None:
    chat = make_chat()
    chat.generate("hello", 2)

    chat.reset_conversation()

    assert chat.session.n_past == 0
    assert chat.count_prompt_positions("hello") > 0
    assert chat.session.n_past == 0


def test_close_releases_everything_once(make_chat, stub_runtime) -> None:
    chat = make_chat()

    chat.close()
    chat.close()

    assert chat.closed
    assert stub_runtime.live_handles() == []
    assert not chat.worker.running
    with pytest.raises(UsageError):
        chat.open()
    with pytest.raises(UsageError):
        chat.generate("hi", 1)


def test_close_from_the_completion_callback(make_chat, stub_runtime) -> None:
    stub_runtime.script = [10, EOS_TOKEN]
    chat = make_chat()
    errors: list[Exception] = []
    closed = threading.Event()

    def close_on_complete(error: BaseException | None) -> None:
        try:
            chat.close()
        except Exception as exc:
            errors.append(exc)
        finally:
            closed.set()

    chat.generate_stream("hi", 4, lambda fragment: None, close_on_complete)

    assert closed.wait(5)
    assert errors == []
    assert chat.closed
    assert chat.bridge._executor is None
    assert stub_runtime.live_handles() == []


def test_context_manager_closes(stub_runtime, model_files) -> None:
    config = SessionConfig(model_path=model_files[0], mmproj_path=model_files[1], no_log_file=True)
    with VisionChat(config, runtime=stub_runtime) as chat:
        assert chat.load_models()
    assert chat.closed
    assert stub_runtime.live_handles() == []


def test_async_interface(make_chat, stub_runtime) -> None:
    """The async methods drive the same session through the worker."""
    stub_runtime.script = [10, EOS_TOKEN, 11, 12, EOS_TOKEN]
    chat = make_chat(load=False)

    async def scenario() -> tuple[str, list[str], tuple[int, int]]:
        await chat.aload_models()
        bitmap = await chat.asubmit_image_bytes(_png_bytes(3, 2))
        text = await chat.agenerate("describe", 4)
        fragments = [fragment async for fragment in chat.agenerate_stream("more", 4)]
        await chat.areset_conversation()
        return text, fragments, (bitmap.width, bitmap.height)

    text, fragments, size = asyncio.run(scenario())

    assert text == "Hello"
    assert fragments == [" world", " again"]
    assert size == (3, 2)
    assert len(stub_runtime.tokenized[0].bitmaps) == 1
    assert chat.session.n_past == 0


def test_generate_with_usage_is_captured_before_queued_work(make_chat, stub_runtime) -> None:
    """A reset queued behind the turn does not leak into that turn's usage."""
    stub_runtime.script = [10, 11, EOS_TOKEN]
    chat = make_chat()

    async def scenario() -> tuple[str, GenerationStats, int]:
        result, _ = await asyncio.gather(
            chat.agenerate_with_usage("hi", 5), chat.areset_conversation()
        )
        return result

    text, stats, n_past = asyncio.run(scenario())

    prompt_positions = stub_runtime.tokenized[0].n_positions
    assert text == "Hello world"
    assert stats.stop_reason is StopReason.END_TOKEN
    assert stats.generated_tokens == 2
    assert n_past == prompt_positions + 2
    assert chat.session.n_past == 0


def test_async_load_without_paths_raises(stub_runtime) -> None:
    chat = VisionChat(SessionConfig(no_log_file=True), runtime=stub_runtime).open()
    try:
        with pytest.raises(UsageError):
            asyncio.run(chat.aload_models())
    finally:
        chat.close()


def test_streamed_turn_with_image(make_chat, stub_runtime, make_bitmap) -> None:
    """One staged image, at most five fragments, then a single completion."""
    chat = make_chat()
    chat.session.submit_bitmap(make_bitmap())
    recorder = _StreamRecorder()

    chat.generate_stream("describe", 5, recorder.on_token, recorder.on_complete)

    assert recorder.done.wait(timeout=5)
    chat.bridge.flush(timeout=5)
    assert 0 < len(recorder.fragments) <= 5
    assert recorder.completions == [None]
    assert len(chat.session.pending_images) == 0
    assert len(stub_runtime.tokenized[0].bitmaps) == 1


def test_zero_max_tokens_stream_completes_once(make_chat) -> None:
    chat = make_chat()
    recorder = _StreamRecorder()

    chat.generate_stream("hi", 0, recorder.on_token, recorder.on_complete)

    assert recorder.done.wait(timeout=5)
    chat.bridge.flush(timeout=5)
    assert recorder.fragments == []
    assert recorder.completions == [None]
