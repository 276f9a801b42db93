"""Tests for ``SessionManager`` initialization and teardown."""

from __future__ import annotations

import pytest
from conftest import StubRuntime, initialize_session, raise_runtime_error

from vlm_session.core.session import SessionManager, SessionState
from vlm_session.models.errors import (
    LoadFailureReason,
    ModelLoadError,
    SessionNotReadyError,
    UsageError,
)

FREE_ORDER = [
    "free_sampler",
    "free_batch",
    "free_context",
    "free_vision_model",
    "free_language_model",
]


def _free_calls(runtime: StubRuntime) -> list[str]:
    return [name for name in runtime.call_names() if name.startswith("free_") and name != "free_chunks"]


def test_full_initialization_reaches_ready(stub_runtime, model_files) -> None:
    session = initialize_session(SessionManager(stub_runtime), model_files)

    assert session.is_ready()
    assert session.state is SessionState.READY
    assert session.n_past == 0
    assert session.max_context_length == 4096
    assert session.chat_template.name == "vicuna"
    # "ASSISTANT" + ":" in the stub vocabulary
    assert session.antiprompt_tokens == (13, 14)
    assert len(stub_runtime.live_handles()) == 5


def test_states_advance_step_by_step(stub_runtime, model_files) -> None:
    language, vision = model_files
    session = SessionManager(stub_runtime)

    session.load_language_model(language)
    assert session.state is SessionState.LANGUAGE_LOADED
    session.load_vision_model(vision)
    assert session.state is SessionState.VISION_LOADED
    session.initialize_context(256, 1, batch_size=1024)
    assert session.state is SessionState.CONTEXT_READY
    session.initialize_batch(32)
    assert session.state is SessionState.BATCH_READY
    session.initialize_sampler(0.7, 42)
    assert session.state is SessionState.SAMPLER_READY
    assert not session.is_ready()
    session.initialize_chat_template("chatml")
    assert session.is_ready()
    assert session.antiprompt_tokens == ()

    context_args = dict(stub_runtime.calls)["create_context"]
    assert context_args["n_ctx"] == 256
    assert context_args["n_batch"] == 256
    assert context_args["n_threads"] == 1
    assert dict(stub_runtime.calls)["create_sampler"] == {"temperature": 0.7, "seed": 42}
    session.cleanup()


def test_cleanup_releases_in_reverse_order(ready_session, stub_runtime) -> None:
    ready_session.cleanup()

    assert _free_calls(stub_runtime) == FREE_ORDER
    assert stub_runtime.live_handles() == []
    assert ready_session.state is SessionState.UNLOADED
    assert not ready_session.is_ready()
    assert ready_session.chat_template is None


def test_cleanup_is_idempotent(ready_session, stub_runtime) -> None:
    ready_session.cleanup()
    ready_session.cleanup()
    assert _free_calls(stub_runtime) == FREE_ORDER


def test_cleanup_on_fresh_session_is_a_no_op(stub_runtime) -> None:
    SessionManager(stub_runtime).cleanup()
    assert stub_runtime.calls == []


def test_cleanup_continues_when_a_free_fails(ready_session, stub_runtime) -> None:
    stub_runtime.fail_on["free_context"] = raise_runtime_error("context busy")

    ready_session.cleanup()

    assert _free_calls(stub_runtime) == FREE_ORDER
    assert [handle.kind for handle in stub_runtime.live_handles()] == ["context"]
    assert ready_session.state is SessionState.UNLOADED


def test_context_manager_cleans_up(stub_runtime, model_files) -> None:
    with SessionManager(stub_runtime) as session:
        initialize_session(session, model_files)
        assert session.is_ready()
    assert stub_runtime.live_handles() == []


@pytest.mark.parametrize(
    "failing_call,expected_reason",
    [
        ("load_language_model", LoadFailureReason.INCOMPATIBLE_FORMAT),
        ("load_vision_model", LoadFailureReason.INCOMPATIBLE_FORMAT),
        ("create_context", LoadFailureReason.RESOURCE_EXHAUSTION),
        ("create_batch", LoadFailureReason.RESOURCE_EXHAUSTION),
        ("create_sampler", LoadFailureReason.RESOURCE_EXHAUSTION),
    ],
)
def test_failing_step_tears_session_down(
    stub_runtime, model_files, failing_call, expected_reason
) -> None:
    stub_runtime.fail_on[failing_call] = raise_runtime_error()
    session = SessionManager(stub_runtime)

    with pytest.raises(ModelLoadError) as excinfo:
        initialize_session(session, model_files)

    assert excinfo.value.reason is expected_reason
    assert session.state is SessionState.UNLOADED
    assert not session.is_ready()
    assert stub_runtime.live_handles() == []


def test_unexpected_exception_is_reported_as_internal(stub_runtime, model_files) -> None:
    stub_runtime.fail_on["create_sampler"] = ValueError("bad temperature")
    session = SessionManager(stub_runtime)

    with pytest.raises(ModelLoadError) as excinfo:
        initialize_session(session, model_files)

    assert excinfo.value.reason is LoadFailureReason.RUNTIME_INTERNAL
    assert "bad temperature" in str(excinfo.value)
    assert stub_runtime.live_handles() == []


def test_missing_model_file(stub_runtime, tmp_path) -> None:
    session = SessionManager(stub_runtime)

    with pytest.raises(ModelLoadError) as excinfo:
        session.load_language_model(str(tmp_path / "missing.gguf"))

    assert excinfo.value.reason is LoadFailureReason.FILE_NOT_FOUND
    assert excinfo.value.step == "load_language_model"
    assert "load_language_model" not in stub_runtime.call_names()


def test_missing_projector_file_releases_language_model(stub_runtime, model_files, tmp_path) -> None:
    session = SessionManager(stub_runtime)
    session.load_language_model(model_files[0])

    with pytest.raises(ModelLoadError) as excinfo:
        session.load_vision_model(str(tmp_path / "missing-mmproj.gguf"))

    assert excinfo.value.reason is LoadFailureReason.FILE_NOT_FOUND
    assert stub_runtime.live_handles() == []
    assert session.state is SessionState.UNLOADED


def test_unknown_template_is_an_incompatible_format(stub_runtime, model_files) -> None:
    session = SessionManager(stub_runtime)

    with pytest.raises(ModelLoadError) as excinfo:
        initialize_session(session, model_files, template="llama9")

    assert excinfo.value.reason is LoadFailureReason.INCOMPATIBLE_FORMAT
    assert excinfo.value.step == "initialize_chat_template"
    assert stub_runtime.live_handles() == []


def test_model_embedded_template_is_used_by_default(model_files) -> None:
    runtime = StubRuntime(chat_template="{% for m in messages %}{{ m.content }}{% endfor %}")
    session = initialize_session(SessionManager(runtime), model_files, template=None)

    assert session.chat_template.name == "model"
    assert session.antiprompt_tokens == ()
    session.cleanup()


def test_out_of_order_step_is_a_usage_error(stub_runtime) -> None:
    session = SessionManager(stub_runtime)
    with pytest.raises(UsageError, match="requires state VISION_LOADED"):
        session.initialize_context(128)
    assert "create_context" not in stub_runtime.call_names()


def test_skipped_step_discards_partial_session(stub_runtime, model_files) -> None:
    session = SessionManager(stub_runtime)
    session.load_language_model(model_files[0])

    with pytest.raises(UsageError):
        session.initialize_batch(16)

    assert session.state is SessionState.UNLOADED
    assert stub_runtime.live_handles() == []


def test_reloading_tears_down_existing_session(ready_session, stub_runtime, model_files) -> None:
    ready_session.load_language_model(model_files[0])

    assert _free_calls(stub_runtime) == FREE_ORDER
    assert ready_session.state is SessionState.LANGUAGE_LOADED
    assert [handle.kind for handle in stub_runtime.live_handles()] == ["model"]


def test_invalid_context_length_is_rejected(stub_runtime, model_files) -> None:
    session = SessionManager(stub_runtime)
    session.load_language_model(model_files[0])
    session.load_vision_model(model_files[1])

    with pytest.raises(ModelLoadError):
        session.initialize_context(0)
    assert stub_runtime.live_handles() == []


def test_submit_bitmap_requires_vision_model(stub_runtime, model_files, make_bitmap) -> None:
    session = SessionManager(stub_runtime)
    with pytest.raises(SessionNotReadyError):
        session.submit_bitmap(make_bitmap())

    session.load_language_model(model_files[0])
    session.load_vision_model(model_files[1])
    session.submit_bitmap(make_bitmap())
    assert len(session.pending_images) == 1

    session.cleanup()
    assert len(session.pending_images) == 0


def test_get_stats_reports_state(ready_session) -> None:
    stats = ready_session.get_stats()
    assert stats == {
        "state": "ready",
        "ready": True,
        "n_past": 0,
        "max_context_length": 4096,
        "pending_images": 0,
        "chat_template": "vicuna",
        "turns": 0,
    }
