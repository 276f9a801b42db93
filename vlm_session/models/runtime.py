"""Runtime binding protocol used by the session manager.

This module defines the typing contract for the native model runtime the
session drives: model/vision/context/sampler handle management, multimodal
tokenization, chunk evaluation, single-token decoding and sampling. Handles
are opaque to the session; only the binding that produced a handle knows how
to free it.

Every call that fails raises :class:`~vlm_session.models.errors.RuntimeCallError`
(with the native status code where one exists). The session translates those
into its own error taxonomy.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from ..core.batch import DecodeBatch
    from ..core.bitmap import Bitmap


class ModelRuntime(Protocol):
    """Protocol describing the model runtime consumed by ``SessionManager``."""

    # ------------------------------------------------------------------
    # Handle lifecycle
    # ------------------------------------------------------------------

    def load_language_model(self, path: str, *, n_gpu_layers: int) -> Any:  # pragma: no cover - typing stub
        """Load language-model weights and return the model handle."""

    def free_language_model(self, model: Any) -> None:  # pragma: no cover - typing stub
        """Release a model handle."""

    def load_vision_model(
        self, path: str, model: Any, *, n_threads: int, use_gpu: bool
    ) -> Any:  # pragma: no cover - typing stub
        """Load the vision projector bound to ``model``."""

    def free_vision_model(self, vision: Any) -> None:  # pragma: no cover - typing stub
        """Release a vision context handle."""

    def create_context(
        self, model: Any, *, n_ctx: int, n_batch: int, n_threads: int
    ) -> Any:  # pragma: no cover - typing stub
        """Create a decoding context (KV cache) sized to ``n_ctx`` positions."""

    def free_context(self, ctx: Any) -> None:  # pragma: no cover - typing stub
        """Release a decoding context."""

    def truncate_context(self, ctx: Any, *, seq_id: int, n_keep: int) -> None:  # pragma: no cover - typing stub
        """Drop every cached position ``>= n_keep`` of ``seq_id`` from the context."""

    def create_batch(self, capacity: int) -> Any:  # pragma: no cover - typing stub
        """Allocate the native buffer backing a ``DecodeBatch``."""

    def free_batch(self, native_batch: Any) -> None:  # pragma: no cover - typing stub
        """Release a native batch buffer."""

    def create_sampler(self, model: Any, *, temperature: float, seed: int) -> Any:  # pragma: no cover - typing stub
        """Create a sampler chain: temperature scaling then seeded selection."""

    def free_sampler(self, sampler: Any) -> None:  # pragma: no cover - typing stub
        """Release a sampler chain."""

    # ------------------------------------------------------------------
    # Vocabulary and templates
    # ------------------------------------------------------------------

    def media_marker(self) -> str:  # pragma: no cover - typing stub
        """Return the in-band placeholder the tokenizer replaces with an image."""

    def model_chat_template(self, model: Any) -> str | None:  # pragma: no cover - typing stub
        """Return the Jinja chat template embedded in the model, if any."""

    def special_token_text(self, model: Any) -> tuple[str, str]:  # pragma: no cover - typing stub
        """Return the ``(bos, eos)`` token texts of the model vocabulary."""

    def tokenize_text(
        self, model: Any, text: str, *, add_special: bool, parse_special: bool
    ) -> list[int]:  # pragma: no cover - typing stub
        """Tokenize plain text against the model vocabulary."""

    def token_to_piece(self, model: Any, token: int, capacity: int) -> tuple[int, bytes]:  # pragma: no cover - typing stub
        """Render ``token`` into at most ``capacity`` bytes.

        Returns ``(n, data)``. A negative ``n`` means the buffer was too small
        and ``-n`` bytes are required; ``data`` is empty in that case.
        """

    def is_end_token(self, model: Any, token: int) -> bool:  # pragma: no cover - typing stub
        """Return True when ``token`` ends a generated turn."""

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
    ) -> Any:  # pragma: no cover - typing stub
        """Tokenize ``text`` together with ``bitmaps`` into input chunks."""

    def chunk_positions(self, chunks: Any) -> int:  # pragma: no cover - typing stub
        """Return how many context positions ``chunks`` will occupy."""

    def free_chunks(self, chunks: Any) -> None:  # pragma: no cover - typing stub
        """Release tokenized chunks."""

    def eval_chunks(
        self,
        vision: Any,
        ctx: Any,
        chunks: Any,
        *,
        n_past: int,
        seq_id: int,
        n_batch: int,
        logits_last: bool,
    ) -> int:  # pragma: no cover - typing stub
        """Evaluate ``chunks`` starting at ``n_past`` and return the new position."""

    def decode(self, ctx: Any, batch: DecodeBatch) -> None:  # pragma: no cover - typing stub
        """Run one decode step over the entries of ``batch``."""

    def sample(self, sampler: Any, ctx: Any) -> int:  # pragma: no cover - typing stub
        """Sample the next token from the logits of the last decoded entry."""
