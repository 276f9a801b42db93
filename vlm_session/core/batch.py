"""Reusable decode batch with a fixed capacity."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from ..models.errors import BatchCapacityError


@dataclass(frozen=True)
class BatchEntry:
    """One token scheduled for a decode step."""

    token: int
    pos: int
    seq_ids: tuple[int, ...]
    logits: bool


class DecodeBatch:
    """Fixed-capacity buffer of ``BatchEntry`` items, cleared every decode step.

    ``native`` is the runtime-owned buffer the entries are copied into at
    decode time; the session frees it through the runtime that created it.
    """

    def __init__(self, capacity: int, native: Any = None) -> None:
        if capacity <= 0:
            raise ValueError(f"Batch capacity must be positive, got {capacity}")
        self.capacity = capacity
        self.native = native
        self._entries: list[BatchEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> tuple[BatchEntry, ...]:
        return tuple(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def add(self, token: int, pos: int, seq_ids: Sequence[int], logits: bool) -> None:
        """Append a token entry.

        Raises
        ------
        BatchCapacityError
            If the batch already holds ``capacity`` entries.
        """
        if len(self._entries) >= self.capacity:
            raise BatchCapacityError(
                f"Decode batch overflow: capacity {self.capacity} reached"
            )
        self._entries.append(BatchEntry(token, pos, tuple(seq_ids), bool(logits)))
