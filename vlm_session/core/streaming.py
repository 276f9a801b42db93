"""Streaming bridge between the worker thread and consumer callbacks.

Fragments are produced on the inference worker thread; consumers may live on
a UI thread or an event loop. The bridge owns the callbacks of every in-flight
call in a registry keyed by call id, so nothing a consumer hands in can be
collected before its completion callback ran. Each entry is removed exactly
once, when the call completes.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
import itertools
import threading
from typing import Callable

from loguru import logger

TokenCallback = Callable[[str], None]
CompletionCallback = Callable[[BaseException | None], None]


@dataclass
class StreamCall:
    """Registry entry holding the consumer callbacks of one generation call."""

    call_id: int
    on_token: TokenCallback
    on_complete: CompletionCallback | None = None
    fragments: int = 0


def format_error_fragment(exc: BaseException) -> str:
    return f"Error: {exc}"


class StreamingBridge:
    """Deliver fragments in order and exactly one completion per call.

    Callbacks are dispatched FIFO on a dedicated single-thread executor, or on
    ``loop`` through ``call_soon_threadsafe`` when one is given. Either way the
    producer never waits for the consumer.

    Parameters
    ----------
    loop : asyncio.AbstractEventLoop | None, optional
        Event loop that should run the callbacks.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop
        self._executor: ThreadPoolExecutor | None = None
        self._dispatch_thread: int | None = None
        if loop is None:
            self._executor = ThreadPoolExecutor(
                max_workers=1,
                thread_name_prefix="stream-callbacks",
                initializer=self._mark_dispatch_thread,
            )
        self._calls: dict[int, StreamCall] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(self, on_token: TokenCallback, on_complete: CompletionCallback | None = None) -> int:
        """Take ownership of a call's callbacks and return its call id."""
        with self._lock:
            call_id = next(self._ids)
            self._calls[call_id] = StreamCall(call_id, on_token, on_complete)
        return call_id

    def is_active(self, call_id: int) -> bool:
        with self._lock:
            return call_id in self._calls

    @property
    def active_calls(self) -> int:
        with self._lock:
            return len(self._calls)

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def emit(self, call_id: int, fragment: str) -> None:
        """Queue ``fragment`` for the token callback of ``call_id``."""
        with self._lock:
            call = self._calls.get(call_id)
        if call is None:
            raise KeyError(f"Unknown or completed stream call {call_id}")
        call.fragments += 1
        self._dispatch(call.on_token, fragment)

    def complete(self, call_id: int, error: BaseException | None = None) -> bool:
        """Queue the completion callback and release the registry entry.

        Returns False if the call had already completed.
        """
        with self._lock:
            call = self._calls.pop(call_id, None)
        if call is None:
            logger.warning(f"Stream call {call_id} already completed")
            return False
        if error is not None:
            logger.error(f"Stream call {call_id} failed after {call.fragments} fragments: {error}")
        if call.on_complete is not None:
            self._dispatch(call.on_complete, error)
        return True

    def run(self, call_id: int, fragments: Iterable[str]) -> None:
        """Drive ``fragments`` to the consumer of ``call_id``.

        A failure while producing is reported as an error fragment followed
        by the completion callback carrying the exception; it is not raised.
        """
        try:
            for fragment in fragments:
                self.emit(call_id, fragment)
        except Exception as exc:
            if self.is_active(call_id):
                self.emit(call_id, format_error_fragment(exc))
            self.complete(call_id, exc)
        else:
            self.complete(call_id)

    def fail(self, call_id: int, error: BaseException) -> None:
        """Complete a call that never started producing."""
        if self.is_active(call_id):
            self.emit(call_id, format_error_fragment(error))
        self.complete(call_id, error)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(self, callback: Callable[..., None], arg: object) -> None:
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._invoke, callback, arg)
        elif self._executor is not None:
            self._executor.submit(self._invoke, callback, arg)
        else:
            raise RuntimeError("Streaming bridge is closed")

    @staticmethod
    def _invoke(callback: Callable[..., None], arg: object) -> None:
        try:
            callback(arg)
        except Exception:
            logger.exception("Stream consumer callback raised")

    def flush(self, timeout: float | None = None) -> None:
        """Block until every callback queued so far has run.

        Only meaningful for executor dispatch; with an event loop the
        callbacks run when the loop gets to them.
        """
        if self._executor is not None:
            self._executor.submit(lambda: None).result(timeout=timeout)

    def close(self) -> None:
        """Run the queued callbacks and stop the dispatch thread.

        Called from a callback, the dispatch thread cannot join itself; the
        remaining callbacks still run, but ``close`` returns without waiting.
        """
        with self._lock:
            pending = list(self._calls)
        if pending:
            logger.warning(f"Closing streaming bridge with {len(pending)} calls still open")
        executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=threading.get_ident() != self._dispatch_thread)

    def _mark_dispatch_thread(self) -> None:
        self._dispatch_thread = threading.get_ident()
