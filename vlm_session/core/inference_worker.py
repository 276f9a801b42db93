"""Dedicated worker thread that serializes every session operation.

A **single** background thread owns all native model work (loading,
tokenization, prompt evaluation, the sample/decode loop, teardown). Callers
submit closures through a bounded queue and get the result back as an
``asyncio`` future, an async generator, or a ``concurrent.futures.Future``
for synchronous callers. Because there is exactly one consumer, operations
on the session never interleave.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Iterable
from concurrent.futures import Future
import queue
import threading
from threading import Thread
from typing import Any, Callable

from loguru import logger

from ..const import DEFAULT_QUEUE_SIZE, DEFAULT_QUEUE_TIMEOUT

# Sentinel object used to signal the end of a stream.
_SENTINEL = object()

# Work item that makes the thread loop exit once everything before it ran.
_STOP = object()


def _safe_set_result(future: asyncio.Future[Any], result: Any) -> None:
    """Set *result* on *future* unless the caller already gave up on it."""
    if not future.done():
        future.set_result(result)


def _safe_set_exception(future: asyncio.Future[Any], exc: BaseException) -> None:
    """Set *exc* on *future* unless the caller already gave up on it."""
    if not future.done():
        future.set_exception(exc)


class InferenceWorker:
    """Single dedicated thread for running blocking session operations.

    Usage
    -----
    >>> worker = InferenceWorker(queue_size=16, timeout=300.0)
    >>> worker.start()
    >>> # from async code
    >>> text = await worker.submit(session.generate, "describe", 64)
    >>> async for fragment in worker.submit_stream(session.generate_tokens, "describe", 64):
    ...     print(fragment)
    >>> # from sync code
    >>> future = worker.submit_sync(session.reset_conversation)
    >>> future.result()
    >>> worker.stop()
    """

    def __init__(
        self,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        timeout: float = DEFAULT_QUEUE_TIMEOUT,
    ) -> None:
        """Initialize the inference worker.

        Parameters
        ----------
        queue_size : int
            Maximum number of pending work items. When full, the submit
            methods raise ``asyncio.QueueFull``.
        timeout : float
            Timeout in seconds for awaiting non-streaming results via
            ``submit``.
        """
        self._queue_size = queue_size
        self._timeout = timeout
        self._work_queue: queue.Queue[Any] = queue.Queue(maxsize=queue_size)
        self._thread: Thread | None = None
        self._running = False

        # Stats, protected by ``_stats_lock``.
        self._stats_lock = threading.Lock()
        self._active = False
        self._completed_count = 0
        self._failed_count = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the worker thread.

        Safe to call multiple times; subsequent calls are no-ops.
        """
        if self._running:
            return
        self._running = True
        self._thread = Thread(target=self._run, daemon=True, name="inference-worker")
        self._thread.start()
        logger.info("Inference worker thread started")

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop the worker thread after the already queued work has run.

        Blocks until the thread finishes or ``timeout`` seconds pass.
        """
        if not self._running:
            return
        self._running = False
        if self._thread is not None:
            self._work_queue.put(_STOP)
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Inference worker did not stop within the timeout")
            self._thread = None
        logger.info("Inference worker thread stopped")

    def is_worker_thread(self) -> bool:
        """Return True when called from the worker thread itself."""
        return self._thread is not None and threading.current_thread() is self._thread

    # ------------------------------------------------------------------
    # Internal thread loop
    # ------------------------------------------------------------------

    def _run(self) -> None:
        """Background thread loop: execute work items sequentially."""
        while True:
            work = self._work_queue.get()
            if work is _STOP:
                break

            with self._stats_lock:
                self._active = True
            try:
                work()
            except Exception:
                # Work closures forward their own errors; anything reaching
                # here is a bug in a closure and must not kill the thread.
                logger.exception("Unhandled error in inference worker")
            finally:
                with self._stats_lock:
                    self._active = False

    def _enqueue(self, work: Callable[[], None]) -> None:
        if not self._running:
            raise RuntimeError("Inference worker is not running")
        try:
            self._work_queue.put_nowait(work)
        except queue.Full:
            raise asyncio.QueueFull("Inference queue is full") from None

    # ------------------------------------------------------------------
    # Stats helpers
    # ------------------------------------------------------------------

    def _inc_completed(self) -> None:
        with self._stats_lock:
            self._completed_count += 1

    def _inc_failed(self) -> None:
        with self._stats_lock:
            self._failed_count += 1

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Submit a blocking callable and ``await`` its result.

        Parameters
        ----------
        func : Callable
            The blocking function to execute on the worker thread.
        *args : Any
            Positional arguments forwarded to *func*.
        **kwargs : Any
            Keyword arguments forwarded to *func*.

        Returns
        -------
        Any
            The return value of *func*.

        Raises
        ------
        asyncio.QueueFull
            If the work queue has reached its capacity.
        TimeoutError
            If the result is not available within the configured timeout.
        Exception
            Any exception raised by *func* is re-raised in the caller.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()

        def _work() -> None:
            try:
                result = func(*args, **kwargs)
            except Exception as exc:
                loop.call_soon_threadsafe(_safe_set_exception, future, exc)
                self._inc_failed()
            else:
                loop.call_soon_threadsafe(_safe_set_result, future, result)
                self._inc_completed()

        self._enqueue(_work)

        try:
            return await asyncio.wait_for(future, timeout=self._timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(f"Inference timed out after {self._timeout}s") from None

    def submit_stream(
        self,
        func: Callable[..., Iterable[Any]],
        *args: Any,
        **kwargs: Any,
    ) -> AsyncGenerator[Any, None]:
        """Submit a callable returning a sync iterable, yielding items asynchronously.

        The iterable is consumed entirely on the worker thread; each item is
        forwarded through an ``asyncio.Queue`` so the event loop stays free
        between items.

        Raises
        ------
        asyncio.QueueFull
            If the work queue has reached its capacity.
        """
        loop = asyncio.get_running_loop()
        token_queue: asyncio.Queue[Any] = asyncio.Queue()

        def _work() -> None:
            try:
                for item in func(*args, **kwargs):
                    loop.call_soon_threadsafe(token_queue.put_nowait, item)
            except Exception as exc:
                loop.call_soon_threadsafe(token_queue.put_nowait, exc)
                self._inc_failed()
            else:
                loop.call_soon_threadsafe(token_queue.put_nowait, _SENTINEL)
                self._inc_completed()

        self._enqueue(_work)
        return self._read_stream(token_queue)

    def submit_sync(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Future[Any]:
        """Submit a blocking callable from synchronous code.

        Returns
        -------
        concurrent.futures.Future
            Resolved with the return value of *func* or the exception it raised.
        """
        future: Future[Any] = Future()

        def _work() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                result = func(*args, **kwargs)
            except Exception as exc:
                future.set_exception(exc)
                self._inc_failed()
            else:
                future.set_result(result)
                self._inc_completed()

        self._enqueue(_work)
        return future

    def get_stats(self) -> dict[str, Any]:
        """Get current worker and queue statistics.

        Returns
        -------
        dict[str, Any]
            - ``running`` – whether the worker thread is accepting work.
            - ``queue_size`` – number of items waiting in the queue.
            - ``max_queue_size`` – maximum queue capacity.
            - ``active_requests`` – ``1`` if currently processing, else ``0``.
            - ``completed_requests`` – total successful completions.
            - ``failed_requests`` – total failed work items.
        """
        with self._stats_lock:
            return {
                "running": self._running,
                "queue_size": self._work_queue.qsize(),
                "max_queue_size": self._queue_size,
                "active_requests": 1 if self._active else 0,
                "completed_requests": self._completed_count,
                "failed_requests": self._failed_count,
            }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _read_stream(token_queue: asyncio.Queue[Any]) -> AsyncGenerator[Any, None]:
        """Consume items from *token_queue* as an async generator.

        Raises
        ------
        Exception
            If the worker thread forwarded an exception.
        """
        while True:
            item = await token_queue.get()
            if item is _SENTINEL:
                break
            if isinstance(item, BaseException):
                raise item
            yield item
