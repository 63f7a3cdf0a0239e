"""Inference concurrency layer.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> classification pipeline
                    <- result back on the event loop -> ClassificationLabel queue -> label text

Requests beyond the semaphore limit queue with a 5s timeout, then get 503.

The observed label is only ever written by one consumer task running on the
event loop. Producers post ``(generation, text)`` messages; a message from
any generation older than the newest request holding a worker slot is dropped,
so the latest admitted request wins no matter which worker finishes last. A
request that times out waiting for a slot never takes a generation.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

from foodsnap.display import INITIAL_LABEL

if TYPE_CHECKING:
    from collections.abc import Callable

    from foodsnap.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEMAPHORE_TIMEOUT_SECONDS: float = 5.0


class InferencePool:
    """Manages the semaphore and thread pool for classification requests."""

    def __init__(self, settings: Settings) -> None:
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="foodsnap-inference",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(
        self,
        func: Callable[..., T],
        *args: object,
        on_acquire: Callable[[], object] | None = None,
    ) -> T:
        """Run a synchronous function on a worker thread and await its result.

        ``on_acquire`` is called on the event loop once a worker slot is held,
        before ``func`` is dispatched. It is not called if admission times out.

        Raises:
            TimeoutError: If no worker slot frees up within the timeout.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=SEMAPHORE_TIMEOUT_SECONDS)
        except TimeoutError:
            logger.warning("No inference slot free after %.1fs", SEMAPHORE_TIMEOUT_SECONDS)
            raise
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        with self._counter_lock:
            self._active_count += 1
        try:
            if on_acquire is not None:
                on_acquire()
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._semaphore.release()
            with self._counter_lock:
                self._active_count -= 1

    @property
    def active_count(self) -> int:
        """Number of currently running classifications."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a worker slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)


class ClassificationLabel:
    """The single observed display string, updated by message passing."""

    def __init__(self, initial: str = INITIAL_LABEL) -> None:
        self._text = initial
        self._generations = itertools.count(1)
        self._latest = 0
        self._updates: asyncio.Queue[tuple[int, str]] = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._consumer: asyncio.Task[None] | None = None

    @property
    def text(self) -> str:
        return self._text

    @property
    def latest_generation(self) -> int:
        return self._latest

    def start(self) -> None:
        """Start the consumer task on the running event loop."""
        if self._consumer is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._consumer = self._loop.create_task(self._consume(), name="foodsnap-label")

    async def stop(self) -> None:
        """Stop the consumer task; pending updates are discarded."""
        if self._consumer is None:
            return
        self._consumer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._consumer
        self._consumer = None

    def begin_request(self) -> int:
        """Reserve the generation number for a newly started request."""
        self._latest = next(self._generations)
        return self._latest

    def post(self, generation: int, text: str) -> None:
        """Queue a label update. Safe to call from any thread."""
        if self._loop is None:
            raise RuntimeError("ClassificationLabel.start() has not been called")
        self._loop.call_soon_threadsafe(self._updates.put_nowait, (generation, text))

    async def flush(self) -> None:
        """Wait until every posted update has been applied or dropped."""
        # Let pending call_soon_threadsafe puts land in the queue first.
        await asyncio.sleep(0)
        await self._updates.join()

    async def _consume(self) -> None:
        while True:
            generation, text = await self._updates.get()
            try:
                if generation == self._latest:
                    self._text = text
                else:
                    logger.debug("Dropped label update from stale request %d (latest %d)", generation, self._latest)
            finally:
                self._updates.task_done()
