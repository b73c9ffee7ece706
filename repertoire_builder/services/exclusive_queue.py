# repertoire_builder/services/exclusive_queue.py
"""
Provides a single-flight task sequencer for stateful external resources.

A UCI engine process holds one search session at a time: two overlapping
queries against it corrupt each other's output. The same holds for the
reference database client during a build. The `ExclusiveQueue` funnels every
request for such a resource through one worker coroutine reading an
`asyncio.Queue`, so requests run strictly one at a time and in submission
order, whatever fan-out the caller performs.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, Tuple, TypeVar

import structlog

from repertoire_builder.exceptions import QueueClosedError
from repertoire_builder.utils import metrics

T = TypeVar("T")
TaskFactory = Callable[[], Awaitable[Any]]
_WorkItem = Tuple[TaskFactory, "asyncio.Future[Any]", float]

logger = structlog.get_logger(__name__)


class ExclusiveQueue:
    """
    An async context manager that runs submitted tasks one at a time, FIFO.

    Tasks are submitted as zero-argument factories returning an awaitable, so
    nothing starts executing before its turn.
    """

    def __init__(self, name: str = "exclusive"):
        self._name = name
        self._queue: "asyncio.Queue[Optional[_WorkItem]]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._is_closed = False

    async def __aenter__(self) -> "ExclusiveQueue":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def start(self) -> None:
        """Starts the worker coroutine. Idempotent."""
        if self._worker is None:
            self._is_closed = False
            self._worker = asyncio.create_task(self._work(), name=f"{self._name}-worker")

    async def run(self, factory: Callable[[], Awaitable[T]]) -> T:
        """
        Submits a task and waits for its result.

        Args:
            factory: A zero-argument callable returning the awaitable to run.

        Returns:
            Whatever the task returns; its exception propagates to the caller.

        Raises:
            QueueClosedError: If the queue is closed or closes before the task runs.
        """
        if self._is_closed:
            raise QueueClosedError(f"Queue '{self._name}' is closed.")
        if self._worker is None:
            self.start()
        future: "asyncio.Future[T]" = asyncio.get_running_loop().create_future()
        await self._queue.put((factory, future, time.perf_counter()))
        return await future

    async def _work(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is None:
                    return
                factory, future, submitted_at = item
                if future.done():
                    # The caller stopped waiting before the task's turn came.
                    continue
                metrics.QUEUE_WAIT_SECONDS.labels(queue=self._name).observe(time.perf_counter() - submitted_at)
                try:
                    result = await factory()
                except asyncio.CancelledError:
                    if not future.done():
                        future.cancel()
                    current = asyncio.current_task()
                    if current is not None and current.cancelling():
                        raise
                    # Only the task was cancelled; the worker keeps serving.
                except Exception as e:
                    if not future.done():
                        future.set_exception(e)
                else:
                    if not future.done():
                        future.set_result(result)
            finally:
                self._queue.task_done()

    async def close(self) -> None:
        """
        Stops the worker after the task currently running, if any.

        Tasks still waiting for their turn fail with `QueueClosedError`.
        """
        if self._is_closed:
            return
        self._is_closed = True
        pending = 0
        while not self._queue.empty():
            item = self._queue.get_nowait()
            self._queue.task_done()
            if item is None:
                continue
            _, future, _ = item
            if not future.done():
                future.set_exception(QueueClosedError(f"Queue '{self._name}' closed before the task ran."))
                pending += 1
        if pending:
            logger.warning("Exclusive queue closed with pending tasks.", queue=self._name, pending=pending)
        if self._worker is not None:
            await self._queue.put(None)
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None
