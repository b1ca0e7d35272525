"""Bounded-concurrency executor for independent asynchronous operations."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Iterable
from typing import Optional

from range_transfer.cancellation import CancellationSignal
from range_transfer.errors import CancellationError
from range_transfer.errors import ValidationError
from range_transfer.utils import maybe_await


logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]


class Batch:
    """Run queued operations with at most `concurrency` of them in flight.

    The first failure (in completion order) stops new operations from
    starting; operations already running are awaited and their own failures
    are discarded. `run()` then raises that first failure. A fired
    cancellation signal aborts running operations and always wins over any
    other recorded error.
    """

    def __init__(
        self,
        concurrency: int = 5,
        *,
        cancel: Optional[CancellationSignal] = None,
        keep_open: bool = False,
    ) -> None:
        if concurrency < 0:
            raise ValidationError(f"concurrency cannot be less than 0, got {concurrency}")
        # 0 behaves as serial execution so there is always one slot.
        self.concurrency = max(1, int(concurrency))
        self._cancel = cancel
        self._queue: deque[Operation] = deque()
        self._active: set[asyncio.Task] = set()
        self._error: Optional[BaseException] = None
        self._done: Optional[asyncio.Future] = None
        self._started = False
        self._watcher: Optional[asyncio.Task] = None
        # keep_open batches only complete after close(), so producers can keep adding work.
        self._open = keep_open
        self.peak_active = 0
        self.started_operations = 0

    @property
    def active(self) -> int:
        return len(self._active)

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def failed(self) -> bool:
        return self._error is not None

    @property
    def finished(self) -> bool:
        return self._done is not None and self._done.done()

    def add_operation(self, operation: Operation) -> None:
        """Queue a zero-argument operation; allowed before and while `run()` is in progress."""
        if self.finished:
            raise RuntimeError("Cannot add operations to a batch that has already completed")
        self._queue.append(operation)
        if self._started:
            self._pump()

    def close(self) -> None:
        """Mark a keep_open batch as complete once its queue drains."""
        self._open = False
        if self._started:
            self._pump()

    def record_error(self, exc: BaseException) -> None:
        """Fail the batch from outside, e.g. when the producer feeding it broke."""
        self._record_error(exc)
        if self._started:
            self._pump()

    def abort(self, exc: BaseException) -> None:
        """Record `exc` ahead of any other error and cancel running operations."""
        if self.finished:
            return
        self._error = exc
        for task in list(self._active):
            task.cancel()
        self._pump()

    async def run(self) -> None:
        """Start queued operations and wait for all of them to settle."""
        self.start()
        await self.wait()

    def start(self) -> None:
        """Start queued operations without waiting; must be called inside a running loop."""
        if self._started:
            raise RuntimeError("Batch.run() can only be called once")
        self._started = True
        self._done = asyncio.get_running_loop().create_future()

        if self._cancel is not None:
            if self._cancel.cancelled:
                self._error = CancellationError(self._cancel.reason or "The operation was cancelled")
            else:
                self._watcher = asyncio.ensure_future(self._watch_cancel(self._cancel))

        logger.debug(f"Batch starting: operations={len(self._queue)} concurrency={self.concurrency}")
        self._pump()

    async def wait(self) -> None:
        """Wait until the started batch settles and raise its first error, if any."""
        if self._done is None:
            raise RuntimeError("Batch.wait() called before start()")
        watcher = self._watcher
        try:
            await asyncio.shield(self._done)
        except asyncio.CancelledError:
            for task in list(self._active):
                task.cancel()
            raise
        finally:
            if watcher is not None and not watcher.done():
                watcher.cancel()
            self._queue.clear()

        if self._error is not None:
            raise self._error
        logger.debug(f"Batch finished: operations={self.started_operations} peak_active={self.peak_active}")

    async def _watch_cancel(self, cancel: CancellationSignal) -> None:
        await cancel.wait()
        if self.finished:
            return
        logger.debug(f"Batch cancelled: active={len(self._active)} pending={len(self._queue)}")
        self.abort(CancellationError(cancel.reason or "The operation was cancelled"))

    async def _invoke(self, operation: Operation) -> Any:
        # Calling inside the task turns synchronous raises into task failures.
        return await maybe_await(operation())

    def _pump(self) -> None:
        if self._done is None or self._done.done():
            return
        while self._queue and len(self._active) < self.concurrency and self._error is None:
            operation = self._queue.popleft()
            task = asyncio.ensure_future(self._invoke(operation))
            self._active.add(task)
            self.started_operations += 1
            self.peak_active = max(self.peak_active, len(self._active))
            task.add_done_callback(self._on_done)

        if not self._active and ((not self._queue and not self._open) or self._error is not None):
            self._done.set_result(None)

    def _on_done(self, task: asyncio.Task) -> None:
        self._active.discard(task)
        if task.cancelled():
            if self._error is None:
                self._error = CancellationError("Operation task was cancelled")
        else:
            exc = task.exception()
            if exc is not None:
                self._record_error(exc)
        self._pump()

    def _record_error(self, exc: BaseException) -> None:
        if self._error is None:
            logger.debug(f"Batch operation failed, no new operations will start: {exc!r}")
            self._error = exc
        else:
            logger.debug(f"Discarding error from in-flight operation after first failure: {exc!r}")


async def run_batch(
    operations: Iterable[Operation],
    concurrency: int = 5,
    *,
    cancel: Optional[CancellationSignal] = None,
) -> None:
    """Run `operations` through a fresh Batch and raise the first failure, if any."""
    batch = Batch(concurrency, cancel=cancel)
    for operation in operations:
        batch.add_operation(operation)
    await batch.run()
