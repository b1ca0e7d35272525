"""Streaming producer/consumer pipeline over a fixed pool of reusable buffers.

The read side pulls pieces from an async byte source into fixed-size buffers;
each filled buffer is dispatched to an outgoing handler through a Batch with
its own concurrency limit. The source is only read while a free buffer is
available, so memory stays bounded by max_buffers * buffer_size.
"""

from __future__ import annotations

import asyncio
import enum
import functools
import logging
from collections import deque
from typing import AsyncIterable
from typing import AsyncIterator
from typing import Awaitable
from typing import Callable
from typing import Optional

from range_transfer.cancellation import CancellationSignal
from range_transfer.cancellation import run_cancellable
from range_transfer.concurrency.batch import Batch
from range_transfer.errors import CancellationError
from range_transfer.errors import ValidationError
from range_transfer.utils import maybe_await
from range_transfer.utils import next_chunk


logger = logging.getLogger(__name__)

# The handler must not keep a reference to the memoryview after it returns:
# the underlying buffer is reused for later data.
OutgoingHandler = Callable[[memoryview, int], Awaitable[None]]


class SlotState(enum.Enum):
    FREE = "free"
    FILLING = "filling"
    FULL = "full"
    DISPATCHED = "dispatched"


class BufferSlot:
    """A fixed-capacity buffer and the destination offset of its first byte."""

    def __init__(self, capacity: int) -> None:
        self.capacity = capacity
        self.data = bytearray(capacity)
        self.size = 0
        self.offset = 0
        self.state = SlotState.FREE

    @property
    def full(self) -> bool:
        return self.size >= self.capacity

    def write(self, piece: memoryview) -> int:
        """Copy as much of `piece` as fits and return the number of bytes taken."""
        n = min(len(piece), self.capacity - self.size)
        self.data[self.size : self.size + n] = piece[:n]
        self.size += n
        return n

    def view(self) -> memoryview:
        return memoryview(self.data)[: self.size]


class BufferScheduler:
    def __init__(
        self,
        source: AsyncIterable[bytes],
        buffer_size: int,
        max_buffers: int,
        outgoing_handler: OutgoingHandler,
        concurrency: int,
        *,
        cancel: Optional[CancellationSignal] = None,
    ) -> None:
        if buffer_size <= 0:
            raise ValidationError(f"buffer_size must be > 0, got {buffer_size}")
        if max_buffers <= 0:
            raise ValidationError(f"max_buffers must be > 0, got {max_buffers}")
        if concurrency < 0:
            raise ValidationError(f"concurrency cannot be less than 0, got {concurrency}")

        self.source = source
        self.buffer_size = buffer_size
        self.max_buffers = max_buffers
        self.outgoing_handler = outgoing_handler
        self.concurrency = concurrency
        self._cancel = cancel

        self._slots: list[BufferSlot] = []
        self._free: deque[BufferSlot] = deque()
        self._slot_freed = asyncio.Event()
        self._handler_failed = False
        self._batch: Optional[Batch] = None

        self.bytes_read = 0
        self.dispatched_buffers = 0
        self.peak_outstanding_buffers = 0

    @property
    def allocated_buffers(self) -> int:
        return len(self._slots)

    @property
    def outstanding_buffers(self) -> int:
        return sum(1 for slot in self._slots if slot.state is not SlotState.FREE)

    async def run(self) -> None:
        """Consume the whole source and wait until every dispatched buffer was handled.

        Raises:
            The first handler error, source error or CancellationError.
        """
        batch = Batch(self.concurrency, cancel=self._cancel, keep_open=True)
        self._batch = batch
        batch.start()

        try:
            await self._read_source()
        except asyncio.CancelledError:
            batch.abort(CancellationError("Stream scheduling was cancelled"))
            raise
        except Exception as exc:
            logger.debug(f"Stream source failed after {self.bytes_read} bytes: {exc!r}")
            batch.record_error(exc)
        finally:
            batch.close()

        await batch.wait()
        logger.debug(
            f"Buffer scheduler finished: bytes={self.bytes_read} buffers={self.dispatched_buffers} "
            f"allocated={self.allocated_buffers} peak_outstanding={self.peak_outstanding_buffers}"
        )

    def _stopped(self) -> bool:
        if self._handler_failed:
            return True
        if self._cancel is not None and self._cancel.cancelled:
            return True
        return self._batch is not None and (self._batch.failed or self._batch.finished)

    async def _read_source(self) -> None:
        iterator: AsyncIterator[bytes] = self.source.__aiter__()
        slot: Optional[BufferSlot] = None
        try:
            while not self._stopped():
                piece = await run_cancellable(next_chunk(iterator), self._cancel)
                if piece is None:
                    break
                view = memoryview(piece)
                while len(view) and not self._stopped():
                    if slot is None:
                        slot = await self._acquire_slot()
                        if slot is None:
                            break
                    taken = slot.write(view)
                    view = view[taken:]
                    self.bytes_read += taken
                    if slot.full:
                        self._dispatch(slot)
                        slot = None

            if slot is not None:
                if slot.size and not self._stopped():
                    self._dispatch(slot)
                else:
                    self._release(slot)
                slot = None
        finally:
            if slot is not None:
                self._release(slot)
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _acquire_slot(self) -> Optional[BufferSlot]:
        """Hand out a FREE slot for filling, suspending the read side while none exist."""
        while not self._stopped():
            if self._free:
                slot = self._free.popleft()
            elif len(self._slots) < self.max_buffers:
                slot = BufferSlot(self.buffer_size)
                self._slots.append(slot)
            else:
                self._slot_freed.clear()
                await run_cancellable(self._slot_freed.wait(), self._cancel)
                continue

            slot.state = SlotState.FILLING
            slot.size = 0
            slot.offset = self.bytes_read
            self.peak_outstanding_buffers = max(self.peak_outstanding_buffers, self.outstanding_buffers)
            return slot
        return None

    def _dispatch(self, slot: BufferSlot) -> None:
        slot.state = SlotState.FULL
        assert self._batch is not None
        if self._stopped():
            self._release(slot)
            return
        self.dispatched_buffers += 1
        self._batch.add_operation(functools.partial(self._handle, slot))

    async def _handle(self, slot: BufferSlot) -> None:
        slot.state = SlotState.DISPATCHED
        try:
            await maybe_await(self.outgoing_handler(slot.view(), slot.offset))
        except BaseException:
            # Flag before releasing so the woken reader does not refill.
            self._handler_failed = True
            raise
        finally:
            self._release(slot)

    def _release(self, slot: BufferSlot) -> None:
        slot.state = SlotState.FREE
        slot.size = 0
        self._free.append(slot)
        self._slot_freed.set()


async def schedule_stream(
    source: AsyncIterable[bytes],
    buffer_size: int,
    max_buffers: int,
    outgoing_handler: OutgoingHandler,
    dispatch_concurrency: int,
    *,
    cancel: Optional[CancellationSignal] = None,
) -> None:
    """Drive `source` through a BufferScheduler and raise its first failure, if any."""
    scheduler = BufferScheduler(
        source, buffer_size, max_buffers, outgoing_handler, dispatch_concurrency, cancel=cancel
    )
    await scheduler.run()
