"""Cooperative cancellation signal shared by every asynchronous transfer operation."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import weakref
from typing import Awaitable
from typing import Optional
from typing import TypeVar

from range_transfer.errors import CancellationError


logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationSignal:
    """One-shot signal that cancels every operation it was handed to.

    Signals can be chained with `child()`: cancelling a parent cancels all of
    its children, cancelling a child leaves the parent untouched.
    """

    def __init__(self, parent: Optional[CancellationSignal] = None) -> None:
        self._event = asyncio.Event()
        self._children: weakref.WeakSet[CancellationSignal] = weakref.WeakSet()
        self._timer: Optional[asyncio.TimerHandle] = None
        self.reason: Optional[str] = None
        if parent is not None:
            parent._children.add(self)
            if parent.cancelled:
                self.cancel(parent.reason)

    @classmethod
    def none(cls) -> CancellationSignal:
        """A signal nobody holds a reference to cancel."""
        return cls()

    @classmethod
    def timeout(cls, seconds: float) -> CancellationSignal:
        """A signal that cancels itself after `seconds`. Must be created inside a running loop."""
        signal = cls()
        loop = asyncio.get_running_loop()
        signal._timer = loop.call_later(seconds, signal.cancel, f"The operation timed out after {seconds}s")
        return signal

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[str] = None) -> None:
        if self._event.is_set():
            return
        self.reason = reason or "The operation was cancelled"
        self._event.set()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        logger.debug(f"Cancellation signalled: {self.reason}")
        for child in list(self._children):
            child.cancel(self.reason)

    def child(self) -> CancellationSignal:
        return CancellationSignal(parent=self)

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError(self.reason or "The operation was cancelled")


async def run_cancellable(awaitable: Awaitable[T], cancel: Optional[CancellationSignal]) -> T:
    """Await `awaitable`, aborting it as soon as `cancel` fires.

    Raises:
        CancellationError: the signal fired before the awaitable finished
    """
    if cancel is None:
        return await awaitable
    cancel.raise_if_cancelled()

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        if not waiter.done():
            waiter.cancel()

    if not task.done():
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await task
        cancel.raise_if_cancelled()
    return task.result()
