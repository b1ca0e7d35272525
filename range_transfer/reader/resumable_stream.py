"""Download stream that survives silent truncation of the underlying response.

A response body can end cleanly before all promised bytes arrived (the
server or a proxy dropped the connection in a way the HTTP layer reports as
a normal end). ResumableRangeStream tracks the expected end offset and, when
that happens, asks for a fresh range starting at the first undelivered byte
and splices it in. Callers see one gap-free, duplicate-free byte stream.
"""

from __future__ import annotations

import logging
from types import TracebackType
from typing import AsyncIterable
from typing import AsyncIterator
from typing import Awaitable
from typing import Callable
from typing import Optional
from typing import Type
from typing import Union

from range_transfer.cancellation import CancellationSignal
from range_transfer.cancellation import run_cancellable
from range_transfer.config import DEFAULT_MAX_DOWNLOAD_RETRY_REQUESTS
from range_transfer.errors import SilentTruncationError
from range_transfer.errors import ValidationError
from range_transfer.models import ProgressCallback
from range_transfer.models import TransferProgress
from range_transfer.utils import maybe_await
from range_transfer.utils import next_chunk


logger = logging.getLogger(__name__)

# reopen(offset) returns a stream covering [offset, start + length).
ReopenFactory = Callable[[int], Union[AsyncIterable[bytes], Awaitable[AsyncIterable[bytes]]]]


class ResumableRangeStream:
    def __init__(
        self,
        initial_stream: AsyncIterable[bytes],
        start: int,
        length: int,
        reopen: ReopenFactory,
        max_retries: int = DEFAULT_MAX_DOWNLOAD_RETRY_REQUESTS,
        *,
        cancel: Optional[CancellationSignal] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> None:
        if start < 0:
            raise ValidationError(f"start must be >= 0, got {start}")
        if length < 0:
            raise ValidationError(f"length must be >= 0, got {length}")
        if max_retries < 0:
            raise ValidationError(f"max_retries must be >= 0, got {max_retries}")

        self.start = start
        self.end = start + length
        self.position = start
        self.retries_remaining = max_retries
        self.reopen_count = 0
        self._reopen = reopen
        self._cancel = cancel
        self._progress = progress
        self._stream: Optional[AsyncIterator[bytes]] = initial_stream.__aiter__()

    @property
    def exhausted(self) -> bool:
        return self.position >= self.end

    def __aiter__(self) -> ResumableRangeStream:
        return self

    async def __anext__(self) -> bytes:
        while True:
            if self.exhausted or self._stream is None:
                await self.aclose()
                raise StopAsyncIteration
            if self._cancel is not None and self._cancel.cancelled:
                await self.aclose()
                self._cancel.raise_if_cancelled()

            try:
                piece = await run_cancellable(next_chunk(self._stream), self._cancel)
            except BaseException:
                # Genuine transport failures are the transport's to retry.
                await self.aclose()
                raise

            if piece is None:
                await self._resume()
                continue
            if not piece:
                continue

            remaining = self.end - self.position
            if len(piece) > remaining:
                logger.debug(f"Trimming {len(piece) - remaining} bytes past range end {self.end}")
                piece = piece[:remaining]
            self.position += len(piece)
            if self._progress is not None:
                self._progress(TransferProgress(loaded_bytes=self.position - self.start))
            return bytes(piece)

    async def _resume(self) -> None:
        if self.retries_remaining <= 0:
            await self.aclose()
            logger.error(
                f"Download stream ended at {self.position} before range end {self.end}; "
                f"retry budget exhausted after {self.reopen_count} reopen(s)"
            )
            raise SilentTruncationError(self.position, self.end)

        self.retries_remaining -= 1
        self.reopen_count += 1
        logger.warning(
            f"Download stream ended early at {self.position}/{self.end}, reopening "
            f"(retries left {self.retries_remaining})"
        )
        await self._close_stream()
        stream = await run_cancellable(maybe_await(self._reopen(self.position)), self._cancel)
        self._stream = stream.__aiter__()

    async def read_all(self) -> bytes:
        """Drain the remaining bytes of the range into one bytes object."""
        return b"".join([piece async for piece in self])

    async def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()

    async def aclose(self) -> None:
        await self._close_stream()

    async def __aenter__(self) -> ResumableRangeStream:
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        await self.aclose()


def open_resumable_download(
    start: int,
    length: int,
    initial_stream: AsyncIterable[bytes],
    reopen: ReopenFactory,
    max_retries: int = DEFAULT_MAX_DOWNLOAD_RETRY_REQUESTS,
    *,
    cancel: Optional[CancellationSignal] = None,
    progress: Optional[ProgressCallback] = None,
) -> ResumableRangeStream:
    return ResumableRangeStream(
        initial_stream, start, length, reopen, max_retries, cancel=cancel, progress=progress
    )
