import os
from typing import AsyncIterator

import pytest

from range_transfer.cancellation import CancellationSignal
from range_transfer.errors import CancellationError
from range_transfer.errors import SilentTruncationError
from range_transfer.errors import TransportError
from range_transfer.errors import ValidationError
from range_transfer.models import TransferProgress
from range_transfer.reader.resumable_stream import ResumableRangeStream
from range_transfer.reader.resumable_stream import open_resumable_download


class _Source:
    """Serves slices of `data` as streams, recording reopen offsets and closes."""

    def __init__(self, data: bytes, piece: int = 64) -> None:
        self.data = data
        self.piece = piece
        self.reopens: list[int] = []
        self.closed = 0

    async def stream(self, start: int, stop: int) -> AsyncIterator[bytes]:
        try:
            pos = start
            while pos < stop:
                step = min(self.piece, stop - pos)
                yield self.data[pos : pos + step]
                pos += step
        finally:
            self.closed += 1

    async def reopen(self, offset: int) -> AsyncIterator[bytes]:
        self.reopens.append(offset)
        return self.stream(offset, len(self.data))


@pytest.mark.asyncio
async def test_silent_truncation_is_resumed_transparently():
    data = os.urandom(1000)
    source = _Source(data)
    stream = ResumableRangeStream(source.stream(0, 500), 0, 1000, source.reopen, max_retries=5)

    result = await stream.read_all()

    assert result == data
    assert source.reopens == [500]
    assert stream.reopen_count == 1
    assert stream.retries_remaining == 4
    assert stream.position == 1000
    assert stream.exhausted


@pytest.mark.asyncio
async def test_truncation_without_retry_budget_reports_position():
    data = os.urandom(1000)
    source = _Source(data)
    stream = ResumableRangeStream(source.stream(0, 500), 0, 1000, source.reopen, max_retries=0)

    received = bytearray()
    with pytest.raises(SilentTruncationError) as exc_info:
        async for piece in stream:
            received.extend(piece)

    assert exc_info.value.position == 500
    assert bytes(received) == data[:500]
    assert source.reopens == []


@pytest.mark.asyncio
async def test_repeated_truncation_consumes_budget_until_exhausted():
    data = os.urandom(300)
    reopens: list[int] = []

    async def truncated(start: int) -> AsyncIterator[bytes]:
        yield data[start : start + 50]

    async def reopen(offset: int) -> AsyncIterator[bytes]:
        reopens.append(offset)
        return truncated(offset)

    stream = ResumableRangeStream(truncated(0), 0, 300, reopen, max_retries=2)

    with pytest.raises(SilentTruncationError) as exc_info:
        await stream.read_all()

    assert reopens == [50, 100]
    assert exc_info.value.position == 150
    assert exc_info.value.end == 300


@pytest.mark.asyncio
async def test_absolute_offsets_used_for_reopen_and_errors():
    data = os.urandom(2000)
    source = _Source(data)
    stream = open_resumable_download(1000, 600, source.stream(1000, 1200), source.reopen, 1)

    # reopen serves to the end of data; the stream must stop at 1600.
    result = await stream.read_all()

    assert result == data[1000:1600]
    assert source.reopens == [1200]


@pytest.mark.asyncio
async def test_transport_error_propagates_without_using_retries():
    reopens: list[int] = []

    async def broken() -> AsyncIterator[bytes]:
        yield b"a" * 10
        raise TransportError("connection reset")

    async def reopen(offset: int) -> AsyncIterator[bytes]:
        reopens.append(offset)
        raise AssertionError("must not reopen")

    stream = ResumableRangeStream(broken(), 0, 100, reopen, max_retries=3)

    with pytest.raises(TransportError):
        await stream.read_all()

    assert reopens == []
    assert stream.retries_remaining == 3
    assert stream.position == 10


@pytest.mark.asyncio
async def test_bytes_beyond_range_end_are_dropped():
    async def oversized() -> AsyncIterator[bytes]:
        yield b"0123456789"
        yield b"abcdef"

    async def reopen(offset: int) -> AsyncIterator[bytes]:
        raise AssertionError("must not reopen")

    stream = ResumableRangeStream(oversized(), 0, 12, reopen, max_retries=0)

    assert await stream.read_all() == b"0123456789ab"


@pytest.mark.asyncio
async def test_progress_reports_cumulative_bytes():
    data = os.urandom(256)
    source = _Source(data, piece=100)
    events: list[TransferProgress] = []
    stream = ResumableRangeStream(
        source.stream(0, 256), 0, 256, source.reopen, max_retries=0, progress=events.append
    )

    await stream.read_all()

    assert [e.loaded_bytes for e in events] == [100, 200, 256]


@pytest.mark.asyncio
async def test_underlying_streams_are_closed():
    data = os.urandom(400)
    source = _Source(data)
    async with ResumableRangeStream(source.stream(0, 200), 0, 400, source.reopen, max_retries=1) as stream:
        assert await stream.read_all() == data

    assert source.closed == 2


@pytest.mark.asyncio
async def test_zero_length_range_ends_immediately():
    source = _Source(b"")
    stream = ResumableRangeStream(source.stream(0, 0), 10, 0, source.reopen, max_retries=0)
    assert await stream.read_all() == b""


@pytest.mark.asyncio
async def test_cancelled_signal_stops_reading():
    data = os.urandom(100)
    source = _Source(data)
    cancel = CancellationSignal()
    cancel.cancel("user aborted")
    stream = ResumableRangeStream(source.stream(0, 100), 0, 100, source.reopen, max_retries=1, cancel=cancel)

    with pytest.raises(CancellationError, match="user aborted"):
        await stream.read_all()


@pytest.mark.asyncio
async def test_cancellation_mid_read_closes_underlying_stream():
    data = os.urandom(300)
    source = _Source(data, piece=100)
    cancel = CancellationSignal()
    stream = ResumableRangeStream(source.stream(0, 300), 0, 300, source.reopen, max_retries=1, cancel=cancel)

    assert await stream.__anext__() == data[:100]
    cancel.cancel("user aborted")

    with pytest.raises(CancellationError, match="user aborted"):
        await stream.__anext__()

    assert source.closed == 1
    assert stream.position == 100


@pytest.mark.parametrize("start,length,retries", [(-1, 10, 0), (0, -1, 0), (0, 10, -1)])
def test_invalid_arguments(start, length, retries):
    async def reopen(offset: int) -> AsyncIterator[bytes]:
        raise AssertionError

    with pytest.raises(ValidationError):
        ResumableRangeStream(_Source(b"").stream(0, 0), start, length, reopen, retries)
