"""
High level transfer calls for one remote object.

RangeFileClient splits whole-object uploads and downloads into range-sized
operations and drives them through Batch, BufferScheduler and
ResumableRangeStream on top of a RangeTransport.
"""

import asyncio
import functools
import logging
import math
import os
from pathlib import Path
from typing import AsyncIterable
from typing import AsyncIterator
from typing import Awaitable
from typing import Callable
from typing import Optional
from typing import Union

from range_transfer.cancellation import CancellationSignal
from range_transfer.concurrency.batch import Batch
from range_transfer.concurrency.buffer_scheduler import BufferScheduler
from range_transfer.config import FILE_MAX_SIZE_BYTES
from range_transfer.config import FILE_RANGE_MAX_SIZE_BYTES
from range_transfer.config import Config
from range_transfer.config import get_config
from range_transfer.errors import TransportError
from range_transfer.errors import ValidationError
from range_transfer.models import DownloadOptions
from range_transfer.models import DownloadToBufferOptions
from range_transfer.models import ProgressCallback
from range_transfer.models import StreamUploadOptions
from range_transfer.models import TransferProgress
from range_transfer.models import UploadOptions
from range_transfer.models import validate_options
from range_transfer.planning.chunk_plan import ChunkPlanItem
from range_transfer.planning.chunk_plan import plan_chunks
from range_transfer.reader.resumable_stream import ResumableRangeStream
from range_transfer.services.transfer_id_service import transfer_scope
from range_transfer.transport.base import RangeBody
from range_transfer.transport.base import RangeTransport
from range_transfer.utils import maybe_await


logger = logging.getLogger(__name__)

# source_factory(offset, length) returns exactly `length` bytes starting at `offset`.
SourceFactory = Callable[[int, int], Union[RangeBody, Awaitable[RangeBody]]]
PathLike = Union[str, "os.PathLike[str]"]


class _ProgressTracker:
    """Cumulative transferred-byte counter reported after each settled chunk."""

    def __init__(self, callback: Optional[ProgressCallback]) -> None:
        self.callback = callback
        self.loaded_bytes = 0

    def add(self, n: int) -> None:
        self.loaded_bytes += n
        if self.callback is not None:
            self.callback(TransferProgress(loaded_bytes=self.loaded_bytes))


async def _empty_stream() -> AsyncIterator[bytes]:
    for piece in ():
        yield piece


def _read_file_range(path: PathLike, offset: int, length: int) -> bytes:
    with open(path, "rb") as fp:
        fp.seek(offset)
        data = fp.read(length)
    if len(data) != length:
        raise OSError(f"{path} returned {len(data)} bytes at offset {offset}, expected {length}")
    return data


class RangeFileClient:
    def __init__(self, transport: RangeTransport, config: Optional[Config] = None) -> None:
        self.transport = transport
        self._config = config or get_config()

    async def create(self, size: int, *, cancel: Optional[CancellationSignal] = None) -> None:
        """Create the remote object with a fixed size; content is filled by range uploads."""
        if size < 0 or size > FILE_MAX_SIZE_BYTES:
            raise ValidationError(f"File size must be >= 0 and <= {FILE_MAX_SIZE_BYTES}, got {size}")
        await self.transport.create_object(size, cancel=cancel)

    async def upload_range(
        self,
        data: RangeBody,
        offset: int,
        length: int,
        *,
        cancel: Optional[CancellationSignal] = None,
    ) -> None:
        """Write one range of at most FILE_RANGE_MAX_SIZE_BYTES at `offset`."""
        if offset < 0 or length <= 0:
            raise ValidationError(f"offset must be >= 0 and length must be > 0, got offset={offset} length={length}")
        if length > FILE_RANGE_MAX_SIZE_BYTES:
            raise ValidationError(f"length must be <= {FILE_RANGE_MAX_SIZE_BYTES} bytes, got {length}")
        if len(data) != length:
            raise ValidationError(f"data holds {len(data)} bytes but length is {length}")
        await self.transport.upload_range(offset, length, data, cancel=cancel)

    # High level uploads

    async def upload_seekable(
        self,
        source_factory: SourceFactory,
        size: int,
        *,
        range_size: Optional[int] = None,
        parallelism: Optional[int] = None,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationSignal] = None,
    ) -> None:
        """
        Create the object and upload a seekable source to it in parallel ranges.

        Args:
            source_factory: Returns the bytes of [offset, offset + length) of the source,
                directly or as an awaitable.
            size: Total size of the source and of the created object.
            range_size: Bytes per range upload, <= FILE_RANGE_MAX_SIZE_BYTES. Defaults to config.
            parallelism: Maximum concurrent range uploads. Defaults to config.
            progress: Called with the cumulative uploaded bytes after each range succeeds.
            cancel: Aborts in-flight uploads and stops new ones.
        """
        options = validate_options(
            UploadOptions,
            range_size=self._config.range_size_bytes if range_size is None else range_size,
            parallelism=self._config.parallelism if parallelism is None else parallelism,
        )
        if size < 0 or size > FILE_MAX_SIZE_BYTES:
            raise ValidationError(f"File size must be >= 0 and <= {FILE_MAX_SIZE_BYTES}, got {size}")

        with transfer_scope():
            await self.create(size, cancel=cancel)

            plan = plan_chunks(size, options.range_size)
            tracker = _ProgressTracker(progress)
            logger.info(
                f"Uploading {size} bytes in {len(plan)} ranges (range_size={options.range_size} "
                f"parallelism={options.parallelism})"
            )
            batch = Batch(options.parallelism, cancel=cancel)
            for chunk in plan:
                batch.add_operation(functools.partial(self._upload_chunk, source_factory, chunk, tracker, cancel))
            await batch.run()
            logger.info(f"Upload complete: {tracker.loaded_bytes} bytes")

    async def _upload_chunk(
        self,
        source_factory: SourceFactory,
        chunk: ChunkPlanItem,
        tracker: _ProgressTracker,
        cancel: Optional[CancellationSignal],
    ) -> None:
        data = await maybe_await(source_factory(chunk.offset, chunk.length))
        await self.upload_range(data, chunk.offset, chunk.length, cancel=cancel)
        tracker.add(chunk.length)

    async def upload_bytes(
        self,
        data: RangeBody,
        *,
        range_size: Optional[int] = None,
        parallelism: Optional[int] = None,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationSignal] = None,
    ) -> None:
        """Upload an in-memory buffer."""
        view = memoryview(data).cast("B")
        await self.upload_seekable(
            lambda offset, length: view[offset : offset + length],
            len(view),
            range_size=range_size,
            parallelism=parallelism,
            progress=progress,
            cancel=cancel,
        )

    async def upload_file(
        self,
        path: PathLike,
        *,
        range_size: Optional[int] = None,
        parallelism: Optional[int] = None,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationSignal] = None,
    ) -> None:
        """Upload a local file; each range is read from disk off the event loop."""
        stat = await asyncio.to_thread(os.stat, path)

        async def read_range(offset: int, length: int) -> bytes:
            return await asyncio.to_thread(_read_file_range, path, offset, length)

        await self.upload_seekable(
            read_range,
            stat.st_size,
            range_size=range_size,
            parallelism=parallelism,
            progress=progress,
            cancel=cancel,
        )

    async def upload_stream(
        self,
        source: AsyncIterable[bytes],
        size: int,
        buffer_size: int,
        max_buffers: int,
        *,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationSignal] = None,
    ) -> None:
        """
        Create the object at `size` and upload a stream of unknown length into it.

        The stream must not be longer than `size`; a shorter stream leaves
        zero bytes at the tail of the object.

        Args:
            source: Async byte source, read at most max_buffers * buffer_size ahead.
            size: Size of the object to create, <= FILE_MAX_SIZE_BYTES.
            buffer_size: Size of each buffer and of each range upload.
            max_buffers: Number of buffers allocated at most.
        """
        options = validate_options(StreamUploadOptions, size=size, buffer_size=buffer_size, max_buffers=max_buffers)
        if options.size > FILE_MAX_SIZE_BYTES:
            raise ValidationError(f"File size must be >= 0 and <= {FILE_MAX_SIZE_BYTES}, got {size}")

        with transfer_scope():
            await self.create(options.size, cancel=cancel)
            tracker = _ProgressTracker(progress)

            async def upload_buffer(data: memoryview, offset: int) -> None:
                if offset + len(data) > options.size:
                    raise ValidationError(
                        f"Stream size is larger than file size {options.size} bytes, uploading failed. "
                        f"Please make sure stream length is less or equal than file size."
                    )
                await self.upload_range(data, offset, len(data), cancel=cancel)
                tracker.add(len(data))

            # Fewer outgoing handlers than buffers keeps the read side from
            # starving the dispatch pool.
            concurrency = math.ceil(options.max_buffers * 3 / 4)
            logger.info(
                f"Uploading stream into {options.size} byte object (buffer_size={options.buffer_size} "
                f"max_buffers={options.max_buffers} concurrency={concurrency})"
            )
            scheduler = BufferScheduler(
                source, options.buffer_size, options.max_buffers, upload_buffer, concurrency, cancel=cancel
            )
            await scheduler.run()
            logger.info(f"Stream upload complete: {tracker.loaded_bytes} bytes")

    # High level downloads

    async def download(
        self,
        offset: int = 0,
        count: Optional[int] = None,
        *,
        max_retry_requests: Optional[int] = None,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationSignal] = None,
    ) -> ResumableRangeStream:
        """
        Open a download of [offset, offset + count) that resumes after silent truncation.

        When count is None the object size is queried and the download runs to the end.
        """
        options = validate_options(
            DownloadOptions,
            offset=offset,
            count=count,
            max_retry_requests=(
                self._config.max_download_retry_requests if max_retry_requests is None else max_retry_requests
            ),
        )
        if options.count is None:
            size = await self.transport.get_object_size(cancel=cancel)
            length = size - options.offset
            if length < 0:
                raise ValidationError(f"offset {options.offset} shouldn't be larger than file size {size}")
        else:
            length = options.count

        if length == 0:
            return ResumableRangeStream(_empty_stream(), options.offset, 0, self._no_reopen, 0)

        initial = await self.transport.download_range(options.offset, length, cancel=cancel)
        if initial.declared_length != length:
            logger.debug(f"Server declared {initial.declared_length} bytes for a {length} byte range")
        length = min(length, initial.declared_length)
        end = options.offset + length

        async def reopen(position: int) -> AsyncIterator[bytes]:
            resumed = await self.transport.download_range(position, end - position, cancel=cancel)
            return resumed.stream

        return ResumableRangeStream(
            initial.stream,
            options.offset,
            length,
            reopen,
            options.max_retry_requests,
            cancel=cancel,
            progress=progress,
        )

    @staticmethod
    async def _no_reopen(position: int) -> AsyncIterator[bytes]:
        raise TransportError(f"Cannot reopen an empty download at {position}")

    async def download_to_buffer(
        self,
        buffer: Union[bytearray, memoryview],
        offset: int = 0,
        count: Optional[int] = None,
        *,
        range_size: Optional[int] = None,
        parallelism: Optional[int] = None,
        max_retry_requests_per_range: Optional[int] = None,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationSignal] = None,
    ) -> int:
        """
        Download [offset, offset + count) into `buffer` with parallel range requests.

        Args:
            buffer: Writable buffer of at least `count` bytes; byte i of the range lands at buffer[i].
            offset: Object offset to start from.
            count: Bytes to download. Queried from the object size when None.
            range_size: Bytes per range request. Defaults to config.
            parallelism: Maximum concurrent range requests. Defaults to config.
            max_retry_requests_per_range: Reopens allowed per range after silent truncation.
            progress: Called with the cumulative downloaded bytes after each range completes.
            cancel: Aborts in-flight downloads and stops new ones.

        Returns:
            Number of bytes written into the buffer.
        """
        options = validate_options(
            DownloadToBufferOptions,
            offset=offset,
            count=count,
            range_size=self._config.range_size_bytes if range_size is None else range_size,
            parallelism=self._config.parallelism if parallelism is None else parallelism,
            max_retry_requests_per_range=(
                self._config.max_download_retry_requests
                if max_retry_requests_per_range is None
                else max_retry_requests_per_range
            ),
        )
        dest = memoryview(buffer).cast("B")
        if dest.readonly:
            raise ValidationError("buffer must be writable")
        if options.count is not None and len(dest) < options.count:
            raise ValidationError(
                f"The buffer's size should be equal to or larger than the request count of bytes: {options.count}"
            )

        with transfer_scope():
            if options.count is None:
                size = await self.transport.get_object_size(cancel=cancel)
                total = size - options.offset
                if total < 0:
                    raise ValidationError(f"offset {options.offset} shouldn't be larger than file size {size}")
                if len(dest) < total:
                    raise ValidationError(
                        f"The buffer's size should be equal to or larger than the request count of bytes: {total}"
                    )
            else:
                total = options.count

            plan = plan_chunks(total, options.range_size, start=options.offset)
            tracker = _ProgressTracker(progress)
            logger.info(
                f"Downloading {total} bytes from offset {options.offset} in {len(plan)} ranges "
                f"(range_size={options.range_size} parallelism={options.parallelism})"
            )
            batch = Batch(options.parallelism, cancel=cancel)
            for chunk in plan:
                batch.add_operation(
                    functools.partial(
                        self._download_chunk,
                        dest,
                        options.offset,
                        chunk,
                        options.max_retry_requests_per_range,
                        tracker,
                        cancel,
                    )
                )
            await batch.run()
            logger.info(f"Download complete: {tracker.loaded_bytes} bytes")
            return total

    async def _download_chunk(
        self,
        dest: memoryview,
        base_offset: int,
        chunk: ChunkPlanItem,
        max_retry_requests: int,
        tracker: _ProgressTracker,
        cancel: Optional[CancellationSignal],
    ) -> None:
        position = chunk.offset - base_offset
        stream = await self.download(chunk.offset, chunk.length, max_retry_requests=max_retry_requests, cancel=cancel)
        async with stream:
            async for piece in stream:
                dest[position : position + len(piece)] = piece
                position += len(piece)

        written = position - (chunk.offset - base_offset)
        if written != chunk.length:
            raise TransportError(
                f"Range at offset {chunk.offset} returned {written} bytes, expected {chunk.length}"
            )
        tracker.add(chunk.length)

    async def download_to_file(
        self,
        path: PathLike,
        offset: int = 0,
        count: Optional[int] = None,
        *,
        range_size: Optional[int] = None,
        parallelism: Optional[int] = None,
        max_retry_requests_per_range: Optional[int] = None,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationSignal] = None,
    ) -> int:
        """Download [offset, offset + count) into a local file, replacing it."""
        validate_options(DownloadOptions, offset=offset, count=count, max_retry_requests=0)
        if count is None:
            size = await self.transport.get_object_size(cancel=cancel)
            count = size - offset
            if count < 0:
                raise ValidationError(f"offset {offset} shouldn't be larger than file size {size}")

        buffer = bytearray(count)
        if count:
            await self.download_to_buffer(
                buffer,
                offset,
                count,
                range_size=range_size,
                parallelism=parallelism,
                max_retry_requests_per_range=max_retry_requests_per_range,
                progress=progress,
                cancel=cancel,
            )
        await asyncio.to_thread(Path(path).write_bytes, bytes(buffer))
        return count
