import asyncio
from typing import AsyncIterator
from typing import Callable
from typing import Optional

from range_transfer.cancellation import CancellationSignal
from range_transfer.cancellation import run_cancellable
from range_transfer.errors import TransportError
from range_transfer.transport.base import RangeBody
from range_transfer.transport.base import RangeDownload


class FakeRangeTransport:
    """In-memory RangeTransport that records every call and can inject failures."""

    def __init__(
        self,
        content: bytes = b"",
        *,
        piece_size: int = 64 * 1024,
        delay: float = 0.0,
        truncate_after: Optional[Callable[[int, int], Optional[int]]] = None,
        fail_upload_at: Optional[int] = None,
        fail_download_at: Optional[int] = None,
    ) -> None:
        self.data = bytearray(content)
        self.piece_size = piece_size
        self.delay = delay
        # truncate_after(offset, length) -> bytes to deliver before a silent end, or None
        self.truncate_after = truncate_after
        self.fail_upload_at = fail_upload_at
        self.fail_download_at = fail_download_at

        self.create_calls: list[int] = []
        self.upload_calls: list[tuple[int, int]] = []
        self.download_calls: list[tuple[int, int]] = []
        self.size_calls = 0
        self.active = 0
        self.peak_active = 0

    @property
    def network_calls(self) -> int:
        return len(self.create_calls) + len(self.upload_calls) + len(self.download_calls) + self.size_calls

    async def _io(self, cancel: Optional[CancellationSignal]) -> None:
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        try:
            await run_cancellable(asyncio.sleep(self.delay), cancel)
        finally:
            self.active -= 1

    async def create_object(self, size: int, *, cancel: Optional[CancellationSignal] = None) -> None:
        self.create_calls.append(size)
        await self._io(cancel)
        self.data = bytearray(size)

    async def upload_range(
        self,
        offset: int,
        length: int,
        data: RangeBody,
        *,
        cancel: Optional[CancellationSignal] = None,
    ) -> None:
        self.upload_calls.append((offset, length))
        await self._io(cancel)
        if self.fail_upload_at is not None and offset == self.fail_upload_at:
            raise TransportError(f"upload rejected at {offset}", status_code=409)
        self.data[offset : offset + length] = bytes(data)

    async def download_range(
        self,
        offset: int,
        length: int,
        *,
        cancel: Optional[CancellationSignal] = None,
    ) -> RangeDownload:
        self.download_calls.append((offset, length))
        await self._io(cancel)
        if self.fail_download_at is not None and offset == self.fail_download_at:
            raise TransportError(f"download failed at {offset}", status_code=500)
        length = max(0, min(length, len(self.data) - offset))
        deliver = length
        if self.truncate_after is not None:
            cut = self.truncate_after(offset, length)
            if cut is not None:
                deliver = min(deliver, cut)
        return RangeDownload(stream=self._body(offset, deliver), declared_length=length)

    async def _body(self, offset: int, length: int) -> AsyncIterator[bytes]:
        end = offset + length
        while offset < end:
            await asyncio.sleep(0)
            step = min(self.piece_size, end - offset)
            yield bytes(self.data[offset : offset + step])
            offset += step

    async def get_object_size(self, *, cancel: Optional[CancellationSignal] = None) -> int:
        self.size_calls += 1
        await self._io(cancel)
        return len(self.data)
