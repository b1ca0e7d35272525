from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator
from typing import Optional
from typing import Protocol
from typing import Union

from range_transfer.cancellation import CancellationSignal


RangeBody = Union[bytes, bytearray, memoryview]


@dataclass
class RangeDownload:
    stream: AsyncIterator[bytes]
    # Content length the server promised for this response.
    declared_length: int


class RangeTransport(Protocol):
    """One network call per method against a single remote object.

    Implementations raise TransportError for failed calls and CancellationError
    when `cancel` fires; retrying hard failures is their own business.
    """

    async def create_object(self, size: int, *, cancel: Optional[CancellationSignal] = None) -> None: ...

    async def upload_range(
        self,
        offset: int,
        length: int,
        data: RangeBody,
        *,
        cancel: Optional[CancellationSignal] = None,
    ) -> None: ...

    async def download_range(
        self,
        offset: int,
        length: int,
        *,
        cancel: Optional[CancellationSignal] = None,
    ) -> RangeDownload: ...

    async def get_object_size(self, *, cancel: Optional[CancellationSignal] = None) -> int: ...
