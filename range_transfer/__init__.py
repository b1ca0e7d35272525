"""Parallel, resumable range transfers against an HTTP object store.

The package logs through the `range_transfer` logger and is silent until the
application configures logging, e.g. with `setup_logging()`.
"""

from range_transfer.cancellation import CancellationSignal
from range_transfer.client import RangeFileClient
from range_transfer.concurrency.batch import Batch
from range_transfer.concurrency.batch import run_batch
from range_transfer.concurrency.buffer_scheduler import BufferScheduler
from range_transfer.concurrency.buffer_scheduler import schedule_stream
from range_transfer.errors import CancellationError
from range_transfer.errors import RangeTransferError
from range_transfer.errors import SilentTruncationError
from range_transfer.errors import TransportError
from range_transfer.errors import ValidationError
from range_transfer.logging_config import setup_logging
from range_transfer.models import TransferProgress
from range_transfer.planning.chunk_plan import ChunkPlanItem
from range_transfer.planning.chunk_plan import plan_chunks
from range_transfer.reader.resumable_stream import ResumableRangeStream
from range_transfer.reader.resumable_stream import open_resumable_download
from range_transfer.transport.base import RangeDownload
from range_transfer.transport.base import RangeTransport
from range_transfer.transport.http_transport import HttpRangeTransport


__all__ = [
    "Batch",
    "BufferScheduler",
    "CancellationError",
    "CancellationSignal",
    "ChunkPlanItem",
    "HttpRangeTransport",
    "RangeDownload",
    "RangeFileClient",
    "RangeTransferError",
    "RangeTransport",
    "ResumableRangeStream",
    "SilentTruncationError",
    "TransferProgress",
    "TransportError",
    "ValidationError",
    "open_resumable_download",
    "plan_chunks",
    "run_batch",
    "schedule_stream",
    "setup_logging",
]
