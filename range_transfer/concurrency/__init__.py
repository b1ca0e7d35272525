from range_transfer.concurrency.batch import Batch
from range_transfer.concurrency.batch import run_batch
from range_transfer.concurrency.buffer_scheduler import BufferScheduler
from range_transfer.concurrency.buffer_scheduler import schedule_stream


__all__ = ["Batch", "BufferScheduler", "run_batch", "schedule_stream"]
