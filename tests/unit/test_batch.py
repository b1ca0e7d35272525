import asyncio

import pytest

from range_transfer.concurrency.batch import Batch
from range_transfer.concurrency.batch import run_batch
from range_transfer.errors import ValidationError


class _Tracker:
    def __init__(self) -> None:
        self.active = 0
        self.peak = 0
        self.started: list[int] = []
        self.finished: list[int] = []

    def op(self, index: int, delay: float = 0.001, error: Exception | None = None):
        async def run() -> None:
            self.started.append(index)
            self.active += 1
            self.peak = max(self.peak, self.active)
            try:
                await asyncio.sleep(delay)
                if error is not None:
                    raise error
            finally:
                self.active -= 1
            self.finished.append(index)

        return run


@pytest.mark.asyncio
async def test_never_exceeds_concurrency_and_runs_everything():
    tracker = _Tracker()
    batch = Batch(3)
    for i in range(20):
        batch.add_operation(tracker.op(i))

    await batch.run()

    assert tracker.peak == 3
    assert batch.peak_active == 3
    assert sorted(tracker.finished) == list(range(20))
    assert batch.finished


@pytest.mark.asyncio
async def test_empty_batch_succeeds_immediately():
    batch = Batch(4)
    await batch.run()
    assert batch.started_operations == 0


@pytest.mark.asyncio
async def test_zero_concurrency_runs_serially():
    tracker = _Tracker()
    batch = Batch(0)
    assert batch.concurrency == 1
    for i in range(5):
        batch.add_operation(tracker.op(i))

    await batch.run()

    assert tracker.peak == 1
    assert tracker.finished == [0, 1, 2, 3, 4]


def test_negative_concurrency_rejected():
    with pytest.raises(ValidationError):
        Batch(-1)


@pytest.mark.asyncio
async def test_reports_the_failing_operation_error():
    tracker = _Tracker()
    boom = RuntimeError("chunk 7 failed")
    batch = Batch(4)
    for i in range(12):
        # Staggered delays so completion order differs from submission order.
        delay = 0.001 * ((i * 5) % 7)
        batch.add_operation(tracker.op(i, delay=delay, error=boom if i == 7 else None))

    with pytest.raises(RuntimeError) as exc_info:
        await batch.run()

    assert exc_info.value is boom


@pytest.mark.asyncio
async def test_queued_operations_not_started_after_failure():
    tracker = _Tracker()
    batch = Batch(1)
    batch.add_operation(tracker.op(0, error=ValueError("first")))
    for i in range(1, 5):
        batch.add_operation(tracker.op(i))

    with pytest.raises(ValueError, match="first"):
        await batch.run()

    assert tracker.started == [0]


@pytest.mark.asyncio
async def test_in_flight_operations_drain_after_failure():
    tracker = _Tracker()
    batch = Batch(3)
    batch.add_operation(tracker.op(0, delay=0, error=ValueError("fast failure")))
    batch.add_operation(tracker.op(1, delay=0.02))
    batch.add_operation(tracker.op(2, delay=0.02))
    batch.add_operation(tracker.op(3))

    with pytest.raises(ValueError, match="fast failure"):
        await batch.run()

    assert sorted(tracker.finished) == [1, 2]
    assert 3 not in tracker.started
    assert tracker.active == 0


@pytest.mark.asyncio
async def test_later_errors_are_discarded():
    tracker = _Tracker()
    batch = Batch(2)
    batch.add_operation(tracker.op(0, delay=0.02, error=ValueError("late")))
    batch.add_operation(tracker.op(1, delay=0, error=KeyError("early")))

    with pytest.raises(KeyError, match="early"):
        await batch.run()


@pytest.mark.asyncio
async def test_synchronous_raise_is_treated_as_failure():
    def explode():
        raise ZeroDivisionError("sync")

    batch = Batch(2)
    batch.add_operation(explode)

    with pytest.raises(ZeroDivisionError):
        await batch.run()


@pytest.mark.asyncio
async def test_operations_can_be_added_while_running():
    ran: list[str] = []
    batch = Batch(2)

    async def child() -> None:
        await asyncio.sleep(0)
        ran.append("child")

    async def parent() -> None:
        ran.append("parent")
        batch.add_operation(child)

    batch.add_operation(parent)
    await batch.run()

    assert ran == ["parent", "child"]


@pytest.mark.asyncio
async def test_run_only_once():
    batch = Batch(1)
    await batch.run()
    with pytest.raises(RuntimeError):
        await batch.run()
    with pytest.raises(RuntimeError):
        batch.add_operation(_Tracker().op(0))


@pytest.mark.asyncio
async def test_run_batch_helper():
    tracker = _Tracker()
    await run_batch([tracker.op(i) for i in range(6)], 2)
    assert sorted(tracker.finished) == list(range(6))
    assert tracker.peak == 2
