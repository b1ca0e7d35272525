"""Pure planning logic for chunked transfers.

No IO; deterministic mapping from a total size and a chunk size to the ordered
list of ranges a transfer is split into.
"""

from __future__ import annotations

from dataclasses import dataclass

from range_transfer.errors import ValidationError


@dataclass(frozen=True)
class ChunkPlanItem:
    index: int
    # Absolute offset in the remote object.
    offset: int
    length: int

    @property
    def end(self) -> int:
        """Exclusive end offset."""
        return self.offset + self.length


def count_chunks(size: int, chunk_size: int) -> int:
    """Number of chunks needed to cover `size` bytes, i.e. ceil(size / chunk_size)."""
    if chunk_size <= 0:
        raise ValidationError(f"chunk_size must be > 0, got {chunk_size}")
    if size < 0:
        raise ValidationError(f"size must be >= 0, got {size}")
    return (size + chunk_size - 1) // chunk_size


def plan_chunks(size: int, chunk_size: int, start: int = 0) -> list[ChunkPlanItem]:
    """Split [start, start + size) into contiguous chunks of at most chunk_size bytes.

    Args:
        size: Number of bytes to cover.
        chunk_size: Maximum length of a chunk.
        start: Absolute offset of the first chunk (default 0).

    Returns:
        Ordered chunks; every chunk but the last has length chunk_size and the
        lengths sum exactly to size. Empty when size is 0.
    """
    if start < 0:
        raise ValidationError(f"start must be >= 0, got {start}")
    num_chunks = count_chunks(size, chunk_size)

    plan: list[ChunkPlanItem] = []
    for i in range(num_chunks):
        chunk_start = i * chunk_size
        chunk_end = size if i == num_chunks - 1 else chunk_start + chunk_size
        plan.append(ChunkPlanItem(index=i, offset=start + chunk_start, length=chunk_end - chunk_start))
    return plan
