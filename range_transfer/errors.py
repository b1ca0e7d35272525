"""Error types raised by the range transfer engine."""

from typing import Optional


class RangeTransferError(Exception):
    """Base class for every error raised by range_transfer."""

    pass


class ValidationError(RangeTransferError, ValueError):
    """Raised when a caller-supplied size, offset or option violates a documented constraint.

    Always raised before any network call is made and never retried.
    """

    pass


class TransportError(RangeTransferError):
    """Raised when a single network call against the object store failed."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SilentTruncationError(RangeTransferError):
    """Raised when a download stream kept ending early after the retry budget was spent.

    `position` is the absolute offset of the first byte that was NOT delivered,
    so everything before it is trustworthy.
    """

    def __init__(self, position: int, end: int) -> None:
        super().__init__(
            f"Download incomplete: stream ended at offset {position}, expected data up to offset {end}"
        )
        self.position = position
        self.end = end


class CancellationError(RangeTransferError):
    """Raised when an external cancellation signal fired during a transfer."""

    def __init__(self, reason: str = "The operation was cancelled") -> None:
        super().__init__(reason)
        self.reason = reason
