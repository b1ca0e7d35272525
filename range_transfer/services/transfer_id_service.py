import contextlib
import contextvars
import uuid
from typing import Iterator
from typing import Optional


transfer_id_context: contextvars.ContextVar[str] = contextvars.ContextVar("transfer_id", default="no-transfer-id")


def generate_transfer_id() -> str:
    """Generate a 16-character hex transfer ID from UUID4.

    Returns:
        A 16-character lowercase hex string (first 64 bits of UUID4).
        Example: "a1b2c3d4e5f67890"
    """
    return uuid.uuid4().hex[:16]


def bind_transfer_id(transfer_id: Optional[str] = None) -> contextvars.Token:
    """Set the transfer ID for the current context and return the reset token."""
    return transfer_id_context.set(transfer_id or generate_transfer_id())


@contextlib.contextmanager
def transfer_scope(transfer_id: Optional[str] = None) -> Iterator[str]:
    """Bind a transfer ID for the duration of the block; tasks spawned inside inherit it."""
    token = bind_transfer_id(transfer_id)
    try:
        yield transfer_id_context.get()
    finally:
        transfer_id_context.reset(token)
