"""Utility helpers shared across the range transfer package."""

import dataclasses
import inspect
import os
import typing
from typing import Any
from typing import AsyncIterator
from typing import Awaitable
from typing import Callable
from typing import Optional
from typing import TypeVar
from typing import Union


T = TypeVar("T")


def env(key: str, convert: Callable[[str], T] = typing.cast(Callable[[str], T], str), **kwargs: Any) -> T:
    """Load a value from environment variables with optional default and type conversion."""
    key, partition, default = key.partition(":")

    def default_factory(
        key_val: str = key, default_val: str = default, convert_func: Callable[[str], T] = convert
    ) -> T:
        if key_val in os.environ:
            return convert_func(os.environ[key_val])

        if partition == ":":
            return convert_func(default_val)

        raise KeyError(key_val)

    return typing.cast(T, dataclasses.field(default_factory=default_factory, **kwargs))


def env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


async def maybe_await(value: Union[T, Awaitable[T]]) -> T:
    """Return value, awaiting it first when a coroutine or awaitable was passed."""
    if inspect.isawaitable(value):
        return await typing.cast(Awaitable[T], value)
    return typing.cast(T, value)


def format_range(offset: int, length: int) -> str:
    """Render an inclusive HTTP byte range header value for [offset, offset + length)."""
    return f"bytes={offset}-{offset + length - 1}"


async def next_chunk(iterator: AsyncIterator[bytes]) -> Optional[bytes]:
    """Pull the next piece from an async byte iterator, None once it is exhausted."""
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None
