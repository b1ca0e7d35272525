"""
HTTP implementation of RangeTransport on top of httpx.

Each method maps to exactly one HTTP request against one object path:

    create_object   PUT  {path}              x-object-content-length: <size>
    upload_range    PUT  {path}?comp=range   Range: bytes=a-b, x-range-write: update
    download_range  GET  {path}              Range: bytes=a-b   (streamed)
    get_object_size HEAD {path}              -> Content-Length

Connection failures and 5xx/429 responses are retried here with exponential
backoff; the transfer engine above never retries them itself.
"""

import asyncio
import functools
import logging
import random
from typing import Any
from typing import AsyncIterator
from typing import Callable
from typing import Coroutine
from typing import Dict
from typing import Optional
from typing import TypeVar

import httpx

from range_transfer.cancellation import CancellationSignal
from range_transfer.cancellation import run_cancellable
from range_transfer.config import Config
from range_transfer.config import get_config
from range_transfer.errors import CancellationError
from range_transfer.errors import TransportError
from range_transfer.transport.base import RangeBody
from range_transfer.transport.base import RangeDownload
from range_transfer.utils import format_range


logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def compute_backoff_ms(attempt: int, base_ms: int = 500, max_ms: int = 5000) -> float:
    """Compute exponential backoff with jitter."""
    exp_backoff = base_ms * (2 ** (attempt - 1))
    jitter = random.uniform(0, exp_backoff * 0.1)
    return float(min(exp_backoff + jitter, max_ms))


def is_retryable(error: Exception) -> bool:
    if isinstance(error, CancellationError):
        return False
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, TransportError):
        return error.status_code in RETRYABLE_STATUS_CODES
    return False


def retry_on_error(
    func: Callable[..., Coroutine[Any, Any, T]],
) -> Callable[..., Coroutine[Any, Any, T]]:
    """
    Retry a transport method on connection errors and retryable statuses.

    Retry counts and backoff come from the transport instance's config.
    Connection-level httpx errors that survive all attempts are re-raised
    as TransportError.
    """

    @functools.wraps(func)
    async def wrapper(self: "HttpRangeTransport", *args: Any, **kwargs: Any) -> T:
        retries = self._config.http_max_retries
        attempt = 0
        while True:
            attempt += 1
            try:
                return await func(self, *args, **kwargs)
            except (httpx.TransportError, TransportError) as e:
                if not is_retryable(e) or attempt > retries:
                    if isinstance(e, httpx.TransportError):
                        raise TransportError(f"{func.__name__} failed: {e!r}") from e
                    raise
                delay_ms = compute_backoff_ms(attempt, self._config.http_retry_base_ms, self._config.http_retry_max_ms)
                logger.warning(
                    f"{func.__name__} failed (attempt {attempt}/{retries + 1}): {e!r}; retrying in {delay_ms:.0f}ms"
                )
                await run_cancellable(asyncio.sleep(delay_ms / 1000), kwargs.get("cancel"))

    return wrapper


def _raise_for_status(response: httpx.Response, operation: str) -> None:
    if response.is_success:
        return
    raise TransportError(
        f"{operation} rejected with HTTP {response.status_code}: {response.text[:200]}",
        status_code=response.status_code,
    )


def _content_length(response: httpx.Response, operation: str) -> int:
    raw = response.headers.get("content-length")
    if raw is None or not raw.strip().isdigit():
        raise TransportError(f"{operation} response doesn't contain a valid content length header")
    return int(raw)


def _check_range_start(response: httpx.Response, offset: int, operation: str) -> None:
    """Reject a reply whose body does not begin at the requested offset."""
    if response.status_code == 206:
        content_range = response.headers.get("content-range")
        if content_range is None:
            return
        unit, _, spec = content_range.strip().partition(" ")
        start = spec.partition("-")[0]
        if unit.lower() != "bytes" or not start.isdigit() or int(start) != offset:
            raise TransportError(f"{operation} asked for offset {offset} but got Content-Range {content_range!r}")
        return
    # A plain 200 means the server ignored Range and sent the object from byte 0.
    if offset != 0:
        raise TransportError(
            f"{operation} asked for offset {offset} but the server ignored the Range header "
            f"(HTTP {response.status_code})",
            status_code=response.status_code,
        )


class HttpRangeTransport:
    """
    Range transport for a single remote object reachable over HTTP.
    """

    def __init__(
        self,
        object_path: str,
        base_url: Optional[str] = None,
        *,
        headers: Optional[Dict[str, str]] = None,
        config: Optional[Config] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize the transport.

        Args:
            object_path: Path of the object relative to the base URL.
            base_url: Store base URL. Falls back to config if not provided.
            headers: Extra headers sent with every request (e.g. credentials built by the caller).
            config: Optional config. Loaded from the environment if not provided.
            http_transport: Optional httpx transport, mainly for tests.
        """
        self._config = config or get_config()
        self.object_path = "/" + object_path.lstrip("/")
        self.base_url = base_url or self._config.endpoint_url
        self._headers = dict(headers or {})
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self._config.httpx_timeout,
            follow_redirects=True,
            verify=self._config.verify_ssl,
            transport=http_transport,
        )

    async def __aenter__(self) -> "HttpRangeTransport":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    def _get_headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = dict(self._headers)
        if extra:
            headers.update(extra)
        return headers

    @retry_on_error
    async def create_object(self, size: int, *, cancel: Optional[CancellationSignal] = None) -> None:
        """Create (or replace) the object with `size` zero bytes of content."""
        response = await run_cancellable(
            self._client.put(
                self.object_path,
                headers=self._get_headers({"x-object-content-length": str(size)}),
                content=b"",
            ),
            cancel,
        )
        _raise_for_status(response, "create_object")
        logger.debug(f"Created object {self.object_path} size={size}")

    @retry_on_error
    async def upload_range(
        self,
        offset: int,
        length: int,
        data: RangeBody,
        *,
        cancel: Optional[CancellationSignal] = None,
    ) -> None:
        response = await run_cancellable(
            self._client.put(
                self.object_path,
                params={"comp": "range"},
                headers=self._get_headers({"Range": format_range(offset, length), "x-range-write": "update"}),
                content=bytes(data),
            ),
            cancel,
        )
        _raise_for_status(response, "upload_range")

    @retry_on_error
    async def download_range(
        self,
        offset: int,
        length: int,
        *,
        cancel: Optional[CancellationSignal] = None,
    ) -> RangeDownload:
        request = self._client.build_request(
            "GET",
            self.object_path,
            headers=self._get_headers({"Range": format_range(offset, length)}),
        )
        response = await run_cancellable(self._client.send(request, stream=True), cancel)
        try:
            if not response.is_success:
                await response.aread()
            _raise_for_status(response, "download_range")
            _check_range_start(response, offset, "download_range")
            declared_length = _content_length(response, "download_range")
        except BaseException:
            await response.aclose()
            raise
        return RangeDownload(stream=self._iter_body(response), declared_length=declared_length)

    async def _iter_body(self, response: httpx.Response) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
        except httpx.RemoteProtocolError as e:
            # Peer closed before the full body arrived; end the stream so the
            # resumable reader can request the remainder.
            logger.warning(f"Download body ended early for {self.object_path}: {e}")
        except httpx.HTTPError as e:
            raise TransportError(f"download_range body failed: {e!r}") from e
        finally:
            await response.aclose()

    @retry_on_error
    async def get_object_size(self, *, cancel: Optional[CancellationSignal] = None) -> int:
        response = await run_cancellable(
            self._client.head(self.object_path, headers=self._get_headers()),
            cancel,
        )
        _raise_for_status(response, "get_object_size")
        return _content_length(response, "get_object_size")
