from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Awaitable, Callable, Protocol

import httpx

from .config import DEFAULT_GATEWAY_URL, DEFAULT_TIMEOUT_S, validate_gateway_url
from .errors import NetworkError, NetworkErrorKind, ValidationError

logger = logging.getLogger(__name__)

CONTENT_ADDRESS_RE = re.compile(r"^[A-Za-z0-9_-]{43}$")
ACCEPTED_CONTENT_TYPES = frozenset(
    {
        "application/zip",
        "application/x-zip-compressed",
        "application/octet-stream",
    }
)
TRANSIENT_STATUS_CODES = frozenset({502, 503, 504})

MAX_ATTEMPTS = 3
BASE_RETRY_DELAY_S = 1.0
DEFAULT_CHUNK_SIZE = 64 * 1024
PROGRESS_INTERVAL_S = 0.5

ProgressCallback = Callable[[int], None]
SleepFunc = Callable[[float], Awaitable[None]]


class BundleFetcher(Protocol):
    async def download(
        self,
        address: str,
        *,
        timeout_s: float | None = None,
        progress: ProgressCallback | None = None,
        gateway_url: str | None = None,
    ) -> bytes:
        ...


def validate_content_address(address: str) -> str:
    if not isinstance(address, str) or not CONTENT_ADDRESS_RE.match(address):
        raise ValidationError(
            f"Invalid content address {address!r}. Expected 43 characters of [A-Za-z0-9_-].",
            field="address",
            value=address,
        )
    return address


def is_transient(err: NetworkError) -> bool:
    if err.kind in (NetworkErrorKind.GATEWAY_UNAVAILABLE, NetworkErrorKind.TIMEOUT):
        return True
    # Transport-level failures (resets, refused connections) carry no status code.
    return err.kind == NetworkErrorKind.CONNECTION_FAILURE and err.status_code is None


class _ProgressReporter:
    def __init__(self, callback: ProgressCallback | None, total: int | None) -> None:
        self._callback = callback
        self._total = total if total and total > 0 else None
        self._last: int | None = None
        self._last_emit = 0.0

    def _emit(self, percent: int) -> None:
        self._last = percent
        self._last_emit = time.monotonic()
        if self._callback is not None:
            self._callback(percent)

    def start(self) -> None:
        self._emit(0)

    def update(self, received: int) -> None:
        if self._total is not None:
            percent = min(100, received * 100 // self._total)
            if self._last is None or percent > self._last:
                self._emit(percent)
            return
        if time.monotonic() - self._last_emit >= PROGRESS_INTERVAL_S:
            self._emit(self._last or 0)

    def finish(self) -> None:
        if self._last != 100:
            self._emit(100)


class ContentTransfer:
    """
    Streams bundles out of the content-addressed store.

    Transient failures (HTTP 502/503/504, timeouts, dropped connections) are retried
    with exponential backoff up to ``max_attempts`` total attempts. 404 and other
    HTTP errors are permanent and surface on the first attempt.
    """

    def __init__(
        self,
        *,
        gateway_url: str = DEFAULT_GATEWAY_URL,
        timeout_s: float | None = DEFAULT_TIMEOUT_S,
        max_attempts: int = MAX_ATTEMPTS,
        base_delay_s: float = BASE_RETRY_DELAY_S,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        http: httpx.AsyncClient | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.gateway_url = validate_gateway_url(gateway_url)
        self.timeout_s = timeout_s
        self.max_attempts = max_attempts
        self.base_delay_s = base_delay_s
        self.chunk_size = chunk_size
        self._http = http or httpx.AsyncClient(timeout=timeout_s, follow_redirects=True)
        self._sleep = sleep

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "ContentTransfer":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def download(
        self,
        address: str,
        *,
        timeout_s: float | None = None,
        progress: ProgressCallback | None = None,
        gateway_url: str | None = None,
    ) -> bytes:
        validate_content_address(address)
        gateway = validate_gateway_url(gateway_url) if gateway_url is not None else self.gateway_url
        url = f"{gateway}/{address}"
        timeout = self.timeout_s if timeout_s is None else timeout_s

        try:
            return await asyncio.wait_for(self._download_with_retry(url, progress), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise NetworkError(
                f"Download of {address} timed out after {timeout:g} seconds. Check your connection or try another gateway.",
                kind=NetworkErrorKind.TIMEOUT,
                url=url,
            ) from e

    def backoff_delay(self, attempt: int) -> float:
        return self.base_delay_s * (2 ** (attempt - 1))

    async def _download_with_retry(self, url: str, progress: ProgressCallback | None) -> bytes:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._attempt(url, progress)
            except NetworkError as e:
                if not is_transient(e):
                    raise
                if attempt >= self.max_attempts:
                    raise NetworkError(
                        f"{e} (gave up after {attempt} attempts)",
                        kind=e.kind,
                        url=url,
                        status_code=e.status_code,
                    ) from e
                delay = self.backoff_delay(attempt)
                logger.warning("Attempt %d/%d for %s failed: %s. Retrying in %.1fs...", attempt, self.max_attempts, url, e, delay)
                await self._sleep(delay)

    async def _attempt(self, url: str, progress: ProgressCallback | None) -> bytes:
        try:
            async with self._http.stream("GET", url) as resp:
                self._check_response(resp, url)

                total: int | None = None
                declared = resp.headers.get("content-length")
                if declared and declared.isdigit():
                    total = int(declared)

                reporter = _ProgressReporter(progress, total)
                reporter.start()
                buf = bytearray()
                # Content-Length counts wire bytes, which differ from the decoded body under Content-Encoding.
                async for chunk in resp.aiter_bytes(chunk_size=self.chunk_size):
                    buf.extend(chunk)
                    reporter.update(resp.num_bytes_downloaded)
                received = resp.num_bytes_downloaded
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request to {url} timed out", kind=NetworkErrorKind.TIMEOUT, url=url) from e
        except httpx.TransportError as e:
            raise NetworkError(f"Connection to {url} failed: {e}", url=url) from e

        if total is not None and received != total:
            raise NetworkError(f"Incomplete download from {url}: received {received} of {total} bytes", url=url)
        reporter.finish()
        logger.debug("Downloaded %d bytes from %s", len(buf), url)
        return bytes(buf)

    @staticmethod
    def _check_response(resp: httpx.Response, url: str) -> None:
        status = resp.status_code
        if status == 404:
            raise NetworkError(
                f"Bundle not found at {url}. Verify the content address.",
                kind=NetworkErrorKind.NOT_FOUND,
                url=url,
                status_code=status,
            )
        if status in TRANSIENT_STATUS_CODES:
            raise NetworkError(
                f"Gateway unavailable ({url} returned {status})",
                kind=NetworkErrorKind.GATEWAY_UNAVAILABLE,
                url=url,
                status_code=status,
            )
        if status >= 400:
            raise NetworkError(f"Gateway returned HTTP {status} for {url}", url=url, status_code=status)

        ctype = resp.headers.get("content-type", "").split(";", 1)[0].strip().lower()
        if ctype not in ACCEPTED_CONTENT_TYPES:
            raise ValidationError(
                f"Unexpected Content-Type {ctype or '<missing>'!r} from {url}; expected a zip archive.",
                field="content-type",
                value=ctype,
            )
