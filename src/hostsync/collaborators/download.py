"""HTTP downloads for font archives and remote dotfiles.

Transport errors (connection refused, resets, timeouts) are retried with
exponential backoff inside a single fetch. HTTP error statuses are not.
"""
import logging
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

import httpx
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_EXCEPTIONS = (
    httpx.TransportError,
)


def with_retry(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10,
    exceptions: tuple = RETRYABLE_EXCEPTIONS,
) -> Callable:
    """Decorator factory for retry logic with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts
        min_wait: Minimum wait time between attempts (seconds)
        max_wait: Maximum wait time between attempts (seconds)
        exceptions: Tuple of exception types to retry on
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
            retry=retry_if_exception_type(exceptions),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            return func(*args, **kwargs)

        return wrapper

    return decorator


class DownloadError(Exception):
    """A download could not be completed."""
    pass


class Downloader:
    """Fetch remote files over HTTP(S)."""

    def __init__(
        self,
        retries: int = 3,
        timeout: float = 60,
        min_wait: float = 1,
        max_wait: float = 10,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.retries = retries
        self.timeout = timeout
        self.min_wait = min_wait
        self.max_wait = max_wait
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=httpx.Timeout(self.timeout),
            follow_redirects=True,
            transport=self._transport,
        )

    def fetch(self, url: str) -> bytes:
        """Download ``url`` and return its body.

        Raises:
            DownloadError: On HTTP error status, redirect loops or exhausted retries
        """
        @with_retry(max_attempts=self.retries, min_wait=self.min_wait, max_wait=self.max_wait)
        def _get() -> bytes:
            with self._client() as client:
                response = client.get(url)
                response.raise_for_status()
                return response.content

        logger.debug(f"Downloading {url}")
        try:
            data = _get()
        except httpx.HTTPStatusError as e:
            raise DownloadError(f"{url}: HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise DownloadError(f"{url}: {e}") from e

        logger.debug(f"Downloaded {len(data)} bytes from {url}")
        return data

    def fetch_text(self, url: str) -> str:
        return self.fetch(url).decode("utf-8")
