"""
HTTP Fetcher - One Client per Target Site

Wraps ``httpx.AsyncClient`` with what the target site needs:

- a cookie jar per logical target, so the world/server selection made by a
  form POST sticks for the following requests
- timeouts, gzip/deflate decompression and bounded redirect following
- a randomized pause between successive requests to the same target; without
  it the site starts refusing the whole pipeline
- one error type (``FetchError``) for timeouts, bad statuses and network
  failures, so callers can retry uniformly

Usage:
    async with Fetcher(settings.SITE_BASE_URL, delay_range=(0.5, 3.0)) as site:
        html = await site.post("/?subtopic=highscores", {"server": "Auroria", "page": 1})
"""

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable, Mapping, Optional

import httpx

from common.config import Settings
from common.exceptions import FetchError, PageNotFound

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}


class Fetcher:
    """Rate-spaced HTTP client bound to one base URL."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        max_redirects: int = 5,
        delay_range: tuple[float, float] = (0.5, 3.0),
        user_agent: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        Args:
            base_url: Origin all relative paths resolve against
            timeout: Default per-request timeout in seconds
            max_redirects: Redirects followed before giving up
            delay_range: (min, max) seconds between successive requests
            user_agent: User-Agent header value
            transport: Custom transport (tests use ``httpx.MockTransport``)
            sleep: Awaitable sleep, injectable for tests
        """
        low, high = delay_range
        if low < 0 or high < low:
            raise ValueError(f"Invalid delay range: {delay_range}")

        self.base_url = base_url
        self.delay_range = delay_range
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_request_at: Optional[float] = None

        headers = dict(DEFAULT_HEADERS)
        if user_agent:
            headers["User-Agent"] = user_agent

        self.client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
            max_redirects=max_redirects,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings, base_url: str, **kwargs: Any) -> "Fetcher":
        return cls(
            base_url,
            timeout=settings.HTTP_TIMEOUT,
            max_redirects=settings.HTTP_MAX_REDIRECTS,
            delay_range=(settings.HTTP_DELAY_MIN_MS / 1000, settings.HTTP_DELAY_MAX_MS / 1000),
            user_agent=settings.USER_AGENT,
            **kwargs,
        )

    async def __aenter__(self) -> "Fetcher":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    @property
    def cookies(self) -> httpx.Cookies:
        return self.client.cookies

    def clear_cookies(self) -> None:
        self.client.cookies.clear()

    async def get(
        self,
        url: str,
        params: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """GET a page and return its decoded body."""
        return await self._request("GET", url, params=params, timeout=timeout)

    async def post(
        self,
        url: str,
        data: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """POST a form-encoded payload and return the decoded body."""
        form = {key: str(value) for key, value in (data or {}).items()}
        return await self._request("POST", url, data=form, timeout=timeout)

    async def _wait_turn(self) -> None:
        # Caller holds the lock. The pause runs from when the previous response
        # finished; the first request goes out immediately.
        if self._last_request_at is not None:
            delay = random.uniform(*self.delay_range)
            remaining = delay - (time.monotonic() - self._last_request_at)
            if remaining > 0:
                await self._sleep(remaining)

    async def _request(self, method: str, url: str, timeout: Optional[float] = None, **kwargs: Any) -> str:
        # One request in flight per target, shared by every task using it.
        async with self._lock:
            await self._wait_turn()
            try:
                return await self._send(method, url, timeout=timeout, **kwargs)
            finally:
                self._last_request_at = time.monotonic()

    async def _send(self, method: str, url: str, timeout: Optional[float] = None, **kwargs: Any) -> str:
        if timeout is not None:
            kwargs["timeout"] = httpx.Timeout(timeout)

        logger.debug("Request: %s %s", method, url)
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise FetchError(f"Request timeout: {method} {url}", url=url) from e
        except httpx.TooManyRedirects as e:
            raise FetchError(f"Too many redirects: {method} {url}", url=url) from e
        except httpx.HTTPError as e:
            raise FetchError(f"Network error: {method} {url}: {e}", url=url) from e

        logger.debug("Response: %d %s", response.status_code, url)

        status = response.status_code
        if status == 404:
            raise PageNotFound(f"Not found: {method} {url}", url=url, status_code=status)
        if not 200 <= status < 400:
            raise FetchError(f"Unexpected status {status}: {method} {url}", url=url, status_code=status)

        return response.text
