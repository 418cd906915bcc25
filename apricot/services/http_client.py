"""
Rate-Limited Fetch Client

Wraps an httpx client with a per-host minimum delay between requests. One
instance is shared by all fetch worker threads of a discovery run.
"""

import logging
import threading
import time
from typing import Callable, Optional
from urllib.parse import urlparse

import httpx

from apricot.services.errors import DiscoveryCancelled, FetchError

logger = logging.getLogger(__name__)

# Configuration
HTTP_TIMEOUT = 30        # seconds
RATE_LIMIT_DELAY = 1.0   # seconds between requests to the same host

# Browser-like headers; several blogs reject obvious bot user agents
BROWSER_HEADERS = {
    'User-Agent': (
        'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 '
        '(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36'
    ),
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
    'Accept-Language': 'en-US,en;q=0.9',
}


def extract_host(url: str) -> str:
    """Return the hostname of a URL, or the raw URL if it has none."""
    try:
        host = urlparse(url).hostname
    except ValueError:
        host = None
    return host or url


class HostRateLimiter:
    """
    Spaces requests to the same host at least min_interval seconds apart.

    Each caller reserves its start slot while holding the lock and waits
    outside it, so a long wait for one host never blocks callers for another.
    """

    def __init__(
        self,
        min_interval: float = RATE_LIMIT_DELAY,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last_request: dict[str, float] = {}
        self._lock = threading.Lock()

    def reserve(self, host: str) -> tuple[float, float]:
        """
        Claim the next start slot for host.

        Returns:
            Tuple of (slot time, seconds to wait before the slot)
        """
        with self._lock:
            now = self._clock()
            last = self._last_request.get(host)
            slot = now if last is None else max(now, last + self.min_interval)
            self._last_request[host] = slot
        return slot, slot - now

    def wait(self, host: str, cancel_event: Optional[threading.Event] = None) -> float:
        """
        Block until host may be contacted again.

        Raises:
            DiscoveryCancelled: If cancel_event fires while waiting
        """
        slot, delay = self.reserve(host)
        if delay > 0:
            logger.debug(f"Rate limit: waiting {delay:.2f}s for {host}")
            if cancel_event is not None:
                if cancel_event.wait(delay):
                    raise DiscoveryCancelled(f"cancelled while waiting for {host}")
            else:
                self._sleep(delay)
        return slot


class RateLimitedClient:
    """
    HTTP GET client with a fixed timeout, browser headers and per-host pacing.

    Errors are raised as FetchError and never retried here.
    """

    def __init__(
        self,
        timeout: float = HTTP_TIMEOUT,
        rate_limiter: Optional[HostRateLimiter] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.rate_limiter = rate_limiter or HostRateLimiter()
        self._client = httpx.Client(
            timeout=timeout,
            follow_redirects=True,
            headers=BROWSER_HEADERS,
            transport=transport,
        )

    def get(self, url: str, cancel_event: Optional[threading.Event] = None) -> httpx.Response:
        """
        Fetch a URL after waiting out its host's rate limit.

        Args:
            url: Absolute URL to fetch
            cancel_event: Optional run-wide cancel signal

        Returns:
            Successful (2xx) httpx response

        Raises:
            FetchError: On network, timeout, TLS or HTTP status errors
            DiscoveryCancelled: If cancel_event is set before the request starts
        """
        if cancel_event is not None and cancel_event.is_set():
            raise DiscoveryCancelled(f"cancelled before fetching {url}")

        self.rate_limiter.wait(extract_host(url), cancel_event)

        start = time.time()
        try:
            response = self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise FetchError(f"fetching {url!r}: HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise FetchError(f"fetching {url!r}: {e}") from e

        logger.debug(f"Fetched {url} in {time.time() - start:.1f}s ({len(response.content)} bytes)")
        return response

    def close(self):
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
