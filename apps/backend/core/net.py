"""
HTTP client for fetching target pages, plus the token bucket used for pacing.

Targets are untrusted: every fetch runs under a hard wall-clock timeout and a
bounded redirect chain, and identifies itself with a User-Agent and From header.
"""
import os
import time
import asyncio
import logging
from typing import Optional, Dict

import httpx

from core.errors import Unreachable, FetchTimeout

logger = logging.getLogger(__name__)

DEFAULT_UA = "ApexScrapeBot/1.0 (+contact@apexscrape.app)"
DEFAULT_CONTACT = "contact@apexscrape.app"
DEFAULT_TIMEOUT = 20.0
MAX_REDIRECTS = 5
DEFAULT_MAX_SIZE_KB = 2048


class RateLimiter:
    """Simple token bucket rate limiter for throttling"""

    def __init__(self, requests_per_minute: float, burst: int = 1):
        """
        Initialize rate limiter.

        Args:
            requests_per_minute: Maximum requests per minute
            burst: Maximum burst capacity (number of requests that can be made immediately)
        """
        self.requests_per_minute = max(0.001, float(requests_per_minute))
        self.burst = max(1, burst)
        # Refill rate: tokens per second
        self.refill_rate = self.requests_per_minute / 60.0
        self.tokens = float(self.burst)
        self.last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    @classmethod
    def from_interval(cls, interval_seconds: float, burst: int = 1) -> "RateLimiter":
        """Limiter that admits one request per `interval_seconds` on average."""
        interval_seconds = max(0.001, interval_seconds)
        return cls(60.0 / interval_seconds, burst=burst)

    def _refill(self):
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.burst, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def wait_if_needed(self):
        """Wait if necessary to respect rate limit"""
        # The lock is held while sleeping so waiters are admitted one by one in FIFO order.
        async with self._lock:
            self._refill()
            if self.tokens >= 1.0:
                self.tokens -= 1.0
                return

            wait_time = (1.0 - self.tokens) / self.refill_rate
            logger.debug(f"[rate_limiter] Waiting {wait_time:.2f}s for rate limit")
            await asyncio.sleep(wait_time)
            self._refill()
            self.tokens = max(0.0, self.tokens - 1.0)


class HTTPClient:
    """Fetches raw page bodies with identification headers and hard timeouts"""

    def __init__(
        self,
        user_agent: Optional[str] = None,
        contact_email: Optional[str] = None,
        timeout: Optional[float] = None,
        max_redirects: int = MAX_REDIRECTS,
        max_size_kb: int = DEFAULT_MAX_SIZE_KB,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.user_agent = user_agent or os.getenv("APEXSCRAPE_CRAWLER_UA", DEFAULT_UA)
        self.contact_email = contact_email or os.getenv("APEXSCRAPE_CONTACT_EMAIL", DEFAULT_CONTACT)
        self.timeout = timeout if timeout is not None else DEFAULT_TIMEOUT
        self.max_redirects = max_redirects
        self.max_size_kb = max_size_kb
        # Only set in tests (httpx.MockTransport)
        self._transport = transport

    def _get_headers(self, custom_headers: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Build request headers with UA and From"""
        headers = {
            "User-Agent": self.user_agent,
            "From": self.contact_email,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.5",
        }
        if custom_headers:
            headers.update(custom_headers)
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            follow_redirects=True,
            max_redirects=self.max_redirects,
            transport=self._transport,
        )

    async def _get(self, url: str, headers: Dict[str, str]) -> httpx.Response:
        async with self._client() as client:
            response = await client.get(url, headers=headers)
            # Body is already read by client.get; nothing streams past this point.
            return response

    async def fetch_text(self, url: str, headers: Optional[Dict[str, str]] = None) -> str:
        """
        Fetch a URL and return its body as text.

        Args:
            url: Target URL (http or https)
            headers: Extra headers merged over the defaults

        Returns:
            Response body decoded as text

        Raises:
            Unreachable: non-2xx status, transport error, malformed URL or too many redirects
            FetchTimeout: the wall-clock timeout expired
        """
        request_headers = self._get_headers(headers)
        start_time = time.time()

        try:
            # wait_for bounds the whole exchange, not just individual socket reads.
            response = await asyncio.wait_for(self._get(url, request_headers), timeout=self.timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            logger.error(f"[net] Timeout fetching {url}: {e!r}")
            raise FetchTimeout(f"no response from {url} within {self.timeout:g}s")
        except httpx.TooManyRedirects:
            logger.error(f"[net] Too many redirects fetching {url}")
            raise Unreachable(f"more than {self.max_redirects} redirects from {url}")
        except httpx.HTTPError as e:
            logger.error(f"[net] Transport error fetching {url}: {e}")
            raise Unreachable(f"transport error for {url}: {e}")
        except httpx.InvalidURL as e:
            logger.error(f"[net] Invalid URL {url!r}: {e}")
            raise Unreachable(f"invalid URL {url!r}: {e}")

        elapsed_ms = int((time.time() - start_time) * 1000)
        content_length = len(response.content)
        logger.info(f"[net] GET {response.status_code} {url} ({content_length} bytes, {elapsed_ms}ms)")

        if not 200 <= response.status_code < 300:
            raise Unreachable(
                f"HTTP {response.status_code} from {url}",
                status_code=response.status_code,
            )

        text = response.text
        max_chars = self.max_size_kb * 1024
        if len(text) > max_chars:
            logger.warning(f"[net] Content too large: {len(text)} chars (limit: {self.max_size_kb}KB) - {url}")
            text = text[:max_chars]
        return text
