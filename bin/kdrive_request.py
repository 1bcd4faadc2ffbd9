#!/usr/bin/env python3
"""
ktools Request Transport

Reliable single-request layer for the kDrive HTTP API.

Every call made by ktools goes through RequestTransport.execute(), which:
- Waits for a token from the client's token bucket (global rate limit)
- Sends the request with a bearer token and a per-attempt timeout
- Retries HTTP 429 with exponential backoff (1s, 2s, ...)
- Fails immediately on any other status >= 400
- Returns the raw response body; decoding is the caller's job

Cancellation is cooperative: the transport owns an asyncio.Event that the CLI
sets on SIGINT/SIGTERM, and every wait inside execute() gives up as soon as it
is set.
"""

from __future__ import annotations

import asyncio
import json
import sys
import time
from typing import Any, Optional

import aiohttp


DEFAULT_RATE_LIMIT = 10.0       # requests per second
DEFAULT_RATE_CAPACITY = 20      # burst size
DEFAULT_TIMEOUT_SEC = 30.0
DEFAULT_MAX_ATTEMPTS = 3        # first try + 2 retries on 429
DEFAULT_BACKOFF_SEC = 1.0


# =============================================================================
# ERRORS
# =============================================================================

class KDriveError(Exception):
    """Base class for every error raised by ktools."""


class TransportTimeout(KDriveError):
    """A single request attempt exceeded its deadline."""

    def __init__(self, method: str, path: str, timeout_sec: float):
        self.method = method
        self.path = path
        self.timeout_sec = timeout_sec
        super().__init__(f"request timeout after {timeout_sec:g}s: {method} {path}")


class TransportError(KDriveError):
    """Network-level failure other than a timeout (refused, reset, ...)."""


class RateLimited(KDriveError):
    """The server kept answering 429 after all retries."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"API rate limited (429) after {attempts} attempts")


class APIError(KDriveError):
    """Non-429 error status, or a response envelope whose result is not 'success'."""

    def __init__(self, status: int, body: bytes):
        self.status = status
        self.body = body
        text = body.decode("utf-8", errors="replace")
        super().__init__(f"API error ({status}): {text}")


class DecodeError(KDriveError):
    """Response body did not match the expected schema."""


class Cancelled(KDriveError):
    """The shared shutdown event was set."""

    def __init__(self, message: str = "operation cancelled"):
        super().__init__(message)


class NotFound(KDriveError):
    """A path segment or category name could not be resolved."""


class ConfigError(KDriveError):
    """Missing or invalid configuration."""


# =============================================================================
# RATE LIMITING
# =============================================================================

class TokenBucket:
    """
    Async token bucket shared by every request of one client.

    Starts full so the first `capacity` requests go out immediately, then
    refills at `rate` tokens per second.
    """

    def __init__(self, rate: float, capacity: int, shutdown: asyncio.Event):
        self._rate = max(0.1, float(rate))
        self._capacity = max(1, int(capacity))
        self._tokens = float(self._capacity)
        self._last = time.monotonic()
        self._lock = asyncio.Lock()
        self._shutdown = shutdown

    @property
    def rate(self) -> float:
        return self._rate

    @property
    def capacity(self) -> int:
        return self._capacity

    async def acquire(self) -> None:
        """Take one token, sleeping until one is available."""
        while not self._shutdown.is_set():
            async with self._lock:
                self._refill_locked()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return
                sleep_s = max(0.005, (1.0 - self._tokens) / self._rate)
            await asyncio.sleep(min(0.05, sleep_s))
        raise Cancelled("cancelled while waiting for rate limiter")

    def _refill_locked(self) -> None:
        now = time.monotonic()
        elapsed = now - self._last
        if elapsed <= 0:
            return
        self._tokens = min(float(self._capacity), self._tokens + elapsed * self._rate)
        self._last = now


# =============================================================================
# TRANSPORT
# =============================================================================

class RequestTransport:
    """
    Issues single HTTP calls against the kDrive API.

    Owns the aiohttp session, the token bucket and the shutdown event. Use it
    as an async context manager, or call open()/close() explicitly.
    """

    def __init__(
        self,
        base_url: str,
        api_token: str,
        *,
        rate_limit: float = DEFAULT_RATE_LIMIT,
        rate_capacity: int = DEFAULT_RATE_CAPACITY,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_sec: float = DEFAULT_BACKOFF_SEC,
        shutdown: Optional[asyncio.Event] = None,
        verbose: bool = False,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_sec = timeout_sec
        self.max_attempts = max(1, max_attempts)
        self.backoff_sec = backoff_sec
        self.verbose = verbose
        self.shutdown = shutdown if shutdown is not None else asyncio.Event()
        self.limiter = TokenBucket(rate_limit, rate_capacity, self.shutdown)

        self._headers = {
            "Authorization": f"Bearer {api_token}",
            "Content-Type": "application/json",
            "User-Agent": "ktools/1.0",
        }
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "RequestTransport":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def open(self) -> aiohttp.ClientSession:
        """Create the underlying session (idempotent) and return it."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=50, ttl_dns_cache=300)
            self._session = aiohttp.ClientSession(
                connector=connector,
                headers=self._headers,
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def debug(self, msg: str) -> None:
        """Print a diagnostic line to stderr when verbose output is on."""
        if self.verbose:
            print(f"[HTTP] {time.strftime('%H:%M:%S')} {msg}", file=sys.stderr)

    async def execute(self, method: str, path: str, body: Any = None) -> bytes:
        """
        Send one API request, retrying only on HTTP 429.

        Args:
            method: HTTP method ("GET", "POST", "DELETE", ...)
            path: Path relative to the base URL, including any query string
            body: Optional request body; bytes are sent as-is, anything else
                  is JSON-encoded

        Returns:
            Raw response body

        Raises:
            Cancelled, TransportTimeout, TransportError, RateLimited, APIError
        """
        if body is None or isinstance(body, (bytes, bytearray)):
            data = body
        else:
            data = json.dumps(body).encode("utf-8")

        url = f"{self.base_url}{path}"

        for attempt in range(self.max_attempts):
            self.debug(f"waiting for rate limiter {method} {path}")
            await self.limiter.acquire()
            if self.shutdown.is_set():
                raise Cancelled()

            self.debug(f"sending {method} {path} attempt={attempt + 1}")
            status, payload = await self._send(method, url, path, data)

            if status == 429:
                if attempt < self.max_attempts - 1:
                    delay = self.backoff_sec * (2 ** attempt)
                    self.debug(f"429 on {method} {path}, backing off {delay:g}s")
                    await self._backoff(delay)
                    continue
                raise RateLimited(self.max_attempts)

            if status >= 400:
                raise APIError(status, payload)

            return payload

        raise RateLimited(self.max_attempts)

    async def _send(
        self,
        method: str,
        url: str,
        path: str,
        data: Optional[bytes],
    ) -> tuple[int, bytes]:
        """Perform one attempt and return (status, body)."""
        session = await self.open()
        try:
            async with session.request(
                method,
                url,
                data=data,
                timeout=aiohttp.ClientTimeout(total=self.timeout_sec),
            ) as response:
                payload = await response.read()
                return response.status, payload
        except asyncio.TimeoutError as e:
            raise TransportTimeout(method, path, self.timeout_sec) from e
        except aiohttp.ClientError as e:
            raise TransportError(f"HTTP request error: {method} {path}: {e}") from e

    async def _backoff(self, delay: float) -> None:
        """Sleep for `delay` seconds unless shutdown is requested first."""
        try:
            await asyncio.wait_for(self.shutdown.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise Cancelled("cancelled during rate-limit backoff")
