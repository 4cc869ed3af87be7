"""Pooled async HTTP access to the model registry, preprompt hosts and generation servers."""

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallPolicy:
    """Timeout and connect-retry budget for one kind of upstream call."""

    timeout: float
    attempts: int = 1
    backoff: float = 0.5


# Generation and registry calls reach the upstream at most once
POLICIES: dict[str, CallPolicy] = {
    "generation": CallPolicy(timeout=300.0),
    "registry": CallPolicy(timeout=10.0),
    "preprompt": CallPolicy(timeout=10.0, attempts=2),
}


@dataclass
class HostBreaker:
    """Pauses calls to one host for ``cooldown`` seconds after ``threshold`` connect failures in a row."""

    threshold: int = 5
    cooldown: float = 30.0
    failures: int = field(default=0, init=False)
    opened_at: float | None = field(default=None, init=False)

    def is_open(self) -> bool:
        return self.opened_at is not None and time.monotonic() - self.opened_at < self.cooldown

    def record(self, ok: bool) -> None:
        if ok:
            self.failures = 0
            self.opened_at = None
            return
        self.failures += 1
        # Re-armed on every failure past the threshold, so a failed trial call pauses again
        if self.failures >= self.threshold:
            self.opened_at = time.monotonic()


def host_key(url: str) -> str:
    parsed = httpx.URL(url)
    return f"{parsed.host}:{parsed.port}" if parsed.port else parsed.host


class BackendClient:
    """Shared httpx pool with one breaker per upstream host.

    Every call names a policy from ``POLICIES``; only failed connects are
    retried, and only as often as that policy allows.
    """

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport | None = None,
        *,
        breaker_threshold: int = 5,
        breaker_cooldown: float = 30.0,
    ) -> None:
        self._transport = transport
        self._threshold = breaker_threshold
        self._cooldown = breaker_cooldown
        self._client: httpx.AsyncClient | None = None
        self._breakers: dict[str, HostBreaker] = {}

    async def start(self) -> None:
        self._client = httpx.AsyncClient(
            follow_redirects=True,
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            transport=self._transport,
        )

    async def stop(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Backend client is not started")
        return self._client

    def _guard(self, url: str) -> tuple[str, HostBreaker]:
        key = host_key(url)
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = self._breakers[key] = HostBreaker(self._threshold, self._cooldown)
        if breaker.is_open():
            raise httpx.ConnectError(f"Calls to {key} paused after {breaker.failures} connection failures")
        return key, breaker

    def _connect_failed(self, key: str, breaker: HostBreaker, exc: Exception) -> None:
        breaker.record(ok=False)
        if breaker.failures == breaker.threshold:
            logger.warning(
                "Pausing calls to %s for %.0fs after %d connection failures: %s",
                key, breaker.cooldown, breaker.failures, exc,
            )

    async def request(self, kind: str, method: str, url: str, **kwargs) -> httpx.Response:
        """Send one call under the ``kind`` policy and return the response, whatever its status."""
        policy = POLICIES[kind]
        key, breaker = self._guard(url)
        attempt = 1
        while True:
            try:
                resp = await self._http().request(method, url, timeout=policy.timeout, **kwargs)
            except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                self._connect_failed(key, breaker, e)
                if attempt >= policy.attempts or breaker.is_open():
                    raise
                delay = policy.backoff * attempt
                logger.warning("%s call to %s failed: %s (retry in %.1fs)", kind, key, e, delay)
                await asyncio.sleep(delay)
                attempt += 1
            else:
                breaker.record(ok=True)
                return resp

    async def stream_lines(self, kind: str, method: str, url: str, **kwargs) -> AsyncIterator[str]:
        """Open a streaming call and yield decoded text lines.

        The stream stays open while the caller iterates and is closed when
        iteration ends or the consuming task is cancelled. Error statuses
        raise ``httpx.HTTPStatusError`` before any line is yielded. Streams
        are never retried.
        """
        policy = POLICIES[kind]
        key, breaker = self._guard(url)
        try:
            async with self._http().stream(method, url, timeout=policy.timeout, **kwargs) as resp:
                breaker.record(ok=True)
                if resp.is_error:
                    await resp.aread()
                    resp.raise_for_status()
                async for line in resp.aiter_lines():
                    yield line
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            self._connect_failed(key, breaker, e)
            raise

    def paused_hosts(self) -> list[str]:
        """Hosts whose breaker is currently refusing calls."""
        return sorted(key for key, breaker in self._breakers.items() if breaker.is_open())
