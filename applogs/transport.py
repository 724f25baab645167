"""
HTTP transport for applogs.

Posts batches to the collector as a JSON array with httpx, retrying within a
send and failing fast through a circuit breaker while the collector is down.
The collector URL is either static or discovered from a small JSON document
and time-cached.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence

import httpx

from .errors import DeliveryError, EndpointError
from .resilience import CircuitBreaker, CircuitBreakerConfig, RetryConfig, RetryPolicy
from .types import SDK_VERSION, AppLogsConfig, LogEntry, encode_batch

logger = logging.getLogger(__name__)

# Auth failures are not retried
NON_RETRYABLE_STATUS = (401, 403)


class EndpointCache:
    """
    Time-cached collector URL.

    ``last`` keeps the most recent successfully resolved URL even after it
    goes stale, for callers that cannot wait for a refresh.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._url: str | None = None
        self._resolved_at: float | None = None

    @property
    def last(self) -> str | None:
        return self._url

    def is_fresh(self) -> bool:
        if self._url is None or self._resolved_at is None:
            return False
        return self._clock() - self._resolved_at < self.ttl

    def store(self, url: str):
        self._url = url
        self._resolved_at = self._clock()

    async def get(self, fetch: Callable[[], Awaitable[str]]) -> str:
        """Return the cached URL, refreshing it through ``fetch`` when stale."""
        if self.is_fresh():
            return self._url
        try:
            url = await fetch()
        except Exception as e:
            if self._url:
                logger.warning(f"Endpoint refresh failed, using stale endpoint: {e}")
                return self._url
            raise EndpointError(f"could not resolve collector endpoint: {e}") from e
        self.store(url)
        return url


class Transport:
    """
    Sends batches of log entries to the collector.

    ``send`` is the normal asynchronous path. ``send_blocking`` makes one
    synchronous attempt against the last resolved endpoint and is meant for
    teardown, when no further event-loop turns may be granted.
    """

    def __init__(
        self,
        config: AppLogsConfig,
        *,
        http_transport: httpx.AsyncBaseTransport | None = None,
        sync_transport: httpx.BaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            config: Client configuration
            http_transport: httpx transport for the async client (tests, proxies)
            sync_transport: httpx transport for the blocking client
            clock: Monotonic clock for the circuit breaker and endpoint cache
        """
        self.config = config
        self._http_transport = http_transport
        self._sync_transport = sync_transport
        self._client: httpx.AsyncClient | None = None
        self._retry = RetryPolicy(
            RetryConfig(max_retries=config.max_retries, retry_delay=config.retry_delay)
        )
        self._breaker = CircuitBreaker(CircuitBreakerConfig(), name="applogs-transport", clock=clock)
        self._endpoints = EndpointCache(config.endpoint_ttl, clock=clock)

        self._sent_count = 0
        self._error_count = 0
        self._last_error: str | None = None

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
            "User-Agent": f"applogs-python/{SDK_VERSION}",
        }

    def _async_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.config.timeout,
                transport=self._http_transport,
            )
        return self._client

    @property
    def circuit_state(self) -> str:
        return self._breaker.state.value

    async def resolve_endpoint(self) -> str:
        """Collector URL, discovered and cached when a discovery URL is set."""
        if not self.config.discovery_url:
            self._endpoints.store(self.config.endpoint)
            return self.config.endpoint
        return await self._endpoints.get(self._discover)

    async def _discover(self) -> str:
        response = await self._async_client().get(
            self.config.discovery_url,
            headers={"Authorization": f"Bearer {self.config.api_key}"},
        )
        return self._endpoint_from(response)

    @staticmethod
    def _endpoint_from(response: httpx.Response) -> str:
        """Read the collector URL out of a discovery document response."""
        response.raise_for_status()
        document = response.json()
        endpoint = document.get("endpoint") if isinstance(document, dict) else None
        if not isinstance(endpoint, str) or not endpoint:
            raise EndpointError("discovery document has no endpoint")
        logger.debug(f"Discovered collector endpoint {endpoint}")
        return endpoint

    def _resolve_blocking(self, client: httpx.Client, entries: Sequence[LogEntry]) -> str:
        """Cached endpoint, or a synchronous discovery when nothing is cached yet."""
        url = self.cached_endpoint()
        if url:
            return url
        if not self.config.discovery_url:
            raise EndpointError("no resolved endpoint for a blocking send", entries)

        try:
            response = client.get(
                self.config.discovery_url,
                headers={"Authorization": f"Bearer {self.config.api_key}"},
            )
            url = self._endpoint_from(response)
        except (httpx.HTTPError, ValueError) as e:
            self._record_error(str(e))
            raise EndpointError(f"could not resolve collector endpoint: {e}", entries) from e
        except EndpointError as e:
            raise EndpointError(str(e), entries) from e

        self._endpoints.store(url)
        return url

    def cached_endpoint(self) -> str | None:
        """Last resolved endpoint, falling back to the configured one."""
        return self._endpoints.last or self.config.endpoint

    async def send(self, entries: Sequence[LogEntry]) -> None:
        """
        Deliver one batch.

        Raises:
            DeliveryError: every attempt failed or the circuit is open
        """
        if not entries:
            return
        if not self._breaker.should_allow_request():
            raise DeliveryError("circuit open, collector marked unavailable", entries)

        payload = encode_batch(entries)
        last_error: Exception | None = None

        for attempt in self._retry.attempts():
            try:
                url = await self.resolve_endpoint()
                response = await self._async_client().post(url, content=payload, headers=self._headers())
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                last_error = e
                self._record_error(f"HTTP {e.response.status_code}")
                if e.response.status_code in NON_RETRYABLE_STATUS:
                    break
            except (httpx.HTTPError, DeliveryError) as e:
                last_error = e
                self._record_error(str(e))
            else:
                self._breaker.record_success()
                self._sent_count += len(entries)
                logger.debug(f"Delivered {len(entries)} log entries")
                return

            if not self._retry.is_last(attempt):
                await asyncio.sleep(self._retry.delay_for(attempt))

        self._breaker.record_failure()
        raise DeliveryError(
            f"failed to deliver {len(entries)} log entries: {self._last_error}", entries
        ) from last_error

    def send_blocking(self, entries: Sequence[LogEntry]) -> None:
        """
        One synchronous attempt bounded by ``teardown_timeout``.

        When no endpoint has been resolved yet, the discovery document is
        fetched first with the same client and cached.

        Raises:
            DeliveryError: no endpoint could be resolved or the request failed
        """
        if not entries:
            return

        try:
            with httpx.Client(timeout=self.config.teardown_timeout, transport=self._sync_transport) as client:
                url = self._resolve_blocking(client, entries)
                response = client.post(url, content=encode_batch(entries), headers=self._headers())
                response.raise_for_status()
        except httpx.HTTPError as e:
            self._record_error(str(e))
            raise DeliveryError(f"blocking send failed: {e}", entries) from e

        self._sent_count += len(entries)

    def _record_error(self, message: str):
        self._error_count += 1
        self._last_error = message

    def get_stats(self) -> dict:
        return {
            "sent_count": self._sent_count,
            "error_count": self._error_count,
            "last_error": self._last_error,
            "circuit_state": self.circuit_state,
            "endpoint": self.cached_endpoint(),
        }

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
