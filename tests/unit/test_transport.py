"""Tests for the HTTP transport and endpoint cache."""

import json

import httpx
import pytest

from applogs.errors import DeliveryError, EndpointError
from applogs.transport import EndpointCache, Transport
from applogs.types import SDK_VERSION, AppLogsConfig
from mocks import COLLECTOR_URL, make_entry

DISCOVERY_URL = "https://discovery.test/applogs.json"
DISCOVERED_URL = "https://collector.test/v2/logs"


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class Collector:
    """Scripted collector recording every request it receives"""

    def __init__(self, statuses=(200,), discovery=None):
        self.statuses = list(statuses)
        self.discovery = discovery
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if str(request.url) == DISCOVERY_URL:
            if isinstance(self.discovery, int):
                return httpx.Response(self.discovery)
            return httpx.Response(200, json=self.discovery or {})
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return httpx.Response(status, json={"accepted": status == 200})

    @property
    def log_posts(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "POST"]

    @property
    def discovery_calls(self) -> int:
        return sum(1 for r in self.requests if str(r.url) == DISCOVERY_URL)


def make_transport(config, collector, **kwargs) -> Transport:
    mock = httpx.MockTransport(collector)
    return Transport(config, http_transport=mock, sync_transport=mock, **kwargs)


def discovery_config(**kwargs) -> AppLogsConfig:
    return AppLogsConfig(
        api_key="ak_test",
        discovery_url=DISCOVERY_URL,
        retry_delay=0,
        register_teardown=False,
        **kwargs,
    )


class TestSend:
    """Tests for Transport.send."""

    @pytest.mark.asyncio
    async def test_posts_json_array_with_auth(self, config, entries):
        collector = Collector()
        transport = make_transport(config, collector)

        await transport.send(entries)

        request = collector.log_posts[0]
        assert str(request.url) == COLLECTOR_URL
        assert request.headers["authorization"] == "Bearer ak_test"
        assert request.headers["content-type"] == "application/json"
        assert request.headers["user-agent"] == f"applogs-python/{SDK_VERSION}"
        body = json.loads(request.content)
        assert [item["message"] for item in body] == [e.message for e in entries]
        assert body[0]["traceId"] == "0" * 32
        assert transport.get_stats()["sent_count"] == 5
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_retries_server_errors(self, config, entries):
        collector = Collector(statuses=[500, 503, 200])
        transport = make_transport(config, collector)

        await transport.send(entries)

        assert len(collector.log_posts) == 3
        assert transport.get_stats()["error_count"] == 2
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_with_entries(self, config, entries):
        collector = Collector(statuses=[500])
        transport = make_transport(config, collector)

        with pytest.raises(DeliveryError) as exc_info:
            await transport.send(entries)

        assert len(collector.log_posts) == config.max_retries
        assert exc_info.value.entries == entries
        assert isinstance(exc_info.value.__cause__, httpx.HTTPStatusError)
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_auth_failure_is_not_retried(self, config, entries):
        collector = Collector(statuses=[401])
        transport = make_transport(config, collector)

        with pytest.raises(DeliveryError, match="HTTP 401"):
            await transport.send(entries)

        assert len(collector.log_posts) == 1
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_network_errors_are_retried(self, config, entries):
        attempts = []

        def flaky(request):
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200)

        transport = Transport(config, http_transport=httpx.MockTransport(flaky))
        await transport.send(entries)

        assert len(attempts) == 2
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_circuit_opens_after_repeated_failures(self, config, entries):
        collector = Collector(statuses=[500])
        transport = make_transport(config, collector)

        for _ in range(5):
            with pytest.raises(DeliveryError):
                await transport.send(entries)
        assert transport.circuit_state == "open"
        posts_before = len(collector.log_posts)

        with pytest.raises(DeliveryError, match="circuit open"):
            await transport.send(entries)
        assert len(collector.log_posts) == posts_before
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_empty_batch_is_not_sent(self, config):
        collector = Collector()
        transport = make_transport(config, collector)
        await transport.send([])
        assert collector.requests == []


class TestDiscovery:
    """Collector endpoint discovery and caching."""

    @pytest.mark.asyncio
    async def test_discovered_endpoint_is_used_and_cached(self, entries):
        collector = Collector(discovery={"endpoint": DISCOVERED_URL})
        transport = make_transport(discovery_config(), collector)

        await transport.send(entries)
        await transport.send(entries)

        assert collector.discovery_calls == 1
        assert {str(r.url) for r in collector.log_posts} == {DISCOVERED_URL}
        assert transport.cached_endpoint() == DISCOVERED_URL
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_stale_endpoint_survives_failed_refresh(self, entries):
        clock = FakeClock()
        collector = Collector(discovery={"endpoint": DISCOVERED_URL})
        transport = make_transport(discovery_config(endpoint_ttl=60), collector, clock=clock)
        await transport.send(entries)

        clock.now += 61
        collector.discovery = 503
        await transport.send(entries)

        assert collector.discovery_calls == 2
        assert str(collector.log_posts[-1].url) == DISCOVERED_URL
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_unresolvable_endpoint_fails_delivery(self, entries):
        collector = Collector(discovery=500)
        transport = make_transport(discovery_config(), collector)

        with pytest.raises(DeliveryError):
            await transport.send(entries)

        assert collector.log_posts == []
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_discovery_document_without_endpoint(self):
        collector = Collector(discovery={"region": "eu"})
        transport = make_transport(discovery_config(), collector)

        with pytest.raises(EndpointError):
            await transport.resolve_endpoint()
        await transport.aclose()


class TestSendBlocking:
    """Synchronous teardown send."""

    def test_posts_once_to_cached_endpoint(self, config, entries):
        collector = Collector()
        transport = make_transport(config, collector)

        transport.send_blocking(entries)

        assert len(collector.log_posts) == 1
        assert str(collector.log_posts[0].url) == COLLECTOR_URL

    def test_failure_raises_without_retry(self, config, entries):
        collector = Collector(statuses=[500])
        transport = make_transport(config, collector)

        with pytest.raises(DeliveryError):
            transport.send_blocking(entries)
        assert len(collector.log_posts) == 1

    def test_discovers_endpoint_when_nothing_is_cached(self, entries):
        collector = Collector(discovery={"endpoint": DISCOVERED_URL})
        transport = make_transport(discovery_config(), collector)

        transport.send_blocking(entries)
        transport.send_blocking(entries)

        assert collector.discovery_calls == 1
        assert [str(r.url) for r in collector.log_posts] == [DISCOVERED_URL, DISCOVERED_URL]
        assert transport.cached_endpoint() == DISCOVERED_URL

    def test_failed_discovery_raises_without_posting(self, entries):
        collector = Collector(discovery=503)
        transport = make_transport(discovery_config(), collector)

        with pytest.raises(EndpointError) as exc_info:
            transport.send_blocking(entries)

        assert exc_info.value.entries == entries
        assert collector.log_posts == []
        assert transport.cached_endpoint() is None

    def test_discovery_document_without_endpoint_raises(self, entries):
        collector = Collector(discovery={"region": "eu"})
        transport = make_transport(discovery_config(), collector)

        with pytest.raises(EndpointError):
            transport.send_blocking(entries)
        assert collector.log_posts == []


class TestEndpointCache:
    @pytest.mark.asyncio
    async def test_fresh_url_skips_fetch(self):
        clock = FakeClock()
        cache = EndpointCache(ttl=10, clock=clock)
        cache.store("https://a.test")

        async def fetch():
            raise AssertionError("should not refresh")

        assert await cache.get(fetch) == "https://a.test"

    @pytest.mark.asyncio
    async def test_stale_url_is_refreshed(self):
        clock = FakeClock()
        cache = EndpointCache(ttl=10, clock=clock)
        cache.store("https://a.test")
        clock.now = 10

        async def fetch():
            return "https://b.test"

        assert await cache.get(fetch) == "https://b.test"
        assert cache.last == "https://b.test"
        assert cache.is_fresh()

    @pytest.mark.asyncio
    async def test_failed_first_fetch_raises(self):
        cache = EndpointCache(ttl=10)

        async def fetch():
            raise httpx.ConnectError("down")

        with pytest.raises(EndpointError):
            await cache.get(fetch)
        assert cache.last is None
