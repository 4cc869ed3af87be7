"""Tests for parley.backend_client: call policies and per-host breakers."""

import httpx
import pytest

from parley.backend_client import POLICIES, BackendClient, CallPolicy, HostBreaker, host_key


class RefusingHosts:
    """Refuses connections to the listed hosts and answers 200 everywhere else."""

    def __init__(self, *hosts: str) -> None:
        self.refused = set(hosts)
        self.calls: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request.url.host)
        if request.url.host in self.refused:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, text="ok")


@pytest.fixture
def hosts():
    return RefusingHosts("down.test")


@pytest.fixture
async def client(hosts):
    backend = BackendClient(
        transport=httpx.MockTransport(hosts.handler),
        breaker_threshold=2,
        breaker_cooldown=60.0,
    )
    await backend.start()
    yield backend
    await backend.stop()


# ---------------------------------------------------------------------------
# Call policies
# ---------------------------------------------------------------------------


class TestCallPolicies:
    async def test_generation_is_sent_once(self, client, hosts):
        with pytest.raises(httpx.ConnectError):
            await client.request("generation", "POST", "http://down.test/generate", json={})
        assert hosts.calls == ["down.test"]

    async def test_registry_is_sent_once(self, client, hosts):
        with pytest.raises(httpx.ConnectError):
            await client.request("registry", "GET", "http://down.test/list_models")
        assert hosts.calls == ["down.test"]

    async def test_preprompt_retries_connect_failures(self, client, hosts, monkeypatch):
        monkeypatch.setitem(POLICIES, "preprompt", CallPolicy(timeout=1.0, attempts=2, backoff=0.0))
        with pytest.raises(httpx.ConnectError):
            await client.request("preprompt", "GET", "http://down.test/p.txt")
        assert hosts.calls == ["down.test", "down.test"]

    async def test_error_status_is_returned_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        backend = BackendClient(transport=httpx.MockTransport(handler))
        await backend.start()
        try:
            resp = await backend.request("preprompt", "GET", "http://busy.test/p.txt")
        finally:
            await backend.stop()
        assert resp.status_code == 503
        assert len(calls) == 1

    async def test_unknown_kind(self, client):
        with pytest.raises(KeyError):
            await client.request("telemetry", "GET", "http://up.test/")

    async def test_not_started(self):
        with pytest.raises(RuntimeError, match="not started"):
            await BackendClient().request("registry", "GET", "http://up.test/")


# ---------------------------------------------------------------------------
# Breakers
# ---------------------------------------------------------------------------


class TestHostBreakers:
    async def test_pauses_host_after_threshold(self, client, hosts):
        for _ in range(2):
            with pytest.raises(httpx.ConnectError):
                await client.request("registry", "GET", "http://down.test/list_models")

        with pytest.raises(httpx.ConnectError, match="paused"):
            await client.request("registry", "GET", "http://down.test/list_models")
        assert len(hosts.calls) == 2
        assert client.paused_hosts() == ["down.test"]

    async def test_other_hosts_unaffected(self, client, hosts):
        for _ in range(2):
            with pytest.raises(httpx.ConnectError):
                await client.request("generation", "POST", "http://down.test/generate")

        resp = await client.request("generation", "POST", "http://up.test/generate")
        assert resp.status_code == 200

    async def test_stream_connect_failures_count(self, client, hosts):
        for _ in range(2):
            with pytest.raises(httpx.ConnectError):
                async for _ in client.stream_lines("generation", "POST", "http://down.test/generate_stream"):
                    pass
        assert client.paused_hosts() == ["down.test"]

    async def test_stream_error_status(self):
        backend = BackendClient(transport=httpx.MockTransport(lambda request: httpx.Response(500, text="boom")))
        await backend.start()
        try:
            with pytest.raises(httpx.HTTPStatusError):
                async for _ in backend.stream_lines("generation", "POST", "http://up.test/generate_stream"):
                    pass
        finally:
            await backend.stop()


class TestHostBreaker:
    def test_success_resets(self):
        breaker = HostBreaker(threshold=2)
        breaker.record(ok=False)
        breaker.record(ok=True)
        breaker.record(ok=False)
        assert not breaker.is_open()
        assert breaker.failures == 1

    def test_reopens_after_cooldown_on_failed_trial(self):
        breaker = HostBreaker(threshold=1, cooldown=0.0)
        breaker.record(ok=False)
        # zero cooldown: the trial call is allowed straight away
        assert not breaker.is_open()
        breaker.record(ok=False)
        assert breaker.opened_at is not None
        assert breaker.failures == 2


def test_host_key_keeps_port():
    assert host_key("http://10.0.0.5:8080/generate_stream") == "10.0.0.5:8080"
    assert host_key("http://registry.test/list_models") == "registry.test"
