"""
Unit tests for the liveness poller
"""

import json

import httpx
import pytest

from deployment.health_checker import HealthCheckConfig, HealthPoller

pytestmark = pytest.mark.unit

HEALTH_URL = "http://qa.example.com:3000/health"


def healthy_after(attempts_needed, version="v1.0.0-rc.1"):
    """Transport that fails until the given attempt, then reports healthy"""
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < attempts_needed:
            return httpx.Response(503, text="starting")
        body = {"status": "healthy", "timestamp": "2026-01-01T00:00:00Z", "version": version}
        return httpx.Response(200, content=json.dumps(body))

    return httpx.MockTransport(handler), calls


class TestHealthPoller:
    """Bounded retry behaviour"""

    @pytest.mark.asyncio
    async def test_healthy_on_fifth_attempt(self, sleeps):
        transport, calls = healthy_after(5)
        async with httpx.AsyncClient(transport=transport) as client:
            poller = HealthPoller(HealthCheckConfig(max_attempts=30, retry_delay=2.0), client=client, sleep=sleeps)
            result = await poller.poll(HEALTH_URL)

        assert result.healthy is True
        assert result.attempts == 5
        assert len(calls) == 5
        # Four waits of 2s between five probes, not the full 60s budget
        assert sleeps.calls == [2.0] * 4
        assert sum(sleeps.calls) == 8.0
        assert result.reported_version == "v1.0.0-rc.1"

    @pytest.mark.asyncio
    async def test_never_exceeds_attempt_budget(self, sleeps):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            poller = HealthPoller(HealthCheckConfig(max_attempts=30, retry_delay=2.0), client=client, sleep=sleeps)
            result = await poller.poll(HEALTH_URL)

        assert result.healthy is False
        assert result.attempts == 30
        assert len(calls) == 30
        assert len(sleeps.calls) == 29
        assert result.last_error == "HTTP 500"

    @pytest.mark.asyncio
    async def test_connection_errors_count_as_failed_attempts(self, sleeps):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            poller = HealthPoller(HealthCheckConfig(max_attempts=3, retry_delay=0.5), client=client, sleep=sleeps)
            result = await poller.poll(HEALTH_URL)

        assert result.healthy is False
        assert result.attempts == 3
        assert all(check.status == "error" for check in result.checks)
        assert "connection refused" in result.last_error

    @pytest.mark.asyncio
    async def test_first_probe_healthy_does_not_sleep(self, sleeps):
        transport, calls = healthy_after(1)
        async with httpx.AsyncClient(transport=transport) as client:
            result = await HealthPoller(client=client, sleep=sleeps).poll(HEALTH_URL)

        assert result.healthy is True
        assert result.attempts == 1
        assert sleeps.calls == []

    @pytest.mark.asyncio
    async def test_non_json_health_body_has_no_version(self, sleeps):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="OK"))
        async with httpx.AsyncClient(transport=transport) as client:
            result = await HealthPoller(client=client, sleep=sleeps).poll(HEALTH_URL)

        assert result.healthy is True
        assert result.reported_version is None

    @pytest.mark.asyncio
    async def test_version_read_from_long_health_document(self, sleeps):
        body = {"status": "healthy", "checks": {"detail": "x" * 2000}, "version": "v1.0.0-rc.3"}
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=json.dumps(body)))
        async with httpx.AsyncClient(transport=transport) as client:
            result = await HealthPoller(client=client, sleep=sleeps).poll(HEALTH_URL)

        assert result.reported_version == "v1.0.0-rc.3"
        assert len(result.checks[0].response_body) == 500

    def test_config_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            HealthCheckConfig(max_attempts=0)
