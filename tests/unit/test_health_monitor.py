"""Unit tests for ServiceHealthMonitor."""

import asyncio
import time

import httpx
import pytest

from queue_resilience.health_monitor import (
    HEALTH_TTL_SECONDS,
    STATUS_CHANGES_TTL_SECONDS,
    ServiceHealthMonitor,
)
from queue_resilience.models import HealthEvent, ServiceStatus
from queue_resilience.observers import Observers

URL = "http://gateway.test/health"


class ScriptedService:
    """HTTP handler replaying a scripted sequence of outcomes."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.requests = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests += 1
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if outcome == "timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        if outcome == "refused":
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(outcome)


def make_monitor(mock_redis, clock, service, observers=None, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(service))
    monitor = ServiceHealthMonitor(
        mock_redis,
        http_client=client,
        observers=observers or Observers(),
        clock=clock,
        **kwargs,
    )
    monitor.services.register("gateway", URL)
    return monitor


@pytest.fixture
def changes():
    return []


@pytest.fixture
def observers(changes):
    observers = Observers()
    observers.subscribe(HealthEvent.STATUS_CHANGE, changes.append)
    return observers


class TestPerformHealthCheck:
    @pytest.mark.asyncio
    async def test_unknown_service(self, mock_redis, clock):
        monitor = make_monitor(mock_redis, clock, ScriptedService(200))
        assert await monitor.perform_health_check("missing") is None

    @pytest.mark.asyncio
    async def test_healthy_response_is_up(self, mock_redis, clock, observers, changes):
        monitor = make_monitor(mock_redis, clock, ScriptedService(200), observers)

        record = await monitor.perform_health_check("gateway")

        assert record.status == ServiceStatus.UP
        assert record.failure_count == 0
        assert record.uptime == 100
        assert record.last_check == clock.now
        assert record.last_response_time is not None
        assert await mock_redis.ttl("health:gateway") == HEALTH_TTL_SECONDS
        assert [(c.from_status, c.to_status) for c in changes] == [
            (ServiceStatus.UNKNOWN, ServiceStatus.UP)
        ]

    @pytest.mark.asyncio
    async def test_error_response_is_degraded(self, mock_redis, clock):
        monitor = make_monitor(mock_redis, clock, ScriptedService(503))

        record = await monitor.perform_health_check("gateway")

        assert record.status == ServiceStatus.DEGRADED
        assert record.failure_count == 1

    @pytest.mark.asyncio
    async def test_connection_error_is_down(self, mock_redis, clock):
        monitor = make_monitor(mock_redis, clock, ScriptedService("refused"))

        record = await monitor.perform_health_check("gateway")

        assert record.status == ServiceStatus.DOWN
        assert record.failure_count == 1

    @pytest.mark.asyncio
    async def test_slow_body_hits_total_deadline(self, mock_redis, clock):
        async def trickle():
            for _ in range(40):
                await asyncio.sleep(0.05)
                yield b"x"

        async def slow_service(request):
            return httpx.Response(200, content=trickle())

        monitor = make_monitor(mock_redis, clock, slow_service, response_timeout_ms=200)

        start = time.perf_counter()
        record = await monitor.perform_health_check("gateway")
        elapsed = time.perf_counter() - start

        assert record.status == ServiceStatus.DOWN
        assert elapsed < 1

    @pytest.mark.asyncio
    async def test_three_timeouts_emit_one_status_change(
        self, mock_redis, clock, observers, changes
    ):
        monitor = make_monitor(mock_redis, clock, ScriptedService("timeout"), observers)

        for _ in range(3):
            record = await monitor.perform_health_check("gateway")
            clock.advance(10000)

        assert record.status == ServiceStatus.DOWN
        assert record.failure_count == 3
        assert len(changes) == 1
        assert changes[0].from_status == ServiceStatus.UNKNOWN
        assert changes[0].to_status == ServiceStatus.DOWN
        assert len(await monitor.get_status_changes("gateway")) == 1


class TestHysteresis:
    @pytest.mark.asyncio
    async def test_degraded_escalates_to_down_at_threshold(self, mock_redis, clock):
        monitor = make_monitor(mock_redis, clock, ScriptedService(500))

        statuses = [
            (await monitor.perform_health_check("gateway")).status for _ in range(4)
        ]

        assert statuses == [
            ServiceStatus.DEGRADED,
            ServiceStatus.DEGRADED,
            ServiceStatus.DOWN,
            ServiceStatus.DOWN,
        ]

    @pytest.mark.asyncio
    async def test_up_resets_failure_count(self, mock_redis, clock, observers, changes):
        monitor = make_monitor(
            mock_redis, clock, ScriptedService(500, 500, 200, 500), observers
        )

        records = [await monitor.perform_health_check("gateway") for _ in range(4)]

        assert [r.failure_count for r in records] == [1, 2, 0, 1]
        assert records[-1].status == ServiceStatus.DEGRADED
        assert [c.to_status for c in changes] == [
            ServiceStatus.DEGRADED,
            ServiceStatus.UP,
            ServiceStatus.DEGRADED,
        ]

    @pytest.mark.asyncio
    async def test_uptime_percentage(self, mock_redis, clock):
        monitor = make_monitor(mock_redis, clock, ScriptedService(200, 500, 200, 200))

        for _ in range(4):
            record = await monitor.perform_health_check("gateway")

        assert record.total_checks == 4
        assert record.successful_checks == 3
        assert record.uptime == 75

    @pytest.mark.asyncio
    async def test_custom_threshold(self, mock_redis, clock):
        monitor = make_monitor(
            mock_redis, clock, ScriptedService(500), failure_threshold=1
        )
        record = await monitor.perform_health_check("gateway")
        assert record.status == ServiceStatus.DOWN


class TestStatusChanges:
    @pytest.mark.asyncio
    async def test_history_newest_first_with_ttl(self, mock_redis, clock):
        monitor = make_monitor(mock_redis, clock, ScriptedService(200, 500, 200))

        for _ in range(3):
            await monitor.perform_health_check("gateway")
            clock.advance(1000)

        history = await monitor.get_status_changes("gateway")
        assert [c.to_status for c in history] == [
            ServiceStatus.UP,
            ServiceStatus.DEGRADED,
            ServiceStatus.UP,
        ]
        assert await mock_redis.ttl("status-changes:gateway") == STATUS_CHANGES_TTL_SECONDS

    @pytest.mark.asyncio
    async def test_limit(self, mock_redis, clock):
        monitor = make_monitor(mock_redis, clock, ScriptedService(200, 500, 200))
        for _ in range(3):
            await monitor.perform_health_check("gateway")

        assert len(await monitor.get_status_changes("gateway", limit=2)) == 2


class TestSystemHealth:
    @pytest.mark.asyncio
    async def test_no_services_is_healthy(self, mock_redis, clock):
        monitor = make_monitor(mock_redis, clock, ScriptedService(200))
        monitor.services.clear()
        assert await monitor.is_system_healthy() is True

    @pytest.mark.asyncio
    async def test_unchecked_service_is_unhealthy(self, mock_redis, clock):
        monitor = make_monitor(mock_redis, clock, ScriptedService(200))
        assert await monitor.is_system_healthy() is False

    @pytest.mark.asyncio
    async def test_all_up(self, mock_redis, clock):
        monitor = make_monitor(mock_redis, clock, ScriptedService(200))
        await monitor.perform_health_check("gateway")

        assert await monitor.is_system_healthy() is True
        statuses = await monitor.get_all_service_status()
        assert list(statuses) == ["gateway"]

    @pytest.mark.asyncio
    async def test_degraded_is_unhealthy(self, mock_redis, clock):
        monitor = make_monitor(mock_redis, clock, ScriptedService(500))
        await monitor.perform_health_check("gateway")
        assert await monitor.is_system_healthy() is False

    @pytest.mark.asyncio
    async def test_malformed_record_reads_as_missing(self, mock_redis, clock):
        monitor = make_monitor(mock_redis, clock, ScriptedService(200))
        await mock_redis.set("health:gateway", "{bad")
        assert await monitor.get_service_status("gateway") is None


class TestTimers:
    @pytest.mark.asyncio
    async def test_register_checks_immediately(self, mock_redis, clock):
        service = ScriptedService(200)
        monitor = make_monitor(mock_redis, clock, service)

        monitor.register_service("gateway", URL, interval_ms=60000)
        for _ in range(50):
            if await monitor.get_service_status("gateway"):
                break
            await asyncio.sleep(0.01)

        assert (await monitor.get_service_status("gateway")).status == ServiceStatus.UP
        assert service.requests == 1
        await monitor.aclose()

    @pytest.mark.asyncio
    async def test_reregister_replaces_timer(self, mock_redis, clock):
        monitor = make_monitor(mock_redis, clock, ScriptedService(200))
        monitor.register_service("gateway", URL, interval_ms=60000)
        first = monitor.timers.get("gateway")

        monitor.register_service("gateway", URL, interval_ms=60000)
        await asyncio.sleep(0)

        assert first.cancelled() or first.done()
        assert monitor.timers.get("gateway") is not first
        await monitor.aclose()

    @pytest.mark.asyncio
    async def test_unregister(self, mock_redis, clock):
        monitor = make_monitor(mock_redis, clock, ScriptedService(200))
        monitor.register_service("gateway", URL, interval_ms=60000)

        assert monitor.unregister_service("gateway") is True
        assert monitor.unregister_service("gateway") is False
        assert "gateway" not in monitor.timers
        await monitor.aclose()

    @pytest.mark.asyncio
    async def test_aclose_cancels_timers_and_keeps_injected_client(self, mock_redis, clock):
        monitor = make_monitor(mock_redis, clock, ScriptedService(200))
        monitor.register_service("gateway", URL, interval_ms=60000)
        timer = monitor.timers.get("gateway")

        await monitor.aclose()

        assert timer.done()
        assert len(monitor.timers) == 0
        assert monitor.http.is_closed is False
        await monitor.http.aclose()

    @pytest.mark.asyncio
    async def test_aclose_closes_owned_client(self, mock_redis):
        monitor = ServiceHealthMonitor(mock_redis)
        await monitor.aclose()
        assert monitor.http.is_closed is True

    @pytest.mark.asyncio
    async def test_cleanup_forgets_services_and_timers(self, mock_redis, clock):
        monitor = make_monitor(mock_redis, clock, ScriptedService(200))
        monitor.register_service("gateway", URL, interval_ms=60000)
        timer = monitor.timers.get("gateway")

        monitor.cleanup()
        await asyncio.sleep(0)

        assert timer.cancelled() or timer.done()
        assert len(monitor.timers) == 0
        assert len(monitor.services) == 0
        assert await monitor.is_system_healthy() is True
        await monitor.http.aclose()
