"""Active health monitoring of dependent HTTP services.

Each registered service is probed on its own interval. A single bad probe
marks the service ``degraded`` (or ``down`` on connectivity errors); the
service only becomes ``down`` through repeated failures once
``failure_threshold`` consecutive non-up checks accumulate, and any ``up``
probe resets the counter.

Usage:
    monitor = ServiceHealthMonitor(redis_client, failure_threshold=3)
    monitor.register_service("payment-gateway", "http://gateway:8000/health")
    ...
    await monitor.aclose()
"""

import asyncio
import time
from collections.abc import Callable

import httpx
from pydantic import ValidationError

from queue_resilience.logging import LogEventType, get_logger
from queue_resilience.metrics import (
    HEALTH_STATUS_VALUES,
    health_check_duration_seconds,
    service_health_status,
)
from queue_resilience.models import (
    HealthEvent,
    ServiceStatus,
    ServiceStatusRecord,
    StatusChangeEvent,
    now_ms,
)
from queue_resilience.observers import Observers
from queue_resilience.registry import Registry

logger = get_logger(__name__)

HEALTH_PREFIX = "health:"
STATUS_CHANGES_PREFIX = "status-changes:"
HEALTH_TTL_SECONDS = 3600  # 1 hour
STATUS_CHANGES_TTL_SECONDS = 604800  # 7 days
STATUS_CHANGES_LIMIT = 1000

DEFAULT_CHECK_INTERVAL_MS = 10000


class ServiceHealthMonitor:
    """Hysteresis state machine over periodic HTTP health checks."""

    def __init__(
        self,
        redis_client,
        failure_threshold: int = 3,
        response_timeout_ms: int = 5000,
        http_client: httpx.AsyncClient | None = None,
        observers: Observers | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.redis = redis_client
        self.failure_threshold = failure_threshold
        self.response_timeout_ms = response_timeout_ms
        self.observers = observers or Observers()
        self._clock = clock

        self._owns_client = http_client is None
        self.http = http_client or httpx.AsyncClient()

        self.services: Registry[str] = Registry("service")
        self.timers: Registry[asyncio.Task] = Registry("timer")

    @staticmethod
    def health_key(service_name: str) -> str:
        return f"{HEALTH_PREFIX}{service_name}"

    @staticmethod
    def status_changes_key(service_name: str) -> str:
        return f"{STATUS_CHANGES_PREFIX}{service_name}"

    def register_service(
        self,
        name: str,
        url: str,
        interval_ms: int = DEFAULT_CHECK_INTERVAL_MS,
    ) -> None:
        """Start checking ``url`` now and then every ``interval_ms``.

        Registering a name again replaces its URL and timer.
        """
        self.services.register(name, url)
        previous = self.timers.register(
            name,
            asyncio.create_task(
                self._check_loop(name, interval_ms), name=f"health-check:{name}"
            ),
        )
        if previous is not None:
            previous.cancel()

        logger.info(
            "Service registered for health monitoring",
            event_type=LogEventType.STARTUP,
            service=name,
            url=url,
            interval_ms=interval_ms,
        )

    def unregister_service(self, name: str) -> bool:
        timer = self.timers.unregister(name)
        if timer is not None:
            timer.cancel()
        return self.services.unregister(name) is not None

    async def _check_loop(self, name: str, interval_ms: int) -> None:
        while True:
            try:
                await self.perform_health_check(name)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(
                    "Health check failed to record",
                    event_type=LogEventType.ERROR,
                    service=name,
                    error=str(e),
                )
            await asyncio.sleep(interval_ms / 1000)

    async def perform_health_check(self, name: str) -> ServiceStatusRecord | None:
        """Probe one service and record the outcome.

        Returns:
            The persisted record, or None if the service is not registered
        """
        url = self.services.get(name)
        if url is None:
            return None

        start = time.perf_counter()
        try:
            # Deadline covers connect, headers and the full body
            async with asyncio.timeout(self.response_timeout_ms / 1000):
                response = await self.http.get(url)
            response_time = (time.perf_counter() - start) * 1000
            if response.is_success and response_time < self.response_timeout_ms:
                raw_status = ServiceStatus.UP
            else:
                raw_status = ServiceStatus.DEGRADED
            logger.debug(
                "Health check completed",
                event_type=LogEventType.HEALTH_CHECK,
                service=name,
                status_code=response.status_code,
                response_time_ms=round(response_time, 2),
            )
        except (httpx.HTTPError, httpx.InvalidURL, TimeoutError) as e:
            response_time = (time.perf_counter() - start) * 1000
            raw_status = ServiceStatus.DOWN
            logger.warning(
                "Health check request failed",
                event_type=LogEventType.HEALTH_CHECK,
                service=name,
                error_type=type(e).__name__,
                error=str(e),
            )

        health_check_duration_seconds.labels(service=name).observe(response_time / 1000)
        return await self.record_health_check(name, raw_status, response_time)

    async def record_health_check(
        self,
        name: str,
        raw_status: ServiceStatus,
        response_time: float | None,
    ) -> ServiceStatusRecord:
        """Fold one probe outcome into the persisted service status."""
        previous = await self.get_service_status(name)
        now = self._clock()

        if raw_status == ServiceStatus.UP:
            failure_count = 0
        else:
            failure_count = (previous.failure_count if previous else 0) + 1

        status = (
            ServiceStatus.DOWN if failure_count >= self.failure_threshold else raw_status
        )

        total_checks = (previous.total_checks if previous else 0) + 1
        successful_checks = (previous.successful_checks if previous else 0) + (
            1 if raw_status == ServiceStatus.UP else 0
        )

        record = ServiceStatusRecord(
            name=name,
            status=status,
            last_check=now,
            last_response_time=response_time,
            failure_count=failure_count,
            uptime=successful_checks / total_checks * 100,
            total_checks=total_checks,
            successful_checks=successful_checks,
        )
        await self.redis.set(
            self.health_key(name), record.model_dump_json(), ex=HEALTH_TTL_SECONDS
        )
        service_health_status.labels(service=name).set(HEALTH_STATUS_VALUES[status.value])

        previous_status = previous.status if previous else ServiceStatus.UNKNOWN
        if previous_status != status:
            await self._record_status_change(name, previous_status, status, now)

        return record

    async def _record_status_change(
        self,
        name: str,
        from_status: ServiceStatus,
        to_status: ServiceStatus,
        now: int,
    ) -> None:
        event = StatusChangeEvent(
            service_name=name,
            from_status=from_status,
            to_status=to_status,
            timestamp=now,
        )
        key = self.status_changes_key(name)
        await self.redis.lpush(key, event.model_dump_json())
        await self.redis.ltrim(key, 0, STATUS_CHANGES_LIMIT - 1)
        await self.redis.expire(key, STATUS_CHANGES_TTL_SECONDS)

        log = logger.warning if to_status != ServiceStatus.UP else logger.info
        log(
            "Service status changed",
            event_type=LogEventType.STATUS_CHANGE,
            service=name,
            from_status=from_status.value,
            to_status=to_status.value,
        )
        self.observers.emit(HealthEvent.STATUS_CHANGE, event)

    async def get_service_status(self, name: str) -> ServiceStatusRecord | None:
        raw = await self.redis.get(self.health_key(name))
        if raw is None:
            return None
        try:
            return ServiceStatusRecord.model_validate_json(raw)
        except ValidationError as e:
            logger.error(
                "Malformed health record",
                event_type=LogEventType.ERROR,
                service=name,
                error=str(e),
            )
            return None

    async def get_all_service_status(self) -> dict[str, ServiceStatusRecord]:
        statuses = {}
        for name in self.services:
            record = await self.get_service_status(name)
            if record is not None:
                statuses[name] = record
        return statuses

    async def is_system_healthy(self) -> bool:
        """True if every registered service was last seen ``up``.

        A registered service without a record yet counts as unhealthy.
        """
        for name in self.services:
            record = await self.get_service_status(name)
            if record is None or record.status != ServiceStatus.UP:
                return False
        return True

    async def get_status_changes(
        self, name: str, limit: int = 100
    ) -> list[StatusChangeEvent]:
        """Recent status transitions of a service, newest first."""
        raw_events = await self.redis.lrange(self.status_changes_key(name), 0, limit - 1)
        events = []
        for raw in raw_events:
            try:
                events.append(StatusChangeEvent.model_validate_json(raw))
            except ValidationError:
                logger.error("Skipping malformed status change", service=name)
        return events

    def cleanup(self) -> None:
        """Cancel every health-check timer and forget the registered services."""
        for timer in self.timers.values():
            timer.cancel()
        self.timers.clear()
        self.services.clear()

    async def aclose(self) -> None:
        timers = self.timers.values()
        self.cleanup()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
        if self._owns_client:
            await self.http.aclose()
        logger.info("Health monitor stopped", event_type=LogEventType.SHUTDOWN)
