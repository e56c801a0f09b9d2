import redis.asyncio as redis

from queue_resilience.config.settings import Settings
from queue_resilience.errors import ResilienceError
from queue_resilience.health_monitor import ServiceHealthMonitor
from queue_resilience.logging import LogEventType, get_logger
from queue_resilience.models import (
    HealthEvent,
    QueueDefinition,
    QueueNotification,
    RetryQueueEvent,
    ServiceStatus,
    StatusChangeEvent,
)
from queue_resilience.observers import Observers
from queue_resilience.poller import RetryQueuePoller
from queue_resilience.queue_manager import JobProcessor, QueueManager
from queue_resilience.registry import Registry
from queue_resilience.retry_queue import Processor, RetryConfig, RetryQueue
from queue_resilience.service_logger import ServiceLogger

logger = get_logger(__name__)

UNHEALTHY_STATUSES = (ServiceStatus.DOWN, ServiceStatus.DEGRADED)


class ResilienceOrchestrator:
    """Owns the resilience components of one worker process and wires them together."""

    def __init__(
        self,
        settings: Settings,
        redis_client=None,
        queue_manager: QueueManager | None = None,
        http_client=None,
    ):
        self.settings = settings
        self.redis = redis_client or redis.from_url(
            settings.REDIS_URL, decode_responses=True
        )
        self.observers = Observers()

        self.retry_queue = RetryQueue(
            self.redis,
            RetryConfig(
                max_retries=settings.RETRY_MAX_RETRIES,
                initial_delay_ms=settings.RETRY_INITIAL_DELAY_MS,
                backoff_multiplier=settings.RETRY_BACKOFF_MULTIPLIER,
                max_delay_ms=settings.RETRY_MAX_DELAY_MS,
            ),
            observers=self.observers,
        )
        self.queue_manager = queue_manager or QueueManager(
            settings.REDIS_URL, metrics_window=settings.METRICS_WINDOW
        )
        self.health_monitor = ServiceHealthMonitor(
            self.redis,
            failure_threshold=settings.HEALTH_FAILURE_THRESHOLD,
            response_timeout_ms=settings.HEALTH_RESPONSE_TIMEOUT_MS,
            http_client=http_client,
            observers=self.observers,
        )
        self.service_logger = ServiceLogger(
            self.redis, settings.SERVICE_NAME, log_dir=settings.LOG_DIR
        )
        self.pollers: Registry[RetryQueuePoller] = Registry("poller")
        # service name -> epoch ms of the first unhealthy status
        self._unhealthy_since: dict[str, int] = {}

        self.observers.subscribe(RetryQueueEvent.RETRY, self._on_message_failure)
        self.observers.subscribe(RetryQueueEvent.DLQ, self._on_message_failure)
        self.observers.subscribe(HealthEvent.STATUS_CHANGE, self._on_status_change)

        logger.info("Resilience orchestrator initialized", service=settings.SERVICE_NAME)

    async def _on_message_failure(self, notification: QueueNotification) -> None:
        error = notification.error or ResilienceError("Message processing failed")
        await self.service_logger.log_failure(
            notification.queue_name,
            error,
            retry_count=notification.retry_count,
            operation=notification.event.value,
            additional_data={
                "message_id": notification.message_id,
                "next_retry_delay_ms": notification.next_retry_delay_ms,
            },
        )

    async def _on_status_change(self, event: StatusChangeEvent) -> None:
        name = event.service_name
        self.service_logger.log_health_check(
            name, event.to_status, {"from_status": event.from_status.value}
        )

        if event.to_status in UNHEALTHY_STATUSES:
            self._unhealthy_since.setdefault(name, event.timestamp)
            return

        if event.to_status == ServiceStatus.UP and event.from_status in UNHEALTHY_STATUSES:
            since = self._unhealthy_since.pop(name, None)
            await self.service_logger.log_recovery(
                name,
                failure_duration_ms=event.timestamp - since if since is not None else None,
                additional_data={"from_status": event.from_status.value},
            )

    def start(self) -> None:
        """Start health checks for every service configured in settings."""
        for name, url in self.settings.MONITORED_SERVICES.items():
            self.health_monitor.register_service(
                name, url, interval_ms=self.settings.HEALTH_CHECK_INTERVAL_MS
            )
        logger.info(
            "Resilience orchestrator started",
            event_type=LogEventType.STARTUP,
            monitored_services=list(self.settings.MONITORED_SERVICES),
        )

    async def add_retry_consumer(
        self, queue_name: str, processor: Processor
    ) -> RetryQueuePoller:
        """Start polling ``queue_name``; replaces an existing consumer."""
        previous = self.pollers.unregister(queue_name)
        if previous is not None:
            await previous.stop()

        poller = RetryQueuePoller(
            self.retry_queue,
            queue_name,
            processor,
            interval_ms=self.settings.RETRY_POLL_INTERVAL_MS,
        )
        self.pollers.register(queue_name, poller)
        poller.start()
        return poller

    async def add_job_queue(
        self, definition: QueueDefinition, processor: JobProcessor
    ) -> None:
        await self.queue_manager.register_queue(definition, processor)

    async def shutdown(self) -> None:
        logger.info("Shutting down resilience orchestrator", event_type=LogEventType.SHUTDOWN)

        for poller in self.pollers.values():
            await poller.stop()
        self.pollers.clear()

        await self.health_monitor.aclose()
        await self.queue_manager.shutdown()
        await self.observers.drain()

        self.service_logger.close()
        await self.redis.aclose()
        logger.info("Resilience orchestrator shut down", event_type=LogEventType.SHUTDOWN)
