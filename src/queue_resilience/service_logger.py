"""Failure and recovery logging for dependent services.

Every entry goes two places: a durable JSON log file pair
(``{service}-error.log`` for errors only, ``{service}-combined.log`` for
everything, each rotated at 5 MB with 5 backups) and a capped Redis list
that backs the failure statistics.

Usage:
    service_logger = ServiceLogger(redis_client, "payments-worker", log_dir="logs")
    await service_logger.log_failure("payment-gateway", exc, retry_count=2, operation="charge")
    stats = await service_logger.get_failure_stats("payment-gateway")
"""

import logging
import traceback
from collections import Counter
from collections.abc import Callable
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from queue_resilience.logging import LogEventType, get_logger
from queue_resilience.metrics import service_failures_total, service_recoveries_total
from queue_resilience.models import (
    FailureLogEntry,
    FailureStats,
    RecoveryLogEntry,
    ServiceStatus,
    now_ms,
)

logger = get_logger(__name__)

FAILURES_PREFIX = "failures:"
RECOVERY_PREFIX = "recovery:"
FAILURES_TTL_SECONDS = 86400  # 24 hours
RECOVERY_TTL_SECONDS = 604800  # 7 days
FAILURE_LOG_LIMIT = 1000

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUP_COUNT = 5


def _build_file_logger(service_name: str, log_dir: Path) -> logging.Logger:
    file_logger = logging.getLogger(f"queue_resilience.service_log.{service_name}")
    file_logger.setLevel(logging.INFO)
    file_logger.propagate = False
    for handler in list(file_logger.handlers):
        file_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter("%(message)s")

    error_handler = RotatingFileHandler(
        log_dir / f"{service_name}-error.log",
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)

    combined_handler = RotatingFileHandler(
        log_dir / f"{service_name}-combined.log",
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    combined_handler.setFormatter(formatter)

    file_logger.addHandler(error_handler)
    file_logger.addHandler(combined_handler)
    return file_logger


class ServiceLogger:
    """Durable failure / recovery log for one owning service."""

    def __init__(
        self,
        redis_client,
        service_name: str,
        log_dir: str | Path = "logs",
        clock: Callable[[], int] = now_ms,
    ):
        self.redis = redis_client
        self.service_name = service_name
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._clock = clock

        self._file_logger = _build_file_logger(service_name, self.log_dir)
        # Rendered independently of the process-wide structlog config
        self.durable = structlog.wrap_logger(
            self._file_logger,
            processors=[
                structlog.stdlib.add_log_level,
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
        ).bind(service=service_name)

    @staticmethod
    def failures_key(service_name: str) -> str:
        return f"{FAILURES_PREFIX}{service_name}"

    @staticmethod
    def recovery_key(service_name: str) -> str:
        return f"{RECOVERY_PREFIX}{service_name}"

    async def log_failure(
        self,
        service_name: str,
        error: BaseException,
        retry_count: int | None = None,
        operation: str | None = None,
        duration: float | None = None,
        additional_data: dict[str, Any] | None = None,
    ) -> FailureLogEntry:
        """Record a failure of ``service_name`` with error details."""
        stack = None
        if error.__traceback__ is not None:
            stack = "".join(traceback.format_exception(error))

        entry = FailureLogEntry(
            timestamp=self._clock(),
            service_name=service_name,
            error_type=type(error).__name__,
            message=str(error),
            stack=stack,
            operation=operation,
            retry_count=retry_count,
            duration=duration,
        )

        self.durable.error(
            "Service failure",
            event_type=LogEventType.SERVICE_FAILURE.value,
            additional_data=additional_data,
            **entry.model_dump(exclude_none=True),
        )

        key = self.failures_key(service_name)
        await self.redis.lpush(key, entry.model_dump_json())
        await self.redis.expire(key, FAILURES_TTL_SECONDS)
        await self.redis.ltrim(key, 0, FAILURE_LOG_LIMIT - 1)

        service_failures_total.labels(
            service=service_name, error_type=entry.error_type
        ).inc()
        logger.warning(
            "Service failure logged",
            event_type=LogEventType.SERVICE_FAILURE,
            service=service_name,
            error_type=entry.error_type,
            operation=operation,
            retry_count=retry_count,
        )
        return entry

    async def log_recovery(
        self,
        service_name: str,
        failure_duration_ms: int | None = None,
        messages_recovered: int | None = None,
        additional_data: dict[str, Any] | None = None,
    ) -> RecoveryLogEntry:
        entry = RecoveryLogEntry(
            timestamp=self._clock(),
            service_name=service_name,
            failure_duration_ms=failure_duration_ms,
            messages_recovered=messages_recovered,
            additional_data=additional_data,
        )

        self.durable.info(
            "Service recovered",
            event_type=LogEventType.SERVICE_RECOVERY.value,
            **entry.model_dump(exclude_none=True),
        )

        key = self.recovery_key(service_name)
        await self.redis.lpush(key, entry.model_dump_json())
        await self.redis.expire(key, RECOVERY_TTL_SECONDS)

        service_recoveries_total.labels(service=service_name).inc()
        logger.info(
            "Service recovery logged",
            event_type=LogEventType.SERVICE_RECOVERY,
            service=service_name,
            failure_duration_ms=failure_duration_ms,
        )
        return entry

    def log_health_check(
        self,
        service_name: str,
        status: ServiceStatus | str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Write a health-check line to the durable log only."""
        status_value = status.value if isinstance(status, ServiceStatus) else status
        log = self.durable.info if status_value == ServiceStatus.UP.value else self.durable.warning
        log(
            "Health check",
            event_type=LogEventType.HEALTH_CHECK.value,
            timestamp=self._clock(),
            service_name=service_name,
            status=status_value,
            details=details,
        )

    async def get_failure_logs(
        self, service_name: str, limit: int = 100
    ) -> list[FailureLogEntry]:
        """Recent failures of a service, newest first."""
        raw_entries = await self.redis.lrange(self.failures_key(service_name), 0, limit - 1)
        entries = []
        for raw in raw_entries:
            try:
                entries.append(FailureLogEntry.model_validate_json(raw))
            except ValidationError:
                logger.error("Skipping malformed failure log", service=service_name)
        return entries

    async def get_recovery_logs(
        self, service_name: str, limit: int = 100
    ) -> list[RecoveryLogEntry]:
        raw_entries = await self.redis.lrange(self.recovery_key(service_name), 0, limit - 1)
        entries = []
        for raw in raw_entries:
            try:
                entries.append(RecoveryLogEntry.model_validate_json(raw))
            except ValidationError:
                logger.error("Skipping malformed recovery log", service=service_name)
        return entries

    async def get_failure_stats(self, service_name: str) -> FailureStats:
        """Summarize the retained failure window of a service.

        ``failure_rate`` is the share of the 1000-entry window in use.
        """
        logs = await self.get_failure_logs(service_name, FAILURE_LOG_LIMIT)
        if not logs:
            return FailureStats()

        return FailureStats(
            total_failures=len(logs),
            failure_rate=len(logs) / FAILURE_LOG_LIMIT * 100,
            last_failure=logs[0],
            common_errors=dict(Counter(entry.error_type for entry in logs)),
        )

    def close(self) -> None:
        for handler in list(self._file_logger.handlers):
            self._file_logger.removeHandler(handler)
            handler.close()
