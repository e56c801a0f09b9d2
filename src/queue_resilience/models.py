"""Data model of the resilience layer.

Records stored in Redis are serialized with ``model_dump_json`` and carry
integer epoch-millisecond timestamps.
"""

import time
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


# --- Retry queue ---


class RetryableMessage(BaseModel):
    """One unit of work awaiting processing."""

    id: str
    payload: Any = None
    retry_count: int = Field(default=0, ge=0)
    created_at: int
    next_retry_at: int
    last_error: str | None = None


class DeadLetterEntry(RetryableMessage):
    """A message that exhausted its retry budget."""

    sent_to_dlq_at: int

    def to_message(self, now: int) -> RetryableMessage:
        """Convert back into an active message with a fresh retry budget."""
        return RetryableMessage(
            id=self.id,
            payload=self.payload,
            retry_count=0,
            created_at=self.created_at,
            next_retry_at=now,
            last_error=self.last_error,
        )


class ProcessResult(BaseModel):
    """Outcome of a single dequeue_and_process call."""

    success: bool
    message_id: str | None = None
    error: str | None = None


class QueueStats(BaseModel):
    queue_size: int
    dlq_size: int
    avg_retries: float


class RetryQueueEvent(str, Enum):
    """Notifications emitted by RetryQueue."""

    ENQUEUED = "enqueued"
    PROCESSED = "processed"
    RETRY = "retry"
    DLQ = "dlq"
    DLQ_RETRY = "dlq_retry"
    MALFORMED = "malformed"


class QueueNotification(BaseModel):
    """Payload delivered to RetryQueue observers."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    event: RetryQueueEvent
    queue_name: str
    message_id: str | None = None
    retry_count: int | None = None
    next_retry_delay_ms: int | None = None
    error: BaseException | None = None
    payload: Any = None


# --- Job queue ---


class QueueDefinition(BaseModel):
    """Static policy for a named job queue."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    concurrency: int = Field(default=1, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    backoff_delay: int = Field(default=5000, ge=0)


class JobMetricSample(BaseModel):
    queue_name: str
    latency_ms: float
    timestamp: int


class QueueMetrics(BaseModel):
    """Live counts plus latency aggregates for one job queue."""

    queue_name: str
    active_count: int = 0
    waiting_count: int = 0
    completed_count: int = 0
    failed_count: int = 0
    delayed_count: int = 0
    stalled_count: int = 0
    average_latency: float = 0.0
    p95_latency: float = 0.0
    p99_latency: float = 0.0
    throughput: int = 0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


# --- Health ---


class ServiceStatus(str, Enum):
    UNKNOWN = "unknown"
    UP = "up"
    DEGRADED = "degraded"
    DOWN = "down"


class ServiceStatusRecord(BaseModel):
    """Current health of a monitored dependency."""

    name: str
    status: ServiceStatus
    last_check: int
    last_response_time: float | None = None
    failure_count: int = 0
    uptime: float = 100.0
    total_checks: int = 0
    successful_checks: int = 0


class StatusChangeEvent(BaseModel):
    service_name: str
    from_status: ServiceStatus
    to_status: ServiceStatus
    timestamp: int


class HealthEvent(str, Enum):
    STATUS_CHANGE = "status_change"


# --- Service logging ---


class FailureLogEntry(BaseModel):
    timestamp: int
    service_name: str
    error_type: str
    message: str
    stack: str | None = None
    operation: str | None = None
    retry_count: int | None = None
    duration: float | None = None


class RecoveryLogEntry(BaseModel):
    timestamp: int
    service_name: str
    failure_duration_ms: int | None = None
    messages_recovered: int | None = None
    additional_data: dict[str, Any] | None = None


class FailureStats(BaseModel):
    """Failure summary over the retained window of failure logs.

    ``failure_rate`` is the percentage of the capped window that is
    occupied, not a failures-per-time rate.
    """

    total_failures: int = 0
    failure_rate: float = 0.0
    last_failure: FailureLogEntry | None = None
    common_errors: dict[str, int] = Field(default_factory=dict)
