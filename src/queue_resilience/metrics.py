"""Prometheus metrics for the resilience layer."""

from prometheus_client import Counter, Gauge, Histogram, start_http_server

# Retry queue metrics
retry_queue_messages_total = Counter(
    "retry_queue_messages_total",
    "Messages handled by the retry queue",
    ["queue", "outcome"],
)

retry_queue_retries_total = Counter(
    "retry_queue_retries_total",
    "Total message processing retry attempts",
    ["queue"],
)

messages_dlq_total = Counter(
    "retry_queue_dlq_total",
    "Total messages sent to Dead Letter Queue",
    ["queue"],
)

dlq_size = Gauge(
    "retry_queue_dlq_size",
    "Current number of messages in Dead Letter Queue",
    ["queue"],
)

# Job queue metrics
job_latency_seconds = Histogram(
    "job_queue_latency_seconds",
    "Time from job enqueue to completion",
    ["queue"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
)

jobs_total = Counter(
    "job_queue_jobs_total",
    "Jobs observed by the queue manager",
    ["queue", "outcome"],
)

# Health metrics
HEALTH_STATUS_VALUES = {"up": 1, "degraded": 0.5, "down": 0}

service_health_status = Gauge(
    "service_health_status",
    "Last persisted health status (1=up, 0.5=degraded, 0=down)",
    ["service"],
)

health_check_duration_seconds = Histogram(
    "service_health_check_duration_seconds",
    "Health check round-trip time",
    ["service"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

# Service logger metrics
service_failures_total = Counter(
    "service_failures_total",
    "Failures recorded by the service logger",
    ["service", "error_type"],
)

service_recoveries_total = Counter(
    "service_recoveries_total",
    "Recoveries recorded by the service logger",
    ["service"],
)


def start_metrics_server(port: int = 8080):
    """Expose /metrics for Prometheus on a background thread.

    Returns the HTTP server so the caller can shut it down.
    """
    server, _thread = start_http_server(port)
    return server
