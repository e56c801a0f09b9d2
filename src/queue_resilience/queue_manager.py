"""Job-queue orchestration over the BullMQ runtime with latency percentiles.

Usage:
    manager = QueueManager("redis://localhost:6379/0")
    await manager.register_queue(
        QueueDefinition(name="payments", concurrency=5, max_attempts=3, backoff_delay=5000),
        process_payment,
    )
    job = await manager.add_job("payments", "process-payment", {"order_id": "o-1"})
    metrics = await manager.get_metrics("payments")
    await manager.shutdown()
"""

import math
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

import redis.asyncio as redis
from bullmq import Job, Queue, Worker

from queue_resilience.logging import LogEventType, get_logger
from queue_resilience.metrics import job_latency_seconds, jobs_total
from queue_resilience.models import (
    JobMetricSample,
    QueueDefinition,
    QueueMetrics,
    now_ms,
)
from queue_resilience.registry import Registry

logger = get_logger(__name__)

# Worker lease settings: a worker that stops renewing its lock for
# LOCK_DURATION_MS has its job reclaimed by the stalled-job checker.
LOCK_DURATION_MS = 30000
LOCK_RENEW_TIME_MS = 15000
STALLED_INTERVAL_MS = 5000
MAX_STALLED_COUNT = 2

DEFAULT_JOB_ATTEMPTS = 3
DEFAULT_BACKOFF_DELAY_MS = 5000
METRICS_WINDOW = 1000

JOB_COUNT_TYPES = ("active", "waiting", "completed", "failed", "delayed")

JobProcessor = Callable[[Any], Awaitable[Any]]


def percentile(samples: Sequence[float], p: float) -> float:
    """Nearest-rank percentile; 0 for an empty sample set."""
    if not samples:
        return 0.0
    ordered = sorted(samples)
    idx = math.ceil((p / 100) * len(ordered)) - 1
    return float(ordered[min(max(idx, 0), len(ordered) - 1)])


@dataclass
class _Listener:
    emitter: Any
    event: str
    callback: Callable[..., Any]


class QueueManager:
    """Registers named BullMQ queues and workers and aggregates job latency."""

    def __init__(
        self,
        redis_url: str,
        metrics_window: int = METRICS_WINDOW,
        clock: Callable[[], int] = now_ms,
    ):
        self.connection = redis.from_url(redis_url, decode_responses=True)
        self.metrics_window = metrics_window
        self._clock = clock

        self.definitions: Registry[QueueDefinition] = Registry("definition")
        self.queues: Registry[Queue] = Registry("queue")
        self.workers: Registry[Worker] = Registry("worker")
        self.listeners: Registry[list[_Listener]] = Registry("listener")
        self.samples: Registry[deque[JobMetricSample]] = Registry("metrics")
        self._stalled_counts: dict[str, int] = {}

    @property
    def queue_names(self) -> list[str]:
        return self.queues.names()

    def get_queue_definition(self, queue_name: str) -> QueueDefinition | None:
        return self.definitions.get(queue_name)

    async def register_queue(
        self, definition: QueueDefinition, processor: JobProcessor
    ) -> None:
        """Create the queue handle and its worker.

        Registering an existing name closes and replaces the previous
        worker and queue handle.
        """
        name = definition.name
        if name in self.queues:
            await self._release(name)

        async def process(job: Job, token: str) -> Any:
            return await processor(job.data)

        queue = Queue(name, {"connection": self.connection})
        worker = Worker(
            name,
            process,
            {
                "connection": self.connection,
                "concurrency": definition.concurrency,
                "lockDuration": LOCK_DURATION_MS,
                "lockRenewTime": LOCK_RENEW_TIME_MS,
                "stalledInterval": STALLED_INTERVAL_MS,
                "maxStalledCount": MAX_STALLED_COUNT,
            },
        )

        self.definitions.register(name, definition)
        self.queues.register(name, queue)
        self.workers.register(name, worker)
        self.samples.register(name, deque(maxlen=self.metrics_window))
        self._stalled_counts[name] = 0
        self.listeners.register(name, self._attach_listeners(name, worker))

        logger.info(
            "Queue registered",
            event_type=LogEventType.STARTUP,
            queue_name=name,
            concurrency=definition.concurrency,
            max_attempts=definition.max_attempts,
        )

    def _attach_listeners(self, queue_name: str, worker: Worker) -> list[_Listener]:
        def on_completed(job: Job, *_: Any) -> None:
            self.record_sample(queue_name, job)

        def on_failed(job: Job | None, error: Any = None, *_: Any) -> None:
            jobs_total.labels(queue=queue_name, outcome="failed").inc()
            logger.warning(
                "Job failed",
                event_type=LogEventType.JOB_FAILED,
                queue_name=queue_name,
                job_id=getattr(job, "id", None),
                attempts_made=getattr(job, "attemptsMade", None),
                failed_reason=getattr(job, "failedReason", None) or str(error),
            )

        def on_stalled(job_id: str, *_: Any) -> None:
            self._stalled_counts[queue_name] = self._stalled_counts.get(queue_name, 0) + 1
            jobs_total.labels(queue=queue_name, outcome="stalled").inc()
            logger.warning(
                "Job stalled",
                event_type=LogEventType.JOB_STALLED,
                queue_name=queue_name,
                job_id=job_id,
            )

        bindings = [
            _Listener(worker, "completed", on_completed),
            _Listener(worker, "failed", on_failed),
            _Listener(worker, "stalled", on_stalled),
        ]
        for binding in bindings:
            worker.on(binding.event, binding.callback)
        return bindings

    def _detach_listeners(self, queue_name: str) -> None:
        for binding in self.listeners.unregister(queue_name) or []:
            binding.emitter.off(binding.event, binding.callback)

    def record_sample(self, queue_name: str, job: Job) -> JobMetricSample | None:
        """Record enqueue-to-completion latency of a finished job."""
        buffer = self.samples.get(queue_name)
        if buffer is None:
            return None

        now = self._clock()
        sample = JobMetricSample(
            queue_name=queue_name,
            latency_ms=max(now - job.timestamp, 0),
            timestamp=now,
        )
        buffer.append(sample)

        jobs_total.labels(queue=queue_name, outcome="completed").inc()
        job_latency_seconds.labels(queue=queue_name).observe(sample.latency_ms / 1000)
        logger.debug(
            "Job completed",
            event_type=LogEventType.JOB_COMPLETED,
            queue_name=queue_name,
            job_id=job.id,
            latency_ms=sample.latency_ms,
        )
        return sample

    async def get_metrics(self, queue_name: str) -> QueueMetrics | None:
        """Get real-time metrics for a queue, or None if it is not registered."""
        queue = self.queues.get(queue_name)
        if queue is None:
            return None

        counts = await queue.getJobCounts(*JOB_COUNT_TYPES)
        latencies = [s.latency_ms for s in self.samples.get(queue_name) or ()]
        average = sum(latencies) / len(latencies) if latencies else 0.0

        return QueueMetrics(
            queue_name=queue_name,
            active_count=counts.get("active", 0),
            waiting_count=counts.get("waiting", 0),
            completed_count=counts.get("completed", 0),
            failed_count=counts.get("failed", 0),
            delayed_count=counts.get("delayed", 0),
            stalled_count=self._stalled_counts.get(queue_name, 0),
            average_latency=average,
            p95_latency=percentile(latencies, 95),
            p99_latency=percentile(latencies, 99),
            throughput=len(latencies),
        )

    async def get_all_metrics(self) -> list[QueueMetrics]:
        metrics = []
        for queue_name in self.queues:
            metric = await self.get_metrics(queue_name)
            if metric:
                metrics.append(metric)
        return metrics

    async def get_queue_status(self) -> dict[str, QueueMetrics]:
        return {metric.queue_name: metric for metric in await self.get_all_metrics()}

    async def add_job(
        self,
        queue_name: str,
        job_name: str,
        data: Any,
        delay: int | None = None,
        priority: int | None = None,
        attempts: int | None = None,
    ) -> Job | None:
        """Enqueue a job with retry and exponential backoff.

        Returns:
            The created job, or None when the queue is unknown or the
            runtime rejects the job
        """
        queue = self.queues.get(queue_name)
        if queue is None:
            logger.error("Queue not found", queue_name=queue_name, job_name=job_name)
            return None

        opts: dict[str, Any] = {
            "attempts": attempts or DEFAULT_JOB_ATTEMPTS,
            "backoff": {"type": "exponential", "delay": DEFAULT_BACKOFF_DELAY_MS},
            "removeOnComplete": True,
            "removeOnFail": False,
        }
        if delay is not None:
            opts["delay"] = delay
        if priority is not None:
            opts["priority"] = priority

        try:
            job = await queue.add(job_name, data, opts)
        except Exception as e:
            logger.exception(
                "Failed to enqueue job",
                queue_name=queue_name,
                job_name=job_name,
                error=str(e),
            )
            return None

        logger.debug(
            "Job enqueued",
            event_type=LogEventType.JOB_ENQUEUED,
            queue_name=queue_name,
            job_id=job.id,
            job_name=job_name,
        )
        return job

    async def _release(self, queue_name: str) -> None:
        self._detach_listeners(queue_name)
        worker = self.workers.unregister(queue_name)
        if worker is not None:
            await worker.close()
        queue = self.queues.unregister(queue_name)
        if queue is not None:
            await queue.close()

    async def shutdown(self) -> None:
        """Close listeners, then workers, then queues, then the connection."""
        logger.info("Shutting down QueueManager", event_type=LogEventType.SHUTDOWN)

        for queue_name in self.listeners:
            self._detach_listeners(queue_name)

        for worker in self.workers.values():
            await worker.close()

        for queue in self.queues.values():
            await queue.close()

        await self.connection.aclose()

        self.workers.clear()
        self.queues.clear()
        self.definitions.clear()
        self.listeners.clear()
        self.samples.clear()
        self._stalled_counts.clear()
        logger.info("QueueManager shut down", event_type=LogEventType.SHUTDOWN)
