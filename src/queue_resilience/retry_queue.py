"""Redis-backed retry queue with exponential backoff and a dead-letter queue.

Messages are LPUSHed to the head of ``retry:{queue}`` and RPOPed from the
tail, so always-ready messages come out in enqueue order. A message that is
popped before its ``next_retry_at`` goes back to the head unchanged; under
a backlog of ready messages this lets it jump ahead of older ones.

Usage:
    import redis.asyncio as redis
    from queue_resilience.retry_queue import RetryQueue

    client = redis.from_url("redis://localhost:6379/0", decode_responses=True)
    queue = RetryQueue(client)

    message_id = await queue.enqueue("payments", {"order_id": "o-1"})
    result = await queue.dequeue_and_process("payments", charge_card)
"""

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, Field, ValidationError
from redis.exceptions import RedisError

from queue_resilience.errors import MalformedMessageError
from queue_resilience.logging import LogEventType, get_logger
from queue_resilience.metrics import (
    dlq_size,
    messages_dlq_total,
    retry_queue_messages_total,
    retry_queue_retries_total,
)
from queue_resilience.models import (
    DeadLetterEntry,
    ProcessResult,
    QueueNotification,
    QueueStats,
    RetryableMessage,
    RetryQueueEvent,
    now_ms,
)
from queue_resilience.observers import Observers

logger = get_logger(__name__)

RETRY_PREFIX = "retry:"
DLQ_PREFIX = "dlq:"
POISON_PREFIX = "poison:"
QUEUE_TTL_SECONDS = 86400  # 24 hours
DLQ_TTL_SECONDS = 604800  # 7 days

SENT_TO_DLQ = "Sent to DLQ"
MALFORMED_MESSAGE = "Malformed message"

Processor = Callable[[Any], Awaitable[None]]


class RetryConfig(BaseModel):
    """Retry policy shared by every queue of a RetryQueue instance."""

    max_retries: int = Field(default=3, ge=1)
    initial_delay_ms: int = Field(default=1000, ge=0)
    backoff_multiplier: float = Field(default=2, ge=1)
    max_delay_ms: int = Field(default=60000, ge=0)


class RetryQueue:
    """Per-named-queue retry, backoff and dead-letter engine on Redis lists."""

    def __init__(
        self,
        redis_client,
        config: RetryConfig | None = None,
        observers: Observers | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        """Initialize the retry queue.

        Args:
            redis_client: Async redis client (redis.asyncio.Redis)
            config: Retry policy (defaults: 3 retries, 1s initial, x2, 60s cap)
            observers: Observer registry receiving RetryQueueEvent notifications
            clock: Returns the current time in epoch milliseconds
        """
        self.redis = redis_client
        self.config = config or RetryConfig()
        self.observers = observers or Observers()
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    @staticmethod
    def queue_key(queue_name: str) -> str:
        return f"{RETRY_PREFIX}{queue_name}"

    @staticmethod
    def dlq_key(queue_name: str) -> str:
        return f"{DLQ_PREFIX}{queue_name}"

    @staticmethod
    def poison_key(queue_name: str) -> str:
        return f"{POISON_PREFIX}{queue_name}"

    def backoff_delay(self, retry_count: int) -> int:
        """Delay in ms before attempt ``retry_count + 1``, capped at max_delay_ms."""
        exponent = max(retry_count - 1, 0)
        delay = self.config.initial_delay_ms * (
            self.config.backoff_multiplier**exponent
        )
        return int(min(delay, self.config.max_delay_ms))

    def _lock_for(self, queue_name: str) -> asyncio.Lock:
        lock = self._locks.get(queue_name)
        if lock is None:
            lock = self._locks[queue_name] = asyncio.Lock()
        return lock

    def _notify(self, event: RetryQueueEvent, queue_name: str, **fields: Any) -> None:
        self.observers.emit(
            event, QueueNotification(event=event, queue_name=queue_name, **fields)
        )

    async def enqueue(
        self,
        queue_name: str,
        payload: Any,
        message_id: str | None = None,
    ) -> str:
        """Enqueue a message for processing with retry support.

        Returns:
            The supplied or generated message id
        """
        now = self._clock()
        if message_id is None:
            message_id = f"{queue_name}-{now}-{uuid.uuid4().hex}"
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json")

        message = RetryableMessage(
            id=message_id,
            payload=payload,
            retry_count=0,
            created_at=now,
            next_retry_at=now,
        )

        key = self.queue_key(queue_name)
        await self.redis.lpush(key, message.model_dump_json())
        await self.redis.expire(key, QUEUE_TTL_SECONDS)

        logger.debug(
            "Message enqueued",
            event_type=LogEventType.QUEUE_PUSH,
            queue_name=queue_name,
            message_id=message_id,
        )
        self._notify(
            RetryQueueEvent.ENQUEUED,
            queue_name,
            message_id=message_id,
            payload=payload,
        )
        return message_id

    async def dequeue_and_process(
        self, queue_name: str, processor: Processor
    ) -> ProcessResult:
        """Pop one message and run ``processor`` on its payload.

        Processor exceptions never propagate; they become retries or DLQ
        entries. Redis errors are logged and re-raised.
        """
        async with self._lock_for(queue_name):
            try:
                return await self._dequeue_and_process(queue_name, processor)
            except RedisError:
                logger.exception(
                    "Retry queue store operation failed",
                    event_type=LogEventType.ERROR,
                    queue_name=queue_name,
                )
                raise

    async def _dequeue_and_process(
        self, queue_name: str, processor: Processor
    ) -> ProcessResult:
        key = self.queue_key(queue_name)
        raw = await self.redis.rpop(key)
        if raw is None:
            return ProcessResult(success=True)

        try:
            message = RetryableMessage.model_validate_json(raw)
        except ValidationError as e:
            await self._quarantine(queue_name, raw, e)
            return ProcessResult(success=False, error=MALFORMED_MESSAGE)

        now = self._clock()
        if now < message.next_retry_at:
            # Not due yet: put it back untouched
            await self.redis.lpush(key, raw)
            return ProcessResult(success=True)

        logger.debug(
            "Processing message",
            event_type=LogEventType.QUEUE_POP,
            queue_name=queue_name,
            message_id=message.id,
            retry_count=message.retry_count,
        )

        try:
            await processor(message.payload)
        except asyncio.CancelledError:
            # Interrupted attempts do not count against the retry budget
            await self.redis.lpush(key, raw)
            logger.warning(
                "Processing cancelled, message returned to queue",
                queue_name=queue_name,
                message_id=message.id,
            )
            raise
        except Exception as error:
            return await self._handle_failure(queue_name, message, error, now)

        retry_queue_messages_total.labels(queue=queue_name, outcome="processed").inc()
        logger.info(
            "Message processed",
            event_type=LogEventType.MESSAGE_PROCESSED,
            queue_name=queue_name,
            message_id=message.id,
            retry_count=message.retry_count,
        )
        self._notify(
            RetryQueueEvent.PROCESSED,
            queue_name,
            message_id=message.id,
            retry_count=message.retry_count,
        )
        return ProcessResult(success=True, message_id=message.id)

    async def _handle_failure(
        self,
        queue_name: str,
        message: RetryableMessage,
        error: Exception,
        now: int,
    ) -> ProcessResult:
        message.retry_count += 1
        message.last_error = str(error) or type(error).__name__
        max_retries = self.config.max_retries

        if message.retry_count >= max_retries:
            await self._send_to_dlq(queue_name, message, now)
            logger.warning(
                "Max retries exceeded, sending to DLQ",
                event_type=LogEventType.MESSAGE_DLQ,
                queue_name=queue_name,
                message_id=message.id,
                retry_count=message.retry_count,
                error_type=type(error).__name__,
                error=message.last_error,
            )
            self._notify(
                RetryQueueEvent.DLQ,
                queue_name,
                message_id=message.id,
                retry_count=message.retry_count,
                error=error,
            )
            return ProcessResult(
                success=False, message_id=message.id, error=SENT_TO_DLQ
            )

        delay = self.backoff_delay(message.retry_count)
        message.next_retry_at = now + delay
        await self.redis.lpush(self.queue_key(queue_name), message.model_dump_json())

        retry_queue_retries_total.labels(queue=queue_name).inc()
        logger.info(
            "Message scheduled for retry",
            event_type=LogEventType.MESSAGE_RETRY,
            queue_name=queue_name,
            message_id=message.id,
            retry_count=message.retry_count,
            next_retry_delay_ms=delay,
            error_type=type(error).__name__,
            error=message.last_error,
        )
        self._notify(
            RetryQueueEvent.RETRY,
            queue_name,
            message_id=message.id,
            retry_count=message.retry_count,
            next_retry_delay_ms=delay,
            error=error,
        )
        return ProcessResult(
            success=False,
            message_id=message.id,
            error=(
                f"Retrying in {delay}ms "
                f"(attempt {message.retry_count}/{max_retries})"
            ),
        )

    async def _send_to_dlq(
        self, queue_name: str, message: RetryableMessage, now: int
    ) -> None:
        """Send message to Dead Letter Queue after max retries."""
        entry = DeadLetterEntry(**message.model_dump(), sent_to_dlq_at=now)
        key = self.dlq_key(queue_name)
        await self.redis.lpush(key, entry.model_dump_json())
        await self.redis.expire(key, DLQ_TTL_SECONDS)

        retry_queue_messages_total.labels(queue=queue_name, outcome="dlq").inc()
        messages_dlq_total.labels(queue=queue_name).inc()
        dlq_size.labels(queue=queue_name).inc()

    async def _quarantine(self, queue_name: str, raw: str, error: Exception) -> None:
        """Park an undecodable entry so it is inspectable instead of lost."""
        key = self.poison_key(queue_name)
        await self.redis.lpush(key, raw)
        await self.redis.expire(key, DLQ_TTL_SECONDS)

        retry_queue_messages_total.labels(queue=queue_name, outcome="malformed").inc()
        logger.error(
            "Malformed message moved to poison list",
            event_type=LogEventType.MESSAGE_MALFORMED,
            queue_name=queue_name,
            poison_key=key,
            error=str(error),
            raw_preview=str(raw)[:200],
        )
        self._notify(
            RetryQueueEvent.MALFORMED,
            queue_name,
            error=MalformedMessageError(queue_name, raw),
            payload=raw,
        )

    async def _read_dlq(self, queue_name: str) -> list[tuple[str, DeadLetterEntry]]:
        raw_entries = await self.redis.lrange(self.dlq_key(queue_name), 0, -1)
        entries = []
        for raw in raw_entries:
            try:
                entries.append((raw, DeadLetterEntry.model_validate_json(raw)))
            except ValidationError as e:
                logger.error(
                    "Skipping malformed DLQ entry",
                    event_type=LogEventType.MESSAGE_MALFORMED,
                    queue_name=queue_name,
                    error=str(e),
                )
        return entries

    async def get_dlq_messages(self, queue_name: str) -> list[DeadLetterEntry]:
        """Get DLQ messages for a queue, newest first."""
        return [entry for _, entry in await self._read_dlq(queue_name)]

    async def retry_dlq_message(self, queue_name: str, message_id: str) -> bool:
        """Move a dead-lettered message back to the active queue.

        Returns:
            False if no DLQ entry has ``message_id``
        """
        for raw, entry in await self._read_dlq(queue_name):
            if entry.id != message_id:
                continue

            removed = await self.redis.lrem(self.dlq_key(queue_name), 1, raw)
            if not removed:
                # Another consumer replayed it between the read and the removal
                return False

            message = entry.to_message(self._clock())
            await self.redis.lpush(
                self.queue_key(queue_name), message.model_dump_json()
            )
            await self.redis.expire(self.queue_key(queue_name), QUEUE_TTL_SECONDS)

            dlq_size.labels(queue=queue_name).dec()
            logger.info(
                "Message requeued from DLQ",
                event_type=LogEventType.DLQ_REPLAY,
                queue_name=queue_name,
                message_id=message_id,
            )
            self._notify(RetryQueueEvent.DLQ_RETRY, queue_name, message_id=message_id)
            return True

        return False

    async def purge_dlq(self, queue_name: str) -> int:
        """Delete every DLQ entry of a queue and return how many were removed."""
        key = self.dlq_key(queue_name)
        count = await self.redis.llen(key)
        await self.redis.delete(key)
        dlq_size.labels(queue=queue_name).set(0)
        logger.info("DLQ purged", queue_name=queue_name, removed=count)
        return count

    async def get_queue_stats(self, queue_name: str) -> QueueStats:
        key = self.queue_key(queue_name)
        queue_size = await self.redis.llen(key)
        dead = await self.redis.llen(self.dlq_key(queue_name))

        retry_counts = []
        for raw in await self.redis.lrange(key, 0, -1):
            try:
                retry_counts.append(
                    RetryableMessage.model_validate_json(raw).retry_count
                )
            except ValidationError:
                continue

        avg_retries = sum(retry_counts) / len(retry_counts) if retry_counts else 0.0
        dlq_size.labels(queue=queue_name).set(dead)
        return QueueStats(queue_size=queue_size, dlq_size=dead, avg_retries=avg_retries)
