"""Unit tests for RetryQueuePoller."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import RedisError

from queue_resilience.models import ProcessResult
from queue_resilience.poller import RetryQueuePoller
from queue_resilience.retry_queue import RetryQueue


@pytest.fixture
def retry_queue(mock_redis, clock):
    return RetryQueue(mock_redis, clock=clock)


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_delegates_to_retry_queue(self):
        retry_queue = AsyncMock()
        retry_queue.dequeue_and_process.return_value = ProcessResult(success=True)
        processor = AsyncMock()
        poller = RetryQueuePoller(retry_queue, "payments", processor)

        result = await poller.run_once()

        assert result.success is True
        retry_queue.dequeue_and_process.assert_awaited_once_with("payments", processor)


class TestPollingLoop:
    @pytest.mark.asyncio
    async def test_drains_backlog(self, retry_queue):
        processed = []

        async def record(payload):
            processed.append(payload)

        for i in range(3):
            await retry_queue.enqueue("payments", i)

        poller = RetryQueuePoller(retry_queue, "payments", record, interval_ms=10)
        poller.start()
        assert poller.running is True
        for _ in range(50):
            if len(processed) == 3:
                break
            await asyncio.sleep(0.01)
        await poller.stop()

        assert processed == [0, 1, 2]
        assert poller.running is False

    @pytest.mark.asyncio
    async def test_keeps_polling_after_store_error(self):
        retry_queue = AsyncMock()
        retry_queue.dequeue_and_process.side_effect = [
            RedisError("down"),
            ProcessResult(success=True),
            ProcessResult(success=True),
            ProcessResult(success=True),
        ]
        poller = RetryQueuePoller(retry_queue, "payments", AsyncMock(), interval_ms=1)

        poller.start()
        for _ in range(50):
            if retry_queue.dequeue_and_process.await_count >= 2:
                break
            await asyncio.sleep(0.01)
        await poller.stop()

        assert retry_queue.dequeue_and_process.await_count >= 2

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, retry_queue):
        poller = RetryQueuePoller(retry_queue, "payments", AsyncMock(), interval_ms=10)
        poller.start()
        task = poller._task
        poller.start()

        assert poller._task is task
        await poller.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self, retry_queue):
        poller = RetryQueuePoller(retry_queue, "payments", AsyncMock())
        await poller.stop()
        assert poller.running is False


class TestGracefulStop:
    @pytest.mark.asyncio
    async def test_stop_lets_in_flight_message_finish(self, retry_queue, mock_redis):
        started = asyncio.Event()
        processed = []

        async def slow(payload):
            started.set()
            await asyncio.sleep(0.05)
            processed.append(payload)

        await retry_queue.enqueue("payments", {"order_id": "o-1"})
        poller = RetryQueuePoller(retry_queue, "payments", slow, interval_ms=10)
        poller.start()
        await asyncio.wait_for(started.wait(), 1)

        await poller.stop()

        assert processed == [{"order_id": "o-1"}]
        assert poller.running is False

    @pytest.mark.asyncio
    async def test_stop_interrupts_idle_wait(self, retry_queue):
        poller = RetryQueuePoller(retry_queue, "payments", AsyncMock(), interval_ms=60000)
        poller.start()
        await asyncio.sleep(0.01)

        await asyncio.wait_for(poller.stop(), 1)

        assert poller.running is False

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, retry_queue):
        poller = RetryQueuePoller(retry_queue, "payments", AsyncMock(), interval_ms=10)
        poller.start()
        await poller.stop()

        poller.start()
        assert poller.running is True
        await poller.stop()
