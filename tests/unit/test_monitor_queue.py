"""Unit tests for the monitor_queue operator script."""

import json
import sys
from unittest.mock import AsyncMock

import pytest

import monitor_queue
from queue_resilience.retry_queue import RetryQueue


@pytest.fixture(autouse=True)
def quiet_logs(captured_logs):
    return captured_logs


@pytest.fixture
def patched_redis(mocker, mock_redis):
    mocker.patch("monitor_queue.redis.from_url", return_value=mock_redis)
    return mock_redis


async def _dead_letter(mock_redis, message_id="m-1"):
    queue = RetryQueue(mock_redis)
    await queue.enqueue("payments", {"order_id": "o-1"}, message_id=message_id)
    raw = await mock_redis.rpop("retry:payments")
    entry = json.loads(raw)
    entry.update(retry_count=3, sent_to_dlq_at=entry["created_at"], last_error="boom")
    await mock_redis.lpush("dlq:payments", json.dumps(entry))


class TestMonitorQueue:
    @pytest.mark.asyncio
    async def test_unknown_queue(self, patched_redis, capsys):
        assert await monitor_queue.monitor_queue("stats", "missing") == 1
        assert "Queue not found: missing" in capsys.readouterr().out
        assert patched_redis.closed is True

    @pytest.mark.asyncio
    async def test_stats(self, patched_redis, capsys):
        await RetryQueue(patched_redis).enqueue("payments", "x")

        assert await monitor_queue.monitor_queue("stats", "payments") == 0

        stats = json.loads(capsys.readouterr().out)
        assert stats["queue_size"] == 1

    @pytest.mark.asyncio
    async def test_dlq_listing(self, patched_redis, capsys):
        await _dead_letter(patched_redis)

        assert await monitor_queue.monitor_queue("dlq", "payments") == 0
        assert "1 message(s) in DLQ for payments" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_retry(self, patched_redis):
        await _dead_letter(patched_redis)

        assert await monitor_queue.monitor_queue("retry", "payments", "m-1") == 0
        assert await patched_redis.llen("retry:payments") == 1
        assert await patched_redis.llen("dlq:payments") == 0

    @pytest.mark.asyncio
    async def test_retry_unknown_message(self, patched_redis):
        await _dead_letter(patched_redis)
        assert await monitor_queue.monitor_queue("retry", "payments", "nope") == 1

    @pytest.mark.asyncio
    async def test_purge(self, patched_redis, capsys):
        await _dead_letter(patched_redis)

        assert await monitor_queue.monitor_queue("purge", "payments") == 0
        assert "Removed 1 message(s)" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_unknown_command(self, patched_redis):
        await RetryQueue(patched_redis).enqueue("payments", "x")
        assert await monitor_queue.monitor_queue("explode", "payments") == 2

    @pytest.mark.asyncio
    async def test_stats_output_is_pure_json(self, patched_redis, capsys, captured_logs):
        queue = RetryQueue(patched_redis)
        await queue.enqueue("payments", "x")
        await queue.dequeue_and_process("payments", AsyncMock(side_effect=ValueError("boom")))
        assert captured_logs

        assert await monitor_queue.monitor_queue("stats", "payments") == 0

        stats = json.loads(capsys.readouterr().out)
        assert stats["queue_size"] == 1


class TestMain:
    def test_logs_to_stderr(self, mocker):
        configure = mocker.patch("monitor_queue.configure_logging")
        run = mocker.patch("monitor_queue.monitor_queue", new=AsyncMock(return_value=0))

        assert monitor_queue.main(["stats", "payments"]) == 0

        assert configure.call_args.kwargs["stream"] is sys.stderr
        run.assert_awaited_once_with("stats", "payments", None)

    def test_missing_arguments(self, mocker, capsys):
        mocker.patch("monitor_queue.configure_logging")

        assert monitor_queue.main(["stats"]) == 2
        assert "Usage" in capsys.readouterr().out
