"""Polling loop that drives RetryQueue.dequeue_and_process for one queue."""

import asyncio

from queue_resilience.logging import LogEventType, get_logger, set_queue_name
from queue_resilience.models import ProcessResult
from queue_resilience.retry_queue import Processor, RetryQueue

logger = get_logger(__name__)


class RetryQueuePoller:
    """Polls one named queue until stopped.

    A poll that processed a message is followed immediately by another one,
    so a backlog drains without waiting. Empty, not-yet-due and failed polls
    wait ``interval_ms`` before the next attempt.

    ``stop`` lets an in-flight poll run to completion; only the idle wait
    between polls is interrupted.
    """

    def __init__(
        self,
        retry_queue: RetryQueue,
        queue_name: str,
        processor: Processor,
        interval_ms: int = 1000,
    ):
        self.retry_queue = retry_queue
        self.queue_name = queue_name
        self.processor = processor
        self.interval_ms = interval_ms
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> ProcessResult:
        return await self.retry_queue.dequeue_and_process(
            self.queue_name, self.processor
        )

    async def _run(self) -> None:
        set_queue_name(self.queue_name)
        logger.info(
            "Retry queue poller started",
            event_type=LogEventType.STARTUP,
            interval_ms=self.interval_ms,
        )
        while not self._stopping.is_set():
            try:
                result = await self.run_once()
                if result.success and result.message_id:
                    await asyncio.sleep(0)
                    continue
            except Exception as e:
                logger.exception(
                    "Retry queue poll failed",
                    event_type=LogEventType.ERROR,
                    error=str(e),
                )
            try:
                await asyncio.wait_for(self._stopping.wait(), self.interval_ms / 1000)
            except TimeoutError:
                pass

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(
            self._run(), name=f"retry-poller:{self.queue_name}"
        )

    async def stop(self) -> None:
        """Stop after the current poll finishes."""
        if self._task is None:
            return
        self._stopping.set()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(
            "Retry queue poller stopped",
            event_type=LogEventType.SHUTDOWN,
            queue_name=self.queue_name,
        )
