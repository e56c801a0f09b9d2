"""Per-instance observer registry.

Notifications are fire-and-forget: a failing callback is logged and never
reaches the emitter, and coroutine callbacks are scheduled as tasks rather
than awaited.

Usage:
    observers = Observers()
    observers.subscribe(RetryQueueEvent.DLQ, on_dead_letter)
    observers.emit(RetryQueueEvent.DLQ, notification)
"""

import asyncio
import inspect
from collections.abc import Callable
from enum import Enum
from typing import Any

from queue_resilience.logging import get_logger

logger = get_logger(__name__)

Callback = Callable[[Any], Any]


class Observers:
    """Callback registration keyed by event enum."""

    def __init__(self) -> None:
        self._callbacks: dict[Enum, list[Callback]] = {}
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, event: Enum, callback: Callback) -> Callback:
        self._callbacks.setdefault(event, []).append(callback)
        return callback

    def unsubscribe(self, event: Enum, callback: Callback) -> bool:
        callbacks = self._callbacks.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)
            return True
        return False

    def emit(self, event: Enum, data: Any) -> None:
        for callback in list(self._callbacks.get(event, [])):
            try:
                result = callback(data)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._on_task_done)
            except Exception as e:
                logger.warning(
                    "Observer callback failed",
                    observer_event=getattr(event, "value", str(event)),
                    error=str(e),
                )

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "Async observer callback failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def drain(self) -> None:
        """Wait for scheduled coroutine callbacks to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def clear(self) -> None:
        self._callbacks.clear()
