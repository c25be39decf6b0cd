"""
Delayed and periodic callback execution.

Timers are fire-and-forget: there is no way to revoke a single
scheduled callback. Work scheduled for later (a checkout confirmation)
re-checks its own state when it fires instead. ``shutdown`` stops
everything at once when the engine is stopped.
"""

import asyncio
import inspect
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from autocheckout.core.logging import get_logger

logger = get_logger(__name__)

Callback = Callable[[], Awaitable[Any] | Any]


class Scheduler(ABC):
    """Injectable delayed-execution primitive."""

    @abstractmethod
    def after(self, delay_seconds: float, callback: Callback) -> None:
        """Run ``callback`` once, ``delay_seconds`` from now."""
        pass

    @abstractmethod
    def every(self, interval_seconds: float, callback: Callback) -> None:
        """Run ``callback`` repeatedly, every ``interval_seconds``."""
        pass

    @abstractmethod
    async def shutdown(self) -> None:
        pass


async def _invoke(callback: Callback) -> None:
    """Run a sync or async callback, logging anything it raises."""
    try:
        result = callback()
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error(
            "scheduled_callback_failed",
            callback=getattr(callback, "__qualname__", repr(callback)),
            error=str(e),
            exc_info=True,
        )


class AsyncioScheduler(Scheduler):
    """
    Scheduler backed by tasks on the running asyncio event loop.

    Must be used from inside a running loop.

    Example:
        scheduler = AsyncioScheduler()
        scheduler.after(30, lambda: coordinator.confirm(checkout_id))
        scheduler.every(300, tracker.sweep)
    """

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        return len(self._tasks)

    def after(self, delay_seconds: float, callback: Callback) -> None:
        self._spawn(self._run_after(delay_seconds, callback))

    def every(self, interval_seconds: float, callback: Callback) -> None:
        if interval_seconds <= 0:
            raise ValueError("Interval must be positive")
        self._spawn(self._run_every(interval_seconds, callback))

    async def shutdown(self) -> None:
        """Cancel every outstanding timer and wait for them to unwind."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.debug("scheduler_shutdown", cancelled=len(tasks))

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    async def _run_after(delay_seconds: float, callback: Callback) -> None:
        await asyncio.sleep(max(0.0, delay_seconds))
        await _invoke(callback)

    @staticmethod
    async def _run_every(interval_seconds: float, callback: Callback) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            await _invoke(callback)
