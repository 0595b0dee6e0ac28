"""Cancellable delayed-task scheduling.

The ChangeTracker never sleeps on the wall clock itself; it asks a Scheduler
for a handle it can cancel. Production code uses the running asyncio loop,
tests drive a manual scheduler with virtual time.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional


logger = logging.getLogger(__name__)


class ScheduledTask(ABC):
    """Handle to a delayed callback."""

    @abstractmethod
    def cancel(self):
        """Prevent the callback from running. Idempotent."""
        pass

    @property
    @abstractmethod
    def cancelled(self) -> bool:
        pass


class Scheduler(ABC):
    """Runs callbacks after a delay, expressed in seconds."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledTask:
        pass

    @abstractmethod
    def now(self) -> float:
        """Monotonic time in seconds."""
        pass


class _AsyncioTask(ScheduledTask):

    def __init__(self, handle: asyncio.TimerHandle):
        self._handle = handle

    def cancel(self):
        self._handle.cancel()

    @property
    def cancelled(self) -> bool:
        return self._handle.cancelled()


class AsyncioScheduler(Scheduler):
    """Scheduler backed by an asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledTask:
        logger.debug(f"Scheduling callback in {delay:.2f}s")
        return _AsyncioTask(self.loop.call_later(max(0.0, delay), callback))

    def now(self) -> float:
        return self.loop.time()
