"""
Delayed-callback scheduling for job retries.

Backoff delays run on the event loop's timer (loop.call_later) so a job
waiting to retry holds no task or worker. Tests swap in a scheduler that
records the requested delay and fires immediately.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Callable, Set


class RetryScheduler(ABC):
    @abstractmethod
    def schedule(self, delay_ms: float, callback: Callable[[], None]) -> None:
        """Invoke `callback` once, no earlier than `delay_ms` from now."""

    @abstractmethod
    def cancel_all(self) -> int:
        """Drop every pending callback; returns how many were cancelled."""

    @property
    @abstractmethod
    def pending(self) -> int:
        ...


class AsyncioRetryScheduler(RetryScheduler):
    def __init__(self) -> None:
        self._timers: Set[asyncio.TimerHandle] = set()

    def schedule(self, delay_ms: float, callback: Callable[[], None]) -> None:
        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle

        def fire() -> None:
            self._timers.discard(handle)
            callback()

        handle = loop.call_later(max(delay_ms, 0) / 1000, fire)
        self._timers.add(handle)

    def cancel_all(self) -> int:
        count = len(self._timers)
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        return count

    @property
    def pending(self) -> int:
        return len(self._timers)
