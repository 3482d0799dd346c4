from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Callable


class TimerHandle(ABC):
    @abstractmethod
    def cancel(self) -> None:
        raise NotImplementedError


class Scheduler(ABC):
    """Timer primitives used by the storage backends.

    Callbacks are plain synchronous callables. Implementations must not keep
    the process alive on their own.
    """

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        raise NotImplementedError

    @abstractmethod
    def call_repeating(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        raise NotImplementedError


class _AsyncioHandle(TimerHandle):
    def __init__(self, handle: asyncio.TimerHandle) -> None:
        self._handle = handle

    def cancel(self) -> None:
        self._handle.cancel()


class _RepeatingHandle(TimerHandle):
    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        interval: float,
        callback: Callable[[], None],
    ) -> None:
        self._loop = loop
        self._interval = interval
        self._callback = callback
        self._cancelled = False
        self._handle: asyncio.TimerHandle | None = None
        self._arm()

    def _arm(self) -> None:
        self._handle = self._loop.call_later(self._interval, self._fire)

    def _fire(self) -> None:
        if self._cancelled:
            return
        try:
            self._callback()
        finally:
            if not self._cancelled:
                self._arm()

    def cancel(self) -> None:
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class AsyncioScheduler(Scheduler):
    """Schedules callbacks on the running event loop.

    Loop timers do not hold the loop open, so pending timers never delay
    shutdown once the main coroutine returns.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is not None:
            return self._loop
        return asyncio.get_running_loop()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return _AsyncioHandle(self._get_loop().call_later(delay, callback))

    def call_repeating(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        return _RepeatingHandle(self._get_loop(), interval, callback)
