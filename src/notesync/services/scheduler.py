"""Cancelable one-shot and repeating timers on the asyncio event loop."""

import asyncio
from typing import Awaitable, Callable, Optional, Protocol, runtime_checkable

from loguru import logger

TimerCallback = Callable[[], Awaitable[None]]


class CancelToken:
    """Handle for a scheduled timer.

    Cancelling prevents future firings only; a callback that is already
    running is left to finish.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._fired = False
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def active(self) -> bool:
        """Whether the timer can still fire."""
        return not (self._cancelled or self._fired)

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


@runtime_checkable
class Scheduler(Protocol):
    """Timer capability used by the sync engine and connectivity monitor."""

    def call_later(self, delay: float, callback: TimerCallback) -> CancelToken:
        """Run callback once after delay seconds."""
        ...

    def call_every(self, interval: float, callback: TimerCallback) -> CancelToken:
        """Run callback every interval seconds until cancelled."""
        ...


class AsyncioScheduler:
    """Scheduler backed by loop.call_later.

    Callbacks run as tasks on the loop; repeating timers re-arm themselves
    when they fire, so a slow callback never stacks up missed ticks.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def call_later(self, delay: float, callback: TimerCallback) -> CancelToken:
        token = CancelToken()

        def fire() -> None:
            token._handle = None
            if token.cancelled or self._closed:
                return
            token._fired = True
            self._spawn(callback)

        token._handle = self.loop.call_later(max(0.0, delay), fire)
        return token

    def call_every(self, interval: float, callback: TimerCallback) -> CancelToken:
        if interval <= 0:
            raise ValueError("interval must be positive")
        token = CancelToken()

        def fire() -> None:
            token._handle = None
            if token.cancelled or self._closed:
                return
            self._spawn(callback)
            token._handle = self.loop.call_later(interval, fire)

        token._handle = self.loop.call_later(interval, fire)
        return token

    def _spawn(self, callback: TimerCallback) -> None:
        task = self.loop.create_task(self._run(callback))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    async def _run(callback: TimerCallback) -> None:
        try:
            await callback()
        except Exception:
            # Nothing awaits timer tasks, so failures end here
            logger.exception("Scheduled callback failed")

    async def aclose(self) -> None:
        """Stop firing timers and wait for running callbacks to finish."""
        self._closed = True
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
