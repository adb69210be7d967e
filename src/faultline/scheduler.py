"""Injectable clock and timer abstraction.

Every delayed or repeating action in faultline (pre-kill delays, health
polls, simulated failure expiry) goes through a ``Scheduler`` so the
timing logic can be driven deterministically in tests.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Protocol

import structlog

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

TickCallback = Callable[[], Awaitable[None]]


class TimerHandle(Protocol):
    """Cancellation handle for a scheduled callback."""

    @property
    def cancelled(self) -> bool: ...

    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Clock plus one-shot and repeating timers."""

    def now(self) -> datetime: ...

    def monotonic(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...

    def call_later(
        self, delay_seconds: float, callback: TickCallback, *, name: str = ""
    ) -> TimerHandle: ...

    def call_every(
        self, interval_seconds: float, callback: TickCallback, *, name: str = ""
    ) -> TimerHandle: ...


class TaskTimerHandle:
    """Timer handle backed by an ``asyncio.Task``.

    Cancelling from inside the timer's own callback only sets the flag,
    so the callback can finish its current work before the loop exits.
    """

    def __init__(self) -> None:
        self._task: asyncio.Task[None] | None = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def task(self) -> asyncio.Task[None] | None:
        return self._task

    def attach(self, task: asyncio.Task[None]) -> None:
        self._task = task

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._task is None or self._task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if current is not self._task:
            self._task.cancel()


class AsyncioScheduler:
    """Wall-clock scheduler running timers as tasks on the current event loop."""

    def now(self) -> datetime:
        return datetime.now(tz=UTC)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)

    def call_later(
        self, delay_seconds: float, callback: TickCallback, *, name: str = ""
    ) -> TaskTimerHandle:
        handle = TaskTimerHandle()

        async def _run() -> None:
            await self.sleep(delay_seconds)
            if handle.cancelled:
                return
            await self._invoke(callback, name)

        handle.attach(asyncio.create_task(_run(), name=name or None))
        return handle

    def call_every(
        self, interval_seconds: float, callback: TickCallback, *, name: str = ""
    ) -> TaskTimerHandle:
        handle = TaskTimerHandle()

        async def _run() -> None:
            while not handle.cancelled:
                await asyncio.sleep(interval_seconds)
                if handle.cancelled:
                    break
                await self._invoke(callback, name)

        handle.attach(asyncio.create_task(_run(), name=name or None))
        return handle

    @staticmethod
    async def _invoke(callback: TickCallback, name: str) -> None:
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("timer_callback_failed", timer=name, error=str(exc))
