"""Restartable periodic executor used by the host and player controllers."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from logger import get_sync_logger

PollCallback = Callable[[], Awaitable[None]]


class Poller:
    """Invoke an async callback on a fixed cadence.

    Ticks never overlap: the loop waits for a tick to finish before counting
    down to the next one, and ``poll_now()`` queues behind any running tick.
    A failing tick is logged and recorded in ``error``; polling carries on.
    """

    def __init__(self, name: str = "poller") -> None:
        self.name = name
        self.error: Optional[BaseException] = None
        self.last_polled: Optional[datetime] = None
        self.tick_count = 0
        self._callback: Optional[PollCallback] = None
        self._interval = 1.0
        self._lock = asyncio.Lock()
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self._log = get_sync_logger(name)

    @property
    def is_polling(self) -> bool:
        return self._task is not None and not self._task.done() and not self._stop_event.is_set()

    def start(self, callback: PollCallback, interval: float = 1.0, run_immediately: bool = True) -> None:
        """Begin polling. Restarts with the new callback if already running."""
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.stop()
        self._callback = callback
        self._interval = interval
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(
            self._run(self._stop_event, run_immediately),
            name=f"poller:{self.name}",
        )
        self._log.debug(f"▶️ {self.name} started (interval={interval}s, immediate={run_immediately})")

    def stop(self) -> None:
        """Stop scheduling ticks. A tick already running is left to finish."""
        if self._stop_event is not None and not self._stop_event.is_set():
            self._stop_event.set()
            self._log.debug(f"⏹️ {self.name} stopped")

    async def wait_closed(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def poll_now(self) -> None:
        """Run the callback once, outside the cadence"""
        if self._callback is None:
            return
        await self._tick(self._callback)

    async def _run(self, stop_event: asyncio.Event, run_immediately: bool) -> None:
        callback = self._callback
        if run_immediately and not stop_event.is_set():
            await self._tick(callback)
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            if stop_event.is_set():
                break
            await self._tick(callback)

    async def _tick(self, callback: PollCallback) -> None:
        async with self._lock:
            try:
                await callback()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.error = exc
                self._log.warning(f"⚠️ {self.name} tick failed: {type(exc).__name__}: {exc}")
                return
            self.error = None
            self.last_polled = datetime.now(timezone.utc)
            self.tick_count += 1
