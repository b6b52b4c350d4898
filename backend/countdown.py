"""Per-question countdown shared by the host and player views."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from logger import get_sync_logger

log = get_sync_logger("countdown")


class Countdown:
    """Counts whole seconds down to zero, then awaits ``on_expire`` once.

    Restarting or cancelling discards the previous run; an expired run never
    fires after it has been replaced.
    """

    def __init__(
        self,
        on_expire: Callable[[], Awaitable[None]],
        *,
        tick: float = 1.0,
        on_tick: Optional[Callable[[int], None]] = None,
    ) -> None:
        self.remaining: Optional[int] = None
        self._on_expire = on_expire
        self._on_tick = on_tick
        self._tick = tick
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, seconds: int) -> None:
        self.cancel()
        self.remaining = seconds
        self._task = asyncio.create_task(self._run(seconds), name="countdown")

    def cancel(self) -> None:
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._task = None
        self.remaining = None

    async def _run(self, seconds: int) -> None:
        remaining = seconds
        while remaining > 0:
            await asyncio.sleep(self._tick)
            remaining -= 1
            self.remaining = remaining
            if self._on_tick is not None:
                self._on_tick(remaining)
        try:
            await self._on_expire()
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("⏱️ Countdown expiry handler failed")
