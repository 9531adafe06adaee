"""Cancellable timers and reconnect backoff."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .logging import get_logger


@dataclass(frozen=True)
class ReconnectPolicy:
    """Linear backoff with a capped multiplier and a retry ceiling."""

    base: float
    cap: int
    max_attempts: int

    def delay(self, attempt: int) -> float:
        """Delay before reconnect ``attempt`` (1-based)."""

        if attempt <= 0:
            return 0.0
        return self.base * min(attempt, self.cap)

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts


class Timer:
    """Run an async callback after ``interval`` seconds, optionally repeating.

    Every pending run lives in a single task so ``cancel`` guarantees the
    callback cannot fire afterwards. Callback failures are logged; a repeating
    timer keeps its schedule.
    """

    def __init__(
        self,
        interval: float,
        callback: Callable[[], Awaitable[None]],
        *,
        repeat: bool = False,
        immediate: bool = False,
        name: Optional[str] = None,
    ) -> None:
        self.interval = max(0.0, interval)
        self.repeat = repeat
        self.immediate = immediate
        self.name = name or getattr(callback, "__qualname__", "timer")
        self._callback = callback
        self._task: Optional[asyncio.Task[None]] = None
        self.logger = get_logger("wled.timers")

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "Timer":
        if not self.active:
            self._task = asyncio.create_task(self._run(), name=self.name)
        return self

    def cancel(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def stop(self) -> None:
        """Cancel and wait until the pending run has unwound."""

        task, self._task = self._task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        if self.immediate:
            await self._fire()
            if not self.repeat:
                return
        while True:
            await asyncio.sleep(self.interval)
            await self._fire()
            if not self.repeat:
                return

    async def _fire(self) -> None:
        try:
            await self._callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.logger.exception("Timer callback failed", extra={"timer": self.name})
