from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional


logger = logging.getLogger(__name__)


class CountdownTimer:
    """Whole-second countdown running as a task on the current event loop.

    `on_tick` receives the remaining seconds after every decrement, `on_expire`
    is called once when the count reaches zero. Nothing is delivered after
    `cancel()`.
    """

    def __init__(
        self,
        seconds: int,
        on_tick: Optional[Callable[[int], None]] = None,
        on_expire: Optional[Callable[[], None]] = None,
        *,
        interval: float = 1.0,
    ) -> None:
        if seconds < 1:
            raise ValueError("countdown needs at least one second")
        self.remaining = int(seconds)
        self.interval = interval
        self._on_tick = on_tick
        self._on_expire = on_expire
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False
        self.expired = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._cancelled and not self.expired

    def start(self) -> None:
        if self._task is not None or self._cancelled:
            raise RuntimeError("a countdown can only be started once")
        self._task = asyncio.get_running_loop().create_task(self._run())

    def cancel(self) -> None:
        self._cancelled = True
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _run(self) -> None:
        while self.remaining > 0:
            await asyncio.sleep(self.interval)
            if self._cancelled:
                return
            self.remaining -= 1
            if self._on_tick is not None:
                self._on_tick(self.remaining)
            # A tick handler may cancel us
            if self._cancelled:
                return
        self.expired = True
        self._task = None
        logger.debug("countdown expired")
        if self._on_expire is not None:
            self._on_expire()
