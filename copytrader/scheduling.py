"""
Clock and periodic task helpers

Everything time-dependent takes a Clock so tests can drive timing without sleeping.
"""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from loguru import logger


class Clock:
    """Wall clock backed by the running event loop"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float):
        await asyncio.sleep(seconds)


class PeriodicTask:
    """
    Runs a coroutine function every `interval` seconds until stopped

    A failing run is logged and the loop keeps going.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        func: Callable[[], Awaitable[object]],
        clock: Optional[Clock] = None,
    ):
        self.name = name
        self.interval = interval
        self._func = func
        self._clock = clock or Clock()
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._running

    def start(self):
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info(f"Started {self.name} (every {self.interval}s)")

    async def _loop(self):
        while self._running:
            try:
                await self._func()
                self.runs += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"{self.name} run failed: {e}")
            if not self._running:
                break
            await self._clock.sleep(self.interval)

    async def stop(self):
        self._running = False
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"Stopped {self.name}")
