"""
Periodic task scheduling

A PeriodicTask runs one async action on a fixed interval until stopped.
The stop request is observed between iterations; an action that is already
running is allowed to finish.
"""

import asyncio
from typing import Awaitable, Callable, Optional

from loguru import logger


class PeriodicTask:
    """
    Run `action` every `interval` seconds

    Iterations never overlap: the next wait starts after the action returns.
    Errors raised by the action are logged and the loop keeps going.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        action: Callable[[], Awaitable[None]],
        run_immediately: bool = False
    ):
        self.name = name
        self.interval = interval
        self.action = action
        self.run_immediately = run_immediately
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.is_running:
            logger.warning(f"Task {self.name} already running")
            return

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name=self.name)

    def stop(self):
        """Request the loop to exit at the next iteration boundary"""
        self._stop_event.set()

    async def join(self):
        """Wait until the loop has exited"""
        if self._task is not None:
            await self._task

    async def _wait(self) -> bool:
        """Sleep one interval; True if a stop was requested meanwhile"""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            return False
        return True

    async def _loop(self):
        logger.debug(f"Task {self.name} started (every {self.interval:.2f}s)")

        if not self.run_immediately and await self._wait():
            return

        while not self._stop_event.is_set():
            try:
                await self.action()
            except Exception as e:
                logger.error(f"Task {self.name} failed: {e}")

            if self._stop_event.is_set() or await self._wait():
                break

        logger.debug(f"Task {self.name} stopped")
