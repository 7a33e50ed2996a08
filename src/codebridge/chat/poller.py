"""PollLoop — fixed-interval background task with managed lifecycle."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class PollLoop:
    """Runs *tick* every *interval* seconds until stopped.

    The first tick happens one interval after :meth:`start`.  A tick that
    raises is logged and the loop keeps going; ticks never overlap because
    the next sleep only starts once the previous tick has returned.
    """

    def __init__(
        self,
        interval: float,
        tick: Callable[[], Awaitable[None]],
        name: str = "poll",
    ) -> None:
        self._interval = interval
        self._tick = tick
        self._name = name
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the loop as a background task (no-op if already running)."""
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop(), name=self._name)

    async def stop(self) -> None:
        """Cancel the background task and wait for cleanup."""
        self._stop_event.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None

    async def _sleep(self) -> bool:
        """Wait one interval, returning ``True`` if stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
        except TimeoutError:
            return False
        return True

    async def _loop(self) -> None:
        try:
            while not self._stop_event.is_set():
                if await self._sleep():
                    return
                try:
                    await self._tick()
                except Exception:
                    logger.exception("%s: tick failed", self._name)
        except asyncio.CancelledError:
            return
