"""Cancellable periodic task bound to the lifetime of its owner."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class PeriodicTicker:
    """Await ``callback`` every ``interval`` seconds until stopped.

    ``stop()`` may be called from inside the callback; in that case the
    running callback finishes and no further tick is scheduled. Each
    ``start()`` opens a new generation, so a task left over from an earlier
    generation can never tick again.
    """

    def __init__(self, interval: float, callback: Callable[[], Awaitable[None]], name: str = "ticker") -> None:
        if interval <= 0:
            raise ValueError("Tick interval must be positive.")
        self._interval = interval
        self._callback = callback
        self._name = name
        self._task: asyncio.Task[None] | None = None
        self._generation = 0
        self._active = False

    @property
    def running(self) -> bool:
        return self._active

    def start(self) -> None:
        if self._active:
            return
        self._generation += 1
        self._active = True
        self._task = asyncio.get_running_loop().create_task(self._run(self._generation), name=self._name)

    def stop(self) -> None:
        if not self._active:
            return
        self._active = False
        self._generation += 1
        task = self._task
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    async def join(self) -> None:
        """Wait until the most recent background task has exited."""
        task = self._task
        if task is None:
            return
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def __aenter__(self) -> "PeriodicTicker":
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.stop()

    async def _run(self, generation: int) -> None:
        while self._generation == generation:
            await asyncio.sleep(self._interval)
            if self._generation != generation:
                break
            try:
                await self._callback()
            except Exception:
                logger.exception("%s callback failed; stopping", self._name)
                if self._generation == generation:
                    self._active = False
                    self._generation += 1
