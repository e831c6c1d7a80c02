"""Bounded background channels for fire-and-forget side effects.

Budget alerts and storage cleanup must never block the code path that
triggers them.  Instead of spawning untracked tasks, such work is pushed onto a
:class:`BackgroundChannel`: a bounded ``asyncio.Queue`` drained by a single
consumer task.

Drop policy
-----------
When the queue is full, :meth:`BackgroundChannel.submit` drops the *new* item
and logs a warning.  Handler exceptions are logged and the consumer moves on
to the next item; a failing side effect never propagates to the producer.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None]]


class BackgroundChannel:
    """Single-consumer bounded work channel.

    Args:
        name: Channel name used in log messages.
        handler: Coroutine function invoked once per submitted item.
        maxsize: Queue capacity before new items are dropped.
    """

    def __init__(self, name: str, handler: Handler, maxsize: int = 100) -> None:
        self.name = name
        self._handler = handler
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._task: asyncio.Task | None = None
        self.dropped = 0
        self.processed = 0
        self.failed = 0

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(
                self._run(), name=f"background:{self.name}"
            )
            logger.info(f"Background channel '{self.name}' started")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def submit(self, item: Any) -> bool:
        """Enqueue an item without waiting.

        Returns:
            True if the item was accepted, False if it was dropped.
        """
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Background channel '{self.name}' is full; dropping item")
            return False
        return True

    async def drain(self) -> None:
        """Wait until every accepted item has been handled."""
        await self._queue.join()

    async def stop(self, drain: bool = True) -> None:
        """Stop the consumer, optionally handling queued items first."""
        if self._task is None:
            return
        if drain and self.running:
            await self._queue.join()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"Background channel '{self.name}' stopped")

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                await self._handler(item)
                self.processed += 1
            except Exception:
                self.failed += 1
                logger.exception(f"Background channel '{self.name}' handler failed")
            finally:
                self._queue.task_done()
