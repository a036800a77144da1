"""
Bounded task queue between the webhook handlers and the build workers.

Many producers, one queue, a fixed pool of consumers. Submitting never
waits: a full queue is rejected immediately so the HTTP handler can
answer and GitHub can retry with its own backoff.
"""

import asyncio

from deployd.errors import QueueClosed, QueueFull
from deployd.models import Task


class TaskQueue:
    def __init__(self, maxsize: int = 16):
        if maxsize < 1:
            raise ValueError("queue size must be >= 1")
        self.maxsize = maxsize
        self._queue: asyncio.Queue[Task] = asyncio.Queue(maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    def submit(self, task: Task) -> None:
        """Enqueue without blocking. Raises QueueFull or QueueClosed."""
        if self._closed:
            raise QueueClosed("task queue is closed")
        try:
            self._queue.put_nowait(task)
        except asyncio.QueueFull:
            raise QueueFull(
                f"task queue is full ({self.maxsize} pending)") from None

    async def get(self) -> Task:
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    def close(self) -> None:
        """Stop accepting tasks. Tasks already queued stay deliverable."""
        self._closed = True

    async def join(self) -> None:
        """Wait until every submitted task has been processed."""
        await self._queue.join()
