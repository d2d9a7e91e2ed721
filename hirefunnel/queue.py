"""
In-process stage queue.

One :class:`StageMessage` is delivered per handler call.  The handler
acknowledges a message by returning and reports failure by raising; a
failed message is redelivered after ``backoff_delay * 2 ** (attempt - 1)``
seconds until ``max_attempts`` deliveries have failed, after which it is
kept in :attr:`StageQueue.dead_letters`.

This backoff is the queue's own and is independent of the connection
pool's per-call retries.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


@dataclass
class StageMessage:
    candidate_id: str
    job_profile_id: str
    batch_id: Optional[str]
    stage: str
    attempt: int = 1


@dataclass
class QueueConfig:
    max_attempts: int = 3
    backoff_delay: float = 2.0
    workers: int = 2


@dataclass
class QueueStats:
    enqueued: int = 0
    delivered: int = 0
    acknowledged: int = 0
    redelivered: int = 0
    dead_lettered: int = 0
    pending: int = 0


Handler = Callable[[StageMessage], Awaitable[None]]


class StageQueue:
    def __init__(self, handler: Handler, config: Optional[QueueConfig] = None) -> None:
        self.handler = handler
        self.config = config or QueueConfig()
        self.dead_letters: List[Tuple[StageMessage, str]] = []
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self._delayed: Set[asyncio.Task] = set()
        self._stats = QueueStats()

    @property
    def queue(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    @property
    def running(self) -> bool:
        return any(not worker.done() for worker in self._workers)

    def start(self) -> None:
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._workers = [loop.create_task(self._work(n)) for n in range(self.config.workers)]
        logger.info("Stage queue started with %d workers", self.config.workers)

    async def stop(self) -> None:
        for task in list(self._delayed) + self._workers:
            task.cancel()
        for task in list(self._delayed) + self._workers:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._delayed.clear()
        self._workers = []
        logger.info("Stage queue stopped")

    async def enqueue(self, message: StageMessage) -> None:
        self._stats.enqueued += 1
        await self.queue.put(message)
        logger.debug("Enqueued %s for candidate %s", message.stage, message.candidate_id)

    async def join(self) -> None:
        """Wait until every message has been acknowledged or dead-lettered."""
        while True:
            await self.queue.join()
            if not self._delayed:
                return
            await asyncio.gather(*list(self._delayed), return_exceptions=True)

    def stats(self) -> QueueStats:
        return replace(self._stats, pending=self.queue.qsize() + len(self._delayed))

    async def _work(self, number: int) -> None:
        while True:
            message: StageMessage = await self.queue.get()
            try:
                await self._deliver(message)
            finally:
                self.queue.task_done()

    async def _deliver(self, message: StageMessage) -> None:
        self._stats.delivered += 1
        try:
            await self.handler(message)
        except Exception as exc:  # noqa: BLE001
            error = str(exc) or exc.__class__.__name__
            if message.attempt >= self.config.max_attempts:
                self._stats.dead_lettered += 1
                self.dead_letters.append((message, error))
                logger.error(
                    "Stage %s for candidate %s failed after %d attempts: %s",
                    message.stage, message.candidate_id, message.attempt, error,
                )
                return
            delay = self.config.backoff_delay * 2 ** (message.attempt - 1)
            logger.warning(
                "Stage %s for candidate %s failed (attempt %d/%d), redelivering in %.1fs: %s",
                message.stage, message.candidate_id, message.attempt, self.config.max_attempts, delay, error,
            )
            self._schedule_redelivery(replace(message, attempt=message.attempt + 1), delay)
        else:
            self._stats.acknowledged += 1

    def _schedule_redelivery(self, message: StageMessage, delay: float) -> None:
        async def redeliver() -> None:
            await asyncio.sleep(delay)
            self._stats.redelivered += 1
            await self.queue.put(message)

        task = asyncio.get_running_loop().create_task(redeliver())
        self._delayed.add(task)
        task.add_done_callback(self._delayed.discard)
