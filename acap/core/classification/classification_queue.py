"""In-process priority queue feeding a bounded pool of classification workers.

Scraping only enqueues article ids; classification runs in the background
at its own pace. Instances are independent, so tests and the CLI can each
own one.
"""

import asyncio
import bisect
import itertools
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

import structlog

from acap.config import Settings

logger = structlog.get_logger(__name__)

Handler = Callable[[UUID], Awaitable[Any]]


@dataclass(frozen=True)
class QueueConfig:
    """Limits for the classification queue."""

    max_concurrent: int = 3
    max_attempts: int = 3
    retry_delay_seconds: float = 30.0
    poll_interval_seconds: float = 1.0
    error_backoff_seconds: float = 5.0
    retry_priority_penalty: int = 10
    default_priority: int = 50

    @classmethod
    def from_settings(cls, settings: Settings) -> "QueueConfig":
        return cls(
            max_concurrent=settings.queue_max_concurrent,
            max_attempts=settings.queue_max_attempts,
            retry_delay_seconds=settings.queue_retry_delay_seconds,
            poll_interval_seconds=settings.queue_poll_interval_seconds,
        )


@dataclass
class QueueItem:
    article_id: UUID
    priority: int
    attempts: int = 0
    last_attempt: datetime | None = None
    last_error: str | None = None
    sequence: int = 0

    @property
    def sort_key(self) -> tuple[int, int]:
        # Higher priority first, then insertion order
        return (-self.priority, self.sequence)


@dataclass(frozen=True)
class QueueStatus:
    queue_length: int
    processing: int
    max_concurrent: int
    is_running: bool
    pending_retries: int = 0
    dead_lettered: int = 0
    completed: int = 0


@dataclass
class _Counters:
    completed: int = 0
    failed_attempts: int = 0
    dead_letters: list[QueueItem] = field(default_factory=list)


class ClassificationQueue:
    """
    Priority queue with retries and a dead-letter bound.

    An article id is held at most once across the queued, processing and
    awaiting-retry states, so enqueueing it again is a no-op.

    Example:
        ```python
        queue = ClassificationQueue(analyzer.analyze, QueueConfig.from_settings(settings))
        await queue.start()
        await queue.enqueue(article.id, priority=60)
        await queue.join()
        await queue.stop()
        ```
    """

    def __init__(self, handler: Handler, config: QueueConfig | None = None):
        self.handler = handler
        self.config = config or QueueConfig()
        self._items: list[QueueItem] = []
        self._keys: list[tuple[int, int]] = []
        self._queued: set[UUID] = set()
        self._processing: dict[UUID, QueueItem] = {}
        self._workers: dict[UUID, asyncio.Task] = {}
        self._retrying: dict[UUID, asyncio.Task] = {}
        self._sequence = itertools.count()
        self._counters = _Counters()
        self._wakeup = asyncio.Event()
        self._loop_task: asyncio.Task | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def _insert(self, item: QueueItem) -> None:
        item.sequence = next(self._sequence)
        index = bisect.bisect_right(self._keys, item.sort_key)
        self._keys.insert(index, item.sort_key)
        self._items.insert(index, item)
        self._queued.add(item.article_id)
        self._wakeup.set()

    def _pop(self) -> QueueItem:
        self._keys.pop(0)
        item = self._items.pop(0)
        self._queued.discard(item.article_id)
        return item

    def contains(self, article_id: UUID) -> bool:
        return (
            article_id in self._queued
            or article_id in self._processing
            or article_id in self._retrying
        )

    async def enqueue(self, article_id: UUID, priority: int | None = None) -> bool:
        """Queue ``article_id``; False if it is already queued, running or awaiting retry."""
        if self.contains(article_id):
            logger.debug("queue_item_duplicate", article_id=str(article_id))
            return False
        self._insert(
            QueueItem(
                article_id=article_id,
                priority=self.config.default_priority if priority is None else priority,
            )
        )
        logger.debug("queue_item_enqueued", article_id=str(article_id), queue_length=len(self._items))
        return True

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._run_loop())
        logger.info("queue_started", max_concurrent=self.config.max_concurrent)

    async def stop(self) -> None:
        """Stop dequeuing and wait for in-flight handlers to finish.

        Items waiting out a retry delay go back on the queue, so a later
        ``start()`` picks them up.
        """
        if not self._running:
            return
        self._running = False
        self._wakeup.set()
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None

        if self._workers:
            await asyncio.gather(*self._workers.values(), return_exceptions=True)

        for task in self._retrying.values():
            task.cancel()
        if self._retrying:
            await asyncio.gather(*self._retrying.values(), return_exceptions=True)
        self._retrying.clear()

        logger.info("queue_stopped", **self._status_fields())

    async def join(self) -> None:
        """Wait until nothing is queued, processing or awaiting retry."""
        while self._items or self._processing or self._retrying:
            await asyncio.sleep(self.config.poll_interval_seconds)

    def status(self) -> QueueStatus:
        return QueueStatus(
            queue_length=len(self._items),
            processing=len(self._processing),
            max_concurrent=self.config.max_concurrent,
            is_running=self._running,
            pending_retries=len(self._retrying),
            dead_lettered=len(self._counters.dead_letters),
            completed=self._counters.completed,
        )

    def dead_letters(self) -> list[QueueItem]:
        return list(self._counters.dead_letters)

    def _status_fields(self) -> dict[str, Any]:
        status = self.status()
        return {
            "queue_length": status.queue_length,
            "processing": status.processing,
            "pending_retries": status.pending_retries,
            "dead_lettered": status.dead_lettered,
            "completed": status.completed,
        }

    async def _run_loop(self) -> None:
        while self._running:
            try:
                self._dispatch()
                self._wakeup.clear()
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=self.config.poll_interval_seconds)
                except asyncio.TimeoutError:
                    pass
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("queue_loop_error", error=str(e))
                await asyncio.sleep(self.config.error_backoff_seconds)

    def _dispatch(self) -> None:
        """Start handlers for as many items as there are free worker slots."""
        while self._running and self._items and len(self._processing) < self.config.max_concurrent:
            item = self._pop()
            item.attempts += 1
            item.last_attempt = datetime.utcnow()
            self._processing[item.article_id] = item
            self._workers[item.article_id] = asyncio.create_task(self._process(item))

    async def _process(self, item: QueueItem) -> None:
        key = str(item.article_id)
        try:
            await self.handler(item.article_id)
            self._counters.completed += 1
            logger.debug("queue_item_completed", article_id=key, attempts=item.attempts)
        except Exception as e:
            item.last_error = str(e)
            self._counters.failed_attempts += 1
            if item.attempts >= self.config.max_attempts:
                self._counters.dead_letters.append(item)
                logger.error(
                    "queue_item_dead_lettered",
                    article_id=key,
                    attempts=item.attempts,
                    error=item.last_error,
                )
            else:
                logger.warning(
                    "queue_item_failed",
                    article_id=key,
                    attempts=item.attempts,
                    retry_in=self.config.retry_delay_seconds,
                    error=item.last_error,
                )
                self._retrying[item.article_id] = asyncio.create_task(self._retry_later(item))
        finally:
            self._processing.pop(item.article_id, None)
            self._workers.pop(item.article_id, None)
            self._wakeup.set()

    async def _retry_later(self, item: QueueItem) -> None:
        try:
            await asyncio.sleep(self.config.retry_delay_seconds)
        except asyncio.CancelledError:
            # Stopped before the retry was due: keep the item queued for the next start
            self._retrying.pop(item.article_id, None)
            self._requeue(item)
            logger.info("queue_item_requeued_on_stop", article_id=str(item.article_id), attempts=item.attempts)
            raise
        self._retrying.pop(item.article_id, None)
        self._requeue(item)

    def _requeue(self, item: QueueItem) -> None:
        item.priority = max(0, item.priority - self.config.retry_priority_penalty)
        self._insert(item)
