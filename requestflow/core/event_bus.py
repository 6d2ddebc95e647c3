"""
In-process event bus for request lifecycle notifications.

Services publish only after their unit of work has committed, so handlers
never observe state that could still roll back. One processor task drains
the queue in FIFO order; each handler is retried in place and gives up into
the dead_letter_queue table once its attempts are used up.
"""

import asyncio
import json
from collections import defaultdict
from typing import Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import select

from requestflow.config.settings import settings
from requestflow.models.orm import DeadLetterQueue, _now
from requestflow.models.schemas import EventType

logger = structlog.get_logger()

EventHandler = Callable[[dict], Awaitable[None]]


class EventBus:
    """
    asyncio.Queue backed publisher with per-event-type handler lists.

    `db` is the Database used for dead letters; without it failures are
    only counted and logged.
    """

    def __init__(self, max_queue_size: Optional[int] = None, db=None, max_retries: Optional[int] = None):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size or settings.event_bus_max_queue_size)
        self._subscribers: Dict[EventType, List[EventHandler]] = defaultdict(list)
        self._db = db
        self._max_retries = max_retries or settings.event_bus_max_retries
        self._worker: Optional[asyncio.Task] = None
        self._running = False
        self._published = 0
        self._failed = 0

    def subscribe(self, event_type: EventType, handler: EventHandler):
        self._subscribers[event_type].append(handler)
        logger.info(
            "event_handler_subscribed",
            event_type=event_type.value,
            handler=handler.__name__,
            total_handlers=len(self._subscribers[event_type]),
        )

    async def publish(self, event_type: EventType, data: dict):
        """
        Queue an event without waiting for its handlers.

        Raises asyncio.QueueFull when the bus is saturated; callers have
        already committed, so the event is logged before the error propagates.
        """
        try:
            self._queue.put_nowait((event_type, data))
        except asyncio.QueueFull:
            logger.error("event_queue_full", event_type=event_type.value, data=data)
            raise
        self._published += 1
        logger.debug("event_published", event_type=event_type.value, queue_size=self._queue.qsize())

    async def start(self):
        if self._running:
            logger.warning("event_bus_already_running")
            return
        self._running = True
        self._worker = asyncio.create_task(self._worker_loop())
        logger.info("event_bus_started")

    async def stop(self):
        if not self._running:
            return
        self._running = False
        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        logger.info("event_bus_stopped", pending_events=self._queue.qsize())

    async def drain(self):
        """Block until every queued event has been dispatched"""
        await self._queue.join()

    async def _worker_loop(self):
        while self._running:
            # Short timeout so stop() is noticed without a pending get()
            try:
                event_type, data = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue

            try:
                await self._dispatch(event_type, data)
            except Exception as e:
                logger.error("event_dispatch_error", event_type=event_type.value, error=str(e), exc_info=True)
            finally:
                self._queue.task_done()

    async def _dispatch(self, event_type: EventType, data: dict):
        handlers = list(self._subscribers.get(event_type, []))
        if not handlers:
            logger.debug("no_handlers_for_event", event_type=event_type.value)
            return

        logger.debug("dispatching_event", event_type=event_type.value, handlers=len(handlers))
        await asyncio.gather(
            *(self._deliver(handler, event_type, data) for handler in handlers),
            return_exceptions=True,
        )

    async def _deliver(self, handler: EventHandler, event_type: EventType, data: dict):
        for attempt in range(1, self._max_retries + 1):
            try:
                await handler(data)
                return
            except Exception as e:
                logger.error(
                    "event_handler_error",
                    handler=handler.__name__,
                    event_type=event_type.value,
                    attempt=attempt,
                    max_retries=self._max_retries,
                    error=str(e),
                    exc_info=True,
                )
                last_error = str(e)

        self._failed += 1
        await self._dead_letter(event_type, data, last_error, self._max_retries)

    async def _dead_letter(self, event_type: EventType, data: dict, error_message: str, attempts: int):
        if self._db is None:
            logger.warning("dead_letter_skipped", event_type=event_type.value, reason="no database configured")
            return

        try:
            async with self._db.session() as session:
                entry = DeadLetterQueue(
                    original_event_type=event_type.value,
                    event_data=json.dumps(data, default=str),
                    error_message=error_message,
                    retry_count=attempts,
                    created_at=_now(),
                    form_request_id=data.get("form_request_id"),
                )
                session.add(entry)
                await session.flush()
                logger.warning(
                    "event_dead_lettered",
                    event_type=event_type.value,
                    dlq_id=entry.id,
                    form_request_id=entry.form_request_id,
                    error=error_message,
                )
        except Exception as e:
            # The event is already lost to its handler; keep the processor alive
            logger.error("dead_letter_write_failed", event_type=event_type.value, error=str(e), exc_info=True)

    async def retry_dlq_entry(self, session, dlq_id: int) -> bool:
        """
        Put a dead-lettered event back on the bus and delete the entry.
        Returns False when no entry has that id.
        """
        result = await session.execute(select(DeadLetterQueue).where(DeadLetterQueue.id == dlq_id))
        entry = result.scalar_one_or_none()
        if entry is None:
            return False

        event_type = EventType(entry.original_event_type)
        data = json.loads(entry.event_data)
        await session.delete(entry)
        await session.flush()

        await self.publish(event_type, data)
        logger.info("dlq_entry_retried", dlq_id=dlq_id, event_type=event_type.value)
        return True

    def get_stats(self) -> dict:
        return {
            "running": self._running,
            "queue_size": self._queue.qsize(),
            "max_queue_size": self._queue.maxsize,
            "published": self._published,
            "failed": self._failed,
            "event_types": [event_type.value for event_type in self._subscribers],
            "total_handlers": sum(len(handlers) for handlers in self._subscribers.values()),
        }
