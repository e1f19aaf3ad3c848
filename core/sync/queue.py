"""
Sync Event Queue.

Buffers normalized watcher events between the watchdog bridge and the
sync engine. Events leave the queue in exactly the order they arrived.
"""

import asyncio
import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime
from typing import Deque, Dict, Any, List, Optional

from .events import SyncEvent, SyncEventKind

logger = logging.getLogger(__name__)


@dataclass
class QueueMetrics:
    """Metrics for monitoring queue throughput"""
    total_events_enqueued: int = 0
    total_events_dequeued: int = 0
    total_events_dropped: int = 0
    current_queue_size: int = 0
    events_by_kind: Dict[SyncEventKind, int] = None
    avg_wait_time_seconds: float = 0.0
    max_queue_size_reached: int = 0

    def __post_init__(self):
        if self.events_by_kind is None:
            self.events_by_kind = defaultdict(int)


class SyncEventQueue:
    """
    Bounded FIFO queue of SyncEvents.

    Features:
    - Strict arrival order (no reordering, no coalescing)
    - Size limit; events beyond it are dropped with a warning
    - Waiting consumers with optional timeout
    - Async iteration until the queue is stopped
    """

    def __init__(self, max_queue_size: int = 1000):
        self.max_queue_size = max_queue_size

        self._queue: Deque[SyncEvent] = deque()
        self._queue_lock = asyncio.Lock()
        self._event_waiters: List[asyncio.Future] = []

        self.metrics = QueueMetrics()
        self._start_time = datetime.now()
        self._running = False

        logger.debug(f"Initialized SyncEventQueue with max_size={max_queue_size}")

    @property
    def is_active(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True
        logger.debug("Started SyncEventQueue")

    async def stop(self) -> None:
        """Stop the queue and wake every waiting consumer"""
        self._running = False

        for waiter in self._event_waiters:
            if not waiter.done():
                waiter.cancel()
        self._event_waiters.clear()
        logger.debug("Stopped SyncEventQueue")

    async def enqueue(self, event: SyncEvent) -> bool:
        """
        Append an event to the queue.

        Args:
            event: The sync event to enqueue

        Returns:
            True if enqueued, False if the queue is stopped or full
        """
        if not self._running:
            return False

        async with self._queue_lock:
            if len(self._queue) >= self.max_queue_size:
                logger.warning(f"Queue full ({len(self._queue)} events), dropping event: {event}")
                self.metrics.total_events_dropped += 1
                return False

            self._queue.append(event)

            self.metrics.total_events_enqueued += 1
            self.metrics.current_queue_size = len(self._queue)
            self.metrics.events_by_kind[event.kind] += 1
            self.metrics.max_queue_size_reached = max(
                self.metrics.max_queue_size_reached,
                len(self._queue)
            )

            while self._event_waiters:
                waiter = self._event_waiters.pop(0)
                if not waiter.done():
                    waiter.set_result(None)
                    break

            logger.debug(f"Enqueued event: {event} (queue size: {len(self._queue)})")
            return True

    async def dequeue(self, timeout: Optional[float] = None) -> Optional[SyncEvent]:
        """
        Remove and return the oldest event.

        Args:
            timeout: Maximum seconds to wait; None waits until an event
                arrives or the queue stops, 0 never waits

        Returns:
            The oldest event, or None on timeout or stop
        """
        while True:
            async with self._queue_lock:
                if self._queue:
                    return self._pop_event()

            if not self._running or (timeout is not None and timeout <= 0):
                return None

            waiter = asyncio.get_running_loop().create_future()
            self._event_waiters.append(waiter)
            try:
                if timeout is not None:
                    await asyncio.wait_for(waiter, timeout=timeout)
                else:
                    await waiter
            except asyncio.TimeoutError:
                if waiter in self._event_waiters:
                    self._event_waiters.remove(waiter)
                return None
            except asyncio.CancelledError:
                if waiter.cancelled() and not self._running:
                    return None
                raise

    def _pop_event(self) -> SyncEvent:
        """Must be called with _queue_lock held."""
        event = self._queue.popleft()

        self.metrics.total_events_dequeued += 1
        self.metrics.current_queue_size = len(self._queue)

        total_events = self.metrics.total_events_dequeued
        self.metrics.avg_wait_time_seconds = (
            (self.metrics.avg_wait_time_seconds * (total_events - 1) + event.age_seconds) / total_events
        )
        return event

    async def clear(self) -> int:
        """Clear all events from queue and return count cleared"""
        async with self._queue_lock:
            count = len(self._queue)
            self._queue.clear()
            self.metrics.current_queue_size = 0
            if count:
                logger.info(f"Cleared {count} events from queue")
            return count

    def get_metrics(self) -> Dict[str, Any]:
        uptime = (datetime.now() - self._start_time).total_seconds()

        return {
            "current_size": self.metrics.current_queue_size,
            "max_size_reached": self.metrics.max_queue_size_reached,
            "events_enqueued": self.metrics.total_events_enqueued,
            "events_dequeued": self.metrics.total_events_dequeued,
            "events_dropped": self.metrics.total_events_dropped,
            "events_by_kind": {kind.value: count for kind, count in self.metrics.events_by_kind.items()},
            "avg_wait_time_seconds": self.metrics.avg_wait_time_seconds,
            "uptime_seconds": uptime,
            "queue_utilization": self.metrics.current_queue_size / self.max_queue_size,
        }

    def __len__(self) -> int:
        return len(self._queue)

    def __aiter__(self):
        return self

    async def __anext__(self) -> SyncEvent:
        event = await self.dequeue()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
