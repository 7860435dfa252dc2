"""Batched event delivery to an append-only metrics sink."""

import asyncio
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Deque, Dict, List, Optional

import structlog

from inference_orchestrator.telemetry.metrics import MetricsCollector

logger = structlog.get_logger()

Event = Dict[str, Any]


class EventSink(ABC):
    """Ingestion boundary for assignment, cost, cache and provider events."""

    @abstractmethod
    async def publish(self, events: List[Event]) -> None:
        """Deliver a batch. Raising means none of the batch was accepted."""


class InMemoryEventSink(EventSink):
    """Keeps every published event; used in tests and local development."""

    def __init__(self):
        self.events: List[Event] = []
        self.batches: List[List[Event]] = []

    async def publish(self, events: List[Event]) -> None:
        self.batches.append(list(events))
        self.events.extend(events)

    def of_type(self, event_type: str) -> List[Event]:
        return [e for e in self.events if e.get("type") == event_type]


class LoggingEventSink(EventSink):
    """Writes each event as a structured log line."""

    def __init__(self, event_name: str = "orchestrator_event"):
        self.event_name = event_name
        self._logger = structlog.get_logger("events")

    async def publish(self, events: List[Event]) -> None:
        for event in events:
            self._logger.info(self.event_name, **event)


class EventQueue:
    """Buffers events and flushes them to a sink by size or on a timer.

    A failed flush puts the batch back at the head of the queue so the next
    flush retries it in the original order. Producers never wait on the sink:
    a full batch only wakes the flush task.
    """

    def __init__(
        self,
        sink: EventSink,
        batch_size: int = 50,
        flush_interval_ms: int = 30000,
        max_queue_size: int = 100_000,
        metrics: Optional[MetricsCollector] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if flush_interval_ms < 1:
            raise ValueError("flush_interval_ms must be >= 1")
        self.sink = sink
        self.batch_size = batch_size
        self.flush_interval_ms = flush_interval_ms
        self.max_queue_size = max_queue_size
        self.metrics = metrics

        self._queue: Deque[Event] = deque()
        self._flush_lock = asyncio.Lock()
        self._flush_task: Optional[asyncio.Task] = None
        self._flush_requested = asyncio.Event()
        self._pending_flush: Optional[asyncio.Task] = None
        self._running = False
        self.dropped = 0
        self.failed_flushes = 0

    def __len__(self) -> int:
        return len(self._queue)

    async def add(self, event_type: str, **data: Any) -> None:
        """Enqueue an event; a full batch triggers a background flush."""
        event = {"type": event_type, "timestamp": time.time(), **data}
        if len(self._queue) >= self.max_queue_size:
            self._queue.popleft()
            self.dropped += 1
            logger.warning("Event queue full, dropping oldest event", max_size=self.max_queue_size)
        self._queue.append(event)

        if len(self._queue) >= self.batch_size:
            self._request_flush()

    def _request_flush(self):
        if self._running:
            self._flush_requested.set()
        elif self._pending_flush is None or self._pending_flush.done():
            self._pending_flush = asyncio.create_task(self.flush())

    async def flush(self) -> int:
        """Flush buffered events in batches. Returns the number delivered."""
        delivered = 0
        async with self._flush_lock:
            while self._queue:
                batch = [self._queue.popleft() for _ in range(min(self.batch_size, len(self._queue)))]
                try:
                    await self.sink.publish(batch)
                except Exception as e:
                    self._queue.extendleft(reversed(batch))
                    self.failed_flushes += 1
                    if self.metrics is not None:
                        self.metrics.increment_counter("event_flush_failures")
                    logger.error(
                        "Event flush failed, batch re-queued",
                        batch_size=len(batch),
                        queued=len(self._queue),
                        error=str(e),
                    )
                    break
                delivered += len(batch)
                if self.metrics is not None:
                    self.metrics.increment_counter("events_flushed", len(batch))
        return delivered

    async def start(self):
        """Start the periodic flush task."""
        if self._running:
            return
        self._running = True
        self._flush_task = asyncio.create_task(self._flush_loop())
        logger.info("Event queue started", flush_interval_ms=self.flush_interval_ms)

    async def stop(self):
        """Stop the flush task and drain what the sink will accept."""
        self._running = False
        if self._flush_task:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        if self._pending_flush is not None:
            await self._pending_flush
            self._pending_flush = None
        await self.flush()
        logger.info("Event queue stopped", pending=len(self._queue))

    async def _flush_loop(self):
        interval = self.flush_interval_ms / 1000.0
        while self._running:
            try:
                await asyncio.wait_for(self._flush_requested.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            self._flush_requested.clear()
            await self.flush()
