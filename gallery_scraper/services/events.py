"""
Event Channel for the Scraping Pipeline

The orchestrator publishes typed PipelineEvents; admin layers and the CLI
subscribe and consume them as an async stream. Each subscriber owns a bounded
queue: when a slow consumer falls behind, its oldest events are dropped rather
than growing memory without limit. LOG events are additionally retained in a
bounded ring so a poller that connects late can still show recent lines.

Usage:
    channel = EventChannel()
    subscription = channel.subscribe()

    async for event in subscription:
        if event.type == EventType.ITEM_FAILED:
            print(event.data["error_message"])
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Deque, Dict, List, Optional
from uuid import UUID

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Lifecycle events published by the orchestrator."""
    SESSION_STARTED = "session_started"
    SESSION_PAUSED = "session_paused"
    SESSION_RESUMED = "session_resumed"
    SESSION_TIMEOUT_PAUSED = "session_timeout_paused"
    SESSION_COMPLETED = "session_completed"
    SESSION_CANCELLED = "session_cancelled"
    SESSION_INTERRUPTED = "session_interrupted"
    BATCH_STARTED = "batch_started"
    BATCH_COMPLETED = "batch_completed"
    ITEM_PHASE = "item_phase"
    ITEM_SUCCEEDED = "item_succeeded"
    ITEM_FAILED = "item_failed"
    ITEM_SKIPPED = "item_skipped"
    ITEM_CANCELLED = "item_cancelled"
    CONFIG_PENDING = "config_pending"
    CONFIG_APPLIED = "config_applied"
    CONFIG_CANCELLED = "config_cancelled"
    POOL_STATS = "pool_stats"
    LOG = "log"


@dataclass
class PipelineEvent:
    type: EventType
    session_id: Optional[UUID] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON consumers."""
        return {
            "type": self.type.value,
            "session_id": str(self.session_id) if self.session_id else None,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class LogLine:
    level: str
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "level": self.level,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


class Subscription:
    """One consumer's bounded view of the channel."""

    def __init__(self, channel: "EventChannel", maxsize: int):
        self._channel = channel
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def _offer(self, event: Optional[PipelineEvent]) -> None:
        if self._queue.full():
            # Slow consumer: drop the oldest event to make room
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(event)

    async def get(self) -> Optional[PipelineEvent]:
        """Next event, or None once the channel has been closed."""
        if self.closed and self._queue.empty():
            return None
        return await self._queue.get()

    def get_nowait(self) -> Optional[PipelineEvent]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def drain(self) -> List[PipelineEvent]:
        """All events currently buffered, without waiting."""
        events = []
        while True:
            event = self.get_nowait()
            if event is None:
                return events
            events.append(event)

    def unsubscribe(self) -> None:
        """Stop receiving events. A consumer blocked in get() wakes with None."""
        if self.closed:
            return
        self._channel._subscribers.discard(self)
        self.closed = True
        self._offer(None)

    def __aiter__(self) -> AsyncIterator[PipelineEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[PipelineEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event


class EventChannel:
    """
    Fan-out channel for PipelineEvents with a bounded log ring.

    publish() never blocks and never raises into the publisher.
    """

    def __init__(self, log_capacity: int = 500, subscriber_queue_size: int = 1000):
        self.log_capacity = log_capacity
        self.subscriber_queue_size = subscriber_queue_size
        self._subscribers: set = set()
        self._logs: Deque[LogLine] = deque(maxlen=log_capacity)

    def subscribe(self, maxsize: Optional[int] = None) -> Subscription:
        subscription = Subscription(self, maxsize or self.subscriber_queue_size)
        self._subscribers.add(subscription)
        return subscription

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: PipelineEvent) -> None:
        if event.type == EventType.LOG:
            self._logs.append(LogLine(
                level=event.data.get("level", "info"),
                message=event.data.get("message", ""),
                timestamp=event.timestamp,
            ))

        for subscription in list(self._subscribers):
            subscription._offer(event)

    def emit(
        self,
        event_type: EventType,
        session_id: Optional[UUID] = None,
        **data: Any,
    ) -> PipelineEvent:
        """Build and publish an event in one call."""
        event = PipelineEvent(type=event_type, session_id=session_id, data=data)
        self.publish(event)
        return event

    def log(self, message: str, level: str = "info", session_id: Optional[UUID] = None) -> None:
        self.emit(EventType.LOG, session_id=session_id, level=level, message=message)

    def recent_logs(self, limit: Optional[int] = None) -> List[LogLine]:
        """Most recent log lines, oldest first."""
        lines = list(self._logs)
        if limit is not None:
            lines = lines[-limit:] if limit > 0 else []
        return lines

    def close(self) -> None:
        """Wake every subscriber with end-of-stream."""
        for subscription in list(self._subscribers):
            subscription.closed = True
            subscription._offer(None)
        self._subscribers.clear()
