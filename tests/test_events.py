"""Tests for the event channel."""
import asyncio
from uuid import uuid4

import pytest

from gallery_scraper.services.events import EventChannel, EventType


class TestEventChannel:

    @pytest.mark.asyncio
    async def test_subscribers_receive_events(self):
        channel = EventChannel()
        first, second = channel.subscribe(), channel.subscribe()
        session_id = uuid4()

        channel.emit(EventType.BATCH_STARTED, session_id=session_id, batch_number=1)

        for subscription in (first, second):
            event = await subscription.get()
            assert event.type == EventType.BATCH_STARTED
            assert event.session_id == session_id
            assert event.data == {"batch_number": 1}

    @pytest.mark.asyncio
    async def test_slow_subscriber_drops_oldest(self):
        channel = EventChannel()
        subscription = channel.subscribe(maxsize=2)

        for n in range(3):
            channel.emit(EventType.POOL_STATS, n=n)

        assert subscription.dropped == 1
        assert [e.data["n"] for e in subscription.drain()] == [1, 2]

    @pytest.mark.asyncio
    async def test_unsubscribed_queue_stops_receiving(self):
        channel = EventChannel()
        subscription = channel.subscribe()
        subscription.unsubscribe()

        channel.emit(EventType.POOL_STATS)

        assert channel.subscriber_count == 0
        assert subscription.drain() == []

    @pytest.mark.asyncio
    async def test_log_ring_is_bounded(self):
        channel = EventChannel(log_capacity=3)
        for n in range(5):
            channel.log(f"line {n}", level="warn")

        lines = channel.recent_logs()
        assert [line.message for line in lines] == ["line 2", "line 3", "line 4"]
        assert lines[0].level == "warn"
        assert [line.message for line in channel.recent_logs(limit=1)] == ["line 4"]
        assert channel.recent_logs(limit=0) == []

    @pytest.mark.asyncio
    async def test_close_ends_iteration(self):
        channel = EventChannel()
        subscription = channel.subscribe()
        received = []

        async def consume():
            async for event in subscription:
                received.append(event.type)

        consumer = asyncio.create_task(consume())
        channel.emit(EventType.SESSION_STARTED)
        channel.emit(EventType.SESSION_COMPLETED)
        channel.close()

        await asyncio.wait_for(consumer, timeout=1)
        assert received == [EventType.SESSION_STARTED, EventType.SESSION_COMPLETED]

    def test_event_to_dict(self):
        channel = EventChannel()
        event = channel.emit(EventType.ITEM_FAILED, error_message="boom")

        data = event.to_dict()
        assert data["type"] == "item_failed"
        assert data["session_id"] is None
        assert data["data"] == {"error_message": "boom"}

    @pytest.mark.asyncio
    async def test_unsubscribe_wakes_waiting_consumer(self):
        channel = EventChannel()
        subscription = channel.subscribe()
        waiter = asyncio.create_task(subscription.get())
        await asyncio.sleep(0)

        subscription.unsubscribe()

        assert await asyncio.wait_for(waiter, timeout=1) is None
        assert await subscription.get() is None
