"""Tests for live phase tracking and session progress."""
from datetime import timedelta
from uuid import uuid4

import pytest

from gallery_scraper.models.schemas import BatchItem, ItemPhase, ScrapeBatch, ScrapeSession, utcnow
from gallery_scraper.services.events import EventChannel, EventType
from gallery_scraper.services.progress import ProgressTracker, SessionProgress


def make_item(session_id=None, batch_id=None):
    return BatchItem(
        batch_id=batch_id or uuid4(),
        session_id=session_id or uuid4(),
        position=0,
        url="https://templates.webflow.com/html/nova-website-template",
        slug="nova",
    )


class TestSessionProgress:

    def test_rate_and_eta(self):
        started = utcnow()
        session = ScrapeSession(total_items=100, processed=25, started_at=started)

        progress = SessionProgress.from_session(session, now=started + timedelta(seconds=50))

        assert progress.rate == 0.5
        assert progress.eta_seconds == 150
        assert progress.percentage == 25.0

    def test_nothing_processed_yet(self):
        progress = SessionProgress.from_session(ScrapeSession(total_items=10, started_at=utcnow()))
        assert progress.to_dict() == {"processed": 0, "total": 10, "percentage": 0.0, "rate": 0.0, "eta_seconds": 0}


class TestProgressTracker:

    def test_phase_changes_emit_events(self):
        channel = EventChannel()
        subscription = channel.subscribe()
        tracker = ProgressTracker(channel)
        item = make_item()

        tracker.set_phase(item, ItemPhase.NAVIGATION)
        tracker.set_phase(item, ItemPhase.EXTRACTION, name="Nova")

        events = subscription.drain()
        assert [e.type for e in events] == [EventType.ITEM_PHASE, EventType.ITEM_PHASE]
        assert events[1].data["previous_phase"] == "navigation"
        assert events[1].data["name"] == "Nova"
        assert tracker.get(item.id).phase == ItemPhase.EXTRACTION

        tracker.finish(item.id)
        assert tracker.active == []

    @pytest.mark.asyncio
    async def test_snapshot_merges_live_phase_into_rows(self, store):
        session = ScrapeSession(total_items=1, total_batches=1, current_batch_number=1, started_at=utcnow())
        batch = ScrapeBatch(session_id=session.id, batch_number=1, total_items=1)
        item = make_item(session.id, batch.id)
        await store.create_session(session)
        await store.create_batch(batch, [item])
        tracker = ProgressTracker(EventChannel())
        tracker.set_phase(item, ItemPhase.SCREENSHOT_CAPTURE)

        data = await tracker.snapshot(store, session.id)

        assert data["current_batch"]["id"] == str(batch.id)
        assert data["items"][0]["live_phase"] == "screenshot_capture"
        assert data["progress"]["total"] == 1
        assert len(data["batches"]) == 1

    @pytest.mark.asyncio
    async def test_snapshot_of_unknown_session(self, store):
        data = await ProgressTracker(EventChannel()).snapshot(store, uuid4())
        assert data["session"] is None
