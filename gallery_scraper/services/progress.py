"""
Progress Tracking Service for the Scraping Pipeline

Tracks what each in-flight item is doing right now:
- navigation: loading the storefront page
- extraction: reading template fields
- screenshot_capture: preparing and shooting the live preview
- screenshot_processing: encoding preview and thumbnail
- saving: writing the template record

Live phases are ephemeral and held in memory only. Counters and terminal
statuses come from the state store, so a snapshot taken after a crash shows
committed progress and simply has no live phases.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from ..models.schemas import BatchItem, ItemPhase, ScrapeSession
from .events import EventChannel, EventType
from .state_store import StateStore

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LivePhase:
    """In-memory phase of one running item."""
    item_id: UUID
    batch_id: UUID
    url: str
    slug: str
    phase: ItemPhase = ItemPhase.QUEUED
    phase_started_at: datetime = field(default_factory=_now)
    name: Optional[str] = None

    def elapsed_seconds(self, now: Optional[datetime] = None) -> float:
        return round(((now or _now()) - self.phase_started_at).total_seconds(), 1)

    def to_dict(self) -> dict:
        return {
            "item_id": str(self.item_id),
            "url": self.url,
            "slug": self.slug,
            "name": self.name,
            "phase": self.phase.value,
            "phase_started_at": self.phase_started_at.isoformat(),
            "phase_elapsed_seconds": self.elapsed_seconds(),
        }


@dataclass
class SessionProgress:
    """
    Rate and ETA derived from a session row.

    Attributes:
        processed: Items that reached succeeded, failed or skipped
        total: Items in the session
        rate: Items per second since the session started
        eta_seconds: Estimated time remaining in seconds
    """
    processed: int = 0
    total: int = 0
    rate: float = 0.0
    eta_seconds: int = 0

    @property
    def percentage(self) -> float:
        if self.total == 0:
            return 0.0
        return round((self.processed / self.total) * 100, 1)

    @classmethod
    def from_session(cls, session: ScrapeSession, now: Optional[datetime] = None) -> "SessionProgress":
        progress = cls(processed=session.processed, total=session.total_items)
        started = session.resumed_at or session.started_at
        if not started or session.processed == 0:
            return progress

        elapsed = ((now or _now()) - started).total_seconds()
        if elapsed > 0:
            progress.rate = session.processed / elapsed
            remaining = session.total_items - session.processed
            if progress.rate > 0:
                progress.eta_seconds = int(remaining / progress.rate)
        return progress

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "total": self.total,
            "percentage": self.percentage,
            "rate": round(self.rate, 2),
            "eta_seconds": self.eta_seconds,
        }


class ProgressTracker:
    """
    Live phase bookkeeping plus phase-change events.

    Usage:
        tracker = ProgressTracker(events)
        tracker.set_phase(item, ItemPhase.NAVIGATION)
        ...
        tracker.finish(item.id)
    """

    def __init__(self, events: EventChannel):
        self.events = events
        self._live: Dict[UUID, LivePhase] = {}

    def set_phase(self, item: BatchItem, phase: ItemPhase, name: Optional[str] = None) -> LivePhase:
        live = self._live.get(item.id)
        previous = None
        if live is None:
            live = LivePhase(item_id=item.id, batch_id=item.batch_id, url=item.url, slug=item.slug, name=item.name)
            self._live[item.id] = live
        else:
            previous = (live.phase, live.elapsed_seconds())

        live.phase = phase
        live.phase_started_at = _now()
        if name:
            live.name = name

        self.events.emit(
            EventType.ITEM_PHASE,
            session_id=item.session_id,
            item_id=str(item.id),
            batch_id=str(item.batch_id),
            url=item.url,
            slug=item.slug,
            name=live.name,
            phase=phase.value,
            previous_phase=previous[0].value if previous else None,
            previous_phase_seconds=previous[1] if previous else None,
        )
        return live

    def get(self, item_id: UUID) -> Optional[LivePhase]:
        return self._live.get(item_id)

    def finish(self, item_id: UUID) -> None:
        self._live.pop(item_id, None)

    def clear(self) -> None:
        self._live.clear()

    @property
    def active(self) -> List[LivePhase]:
        return list(self._live.values())

    async def snapshot(self, store: StateStore, session_id: UUID) -> Dict[str, Any]:
        """
        Committed session, batch and item rows merged with live phases.

        Items of the current batch carry `live_phase` and
        `phase_elapsed_seconds` while they are running.
        """
        session = await store.get_session(session_id)
        if session is None:
            return {"session": None, "current_batch": None, "items": [], "batches": []}

        batches = await store.list_batches(session_id)
        current = next((b for b in batches if b.batch_number == session.current_batch_number), None)

        items: List[dict] = []
        if current is not None:
            for item in await store.list_items(current.id):
                row = item.model_dump(mode="json")
                live = self._live.get(item.id)
                if live is not None:
                    row["live_phase"] = live.phase.value
                    row["phase_elapsed_seconds"] = live.elapsed_seconds()
                items.append(row)

        return {
            "session": session.model_dump(mode="json"),
            "progress": SessionProgress.from_session(session).to_dict(),
            "current_batch": current.model_dump(mode="json") if current else None,
            "items": items,
            "batches": [b.model_dump(mode="json") for b in batches],
        }
