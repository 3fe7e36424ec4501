"""
Resumable State Store

Session, batch and item rows are the single source of truth for progress.
The orchestrator is the only writer; pollers read committed rows only.

StateStore defines the operations the orchestrator needs. MemoryStateStore
keeps rows in process memory (dry runs, tests); SupabaseStateStore in
services/supabase.py persists them to Postgres.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Set
from uuid import UUID

from ..errors import PersistenceError
from ..models.schemas import (
    BatchItem,
    BlacklistEntry,
    RESUMABLE_STATUSES,
    ScrapeBatch,
    ScrapeSession,
    TemplateRecord,
)

logger = logging.getLogger(__name__)


class StateStore(ABC):
    """Persistence operations used by the orchestrator."""

    # Sessions
    @abstractmethod
    async def create_session(self, session: ScrapeSession) -> ScrapeSession:
        pass

    @abstractmethod
    async def update_session(self, session_id: UUID, **fields: Any) -> None:
        pass

    @abstractmethod
    async def get_session(self, session_id: UUID) -> Optional[ScrapeSession]:
        pass

    @abstractmethod
    async def find_resumable_session(self) -> Optional[ScrapeSession]:
        """Most recent session left running, paused or interrupted."""
        pass

    # Batches and items
    @abstractmethod
    async def create_batch(self, batch: ScrapeBatch, items: List[BatchItem]) -> ScrapeBatch:
        pass

    @abstractmethod
    async def update_batch(self, batch_id: UUID, **fields: Any) -> None:
        pass

    @abstractmethod
    async def list_batches(self, session_id: UUID) -> List[ScrapeBatch]:
        """Batches of a session ordered by batch_number."""
        pass

    @abstractmethod
    async def list_items(self, batch_id: UUID) -> List[BatchItem]:
        """Items of a batch ordered by position."""
        pass

    @abstractmethod
    async def update_item(self, item_id: UUID, **fields: Any) -> None:
        pass

    # Catalog
    @abstractmethod
    async def save_template(self, record: TemplateRecord) -> None:
        pass

    @abstractmethod
    async def known_storefront_urls(self) -> Set[str]:
        pass

    @abstractmethod
    async def get_blacklist(self) -> Set[str]:
        """Blacklisted domain slugs."""
        pass

    @abstractmethod
    async def add_to_blacklist(self, entry: BlacklistEntry) -> None:
        pass

    @abstractmethod
    async def get_screenshot_exclusions(self) -> List[str]:
        pass

    @abstractmethod
    async def get_author_screenshot_exclusions(self) -> Dict[str, List[str]]:
        """Active exclusion selectors per template author id."""
        pass


def _row(table: Dict[UUID, Any], row_id: UUID, kind: str) -> Any:
    try:
        return table[row_id]
    except KeyError:
        raise PersistenceError(f"Unknown {kind} {row_id}") from None


class MemoryStateStore(StateStore):
    """
    In-process StateStore.

    Rows are copied on the way in and out so readers never share objects
    with the writer.
    """

    def __init__(
        self,
        exclusions: Optional[List[str]] = None,
        author_exclusions: Optional[Dict[str, List[str]]] = None,
    ):
        self.sessions: Dict[UUID, ScrapeSession] = {}
        self.batches: Dict[UUID, ScrapeBatch] = {}
        self.items: Dict[UUID, BatchItem] = {}
        self.templates: Dict[str, TemplateRecord] = {}
        self.blacklist: Dict[str, BlacklistEntry] = {}
        self.exclusions: List[str] = list(exclusions or [])
        self.author_exclusions: Dict[str, List[str]] = {k: list(v) for k, v in (author_exclusions or {}).items()}
        self._lock = asyncio.Lock()

    async def create_session(self, session: ScrapeSession) -> ScrapeSession:
        async with self._lock:
            self.sessions[session.id] = session.model_copy(deep=True)
        return session

    async def update_session(self, session_id: UUID, **fields: Any) -> None:
        async with self._lock:
            row = _row(self.sessions, session_id, "session")
            self.sessions[session_id] = row.model_copy(update=fields, deep=True)

    async def get_session(self, session_id: UUID) -> Optional[ScrapeSession]:
        row = self.sessions.get(session_id)
        return row.model_copy(deep=True) if row else None

    async def find_resumable_session(self) -> Optional[ScrapeSession]:
        candidates = [s for s in self.sessions.values() if s.status in RESUMABLE_STATUSES]
        if not candidates:
            return None
        return max(candidates, key=lambda s: s.created_at).model_copy(deep=True)

    async def create_batch(self, batch: ScrapeBatch, items: List[BatchItem]) -> ScrapeBatch:
        async with self._lock:
            self.batches[batch.id] = batch.model_copy(deep=True)
            for item in items:
                self.items[item.id] = item.model_copy(deep=True)
        return batch

    async def update_batch(self, batch_id: UUID, **fields: Any) -> None:
        async with self._lock:
            row = _row(self.batches, batch_id, "batch")
            self.batches[batch_id] = row.model_copy(update=fields, deep=True)

    async def list_batches(self, session_id: UUID) -> List[ScrapeBatch]:
        rows = [b for b in self.batches.values() if b.session_id == session_id]
        return [b.model_copy(deep=True) for b in sorted(rows, key=lambda b: b.batch_number)]

    async def list_items(self, batch_id: UUID) -> List[BatchItem]:
        rows = [i for i in self.items.values() if i.batch_id == batch_id]
        return [i.model_copy(deep=True) for i in sorted(rows, key=lambda i: i.position)]

    async def update_item(self, item_id: UUID, **fields: Any) -> None:
        async with self._lock:
            row = _row(self.items, item_id, "item")
            self.items[item_id] = row.model_copy(update=fields, deep=True)

    async def save_template(self, record: TemplateRecord) -> None:
        self.templates[record.template_id] = record.model_copy(deep=True)

    async def known_storefront_urls(self) -> Set[str]:
        return {t.storefront_url for t in self.templates.values()}

    async def get_blacklist(self) -> Set[str]:
        return set(self.blacklist)

    async def add_to_blacklist(self, entry: BlacklistEntry) -> None:
        self.blacklist[entry.domain_slug] = entry

    async def get_screenshot_exclusions(self) -> List[str]:
        return list(self.exclusions)

    async def get_author_screenshot_exclusions(self) -> Dict[str, List[str]]:
        return {k: list(v) for k, v in self.author_exclusions.items()}
