"""
Supabase-backed State Store
Persists scrape sessions, batches, batch items, templates and the blacklist
to Postgres through the Supabase client. Tables are defined in sql/schema.sql.
"""

import asyncio
import logging
import os
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set
from uuid import UUID

from supabase import create_client, Client

from ..errors import PersistenceError
from ..models.schemas import (
    BatchItem,
    BlacklistEntry,
    RESUMABLE_STATUSES,
    ScrapeBatch,
    ScrapeSession,
    TemplateRecord,
)
from .state_store import StateStore

logger = logging.getLogger(__name__)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    return value


class SupabaseStateStore(StateStore):
    """
    StateStore on Supabase tables.

    Every call raises PersistenceError on failure; the orchestrator decides
    whether a failed write matters.
    """

    SESSIONS = "scrape_sessions"
    BATCHES = "scrape_batches"
    ITEMS = "batch_items"
    TEMPLATES = "templates"
    BLACKLIST = "template_blacklist"
    EXCLUSIONS = "screenshot_exclusions"
    AUTHOR_EXCLUSIONS = "author_screenshot_exclusions"

    def __init__(self, url: Optional[str] = None, key: Optional[str] = None, client: Optional[Client] = None):
        """
        Args:
            url: Project URL, defaults to SUPABASE_URL
            key: Service key, defaults to SUPABASE_KEY / SUPABASE_SERVICE_ROLE_KEY
            client: Pre-built client (skips lazy creation)
        """
        self._client: Optional[Client] = client
        self.supabase_url = url or os.environ.get("SUPABASE_URL", "")
        self._key = key

    @property
    def client(self) -> Client:
        """Get or create Supabase client."""
        if self._client is None:
            key = self._key or os.environ.get("SUPABASE_KEY") or os.environ.get("SUPABASE_SERVICE_ROLE_KEY")
            if not self.supabase_url or not key:
                raise PersistenceError("SUPABASE_URL and SUPABASE_KEY environment variables are required")

            self._client = create_client(self.supabase_url, key)
            logger.info(f"Supabase client initialized for {self.supabase_url}")

        return self._client

    async def _execute(self, action: str, query) -> List[Dict[str, Any]]:
        try:
            result = await asyncio.to_thread(query.execute)
        except PersistenceError:
            raise
        except Exception as e:
            logger.error(f"Supabase {action} failed: {e}")
            raise PersistenceError(f"{action} failed: {e}") from e
        return result.data or []

    def _table(self, name: str):
        return self.client.table(name)

    # =========================================================================
    # Sessions
    # =========================================================================

    async def create_session(self, session: ScrapeSession) -> ScrapeSession:
        await self._execute(
            "create_session",
            self._table(self.SESSIONS).insert(session.model_dump(mode="json")),
        )
        logger.info(f"Created scrape session {session.id}")
        return session

    async def update_session(self, session_id: UUID, **fields: Any) -> None:
        await self._execute(
            "update_session",
            self._table(self.SESSIONS).update(_jsonable(fields)).eq("id", str(session_id)),
        )

    async def get_session(self, session_id: UUID) -> Optional[ScrapeSession]:
        rows = await self._execute(
            "get_session",
            self._table(self.SESSIONS).select("*").eq("id", str(session_id)).limit(1),
        )
        return ScrapeSession.model_validate(rows[0]) if rows else None

    async def find_resumable_session(self) -> Optional[ScrapeSession]:
        rows = await self._execute(
            "find_resumable_session",
            self._table(self.SESSIONS)
            .select("*")
            .in_("status", [s.value for s in RESUMABLE_STATUSES])
            .order("created_at", desc=True)
            .limit(1),
        )
        return ScrapeSession.model_validate(rows[0]) if rows else None

    # =========================================================================
    # Batches and Items
    # =========================================================================

    async def create_batch(self, batch: ScrapeBatch, items: List[BatchItem]) -> ScrapeBatch:
        await self._execute(
            "create_batch",
            self._table(self.BATCHES).insert(batch.model_dump(mode="json")),
        )
        if items:
            await self._execute(
                "create_batch_items",
                self._table(self.ITEMS).insert([i.model_dump(mode="json") for i in items]),
            )
        return batch

    async def update_batch(self, batch_id: UUID, **fields: Any) -> None:
        await self._execute(
            "update_batch",
            self._table(self.BATCHES).update(_jsonable(fields)).eq("id", str(batch_id)),
        )

    async def list_batches(self, session_id: UUID) -> List[ScrapeBatch]:
        rows = await self._execute(
            "list_batches",
            self._table(self.BATCHES)
            .select("*")
            .eq("session_id", str(session_id))
            .order("batch_number"),
        )
        return [ScrapeBatch.model_validate(r) for r in rows]

    async def list_items(self, batch_id: UUID) -> List[BatchItem]:
        rows = await self._execute(
            "list_items",
            self._table(self.ITEMS).select("*").eq("batch_id", str(batch_id)).order("position"),
        )
        return [BatchItem.model_validate(r) for r in rows]

    async def update_item(self, item_id: UUID, **fields: Any) -> None:
        await self._execute(
            "update_item",
            self._table(self.ITEMS).update(_jsonable(fields)).eq("id", str(item_id)),
        )

    # =========================================================================
    # Catalog
    # =========================================================================

    async def save_template(self, record: TemplateRecord) -> None:
        await self._execute(
            "save_template",
            self._table(self.TEMPLATES).upsert(record.model_dump(mode="json"), on_conflict="template_id"),
        )

    async def known_storefront_urls(self) -> Set[str]:
        rows = await self._execute(
            "known_storefront_urls",
            self._table(self.TEMPLATES).select("storefront_url"),
        )
        return {r["storefront_url"] for r in rows if r.get("storefront_url")}

    async def get_blacklist(self) -> Set[str]:
        rows = await self._execute(
            "get_blacklist",
            self._table(self.BLACKLIST).select("domain_slug"),
        )
        return {r["domain_slug"] for r in rows}

    async def add_to_blacklist(self, entry: BlacklistEntry) -> None:
        await self._execute(
            "add_to_blacklist",
            self._table(self.BLACKLIST).upsert(entry.model_dump(mode="json"), on_conflict="domain_slug"),
        )
        logger.info(f"Blacklisted {entry.domain_slug} ({entry.reason})")

    async def get_screenshot_exclusions(self) -> List[str]:
        rows = await self._execute(
            "get_screenshot_exclusions",
            self._table(self.EXCLUSIONS).select("selector").eq("is_active", True),
        )
        return [r["selector"] for r in rows if r.get("selector")]

    async def get_author_screenshot_exclusions(self) -> Dict[str, List[str]]:
        rows = await self._execute(
            "get_author_screenshot_exclusions",
            self._table(self.AUTHOR_EXCLUSIONS).select("author_id, selector").eq("is_active", True),
        )
        by_author: Dict[str, List[str]] = {}
        for r in rows:
            if not r.get("author_id") or not r.get("selector"):
                continue
            selectors = by_author.setdefault(r["author_id"], [])
            if r["selector"] not in selectors:
                selectors.append(r["selector"])
        return by_author


# Singleton instance
_supabase_store: Optional[SupabaseStateStore] = None


def get_supabase_store() -> SupabaseStateStore:
    """Get or create Supabase store singleton."""
    global _supabase_store
    if _supabase_store is None:
        _supabase_store = SupabaseStateStore()
    return _supabase_store
