"""
Pydantic models for the template scraping pipeline
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any
from urllib.parse import urlparse
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class SessionType(str, Enum):
    FULL = "full"
    UPDATE = "update"
    URL_LIST = "url_list"


class SessionStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    PAUSED = "paused"
    TIMEOUT_PAUSED = "timeout_paused"
    COMPLETING = "completing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    INTERRUPTED = "interrupted"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.CANCELLED)

    @property
    def is_paused(self) -> bool:
        return self in (SessionStatus.PAUSED, SessionStatus.TIMEOUT_PAUSED)


# Sessions a restarted process should offer for resume
RESUMABLE_STATUSES = (
    SessionStatus.RUNNING,
    SessionStatus.PAUSED,
    SessionStatus.TIMEOUT_PAUSED,
    SessionStatus.INTERRUPTED,
)


class BatchStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_closed(self) -> bool:
        return self in (BatchStatus.COMPLETED, BatchStatus.CANCELLED)


class ItemStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (ItemStatus.PENDING, ItemStatus.RUNNING)


class ItemPhase(str, Enum):
    QUEUED = "queued"
    NAVIGATION = "navigation"
    EXTRACTION = "extraction"
    SCREENSHOT_CAPTURE = "screenshot_capture"
    SCREENSHOT_PROCESSING = "screenshot_processing"
    SAVING = "saving"
    DONE = "done"


# =============================================================================
# Work Items
# =============================================================================

_TEMPLATE_SUFFIX = re.compile(r"-website-template$")


def slug_from_url(url: str) -> str:
    """Last path segment of a template URL, minus the marketplace suffix."""
    path = urlparse(url).path.rstrip("/")
    segment = path.rsplit("/", 1)[-1] if path else urlparse(url).netloc
    return _TEMPLATE_SUFFIX.sub("", segment) or "index"


def domain_slug_from_url(url: str) -> Optional[str]:
    """First host label of a live preview URL (foo.webflow.io -> foo)."""
    host = urlparse(url).hostname
    if not host:
        return None
    return host.split(".")[0].lower()


class WorkItem(BaseModel):
    url: str
    slug: str
    name: Optional[str] = None

    @classmethod
    def from_url(cls, url: str, name: Optional[str] = None) -> "WorkItem":
        url = url.strip()
        return cls(url=url, slug=slug_from_url(url), name=name)


# =============================================================================
# Persisted Rows
# =============================================================================

class Counters(BaseModel):
    """Outcome counters shared by sessions and batches."""
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: int = 0

    def count(self, status: ItemStatus) -> None:
        if status == ItemStatus.SUCCEEDED:
            self.successful += 1
        elif status == ItemStatus.FAILED:
            self.failed += 1
        elif status == ItemStatus.SKIPPED:
            self.skipped += 1
        elif status == ItemStatus.CANCELLED:
            self.cancelled += 1
            return
        else:
            return
        self.processed = self.successful + self.failed + self.skipped


class ScrapeSession(Counters):
    id: UUID = Field(default_factory=uuid4)
    session_type: SessionType = SessionType.URL_LIST
    status: SessionStatus = SessionStatus.STARTING
    total_items: int = 0
    total_batches: int = 0
    batch_size: int = 10
    current_batch_number: int = 0
    config: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    resumed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ScrapeBatch(Counters):
    id: UUID = Field(default_factory=uuid4)
    session_id: UUID
    batch_number: int
    status: BatchStatus = BatchStatus.PENDING
    total_items: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class BatchItem(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    batch_id: UUID
    session_id: UUID
    position: int
    url: str
    slug: str
    name: Optional[str] = None
    status: ItemStatus = ItemStatus.PENDING
    phase: ItemPhase = ItemPhase.QUEUED
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    screenshot_path: Optional[str] = None
    thumbnail_path: Optional[str] = None
    template_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_work_item(self) -> WorkItem:
        return WorkItem(url=self.url, slug=self.slug, name=self.name)


# =============================================================================
# Extraction Results
# =============================================================================

class TemplateFeature(BaseModel):
    name: str
    description: Optional[str] = None
    icon_type: Optional[str] = None


class TemplateRecord(BaseModel):
    """Structured facts read from one template storefront page."""
    template_id: str
    slug: str
    name: str
    storefront_url: str
    author_name: Optional[str] = None
    author_id: Optional[str] = None
    author_avatar: Optional[str] = None
    live_preview_url: Optional[str] = None
    designer_preview_url: Optional[str] = None
    price: Optional[str] = None
    short_description: Optional[str] = None
    long_description: Optional[str] = None
    subcategories: List[str] = Field(default_factory=list)
    styles: List[str] = Field(default_factory=list)
    features: List[TemplateFeature] = Field(default_factory=list)
    is_cms: bool = False
    is_ecommerce: bool = False
    internal_links: List[str] = Field(default_factory=list)
    screenshot_path: Optional[str] = None
    thumbnail_path: Optional[str] = None
    screenshot_url: Optional[str] = None
    is_alternate_homepage: bool = False
    alternate_homepage_path: Optional[str] = None
    scraped_at: datetime = Field(default_factory=utcnow)


class BlacklistEntry(BaseModel):
    domain_slug: str
    storefront_url: Optional[str] = None
    reason: str = "manual_skip"
    created_at: datetime = Field(default_factory=utcnow)
