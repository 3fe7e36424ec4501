# Models package
from .schemas import (
    SessionType,
    SessionStatus,
    BatchStatus,
    ItemStatus,
    ItemPhase,
    WorkItem,
    ScrapeSession,
    ScrapeBatch,
    BatchItem,
    TemplateFeature,
    TemplateRecord,
    BlacklistEntry,
)
