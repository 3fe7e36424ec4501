"""
Template gallery scraper.

Scrapes a template marketplace into a catalog: storefront metadata plus a
WebP preview and thumbnail of each template's live preview. Work runs as
resumable sessions split into ordered batches over a pool of Playwright
browsers.

Components:
- PerformanceConfig: Clamped tuning knobs, applied at batch boundaries
- BrowserPool: Bounded pool of browser pages with relaunch and deferred resize
- TemplateConnector: Storefront navigation and field extraction
- ScreenshotUnit: Page preparation, capture and WebP post-processing
- BatchOrchestrator: Session/batch state machine with pause, skip, stop, resume
- StateStore: Session/batch/item persistence (in-memory or Supabase)
"""

from .config import PerformanceConfig, CONFIG_LIMITS, clamp_config
from .errors import (
    ScraperError,
    ExtractionError,
    NavigationTimeout,
    NavigationFailed,
    ExtractionFailed,
    NoMatchingFields,
    CaptureFailed,
    WorkerLaunchFailed,
    PoolClosedError,
    ItemTimeoutError,
    PersistenceError,
    SessionStateError,
)
from .services.orchestrator import BatchOrchestrator
from .services.registry import OrchestratorRegistry
from .services.state_store import StateStore, MemoryStateStore

__version__ = "0.1.0"

__all__ = [
    # Config
    'PerformanceConfig',
    'CONFIG_LIMITS',
    'clamp_config',
    # Errors
    'ScraperError',
    'ExtractionError',
    'NavigationTimeout',
    'NavigationFailed',
    'ExtractionFailed',
    'NoMatchingFields',
    'CaptureFailed',
    'WorkerLaunchFailed',
    'PoolClosedError',
    'ItemTimeoutError',
    'PersistenceError',
    'SessionStateError',
    # Orchestration
    'BatchOrchestrator',
    'OrchestratorRegistry',
    'StateStore',
    'MemoryStateStore',
]
