"""
Error taxonomy for the scraping pipeline.

Per-item errors (extraction, capture, item timeout) are caught at the item
boundary and recorded on the item row. Pool and persistence errors are
logged by the orchestrator; only WorkerLaunchFailed ends a session.
"""

from typing import Optional


class ScraperError(Exception):
    """Base class for every error raised by gallery_scraper."""

    #: short machine-readable name stored as the item's error_type
    error_type = "error"

    #: whether the error counts toward timeout auto-pause
    is_timeout = False


# =============================================================================
# Connector
# =============================================================================

class ExtractionError(ScraperError):
    """Navigating to or reading a target page failed."""

    error_type = "extraction_error"

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class NavigationTimeout(ExtractionError):
    error_type = "navigation_timeout"
    is_timeout = True


class NavigationFailed(ExtractionError):
    error_type = "navigation_failed"


class ExtractionFailed(ExtractionError):
    """In-page evaluation failed or returned garbage."""

    error_type = "extraction_failed"


class NoMatchingFields(ExtractionFailed):
    """The page loaded but none of the expected fields were found."""

    error_type = "no_matching_fields"


# =============================================================================
# Screenshot
# =============================================================================

class CaptureFailed(ScraperError):
    error_type = "capture_failed"


# =============================================================================
# Worker Pool
# =============================================================================

class WorkerLaunchFailed(ScraperError):
    """Browser relaunch failed too many times in a row."""

    error_type = "worker_launch_failed"

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class PoolClosedError(ScraperError):
    error_type = "pool_closed"


# =============================================================================
# Orchestrator
# =============================================================================

class ItemTimeoutError(ScraperError, TimeoutError):
    """An item exceeded its per-item deadline."""

    error_type = "timeout"
    is_timeout = True

    def __init__(self, message: str, timeout_ms: int = 0):
        super().__init__(message)
        self.timeout_ms = timeout_ms


class PersistenceError(ScraperError):
    """A state store write or read failed."""

    error_type = "persistence_error"


class SessionStateError(ScraperError):
    """The requested transition is not valid in the current session state."""

    error_type = "session_state"
