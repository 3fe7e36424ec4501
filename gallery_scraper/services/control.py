"""
Runtime Reconfiguration and Timeout Backpressure

ConfigController holds the current PerformanceConfig and at most one pending
change. The orchestrator calls apply_pending() only at batch boundaries, so a
running batch never sees its concurrency or pool shape change underneath it.

TimeoutMonitor counts item timeouts and tells the orchestrator when to
auto-pause: after `threshold` consecutive timeouts, or when the share of
timeouts among the last `window` outcomes reaches `ratio_threshold`.
"""

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Deque, Dict, Mapping, Optional, Tuple

from ..config import PerformanceConfig

logger = logging.getLogger(__name__)


@dataclass
class ConfigChange:
    previous: PerformanceConfig
    current: PerformanceConfig

    @property
    def changed(self) -> Dict[str, Tuple[Any, Any]]:
        return self.previous.diff(self.current)

    @property
    def pool_shape_changed(self) -> bool:
        return (
            self.previous.effective_browser_instances != self.current.effective_browser_instances
            or self.previous.pages_per_browser != self.current.pages_per_browser
        )


class ConfigController:
    """Current config plus one queued change."""

    def __init__(self, config: Optional[PerformanceConfig] = None):
        self._current = config or PerformanceConfig()
        self._pending: Optional[PerformanceConfig] = None

    @property
    def current(self) -> PerformanceConfig:
        return self._current

    @property
    def pending(self) -> Optional[PerformanceConfig]:
        return self._pending

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def update_pending(self, partial: Mapping[str, Any]) -> PerformanceConfig:
        """
        Merge `partial` into the pending config (or the current one if none).

        Values are clamped field by field. Unknown fields raise a pydantic
        ValidationError.
        """
        base = self._pending or self._current
        self._pending = base.merge(partial)
        logger.info(f"Pending config updated: {base.diff(self._pending)}")
        return self._pending

    def cancel_pending(self) -> Optional[PerformanceConfig]:
        """Drop the queued change. Returns what was discarded."""
        discarded, self._pending = self._pending, None
        if discarded is not None:
            logger.info("Pending config cancelled")
        return discarded

    def apply_pending(self) -> Optional[ConfigChange]:
        """Promote pending to current. Returns None when nothing was queued."""
        if self._pending is None:
            return None
        change = ConfigChange(previous=self._current, current=self._pending)
        self._current, self._pending = self._pending, None
        logger.info(f"Config applied: {change.changed}")
        return change


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


class TimeoutMonitor:
    """
    Consecutive and windowed timeout counting.

    A success or a non-timeout failure resets the consecutive counter.
    """

    def __init__(self, threshold: int = 5, ratio_threshold: float = 0.8, window: int = 10):
        self.threshold = threshold
        self.ratio_threshold = ratio_threshold
        self.window = window
        self.consecutive = 0
        self.total_timeouts = 0
        self._recent: Deque[bool] = deque(maxlen=window)

    def configure(self, config: PerformanceConfig) -> None:
        self.threshold = config.auto_pause_threshold
        self.ratio_threshold = config.timeout_ratio_threshold
        if config.timeout_window != self.window:
            self.window = config.timeout_window
            self._recent = deque(self._recent, maxlen=self.window)

    def record(self, outcome: Outcome) -> bool:
        """
        Record one finished item.

        Returns:
            True if the pipeline should auto-pause now
        """
        timed_out = outcome == Outcome.TIMEOUT
        self._recent.append(timed_out)

        if not timed_out:
            self.consecutive = 0
            return False

        self.consecutive += 1
        self.total_timeouts += 1
        return self.should_pause

    @property
    def timeout_ratio(self) -> float:
        if not self._recent:
            return 0.0
        return sum(self._recent) / len(self._recent)

    @property
    def should_pause(self) -> bool:
        if self.consecutive >= self.threshold:
            return True
        return (
            self.ratio_threshold > 0
            and len(self._recent) >= self.window
            and self.timeout_ratio >= self.ratio_threshold
        )

    def reset(self) -> None:
        """Called when an operator resumes from a timeout pause."""
        self.consecutive = 0
        self._recent.clear()

    def to_dict(self) -> dict:
        return {
            "consecutive_timeouts": self.consecutive,
            "total_timeouts": self.total_timeouts,
            "threshold": self.threshold,
            "recent_timeout_ratio": round(self.timeout_ratio, 2),
            "window": self.window,
        }
