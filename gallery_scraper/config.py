"""
Performance configuration for the scraping pipeline.

Every tunable the orchestrator, worker pool and screenshot unit read lives on
PerformanceConfig. Values are clamped into CONFIG_LIMITS on every
construction and every merge, so an out-of-range operator input degrades to
the nearest safe value instead of failing the run.

Usage:
    config = PerformanceConfig.from_env()
    faster = config.merge({"concurrency": 20, "timeout_ms": 30000})
"""

import logging
import math
import os
from typing import Any, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)


# =============================================================================
# Limits
# =============================================================================

# field -> (min, max, type)
CONFIG_LIMITS: Dict[str, Tuple[float, float, type]] = {
    "concurrency": (1, 100, int),
    "browser_instances": (1, 30, int),
    "pages_per_browser": (1, 50, int),
    "batch_size": (1, 200, int),
    "timeout_ms": (5000, 300000, int),
    "animation_wait_ms": (0, 30000, int),
    "nudge_scroll_ratio": (0.0, 0.5, float),
    "nudge_wait_ms": (0, 30000, int),
    "nudge_after_ms": (0, 30000, int),
    "stability_stable_ms": (0, 30000, int),
    "stability_max_wait_ms": (0, 60000, int),
    "stability_interval_ms": (50, 10000, int),
    "jpeg_quality": (1, 100, int),
    "webp_quality": (1, 100, int),
    "auto_pause_threshold": (1, 100, int),
    "timeout_ratio_threshold": (0.0, 1.0, float),
    "timeout_window": (1, 100, int),
}

BOOLEAN_FIELDS = ("scroll_for_lazy_load", "full_page_screenshot")


def clamp_value(name: str, value: Any) -> Any:
    """
    Clamp a single numeric field into its safe range.

    Non-numeric or non-finite input falls back to the field minimum.
    Integer fields are truncated toward zero before clamping.
    """
    low, high, kind = CONFIG_LIMITS[name]
    try:
        number = float(value)
    except (TypeError, ValueError):
        logger.warning(f"Config field {name}={value!r} is not a number, using {low}")
        return kind(low)

    if not math.isfinite(number):
        return kind(low)

    if kind is int:
        number = math.trunc(number)
    return kind(min(high, max(low, number)))


def clamp_config(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Clamp every known numeric field of a raw config mapping.

    Unknown keys are passed through untouched so pydantic can reject them.
    """
    clamped = dict(raw)
    for name in CONFIG_LIMITS:
        if name in clamped and clamped[name] is not None:
            clamped[name] = clamp_value(name, clamped[name])
        elif name in clamped:
            del clamped[name]
    for name in BOOLEAN_FIELDS:
        if name in clamped and clamped[name] is None:
            del clamped[name]
    return clamped


# =============================================================================
# Config Model
# =============================================================================

class PerformanceConfig(BaseModel):
    """Tunables for one orchestrator run."""

    model_config = {"extra": "forbid", "frozen": True}

    # Throughput
    concurrency: int = Field(default=5, ge=1, le=100, description="Simultaneous in-flight items")
    browser_instances: int = Field(default=2, ge=1, le=30)
    pages_per_browser: int = Field(default=5, ge=1, le=50)
    batch_size: int = Field(default=10, ge=1, le=200)
    timeout_ms: int = Field(default=60000, ge=5000, le=300000, description="Per-item deadline")

    # Screenshot timing
    animation_wait_ms: int = Field(default=3000, ge=0, le=30000)
    scroll_for_lazy_load: bool = False
    nudge_scroll_ratio: float = Field(default=0.2, ge=0.0, le=0.5)
    nudge_wait_ms: int = Field(default=500, ge=0, le=30000)
    nudge_after_ms: int = Field(default=500, ge=0, le=30000)
    stability_stable_ms: int = Field(default=1000, ge=0, le=30000)
    stability_max_wait_ms: int = Field(default=7000, ge=0, le=60000)
    stability_interval_ms: int = Field(default=250, ge=50, le=10000)

    # Screenshot quality
    full_page_screenshot: bool = True
    jpeg_quality: int = Field(default=80, ge=1, le=100)
    webp_quality: int = Field(default=75, ge=1, le=100)

    # Timeout backpressure
    auto_pause_threshold: int = Field(default=5, ge=1, le=100, description="Consecutive timeouts before auto-pause")
    timeout_ratio_threshold: float = Field(default=0.8, ge=0.0, le=1.0, description="0 disables the ratio trigger")
    timeout_window: int = Field(default=10, ge=1, le=100)

    @model_validator(mode="before")
    @classmethod
    def _clamp(cls, data: Any) -> Any:
        if isinstance(data, Mapping):
            return clamp_config(data)
        return data

    @property
    def capacity(self) -> int:
        """Page slots the worker pool offers with this config."""
        return self.effective_browser_instances * self.pages_per_browser

    @property
    def min_browsers_needed(self) -> int:
        return math.ceil(self.concurrency / self.pages_per_browser)

    @property
    def effective_browser_instances(self) -> int:
        """Browser count large enough to serve `concurrency` pages."""
        high = int(CONFIG_LIMITS["browser_instances"][1])
        return min(high, max(self.browser_instances, self.min_browsers_needed))

    def merge(self, partial: Optional[Mapping[str, Any]]) -> "PerformanceConfig":
        """Return a new config with `partial` laid over this one, clamped."""
        if not partial:
            return self
        data = self.model_dump()
        data.update({k: v for k, v in partial.items() if v is not None})
        return PerformanceConfig(**data)

    def diff(self, other: "PerformanceConfig") -> Dict[str, Tuple[Any, Any]]:
        """Fields that differ between this config and `other`."""
        mine, theirs = self.model_dump(), other.model_dump()
        return {k: (mine[k], theirs[k]) for k in mine if mine[k] != theirs[k]}

    @classmethod
    def from_env(cls, **overrides: Any) -> "PerformanceConfig":
        """Build a config from SCRAPER_* environment variables."""
        env_map = {
            "concurrency": "SCRAPER_CONCURRENCY",
            "browser_instances": "SCRAPER_BROWSERS",
            "pages_per_browser": "SCRAPER_PAGES_PER_BROWSER",
            "batch_size": "SCRAPER_BATCH_SIZE",
            "timeout_ms": "SCRAPER_TIMEOUT",
            "jpeg_quality": "SCREENSHOT_QUALITY",
        }
        data: Dict[str, Any] = {}
        for name, var in env_map.items():
            value = os.environ.get(var)
            if value:
                data[name] = value
        data.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**data)
