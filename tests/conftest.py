"""Shared fakes: a browser surface for the pool and stand-ins for the connector and screenshot unit."""
import asyncio
import io
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest
import pytest_asyncio
from PIL import Image

from gallery_scraper.config import PerformanceConfig
from gallery_scraper.models.schemas import TemplateRecord, slug_from_url
from gallery_scraper.services.connector import template_id_for
from gallery_scraper.services.events import EventChannel
from gallery_scraper.services.orchestrator import BatchOrchestrator
from gallery_scraper.services.screenshot import ScreenshotResult
from gallery_scraper.services.state_store import MemoryStateStore
from gallery_scraper.services.worker_pool import BrowserPool


# =============================================================================
# Browser surface
# =============================================================================

class FakePage:
    def __init__(self, context: "FakeContext"):
        self.context = context
        self.closed = False

    async def close(self):
        self.closed = True


class FakeContext:
    def __init__(self, browser: "FakeBrowser", options: Dict[str, Any]):
        self.browser = browser
        self.options = options
        self.pages: List[FakePage] = []
        self.fail_new_page = False

    async def new_page(self) -> FakePage:
        if self.fail_new_page:
            raise RuntimeError("new_page failed")
        page = FakePage(self)
        self.pages.append(page)
        return page


class FakeBrowser:
    def __init__(self):
        self.connected = True
        self.contexts: List[FakeContext] = []

    def is_connected(self) -> bool:
        return self.connected

    async def new_context(self, **options) -> FakeContext:
        context = FakeContext(self, options)
        self.contexts.append(context)
        return context

    async def close(self):
        self.connected = False


class FakeLauncher:
    """Launches FakeBrowsers. `failures` launches fail first; -1 fails forever."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.browsers: List[FakeBrowser] = []
        self.attempts = 0
        self.closed = False

    async def __call__(self) -> FakeBrowser:
        self.attempts += 1
        if self.failures != 0:
            if self.failures > 0:
                self.failures -= 1
            raise RuntimeError("browser launch failed")
        browser = FakeBrowser()
        self.browsers.append(browser)
        return browser

    async def close(self):
        self.closed = True


# =============================================================================
# Connector / screenshot stand-ins
# =============================================================================

Behavior = Callable[[], Any]


class FakeConnector:
    """
    Per-URL navigation behaviour: an exception instance is raised, an async
    callable is awaited (use it to block or delay).
    """

    def __init__(
        self,
        behaviors: Optional[Dict[str, Any]] = None,
        previews: Optional[Dict[str, str]] = None,
        authors: Optional[Dict[str, str]] = None,
    ):
        self.timeout_ms = 60000
        self.behaviors = behaviors or {}
        self.previews = previews or {}
        self.authors = authors or {}
        self.links: List[str] = []
        self.navigated: List[str] = []

    async def navigate(self, page, url: str, wait_for_ready: bool = True) -> None:
        self.navigated.append(url)
        behavior = self.behaviors.get(url)
        if isinstance(behavior, BaseException):
            raise behavior
        if behavior is not None:
            await behavior()

    async def extract(self, page, url: str) -> TemplateRecord:
        slug = slug_from_url(url)
        return TemplateRecord(
            template_id=template_id_for(slug),
            slug=slug,
            name=slug.replace("-", " ").title(),
            storefront_url=url,
            live_preview_url=self.previews.get(url),
            author_id=self.authors.get(url),
        )

    async def internal_links(self, page, base_url: str) -> List[str]:
        return list(self.links)


class FakeScreenshots:
    def __init__(self):
        self.options = None
        self.exclusions: List[str] = []
        self.processed: List[str] = []

    def configure(self, options) -> None:
        self.options = options

    async def prepare(self, page, exclusions=()):
        self.exclusions = list(exclusions)

    async def capture(self, page) -> bytes:
        return b"raw-jpeg"

    async def process(self, raw: bytes, slug: str) -> ScreenshotResult:
        self.processed.append(slug)
        return ScreenshotResult(
            preview_path=Path(f"screenshots/{slug}.webp"),
            thumbnail_path=Path(f"thumbnails/{slug}_thumb.webp"),
            width=1000,
            height=2000,
        )


def blocker(event: asyncio.Event) -> Behavior:
    """Navigation that waits until `event` is set."""
    async def _wait():
        await event.wait()
    return _wait


def hang() -> Behavior:
    async def _forever():
        await asyncio.Event().wait()
    return _forever


def template_url(slug: str) -> str:
    return f"https://templates.webflow.com/html/{slug}-website-template"


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def jpeg_bytes(size=(1200, 1800), color=None) -> bytes:
    """A JPEG frame: solid `color`, or a gradient so it is not blank."""
    if color is not None:
        image = Image.new("RGB", size, color)
    else:
        image = Image.linear_gradient("L").resize(size).convert("RGB")
    buf = io.BytesIO()
    image.save(buf, format="JPEG", quality=90)
    return buf.getvalue()


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def store():
    return MemoryStateStore()


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest_asyncio.fixture
async def make_orchestrator(store, launcher):
    """Build orchestrators over fake browsers; all are closed after the test."""
    created: List[BatchOrchestrator] = []

    def _make(connector=None, config=None, **kwargs) -> BatchOrchestrator:
        config = config or PerformanceConfig(concurrency=2, browser_instances=1, pages_per_browser=2)
        pool = BrowserPool(
            browser_instances=config.effective_browser_instances,
            pages_per_browser=config.pages_per_browser,
            launcher=kwargs.pop("pool_launcher", launcher),
            relaunch_backoff=0,
        )
        orchestrator = BatchOrchestrator(
            store=kwargs.pop("state_store", store),
            pool=pool,
            connector=connector or FakeConnector(),
            screenshots=FakeScreenshots(),
            config=config,
            events=EventChannel(),
            **kwargs,
        )
        created.append(orchestrator)
        return orchestrator

    yield _make

    for orchestrator in created:
        await orchestrator.close()
