"""
Browser Worker Pool

Keeps `browser_instances` headless Chromium processes, each hosting up to
`pages_per_browser` concurrent pages, and leases pages to the orchestrator
one item at a time.

Capacity is guarded by a counting semaphore with a FIFO waiter queue: the
oldest blocked acquirer always receives the next released slot. A resize is
recorded as pending and applied only once no page is leased.

A browser that has crashed is noticed on the next acquire, discarded and
relaunched. Callers only see a delay unless relaunching fails
`max_launch_failures` times in a row, which raises WorkerLaunchFailed.

Usage:
    pool = BrowserPool(browser_instances=2, pages_per_browser=5)
    await pool.start()

    handle = await pool.acquire()
    try:
        await handle.page.goto(url)
    finally:
        await pool.release(handle)

    await pool.close()
"""

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from playwright.async_api import async_playwright, Browser, BrowserContext, Page

from ..errors import PoolClosedError, WorkerLaunchFailed

logger = logging.getLogger(__name__)

BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-dev-shm-usage",
    "--disable-blink-features=AutomationControlled",
]

DEFAULT_CONTEXT_OPTIONS: Dict[str, Any] = {
    "viewport": {"width": 1440, "height": 900},
    "user_agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
}

Launcher = Callable[[], Awaitable[Browser]]


class PlaywrightLauncher:
    """Starts Playwright once and launches headless Chromium processes."""

    def __init__(self, headless: bool = True, args: Optional[List[str]] = None):
        self.headless = headless
        self.args = args or BROWSER_ARGS
        self._playwright = None

    async def __call__(self) -> Browser:
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch(
            headless=self.headless,
            args=self.args,
        )

    async def close(self) -> None:
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


@dataclass
class BrowserSlot:
    """One browser process and the pages currently leased from it."""
    index: int
    max_pages: int
    browser: Optional[Browser] = None
    context: Optional[BrowserContext] = None
    pages_in_use: int = 0
    usage_count: int = 0

    @property
    def alive(self) -> bool:
        return self.browser is not None and self.browser.is_connected()

    @property
    def has_room(self) -> bool:
        return self.pages_in_use < self.max_pages


@dataclass
class PageHandle:
    """A leased page. Return it with BrowserPool.release()."""
    page: Page
    slot: BrowserSlot
    released: bool = False

    @property
    def browser_index(self) -> int:
        return self.slot.index


@dataclass
class PoolStats:
    active_browsers: int
    pages_in_use: int
    capacity: int
    queue_depth: int
    browser_instances: int
    pages_per_browser: int
    pending_resize: Optional[Tuple[int, int]] = None
    launch_failures: int = 0
    per_browser: List[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "active_browsers": self.active_browsers,
            "pages_in_use": self.pages_in_use,
            "capacity": self.capacity,
            "queue_depth": self.queue_depth,
            "browser_instances": self.browser_instances,
            "pages_per_browser": self.pages_per_browser,
            "pending_resize": list(self.pending_resize) if self.pending_resize else None,
            "launch_failures": self.launch_failures,
            "per_browser": self.per_browser,
        }


class BrowserPool:
    """
    Capacity-bounded pool of browser pages.

    Only the pool touches browser processes; everyone else holds PageHandles.
    """

    def __init__(
        self,
        browser_instances: int = 2,
        pages_per_browser: int = 5,
        launcher: Optional[Launcher] = None,
        context_options: Optional[Dict[str, Any]] = None,
        max_launch_failures: int = 3,
        relaunch_backoff: float = 1.0,
    ):
        """
        Initialize the pool. Browsers launch lazily unless start() is called.

        Args:
            browser_instances: Number of browser processes
            pages_per_browser: Concurrent pages per browser process
            launcher: Async callable returning a new Browser
            context_options: Options for each browser's context
            max_launch_failures: Consecutive launch failures before giving up
            relaunch_backoff: Seconds of backoff per consecutive failure
        """
        self.browser_instances = browser_instances
        self.pages_per_browser = pages_per_browser
        self.launcher: Launcher = launcher or PlaywrightLauncher()
        self.context_options = context_options or dict(DEFAULT_CONTEXT_OPTIONS)
        self.max_launch_failures = max_launch_failures
        self.relaunch_backoff = relaunch_backoff

        self._slots: List[BrowserSlot] = [
            BrowserSlot(index=i, max_pages=pages_per_browser)
            for i in range(browser_instances)
        ]
        self._in_use = 0
        self._waiters: Deque[asyncio.Future] = deque()
        self._lock = asyncio.Lock()
        self._pending_resize: Optional[Tuple[int, int]] = None
        self._launch_failures = 0
        self._closed = False
        self.launches = 0

    # =========================================================================
    # Capacity
    # =========================================================================

    @property
    def capacity(self) -> int:
        return self.browser_instances * self.pages_per_browser

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def queue_depth(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    @property
    def is_idle(self) -> bool:
        return self._in_use == 0

    @property
    def pending_resize(self) -> Optional[Tuple[int, int]]:
        return self._pending_resize

    async def _acquire_permit(self) -> None:
        if self._closed:
            raise PoolClosedError("Worker pool is closed")

        if self._in_use < self.capacity and not self._waiters:
            self._in_use += 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # A permit was handed over just as we were cancelled
                self._release_permit()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def _release_permit(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Permit passes straight to the oldest waiter
                waiter.set_result(None)
                return
        self._in_use = max(0, self._in_use - 1)

    def _wake_waiters(self) -> None:
        while self._waiters and self._in_use < self.capacity:
            waiter = self._waiters.popleft()
            if not waiter.done():
                self._in_use += 1
                waiter.set_result(None)

    # =========================================================================
    # Browser lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Launch every browser up front."""
        async with self._lock:
            for slot in self._slots:
                await self._ensure_alive(slot)
        logger.info(
            f"Worker pool started: {self.browser_instances} browsers x "
            f"{self.pages_per_browser} pages = {self.capacity} slots"
        )

    async def _ensure_alive(self, slot: BrowserSlot) -> None:
        if slot.alive:
            return

        if slot.browser is not None:
            logger.warning(f"Browser {slot.index} disconnected, relaunching")
            await self._close_slot(slot)

        while True:
            try:
                slot.browser = await self.launcher()
                slot.context = await slot.browser.new_context(**self.context_options)
                self._launch_failures = 0
                self.launches += 1
                logger.debug(f"Browser {slot.index} launched")
                return
            except Exception as e:
                self._launch_failures += 1
                slot.browser = None
                slot.context = None
                logger.error(
                    f"Browser {slot.index} launch failed "
                    f"({self._launch_failures}/{self.max_launch_failures}): {e}"
                )
                if self._launch_failures >= self.max_launch_failures:
                    raise WorkerLaunchFailed(
                        f"Browser launch failed {self._launch_failures} times in a row: {e}",
                        attempts=self._launch_failures,
                    ) from e
                await asyncio.sleep(self.relaunch_backoff * self._launch_failures)

    async def _close_slot(self, slot: BrowserSlot) -> None:
        browser, slot.browser, slot.context = slot.browser, None, None
        if browser is None:
            return
        try:
            await browser.close()
        except Exception as e:
            logger.debug(f"Closing browser {slot.index} failed: {e}")

    def _select_slot(self) -> BrowserSlot:
        candidates = [s for s in self._slots if s.has_room] or self._slots
        return min(candidates, key=lambda s: (s.pages_in_use, s.index))

    # =========================================================================
    # Acquire / Release
    # =========================================================================

    async def acquire(self) -> PageHandle:
        """
        Lease one page, waiting FIFO for capacity if necessary.

        Raises:
            WorkerLaunchFailed: Browsers could not be (re)launched
            PoolClosedError: The pool was closed while waiting
        """
        await self._acquire_permit()
        try:
            while True:
                async with self._lock:
                    if self._closed:
                        raise PoolClosedError("Worker pool is closed")
                    slot = self._select_slot()
                    await self._ensure_alive(slot)
                    slot.pages_in_use += 1

                try:
                    page = await slot.context.new_page()
                except Exception as e:
                    slot.pages_in_use -= 1
                    if not slot.alive:
                        continue
                    self._launch_failures += 1
                    if self._launch_failures >= self.max_launch_failures:
                        raise WorkerLaunchFailed(
                            f"Could not open a page on browser {slot.index}: {e}",
                            attempts=self._launch_failures,
                        ) from e
                    logger.warning(f"Opening page on browser {slot.index} failed, retrying: {e}")
                    await asyncio.sleep(self.relaunch_backoff * self._launch_failures)
                    continue

                self._launch_failures = 0
                slot.usage_count += 1
                return PageHandle(page=page, slot=slot)
        except BaseException:
            self._release_permit()
            raise

    async def release(self, handle: PageHandle) -> None:
        """Return a leased page. Releasing twice is a no-op."""
        if handle.released:
            return
        handle.released = True

        try:
            await handle.page.close()
        except Exception as e:
            logger.debug(f"Closing page on browser {handle.browser_index} failed: {e}")

        handle.slot.pages_in_use = max(0, handle.slot.pages_in_use - 1)
        self._release_permit()

        if self._pending_resize and self.is_idle and not self._closed:
            await self._apply_resize()

    @asynccontextmanager
    async def lease(self):
        """Async context manager yielding a leased page."""
        handle = await self.acquire()
        try:
            yield handle.page
        finally:
            await self.release(handle)

    # =========================================================================
    # Resize
    # =========================================================================

    async def resize(self, browser_instances: int, pages_per_browser: int) -> bool:
        """
        Request a new shape. Applied now if idle, otherwise on the last release.

        Returns:
            True if the resize was applied immediately
        """
        if (browser_instances, pages_per_browser) == (self.browser_instances, self.pages_per_browser):
            self._pending_resize = None
            return True

        self._pending_resize = (browser_instances, pages_per_browser)
        if self.is_idle:
            await self._apply_resize()
            return True

        logger.info(
            f"Pool resize to {browser_instances}x{pages_per_browser} pending "
            f"({self._in_use} pages in use)"
        )
        return False

    async def _apply_resize(self) -> None:
        async with self._lock:
            if not self._pending_resize:
                return
            browsers, pages = self._pending_resize
            self._pending_resize = None

            for slot in self._slots[browsers:]:
                await self._close_slot(slot)
            self._slots = self._slots[:browsers]
            for i in range(len(self._slots), browsers):
                self._slots.append(BrowserSlot(index=i, max_pages=pages))
            for slot in self._slots:
                slot.max_pages = pages

            old = (self.browser_instances, self.pages_per_browser)
            self.browser_instances = browsers
            self.pages_per_browser = pages
            logger.info(f"Pool resized {old[0]}x{old[1]} -> {browsers}x{pages}")

        self._wake_waiters()

    # =========================================================================
    # Stats / Shutdown
    # =========================================================================

    def stats(self) -> PoolStats:
        return PoolStats(
            active_browsers=sum(1 for s in self._slots if s.alive),
            pages_in_use=self._in_use,
            capacity=self.capacity,
            queue_depth=self.queue_depth,
            browser_instances=self.browser_instances,
            pages_per_browser=self.pages_per_browser,
            pending_resize=self._pending_resize,
            launch_failures=self._launch_failures,
            per_browser=[s.pages_in_use for s in self._slots],
        )

    async def close(self) -> None:
        """Fail all waiters and close every browser, leased or not."""
        if self._closed:
            return
        self._closed = True

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(PoolClosedError("Worker pool closed"))

        for slot in self._slots:
            await self._close_slot(slot)

        close_launcher = getattr(self.launcher, "close", None)
        if close_launcher is not None:
            await close_launcher()
        logger.info("Worker pool closed")
