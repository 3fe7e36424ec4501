"""
Batch Orchestrator for the Template Scraping Pipeline
Drives a session of template URLs through the worker pool:
Navigate -> Extract -> Screenshot -> Process -> Save

Session states:
    starting -> running <-> paused -> completing -> completed
    running -> timeout_paused -> running      (auto-pause on timeouts)
    running | paused -> cancelled             (stop)
    running -> interrupted                    (crash, or repeated launch failure)

Batches run strictly in order. Items inside a batch run concurrently, up to
`concurrency`, and a batch closes only once every item is terminal. Config
changes queued while a batch runs are applied before the next batch starts.

Usage:
    orchestrator = BatchOrchestrator.create(store, config, output_dir=Path("output"))
    session = await orchestrator.start(urls)
    await orchestrator.wait()
    await orchestrator.close()
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Set, Union
from uuid import UUID

from ..config import PerformanceConfig
from ..errors import (
    ItemTimeoutError,
    NavigationTimeout,
    PoolClosedError,
    ScraperError,
    SessionStateError,
    WorkerLaunchFailed,
)
from ..models.schemas import (
    BatchItem,
    BlacklistEntry,
    BatchStatus,
    Counters,
    ItemPhase,
    ItemStatus,
    ScrapeBatch,
    ScrapeSession,
    SessionStatus,
    SessionType,
    TemplateRecord,
    WorkItem,
    domain_slug_from_url,
)
from .connector import TemplateConnector
from .control import ConfigController, Outcome, TimeoutMonitor
from .events import EventChannel, EventType
from .homepage import pick_homepage
from .progress import ProgressTracker
from .screenshot import ScreenshotOptions, ScreenshotResult, ScreenshotUnit
from .state_store import StateStore
from .worker_pool import BrowserPool, Launcher

logger = logging.getLogger(__name__)

# Seconds a cancelled item gets to unwind after its deadline
CANCEL_GRACE = 5.0

# Navigation attempts per URL; only timeouts are retried
NAVIGATION_ATTEMPTS = 2
NAVIGATION_RETRY_BACKOFF = 2.0

ITEM_EVENTS = {
    ItemStatus.SUCCEEDED: EventType.ITEM_SUCCEEDED,
    ItemStatus.FAILED: EventType.ITEM_FAILED,
    ItemStatus.SKIPPED: EventType.ITEM_SKIPPED,
    ItemStatus.CANCELLED: EventType.ITEM_CANCELLED,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _counter_fields(row: Counters) -> Dict[str, int]:
    return {
        "processed": row.processed,
        "successful": row.successful,
        "failed": row.failed,
        "skipped": row.skipped,
        "cancelled": row.cancelled,
    }


@dataclass
class ItemResult:
    record: TemplateRecord
    screenshot: Optional[ScreenshotResult] = None
    skipped_reason: Optional[str] = None


class BatchOrchestrator:
    """
    Session/batch state machine over a BrowserPool.

    One orchestrator runs at most one session at a time. It is the only
    writer of session, batch and item rows.
    """

    def __init__(
        self,
        store: StateStore,
        pool: BrowserPool,
        connector: TemplateConnector,
        screenshots: ScreenshotUnit,
        config: Optional[PerformanceConfig] = None,
        events: Optional[EventChannel] = None,
        detect_homepages: bool = True,
        extra_exclusions: Optional[List[str]] = None,
        navigation_attempts: int = NAVIGATION_ATTEMPTS,
    ):
        """
        Args:
            store: Where session, batch and item rows are persisted
            pool: Worker pool pages are leased from
            connector: Storefront navigation and extraction
            screenshots: Screenshot capture unit
            config: Initial performance config
            events: Channel lifecycle events are published to
            detect_homepages: Look for an alternate homepage before capturing
            extra_exclusions: Selectors removed before every screenshot
            navigation_attempts: Tries per navigation when it times out
        """
        self.store = store
        self.pool = pool
        self.connector = connector
        self.screenshots = screenshots
        self.controller = ConfigController(config or PerformanceConfig())
        self.events = events or EventChannel()
        self.tracker = ProgressTracker(self.events)
        self.monitor = TimeoutMonitor()
        self.monitor.configure(self.controller.current)
        self.detect_homepages = detect_homepages
        self.extra_exclusions = list(extra_exclusions or [])
        self.navigation_attempts = max(1, navigation_attempts)

        self.session: Optional[ScrapeSession] = None
        self.status: Optional[SessionStatus] = None
        self._batches: List[ScrapeBatch] = []
        self._current_batch: Optional[ScrapeBatch] = None
        self._gate = asyncio.Event()
        self._stop_requested = False
        self._halt_error: Optional[BaseException] = None
        self._skip_requests: Set[UUID] = set()
        self._blacklist_on_skip: Set[UUID] = set()
        self._inflight: Dict[UUID, asyncio.Task] = {}
        self._run_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()
        self._blacklist: Set[str] = set()
        self._exclusions: List[str] = []
        self._author_exclusions: Dict[str, List[str]] = {}
        self._preview_urls: Dict[UUID, str] = {}

    @classmethod
    def create(
        cls,
        store: StateStore,
        config: Optional[PerformanceConfig] = None,
        output_dir: Path = Path("output"),
        events: Optional[EventChannel] = None,
        launcher: Optional[Launcher] = None,
        **kwargs: Any,
    ) -> "BatchOrchestrator":
        """Build an orchestrator with a Playwright pool sized from `config`."""
        config = config or PerformanceConfig.from_env()
        pool = BrowserPool(
            browser_instances=config.effective_browser_instances,
            pages_per_browser=config.pages_per_browser,
            launcher=launcher,
        )
        return cls(
            store=store,
            pool=pool,
            connector=TemplateConnector(timeout_ms=config.timeout_ms),
            screenshots=ScreenshotUnit(output_dir, ScreenshotOptions.from_config(config)),
            config=config,
            events=events,
            **kwargs,
        )

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def config(self) -> PerformanceConfig:
        return self.controller.current

    @property
    def pending_config(self) -> Optional[PerformanceConfig]:
        return self.controller.pending

    @property
    def is_active(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    @property
    def item_timeout(self) -> float:
        """Per-item deadline in seconds."""
        return self.config.timeout_ms / 1000

    @property
    def session_id(self) -> Optional[UUID]:
        return self.session.id if self.session else None

    # =========================================================================
    # Logging / Persistence helpers
    # =========================================================================

    def _log(self, message: str, level: str = "info") -> None:
        getattr(logger, "warning" if level == "warn" else level)(message)
        self.events.log(message, level=level, session_id=self.session_id)

    async def _persist(self, action: str, awaitable) -> bool:
        """Run one store write. Failures are logged, never raised."""
        try:
            await awaitable
            return True
        except Exception as e:
            self._log(f"Persistence failed ({action}): {e}", level="warn")
            return False

    async def _set_status(self, status: SessionStatus, **fields: Any) -> None:
        self.status = status
        if self.session is None:
            return
        self.session.status = status
        for key, value in fields.items():
            setattr(self.session, key, value)
        await self._persist("update_session", self.store.update_session(self.session.id, status=status, **fields))

    # =========================================================================
    # Start / Resume
    # =========================================================================

    def _normalize_items(self, items: Iterable[Union[str, WorkItem]]) -> List[WorkItem]:
        work: List[WorkItem] = []
        seen: Set[str] = set()
        for item in items:
            if isinstance(item, str):
                if not item.strip():
                    continue
                item = WorkItem.from_url(item)
            if item.url in seen:
                continue
            seen.add(item.url)
            work.append(item)
        return work

    async def start(
        self,
        items: Iterable[Union[str, WorkItem]],
        session_type: SessionType = SessionType.URL_LIST,
    ) -> ScrapeSession:
        """
        Create a session for `items` and start driving it in the background.

        Items are de-duplicated and blacklisted storefronts are dropped before
        partitioning into batches of the current batch_size.

        Raises:
            SessionStateError: A session is already running, or nothing to do
            PersistenceError: The session rows could not be created
        """
        if self.is_active:
            raise SessionStateError(f"Session {self.session_id} is already {self.status.value}")

        work = self._normalize_items(items)
        self._blacklist = await self._load_blacklist()
        if self._blacklist:
            before = len(work)
            work = [w for w in work if w.slug not in self._blacklist]
            if len(work) < before:
                self._log(f"Dropped {before - len(work)} blacklisted templates")
        if not work:
            raise SessionStateError("No items to process")

        await self._apply_pending_config()
        config = self.config
        size = config.batch_size
        partitions = [work[i:i + size] for i in range(0, len(work), size)]

        self.status = SessionStatus.STARTING
        session = ScrapeSession(
            session_type=session_type,
            status=SessionStatus.RUNNING,
            total_items=len(work),
            total_batches=len(partitions),
            batch_size=size,
            current_batch_number=1,
            config=config.model_dump(),
            started_at=_now(),
        )
        try:
            await self.store.create_session(session)
            batches = []
            for number, part in enumerate(partitions, start=1):
                batch = ScrapeBatch(session_id=session.id, batch_number=number, total_items=len(part))
                rows = [
                    BatchItem(
                        batch_id=batch.id,
                        session_id=session.id,
                        position=position,
                        url=w.url,
                        slug=w.slug,
                        name=w.name,
                    )
                    for position, w in enumerate(part)
                ]
                await self.store.create_batch(batch, rows)
                batches.append(batch)
        except Exception:
            self.status = None
            raise

        self._begin(session, batches)
        self._log(
            f"Session {session.id} started: {len(work)} items in "
            f"{len(partitions)} batches of {size}"
        )
        self.events.emit(
            EventType.SESSION_STARTED,
            session_id=session.id,
            session_type=session_type.value,
            total_items=session.total_items,
            total_batches=session.total_batches,
            batch_size=size,
        )
        self._run_task = asyncio.create_task(self._drive())
        return session

    def _begin(self, session: ScrapeSession, batches: List[ScrapeBatch]) -> None:
        self.session = session
        self.status = SessionStatus.RUNNING
        self._batches = batches
        self._current_batch = None
        self._stop_requested = False
        self._halt_error = None
        self._skip_requests.clear()
        self._blacklist_on_skip.clear()
        self.monitor.reset()
        self.tracker.clear()
        self._gate.set()

    async def recover(self) -> Optional[ScrapeSession]:
        """
        Find the most recent session a previous process left unfinished.

        A session still marked running or paused is flagged as interrupted.
        """
        session = await self.store.find_resumable_session()
        if session is None:
            return None
        if self.is_active and session.id == self.session_id:
            return None

        if session.status != SessionStatus.INTERRUPTED:
            await self._persist(
                "mark_interrupted",
                self.store.update_session(session.id, status=SessionStatus.INTERRUPTED),
            )
            session.status = SessionStatus.INTERRUPTED
            self.events.emit(EventType.SESSION_INTERRUPTED, session_id=session.id, recovered=True)
            logger.warning(f"Session {session.id} was left unfinished, marked interrupted")
        return session

    async def resume_session(self, session_id: Optional[UUID] = None) -> ScrapeSession:
        """
        Continue an interrupted session from its next unprocessed item.

        Terminal items are never re-run. Items that were running when the
        previous process died go back to pending. Counters are recomputed
        from item rows.

        Raises:
            SessionStateError: Nothing to resume, or a session is running
        """
        if self.is_active:
            raise SessionStateError(f"Session {self.session_id} is already {self.status.value}")

        session = await self.store.get_session(session_id) if session_id else await self.recover()
        if session is None:
            raise SessionStateError("No resumable session found")
        if session.status.is_terminal:
            raise SessionStateError(f"Session {session.id} is already {session.status.value}")

        batches = await self.store.list_batches(session.id)
        totals = Counters()
        for batch in batches:
            counts = Counters()
            for item in await self.store.list_items(batch.id):
                counts.count(item.status)
            for key, value in _counter_fields(counts).items():
                setattr(batch, key, value)
                setattr(totals, key, getattr(totals, key) + value)
            await self._persist("update_batch", self.store.update_batch(batch.id, **_counter_fields(counts)))

        for key, value in _counter_fields(totals).items():
            setattr(session, key, value)

        self._blacklist = await self._load_blacklist()
        await self._apply_pending_config()
        self._begin(session, batches)
        await self._set_status(
            SessionStatus.RUNNING,
            resumed_at=_now(),
            error_message=None,
            **_counter_fields(totals),
        )

        remaining = [b.batch_number for b in batches if not b.status.is_closed]
        self._log(
            f"Resuming session {session.id}: {session.processed}/{session.total_items} done, "
            f"{len(remaining)} batches left"
        )
        self.events.emit(
            EventType.SESSION_RESUMED,
            session_id=session.id,
            from_interrupt=True,
            processed=session.processed,
            remaining_batches=remaining,
        )
        self._run_task = asyncio.create_task(self._drive())
        return session

    # =========================================================================
    # Operator controls
    # =========================================================================

    async def pause(self) -> None:
        """Stop starting new items. In-flight items still finish."""
        if self.status != SessionStatus.RUNNING or not self.is_active:
            raise SessionStateError(f"Cannot pause: session is {self._status_name()}")
        self._gate.clear()
        await self._set_status(SessionStatus.PAUSED, paused_at=_now())
        self._log("Session paused")
        self.events.emit(EventType.SESSION_PAUSED, session_id=self.session_id)

    async def resume(self) -> None:
        """Resume a paused session. A timeout-paused session is resumed too."""
        if self.status == SessionStatus.TIMEOUT_PAUSED:
            await self.resume_from_timeout_pause()
            return
        if self.status != SessionStatus.PAUSED:
            raise SessionStateError(f"Cannot resume: session is {self._status_name()}")
        await self._set_status(SessionStatus.RUNNING, resumed_at=_now())
        self._gate.set()
        self._log("Session resumed")
        self.events.emit(EventType.SESSION_RESUMED, session_id=self.session_id, from_timeout_pause=False)

    async def resume_from_timeout_pause(self) -> None:
        """Clear the timeout counters and continue after an auto-pause."""
        if self.status != SessionStatus.TIMEOUT_PAUSED:
            raise SessionStateError(f"Session is not timeout-paused (status: {self._status_name()})")
        self.monitor.reset()
        await self._set_status(SessionStatus.RUNNING, resumed_at=_now())
        self._gate.set()
        self._log("Resumed after timeout pause, timeout counter reset")
        self.events.emit(EventType.SESSION_RESUMED, session_id=self.session_id, from_timeout_pause=True)

    async def request_skip(self, item_id: UUID, blacklist: bool = False) -> bool:
        """
        Skip one item. An in-flight item is cancelled; a queued one is
        skipped when a worker reaches it. With `blacklist`, the template is
        also excluded from future sessions.

        Returns:
            True if the item was in flight

        Raises:
            SessionStateError: No session is running, or the item is not an
                open item of it
        """
        if not self.is_active:
            raise SessionStateError("No session is running")

        item = await self._find_item(item_id)
        if item is None:
            raise SessionStateError(f"Item {item_id} is not part of session {self.session_id}")
        if item.is_terminal:
            raise SessionStateError(f"Item {item_id} is already {item.status.value}")

        self._skip_requests.add(item_id)
        if blacklist:
            self._blacklist_on_skip.add(item_id)
        task = self._inflight.get(item_id)
        if task is not None and not task.done():
            task.cancel()
            self._log(f"Skipping in-flight item {item_id}")
            return True
        self._log(f"Item {item_id} will be skipped")
        return False

    async def stop(self) -> Optional[ScrapeSession]:
        """
        Cancel queued items, let in-flight items finish or time out, then
        end the session as cancelled.
        """
        if not self.is_active:
            raise SessionStateError("No session is running")
        self._stop_requested = True
        self._gate.set()
        self._log("Stop requested, waiting for in-flight items")
        return await self.wait()

    async def wait(self) -> Optional[ScrapeSession]:
        """Wait for the background run to finish."""
        if self._run_task is not None:
            await asyncio.shield(self._run_task)
        return self.session

    async def _find_item(self, item_id: UUID) -> Optional[BatchItem]:
        for batch in self._batches:
            for item in await self.store.list_items(batch.id):
                if item.id == item_id:
                    return item
        return None

    def _status_name(self) -> str:
        return self.status.value if self.status else "idle"

    # =========================================================================
    # Reconfiguration
    # =========================================================================

    def update_config(self, partial: Mapping[str, Any]) -> PerformanceConfig:
        """Queue a config change for the next batch boundary."""
        pending = self.controller.update_pending(partial)
        changes = self.config.diff(pending)
        self._log(f"Config change queued for next batch: {sorted(changes)}")
        self.events.emit(
            EventType.CONFIG_PENDING,
            session_id=self.session_id,
            pending=pending.model_dump(),
            changes={k: list(v) for k, v in changes.items()},
        )
        return pending

    def cancel_pending_config(self) -> bool:
        discarded = self.controller.cancel_pending()
        if discarded is None:
            return False
        self._log("Queued config change cancelled")
        self.events.emit(EventType.CONFIG_CANCELLED, session_id=self.session_id)
        return True

    async def _apply_pending_config(self) -> None:
        change = self.controller.apply_pending()
        if change is None:
            return

        config = change.current
        self.monitor.configure(config)
        self.connector.timeout_ms = config.timeout_ms
        self.screenshots.configure(ScreenshotOptions.from_config(config))
        if change.pool_shape_changed:
            await self.pool.resize(config.effective_browser_instances, config.pages_per_browser)
        if self.session is not None and self.is_active:
            self.session.config = config.model_dump()
            await self._persist("update_session", self.store.update_session(self.session.id, config=self.session.config))

        self._log(f"Config applied: {sorted(change.changed)}")
        self.events.emit(
            EventType.CONFIG_APPLIED,
            session_id=self.session_id,
            config=config.model_dump(),
            changes={k: list(v) for k, v in change.changed.items()},
        )

    # =========================================================================
    # Run loop
    # =========================================================================

    async def _wait_until_runnable(self) -> bool:
        """Block while paused. False once stop or halt was requested."""
        while not self._gate.is_set():
            await self._gate.wait()
        return not (self._stop_requested or self._halt_error)

    def _halt(self, error: BaseException) -> None:
        if self._halt_error is None:
            self._halt_error = error
            self._log(f"Session halted: {error}", level="error")
        self._gate.set()

    async def _drive(self) -> None:
        try:
            for batch in self._batches:
                if batch.status.is_closed:
                    continue
                if not await self._wait_until_runnable():
                    break
                await self._apply_pending_config()
                await self._run_batch(batch)
                if self._halt_error:
                    break
            await self._finish_session()
        except asyncio.CancelledError:
            logger.warning(f"Session {self.session_id} run cancelled")
            raise
        except Exception as e:
            logger.exception(f"Session {self.session_id} crashed: {e}")
            self._halt(e)
            await self._finish_session()
        finally:
            self.tracker.clear()

    async def _run_batch(self, batch: ScrapeBatch) -> None:
        items = await self.store.list_items(batch.id)
        for item in items:
            if item.status == ItemStatus.RUNNING:
                # Left running by a crashed process
                item.status = ItemStatus.PENDING
                await self._persist("update_item", self.store.update_item(item.id, status=ItemStatus.PENDING))

        queue: Deque[BatchItem] = deque(i for i in items if i.status == ItemStatus.PENDING)
        self._current_batch = batch
        self._exclusions = await self._load_exclusions()
        self._author_exclusions = await self._load_author_exclusions()

        batch.status = BatchStatus.RUNNING
        batch.started_at = batch.started_at or _now()
        self.session.current_batch_number = batch.batch_number
        await self._persist(
            "start_batch",
            self.store.update_batch(batch.id, status=BatchStatus.RUNNING, started_at=batch.started_at),
        )
        await self._persist(
            "update_session",
            self.store.update_session(self.session.id, current_batch_number=batch.batch_number),
        )
        self._log(f"Batch {batch.batch_number}/{self.session.total_batches} started ({len(queue)} items)")
        self.events.emit(
            EventType.BATCH_STARTED,
            session_id=self.session_id,
            batch_id=str(batch.id),
            batch_number=batch.batch_number,
            total_batches=self.session.total_batches,
            items=len(queue),
        )
        self._emit_pool_stats()

        workers = min(self.config.concurrency, len(queue))
        if workers:
            await asyncio.gather(*(self._worker(queue, batch) for _ in range(workers)))

        if self._halt_error:
            # Leave the batch open; the remaining items stay pending for resume
            return

        while queue:
            await self._stop_item(queue.popleft(), batch)

        await self._close_batch(batch)

    async def _close_batch(self, batch: ScrapeBatch) -> None:
        open_items = [i for i in await self.store.list_items(batch.id) if not i.is_terminal]
        if open_items:
            self._log(f"Batch {batch.batch_number} still has {len(open_items)} open items, not closing", level="warn")
            return

        batch.status = BatchStatus.CANCELLED if batch.cancelled else BatchStatus.COMPLETED
        batch.completed_at = _now()
        await self._persist(
            "complete_batch",
            self.store.update_batch(batch.id, status=batch.status, completed_at=batch.completed_at),
        )
        self._log(
            f"Batch {batch.batch_number} {batch.status.value}: {batch.successful} ok, "
            f"{batch.failed} failed, {batch.skipped} skipped"
        )
        self.events.emit(
            EventType.BATCH_COMPLETED,
            session_id=self.session_id,
            batch_id=str(batch.id),
            batch_number=batch.batch_number,
            status=batch.status.value,
            **_counter_fields(batch),
        )

    async def _worker(self, queue: Deque[BatchItem], batch: ScrapeBatch) -> None:
        while queue:
            if not await self._wait_until_runnable():
                return
            if not queue:
                return
            item = queue.popleft()
            try:
                await self._run_item(item, batch)
            except (WorkerLaunchFailed, PoolClosedError) as e:
                # The item never started; it stays pending for resume
                self._halt(e)
                return

    async def _run_item(self, item: BatchItem, batch: ScrapeBatch) -> None:
        if item.id in self._skip_requests:
            await self._skip_item(item, batch)
            return

        handle = await self.pool.acquire()
        inner: Optional[asyncio.Task] = None
        try:
            if item.id in self._skip_requests:
                await self._skip_item(item, batch)
                return
            if self._stop_requested:
                await self._stop_item(item, batch)
                return

            item.status = ItemStatus.RUNNING
            item.started_at = _now()
            await self._persist(
                "start_item",
                self.store.update_item(item.id, status=ItemStatus.RUNNING, started_at=item.started_at),
            )

            inner = asyncio.create_task(self._process_item(item, handle.page))
            self._inflight[item.id] = inner
            try:
                done, _ = await asyncio.wait({inner}, timeout=self.item_timeout)
            except asyncio.CancelledError:
                inner.cancel()
                raise

            if not done:
                inner.cancel()
                await asyncio.wait({inner}, timeout=CANCEL_GRACE)
                await self._record_failure(
                    item, batch,
                    ItemTimeoutError(f"Item timed out after {self.config.timeout_ms}ms", self.config.timeout_ms),
                )
            elif inner.cancelled():
                await self._skip_item(item, batch)
            elif inner.exception() is not None:
                await self._record_failure(item, batch, inner.exception())
            else:
                result: ItemResult = inner.result()
                if result.skipped_reason:
                    await self._finish_item(item, batch, ItemStatus.SKIPPED, error_message=result.skipped_reason)
                else:
                    await self._finish_item(
                        item, batch, ItemStatus.SUCCEEDED,
                        template_id=result.record.template_id,
                        screenshot_path=result.record.screenshot_path,
                        thumbnail_path=result.record.thumbnail_path,
                    )
                    await self._record_outcome(Outcome.SUCCESS)
        finally:
            self._inflight.pop(item.id, None)
            self._preview_urls.pop(item.id, None)
            self.tracker.finish(item.id)
            await self.pool.release(handle)

    async def _navigate(self, page, url: str, wait_for_ready: bool = True) -> None:
        """Navigate, retrying timeouts with linear backoff. Other failures raise at once."""
        for attempt in range(1, self.navigation_attempts + 1):
            try:
                await self.connector.navigate(page, url, wait_for_ready=wait_for_ready)
                return
            except NavigationTimeout:
                if attempt >= self.navigation_attempts:
                    raise
                self._log(f"Timeout on attempt {attempt}/{self.navigation_attempts} for {url}, retrying", level="warn")
                await asyncio.sleep(NAVIGATION_RETRY_BACKOFF * attempt)

    def _exclusions_for(self, author_id: Optional[str]) -> List[str]:
        extra = self._author_exclusions.get(author_id, []) if author_id else []
        return list(dict.fromkeys(self._exclusions + extra))

    async def _process_item(self, item: BatchItem, page) -> ItemResult:
        self.tracker.set_phase(item, ItemPhase.NAVIGATION)
        await self._navigate(page, item.url)

        self.tracker.set_phase(item, ItemPhase.EXTRACTION)
        record = await self.connector.extract(page, item.url)
        item.name = record.name
        if record.live_preview_url:
            self._preview_urls[item.id] = record.live_preview_url

        domain = domain_slug_from_url(record.live_preview_url) if record.live_preview_url else None
        if domain and domain in self._blacklist:
            return ItemResult(record=record, skipped_reason=f"Blacklisted domain {domain}")

        self.tracker.set_phase(item, ItemPhase.SCREENSHOT_CAPTURE, name=record.name)
        if record.live_preview_url:
            await self._navigate(page, record.live_preview_url, wait_for_ready=False)
            record.screenshot_url = record.live_preview_url
            if self.detect_homepages:
                links = await self.connector.internal_links(page, record.live_preview_url)
                record.internal_links = links
                detection = pick_homepage(links, record.live_preview_url)
                if detection.is_alternate_homepage:
                    await self._navigate(page, detection.screenshot_url, wait_for_ready=False)
                    record.is_alternate_homepage = True
                    record.alternate_homepage_path = detection.detected_path
                    record.screenshot_url = detection.screenshot_url
        else:
            record.screenshot_url = item.url

        await self.screenshots.prepare(page, self._exclusions_for(record.author_id))
        raw = await self.screenshots.capture(page)

        self.tracker.set_phase(item, ItemPhase.SCREENSHOT_PROCESSING)
        shot = await self.screenshots.process(raw, item.slug)
        record.screenshot_path = str(shot.preview_path)
        record.thumbnail_path = str(shot.thumbnail_path)

        self.tracker.set_phase(item, ItemPhase.SAVING)
        await self.store.save_template(record)

        self.tracker.set_phase(item, ItemPhase.DONE)
        return ItemResult(record=record, screenshot=shot)

    # =========================================================================
    # Outcomes
    # =========================================================================

    async def _finish_item(self, item: BatchItem, batch: ScrapeBatch, status: ItemStatus, **fields: Any) -> None:
        live = self.tracker.get(item.id)
        phase = ItemPhase.DONE if status == ItemStatus.SUCCEEDED else (live.phase if live else item.phase)

        async with self._write_lock:
            item.status = status
            item.phase = phase
            item.completed_at = _now()
            for key, value in fields.items():
                setattr(item, key, value)
            batch.count(status)
            self.session.count(status)

            await self._persist(
                "update_item",
                self.store.update_item(
                    item.id, status=status, phase=phase, completed_at=item.completed_at, name=item.name, **fields
                ),
            )
            await self._persist("update_batch", self.store.update_batch(batch.id, **_counter_fields(batch)))
            await self._persist(
                "update_session",
                self.store.update_session(self.session.id, **_counter_fields(self.session)),
            )

        self.events.emit(
            ITEM_EVENTS[status],
            session_id=self.session_id,
            item_id=str(item.id),
            batch_id=str(batch.id),
            batch_number=batch.batch_number,
            url=item.url,
            slug=item.slug,
            name=item.name,
            phase=phase.value,
            error_type=fields.get("error_type"),
            error_message=fields.get("error_message"),
            processed=self.session.processed,
            total=self.session.total_items,
        )
        self._emit_pool_stats()

    async def _skip_item(self, item: BatchItem, batch: ScrapeBatch) -> None:
        await self._finish_item(item, batch, ItemStatus.SKIPPED, error_message="Skipped by operator")
        if item.id not in self._blacklist_on_skip:
            return
        # Keyed by live preview domain; the storefront slug only when extraction never ran
        preview_url = self._preview_urls.get(item.id)
        domain = (domain_slug_from_url(preview_url) if preview_url else None) or item.slug
        self._blacklist.add(domain)
        await self._persist(
            "add_to_blacklist",
            self.store.add_to_blacklist(BlacklistEntry(domain_slug=domain, storefront_url=item.url)),
        )
        self._log(f"Blacklisted {domain} ({item.slug})")

    async def _stop_item(self, item: BatchItem, batch: ScrapeBatch) -> None:
        """End a queued item on stop. A pending skip request still wins."""
        if item.id in self._skip_requests:
            await self._skip_item(item, batch)
        else:
            await self._finish_item(item, batch, ItemStatus.CANCELLED, error_message="Session stopped")

    async def _record_failure(self, item: BatchItem, batch: ScrapeBatch, error: BaseException) -> None:
        error_type = getattr(error, "error_type", type(error).__name__)
        timed_out = bool(getattr(error, "is_timeout", False))
        if not isinstance(error, ScraperError):
            logger.exception(f"Unexpected error on {item.url}", exc_info=error)

        self._log(f"Failed {item.slug}: {error}", level="warn")
        await self._finish_item(item, batch, ItemStatus.FAILED, error_type=error_type, error_message=str(error)[:500])
        await self._record_outcome(Outcome.TIMEOUT if timed_out else Outcome.FAILURE)

    async def _record_outcome(self, outcome: Outcome) -> None:
        if not self.monitor.record(outcome):
            return
        if self.status not in (SessionStatus.RUNNING, SessionStatus.PAUSED):
            return

        self._gate.clear()
        await self._set_status(SessionStatus.TIMEOUT_PAUSED, paused_at=_now())
        self._log(
            f"Auto-paused after {self.monitor.consecutive} consecutive timeouts "
            f"(threshold {self.monitor.threshold})",
            level="warn",
        )
        self.events.emit(EventType.SESSION_TIMEOUT_PAUSED, session_id=self.session_id, **self.monitor.to_dict())

    async def _finish_session(self) -> None:
        if self._halt_error is not None:
            await self._set_status(SessionStatus.INTERRUPTED, error_message=str(self._halt_error)[:500])
            self.events.emit(EventType.SESSION_INTERRUPTED, session_id=self.session_id, error=str(self._halt_error))
            return

        if self._stop_requested:
            for batch in self._batches:
                if batch.status.is_closed:
                    continue
                for item in await self.store.list_items(batch.id):
                    if not item.is_terminal:
                        await self._stop_item(item, batch)
                await self._close_batch(batch)
            await self._set_status(SessionStatus.CANCELLED, completed_at=_now())
            self._log(f"Session cancelled: {self.session.processed}/{self.session.total_items} processed")
            self.events.emit(EventType.SESSION_CANCELLED, session_id=self.session_id, **_counter_fields(self.session))
            return

        await self._set_status(SessionStatus.COMPLETING)
        await self._set_status(SessionStatus.COMPLETED, completed_at=_now())
        self._log(
            f"Session completed: {self.session.successful} ok, {self.session.failed} failed, "
            f"{self.session.skipped} skipped"
        )
        self.events.emit(EventType.SESSION_COMPLETED, session_id=self.session_id, **_counter_fields(self.session))

    # =========================================================================
    # Catalog filters
    # =========================================================================

    async def _load_blacklist(self) -> Set[str]:
        try:
            return await self.store.get_blacklist()
        except Exception as e:
            self._log(f"Could not load blacklist: {e}", level="warn")
            return set()

    async def _load_exclusions(self) -> List[str]:
        try:
            selectors = await self.store.get_screenshot_exclusions()
        except Exception as e:
            self._log(f"Could not load screenshot exclusions: {e}", level="warn")
            selectors = []
        return list(dict.fromkeys(selectors + self.extra_exclusions))

    async def _load_author_exclusions(self) -> Dict[str, List[str]]:
        try:
            return await self.store.get_author_screenshot_exclusions()
        except Exception as e:
            self._log(f"Could not load author screenshot exclusions: {e}", level="warn")
            return {}

    # =========================================================================
    # Snapshot / Shutdown
    # =========================================================================

    def _emit_pool_stats(self) -> None:
        self.events.emit(EventType.POOL_STATS, session_id=self.session_id, **self.pool.stats().to_dict())

    async def snapshot(self, log_limit: int = 50) -> Dict[str, Any]:
        """Polled view for admin UIs: committed rows plus live state."""
        if self.session is not None:
            data = await self.tracker.snapshot(self.store, self.session.id)
        else:
            data = {"session": None, "current_batch": None, "items": [], "batches": []}

        data.update({
            "status": self._status_name(),
            "is_active": self.is_active,
            "is_paused": self.status == SessionStatus.PAUSED,
            "is_timeout_paused": self.status == SessionStatus.TIMEOUT_PAUSED,
            "is_stopping": self._stop_requested and self.is_active,
            "config": self.config.model_dump(),
            "pending_config": self.pending_config.model_dump() if self.pending_config else None,
            "timeouts": self.monitor.to_dict(),
            "pool": self.pool.stats().to_dict(),
            "in_flight": [live.to_dict() for live in self.tracker.active],
            "logs": [line.to_dict() for line in self.events.recent_logs(log_limit)],
        })
        return data

    async def close(self) -> None:
        """Tear down immediately. Browsers are closed even mid-item."""
        if self._run_task is not None and not self._run_task.done():
            self._run_task.cancel()
            try:
                await self._run_task
            except asyncio.CancelledError:
                pass
        await self.pool.close()
