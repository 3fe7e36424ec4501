#!/usr/bin/env python3
"""
Command-line driver for the template gallery scraper

MAIN ENTRY POINT that runs:
- A new session from a URL file or from sitemap discovery
- Resume of the most recent interrupted session (or one by id)
- Sitemap discovery only (report new templates, scrape nothing)

While a session runs, a rich live table shows batch progress, in-flight items
with their current phase, recent outcomes and worker pool usage. Ctrl+C asks
the orchestrator to stop gracefully (queued items cancelled, in-flight items
finish); a second Ctrl+C tears everything down immediately.

Usage:
    # Scrape a list of storefront URLs into Supabase
    python run_scraper.py run --urls data/templates.txt --concurrency 10 --browsers 2

    # Scrape everything new in the marketplace sitemap, in memory only
    python run_scraper.py run --sitemap --limit 50 --memory-store

    # Continue the last interrupted session
    python run_scraper.py resume

    # Show what the sitemap has that the catalog lacks
    python run_scraper.py discover
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Tuple
from uuid import UUID

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from gallery_scraper.config import PerformanceConfig
from gallery_scraper.errors import ScraperError
from gallery_scraper.models.schemas import ScrapeSession, SessionType, WorkItem
from gallery_scraper.services.events import EventChannel, EventType, PipelineEvent, Subscription
from gallery_scraper.services.orchestrator import BatchOrchestrator
from gallery_scraper.services.sitemap import DEFAULT_SITEMAP_URL, SitemapDiscovery
from gallery_scraper.services.state_store import MemoryStateStore, StateStore

logger = logging.getLogger("run_scraper")


# ============================================================================
# Logging
# ============================================================================

def setup_logging(output_dir: Path, verbose: bool = False, quiet_console: bool = False) -> None:
    """Configure console + file logging for the scraper."""
    output_dir.mkdir(parents=True, exist_ok=True)
    log_file = output_dir / "scraper.log"

    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Console handler (warnings only while the live table owns the terminal)
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.WARNING if quiet_console else logging.INFO)
    console.setFormatter(logging.Formatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(message)s',
        datefmt='%H:%M:%S'
    ))

    # File handler
    file_handler = logging.FileHandler(log_file, mode='a')
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(funcName)s:%(lineno)d | %(message)s'
    ))

    root.addHandler(console)
    root.addHandler(file_handler)

    # Keep third-party chatter out of the console
    for noisy in ("httpx", "httpcore", "hpack", "urllib3", "PIL"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ============================================================================
# Live Terminal Display (Rich)
# ============================================================================

OUTCOME_STYLES = {
    EventType.ITEM_SUCCEEDED: ("OK", "green"),
    EventType.ITEM_FAILED: ("FAIL", "red"),
    EventType.ITEM_SKIPPED: ("SKIP", "yellow"),
    EventType.ITEM_CANCELLED: ("CANCEL", "dim"),
}


class LiveDisplay:
    """
    Real-time terminal display fed by orchestrator events.

    Shows:
    - Session status, batch number and overall progress
    - In-flight items and their current phase
    - Recent item outcomes
    - Worker pool usage
    """

    def __init__(self, console: Optional[Console] = None, recent: int = 8):
        self.console = console or Console()
        self._live: Optional[Live] = None

        self.status = "starting"
        self.processed = 0
        self.total = 0
        self.batch_number = 0
        self.total_batches = 0
        self.counts = {"successful": 0, "failed": 0, "skipped": 0, "cancelled": 0}
        self.in_flight: Dict[str, Tuple[str, str]] = {}
        self.recent: Deque[Tuple[str, str, str, str]] = deque(maxlen=recent)
        self.pool: Dict[str, Any] = {}
        self.pending_config = False

    def handle(self, event: PipelineEvent) -> None:
        """Fold one event into the display state."""
        data = event.data
        kind = event.type

        if kind == EventType.SESSION_STARTED:
            self.status = "running"
            self.total = data.get("total_items", 0)
            self.total_batches = data.get("total_batches", 0)
        elif kind == EventType.SESSION_RESUMED:
            self.status = "running"
            self.processed = data.get("processed", self.processed)
        elif kind == EventType.SESSION_PAUSED:
            self.status = "paused"
        elif kind == EventType.SESSION_TIMEOUT_PAUSED:
            self.status = f"timeout paused ({data.get('consecutive_timeouts', 0)} timeouts)"
        elif kind in (EventType.SESSION_COMPLETED, EventType.SESSION_CANCELLED, EventType.SESSION_INTERRUPTED):
            self.status = kind.value.replace("session_", "")
            self.in_flight.clear()
        elif kind == EventType.BATCH_STARTED:
            self.batch_number = data.get("batch_number", 0)
            self.total_batches = data.get("total_batches", self.total_batches)
        elif kind == EventType.ITEM_PHASE:
            self.in_flight[data["item_id"]] = (data.get("name") or data.get("slug", ""), data.get("phase", ""))
        elif kind in OUTCOME_STYLES:
            self.in_flight.pop(data.get("item_id"), None)
            label, style = OUTCOME_STYLES[kind]
            self.recent.appendleft((label, style, data.get("slug", ""), data.get("error_message") or ""))
            self.processed = data.get("processed", self.processed)
            self.total = data.get("total", self.total)
            key = {
                EventType.ITEM_SUCCEEDED: "successful",
                EventType.ITEM_FAILED: "failed",
                EventType.ITEM_SKIPPED: "skipped",
                EventType.ITEM_CANCELLED: "cancelled",
            }[kind]
            self.counts[key] += 1
        elif kind == EventType.POOL_STATS:
            self.pool = data
        elif kind == EventType.CONFIG_PENDING:
            self.pending_config = True
        elif kind in (EventType.CONFIG_APPLIED, EventType.CONFIG_CANCELLED):
            self.pending_config = False

    def _render_progress_table(self) -> Table:
        """Render the progress table."""
        table = Table(title="Scrape Progress", expand=True)
        table.add_column("Metric", style="cyan", no_wrap=True)
        table.add_column("Value", style="green")

        pct = (self.processed / self.total * 100) if self.total > 0 else 0
        table.add_row("Status", self.status)
        table.add_row("Batch", f"{self.batch_number}/{self.total_batches}")
        table.add_row("Processed", f"{self.processed}/{self.total} ({pct:.1f}%)")
        table.add_row(
            "Outcomes",
            f"{self.counts['successful']} ok, {self.counts['failed']} failed, "
            f"{self.counts['skipped']} skipped, {self.counts['cancelled']} cancelled",
        )
        if self.pool:
            table.add_row(
                "Pool",
                f"{self.pool.get('pages_in_use', 0)}/{self.pool.get('capacity', 0)} pages, "
                f"{self.pool.get('active_browsers', 0)} browsers, "
                f"{self.pool.get('queue_depth', 0)} waiting",
            )
        if self.pending_config:
            table.add_row("Config", "change queued for next batch")
        return table

    def _render_activity(self) -> Panel:
        """Render in-flight items and recent outcomes."""
        text = Text()
        text.append("In flight:\n", style="bold cyan")
        for name, phase in list(self.in_flight.values())[:10]:
            text.append(f"  - {name[:40]:<40} {phase}\n")

        text.append("\nRecent:\n", style="bold magenta")
        for label, style, slug, message in self.recent:
            text.append(f"  {label:<6} ", style=style)
            text.append(f"{slug[:40]}")
            if message:
                text.append(f"  {message[:60]}", style="dim")
            text.append("\n")
        return Panel(text, title="Activity")

    def render(self) -> Group:
        return Group(self._render_progress_table(), self._render_activity())

    def start(self) -> None:
        """Start the live display."""
        self._live = Live(self.render(), refresh_per_second=4, console=self.console)
        self._live.start()

    def stop(self) -> None:
        """Stop the live display."""
        if self._live:
            self._live.update(self.render())
            self._live.stop()
            self._live = None

    async def consume(self, subscription: Subscription) -> None:
        """Apply events until the channel closes."""
        async for event in subscription:
            self.handle(event)
            if self._live:
                self._live.update(self.render())


# ============================================================================
# Runner
# ============================================================================

def read_url_file(path: Path) -> List[str]:
    """One URL per line; blank lines and `#` comments are ignored."""
    urls = []
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            urls.append(line)
    return urls


def build_config(args: argparse.Namespace) -> PerformanceConfig:
    """Environment defaults overridden by command-line flags."""
    overrides = {
        "concurrency": args.concurrency,
        "browser_instances": args.browsers,
        "pages_per_browser": args.pages_per_browser,
        "batch_size": args.batch_size,
        "timeout_ms": args.timeout,
        "jpeg_quality": args.jpeg_quality,
        "webp_quality": args.webp_quality,
        "auto_pause_threshold": args.auto_pause_threshold,
    }
    if args.scroll_for_lazy_load:
        overrides["scroll_for_lazy_load"] = True
    if args.viewport_only:
        overrides["full_page_screenshot"] = False
    return PerformanceConfig.from_env(**overrides)


def build_store(args: argparse.Namespace) -> StateStore:
    if args.memory_store:
        return MemoryStateStore()
    from gallery_scraper.services.supabase import get_supabase_store
    return get_supabase_store()


class ScraperRunner:
    """
    Wires a store, an orchestrator and the live display for one CLI command.

    Usage:
        runner = ScraperRunner(args)
        summary = await runner.run()
    """

    def __init__(self, args: argparse.Namespace):
        self.args = args
        self.output_dir: Path = args.output_dir
        self.interactive = not args.no_interactive and sys.stdout.isatty()
        setup_logging(self.output_dir, verbose=args.verbose, quiet_console=self.interactive)

        self.store = build_store(args)
        self.events = EventChannel()
        self.orchestrator: Optional[BatchOrchestrator] = None
        self.display: Optional[LiveDisplay] = LiveDisplay() if self.interactive else None
        self._interrupts = 0

    def _create_orchestrator(self) -> BatchOrchestrator:
        config = build_config(self.args)
        logger.info(
            f"Config: concurrency={config.concurrency}, browsers={config.effective_browser_instances}, "
            f"pages_per_browser={config.pages_per_browser}, batch_size={config.batch_size}, "
            f"timeout={config.timeout_ms}ms"
        )
        return BatchOrchestrator.create(
            self.store,
            config,
            output_dir=self.output_dir,
            events=self.events,
            detect_homepages=not self.args.no_homepage_detection,
            extra_exclusions=self.args.exclude or [],
        )

    def _setup_signal_handlers(self) -> None:
        """First Ctrl+C stops gracefully, the second tears down."""
        loop = asyncio.get_running_loop()

        def handle_interrupt() -> None:
            self._interrupts += 1
            orchestrator = self.orchestrator
            if orchestrator is None or not orchestrator.is_active:
                return
            if self._interrupts == 1:
                logger.warning("Interrupt received, stopping after in-flight items (Ctrl+C again to abort)")
                asyncio.ensure_future(orchestrator.stop())
            else:
                logger.warning("Second interrupt, aborting")
                asyncio.ensure_future(orchestrator.close())

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, handle_interrupt)
            except (NotImplementedError, RuntimeError):
                # Windows event loops do not support signal handlers
                pass

    async def _items_for_run(self) -> List[WorkItem]:
        if self.args.sitemap:
            discovery = SitemapDiscovery(sitemap_url=self.args.sitemap_url)
            result = await discovery.discover_new(self.store)
            items = result.new_items
        else:
            items = [WorkItem.from_url(url) for url in read_url_file(self.args.urls)]
        if self.args.limit:
            items = items[:self.args.limit]
        return items

    async def _drive(self, start) -> ScrapeSession:
        """Run `start()` and watch the session until it ends."""
        subscription = self.events.subscribe()
        consumer = None
        if self.display:
            self.display.start()
            consumer = asyncio.create_task(self.display.consume(subscription))
        try:
            await start()
            try:
                session = await self.orchestrator.wait()
            except asyncio.CancelledError:
                logger.warning("Session aborted, run `resume` to continue it")
                session = self.orchestrator.session
        finally:
            self.events.close()
            if consumer:
                await asyncio.gather(consumer, return_exceptions=True)
            if self.display:
                self.display.stop()
            subscription.unsubscribe()
        return session

    async def run(self) -> Dict[str, Any]:
        command = self.args.command
        if command == "discover":
            return await self._discover()

        self.orchestrator = self._create_orchestrator()
        self._setup_signal_handlers()
        try:
            if command == "run":
                items = await self._items_for_run()
                if not items:
                    logger.info("Nothing to scrape")
                    return {"status": "completed", "processed": 0, "total": 0}
                session_type = SessionType.UPDATE if self.args.sitemap else SessionType.URL_LIST
                session = await self._drive(lambda: self.orchestrator.start(items, session_type=session_type))
            else:
                session_id = UUID(self.args.session_id) if self.args.session_id else None
                session = await self._drive(lambda: self.orchestrator.resume_session(session_id))
        finally:
            await self.orchestrator.close()

        return {
            "status": session.status.value if session else "unknown",
            "session_id": str(session.id) if session else None,
            "processed": session.processed if session else 0,
            "total": session.total_items if session else 0,
            "successful": session.successful if session else 0,
            "failed": session.failed if session else 0,
            "skipped": session.skipped if session else 0,
            "cancelled": session.cancelled if session else 0,
            "error": session.error_message if session else None,
            "output_dir": str(self.output_dir),
        }

    async def _discover(self) -> Dict[str, Any]:
        discovery = SitemapDiscovery(sitemap_url=self.args.sitemap_url)
        result = await discovery.discover_new(self.store)
        if self.args.json:
            print(json.dumps(result.to_dict(), indent=2))
        else:
            print(f"In sitemap:  {result.total_in_sitemap}")
            print(f"In catalog:  {result.existing_in_catalog}")
            print(f"Blacklisted: {result.blacklisted}")
            print(f"New:         {result.new_count}")
            for item in result.new_items[:self.args.limit or len(result.new_items)]:
                print(f"  {item.url}")
        return {"status": "completed", "new": result.new_count}


# ============================================================================
# CLI
# ============================================================================

def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    perf_group = parser.add_argument_group("Performance")
    perf_group.add_argument("--concurrency", "-c", type=int, help="Items in flight at once (default: 5)")
    perf_group.add_argument("--browsers", "-b", type=int, help="Browser instances (default: 2)")
    perf_group.add_argument("--pages-per-browser", type=int, help="Pages per browser (default: 5)")
    perf_group.add_argument("--batch-size", type=int, help="Items per batch (default: 10)")
    perf_group.add_argument("--timeout", type=int, help="Per-item timeout in ms (default: 60000)")
    perf_group.add_argument("--jpeg-quality", type=int, help="Raw capture JPEG quality (default: 80)")
    perf_group.add_argument("--webp-quality", type=int, help="Preview WebP quality (default: 75)")
    perf_group.add_argument(
        "--auto-pause-threshold",
        type=int,
        help="Consecutive timeouts before auto-pause (default: 5)"
    )

    shot_group = parser.add_argument_group("Screenshots")
    shot_group.add_argument(
        "--scroll-for-lazy-load",
        action="store_true",
        help="Scroll the whole page before capture to trigger lazy content"
    )
    shot_group.add_argument(
        "--viewport-only",
        action="store_true",
        help="Capture the viewport instead of the full page"
    )
    shot_group.add_argument(
        "--exclude",
        action="append",
        metavar="SELECTOR",
        help="Element to remove before capture (repeatable; bare names match class and id)"
    )
    shot_group.add_argument(
        "--no-homepage-detection",
        action="store_true",
        help="Always capture the live preview root"
    )

    _add_output_arguments(parser)


def _add_output_arguments(parser: argparse.ArgumentParser) -> None:
    output_group = parser.add_argument_group("Output")
    output_group.add_argument(
        "--output-dir", "-o",
        type=Path,
        default=Path("./output"),
        help="Screenshots, thumbnails and logs (default: ./output)"
    )
    output_group.add_argument(
        "--memory-store",
        action="store_true",
        help="Keep state in memory instead of Supabase (nothing persists)"
    )
    output_group.add_argument("--no-interactive", action="store_true", help="Disable the live table")
    output_group.add_argument("--verbose", "-v", action="store_true", help="Debug logging")


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI."""
    parser = argparse.ArgumentParser(
        description="Template gallery scraper",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run_scraper.py run --urls data/templates.txt --concurrency 10
  python run_scraper.py run --sitemap --limit 50 --memory-store
  python run_scraper.py resume --session-id 6f1c...
  python run_scraper.py discover --json
        """
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Start a new session")
    source = run_parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--urls", type=Path, help="File with one storefront URL per line")
    source.add_argument("--sitemap", action="store_true", help="Scrape templates missing from the catalog")
    run_parser.add_argument("--sitemap-url", default=DEFAULT_SITEMAP_URL, help="Sitemap to discover from")
    run_parser.add_argument("--limit", type=int, help="Scrape at most N templates")
    _add_common_arguments(run_parser)

    resume_parser = subparsers.add_parser("resume", help="Continue an interrupted session")
    resume_parser.add_argument("--session-id", help="Session to resume (default: most recent unfinished)")
    _add_common_arguments(resume_parser)

    discover_parser = subparsers.add_parser("discover", help="List templates missing from the catalog")
    discover_parser.add_argument("--sitemap-url", default=DEFAULT_SITEMAP_URL, help="Sitemap to discover from")
    discover_parser.add_argument("--limit", type=int, help="Print at most N URLs")
    discover_parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    _add_output_arguments(discover_parser)

    return parser


def main():
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()
    if args.command == "discover":
        args.no_interactive = True

    runner = ScraperRunner(args)

    try:
        summary = asyncio.run(runner.run())
    except KeyboardInterrupt:
        print("\n\nScraper interrupted by user")
        sys.exit(130)
    except ScraperError as e:
        print(f"\nScraper failed: {e}")
        sys.exit(1)

    if args.command != "discover":
        print("\n" + "=" * 60)
        print("SCRAPE COMPLETE" if summary.get("status") == "completed" else "SCRAPE ENDED")
        print("=" * 60)
        print(f"Status: {summary.get('status', 'unknown')}")
        if summary.get("session_id"):
            print(f"Session: {summary['session_id']}")
        print(f"Processed: {summary.get('processed', 0)}/{summary.get('total', 0)}")
        print(
            f"Succeeded: {summary.get('successful', 0)}  Failed: {summary.get('failed', 0)}  "
            f"Skipped: {summary.get('skipped', 0)}  Cancelled: {summary.get('cancelled', 0)}"
        )
        if summary.get("error"):
            print(f"Error: {summary['error']}")
        print(f"Output directory: {summary.get('output_dir', '')}")
        print("=" * 60)

    sys.exit(0 if summary.get("status") == "completed" else 1)


if __name__ == "__main__":
    main()
