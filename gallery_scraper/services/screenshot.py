"""
Screenshot Capture Unit

Prepares a rendered page for capture, takes one raster frame and derives the
two stored encodings:

    <output>/screenshots/<slug>.webp         preview, width <= 1000px
    <output>/thumbnails/<slug>_thumb.webp    500x500 cover crop from the top

Preparation is best-effort. Load waits, scrolling, element removal and the
stability loop log their failures and never abort the capture; at worst the
frame present when the stability window expires is used.

Usage:
    unit = ScreenshotUnit(Path("output"), ScreenshotOptions.from_config(config))
    await unit.prepare(page, exclusions=[".cookie-banner"])
    raw = await unit.capture(page)
    result = await unit.process(raw, slug)
"""

import asyncio
import io
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Iterable, List, Optional, Tuple

from PIL import Image, ImageOps, ImageStat
from playwright.async_api import Page

from ..config import PerformanceConfig
from ..errors import CaptureFailed

logger = logging.getLogger(__name__)

PREVIEW_WIDTH = 1000
THUMBNAIL_SIZE = (500, 500)
NETWORK_IDLE_TIMEOUT_MS = 10000
BLANK_RETRY_DELAY = 1.5


# =============================================================================
# In-page scripts
# =============================================================================

SCROLL_THROUGH_JS = """
async (delay) => {
  const wait = (ms) => new Promise(r => setTimeout(r, ms));
  const maxScroll = Math.max(document.body.scrollHeight,
                             document.documentElement.scrollHeight) - window.innerHeight;
  const step = Math.max(1, Math.floor(window.innerHeight * 0.7));
  for (let pos = 0; pos <= maxScroll; pos += step) {
    window.scrollTo(0, pos);
    await wait(delay);
  }
  window.scrollTo(0, maxScroll);
  await wait(delay);
}
"""

NUDGE_JS = "(ratio) => window.scrollTo(0, Math.floor(window.innerHeight * ratio))"

SCROLL_TO_JS = "(y) => window.scrollTo(0, y)"

REMOVE_ELEMENTS_JS = """
(selectors) => {
  let removed = 0;
  for (const sel of selectors) {
    try {
      document.querySelectorAll(sel).forEach(el => { el.remove(); removed++; });
    } catch (e) { /* invalid selector */ }
  }
  return removed;
}
"""

LAYOUT_SAMPLE_JS = """
() => {
  const anims = typeof document.getAnimations === 'function'
    ? document.getAnimations({ subtree: true }) : [];
  let runningFinite = 0;
  for (const a of anims) {
    if (a.playState !== 'running') continue;
    try {
      const timing = a.effect && a.effect.getComputedTiming && a.effect.getComputedTiming();
      if (timing && timing.iterations === Infinity) continue;
    } catch (e) {}
    runningFinite++;
  }
  return {
    runningFinite,
    scrollHeight: document.documentElement.scrollHeight || document.body.scrollHeight || 0,
    bodyHeight: document.body ? document.body.getBoundingClientRect().height : 0,
  };
}
"""


# =============================================================================
# Options and results
# =============================================================================

@dataclass
class ScreenshotOptions:
    load_timeout_ms: int = 60000
    animation_wait_ms: int = 3000
    scroll_for_lazy_load: bool = False
    scroll_delay_ms: int = 150
    nudge_scroll_ratio: float = 0.2
    nudge_wait_ms: int = 500
    nudge_after_ms: int = 500
    stability_stable_ms: int = 1000
    stability_max_wait_ms: int = 7000
    stability_interval_ms: int = 250
    full_page: bool = True
    jpeg_quality: int = 80
    webp_quality: int = 75

    @property
    def thumbnail_quality(self) -> int:
        return max(1, self.webp_quality - 10)

    @classmethod
    def from_config(cls, config: PerformanceConfig) -> "ScreenshotOptions":
        return cls(
            load_timeout_ms=config.timeout_ms,
            animation_wait_ms=config.animation_wait_ms,
            scroll_for_lazy_load=config.scroll_for_lazy_load,
            nudge_scroll_ratio=config.nudge_scroll_ratio,
            nudge_wait_ms=config.nudge_wait_ms,
            nudge_after_ms=config.nudge_after_ms,
            stability_stable_ms=config.stability_stable_ms,
            stability_max_wait_ms=config.stability_max_wait_ms,
            stability_interval_ms=config.stability_interval_ms,
            full_page=config.full_page_screenshot,
            jpeg_quality=config.jpeg_quality,
            webp_quality=config.webp_quality,
        )


@dataclass
class PreparationReport:
    stable: bool = False
    waited_ms: int = 0
    removed_elements: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class ScreenshotResult:
    preview_path: Path
    thumbnail_path: Path
    width: int
    height: int
    blank: bool = False


# =============================================================================
# Preparation
# =============================================================================

def normalize_exclusion_selector(selector: str) -> Optional[str]:
    """A bare token like `cookie-banner` matches both the class and the id."""
    selector = (selector or "").strip()
    if not selector:
        return None
    if selector.startswith((".", "#", "[")):
        return selector
    return f".{selector}, #{selector}"


async def wait_for_stability(
    page: Page,
    stable_ms: int,
    max_wait_ms: int,
    interval_ms: int,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Tuple[bool, int]:
    """
    Poll until no finite animation runs and the layout stops changing.

    The page counts as settled for a sample when no finite animation is
    running and scrollHeight and rounded body height match the previous
    sample. It is stable once it has stayed settled for `stable_ms`.

    Args:
        page: Page to sample
        stable_ms: How long the page must stay settled
        max_wait_ms: Give up after this long
        interval_ms: Delay between samples

    Returns:
        (stable, waited_ms). stable is False when max_wait_ms expired first.
    """
    start = clock()
    stable_since: Optional[float] = None
    last: Optional[Tuple[int, int]] = None

    def elapsed_ms() -> int:
        return int((clock() - start) * 1000)

    while elapsed_ms() < max_wait_ms:
        sample = await page.evaluate(LAYOUT_SAMPLE_JS)
        layout = (int(sample.get("scrollHeight") or 0), round(sample.get("bodyHeight") or 0))
        settled = sample.get("runningFinite", 0) == 0 and (last is None or layout == last)

        if settled:
            if stable_since is None:
                stable_since = clock()
            if (clock() - stable_since) * 1000 >= stable_ms:
                return True, elapsed_ms()
        else:
            stable_since = None

        last = layout
        await sleep(interval_ms / 1000)

    return False, elapsed_ms()


async def prepare_page(
    page: Page,
    options: ScreenshotOptions,
    exclusions: Iterable[str] = (),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> PreparationReport:
    """Run the preparation steps in order. Step failures are recorded, not raised."""
    report = PreparationReport()

    async def step(name: str, coro: Awaitable) -> None:
        try:
            await coro
        except Exception as e:
            logger.debug(f"Screenshot prep step '{name}' failed: {e}")
            report.errors.append(f"{name}: {e}")

    await step("load", page.wait_for_load_state("load", timeout=options.load_timeout_ms))
    await step("networkidle", page.wait_for_load_state("networkidle", timeout=NETWORK_IDLE_TIMEOUT_MS))
    await sleep(options.animation_wait_ms / 1000)

    if options.scroll_for_lazy_load:
        await step("scroll", page.evaluate(SCROLL_THROUGH_JS, options.scroll_delay_ms))
        await step("scroll_top", page.evaluate(SCROLL_TO_JS, 100))
        await sleep(0.1)
        await step("scroll_top", page.evaluate(SCROLL_TO_JS, 0))
        await sleep(0.8)
    else:
        await step("scroll_top", page.evaluate(SCROLL_TO_JS, 0))
        await sleep(0.2)
        if options.nudge_scroll_ratio > 0:
            await step("nudge", page.evaluate(NUDGE_JS, options.nudge_scroll_ratio))
            await sleep(options.nudge_wait_ms / 1000)
            await step("nudge_back", page.evaluate(SCROLL_TO_JS, 0))
            await sleep(options.nudge_after_ms / 1000)

    selectors = [s for s in (normalize_exclusion_selector(x) for x in exclusions) if s]
    if selectors:
        try:
            report.removed_elements = await page.evaluate(REMOVE_ELEMENTS_JS, selectors) or 0
        except Exception as e:
            report.errors.append(f"remove: {e}")

    try:
        report.stable, report.waited_ms = await wait_for_stability(
            page,
            options.stability_stable_ms,
            options.stability_max_wait_ms,
            options.stability_interval_ms,
            sleep=sleep,
        )
    except Exception as e:
        report.errors.append(f"stability: {e}")

    if not report.stable:
        logger.info(f"Page not stable after {report.waited_ms}ms, capturing anyway")
    return report


# =============================================================================
# Encoding
# =============================================================================

def is_likely_blank(image: Image.Image) -> bool:
    """Near-uniform white or black frame."""
    stat = ImageStat.Stat(image.convert("RGB"))
    mean = sum(stat.mean) / 3
    stddev = sum(stat.stddev) / 3
    return stddev < 1.5 and (mean > 250 or mean < 5)


def render_variants(raw: bytes, webp_quality: int, thumbnail_quality: int) -> Tuple[bytes, bytes, Tuple[int, int], bool]:
    """
    Derive the preview and thumbnail encodings from a raw capture.

    Returns:
        (preview_webp, thumbnail_webp, (width, height) of the raw frame, blank)
    """
    with Image.open(io.BytesIO(raw)) as source:
        image = source.convert("RGB")

    blank = is_likely_blank(image)

    preview = image
    if image.width > PREVIEW_WIDTH:
        height = round(image.height * PREVIEW_WIDTH / image.width)
        preview = image.resize((PREVIEW_WIDTH, height), Image.LANCZOS)
    preview_buf = io.BytesIO()
    preview.save(preview_buf, format="WEBP", quality=webp_quality)

    thumbnail = ImageOps.fit(image, THUMBNAIL_SIZE, Image.LANCZOS, centering=(0.5, 0.0))
    thumb_buf = io.BytesIO()
    thumbnail.save(thumb_buf, format="WEBP", quality=thumbnail_quality)

    return preview_buf.getvalue(), thumb_buf.getvalue(), image.size, blank


class ScreenshotUnit:
    """Prepare, capture and encode screenshots into an output directory."""

    def __init__(self, output_dir: Path, options: Optional[ScreenshotOptions] = None):
        self.output_dir = Path(output_dir)
        self.options = options or ScreenshotOptions()
        self.screenshot_dir = self.output_dir / "screenshots"
        self.thumbnail_dir = self.output_dir / "thumbnails"

    def configure(self, options: ScreenshotOptions) -> None:
        self.options = options

    async def prepare(self, page: Page, exclusions: Iterable[str] = ()) -> PreparationReport:
        return await prepare_page(page, self.options, exclusions)

    async def _shoot(self, page: Page) -> bytes:
        try:
            raw = await page.screenshot(
                type="jpeg",
                quality=self.options.jpeg_quality,
                full_page=self.options.full_page,
            )
        except Exception as e:
            raise CaptureFailed(f"Screenshot capture failed: {e}") from e
        if not raw:
            raise CaptureFailed("Screenshot capture returned an empty buffer")
        return raw

    async def capture(self, page: Page) -> bytes:
        """
        Capture one JPEG frame. A frame that looks blank is retried once.

        Raises:
            CaptureFailed: The browser returned no image
        """
        raw = await self._shoot(page)
        if await asyncio.to_thread(self._looks_blank, raw):
            logger.warning("Screenshot looked blank, retrying once")
            await asyncio.sleep(BLANK_RETRY_DELAY)
            raw = await self._shoot(page)
        return raw

    @staticmethod
    def _looks_blank(raw: bytes) -> bool:
        try:
            with Image.open(io.BytesIO(raw)) as image:
                return is_likely_blank(image)
        except Exception:
            return False

    async def process(self, raw: bytes, slug: str) -> ScreenshotResult:
        """
        Encode and write the preview and thumbnail for `slug`.

        Raises:
            CaptureFailed: The raw frame could not be decoded or written
        """
        try:
            preview, thumb, size, blank = await asyncio.to_thread(
                render_variants, raw, self.options.webp_quality, self.options.thumbnail_quality
            )
        except Exception as e:
            raise CaptureFailed(f"Could not encode screenshot for {slug}: {e}") from e

        preview_path = self.screenshot_dir / f"{slug}.webp"
        thumbnail_path = self.thumbnail_dir / f"{slug}_thumb.webp"
        try:
            await asyncio.to_thread(self._write, preview_path, preview)
            await asyncio.to_thread(self._write, thumbnail_path, thumb)
        except OSError as e:
            raise CaptureFailed(f"Could not write screenshot for {slug}: {e}") from e

        if blank:
            logger.warning(f"Screenshot for {slug} is probably blank")
        return ScreenshotResult(
            preview_path=preview_path,
            thumbnail_path=thumbnail_path,
            width=size[0],
            height=size[1],
            blank=blank,
        )

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
