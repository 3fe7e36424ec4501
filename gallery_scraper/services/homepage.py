"""
Homepage Detection

Many marketplace templates ship an intro page at `/` while the real homepage
lives at a path like `/home-1` or `/homepages/home-a`. Given the internal
links of a live preview, pick the path most likely to be the primary
homepage so the screenshot shows it instead of the intro.

Only first variants (1, a, one, v1) are matched, to avoid picking
`/home-3` or unrelated pages such as `/portfolio`.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional
from urllib.parse import urljoin, urlparse

from playwright.async_api import Page

logger = logging.getLogger(__name__)


HOMEPAGE_SLUG_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^home$",
        r"^home[-_]?1$",
        r"^home[-_]?a$",
        r"^home[-_]?one$",
        r"^home[-_]?v1$",
        r"^homepage$",
        r"^homepage[-_]?1$",
        r"^homepage[-_]?a$",
        r"^homepage[-_]?one$",
        r"^homepage[-_]?v1$",
    )
]

HOMEPAGE_PATH_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^/homepages?/(home[-_]?[1a]?|home[-_]?one|homepage[-_]?[1a]?|homepage[-_]?one)$",
        r"^/layouts?[-_]?[1-9]?/(home[-_]?[1a]?|home[-_]?one)$",
        r"^/pages?/(home[-_]?[1a]?|home[-_]?one|homepage[-_]?[1a]?|homepage[-_]?one)$",
        r"^/demos?/(home[-_]?[1a]?|home[-_]?one|homepage[-_]?[1a]?|homepage[-_]?one)$",
    )
]

SKIPPED_PREFIXES = ("#", "javascript:", "mailto:", "tel:")

COLLECT_HREFS_JS = """
() => Array.from(document.querySelectorAll('a[href]'))
    .map(a => a.getAttribute('href'))
    .filter(Boolean)
"""


@dataclass
class HomepageDetection:
    screenshot_url: str
    original_url: str
    is_alternate_homepage: bool = False
    detected_path: Optional[str] = None
    candidate_links: List[str] = field(default_factory=list)


def _segments(path: str) -> List[str]:
    return [s for s in path.split("/") if s]


def matches_homepage_pattern(path: str) -> bool:
    """True if `path` looks like a primary alternate homepage."""
    if not path.startswith("/"):
        path = "/" + path
    path = re.split(r"[?#]", path, maxsplit=1)[0]
    segments = _segments(path)
    if not segments:
        return False

    if any(p.match(path) for p in HOMEPAGE_PATH_PATTERNS):
        return True
    return any(p.match(segments[-1]) for p in HOMEPAGE_SLUG_PATTERNS)


def homepage_priority(path: str) -> int:
    """Higher means more likely to be the real homepage."""
    path = path.lower()
    segments = _segments(path)
    last = segments[-1] if segments else ""

    score = -10 * len(segments)
    if "home" in last:
        score += 50
    if last in ("home", "homepage"):
        score += 30
    if last.endswith("1"):
        score += 20
    if last.endswith("a"):
        score += 15
    if "/homepages/" in path:
        score += 10
    if "/layouts" in path:
        score += 5
    return score


def normalize_internal_links(hrefs: Iterable[str], base_url: str) -> List[str]:
    """
    Reduce raw hrefs to unique same-host paths, in document order.

    Anchors, javascript:, mailto: and tel: links are dropped, as are
    absolute links to other hosts.
    """
    host = urlparse(base_url).netloc
    paths: List[str] = []
    seen = set()

    for href in hrefs:
        href = (href or "").strip()
        if not href or href.startswith(SKIPPED_PREFIXES):
            continue

        if href.startswith(("http://", "https://")):
            parsed = urlparse(href)
            if parsed.netloc != host:
                continue
            path = parsed.path or "/"
        elif href.startswith("/"):
            path = href
        else:
            path = "/" + href

        if path not in seen:
            seen.add(path)
            paths.append(path)
    return paths


def pick_homepage(links: List[str], live_preview_url: str) -> HomepageDetection:
    """Choose the best homepage candidate among internal link paths."""
    result = HomepageDetection(
        screenshot_url=live_preview_url,
        original_url=live_preview_url,
        candidate_links=list(links),
    )

    candidates = sorted(
        (p for p in links if matches_homepage_pattern(p)),
        key=homepage_priority,
        reverse=True,
    )
    if candidates:
        best = candidates[0]
        result.screenshot_url = urljoin(live_preview_url, best)
        result.is_alternate_homepage = True
        result.detected_path = best
    return result


async def extract_internal_links(page: Page, base_url: str) -> List[str]:
    hrefs = await page.evaluate(COLLECT_HREFS_JS)
    return normalize_internal_links(hrefs or [], base_url)


async def detect_homepage(page: Page, live_preview_url: str) -> HomepageDetection:
    """
    Detect an alternate homepage on a page already showing the live preview.

    Detection errors fall back to the original URL.
    """
    try:
        links = await extract_internal_links(page, live_preview_url)
    except Exception as e:
        logger.warning(f"Homepage detection failed for {live_preview_url}: {e}")
        return HomepageDetection(screenshot_url=live_preview_url, original_url=live_preview_url)

    detection = pick_homepage(links, live_preview_url)
    if detection.is_alternate_homepage:
        logger.info(f"Alternate homepage for {live_preview_url}: {detection.detected_path}")
    return detection
