"""
Template Storefront Connector

Navigates a leased page to a marketplace storefront URL and reads the
template's structured facts (name, author, price, descriptions, tags,
features) with a single in-page evaluation. The raw facts are mapped to a
TemplateRecord in Python.

The connector never retries. It raises NavigationTimeout, NavigationFailed,
ExtractionFailed or NoMatchingFields and leaves retry policy to the caller.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from playwright.async_api import Page
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..errors import ExtractionFailed, NavigationFailed, NavigationTimeout, NoMatchingFields
from ..models.schemas import TemplateFeature, TemplateRecord, slug_from_url
from .homepage import extract_internal_links

logger = logging.getLogger(__name__)

READY_SELECTOR = ".h4, h1"

_NAME_SUFFIX = re.compile(r" - .+ Website Template$")

EXTRACT_JS = """
() => {
  const text = (el) => (el && el.textContent ? el.textContent.trim() : null);
  const anchorWith = (label) => Array.from(document.querySelectorAll('a'))
    .find(a => (a.textContent || '').includes(label));

  const tags = (root, selector) => Array.from(root.querySelectorAll(selector))
    .map(el => (el.textContent || '').trim().toLowerCase())
    .filter(Boolean);

  const styles = [];
  document.querySelectorAll('.mp-sidebar-wrap').forEach(wrap => {
    const heading = wrap.querySelector('.h6');
    if (heading && (heading.textContent || '').includes('Styles')) {
      styles.push(...tags(wrap, '.tag-list_link'));
    }
  });

  const features = [];
  document.querySelectorAll('.feature_item').forEach(item => {
    const name = item.querySelector('.feature_accordion_cms-name');
    if (!name) return;
    const icon = item.querySelector('.feature_accordion_cms-icon, .feature_accordion_tick-icon');
    features.push({
      name: text(name) || '',
      description: text(item.querySelector('.accordion_p')),
      icon_type: icon && icon.classList.contains('feature_accordion_cms-icon') ? 'cms' : 'default',
    });
  });

  const nameEl = document.querySelector('.h4') || document.querySelector('h1');
  const authorLink = document.querySelector('.template-designer-link');
  const avatar = document.querySelector('.template-designer-icon');
  const live = anchorWith('Preview in browser');
  const designer = anchorWith('Preview in Webflow');
  const longDesc = document.querySelector('#longDescription');

  return {
    name: text(nameEl),
    author_name: text(document.querySelector('.template-designer-name')),
    author_href: authorLink ? authorLink.getAttribute('href') : null,
    author_avatar: avatar ? avatar.getAttribute('src') : null,
    live_preview_url: live ? live.getAttribute('href') : null,
    designer_preview_url: designer ? designer.getAttribute('href') : null,
    price: text(document.querySelector('.button_buy-price')),
    short_description: text(document.querySelector('.branded-display-subtitle')),
    long_description: longDesc ? longDesc.innerHTML : null,
    subcategories: tags(document, '#subcategory .tag-list_link'),
    styles,
    features,
  };
}
"""


def template_id_for(slug: str) -> str:
    return "wf_" + slug.replace("-", "_")


def clean_template_name(raw: Optional[str]) -> str:
    """Strip the " - <Category> Website Template" suffix from a page title."""
    return _NAME_SUFFIX.sub("", (raw or "").strip())


def parse_template_payload(payload: Dict[str, Any], storefront_url: str) -> TemplateRecord:
    """
    Map raw in-page facts to a TemplateRecord.

    Args:
        payload: Dict returned by EXTRACT_JS
        storefront_url: URL the payload was read from

    Returns:
        TemplateRecord

    Raises:
        NoMatchingFields: Neither a name nor a live preview link was found
    """
    if not isinstance(payload, dict):
        raise ExtractionFailed(f"Unexpected extraction payload: {type(payload).__name__}", storefront_url)

    name = clean_template_name(payload.get("name"))
    live_preview_url = (payload.get("live_preview_url") or "").strip() or None
    if not name and not live_preview_url:
        raise NoMatchingFields(f"No template fields found on {storefront_url}", storefront_url)

    slug = slug_from_url(storefront_url)
    author_href = (payload.get("author_href") or "").rstrip("/")
    author_id = author_href.rsplit("/", 1)[-1] or None

    features: List[TemplateFeature] = [
        TemplateFeature(**f) for f in payload.get("features") or [] if f.get("name")
    ]
    feature_names = [f.name.lower() for f in features]

    return TemplateRecord(
        template_id=template_id_for(slug),
        slug=slug,
        name=name or slug,
        storefront_url=storefront_url,
        author_name=payload.get("author_name"),
        author_id=author_id,
        author_avatar=payload.get("author_avatar"),
        live_preview_url=live_preview_url,
        designer_preview_url=payload.get("designer_preview_url") or None,
        price=payload.get("price"),
        short_description=payload.get("short_description"),
        long_description=payload.get("long_description"),
        subcategories=list(payload.get("subcategories") or []),
        styles=list(payload.get("styles") or []),
        features=features,
        is_cms=any("content management" in n for n in feature_names),
        is_ecommerce=any("ecommerce" in n for n in feature_names),
    )


class TemplateConnector:
    """
    Reads template storefront pages on pages leased from the worker pool.

    Usage:
        connector = TemplateConnector(timeout_ms=60000)
        await connector.navigate(page, url)
        record = await connector.extract(page, url)
    """

    def __init__(self, timeout_ms: int = 60000, ready_timeout_ms: int = 10000):
        """
        Args:
            timeout_ms: Navigation timeout in milliseconds
            ready_timeout_ms: How long to wait for the title element
        """
        self.timeout_ms = timeout_ms
        self.ready_timeout_ms = ready_timeout_ms

    async def navigate(self, page: Page, url: str, wait_for_ready: bool = True) -> None:
        """
        Navigate to `url` with a bounded timeout.

        Raises:
            NavigationTimeout: The page did not reach domcontentloaded in time
            NavigationFailed: DNS, TLS, HTTP >= 400 or a browser error
        """
        try:
            response = await page.goto(url, wait_until="domcontentloaded", timeout=self.timeout_ms)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeout(f"Navigation to {url} timed out after {self.timeout_ms}ms", url) from e
        except PlaywrightError as e:
            raise NavigationFailed(f"Navigation to {url} failed: {e}", url) from e

        if response is not None and response.status >= 400:
            raise NavigationFailed(f"Navigation to {url} returned HTTP {response.status}", url)

        if wait_for_ready:
            try:
                await page.wait_for_selector(READY_SELECTOR, timeout=self.ready_timeout_ms)
            except PlaywrightError:
                # Extraction decides whether the page is usable
                logger.debug(f"Ready selector not found on {url}")

    async def extract(self, page: Page, url: str) -> TemplateRecord:
        """Read template facts from a page already showing `url`."""
        try:
            payload = await page.evaluate(EXTRACT_JS)
        except PlaywrightError as e:
            raise ExtractionFailed(f"Extraction script failed on {url}: {e}", url) from e

        record = parse_template_payload(payload, url)
        logger.debug(f"Extracted {record.slug}: {record.name}")
        return record

    async def fetch(self, page: Page, url: str) -> TemplateRecord:
        """navigate() then extract()."""
        await self.navigate(page, url)
        return await self.extract(page, url)

    async def internal_links(self, page: Page, base_url: str) -> List[str]:
        """Same-host link paths on the current page."""
        try:
            return await extract_internal_links(page, base_url)
        except PlaywrightError as e:
            logger.warning(f"Could not collect links on {base_url}: {e}")
            return []
