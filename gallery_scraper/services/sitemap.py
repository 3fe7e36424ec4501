"""
Sitemap Discovery
Finds marketplace templates that are not in the catalog yet.

Fetches the marketplace sitemap, keeps template storefront URLs (the /html/
section) and drops those already scraped or blacklisted. The result feeds
`BatchOrchestrator.start(..., session_type=SessionType.UPDATE)`.

Usage:
    discovery = SitemapDiscovery()
    result = await discovery.discover_new(store)
    print(f"{result.new_count} new of {result.total_in_sitemap}")
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

import requests

from ..errors import ScraperError
from ..models.schemas import WorkItem
from .state_store import StateStore

logger = logging.getLogger(__name__)

DEFAULT_SITEMAP_URL = "https://templates.webflow.com/sitemap.xml"
TEMPLATE_PATH = "/html/"

_LOC_PATTERN = re.compile(r"<loc>\s*([^<\s]+)\s*</loc>")


class SitemapError(ScraperError):
    error_type = "sitemap_error"


def display_name_from_slug(slug: str) -> str:
    """`my-cool-template` -> `My Cool Template`"""
    return " ".join(word[:1].upper() + word[1:] for word in slug.split("-") if word)


def parse_sitemap(xml: str, path_filter: str = TEMPLATE_PATH) -> List[str]:
    """Template URLs in sitemap order, duplicates removed."""
    urls = [loc for loc in _LOC_PATTERN.findall(xml) if path_filter in loc]
    return list(dict.fromkeys(urls))


@dataclass
class DiscoveryResult:
    total_in_sitemap: int = 0
    existing_in_catalog: int = 0
    blacklisted: int = 0
    new_items: List[WorkItem] = field(default_factory=list)

    @property
    def new_count(self) -> int:
        return len(self.new_items)

    def to_dict(self) -> dict:
        return {
            "total_in_sitemap": self.total_in_sitemap,
            "existing_in_catalog": self.existing_in_catalog,
            "blacklisted": self.blacklisted,
            "new_count": self.new_count,
            "new_templates": [item.model_dump() for item in self.new_items],
        }


class SitemapDiscovery:
    """Sitemap fetcher bound to one marketplace."""

    def __init__(
        self,
        sitemap_url: str = DEFAULT_SITEMAP_URL,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.sitemap_url = sitemap_url
        self.timeout = timeout
        self._session = session or requests.Session()

    def _fetch_sync(self) -> str:
        response = self._session.get(self.sitemap_url, timeout=self.timeout)
        response.raise_for_status()
        return response.text

    async def fetch_urls(self) -> List[str]:
        """
        Raises:
            SitemapError: The sitemap could not be fetched
        """
        try:
            xml = await asyncio.to_thread(self._fetch_sync)
        except requests.RequestException as e:
            raise SitemapError(f"Failed to fetch sitemap {self.sitemap_url}: {e}") from e
        urls = parse_sitemap(xml)
        logger.info(f"Sitemap lists {len(urls)} templates")
        return urls

    async def discover_new(self, store: StateStore) -> DiscoveryResult:
        urls = await self.fetch_urls()
        known = await store.known_storefront_urls()
        blacklist = await store.get_blacklist()

        result = DiscoveryResult(total_in_sitemap=len(urls))
        for url in urls:
            if url in known:
                result.existing_in_catalog += 1
                continue
            item = WorkItem.from_url(url)
            if item.slug in blacklist:
                result.blacklisted += 1
                continue
            item.name = display_name_from_slug(item.slug)
            result.new_items.append(item)

        logger.info(
            f"Discovery: {result.new_count} new, {result.blacklisted} blacklisted, "
            f"{result.existing_in_catalog} already in catalog"
        )
        return result
