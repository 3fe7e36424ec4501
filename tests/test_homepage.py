"""Tests for alternate homepage detection."""
import pytest
from unittest.mock import AsyncMock, MagicMock

from gallery_scraper.services.homepage import (
    detect_homepage,
    homepage_priority,
    matches_homepage_pattern,
    normalize_internal_links,
    pick_homepage,
)

PREVIEW = "https://nova.webflow.io"


class TestPatterns:

    @pytest.mark.parametrize("path", [
        "/home", "/home-1", "/home_a", "/homeone", "/home-v1", "/homepage-1",
        "/homepages/home-a", "/layouts-2/home", "/pages/homepage", "/demos/home-one",
    ])
    def test_first_variants_match(self, path):
        assert matches_homepage_pattern(path)

    @pytest.mark.parametrize("path", ["/", "/home-3", "/portfolio", "/about-home-page", "/homes"])
    def test_other_pages_do_not_match(self, path):
        assert not matches_homepage_pattern(path)

    def test_query_and_fragment_are_ignored(self):
        assert matches_homepage_pattern("/home-1?ref=nav#hero")

    def test_priority_prefers_shallow_exact_home(self):
        assert homepage_priority("/home") > homepage_priority("/home-1")
        assert homepage_priority("/home-1") > homepage_priority("/pages/home-1")
        assert homepage_priority("/home-1") > homepage_priority("/home-a")


class TestPick:

    def test_picks_best_candidate(self):
        result = pick_homepage(["/about", "/homepages/home-a", "/home-1"], PREVIEW)
        assert result.is_alternate_homepage
        assert result.detected_path == "/home-1"
        assert result.screenshot_url == "https://nova.webflow.io/home-1"

    def test_no_candidate_keeps_root(self):
        result = pick_homepage(["/about", "/contact"], PREVIEW)
        assert not result.is_alternate_homepage
        assert result.screenshot_url == PREVIEW

    def test_normalize_drops_foreign_and_pseudo_links(self):
        hrefs = ["/a", "mailto:x@y.z", "tel:123", "javascript:void(0)", "#", "https://nova.webflow.io/b", "https://x.io/c", "d"]
        assert normalize_internal_links(hrefs, PREVIEW) == ["/a", "/b", "/d"]

    @pytest.mark.asyncio
    async def test_detect_falls_back_on_errors(self):
        page = MagicMock()
        page.evaluate = AsyncMock(side_effect=RuntimeError("page closed"))

        result = await detect_homepage(page, PREVIEW)
        assert result.screenshot_url == PREVIEW
        assert not result.is_alternate_homepage
