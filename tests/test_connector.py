"""Tests for the storefront connector."""
import pytest
from unittest.mock import AsyncMock, MagicMock

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from gallery_scraper.errors import ExtractionFailed, NavigationFailed, NavigationTimeout, NoMatchingFields
from gallery_scraper.services.connector import (
    TemplateConnector,
    clean_template_name,
    parse_template_payload,
    template_id_for,
)

URL = "https://templates.webflow.com/html/bold-agency-website-template"


def payload(**overrides):
    data = {
        "name": "Bold Agency - Agency Website Template",
        "author_name": "Studio North",
        "author_href": "/designers/studio-north/",
        "author_avatar": "https://cdn.example.com/avatar.png",
        "live_preview_url": "https://bold-agency.webflow.io",
        "designer_preview_url": "https://preview.webflow.com/preview/bold-agency",
        "price": "$79 USD",
        "short_description": "A bold template for agencies.",
        "long_description": "<p>Long</p>",
        "subcategories": ["agency", "portfolio"],
        "styles": ["minimal"],
        "features": [
            {"name": "Content Management System", "description": "CMS", "icon_type": "cms"},
            {"name": "Ecommerce", "description": None, "icon_type": "default"},
            {"name": "", "description": "ignored"},
        ],
    }
    data.update(overrides)
    return data


class TestParsePayload:

    def test_maps_all_fields(self):
        record = parse_template_payload(payload(), URL)

        assert record.slug == "bold-agency"
        assert record.template_id == "wf_bold_agency"
        assert record.name == "Bold Agency"
        assert record.author_id == "studio-north"
        assert record.live_preview_url == "https://bold-agency.webflow.io"
        assert record.subcategories == ["agency", "portfolio"]
        assert [f.name for f in record.features] == ["Content Management System", "Ecommerce"]
        assert record.is_cms is True
        assert record.is_ecommerce is True

    def test_missing_name_falls_back_to_slug(self):
        record = parse_template_payload(payload(name=None), URL)
        assert record.name == "bold-agency"

    def test_no_fields_raises(self):
        with pytest.raises(NoMatchingFields):
            parse_template_payload(payload(name="", live_preview_url=None), URL)

    def test_non_dict_payload_raises(self):
        with pytest.raises(ExtractionFailed):
            parse_template_payload(None, URL)

    def test_helpers(self):
        assert template_id_for("my-cool-site") == "wf_my_cool_site"
        assert clean_template_name("  Nova - Portfolio Website Template ") == "Nova"
        assert clean_template_name("Nova") == "Nova"


class TestNavigate:

    @pytest.mark.asyncio
    async def test_timeout_maps_to_navigation_timeout(self):
        page = MagicMock()
        page.goto = AsyncMock(side_effect=PlaywrightTimeoutError("Timeout 60000ms exceeded"))

        with pytest.raises(NavigationTimeout) as exc_info:
            await TemplateConnector(timeout_ms=60000).navigate(page, URL)

        assert exc_info.value.is_timeout
        assert exc_info.value.url == URL

    @pytest.mark.asyncio
    async def test_browser_error_maps_to_navigation_failed(self):
        page = MagicMock()
        page.goto = AsyncMock(side_effect=PlaywrightError("net::ERR_NAME_NOT_RESOLVED"))

        with pytest.raises(NavigationFailed) as exc_info:
            await TemplateConnector().navigate(page, URL)
        assert not exc_info.value.is_timeout

    @pytest.mark.asyncio
    async def test_http_error_status_fails(self):
        page = MagicMock()
        page.goto = AsyncMock(return_value=MagicMock(status=404))

        with pytest.raises(NavigationFailed, match="HTTP 404"):
            await TemplateConnector().navigate(page, URL)

    @pytest.mark.asyncio
    async def test_missing_ready_selector_is_tolerated(self):
        page = MagicMock()
        page.goto = AsyncMock(return_value=MagicMock(status=200))
        page.wait_for_selector = AsyncMock(side_effect=PlaywrightTimeoutError("no title"))

        await TemplateConnector(timeout_ms=30000).navigate(page, URL)

        assert page.goto.await_args.kwargs == {"wait_until": "domcontentloaded", "timeout": 30000}

    @pytest.mark.asyncio
    async def test_fetch_navigates_then_extracts(self):
        page = MagicMock()
        page.goto = AsyncMock(return_value=MagicMock(status=200))
        page.wait_for_selector = AsyncMock()
        page.evaluate = AsyncMock(return_value=payload())

        record = await TemplateConnector().fetch(page, URL)
        assert record.name == "Bold Agency"

    @pytest.mark.asyncio
    async def test_extraction_script_error_raises(self):
        page = MagicMock()
        page.evaluate = AsyncMock(side_effect=PlaywrightError("Execution context was destroyed"))

        with pytest.raises(ExtractionFailed):
            await TemplateConnector().extract(page, URL)


class TestInternalLinks:

    @pytest.mark.asyncio
    async def test_links_are_normalized(self):
        page = MagicMock()
        page.evaluate = AsyncMock(return_value=["/about", "#top", "https://other.com/x", "home-1", "/about"])

        links = await TemplateConnector().internal_links(page, "https://bold-agency.webflow.io")
        assert links == ["/about", "/home-1"]

    @pytest.mark.asyncio
    async def test_link_errors_return_empty(self):
        page = MagicMock()
        page.evaluate = AsyncMock(side_effect=PlaywrightError("closed"))

        assert await TemplateConnector().internal_links(page, "https://bold-agency.webflow.io") == []
