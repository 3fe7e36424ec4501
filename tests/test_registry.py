"""Tests for the per-queue orchestrator registry."""
import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from gallery_scraper.errors import SessionStateError
from gallery_scraper.services.registry import DEFAULT_QUEUE, OrchestratorRegistry

from conftest import FakeConnector, blocker, template_url


class TestOrchestratorRegistry:

    @pytest.mark.asyncio
    async def test_one_active_session_per_queue(self, make_orchestrator):
        release = asyncio.Event()
        connector = FakeConnector({template_url("a"): blocker(release), template_url("b"): blocker(release)})
        registry = OrchestratorRegistry(lambda: make_orchestrator(connector))

        await registry.start(DEFAULT_QUEUE, [template_url("a")])
        with pytest.raises(SessionStateError):
            await registry.start(DEFAULT_QUEUE, [template_url("c")])

        await registry.start("updates", [template_url("b")])
        assert sorted(registry.active()) == ["default", "updates"]
        assert registry.get("updates") is not registry.get(DEFAULT_QUEUE)

        release.set()
        await registry.get(DEFAULT_QUEUE).wait()
        await registry.get("updates").wait()
        assert registry.active() == []

    @pytest.mark.asyncio
    async def test_release_only_finished_queues(self, make_orchestrator):
        release = asyncio.Event()
        registry = OrchestratorRegistry(lambda: make_orchestrator(FakeConnector({template_url("a"): blocker(release)})))

        assert await registry.release("missing") is False
        await registry.start(DEFAULT_QUEUE, [template_url("a")])
        assert await registry.release(DEFAULT_QUEUE) is False

        release.set()
        await registry.get(DEFAULT_QUEUE).wait()
        assert await registry.release(DEFAULT_QUEUE) is True
        assert registry.get(DEFAULT_QUEUE) is None

    @pytest.mark.asyncio
    async def test_orchestrator_is_reused_for_a_queue(self, make_orchestrator):
        factory = MagicMock(side_effect=lambda: make_orchestrator())
        registry = OrchestratorRegistry(factory)

        await registry.start(DEFAULT_QUEUE, [template_url("a")])
        await registry.get(DEFAULT_QUEUE).wait()
        await registry.start(DEFAULT_QUEUE, [template_url("b")])
        await registry.get(DEFAULT_QUEUE).wait()

        assert factory.call_count == 1

    @pytest.mark.asyncio
    async def test_close_all_logs_failures(self, caplog):
        broken = MagicMock()
        broken.close = AsyncMock(side_effect=RuntimeError("already gone"))
        registry = OrchestratorRegistry(lambda: broken)
        registry._get_or_create("x")

        await registry.close_all()

        assert registry.get("x") is None
        assert "already gone" in caplog.text
