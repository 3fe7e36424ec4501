"""Tests for the browser worker pool."""
import asyncio

import pytest

from gallery_scraper.errors import PoolClosedError, WorkerLaunchFailed
from gallery_scraper.services.worker_pool import BrowserPool

from conftest import FakeLauncher, wait_until


def make_pool(browsers=1, pages=2, launcher=None, **kwargs) -> BrowserPool:
    return BrowserPool(
        browser_instances=browsers,
        pages_per_browser=pages,
        launcher=launcher or FakeLauncher(),
        relaunch_backoff=0,
        **kwargs,
    )


class TestAcquireRelease:

    @pytest.mark.asyncio
    async def test_acquire_launches_lazily(self):
        launcher = FakeLauncher()
        pool = make_pool(launcher=launcher)
        assert launcher.attempts == 0

        handle = await pool.acquire()
        assert launcher.attempts == 1
        assert pool.in_use == 1
        assert handle.browser_index == 0

        await pool.release(handle)
        assert pool.in_use == 0
        assert handle.page.closed
        await pool.close()

    @pytest.mark.asyncio
    async def test_lease_releases_on_error(self):
        pool = make_pool()

        with pytest.raises(RuntimeError):
            async with pool.lease() as page:
                assert pool.in_use == 1
                raise RuntimeError("boom")

        assert pool.in_use == 0
        assert page.closed
        await pool.close()

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self):
        pool = make_pool()
        first = await pool.acquire()
        second = await pool.acquire()

        await pool.release(first)
        await pool.release(first)
        assert pool.in_use == 1

        await pool.release(second)
        assert pool.in_use == 0
        await pool.close()

    @pytest.mark.asyncio
    async def test_least_loaded_browser_wins(self):
        pool = make_pool(browsers=2, pages=2)
        await pool.start()

        handles = [await pool.acquire() for _ in range(3)]
        assert [h.browser_index for h in handles] == [0, 1, 0]
        assert pool.stats().per_browser == [2, 1]

        for handle in handles:
            await pool.release(handle)
        await pool.close()

    @pytest.mark.asyncio
    async def test_outstanding_never_exceeds_capacity(self):
        pool = make_pool(browsers=2, pages=2)
        peak = 0

        async def job():
            nonlocal peak
            async with pool.lease():
                peak = max(peak, pool.in_use)
                await asyncio.sleep(0.01)

        await asyncio.gather(*(job() for _ in range(12)))
        assert peak == pool.capacity == 4
        assert pool.in_use == 0
        await pool.close()

    @pytest.mark.asyncio
    async def test_waiters_are_served_in_fifo_order(self):
        pool = make_pool(browsers=1, pages=1)
        first = await pool.acquire()
        order = []

        async def waiter(name):
            handle = await pool.acquire()
            order.append(name)
            return handle

        second = asyncio.create_task(waiter("second"))
        await wait_until(lambda: pool.queue_depth == 1)
        third = asyncio.create_task(waiter("third"))
        await wait_until(lambda: pool.queue_depth == 2)

        await pool.release(first)
        second_handle = await second
        assert order == ["second"]
        assert not third.done()

        await pool.release(second_handle)
        await pool.release(await third)
        assert order == ["second", "third"]
        await pool.close()

    @pytest.mark.asyncio
    async def test_cancelled_waiter_leaves_queue(self):
        pool = make_pool(browsers=1, pages=1)
        held = await pool.acquire()

        task = asyncio.create_task(pool.acquire())
        await wait_until(lambda: pool.queue_depth == 1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert pool.queue_depth == 0
        await pool.release(held)
        assert pool.in_use == 0
        await pool.close()


class TestRelaunch:

    @pytest.mark.asyncio
    async def test_crashed_browser_is_relaunched(self):
        launcher = FakeLauncher()
        pool = make_pool(launcher=launcher)
        handle = await pool.acquire()
        await pool.release(handle)

        launcher.browsers[0].connected = False
        handle = await pool.acquire()

        assert len(launcher.browsers) == 2
        assert pool.launches == 2
        await pool.release(handle)
        await pool.close()

    @pytest.mark.asyncio
    async def test_transient_launch_failures_are_retried(self):
        launcher = FakeLauncher(failures=2)
        pool = make_pool(launcher=launcher, max_launch_failures=3)

        handle = await pool.acquire()
        assert launcher.attempts == 3
        assert pool.stats().launch_failures == 0

        await pool.release(handle)
        await pool.close()

    @pytest.mark.asyncio
    async def test_isolated_page_failures_do_not_accumulate(self):
        launcher = FakeLauncher()
        pool = make_pool(launcher=launcher, max_launch_failures=3)
        await pool.release(await pool.acquire())

        context = launcher.browsers[0].contexts[0]
        open_page = context.new_page
        flaky = {"fail": False}

        async def new_page():
            if flaky["fail"]:
                flaky["fail"] = False
                raise RuntimeError("new_page failed")
            return await open_page()

        context.new_page = new_page
        for _ in range(5):
            flaky["fail"] = True
            handle = await pool.acquire()
            assert pool.stats().launch_failures == 0
            await pool.release(handle)

        await pool.close()

    @pytest.mark.asyncio
    async def test_repeated_launch_failure_raises(self):
        launcher = FakeLauncher(failures=-1)
        pool = make_pool(launcher=launcher, max_launch_failures=2)

        with pytest.raises(WorkerLaunchFailed) as exc_info:
            await pool.acquire()

        assert exc_info.value.attempts == 2
        assert pool.in_use == 0
        await pool.close()


class TestResize:

    @pytest.mark.asyncio
    async def test_resize_when_idle_applies_now(self):
        pool = make_pool(browsers=1, pages=2)
        assert await pool.resize(3, 4) is True
        assert pool.capacity == 12
        assert pool.pending_resize is None
        await pool.close()

    @pytest.mark.asyncio
    async def test_resize_is_deferred_until_idle(self):
        pool = make_pool(browsers=1, pages=2)
        handle = await pool.acquire()

        assert await pool.resize(2, 3) is False
        assert pool.pending_resize == (2, 3)
        assert pool.capacity == 2

        await pool.release(handle)
        assert pool.pending_resize is None
        assert pool.capacity == 6
        assert pool.stats().browser_instances == 2
        await pool.close()

    @pytest.mark.asyncio
    async def test_shrink_closes_extra_browsers(self):
        launcher = FakeLauncher()
        pool = make_pool(browsers=2, pages=1, launcher=launcher)
        await pool.start()

        await pool.resize(1, 1)

        assert launcher.browsers[0].connected
        assert not launcher.browsers[1].connected
        assert pool.stats().active_browsers == 1
        await pool.close()


class TestClose:

    @pytest.mark.asyncio
    async def test_close_fails_waiters(self):
        launcher = FakeLauncher()
        pool = make_pool(browsers=1, pages=1, launcher=launcher)
        await pool.acquire()

        waiter = asyncio.create_task(pool.acquire())
        await wait_until(lambda: pool.queue_depth == 1)
        await pool.close()

        with pytest.raises(PoolClosedError):
            await waiter
        assert not launcher.browsers[0].connected
        assert launcher.closed

    @pytest.mark.asyncio
    async def test_acquire_after_close_raises(self):
        pool = make_pool()
        await pool.close()
        with pytest.raises(PoolClosedError):
            await pool.acquire()
