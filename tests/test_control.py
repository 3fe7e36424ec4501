"""Tests for pending config handling and timeout backpressure."""
import pytest
from pydantic import ValidationError

from gallery_scraper.config import PerformanceConfig
from gallery_scraper.services.control import ConfigController, Outcome, TimeoutMonitor


class TestConfigController:

    def test_update_is_pending_until_applied(self):
        controller = ConfigController(PerformanceConfig(concurrency=2))

        pending = controller.update_pending({"concurrency": 8})

        assert controller.has_pending
        assert pending.concurrency == 8
        assert controller.current.concurrency == 2

        change = controller.apply_pending()
        assert controller.current.concurrency == 8
        assert not controller.has_pending
        assert change.changed == {"concurrency": (2, 8)}

    def test_updates_stack_on_pending(self):
        controller = ConfigController()
        controller.update_pending({"concurrency": 8})
        controller.update_pending({"batch_size": 50})

        assert controller.pending.concurrency == 8
        assert controller.pending.batch_size == 50

    def test_cancel_discards_pending(self):
        controller = ConfigController()
        controller.update_pending({"concurrency": 8})

        assert controller.cancel_pending().concurrency == 8
        assert controller.apply_pending() is None
        assert controller.current.concurrency == 5

    def test_unknown_field_is_rejected(self):
        controller = ConfigController()
        with pytest.raises(ValidationError):
            controller.update_pending({"speed": "fast"})
        assert not controller.has_pending

    def test_pool_shape_change_detection(self):
        controller = ConfigController(PerformanceConfig(concurrency=4, browser_instances=2, pages_per_browser=2))
        controller.update_pending({"timeout_ms": 30000})
        assert not controller.apply_pending().pool_shape_changed

        controller.update_pending({"concurrency": 20})
        assert controller.apply_pending().pool_shape_changed


class TestTimeoutMonitor:

    def test_pauses_at_consecutive_threshold(self):
        monitor = TimeoutMonitor(threshold=3, ratio_threshold=0)

        assert not monitor.record(Outcome.TIMEOUT)
        assert not monitor.record(Outcome.TIMEOUT)
        assert monitor.record(Outcome.TIMEOUT)
        assert monitor.consecutive == 3

    def test_success_resets_consecutive_count(self):
        monitor = TimeoutMonitor(threshold=2, ratio_threshold=0)
        monitor.record(Outcome.TIMEOUT)
        monitor.record(Outcome.SUCCESS)

        assert monitor.consecutive == 0
        assert not monitor.record(Outcome.TIMEOUT)

    def test_non_timeout_failure_resets_too(self):
        monitor = TimeoutMonitor(threshold=2, ratio_threshold=0)
        monitor.record(Outcome.TIMEOUT)
        monitor.record(Outcome.FAILURE)
        assert monitor.consecutive == 0

    def test_ratio_trigger_over_window(self):
        monitor = TimeoutMonitor(threshold=100, ratio_threshold=0.75, window=4)
        outcomes = [Outcome.TIMEOUT, Outcome.SUCCESS, Outcome.TIMEOUT, Outcome.TIMEOUT]

        results = [monitor.record(o) for o in outcomes]

        assert results == [False, False, False, True]
        assert monitor.timeout_ratio == 0.75

    def test_reset_clears_counters(self):
        monitor = TimeoutMonitor(threshold=1)
        monitor.record(Outcome.TIMEOUT)
        monitor.reset()

        assert monitor.consecutive == 0
        assert monitor.timeout_ratio == 0.0
        assert monitor.total_timeouts == 1

    def test_configure_from_config(self):
        monitor = TimeoutMonitor()
        monitor.configure(PerformanceConfig(auto_pause_threshold=2, timeout_ratio_threshold=0.5, timeout_window=4))

        assert (monitor.threshold, monitor.ratio_threshold, monitor.window) == (2, 0.5, 4)
        assert monitor.to_dict()["threshold"] == 2
