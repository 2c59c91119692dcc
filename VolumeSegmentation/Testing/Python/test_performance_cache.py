"""Tests for PerformanceCache."""

import unittest

import numpy as np

from VolumeSegmentationLib.PerformanceCache import CacheStats, PerformanceCache
from VolumeSegmentationLib.SegmentationDataStructures import ThresholdSuggestion


class _Counter:
    """Callable that records how often it ran."""

    def __init__(self, result):
        self.result = result
        self.calls = 0

    def __call__(self, *args):
        self.calls += 1
        return self.result


def _suggestion(std=5.0):
    return ThresholdSuggestion(lower=90.0, upper=110.0, mean=100.0, std=std, method="statistics")


class TestGradientCache(unittest.TestCase):
    """Tests for the gradient tier."""

    def setUp(self):
        self.cache = PerformanceCache()
        self.volume = np.zeros((4, 4, 4), dtype=np.float32)
        self.compute = _Counter(np.ones((4, 4, 4), dtype=np.float32))

    def test_second_request_hits(self):
        first = self.cache.get_or_compute_gradient("ct", self.volume, self.compute)
        second = self.cache.get_or_compute_gradient("ct", self.volume, self.compute)

        self.assertIs(first, second)
        self.assertEqual(self.compute.calls, 1)
        self.assertEqual(self.cache.stats.gradient_hits, 1)
        self.assertEqual(self.cache.stats.gradient_misses, 1)

    def test_read_only_view_of_same_buffer_hits(self):
        self.cache.get_or_compute_gradient("ct", self.volume, self.compute)
        view = self.volume.view()
        view.flags.writeable = False

        self.cache.get_or_compute_gradient("ct", view, self.compute)

        self.assertEqual(self.compute.calls, 1)

    def test_copy_of_volume_misses(self):
        self.cache.get_or_compute_gradient("ct", self.volume, self.compute)
        self.cache.get_or_compute_gradient("ct", self.volume.copy(), self.compute)

        self.assertEqual(self.compute.calls, 2)

    def test_oldest_volume_evicted(self):
        cache = PerformanceCache(max_gradients=1)
        other = np.zeros((4, 4, 4), dtype=np.float32)

        cache.get_or_compute_gradient("a", self.volume, self.compute)
        cache.get_or_compute_gradient("b", other, self.compute)
        cache.get_or_compute_gradient("a", self.volume, self.compute)

        self.assertEqual(self.compute.calls, 3)

    def test_invalidate_one_volume(self):
        self.cache.get_or_compute_gradient("ct", self.volume, self.compute)
        self.cache.invalidate("ct")
        self.cache.get_or_compute_gradient("ct", self.volume, self.compute)

        self.assertEqual(self.compute.calls, 2)


class TestSuggestionCache(unittest.TestCase):
    """Tests for the threshold suggestion tier."""

    def test_disabled_by_default(self):
        cache = PerformanceCache()
        compute = _Counter(_suggestion())

        cache.get_or_compute_suggestion(("ct",), 100.0, compute)
        cache.get_or_compute_suggestion(("ct",), 100.0, compute)

        self.assertEqual(compute.calls, 2)
        self.assertEqual(cache.stats.threshold_hits, 0)

    def test_reused_within_tolerance(self):
        cache = PerformanceCache(threshold_caching_enabled=True)
        compute = _Counter(_suggestion(std=5.0))

        cache.get_or_compute_suggestion(("ct",), 100.0, compute)
        # Tolerance is max(1.5 * std, 10)
        cache.get_or_compute_suggestion(("ct",), 109.0, compute)

        self.assertEqual(compute.calls, 1)
        self.assertEqual(cache.stats.threshold_hits, 1)

    def test_recomputed_outside_tolerance(self):
        cache = PerformanceCache(threshold_caching_enabled=True)
        compute = _Counter(_suggestion(std=5.0))

        cache.get_or_compute_suggestion(("ct",), 100.0, compute)
        cache.get_or_compute_suggestion(("ct",), 111.0, compute)

        self.assertEqual(compute.calls, 2)

    def test_different_key_recomputes(self):
        cache = PerformanceCache(threshold_caching_enabled=True)
        compute = _Counter(_suggestion())

        cache.get_or_compute_suggestion(("ct", "gmm"), 100.0, compute)
        cache.get_or_compute_suggestion(("ct", "otsu"), 100.0, compute)

        self.assertEqual(compute.calls, 2)

    def test_invalidate_drops_suggestion(self):
        cache = PerformanceCache(threshold_caching_enabled=True)
        compute = _Counter(_suggestion())

        cache.get_or_compute_suggestion(("ct",), 100.0, compute)
        cache.invalidate()
        cache.get_or_compute_suggestion(("ct",), 100.0, compute)

        self.assertEqual(compute.calls, 2)


class TestCacheStats(unittest.TestCase):
    """Tests for CacheStats."""

    def test_clear_resets_stats(self):
        cache = PerformanceCache()
        volume = np.zeros((2, 2, 2), dtype=np.float32)
        cache.get_or_compute_gradient("ct", volume, _Counter(volume))

        cache.clear()

        self.assertEqual(cache.stats.gradient_misses, 0)
        self.assertEqual(cache.stats.total_compute_time_ms, 0.0)

    def test_log_summary(self):
        stats = CacheStats()
        stats.gradient_hits = 3
        stats.gradient_misses = 1

        with self.assertLogs("VolumeSegmentationLib.PerformanceCache", level="DEBUG") as logs:
            stats.log_summary()

        self.assertIn("75.0%", logs.output[0])


if __name__ == "__main__":
    unittest.main()
