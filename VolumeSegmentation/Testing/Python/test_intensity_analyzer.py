"""Tests for IntensityAnalyzer - threshold window estimation around a seed.

These tests verify that the analyzer identifies the intensity population
the seed belongs to and proposes a window that contains the seed.
"""

import unittest

import numpy as np
from test_fixtures.synthetic_volume import create_bimodal_volume, create_uniform_volume

from VolumeSegmentationLib.IntensityAnalyzer import HISTOGRAM_METHODS, IntensityAnalyzer
from VolumeSegmentationLib.SegmentationDataStructures import Point3D
from VolumeSegmentationLib.SegmentationErrors import ConfigurationError


class TestIntensityAnalyzer(unittest.TestCase):
    """Tests for IntensityAnalyzer.analyze."""

    def setUp(self):
        """Set up test fixtures."""
        np.random.seed(42)
        self.analyzer = IntensityAnalyzer()

    def test_uniform_noisy_volume(self):
        """A noisy uniform volume gives a window around its mean."""
        volume = create_uniform_volume(size=(30, 30, 5), intensity=100.0, noise_std=5.0)
        seed = Point3D(15, 15, 2)

        result = self.analyzer.analyze(volume, seed, radius_voxels=(10, 10, 2), method="statistics")

        self.assertAlmostEqual(result.mean, 100, delta=20)
        self.assertLess(result.lower, 100)
        self.assertGreater(result.upper, 100)
        self.assertEqual(result.method, "statistics")

    def test_gmm_detects_two_components(self):
        volume, _ = create_bimodal_volume(size=(40, 40, 5))
        seed = Point3D(10, 20, 2)

        result = self.analyzer.analyze(volume, seed, radius_voxels=(20, 20, 2), method="gmm")

        self.assertGreaterEqual(result.n_components, 2)
        self.assertEqual(result.method, "gmm")

    def test_gmm_seed_in_low_region(self):
        volume, _ = create_bimodal_volume(size=(40, 40, 5))
        seed = Point3D(10, 20, 2)

        result = self.analyzer.analyze(volume, seed, radius_voxels=(20, 20, 2), method="gmm")

        self.assertAlmostEqual(result.mean, 100, delta=15)
        self.assertLess(result.upper, 175)
        self.assertLessEqual(result.lower, volume[seed.index])
        self.assertGreaterEqual(result.upper, volume[seed.index])

    def test_seed_in_high_region_gets_high_thresholds(self):
        volume, _ = create_bimodal_volume(size=(40, 40, 5))
        seed = Point3D(30, 20, 2)

        result = self.analyzer.analyze(volume, seed, radius_voxels=(8, 20, 2), method="statistics")

        self.assertGreater(result.lower, 125)
        self.assertLess(result.upper, 250)

    def test_small_roi_falls_back_to_statistics(self):
        """Fewer than 100 ROI voxels is not enough for a mixture model."""
        volume, _ = create_bimodal_volume(size=(40, 40, 5))
        seed = Point3D(10, 20, 2)

        result = self.analyzer.analyze(volume, seed, radius_voxels=(1, 1, 1), method="gmm")

        self.assertEqual(result.method, "statistics")

    def test_constant_region(self):
        """A region with zero variance gives seed +/- 1."""
        volume = create_uniform_volume(size=(20, 20, 5), intensity=100.0)

        result = self.analyzer.analyze(volume, Point3D(10, 10, 2))

        self.assertEqual(result.std, 0.0)
        self.assertEqual(result.lower, 99.0)
        self.assertEqual(result.upper, 101.0)

    def test_handles_edge_of_volume(self):
        volume = create_uniform_volume(size=(30, 30, 5), intensity=100.0, noise_std=5.0)

        result = self.analyzer.analyze(volume, Point3D(0, 0, 0), radius_voxels=(10, 10, 2))

        self.assertLessEqual(result.lower, result.upper)

    def test_edge_sensitivity_affects_thresholds(self):
        """Strict sensitivity gives a narrower window than permissive."""
        volume = create_uniform_volume(size=(30, 30, 5), intensity=100.0, noise_std=10.0)
        seed = Point3D(15, 15, 2)

        permissive = self.analyzer.analyze(
            volume, seed, radius_voxels=(10, 10, 2), edge_sensitivity=0.0, method="gmm"
        )
        strict = self.analyzer.analyze(
            volume, seed, radius_voxels=(10, 10, 2), edge_sensitivity=1.0, method="gmm"
        )

        self.assertGreater(permissive.upper - permissive.lower, strict.upper - strict.lower)

    def test_histogram_methods_keep_seed_side(self):
        volume, _ = create_bimodal_volume(size=(40, 40, 5))
        low_seed = Point3D(10, 20, 2)
        high_seed = Point3D(30, 20, 2)

        for method in HISTOGRAM_METHODS:
            with self.subTest(method=method):
                low = self.analyzer.analyze(volume, low_seed, radius_voxels=(20, 20, 2), method=method)
                high = self.analyzer.analyze(volume, high_seed, radius_voxels=(20, 20, 2), method=method)

                self.assertLessEqual(low.lower, volume[low_seed.index])
                self.assertGreaterEqual(low.upper, volume[low_seed.index])
                self.assertLessEqual(high.lower, volume[high_seed.index])
                self.assertGreaterEqual(high.upper, volume[high_seed.index])
                self.assertEqual(low.method, method)

    def test_otsu_splits_between_populations(self):
        volume, _ = create_bimodal_volume(size=(40, 40, 5))

        result = self.analyzer.analyze(
            volume, Point3D(30, 20, 2), radius_voxels=(20, 20, 2), method="otsu"
        )

        self.assertGreater(result.lower, 120)
        self.assertLess(result.lower, 180)

    def test_unknown_method_raises(self):
        volume = create_uniform_volume()
        with self.assertRaises(ConfigurationError):
            self.analyzer.analyze(volume, Point3D(1, 1, 1), method="kmeans")

    def test_sensitivity_out_of_range_raises(self):
        volume = create_uniform_volume()
        with self.assertRaises(ConfigurationError):
            self.analyzer.analyze(volume, Point3D(1, 1, 1), edge_sensitivity=1.5)


if __name__ == "__main__":
    unittest.main()
