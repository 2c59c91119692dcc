"""Threshold window estimation around a seed voxel.

Used for interactive threshold selection: given a seed, propose a
``(lower, upper)`` intensity window that covers the tissue the seed sits
in. Three families of estimators are available:

- ``gmm``: fit a Gaussian Mixture Model to the ROI intensities and take
  the component the seed belongs to.
- ``statistics``: percentiles of the ROI voxels whose intensity is close
  to the seed.
- histogram thresholds (``otsu``, ``huang``, ``triangle``,
  ``max_entropy``, ``isodata``, ``li``): split the ROI with a SimpleITK
  threshold filter and keep the side containing the seed.
"""

from __future__ import annotations

import logging

import numpy as np
import SimpleITK as sitk
from sklearn.mixture import GaussianMixture

from .SegmentationDataStructures import Point3D, ThresholdSuggestion
from .SegmentationErrors import ConfigurationError

logger = logging.getLogger(__name__)

HISTOGRAM_METHODS = {
    "otsu": sitk.OtsuThresholdImageFilter,
    "huang": sitk.HuangThresholdImageFilter,
    "triangle": sitk.TriangleThresholdImageFilter,
    "max_entropy": sitk.MaximumEntropyThresholdImageFilter,
    "isodata": sitk.IsoDataThresholdImageFilter,
    "li": sitk.LiThresholdImageFilter,
}

METHODS = ("gmm", "statistics", *HISTOGRAM_METHODS)

# GMM needs enough samples to separate components
MIN_GMM_SAMPLES = 100
MAX_GMM_SAMPLES = 10000


class IntensityAnalyzer:
    """Estimate a threshold window from the intensities around a seed."""

    def __init__(self, n_components_range: tuple[int, int] = (2, 4), random_state: int = 42):
        """Initialize the analyzer.

        Args:
            n_components_range: Range of GMM components to try (min, max).
                The model with the lowest BIC wins.
            random_state: Seed for GMM initialisation and ROI subsampling.
        """
        self.n_components_range = n_components_range
        self.random_state = random_state

    def analyze(
        self,
        volume: np.ndarray,
        seed: Point3D,
        radius_voxels: tuple[int, int, int] = (20, 20, 20),
        edge_sensitivity: float = 0.5,
        method: str = "gmm",
    ) -> ThresholdSuggestion:
        """Propose a threshold window around ``seed``.

        Args:
            volume: Intensity array (z, y, x).
            seed: Seed voxel (x, y, z); must lie inside the volume.
            radius_voxels: Half-size (x, y, z) of the ROI box around the seed.
            edge_sensitivity: 0.0 gives wide windows, 1.0 narrow ones.
            method: One of ``METHODS``.

        Returns:
            ThresholdSuggestion with lower <= upper.
        """
        if method not in METHODS:
            raise ConfigurationError(
                f"Unknown threshold method '{method}' (expected one of: {', '.join(METHODS)})"
            )
        if not 0.0 <= edge_sensitivity <= 1.0:
            raise ConfigurationError(f"edge_sensitivity must be in [0, 1], got {edge_sensitivity}")

        roi = self._extract_roi(volume, seed, radius_voxels)
        seed_intensity = float(volume[seed.z, seed.y, seed.x])

        if float(np.std(roi)) < 1e-6:
            # Constant region
            return ThresholdSuggestion(
                lower=seed_intensity - 1,
                upper=seed_intensity + 1,
                mean=seed_intensity,
                std=0.0,
                method=method,
            )

        if method == "gmm":
            suggestion = self._gmm_analysis(roi, seed_intensity, edge_sensitivity)
        elif method == "statistics":
            suggestion = self._simple_statistics(roi, seed_intensity, edge_sensitivity)
        else:
            suggestion = self._histogram_threshold(roi, seed_intensity, method)

        logger.debug(
            f"Suggested window [{suggestion.lower:.1f}, {suggestion.upper:.1f}] "
            f"for seed {tuple(seed)} (method={suggestion.method})"
        )
        return suggestion

    def _extract_roi(
        self, volume: np.ndarray, seed: Point3D, radius_voxels: tuple[int, int, int]
    ) -> np.ndarray:
        """Return the ROI box around the seed, clipped to the volume, flattened."""
        nz, ny, nx = volume.shape
        rx, ry, rz = (int(r) for r in radius_voxels)

        roi = volume[
            max(0, seed.z - rz) : min(nz, seed.z + rz + 1),
            max(0, seed.y - ry) : min(ny, seed.y + ry + 1),
            max(0, seed.x - rx) : min(nx, seed.x + rx + 1),
        ]
        return roi.ravel().astype(np.float64)

    def _gmm_analysis(
        self, roi: np.ndarray, seed_intensity: float, edge_sensitivity: float
    ) -> ThresholdSuggestion:
        if len(roi) < MIN_GMM_SAMPLES:
            return self._simple_statistics(roi, seed_intensity, edge_sensitivity)

        rng = np.random.default_rng(self.random_state)
        if len(roi) > MAX_GMM_SAMPLES:
            sample = rng.choice(roi, MAX_GMM_SAMPLES, replace=False)
        else:
            sample = roi
        X = sample.reshape(-1, 1)

        best_gmm = None
        best_bic = np.inf
        low, high = self.n_components_range
        for n_components in range(low, high + 1):
            if n_components > len(np.unique(sample)):
                break
            gmm = GaussianMixture(
                n_components=n_components, random_state=self.random_state, max_iter=100
            )
            gmm.fit(X)
            bic = gmm.bic(X)
            if bic < best_bic:
                best_bic = bic
                best_gmm = gmm

        if best_gmm is None:
            return self._simple_statistics(roi, seed_intensity, edge_sensitivity)

        component = int(best_gmm.predict([[seed_intensity]])[0])
        mean = float(best_gmm.means_[component][0])
        std = float(np.sqrt(best_gmm.covariances_[component].ravel()[0]))

        # sensitivity 0.0 -> 3.5 sigma, 0.5 -> 2.25 sigma, 1.0 -> 1.0 sigma
        sigma = 3.5 - 2.5 * edge_sensitivity
        lower = max(float(roi.min()), mean - sigma * std)
        upper = min(float(roi.max()), mean + sigma * std)

        # Keep the seed inside its own window
        lower = min(lower, seed_intensity)
        upper = max(upper, seed_intensity)

        return ThresholdSuggestion(
            lower=lower,
            upper=upper,
            mean=mean,
            std=std,
            method="gmm",
            n_components=int(best_gmm.n_components),
        )

    def _simple_statistics(
        self, roi: np.ndarray, seed_intensity: float, edge_sensitivity: float
    ) -> ThresholdSuggestion:
        """Percentile window over ROI voxels close to the seed intensity."""
        global_std = float(np.std(roi))

        base_tolerance = 3.0 - 2.0 * edge_sensitivity
        min_tolerance = 10 + 20 * (1 - edge_sensitivity)
        tolerance = max(global_std * base_tolerance, min_tolerance)

        similar = roi[np.abs(roi - seed_intensity) < tolerance]
        if len(similar) < 10:
            similar = roi

        lower = min(float(np.percentile(similar, 2)), seed_intensity)
        upper = max(float(np.percentile(similar, 98)), seed_intensity)

        return ThresholdSuggestion(
            lower=lower,
            upper=upper,
            mean=float(np.mean(similar)),
            std=float(np.std(similar)),
            method="statistics",
        )

    def _histogram_threshold(
        self, roi: np.ndarray, seed_intensity: float, method: str
    ) -> ThresholdSuggestion:
        """Split the ROI with a histogram threshold and keep the seed's side."""
        image = sitk.GetImageFromArray(roi.astype(np.float32).reshape(1, 1, -1))
        threshold_filter = HISTOGRAM_METHODS[method]()
        threshold_filter.SetInsideValue(1)
        threshold_filter.SetOutsideValue(0)
        threshold_filter.Execute(image)
        threshold = float(threshold_filter.GetThreshold())

        if seed_intensity >= threshold:
            # Seed is in the brighter class
            lower, upper = threshold, float(roi.max())
        else:
            lower, upper = float(roi.min()), threshold

        side = roi[(roi >= lower) & (roi <= upper)]
        if len(side) == 0:
            side = roi

        return ThresholdSuggestion(
            lower=lower,
            upper=upper,
            mean=float(np.mean(side)),
            std=float(np.std(side)),
            method=method,
        )
