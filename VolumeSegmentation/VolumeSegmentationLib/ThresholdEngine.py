"""Threshold segmentation and intensity histograms.

The pipeline is:

1. keep voxels with ``lower <= v <= upper``;
2. with seed points, keep only components that contain a seed;
3. optionally fill enclosed background holes;
4. optionally smooth with a 3x3x3 binary median filter.

Component statistics in the result are taken after step 2, before the
post-processing steps change the mask.
"""

from __future__ import annotations

import logging
import time

import numpy as np
import SimpleITK as sitk

from .ConnectedComponentLabeler import ConnectedComponentLabeler, raster_order_labels
from .IntensityAnalyzer import IntensityAnalyzer
from .LabelMap import FOREGROUND, VolumeGeometry, to_binary_mask
from .MorphologyEngine import fill_holes
from .ProcessingGuard import ProcessingGuard
from .SegmentationConfig import ThresholdConfig
from .SegmentationDataStructures import (
    BoundingBox,
    Component,
    HistogramData,
    Point3D,
    ThresholdPreview,
    ThresholdSuggestion,
    as_point,
)
from .SegmentationErrors import ConfigurationError

logger = logging.getLogger(__name__)


def median_smooth(foreground: np.ndarray) -> np.ndarray:
    """3x3x3 binary median filter."""
    image = sitk.GetImageFromArray(to_binary_mask(foreground))
    smoothed = sitk.BinaryMedian(image, [1, 1, 1], FOREGROUND, 0)
    return sitk.GetArrayFromImage(smoothed) == FOREGROUND


class ThresholdEngine(ProcessingGuard):
    """Builds binary masks from intensity ranges.

    After ``apply_threshold`` runs, ``last_components`` holds the
    components of the thresholded (and seed-filtered) mask.
    """

    def __init__(self, analyzer: IntensityAnalyzer | None = None):
        self.analyzer = analyzer or IntensityAnalyzer()
        self.labeler = ConnectedComponentLabeler()
        self.last_components: list[Component] = []

    def apply_threshold(
        self, volume: np.ndarray, geometry: VolumeGeometry, config: ThresholdConfig
    ) -> np.ndarray:
        """Threshold a volume.

        Args:
            volume: Intensity array matching ``geometry``.
            geometry: Volume geometry.
            config: Threshold settings.

        Returns:
            Binary mask ({0, 255} uint8, shaped (nz, ny, nx)).

        Raises:
            ConfigurationError: If ``lower > upper``.
            OutOfBoundsError: If a seed point lies outside the grid.
            BusyError: If another threshold is running on this engine.
        """
        self._validate(config)
        seeds = [geometry.check_point(p, "Seed point") for p in config.seed_points]
        volume = geometry.check_buffer(volume, "volume")

        with self.processing("threshold"):
            start_time = time.perf_counter()
            foreground = (volume >= config.lower) & (volume <= config.upper)
            thresholded = int(np.count_nonzero(foreground))

            if seeds:
                foreground = self._keep_seeded(foreground, seeds, config)

            self.last_components = self.labeler.label(
                to_binary_mask(foreground), geometry, config.connectivity
            )

            if config.fill_holes:
                foreground = fill_holes(foreground, config.connectivity)
            if config.smoothing:
                foreground = median_smooth(foreground)

            elapsed = (time.perf_counter() - start_time) * 1000
            logger.debug(
                f"Threshold [{config.lower}, {config.upper}]: {thresholded} in range, "
                f"{int(np.count_nonzero(foreground))} in final mask, "
                f"{len(self.last_components)} components, {elapsed:.1f}ms"
            )
            return to_binary_mask(foreground)

    def preview(
        self, volume: np.ndarray, geometry: VolumeGeometry, config: ThresholdConfig
    ) -> ThresholdPreview:
        """Threshold only (no seed filtering or post-processing) for display."""
        self._validate(config)
        volume = geometry.check_buffer(volume, "volume")

        foreground = (volume >= config.lower) & (volume <= config.upper)
        _, component_count = raster_order_labels(foreground, config.connectivity)
        return ThresholdPreview(
            mask=to_binary_mask(foreground),
            component_count=component_count,
            affected_voxels=int(np.count_nonzero(foreground)),
        )

    def histogram(
        self,
        volume: np.ndarray,
        bin_count: int = 256,
        roi: BoundingBox | tuple | None = None,
    ) -> HistogramData:
        """Equal-width histogram over the volume or an inclusive ROI.

        Args:
            volume: Intensity array (z, y, x).
            bin_count: Number of bins.
            roi: Optional box with inclusive ``min``/``max`` corners (x, y, z),
                as a BoundingBox or a ``(min, max)`` pair. Clipped to the grid.

        Returns:
            HistogramData where ``bins`` holds the left edge of each bin.
        """
        if bin_count < 1:
            raise ConfigurationError(f"bin_count must be >= 1, got {bin_count}")

        values = self._roi_values(np.asarray(volume), roi)
        if values.size == 0:
            raise ConfigurationError(f"Histogram ROI {roi} contains no voxels")

        min_value = float(values.min())
        max_value = float(values.max())
        bin_size = (max_value - min_value) / bin_count

        if bin_size > 0:
            bin_index = np.floor((values - min_value) / bin_size).astype(np.int64)
            np.minimum(bin_index, bin_count - 1, out=bin_index)
        else:
            bin_index = np.zeros(values.size, dtype=np.int64)

        return HistogramData(
            bins=min_value + np.arange(bin_count) * bin_size,
            counts=np.bincount(bin_index, minlength=bin_count),
            min_value=min_value,
            max_value=max_value,
            total_voxels=int(values.size),
        )

    def suggest_range(
        self,
        volume: np.ndarray,
        geometry: VolumeGeometry,
        seed,
        radius_voxels: tuple[int, int, int] = (20, 20, 20),
        edge_sensitivity: float = 0.5,
        method: str = "gmm",
    ) -> ThresholdSuggestion:
        """Propose a ``(lower, upper)`` window around a seed voxel."""
        seed = geometry.check_point(seed, "Seed point")
        volume = geometry.check_buffer(volume, "volume")
        return self.analyzer.analyze(volume, seed, radius_voxels, edge_sensitivity, method)

    @staticmethod
    def _validate(config: ThresholdConfig) -> None:
        errors = config.validate()
        if errors:
            raise ConfigurationError("; ".join(errors))

    @staticmethod
    def _keep_seeded(foreground: np.ndarray, seeds: list[Point3D], config: ThresholdConfig) -> np.ndarray:
        component_ids, _ = raster_order_labels(foreground, config.connectivity)
        # A seed outside the range sits on id 0 and selects nothing
        seeded = {int(component_ids[p.index]) for p in seeds} - {0}
        if not seeded:
            logger.debug("No seed point lies inside the threshold range")
            return np.zeros_like(foreground)
        return np.isin(component_ids, sorted(seeded))

    @staticmethod
    def _roi_values(volume: np.ndarray, roi) -> np.ndarray:
        if roi is None:
            return volume.ravel()
        if isinstance(roi, BoundingBox):
            lo, hi = roi.min, roi.max
        else:
            lo, hi = as_point(roi[0]), as_point(roi[1])
        nz, ny, nx = volume.shape
        box = volume[
            max(lo.z, 0) : max(0, min(hi.z, nz - 1) + 1),
            max(lo.y, 0) : max(0, min(hi.y, ny - 1) + 1),
            max(lo.x, 0) : max(0, min(hi.x, nx - 1) + 1),
        ]
        return box.ravel()
