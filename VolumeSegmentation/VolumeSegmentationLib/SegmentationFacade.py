"""Entry point for editing one segmentation.

A SegmentationFacade ties together the intensity volume (through a
VolumeAccessor), the label map, the segment registry and the engines. It
owns the one-operation-at-a-time rule: every operation that writes the
label map runs under the facade's processing guard, so a second write
while one is in flight raises BusyError.

How results are written back to the label map:

- threshold and region growing add their mask to the target segment;
- morphology and boolean edits replace the target segment with the
  edited mask;
- voxels of locked segments are never overwritten, and a locked segment
  cannot be the target of an edit.

Usage:
    accessor = InMemoryVolumeAccessor()
    accessor.add_volume("ct", array, spacing=(0.8, 0.8, 2.0))
    facade = SegmentationFacade("seg-1", "ct", accessor)
    liver = facade.add_segment(label="Liver")
    facade.apply_threshold(liver.segment_index, {"lower": 40, "upper": 160})
    facade.remove_islands(liver.segment_index, min_voxel_count=50)
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import replace
from typing import Iterator

import numpy as np

from .BrushEngine import BrushEngine
from .ConnectedComponentLabeler import ConnectedComponentLabeler
from .LabelMap import LabelMap, VolumeGeometry
from .MorphologyEngine import MorphologyEngine
from .PerformanceCache import PerformanceCache
from .ProcessingGuard import ProcessingGuard
from .RegionGrowingEngine import ProgressCallback, RegionGrowingEngine, gradient_magnitude
from .SegmentationConfig import (
    Connectivity,
    EditingConfig,
    EditingOperation,
    EngineDefaults,
    RegionGrowingConfig,
    ThresholdConfig,
    parse_enum,
)
from .SegmentationDataStructures import (
    BrushOperationResult,
    BrushStroke,
    Component,
    EditingResult,
    GrowthOutcome,
    HistogramData,
    RegionGrowingResult,
    Segment,
    ThresholdPreview,
    ThresholdResult,
    ThresholdSuggestion,
)
from .SegmentationErrors import ConfigurationError, GeometryError
from .SegmentRegistry import SegmentRegistry
from .ThresholdEngine import ThresholdEngine
from .VolumeAccessor import VolumeAccessor

logger = logging.getLogger(__name__)


def _merge(defaults, overrides, record_type):
    """Build a config record from defaults and a record, dict or None."""
    if overrides is None:
        return defaults
    if isinstance(overrides, record_type):
        return overrides
    if isinstance(overrides, dict):
        data = defaults.to_dict()
        for key, value in overrides.items():
            if isinstance(value, dict) and isinstance(data.get(key), dict):
                data[key] = {**data[key], **value}
            else:
                data[key] = value
        return record_type.from_dict(data)
    raise ConfigurationError(
        f"Expected {record_type.__name__} or dict, got {type(overrides).__name__}"
    )


class SegmentationFacade(ProcessingGuard):
    """Operations on one segmentation's label map."""

    def __init__(
        self,
        segmentation_id: str,
        volume_id: str,
        accessor: VolumeAccessor,
        defaults: EngineDefaults | None = None,
        label_map: LabelMap | None = None,
        cache: PerformanceCache | None = None,
    ):
        """Open a segmentation over a volume.

        Args:
            segmentation_id: Identifier used in logs and errors.
            volume_id: Volume the segmentation is drawn on.
            accessor: Supplies the volume's intensities and geometry.
            defaults: Default configuration records.
            label_map: Existing labels; an empty map is created when omitted.
            cache: Shared cache for gradients and threshold suggestions.

        Raises:
            VolumeNotFoundError: If the accessor does not know ``volume_id``.
            GeometryError: If ``label_map`` does not match the volume.
        """
        self.segmentation_id = segmentation_id
        self.volume_id = volume_id
        self.accessor = accessor
        self.defaults = defaults or EngineDefaults()
        self.cache = cache or PerformanceCache()

        geometry = accessor.get_geometry(volume_id)
        if label_map is None:
            label_map = LabelMap(geometry)
        elif label_map.shape != geometry.shape:
            raise GeometryError(
                f"Label map shape {label_map.shape} does not match volume "
                f"'{volume_id}' shape {geometry.shape}"
            )
        self.label_map = label_map
        self.registry = SegmentRegistry()

        self.labeler = ConnectedComponentLabeler()
        self.threshold_engine = ThresholdEngine()
        self.region_growing_engine = RegionGrowingEngine()
        self.morphology_engine = MorphologyEngine()
        self.brush_engine = BrushEngine(label_map, self.defaults.brush, self.registry.locked_indices)

        logger.info(
            f"Opened segmentation '{segmentation_id}' on volume '{volume_id}' "
            f"with dimensions {geometry.dimensions}"
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def geometry(self) -> VolumeGeometry:
        return self.label_map.geometry

    def _volume(self) -> tuple[np.ndarray, VolumeGeometry]:
        volume, geometry = self.accessor.get_volume(self.volume_id)
        if geometry.shape != self.label_map.shape:
            raise GeometryError(
                f"Volume '{self.volume_id}' now has shape {geometry.shape}, label map of "
                f"'{self.segmentation_id}' has {self.label_map.shape}"
            )
        return volume, geometry

    def _gradient(self, volume: np.ndarray) -> np.ndarray:
        return self.cache.get_or_compute_gradient(self.volume_id, volume, gradient_magnitude)

    def _editable(self, segment_index: int) -> Segment:
        segment = self.registry.get(segment_index)
        if segment.locked:
            raise ConfigurationError(
                f"Segment {segment_index} of '{self.segmentation_id}' is locked"
            )
        return segment

    def _protected(self, *targets: int) -> list[int]:
        return [i for i in self.registry.locked_indices() if i not in targets]

    @contextmanager
    def _operation(self, name: str, segment_index: int | None = None) -> Iterator[None]:
        """Run a write under the busy guard and log failures with context."""
        with self.processing(name):
            try:
                yield
            except Exception:
                logger.exception(
                    f"{name} failed (segmentation='{self.segmentation_id}', "
                    f"segment={segment_index})"
                )
                raise

    # ------------------------------------------------------------------
    # Threshold
    # ------------------------------------------------------------------

    def apply_threshold(
        self, segment_index: int, config: ThresholdConfig | dict | None = None
    ) -> ThresholdResult:
        """Threshold the volume and add the mask to a segment.

        Args:
            segment_index: Target segment.
            config: Threshold settings, or a dict of overrides on the
                defaults.

        Returns:
            ThresholdResult; components describe the seed-filtered mask
            before hole filling and smoothing.
        """
        config = _merge(self.defaults.threshold, config, ThresholdConfig)
        self._editable(segment_index)

        with self._operation("threshold", segment_index):
            start_time = time.perf_counter()
            logger.info(
                f"Starting threshold [{config.lower}, {config.upper}] on "
                f"'{self.segmentation_id}' segment {segment_index}"
            )
            volume, geometry = self._volume()
            mask = self.threshold_engine.apply_threshold(volume, geometry, config)
            components = list(self.threshold_engine.last_components)
            self.label_map.apply_mask(
                mask, segment_index, replace=False, protected_labels=self._protected(segment_index)
            )

            result = ThresholdResult(
                segment_index=segment_index,
                thresholded_voxels=int(np.count_nonzero(mask)),
                components=components,
                total_volume=sum(c.volume for c in components),
                processing_time_ms=(time.perf_counter() - start_time) * 1000,
            )

        logger.info(
            f"Threshold completed on '{self.segmentation_id}' segment {segment_index}: "
            f"{result.thresholded_voxels} voxels, {len(components)} components, "
            f"{result.processing_time_ms:.1f}ms"
        )
        return result

    def preview_threshold(self, config: ThresholdConfig | dict | None = None) -> ThresholdPreview:
        config = _merge(self.defaults.threshold, config, ThresholdConfig)
        volume, geometry = self._volume()
        return self.threshold_engine.preview(volume, geometry, config)

    def histogram(self, bin_count: int = 256, roi=None) -> HistogramData:
        volume, _ = self._volume()
        return self.threshold_engine.histogram(volume, bin_count, roi)

    def suggest_threshold(
        self,
        seed,
        radius_voxels: tuple[int, int, int] = (20, 20, 20),
        edge_sensitivity: float = 0.5,
        method: str = "gmm",
    ) -> ThresholdSuggestion:
        """Propose a threshold window around a seed voxel."""
        volume, geometry = self._volume()
        seed = geometry.check_point(seed, "Seed point")
        key = (self.volume_id, method, tuple(radius_voxels), edge_sensitivity)
        return self.cache.get_or_compute_suggestion(
            key,
            float(volume[seed.index]),
            lambda: self.threshold_engine.suggest_range(
                volume, geometry, seed, radius_voxels, edge_sensitivity, method
            ),
        )

    # ------------------------------------------------------------------
    # Region growing
    # ------------------------------------------------------------------

    def grow_region(
        self,
        segment_index: int,
        config: RegionGrowingConfig | dict | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> RegionGrowingResult:
        """Grow a region from seed points and add it to a segment.

        Regions smaller than ``constraints.min_region_size`` are reported
        with ``applied=False`` and leave the label map untouched.
        """
        config = _merge(self.defaults.region_growing, config, RegionGrowingConfig)
        self._editable(segment_index)

        with self._operation("region growing", segment_index):
            start_time = time.perf_counter()
            logger.info(
                f"Starting region growing on '{self.segmentation_id}' segment {segment_index} "
                f"from {len(config.seed_points)} seeds (mode={config.similarity.mode.value})"
            )
            volume, geometry = self._volume()
            outcome = self.region_growing_engine.grow(
                volume, geometry, config, progress_callback, gradient=self._gradient(volume)
            )

            grown = outcome.grown_voxels
            min_size = config.constraints.min_region_size or 0
            applied = grown >= min_size
            if applied:
                self.label_map.apply_mask(
                    outcome.grown_mask,
                    segment_index,
                    replace=False,
                    protected_labels=self._protected(segment_index),
                )
            else:
                logger.warning(
                    f"Grown region of {grown} voxels is below the minimum of {min_size}; "
                    f"segment {segment_index} of '{self.segmentation_id}' left unchanged"
                )

            result = RegionGrowingResult(
                segment_index=segment_index,
                grown_voxels=grown,
                iterations=outcome.iterations,
                final_similarity=outcome.final_similarity,
                region_bounds=outcome.bounds,
                volume=grown * geometry.voxel_volume,
                centroid=outcome.centroid,
                processing_time_ms=(time.perf_counter() - start_time) * 1000,
                converged=outcome.converged,
                applied=applied,
            )

        logger.info(
            f"Region growing completed on '{self.segmentation_id}' segment {segment_index}: "
            f"{grown} voxels, {outcome.iterations} iterations, converged={outcome.converged}, "
            f"{result.processing_time_ms:.1f}ms"
        )
        return result

    def preview_region_growing(
        self, config: RegionGrowingConfig | dict | None = None
    ) -> GrowthOutcome:
        config = _merge(self.defaults.region_growing, config, RegionGrowingConfig)
        volume, geometry = self._volume()
        return self.region_growing_engine.preview(
            volume, geometry, config, gradient=self._gradient(volume)
        )

    def request_stop(self):
        """Ask a running region growing to return its partial result."""
        self.region_growing_engine.request_stop()

    # ------------------------------------------------------------------
    # Morphology
    # ------------------------------------------------------------------

    def _edit(
        self,
        operation: EditingOperation,
        segment_index: int,
        config: EditingConfig | dict | None,
    ) -> EditingResult:
        config = _merge(self.defaults.editing, config, EditingConfig)
        self._editable(segment_index)

        with self._operation(operation.value, segment_index):
            start_time = time.perf_counter()
            mask = self.label_map.segment_mask(segment_index)
            edited, result = self.morphology_engine.edit(
                operation, mask, config, segment_index=segment_index
            )
            changed = self.label_map.apply_mask(
                edited, segment_index, replace=True, protected_labels=self._protected(segment_index)
            )
            result = replace(
                result,
                affected_voxels=changed,
                after_stats=ConnectedComponentLabeler.mask_statistics(
                    self.label_map.segment_mask(segment_index), config.connectivity
                ),
                processing_time_ms=(time.perf_counter() - start_time) * 1000,
            )

        self._log_edit(result)
        return result

    def _log_edit(self, result: EditingResult):
        logger.info(
            f"{result.operation.value} completed on '{self.segmentation_id}' segment "
            f"{result.segment_index}: {result.affected_voxels} voxels changed, "
            f"{result.before_stats.voxel_count} -> {result.after_stats.voxel_count} voxels, "
            f"{result.processing_time_ms:.1f}ms"
        )

    def dilate(self, segment_index: int, config: EditingConfig | dict | None = None) -> EditingResult:
        return self._edit(EditingOperation.DILATE, segment_index, config)

    def erode(self, segment_index: int, config: EditingConfig | dict | None = None) -> EditingResult:
        return self._edit(EditingOperation.ERODE, segment_index, config)

    def open(self, segment_index: int, config: EditingConfig | dict | None = None) -> EditingResult:
        return self._edit(EditingOperation.OPEN, segment_index, config)

    def close(self, segment_index: int, config: EditingConfig | dict | None = None) -> EditingResult:
        return self._edit(EditingOperation.CLOSE, segment_index, config)

    def smooth(self, segment_index: int, config: EditingConfig | dict | None = None) -> EditingResult:
        return self._edit(EditingOperation.SMOOTH, segment_index, config)

    def fill_holes(self, segment_index: int, connectivity=None) -> EditingResult:
        overrides = {}
        if connectivity is not None:
            overrides["connectivity"] = int(parse_enum(Connectivity, connectivity, "connectivity"))
        return self._edit(EditingOperation.FILL_HOLES, segment_index, overrides)

    def remove_islands(
        self, segment_index: int, min_voxel_count: int | None = None, connectivity=None
    ) -> EditingResult:
        overrides = {}
        if min_voxel_count is not None:
            overrides["min_island_size"] = min_voxel_count
        if connectivity is not None:
            overrides["connectivity"] = int(parse_enum(Connectivity, connectivity, "connectivity"))
        return self._edit(EditingOperation.REMOVE_ISLANDS, segment_index, overrides)

    # ------------------------------------------------------------------
    # Boolean combination
    # ------------------------------------------------------------------

    def _combine(
        self,
        operation: EditingOperation,
        first_index: int,
        second_index: int,
        result_index: int | None,
    ) -> EditingResult:
        """Combine two segments into ``result_index`` (default: the first).

        Source segments other than the result segment are cleared.
        """
        result_index = first_index if result_index is None else result_index
        for index in dict.fromkeys((first_index, second_index, result_index)):
            self._editable(index)
        config = self.defaults.editing

        with self._operation(operation.value, result_index):
            start_time = time.perf_counter()
            first = self.label_map.segment_mask(first_index)
            second = self.label_map.segment_mask(second_index)
            before_stats = ConnectedComponentLabeler.mask_statistics(
                self.label_map.segment_mask(result_index), config.connectivity
            )
            before = self.label_map.snapshot()

            combined, _ = self.morphology_engine.edit(
                operation, first, config, other=second, segment_index=result_index
            )

            for source in (first_index, second_index):
                if source != result_index:
                    self.label_map.clear_segment(source)
            self.label_map.apply_mask(
                combined, result_index, replace=True, protected_labels=self._protected(result_index)
            )

            result = EditingResult(
                operation=operation,
                segment_index=result_index,
                affected_voxels=int(np.count_nonzero(before != self.label_map.array)),
                processing_time_ms=(time.perf_counter() - start_time) * 1000,
                before_stats=before_stats,
                after_stats=ConnectedComponentLabeler.mask_statistics(
                    self.label_map.segment_mask(result_index), config.connectivity
                ),
            )

        self._log_edit(result)
        return result

    def union_segments(self, first_index: int, second_index: int, result_index: int | None = None) -> EditingResult:
        return self._combine(EditingOperation.UNION, first_index, second_index, result_index)

    def intersect_segments(self, first_index: int, second_index: int, result_index: int | None = None) -> EditingResult:
        return self._combine(EditingOperation.INTERSECTION, first_index, second_index, result_index)

    def subtract_segments(self, first_index: int, second_index: int, result_index: int | None = None) -> EditingResult:
        """Keep the voxels of the first segment that are not in the second."""
        return self._combine(EditingOperation.DIFFERENCE, first_index, second_index, result_index)

    # ------------------------------------------------------------------
    # Components and statistics
    # ------------------------------------------------------------------

    def find_connected_components(self, segment_index: int, connectivity=Connectivity.CORNER) -> list[Component]:
        self.registry.get(segment_index)
        return self.labeler.label(self.label_map.segment_mask(segment_index), self.geometry, connectivity)

    def segment_statistics(self, segment_index: int, connectivity=Connectivity.CORNER) -> dict:
        """Voxel count, component count and physical volume of a segment."""
        self.registry.get(segment_index)
        stats = ConnectedComponentLabeler.mask_statistics(
            self.label_map.segment_mask(segment_index), connectivity
        )
        return {
            "segment_index": segment_index,
            "voxel_count": stats.voxel_count,
            "component_count": stats.component_count,
            "volume": stats.voxel_count * self.geometry.voxel_volume,
        }

    def validate(self) -> list[str]:
        """Check segment properties and that every label is registered.

        Returns:
            List of validation error messages (empty if valid).
        """
        errors = []
        for segment in self.registry:
            errors.extend(segment.validate())
        errors.extend(self.label_map.validate_labels(self.registry.indices()))
        return errors

    # ------------------------------------------------------------------
    # Brush
    # ------------------------------------------------------------------

    def start_stroke(self, point, segment_index: int, pressure: float = 1.0) -> BrushStroke:
        self._editable(segment_index)
        with self._operation("start stroke", segment_index):
            return self.brush_engine.start_stroke(point, segment_index, pressure)

    def add_stroke_point(self, point, pressure: float = 1.0) -> bool:
        return self.brush_engine.add_stroke_point(point, pressure)

    def end_stroke(self) -> BrushOperationResult | None:
        stroke = self.brush_engine.current_stroke
        segment_index = stroke.segment_index if stroke else None
        with self._operation("brush stroke", segment_index):
            return self.brush_engine.end_stroke()

    def cancel_stroke(self) -> BrushStroke | None:
        return self.brush_engine.cancel_stroke()

    def undo_stroke(self) -> BrushStroke | None:
        """Revert the most recent applied stroke in the label map."""
        with self._operation("undo stroke"):
            stroke = self.brush_engine.undo()
            if stroke is not None and stroke.result is not None:
                self.label_map.restore(stroke.result.modified_indices, stroke.result.previous_labels)
                logger.info(
                    f"Reverted brush stroke on '{self.segmentation_id}': "
                    f"{stroke.result.affected_voxels} voxels restored"
                )
        return stroke

    # ------------------------------------------------------------------
    # Segment registry
    # ------------------------------------------------------------------

    def add_segment(self, **properties) -> Segment:
        segment = self.registry.add(**properties)
        logger.info(f"Added segment {segment.segment_index} to '{self.segmentation_id}'")
        return segment

    def update_segment(self, segment_index: int, /, **changes) -> Segment:
        segment = self.registry.update(segment_index, **changes)
        logger.info(f"Updated segment {segment_index} in '{self.segmentation_id}'")
        return segment

    def remove_segment(self, segment_index: int) -> Segment:
        """Unregister a segment and clear its voxels."""
        with self._operation("remove segment", segment_index):
            segment = self.registry.remove(segment_index)
            cleared = self.label_map.clear_segment(segment_index)
        logger.info(
            f"Removed segment {segment_index} from '{self.segmentation_id}' "
            f"({cleared} voxels cleared)"
        )
        return segment

    def get_segment(self, segment_index: int) -> Segment:
        return self.registry.get(segment_index)

    def segments(self) -> list[Segment]:
        return list(self.registry)
