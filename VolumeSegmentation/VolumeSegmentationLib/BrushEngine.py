"""Stroke-based painting, erasing and filling of a label map.

A stroke is a sequence of sampled points. When the stroke ends, every
sample's brush footprint is rasterized into the label map in one pass and
the stroke, together with the labels it overwrote, is pushed on a bounded
undo stack.

Brush footprints are in-slice (the point's z) unless ``sphere_mode`` is
set, in which case circles become spheres and squares become cubes.
"""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from collections.abc import Iterable
from dataclasses import replace
from typing import Callable

import numpy as np
from scipy import ndimage

from .ConnectivityKernel import connectivity_structure
from .LabelMap import LabelMap
from .ProcessingGuard import ProcessingGuard
from .SegmentationConfig import BrushMode, BrushShape, BrushToolConfig, Connectivity
from .SegmentationDataStructures import (
    BoundingBox,
    BrushOperationResult,
    BrushPreview,
    BrushStroke,
    Point3D,
)
from .SegmentationErrors import ConfigurationError

logger = logging.getLogger(__name__)

UNDO_STACK_SIZE = 50


def brush_falloff(distance: float, radius: float, hardness: float) -> float:
    """Brush weight at ``distance`` from the centre.

    Full weight up to ``radius * hardness``, then linear down to 0 at
    ``radius``. Hardness 1.0 gives a hard edge with no falloff.
    """
    if distance >= radius:
        return 0.0
    if hardness >= 1.0:
        return 1.0

    falloff_start = radius * hardness
    if distance <= falloff_start:
        return 1.0
    return 1.0 - (distance - falloff_start) / (radius - falloff_start)


class BrushEngine(ProcessingGuard):
    """Paints strokes into a label map.

    Usage:
        brush = BrushEngine(label_map, BrushToolConfig(radius=3))
        brush.start_stroke((10, 10, 5), segment_index=1)
        brush.add_stroke_point((14, 10, 5))
        result = brush.end_stroke()
    """

    def __init__(
        self,
        label_map: LabelMap,
        config: BrushToolConfig | None = None,
        locked_labels: Callable[[], Iterable[int]] | None = None,
    ):
        """Initialize the brush.

        Args:
            label_map: Label map strokes are applied to.
            config: Brush settings; defaults when omitted.
            locked_labels: Returns the labels that must not be overwritten.
        """
        self.label_map = label_map
        self._config = BrushToolConfig()
        self.update_config(config or BrushToolConfig())
        self._locked_labels = locked_labels or (lambda: ())
        self._current: BrushStroke | None = None
        self._undo_stack: deque[BrushStroke] = deque(maxlen=UNDO_STACK_SIZE)

    @property
    def config(self) -> BrushToolConfig:
        return self._config

    def update_config(self, config: BrushToolConfig | None = None, **changes) -> BrushToolConfig:
        """Replace the config, or change individual fields of it."""
        new_config = replace(config or self._config, **changes)
        errors = new_config.validate()
        if errors:
            raise ConfigurationError("; ".join(errors))
        self._config = new_config
        return new_config

    @property
    def is_active(self) -> bool:
        return self._current is not None

    @property
    def current_stroke(self) -> BrushStroke | None:
        return self._current

    @property
    def undo_depth(self) -> int:
        return len(self._undo_stack)

    def effective_radius(self, pressure: float = 1.0) -> float:
        if self._config.pressure_sensitive:
            return self._config.radius * pressure
        return self._config.radius

    def start_stroke(self, point, segment_index: int, pressure: float = 1.0) -> BrushStroke:
        """Begin a stroke. An active stroke is ended (and applied) first."""
        p = self.label_map.geometry.check_point(point, "Stroke point")
        if segment_index < 0:
            raise ConfigurationError(f"Segment index must be >= 0, got {segment_index}")

        if self._current is not None:
            self.end_stroke()

        self._current = BrushStroke(
            points=[p],
            radius=self.effective_radius(pressure),
            segment_index=segment_index,
            mode=self._config.mode,
            pressures=[pressure],
        )
        logger.debug(
            f"Brush stroke started at {tuple(p)} (segment {segment_index}, "
            f"mode={self._config.mode.value}, radius={self._current.radius})"
        )
        return self._current

    def add_stroke_point(self, point, pressure: float = 1.0) -> bool:
        """Append a sample to the active stroke.

        Returns:
            True if the point was added, False if it was skipped (no active
            stroke, or closer than ``spacing`` to the last sample).
        """
        if self._current is None:
            logger.warning("Attempted to add a stroke point without an active stroke")
            return False

        p = self.label_map.geometry.check_point(point, "Stroke point")
        if p.distance_to(self._current.points[-1]) < self._config.spacing:
            return False

        self._current.points.append(p)
        self._current.pressures.append(pressure)
        if self._config.pressure_sensitive:
            self._current.radius = self.effective_radius(pressure)
        return True

    def end_stroke(self) -> BrushOperationResult | None:
        """Apply the active stroke to the label map and push it for undo.

        Returns:
            The operation result, or None if no stroke was active.
        """
        if self._current is None:
            return None

        stroke = self._current
        self._current = None

        with self.processing("brush stroke"):
            stroke.result = self._apply(stroke)
        self._undo_stack.append(stroke)

        logger.info(
            f"Brush stroke completed: {len(stroke.points)} points, "
            f"{stroke.result.affected_voxels} voxels changed (mode={stroke.mode.value})"
        )
        return stroke.result

    def cancel_stroke(self) -> BrushStroke | None:
        """Discard the active stroke without applying it."""
        stroke, self._current = self._current, None
        if stroke is not None:
            logger.debug("Brush stroke cancelled")
        return stroke

    def undo(self) -> BrushStroke | None:
        """Pop the most recent stroke.

        The label map is not touched; ``stroke.result`` holds the labels
        needed to revert it.
        """
        if not self._undo_stack:
            return None
        stroke = self._undo_stack.pop()
        logger.debug(f"Brush stroke undone ({len(self._undo_stack)} remaining)")
        return stroke

    def clear_undo_history(self):
        self._undo_stack.clear()
        logger.debug("Brush undo history cleared")

    def get_brush_preview(self, point, pressure: float = 1.0) -> BrushPreview:
        """Voxels a single dab at ``point`` would cover, with their weights."""
        center = self.label_map.geometry.check_point(point, "Preview point")
        radius = self.effective_radius(pressure)
        points, weights = [], []
        for (dx, dy, dz), weight in self.brush_offsets(radius):
            p = Point3D(center.x + dx, center.y + dy, center.z + dz)
            if self.label_map.geometry.contains(p):
                points.append(p)
                weights.append(weight)
        return BrushPreview(points=points, weights=weights, radius=radius)

    def brush_offsets(self, radius: float) -> list[tuple[tuple[int, int, int], float]]:
        """Offsets (dx, dy, dz) covered by the brush, with falloff weights."""
        reach = math.ceil(radius)
        z_reach = reach if self._config.sphere_mode else 0
        span = range(-reach, reach + 1)
        z_span = range(-z_reach, z_reach + 1)

        if self._config.shape == BrushShape.SQUARE:
            return [((dx, dy, dz), 1.0) for dz in z_span for dy in span for dx in span]

        offsets = []
        radius_sq = radius * radius
        for dz in z_span:
            for dy in span:
                for dx in span:
                    distance_sq = dx * dx + dy * dy + dz * dz
                    if distance_sq > radius_sq:
                        continue
                    weight = brush_falloff(math.sqrt(distance_sq), radius, self._config.hardness)
                    if weight > 0:
                        offsets.append(((dx, dy, dz), weight))
        return offsets

    def _stroke_radii(self, stroke: BrushStroke) -> list[float]:
        if self._config.pressure_sensitive and len(stroke.pressures) == len(stroke.points):
            return [self.effective_radius(p) for p in stroke.pressures]
        return [stroke.radius] * len(stroke.points)

    def _footprint(self, stroke: BrushStroke) -> np.ndarray:
        """Boolean mask of every voxel touched by the stroke's samples."""
        geometry = self.label_map.geometry
        nz, ny, nx = geometry.shape
        covered = np.zeros(geometry.shape, dtype=bool)

        for point, radius in zip(stroke.points, self._stroke_radii(stroke)):
            offsets = np.array([o for o, _ in self.brush_offsets(radius)], dtype=np.int64)
            if offsets.size == 0:
                continue
            xs = offsets[:, 0] + point.x
            ys = offsets[:, 1] + point.y
            zs = offsets[:, 2] + point.z
            inside = (xs >= 0) & (xs < nx) & (ys >= 0) & (ys < ny) & (zs >= 0) & (zs < nz)
            covered[zs[inside], ys[inside], xs[inside]] = True
        return covered

    def _fill_region(self, stroke: BrushStroke, labels: np.ndarray) -> np.ndarray:
        """Voxels connected to each sample that share the sample's label."""
        region = np.zeros(labels.shape, dtype=bool)
        structure = connectivity_structure(Connectivity.FACE)

        for point in stroke.points:
            if region[point.index]:
                continue
            target = labels[point.index]
            if target == stroke.segment_index:
                continue

            if self._config.sphere_mode:
                same = labels == target
                ids, _ = ndimage.label(same, structure=structure)
                region |= ids == ids[point.index]
            else:
                same = labels[point.z] == target
                ids, _ = ndimage.label(same, structure=structure[1])
                region[point.z] |= ids == ids[point.y, point.x]
        return region

    def _apply(self, stroke: BrushStroke) -> BrushOperationResult:
        start_time = time.perf_counter()
        labels = self.label_map.array

        if stroke.mode == BrushMode.FILL:
            touched = self._fill_region(stroke, labels)
            new_value = stroke.segment_index
        else:
            touched = self._footprint(stroke)
            new_value = stroke.segment_index if stroke.mode == BrushMode.PAINT else 0

        locked = [label for label in self._locked_labels() if label != 0]
        if locked:
            touched &= ~np.isin(labels, locked)
        touched &= labels != new_value

        flat_indices = np.flatnonzero(touched)
        previous = labels.reshape(-1)[flat_indices].copy()
        labels.reshape(-1)[flat_indices] = new_value

        if flat_indices.size == 0:
            bounding_box, modified_slices = None, []
        else:
            zs, ys, xs = np.unravel_index(flat_indices, labels.shape)
            bounding_box = BoundingBox(
                min=Point3D(int(xs.min()), int(ys.min()), int(zs.min())),
                max=Point3D(int(xs.max()), int(ys.max()), int(zs.max())),
            )
            modified_slices = [int(z) for z in np.unique(zs)]

        return BrushOperationResult(
            affected_voxels=int(flat_indices.size),
            bounding_box=bounding_box,
            modified_slices=modified_slices,
            modified_indices=flat_indices,
            previous_labels=previous,
            processing_time_ms=(time.perf_counter() - start_time) * 1000,
        )
