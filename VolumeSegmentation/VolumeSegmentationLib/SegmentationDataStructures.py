"""Data structures shared by the segmentation engines.

This module contains the records exchanged between the engines and their
callers: voxel coordinates, segments, connected components, and the
per-operation result records that carry voxel counts and timing.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, NamedTuple

import numpy as np

if TYPE_CHECKING:
    from .SegmentationConfig import BrushMode, EditingOperation


class Point3D(NamedTuple):
    """Integer voxel coordinate (x, y, z).

    Arrays are indexed (z, y, x), so use ``array[p.z, p.y, p.x]`` or
    ``array[p.index]``.
    """

    x: int
    y: int
    z: int

    @property
    def index(self) -> tuple[int, int, int]:
        """Return the numpy index tuple (z, y, x)."""
        return (self.z, self.y, self.x)

    def offset(self, dx: int, dy: int, dz: int) -> Point3D:
        """Return this point shifted by an offset."""
        return Point3D(self.x + dx, self.y + dy, self.z + dz)

    def distance_to(self, other: tuple[float, float, float]) -> float:
        """Euclidean distance in voxel units."""
        return math.sqrt(
            (self.x - other[0]) ** 2 + (self.y - other[1]) ** 2 + (self.z - other[2]) ** 2
        )


def as_point(value: Any) -> Point3D:
    """Coerce a tuple, list, dict or Point3D to Point3D.

    Args:
        value: ``(x, y, z)`` sequence or ``{"x":, "y":, "z":}`` mapping.

    Returns:
        Point3D with integer coordinates.
    """
    if isinstance(value, Point3D):
        return value
    if isinstance(value, dict):
        return Point3D(int(value["x"]), int(value["y"]), int(value["z"]))
    x, y, z = value
    return Point3D(int(x), int(y), int(z))


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box with inclusive min and max corners."""

    min: Point3D
    max: Point3D

    @property
    def size(self) -> tuple[int, int, int]:
        """Return the box extent (x, y, z) in voxels."""
        return (
            self.max.x - self.min.x + 1,
            self.max.y - self.min.y + 1,
            self.max.z - self.min.z + 1,
        )

    def to_dict(self) -> dict:
        return {"min": tuple(self.min), "max": tuple(self.max)}


@dataclass
class Segment:
    """A labelled segment within a segmentation.

    Segment index 0 is reserved for background and is never assigned.
    """

    segment_index: int
    label: str
    color: tuple[int, int, int]
    opacity: float = 0.5
    visible: bool = True
    locked: bool = False
    category: str | None = None
    description: str | None = None

    def validate(self) -> list[str]:
        """Validate segment properties.

        Returns:
            List of validation error messages (empty if valid).
        """
        errors = []

        if self.segment_index <= 0:
            errors.append(f"Segment index must be a positive integer, got {self.segment_index}")

        if self.segment_index > np.iinfo(np.uint16).max:
            errors.append(f"Segment index {self.segment_index} does not fit in a 16-bit label map")

        if not 0.0 <= self.opacity <= 1.0:
            errors.append(
                f"Invalid opacity for segment {self.segment_index}: must be between 0 and 1"
            )

        if len(self.color) != 3 or any(c < 0 or c > 255 for c in self.color):
            errors.append(
                f"Invalid color for segment {self.segment_index}: must be RGB in [0, 255]"
            )

        return errors

    def to_dict(self) -> dict:
        return {
            "segment_index": self.segment_index,
            "label": self.label,
            "color": list(self.color),
            "opacity": self.opacity,
            "visible": self.visible,
            "locked": self.locked,
            "category": self.category,
            "description": self.description,
        }


@dataclass
class Component:
    """Connected component statistics."""

    id: int
    voxel_count: int
    bounding_box: BoundingBox
    centroid: tuple[float, float, float]
    volume: float

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "voxel_count": self.voxel_count,
            "bounding_box": self.bounding_box.to_dict(),
            "centroid": self.centroid,
            "volume": self.volume,
        }


@dataclass(frozen=True)
class MaskStatistics:
    """Foreground voxel count and number of connected components."""

    voxel_count: int
    component_count: int

    def to_dict(self) -> dict:
        return {"voxel_count": self.voxel_count, "component_count": self.component_count}


@dataclass
class HistogramData:
    """Equal-width intensity histogram for interactive threshold selection."""

    bins: np.ndarray
    """Left edge of each bin."""

    counts: np.ndarray
    """Number of voxels falling into each bin."""

    min_value: float
    max_value: float
    total_voxels: int

    @property
    def bin_width(self) -> float:
        """Return the width of a single bin."""
        if len(self.bins) == 0:
            return 0.0
        return (self.max_value - self.min_value) / len(self.bins)


@dataclass
class ThresholdSuggestion:
    """Intensity window proposed around a seed point."""

    lower: float
    upper: float
    mean: float
    std: float
    method: str
    n_components: int = 1

    def to_dict(self) -> dict:
        return {
            "lower": self.lower,
            "upper": self.upper,
            "mean": self.mean,
            "std": self.std,
            "method": self.method,
            "n_components": self.n_components,
        }


@dataclass
class ThresholdPreview:
    """Threshold mask computed without touching the label map."""

    mask: np.ndarray
    component_count: int
    affected_voxels: int


@dataclass
class ThresholdResult:
    """Outcome of applying a threshold to a segment."""

    segment_index: int
    thresholded_voxels: int
    components: list[Component]
    total_volume: float
    processing_time_ms: float

    def to_dict(self) -> dict:
        return {
            "segment_index": self.segment_index,
            "thresholded_voxels": self.thresholded_voxels,
            "component_count": len(self.components),
            "total_volume": self.total_volume,
            "processing_time_ms": self.processing_time_ms,
        }


@dataclass
class VoxelState:
    """Per-voxel record kept for the duration of one region growing run."""

    point: Point3D
    intensity_value: float
    gradient_magnitude: float
    visited: bool = True
    in_region: bool = False


@dataclass
class RegionStatistics:
    """Intensity statistics of a grown region."""

    mean_intensity: float = 0.0
    standard_deviation: float = 0.0
    min_intensity: float = 0.0
    max_intensity: float = 0.0
    voxel_count: int = 0
    compactness: float = 0.0
    """Voxel count divided by the bounding box volume (1.0 for a filled box)."""


@dataclass
class GrowthOutcome:
    """Raw result of a region growing run, before it is applied anywhere."""

    grown_mask: np.ndarray
    iterations: int
    final_similarity: float
    converged: bool
    cancelled: bool = False
    statistics: RegionStatistics = field(default_factory=RegionStatistics)
    bounds: BoundingBox | None = None
    centroid: tuple[float, float, float] = (0.0, 0.0, 0.0)

    @property
    def grown_voxels(self) -> int:
        """Return the number of voxels in the grown region."""
        return int(np.count_nonzero(self.grown_mask))


@dataclass
class RegionGrowingResult:
    """Outcome of applying region growing to a segment."""

    segment_index: int
    grown_voxels: int
    iterations: int
    final_similarity: float
    region_bounds: BoundingBox | None
    volume: float
    centroid: tuple[float, float, float]
    processing_time_ms: float
    converged: bool
    applied: bool = True
    """False when the region was smaller than the configured minimum size."""

    def to_dict(self) -> dict:
        return {
            "segment_index": self.segment_index,
            "grown_voxels": self.grown_voxels,
            "iterations": self.iterations,
            "final_similarity": self.final_similarity,
            "region_bounds": self.region_bounds.to_dict() if self.region_bounds else None,
            "volume": self.volume,
            "centroid": self.centroid,
            "processing_time_ms": self.processing_time_ms,
            "converged": self.converged,
            "applied": self.applied,
        }


@dataclass
class EditingResult:
    """Outcome of a morphological or boolean editing operation."""

    operation: EditingOperation
    segment_index: int
    affected_voxels: int
    processing_time_ms: float
    before_stats: MaskStatistics
    after_stats: MaskStatistics

    def to_dict(self) -> dict:
        return {
            "operation": self.operation.value,
            "segment_index": self.segment_index,
            "affected_voxels": self.affected_voxels,
            "processing_time_ms": self.processing_time_ms,
            "before_stats": self.before_stats.to_dict(),
            "after_stats": self.after_stats.to_dict(),
        }


@dataclass
class BrushOperationResult:
    """Voxels changed by applying one brush stroke."""

    affected_voxels: int
    bounding_box: BoundingBox | None
    modified_slices: list[int]
    modified_indices: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))
    """Flat label map indices of the changed voxels."""

    previous_labels: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.uint16))
    """Labels those voxels held before the stroke, for undo."""

    processing_time_ms: float = 0.0

    def to_dict(self) -> dict:
        return {
            "affected_voxels": self.affected_voxels,
            "bounding_box": self.bounding_box.to_dict() if self.bounding_box else None,
            "modified_slices": list(self.modified_slices),
            "processing_time_ms": self.processing_time_ms,
        }


@dataclass
class BrushStroke:
    """Sampled points of one brush stroke."""

    points: list[Point3D]
    radius: float
    segment_index: int
    mode: BrushMode
    timestamp: datetime = field(default_factory=datetime.now)
    pressures: list[float] = field(default_factory=list)
    result: BrushOperationResult | None = None
    """Set once the stroke has been applied to a label map."""


@dataclass
class BrushPreview:
    """Voxels a brush dab would touch, with their falloff weights."""

    points: list[Point3D]
    weights: list[float]
    radius: float
