"""Morphological editing of binary masks.

Dilation sets a voxel when any kernel offset from it lands on foreground.
Erosion keeps a voxel only when every kernel offset lands on foreground;
offsets that leave the grid count as background, so erosion always eats
into masks touching the volume boundary.

The module-level functions work on boolean arrays and are shared with the
threshold engine. ``MorphologyEngine`` wraps them for {0, 255} masks,
adds the busy guard and reports before/after statistics.
"""

from __future__ import annotations

import logging
import time

import numpy as np
from scipy import ndimage

from .ConnectedComponentLabeler import ConnectedComponentLabeler
from .ConnectivityKernel import MorphologyKernel, connectivity_structure, morphology_kernel
from .LabelMap import check_binary_mask, to_binary_mask
from .ProcessingGuard import ProcessingGuard
from .SegmentationConfig import Connectivity, EditingConfig, EditingOperation
from .SegmentationDataStructures import EditingResult
from .SegmentationErrors import ConfigurationError, GeometryError

logger = logging.getLogger(__name__)


def dilate(foreground: np.ndarray, kernel: MorphologyKernel) -> np.ndarray:
    # scipy dilates by the reflected structure; flip it so offsets are looked up as p + o
    footprint = kernel.footprint[::-1, ::-1, ::-1]
    return ndimage.binary_dilation(foreground, structure=footprint, border_value=0)


def erode(foreground: np.ndarray, kernel: MorphologyKernel) -> np.ndarray:
    return ndimage.binary_erosion(foreground, structure=kernel.footprint, border_value=0)


def opening(foreground: np.ndarray, kernel: MorphologyKernel) -> np.ndarray:
    return dilate(erode(foreground, kernel), kernel)


def closing(foreground: np.ndarray, kernel: MorphologyKernel) -> np.ndarray:
    return erode(dilate(foreground, kernel), kernel)


def smooth(foreground: np.ndarray, kernel: MorphologyKernel, iterations: int = 1) -> np.ndarray:
    """Opening followed by closing, repeated ``iterations`` times."""
    result = foreground
    for _ in range(iterations):
        result = closing(opening(result, kernel), kernel)
    return result


def fill_holes(foreground: np.ndarray, connectivity=Connectivity.CORNER) -> np.ndarray:
    """Fill background components that do not touch the grid boundary.

    Args:
        foreground: Boolean (z, y, x) array.
        connectivity: Adjacency used to group background voxels.

    Returns:
        Boolean array with enclosed holes set.
    """
    background_ids, count = ndimage.label(~foreground, structure=connectivity_structure(connectivity))
    if count == 0:
        return foreground.copy()

    border = np.zeros(foreground.shape, dtype=bool)
    border[0, :, :] = border[-1, :, :] = True
    border[:, 0, :] = border[:, -1, :] = True
    border[:, :, 0] = border[:, :, -1] = True
    touching = np.unique(background_ids[border])

    holes = (background_ids > 0) & ~np.isin(background_ids, touching)
    return foreground | holes


def remove_islands(foreground: np.ndarray, min_voxel_count: int, connectivity=Connectivity.CORNER) -> np.ndarray:
    """Clear foreground components with fewer than ``min_voxel_count`` voxels."""
    component_ids, count = ndimage.label(foreground, structure=connectivity_structure(connectivity))
    if count == 0:
        return foreground.copy()

    sizes = np.bincount(component_ids.ravel())
    keep = sizes >= min_voxel_count
    keep[0] = False
    return keep[component_ids]


class MorphologyEngine(ProcessingGuard):
    """Dilation, erosion, hole filling, island removal and boolean combination.

    All public methods take and return {0, 255} uint8 masks.

    Usage:
        engine = MorphologyEngine()
        kernel = morphology_kernel("sphere", 1)
        opened = engine.open(mask, kernel)
        cleaned, result = engine.edit(EditingOperation.REMOVE_ISLANDS, mask, EditingConfig())
    """

    def dilate(self, mask: np.ndarray, kernel: MorphologyKernel, iterations: int = 1) -> np.ndarray:
        fg = check_binary_mask(mask)
        for _ in range(iterations):
            fg = dilate(fg, kernel)
        return to_binary_mask(fg)

    def erode(self, mask: np.ndarray, kernel: MorphologyKernel, iterations: int = 1) -> np.ndarray:
        fg = check_binary_mask(mask)
        for _ in range(iterations):
            fg = erode(fg, kernel)
        return to_binary_mask(fg)

    def open(self, mask: np.ndarray, kernel: MorphologyKernel, iterations: int = 1) -> np.ndarray:
        fg = check_binary_mask(mask)
        for _ in range(iterations):
            fg = opening(fg, kernel)
        return to_binary_mask(fg)

    def close(self, mask: np.ndarray, kernel: MorphologyKernel, iterations: int = 1) -> np.ndarray:
        fg = check_binary_mask(mask)
        for _ in range(iterations):
            fg = closing(fg, kernel)
        return to_binary_mask(fg)

    def smooth(self, mask: np.ndarray, kernel: MorphologyKernel, iterations: int = 1) -> np.ndarray:
        return to_binary_mask(smooth(check_binary_mask(mask), kernel, iterations))

    def fill_holes(self, mask: np.ndarray, connectivity=Connectivity.CORNER) -> np.ndarray:
        return to_binary_mask(fill_holes(check_binary_mask(mask), connectivity))

    def remove_islands(
        self, mask: np.ndarray, min_voxel_count: int, connectivity=Connectivity.CORNER
    ) -> np.ndarray:
        return to_binary_mask(remove_islands(check_binary_mask(mask), min_voxel_count, connectivity))

    def union(self, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        fa, fb = self._pair(a, b)
        return to_binary_mask(fa | fb)

    def intersection(self, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        fa, fb = self._pair(a, b)
        return to_binary_mask(fa & fb)

    def difference(self, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        """Voxels in ``a`` and not in ``b``."""
        fa, fb = self._pair(a, b)
        return to_binary_mask(fa & ~fb)

    def invert(self, mask: np.ndarray) -> np.ndarray:
        return to_binary_mask(~check_binary_mask(mask))

    @staticmethod
    def _pair(a: np.ndarray, b: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        if np.shape(a) != np.shape(b):
            raise GeometryError(f"Mask shapes differ: {np.shape(a)} vs {np.shape(b)}")
        return check_binary_mask(a), check_binary_mask(b)

    def edit(
        self,
        operation: EditingOperation,
        mask: np.ndarray,
        config: EditingConfig | None = None,
        other: np.ndarray | None = None,
        segment_index: int = 0,
    ) -> tuple[np.ndarray, EditingResult]:
        """Run one editing operation and report statistics.

        Args:
            operation: Operation to run.
            mask: Input mask.
            config: Kernel, iterations, connectivity and island size.
            other: Second operand for boolean operations.
            segment_index: Recorded in the result.

        Returns:
            Tuple of (edited mask, EditingResult). ``affected_voxels`` counts
            voxels whose membership changed.

        Raises:
            ConfigurationError: If the config is invalid or a boolean
                operation has no second operand.
            BusyError: If another edit is running on this engine.
        """
        config = config or EditingConfig()
        errors = config.validate()
        if errors:
            raise ConfigurationError("; ".join(errors))
        if operation in _BOOLEAN_OPERATIONS and other is None:
            raise ConfigurationError(f"{operation.value} needs a second mask")

        with self.processing(operation.value):
            start_time = time.perf_counter()
            before = check_binary_mask(mask)
            before_stats = ConnectedComponentLabeler.mask_statistics(before, config.connectivity)

            result = self._run(operation, mask, config, other)

            after = check_binary_mask(result)
            after_stats = ConnectedComponentLabeler.mask_statistics(after, config.connectivity)
            editing_result = EditingResult(
                operation=operation,
                segment_index=segment_index,
                affected_voxels=int(np.count_nonzero(before != after)),
                processing_time_ms=(time.perf_counter() - start_time) * 1000,
                before_stats=before_stats,
                after_stats=after_stats,
            )

        logger.debug(
            f"{operation.value}: {before_stats.voxel_count} -> {after_stats.voxel_count} voxels, "
            f"{editing_result.processing_time_ms:.1f}ms"
        )
        return result, editing_result

    def _run(
        self,
        operation: EditingOperation,
        mask: np.ndarray,
        config: EditingConfig,
        other: np.ndarray | None,
    ) -> np.ndarray:
        if operation == EditingOperation.FILL_HOLES:
            return self.fill_holes(mask, config.connectivity)
        if operation == EditingOperation.REMOVE_ISLANDS:
            return self.remove_islands(mask, config.min_island_size, config.connectivity)
        if operation == EditingOperation.UNION:
            return self.union(mask, other)
        if operation == EditingOperation.INTERSECTION:
            return self.intersection(mask, other)
        if operation == EditingOperation.DIFFERENCE:
            return self.difference(mask, other)

        kernel = morphology_kernel(config.kernel_shape, config.kernel_radius)
        if operation == EditingOperation.DILATE:
            return self.dilate(mask, kernel, config.iterations)
        if operation == EditingOperation.ERODE:
            return self.erode(mask, kernel, config.iterations)
        if operation == EditingOperation.OPEN:
            return self.open(mask, kernel, config.iterations)
        if operation == EditingOperation.CLOSE:
            return self.close(mask, kernel, config.iterations)
        if operation == EditingOperation.SMOOTH:
            return self.smooth(mask, kernel, config.iterations)
        raise ConfigurationError(f"Unsupported editing operation: {operation}")


_BOOLEAN_OPERATIONS = (
    EditingOperation.UNION,
    EditingOperation.INTERSECTION,
    EditingOperation.DIFFERENCE,
)
