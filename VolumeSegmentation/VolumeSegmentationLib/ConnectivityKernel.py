"""Neighbour offsets and morphological structuring elements.

Offsets are Point3D (dx, dy, dz). Footprints built from them are boolean
arrays indexed (z, y, x) and centred on the identity offset, which is the
form scipy.ndimage expects for ``structure`` arguments.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache

import numpy as np
from skimage.morphology import ball

from .SegmentationConfig import Connectivity, KernelShape, parse_enum
from .SegmentationDataStructures import Point3D
from .SegmentationErrors import ConfigurationError

logger = logging.getLogger(__name__)

IDENTITY = Point3D(0, 0, 0)

# Maximum number of non-zero offset components for each connectivity
_MAX_NONZERO = {Connectivity.FACE: 1, Connectivity.EDGE: 2, Connectivity.CORNER: 3}


@dataclass(frozen=True)
class MorphologyKernel:
    """A structuring element for dilation and erosion."""

    shape: KernelShape
    radius: int
    offsets: tuple[Point3D, ...]

    @property
    def footprint(self) -> np.ndarray:
        return structuring_element(self.offsets)


def _sorted_offsets(offsets) -> tuple[Point3D, ...]:
    # Raster order: z slowest, x fastest
    return tuple(sorted(offsets, key=lambda p: (p.z, p.y, p.x)))


@lru_cache(maxsize=None)
def neighbor_offsets(mode) -> tuple[Point3D, ...]:
    """Return the neighbour offsets for a connectivity, identity excluded.

    Args:
        mode: 6, 18 or 26 (or the matching Connectivity member).

    Returns:
        6, 18 or 26 offsets in raster order.

    Raises:
        ConfigurationError: For any other connectivity value.
    """
    connectivity = parse_enum(Connectivity, mode, "connectivity")
    limit = _MAX_NONZERO[connectivity]
    offsets = []
    for dz in (-1, 0, 1):
        for dy in (-1, 0, 1):
            for dx in (-1, 0, 1):
                nonzero = (dx != 0) + (dy != 0) + (dz != 0)
                if 0 < nonzero <= limit:
                    offsets.append(Point3D(dx, dy, dz))
    return tuple(offsets)


def connectivity_structure(mode) -> np.ndarray:
    """3x3x3 footprint for a connectivity, identity included.

    Used as the ``structure`` argument of ``scipy.ndimage.label``.
    """
    return structuring_element(neighbor_offsets(mode) + (IDENTITY,))


def morphology_kernel(shape, radius: int) -> MorphologyKernel:
    """Build a structuring element of the given shape and radius.

    Args:
        shape: "sphere", "cube" or "cross" (or a KernelShape member).
        radius: Kernel radius in voxels.

    Returns:
        MorphologyKernel whose offsets are in raster order.

    Raises:
        ConfigurationError: For an unknown shape, or a sphere with radius < 1.
    """
    kernel_shape = parse_enum(KernelShape, shape, "kernel shape")
    radius = int(radius)

    if kernel_shape == KernelShape.SPHERE:
        if radius < 1:
            raise ConfigurationError(f"Sphere kernel radius must be >= 1, got {radius}")
        # ball() marks dx^2 + dy^2 + dz^2 <= r^2
        zs, ys, xs = np.nonzero(ball(radius))
        offsets = [
            Point3D(int(x) - radius, int(y) - radius, int(z) - radius)
            for z, y, x in zip(zs, ys, xs)
        ]
    elif radius <= 0:
        offsets = [IDENTITY]
    elif kernel_shape == KernelShape.CUBE:
        span = range(-radius, radius + 1)
        offsets = [Point3D(dx, dy, dz) for dz in span for dy in span for dx in span]
    else:
        offsets = [IDENTITY]
        for i in range(1, radius + 1):
            offsets.extend(
                [
                    Point3D(i, 0, 0),
                    Point3D(-i, 0, 0),
                    Point3D(0, i, 0),
                    Point3D(0, -i, 0),
                    Point3D(0, 0, i),
                    Point3D(0, 0, -i),
                ]
            )

    kernel = MorphologyKernel(kernel_shape, max(radius, 0), _sorted_offsets(offsets))
    logger.debug(f"Built {kernel_shape.value} kernel radius {radius}: {len(kernel.offsets)} offsets")
    return kernel


def structuring_element(offsets) -> np.ndarray:
    """Convert offsets into a boolean (z, y, x) footprint.

    The footprint is the smallest odd cube centred on the identity that
    holds every offset.
    """
    offsets = list(offsets)
    if not offsets:
        raise ConfigurationError("Cannot build a structuring element from no offsets")
    reach = max(max(abs(p.x), abs(p.y), abs(p.z)) for p in offsets)
    size = 2 * reach + 1
    footprint = np.zeros((size, size, size), dtype=bool)
    for p in offsets:
        footprint[p.z + reach, p.y + reach, p.x + reach] = True
    return footprint
