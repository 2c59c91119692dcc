"""Dense per-voxel label buffer and volume geometry.

Arrays are stored (z, y, x) in C order, so the flat index of voxel
(x, y, z) is ``z*nx*ny + y*nx + x``. Points are passed around as (x, y, z).

Binary masks are ``uint8`` arrays of the same shape holding only 0 and
``FOREGROUND`` (255).
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

import numpy as np

from .SegmentationDataStructures import Point3D, as_point
from .SegmentationErrors import GeometryError, OutOfBoundsError

logger = logging.getLogger(__name__)

FOREGROUND = 255

LABEL_DTYPE = np.uint16

IDENTITY_DIRECTION = (1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 1.0)


@dataclass(frozen=True)
class VolumeGeometry:
    """Grid dimensions and physical placement of a volume."""

    dimensions: tuple[int, int, int]
    """Voxel counts (nx, ny, nz)."""

    spacing: tuple[float, float, float] = (1.0, 1.0, 1.0)
    origin: tuple[float, float, float] = (0.0, 0.0, 0.0)
    direction: tuple[float, ...] = field(default=IDENTITY_DIRECTION)
    """3x3 orientation matrix, row-major."""

    def __post_init__(self):
        if len(self.dimensions) != 3 or any(int(d) < 1 for d in self.dimensions):
            raise GeometryError(f"Dimensions must be three positive integers, got {self.dimensions}")
        if len(self.spacing) != 3 or any(s <= 0 for s in self.spacing):
            raise GeometryError(f"Spacing must be three positive numbers, got {self.spacing}")
        if len(self.direction) != 9:
            raise GeometryError(f"Direction must hold 9 values, got {len(self.direction)}")

    @classmethod
    def for_array(
        cls,
        array: np.ndarray,
        spacing: tuple[float, float, float] = (1.0, 1.0, 1.0),
        origin: tuple[float, float, float] = (0.0, 0.0, 0.0),
        direction: tuple[float, ...] = IDENTITY_DIRECTION,
    ) -> VolumeGeometry:
        """Build the geometry of a (z, y, x) array."""
        if array.ndim != 3:
            raise GeometryError(f"Expected a 3D array, got shape {array.shape}")
        nz, ny, nx = array.shape
        return cls(
            dimensions=(nx, ny, nz),
            spacing=tuple(float(s) for s in spacing),
            origin=tuple(float(o) for o in origin),
            direction=tuple(float(d) for d in direction),
        )

    @property
    def shape(self) -> tuple[int, int, int]:
        """Array shape (nz, ny, nx)."""
        nx, ny, nz = self.dimensions
        return (nz, ny, nx)

    @property
    def voxel_count(self) -> int:
        nx, ny, nz = self.dimensions
        return nx * ny * nz

    @property
    def voxel_volume(self) -> float:
        sx, sy, sz = self.spacing
        return sx * sy * sz

    def contains(self, point: Point3D) -> bool:
        """Return True if the point lies inside the grid."""
        nx, ny, nz = self.dimensions
        return 0 <= point.x < nx and 0 <= point.y < ny and 0 <= point.z < nz

    def check_point(self, point, what: str = "point") -> Point3D:
        """Validate a primary input coordinate.

        Args:
            point: Anything ``as_point`` accepts.
            what: Description used in the error message.

        Returns:
            The coordinate as a Point3D.

        Raises:
            OutOfBoundsError: If the point lies outside ``[0, dim)`` on any axis.
        """
        p = as_point(point)
        if not self.contains(p):
            raise OutOfBoundsError(
                f"{what} {tuple(p)} is outside volume dimensions {self.dimensions}"
            )
        return p

    def flat_index(self, point: Point3D) -> int:
        nx, ny, _ = self.dimensions
        return point.z * nx * ny + point.y * nx + point.x

    def point_from_index(self, index: int) -> Point3D:
        nx, ny, _ = self.dimensions
        z, rem = divmod(int(index), nx * ny)
        y, x = divmod(rem, nx)
        return Point3D(x, y, z)

    def check_buffer(self, array: np.ndarray, what: str = "buffer") -> np.ndarray:
        """Return ``array`` shaped (nz, ny, nx).

        Flat buffers of length ``nx*ny*nz`` are reshaped; anything else that
        disagrees with the geometry is rejected.

        Raises:
            GeometryError: If the buffer size or shape does not match.
        """
        array = np.asarray(array)
        if array.size != self.voxel_count:
            raise GeometryError(
                f"{what} has {array.size} elements but geometry {self.dimensions} "
                f"requires {self.voxel_count}"
            )
        if array.ndim == 1:
            return array.reshape(self.shape)
        if array.shape != self.shape:
            raise GeometryError(f"{what} has shape {array.shape}, expected {self.shape}")
        return array


def to_binary_mask(array: np.ndarray) -> np.ndarray:
    """Convert any truthy array to a {0, 255} uint8 mask."""
    return np.where(np.asarray(array) != 0, FOREGROUND, 0).astype(np.uint8)


def check_binary_mask(mask: np.ndarray, shape: tuple[int, ...] | None = None) -> np.ndarray:
    """Validate a binary mask and return it as a boolean array.

    Raises:
        GeometryError: If the shape differs from ``shape`` or values other
            than 0 and 255 are present.
    """
    mask = np.asarray(mask)
    if shape is not None and mask.shape != tuple(shape):
        raise GeometryError(f"Mask shape {mask.shape} does not match {tuple(shape)}")
    if mask.dtype == bool:
        return mask
    if np.any((mask != 0) & (mask != FOREGROUND)):
        raise GeometryError("Binary mask values must be 0 or 255")
    return mask == FOREGROUND


class LabelMap:
    """Mutable per-voxel segment labels for one segmentation.

    Label 0 is background. Every other value must belong to a registered
    segment; see ``validate_labels``.
    """

    def __init__(self, geometry: VolumeGeometry, data: np.ndarray | None = None):
        self.geometry = geometry
        if data is None:
            self._data = np.zeros(geometry.shape, dtype=LABEL_DTYPE)
        else:
            data = geometry.check_buffer(data, "label map")
            if np.issubdtype(data.dtype, np.integer) and data.size and (
                data.min() < 0 or data.max() > np.iinfo(LABEL_DTYPE).max
            ):
                raise GeometryError("Label values must fit in an unsigned 16-bit integer")
            self._data = np.ascontiguousarray(data, dtype=LABEL_DTYPE).copy()

    @property
    def array(self) -> np.ndarray:
        """The live (z, y, x) label array. Mutate only through this class."""
        return self._data

    @property
    def shape(self) -> tuple[int, int, int]:
        return self._data.shape

    def snapshot(self) -> np.ndarray:
        """Return a copy readers can hold while edits continue."""
        return self._data.copy()

    def get(self, point) -> int:
        p = self.geometry.check_point(point)
        return int(self._data[p.index])

    def set(self, point, label: int) -> None:
        p = self.geometry.check_point(point)
        self._data[p.index] = label

    def segment_mask(self, segment_index: int) -> np.ndarray:
        """Binary mask of the voxels holding ``segment_index``."""
        return to_binary_mask(self._data == segment_index)

    def voxel_count(self, segment_index: int) -> int:
        return int(np.count_nonzero(self._data == segment_index))

    def labels_present(self) -> list[int]:
        """Sorted non-zero labels found in the map."""
        return [int(v) for v in np.unique(self._data) if v != 0]

    def clear_segment(self, segment_index: int) -> int:
        """Set every voxel of ``segment_index`` to background.

        Returns:
            Number of voxels cleared.
        """
        where = self._data == segment_index
        count = int(np.count_nonzero(where))
        self._data[where] = 0
        return count

    def apply_mask(
        self,
        mask: np.ndarray,
        segment_index: int,
        replace: bool = True,
        protected_labels: Iterable[int] = (),
    ) -> int:
        """Write a binary mask into the map as ``segment_index``.

        Args:
            mask: Binary mask of the label map's shape.
            segment_index: Label to write.
            replace: Clear the segment's existing voxels first; otherwise
                the mask is added to them.
            protected_labels: Labels whose voxels are never overwritten
                (locked segments).

        Returns:
            Number of voxels whose label changed.
        """
        fg = check_binary_mask(mask, self.shape)
        before = self._data.copy()

        protected = list(protected_labels)
        writable = ~np.isin(self._data, protected) if protected else np.ones(self.shape, bool)

        if replace:
            self._data[self._data == segment_index] = 0
        self._data[fg & writable] = segment_index

        changed = int(np.count_nonzero(before != self._data))
        logger.debug(
            f"Applied mask to segment {segment_index}: {changed} voxels changed "
            f"(replace={replace})"
        )
        return changed

    def restore(self, flat_indices: np.ndarray, labels: np.ndarray) -> None:
        """Write previously recorded labels back at flat indices."""
        self._data.reshape(-1)[np.asarray(flat_indices, dtype=np.int64)] = labels

    def validate_labels(self, registered: Iterable[int]) -> list[str]:
        """Check that every non-zero label is a registered segment index.

        Returns:
            List of validation error messages (empty if valid).
        """
        known = set(registered)
        errors = []
        for label in self.labels_present():
            if label not in known:
                errors.append(
                    f"Label {label} is used by {self.voxel_count(label)} voxels "
                    f"but is not a registered segment"
                )
        return errors
