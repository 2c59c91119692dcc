"""Read-only access to intensity volumes by identifier.

The engines never load or mutate image data themselves. A VolumeAccessor
hands them a float32 (z, y, x) array and its geometry. Two accessors are
provided: one over plain numpy arrays and one over SimpleITK images.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import numpy as np
import SimpleITK as sitk

from .LabelMap import IDENTITY_DIRECTION, VolumeGeometry
from .SegmentationErrors import GeometryError, VolumeNotFoundError

logger = logging.getLogger(__name__)


class VolumeAccessor(ABC):
    """Supplies intensity arrays and geometry for volume identifiers."""

    @abstractmethod
    def get_volume(self, volume_id: str) -> tuple[np.ndarray, VolumeGeometry]:
        """Return ``(array, geometry)`` for a volume.

        The array is float32, shaped (nz, ny, nx), and must be treated as
        read-only by the caller.

        Raises:
            VolumeNotFoundError: If no volume has this id.
        """

    @abstractmethod
    def volume_ids(self) -> list[str]:
        """Identifiers of the volumes this accessor can supply."""

    def get_geometry(self, volume_id: str) -> VolumeGeometry:
        return self.get_volume(volume_id)[1]


def _read_only(array: np.ndarray) -> np.ndarray:
    view = array.view()
    view.flags.writeable = False
    return view


class InMemoryVolumeAccessor(VolumeAccessor):
    """Volumes held as numpy arrays in a dictionary."""

    def __init__(self):
        self._volumes: dict[str, tuple[np.ndarray, VolumeGeometry]] = {}

    def add_volume(
        self,
        volume_id: str,
        array: np.ndarray,
        spacing: tuple[float, float, float] = (1.0, 1.0, 1.0),
        origin: tuple[float, float, float] = (0.0, 0.0, 0.0),
        direction: tuple[float, ...] = IDENTITY_DIRECTION,
    ) -> VolumeGeometry:
        """Register a (z, y, x) array under ``volume_id``.

        Returns:
            The geometry built for the array.
        """
        array = np.asarray(array)
        geometry = VolumeGeometry.for_array(array, spacing, origin, direction)
        self._volumes[volume_id] = (np.ascontiguousarray(array, dtype=np.float32), geometry)
        logger.debug(f"Registered volume '{volume_id}' with dimensions {geometry.dimensions}")
        return geometry

    def remove_volume(self, volume_id: str) -> None:
        self._volumes.pop(volume_id, None)

    def get_volume(self, volume_id: str) -> tuple[np.ndarray, VolumeGeometry]:
        try:
            array, geometry = self._volumes[volume_id]
        except KeyError:
            raise VolumeNotFoundError(f"No volume registered with id '{volume_id}'") from None
        return _read_only(array), geometry

    def volume_ids(self) -> list[str]:
        return list(self._volumes)


class SimpleITKVolumeAccessor(VolumeAccessor):
    """Volumes held as ``SimpleITK.Image`` objects.

    Spacing, origin and direction are read from the image. Only scalar 3D
    images are accepted.
    """

    def __init__(self, images: dict[str, sitk.Image] | None = None):
        self._images: dict[str, sitk.Image] = {}
        self._arrays: dict[str, np.ndarray] = {}
        for volume_id, image in (images or {}).items():
            self.add_image(volume_id, image)

    def add_image(self, volume_id: str, image: sitk.Image) -> VolumeGeometry:
        if image.GetDimension() != 3:
            raise GeometryError(f"Volume '{volume_id}' must be 3D, got {image.GetDimension()}D")
        if image.GetNumberOfComponentsPerPixel() != 1:
            raise GeometryError(f"Volume '{volume_id}' must be a scalar image")
        self._images[volume_id] = image
        self._arrays.pop(volume_id, None)
        return self._geometry(image)

    @staticmethod
    def _geometry(image: sitk.Image) -> VolumeGeometry:
        return VolumeGeometry(
            dimensions=tuple(int(s) for s in image.GetSize()),
            spacing=tuple(float(s) for s in image.GetSpacing()),
            origin=tuple(float(o) for o in image.GetOrigin()),
            direction=tuple(float(d) for d in image.GetDirection()),
        )

    def get_volume(self, volume_id: str) -> tuple[np.ndarray, VolumeGeometry]:
        try:
            image = self._images[volume_id]
        except KeyError:
            raise VolumeNotFoundError(f"No image registered with id '{volume_id}'") from None

        # GetArrayFromImage returns (z, y, x)
        array = self._arrays.get(volume_id)
        if array is None:
            array = sitk.GetArrayFromImage(image).astype(np.float32)
            self._arrays[volume_id] = array
        return _read_only(array), self._geometry(image)

    def volume_ids(self) -> list[str]:
        return list(self._images)
