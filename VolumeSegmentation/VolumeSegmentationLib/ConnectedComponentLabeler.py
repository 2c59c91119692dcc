"""Connected component labeling of binary masks.

Components are numbered 1..N in raster-scan order of their first voxel
(z slowest, then y, then x fastest), so the id a component receives
depends only on the mask and the connectivity.
"""

from __future__ import annotations

import logging

import numpy as np
from scipy import ndimage
from skimage import measure

from .ConnectivityKernel import connectivity_structure
from .LabelMap import VolumeGeometry, check_binary_mask
from .SegmentationConfig import Connectivity, parse_enum
from .SegmentationDataStructures import BoundingBox, Component, MaskStatistics, Point3D

logger = logging.getLogger(__name__)


def raster_order_labels(foreground: np.ndarray, connectivity=Connectivity.CORNER) -> tuple[np.ndarray, int]:
    """Label a boolean array with ids ordered by first occurrence.

    Args:
        foreground: Boolean (z, y, x) array.
        connectivity: 6, 18 or 26.

    Returns:
        Tuple of (int32 id array, number of components).
    """
    raw, count = ndimage.label(foreground, structure=connectivity_structure(connectivity))
    if count == 0:
        return np.zeros(foreground.shape, dtype=np.int32), 0

    flat = raw.ravel()
    ids, first_index = np.unique(flat, return_index=True)
    keep = ids != 0
    ids, first_index = ids[keep], first_index[keep]

    lookup = np.zeros(count + 1, dtype=np.int32)
    lookup[ids[np.argsort(first_index)]] = np.arange(1, count + 1, dtype=np.int32)
    return lookup[raw], int(count)


class ConnectedComponentLabeler:
    """Labels binary masks into components with per-component statistics.

    After ``label`` runs, ``label_ids`` holds the per-voxel component id
    (0 for background) of the most recent mask.

    Usage:
        labeler = ConnectedComponentLabeler()
        components = labeler.label(mask, geometry, Connectivity.CORNER)
        largest = max(components, key=lambda c: c.voxel_count)
    """

    def __init__(self):
        self.label_ids: np.ndarray | None = None

    def label(self, mask: np.ndarray, geometry: VolumeGeometry, connectivity=Connectivity.CORNER) -> list[Component]:
        """Find connected components of a binary mask.

        Args:
            mask: Binary mask shaped like the geometry.
            geometry: Volume geometry, used for bounds and physical volume.
            connectivity: 6, 18 or 26.

        Returns:
            Components ordered by id.
        """
        connectivity = parse_enum(Connectivity, connectivity, "connectivity")
        foreground = check_binary_mask(geometry.check_buffer(mask, "mask"), geometry.shape)
        label_ids, count = raster_order_labels(foreground, connectivity)
        self.label_ids = label_ids

        voxel_volume = geometry.voxel_volume
        components = []
        for region in measure.regionprops(label_ids):
            # bbox is (min_z, min_y, min_x, max_z, max_y, max_x) with exclusive max
            z0, y0, x0, z1, y1, x1 = region.bbox
            cz, cy, cx = region.centroid
            voxel_count = int(region.area)
            components.append(
                Component(
                    id=int(region.label),
                    voxel_count=voxel_count,
                    bounding_box=BoundingBox(
                        min=Point3D(int(x0), int(y0), int(z0)),
                        max=Point3D(int(x1) - 1, int(y1) - 1, int(z1) - 1),
                    ),
                    centroid=(float(cx), float(cy), float(cz)),
                    volume=voxel_count * voxel_volume,
                )
            )

        logger.debug(f"Found {count} components ({int(connectivity)}-connectivity)")
        return components

    @staticmethod
    def count(mask: np.ndarray, connectivity=Connectivity.CORNER) -> int:
        """Number of connected components in a binary mask."""
        foreground = check_binary_mask(mask)
        _, count = ndimage.label(foreground, structure=connectivity_structure(connectivity))
        return int(count)

    @classmethod
    def mask_statistics(cls, mask: np.ndarray, connectivity=Connectivity.CORNER) -> MaskStatistics:
        """Foreground voxel count and component count of a binary mask."""
        foreground = check_binary_mask(mask)
        return MaskStatistics(
            voxel_count=int(np.count_nonzero(foreground)),
            component_count=cls.count(foreground, connectivity),
        )
