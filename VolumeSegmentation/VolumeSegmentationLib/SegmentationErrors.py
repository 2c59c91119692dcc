"""Exceptions raised by the segmentation engine.

All errors derive from SegmentationError so callers can catch the whole
family at once. Partial results (cancelled or non-converged region growing)
are not errors and are reported through result records instead.
"""


class SegmentationError(Exception):
    """Base exception for segmentation engine errors."""

    pass


class ConfigurationError(SegmentationError, ValueError):
    """Raised when an operation is configured with invalid values.

    Configuration errors are detected before any voxel is touched.
    """

    pass


class BusyError(SegmentationError):
    """Raised when an engine is asked to start while already processing."""

    pass


class OutOfBoundsError(SegmentationError, IndexError):
    """Raised when a primary input coordinate lies outside the volume grid."""

    pass


class GeometryError(SegmentationError):
    """Raised when a buffer does not match the volume geometry."""

    pass


class VolumeNotFoundError(SegmentationError, KeyError):
    """Raised when a volume accessor has no volume for the requested id."""

    pass
