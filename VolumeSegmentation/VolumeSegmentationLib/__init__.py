"""VolumeSegmentationLib - Volumetric segmentation engine.

This library computes and edits per-voxel segment labels over a 3D image
grid: threshold segmentation, connected component analysis, seeded region
growing, morphological editing and brush painting. SegmentationFacade is
the usual entry point; the engines can also be used on their own.
"""

from .BrushEngine import BrushEngine
from .ConnectedComponentLabeler import ConnectedComponentLabeler
from .ConnectivityKernel import MorphologyKernel, morphology_kernel, neighbor_offsets
from .IntensityAnalyzer import IntensityAnalyzer
from .LabelMap import FOREGROUND, LabelMap, VolumeGeometry
from .MorphologyEngine import MorphologyEngine
from .PerformanceCache import PerformanceCache
from .RegionGrowingEngine import RegionGrowingEngine
from .SegmentationConfig import (
    BrushMode,
    BrushShape,
    BrushToolConfig,
    Connectivity,
    EditingConfig,
    EditingOperation,
    EngineDefaults,
    KernelShape,
    RegionGrowingConfig,
    SimilarityMode,
    ThresholdConfig,
)
from .SegmentationDataStructures import Component, Point3D, Segment
from .SegmentationErrors import (
    BusyError,
    ConfigurationError,
    GeometryError,
    OutOfBoundsError,
    SegmentationError,
    VolumeNotFoundError,
)
from .SegmentationFacade import SegmentationFacade
from .SegmentRegistry import SegmentRegistry
from .ThresholdEngine import ThresholdEngine
from .VolumeAccessor import InMemoryVolumeAccessor, SimpleITKVolumeAccessor, VolumeAccessor

__all__ = [
    "SegmentationFacade",
    "SegmentRegistry",
    "VolumeAccessor",
    "InMemoryVolumeAccessor",
    "SimpleITKVolumeAccessor",
    "LabelMap",
    "VolumeGeometry",
    "FOREGROUND",
    "ConnectedComponentLabeler",
    "MorphologyKernel",
    "morphology_kernel",
    "neighbor_offsets",
    "ThresholdEngine",
    "RegionGrowingEngine",
    "MorphologyEngine",
    "BrushEngine",
    "IntensityAnalyzer",
    "PerformanceCache",
    "Point3D",
    "Segment",
    "Component",
    "Connectivity",
    "SimilarityMode",
    "KernelShape",
    "BrushMode",
    "BrushShape",
    "EditingOperation",
    "ThresholdConfig",
    "RegionGrowingConfig",
    "EditingConfig",
    "BrushToolConfig",
    "EngineDefaults",
    "SegmentationError",
    "ConfigurationError",
    "BusyError",
    "OutOfBoundsError",
    "GeometryError",
    "VolumeNotFoundError",
]
