"""Pytest configuration and fixtures for VolumeSegmentation tests."""

import os
import sys

import numpy as np
import pytest

# Add the package root so VolumeSegmentationLib imports as a package
_THIS_DIR = os.path.dirname(os.path.abspath(__file__))
_PACKAGE_ROOT = os.path.dirname(os.path.dirname(_THIS_DIR))
if _PACKAGE_ROOT not in sys.path:
    sys.path.insert(0, _PACKAGE_ROOT)

from VolumeSegmentationLib.LabelMap import LabelMap, VolumeGeometry  # noqa: E402
from VolumeSegmentationLib.VolumeAccessor import InMemoryVolumeAccessor  # noqa: E402


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: mark test as slow to run")


@pytest.fixture
def uniform_volume():
    """Uniform intensity volume (10x10x10) at 100."""
    return np.full((10, 10, 10), fill_value=100, dtype=np.float32)


@pytest.fixture
def bright_voxel_volume():
    """10x10x10 volume at 500 with a single voxel of 1000 at (5, 5, 5)."""
    volume = np.full((10, 10, 10), fill_value=500, dtype=np.float32)
    volume[5, 5, 5] = 1000
    return volume


@pytest.fixture
def bimodal_volume():
    """
    Volume with two distinct intensity regions.

    Low x half: mean=100, std=10
    High x half: mean=200, std=10
    Shape: (10, 40, 40)
    """
    np.random.seed(42)  # Reproducible tests
    volume = np.zeros((10, 40, 40), dtype=np.float32)
    volume[:, :, :20] = np.random.normal(100, 10, (10, 40, 20)).astype(np.float32)
    volume[:, :, 20:] = np.random.normal(200, 10, (10, 40, 20)).astype(np.float32)
    return volume


@pytest.fixture
def geometry():
    """Geometry of a 10x10x10 volume with unit spacing."""
    return VolumeGeometry(dimensions=(10, 10, 10))


@pytest.fixture
def label_map(geometry):
    """Empty label map over the 10x10x10 geometry."""
    return LabelMap(geometry)


@pytest.fixture
def accessor(bright_voxel_volume):
    """In-memory accessor holding the bright voxel volume as 'ct'."""
    accessor = InMemoryVolumeAccessor()
    accessor.add_volume("ct", bright_voxel_volume)
    return accessor
