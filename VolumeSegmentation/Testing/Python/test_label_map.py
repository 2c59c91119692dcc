"""Tests for LabelMap and VolumeGeometry."""

import unittest

import numpy as np
from test_fixtures.synthetic_volume import create_box_mask

from VolumeSegmentationLib.LabelMap import (
    FOREGROUND,
    LabelMap,
    VolumeGeometry,
    check_binary_mask,
    to_binary_mask,
)
from VolumeSegmentationLib.SegmentationDataStructures import Point3D
from VolumeSegmentationLib.SegmentationErrors import GeometryError, OutOfBoundsError


class TestVolumeGeometry(unittest.TestCase):
    """Tests for VolumeGeometry."""

    def setUp(self):
        self.geometry = VolumeGeometry(dimensions=(4, 3, 2), spacing=(0.5, 1.0, 2.0))

    def test_shape_is_zyx(self):
        self.assertEqual(self.geometry.shape, (2, 3, 4))
        self.assertEqual(self.geometry.voxel_count, 24)
        self.assertEqual(self.geometry.voxel_volume, 1.0)

    def test_invalid_dimensions(self):
        with self.assertRaises(GeometryError):
            VolumeGeometry(dimensions=(0, 3, 2))
        with self.assertRaises(GeometryError):
            VolumeGeometry(dimensions=(3, 2))

    def test_invalid_spacing(self):
        with self.assertRaises(GeometryError):
            VolumeGeometry(dimensions=(2, 2, 2), spacing=(1.0, 0.0, 1.0))

    def test_invalid_direction(self):
        with self.assertRaises(GeometryError):
            VolumeGeometry(dimensions=(2, 2, 2), direction=(1.0, 0.0, 0.0))

    def test_for_array(self):
        geometry = VolumeGeometry.for_array(np.zeros((2, 3, 4)), spacing=(1, 2, 3))
        self.assertEqual(geometry.dimensions, (4, 3, 2))
        self.assertEqual(geometry.spacing, (1.0, 2.0, 3.0))

    def test_for_array_rejects_2d(self):
        with self.assertRaises(GeometryError):
            VolumeGeometry.for_array(np.zeros((3, 4)))

    def test_check_point(self):
        self.assertEqual(self.geometry.check_point((3, 2, 1)), Point3D(3, 2, 1))
        with self.assertRaises(OutOfBoundsError):
            self.geometry.check_point((4, 0, 0))
        with self.assertRaises(OutOfBoundsError):
            self.geometry.check_point((0, -1, 0))

    def test_flat_index_matches_numpy(self):
        p = Point3D(3, 1, 1)
        flat = self.geometry.flat_index(p)

        self.assertEqual(flat, 1 * 12 + 1 * 4 + 3)
        self.assertEqual(np.ravel_multi_index(p.index, self.geometry.shape), flat)
        self.assertEqual(self.geometry.point_from_index(flat), p)

    def test_check_buffer_reshapes_flat(self):
        buffer = self.geometry.check_buffer(np.arange(24))
        self.assertEqual(buffer.shape, (2, 3, 4))
        self.assertEqual(buffer[1, 2, 3], 23)

    def test_check_buffer_rejects_mismatch(self):
        with self.assertRaises(GeometryError):
            self.geometry.check_buffer(np.zeros(23))
        with self.assertRaises(GeometryError):
            self.geometry.check_buffer(np.zeros((4, 3, 2)))


class TestBinaryMasks(unittest.TestCase):
    """Tests for mask helpers."""

    def test_to_binary_mask(self):
        mask = to_binary_mask(np.array([0, 1, 7, -2]))
        np.testing.assert_array_equal(mask, [0, FOREGROUND, FOREGROUND, FOREGROUND])
        self.assertEqual(mask.dtype, np.uint8)

    def test_check_binary_mask(self):
        fg = check_binary_mask(np.array([0, 255], dtype=np.uint8))
        np.testing.assert_array_equal(fg, [False, True])

    def test_check_binary_mask_accepts_bool(self):
        fg = check_binary_mask(np.array([True, False]))
        self.assertEqual(fg.dtype, bool)

    def test_check_binary_mask_rejects_other_values(self):
        with self.assertRaises(GeometryError):
            check_binary_mask(np.array([0, 1], dtype=np.uint8))

    def test_check_binary_mask_shape(self):
        with self.assertRaises(GeometryError):
            check_binary_mask(np.zeros((2, 2), dtype=np.uint8), shape=(2, 3))


class TestLabelMap(unittest.TestCase):
    """Tests for LabelMap."""

    def setUp(self):
        self.label_map = LabelMap(VolumeGeometry(dimensions=(10, 10, 10)))

    def test_starts_empty(self):
        self.assertFalse(self.label_map.array.any())
        self.assertEqual(self.label_map.labels_present(), [])

    def test_from_flat_data(self):
        data = np.zeros(1000, dtype=np.int32)
        data[5] = 3
        label_map = LabelMap(VolumeGeometry(dimensions=(10, 10, 10)), data)

        self.assertEqual(label_map.get((5, 0, 0)), 3)
        data[5] = 0
        self.assertEqual(label_map.get((5, 0, 0)), 3)

    def test_rejects_out_of_range_labels(self):
        with self.assertRaises(GeometryError):
            LabelMap(VolumeGeometry(dimensions=(2, 2, 2)), np.full(8, -1))
        with self.assertRaises(GeometryError):
            LabelMap(VolumeGeometry(dimensions=(2, 2, 2)), np.full(8, 70000))

    def test_get_set(self):
        self.label_map.set((1, 2, 3), 4)
        self.assertEqual(self.label_map.get((1, 2, 3)), 4)
        self.assertEqual(self.label_map.array[3, 2, 1], 4)
        with self.assertRaises(OutOfBoundsError):
            self.label_map.get((10, 0, 0))

    def test_snapshot_is_a_copy(self):
        snapshot = self.label_map.snapshot()
        self.label_map.set((0, 0, 0), 1)
        self.assertEqual(snapshot[0, 0, 0], 0)

    def test_apply_mask_replace(self):
        self.label_map.apply_mask(create_box_mask(lo=(0, 0, 0), hi=(1, 1, 1)), 1)

        changed = self.label_map.apply_mask(create_box_mask(lo=(8, 8, 8), hi=(9, 9, 9)), 1)

        self.assertEqual(changed, 16)
        self.assertEqual(self.label_map.voxel_count(1), 8)
        self.assertEqual(self.label_map.get((0, 0, 0)), 0)

    def test_apply_mask_additive(self):
        self.label_map.apply_mask(create_box_mask(lo=(0, 0, 0), hi=(1, 1, 1)), 1)

        changed = self.label_map.apply_mask(
            create_box_mask(lo=(1, 1, 1), hi=(2, 2, 2)), 1, replace=False
        )

        self.assertEqual(changed, 7)
        self.assertEqual(self.label_map.voxel_count(1), 15)

    def test_apply_mask_protects_labels(self):
        self.label_map.set((1, 1, 1), 2)

        changed = self.label_map.apply_mask(
            create_box_mask(lo=(0, 0, 0), hi=(1, 1, 1)), 1, protected_labels=[2]
        )

        self.assertEqual(changed, 7)
        self.assertEqual(self.label_map.get((1, 1, 1)), 2)

    def test_apply_mask_overwrites_unprotected_labels(self):
        self.label_map.set((1, 1, 1), 2)
        self.label_map.apply_mask(create_box_mask(lo=(0, 0, 0), hi=(1, 1, 1)), 1)
        self.assertEqual(self.label_map.get((1, 1, 1)), 1)

    def test_apply_mask_rejects_wrong_shape(self):
        with self.assertRaises(GeometryError):
            self.label_map.apply_mask(np.zeros((5, 5, 5), dtype=np.uint8), 1)

    def test_segment_mask(self):
        self.label_map.set((2, 3, 4), 5)
        mask = self.label_map.segment_mask(5)

        self.assertEqual(int((mask == FOREGROUND).sum()), 1)
        self.assertEqual(mask[4, 3, 2], FOREGROUND)

    def test_clear_segment(self):
        self.label_map.apply_mask(create_box_mask(), 1)
        self.assertEqual(self.label_map.clear_segment(1), 64)
        self.assertEqual(self.label_map.voxel_count(1), 0)

    def test_restore(self):
        before = self.label_map.snapshot()
        indices = np.array([0, 5, 999])
        previous = self.label_map.array.reshape(-1)[indices].copy()
        self.label_map.array.reshape(-1)[indices] = 9

        self.label_map.restore(indices, previous)

        np.testing.assert_array_equal(self.label_map.array, before)

    def test_validate_labels(self):
        self.label_map.set((0, 0, 0), 1)
        self.label_map.set((1, 0, 0), 7)

        errors = self.label_map.validate_labels([1, 2])

        self.assertEqual(len(errors), 1)
        self.assertIn("Label 7", errors[0])
        self.assertEqual(self.label_map.validate_labels([1, 7]), [])


if __name__ == "__main__":
    unittest.main()
