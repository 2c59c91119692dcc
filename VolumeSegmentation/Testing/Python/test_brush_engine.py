"""Tests for stroke-based painting, erasing and filling."""

import unittest

import numpy as np

from VolumeSegmentationLib.BrushEngine import UNDO_STACK_SIZE, BrushEngine, brush_falloff
from VolumeSegmentationLib.LabelMap import LabelMap, VolumeGeometry
from VolumeSegmentationLib.SegmentationConfig import BrushMode, BrushShape, BrushToolConfig
from VolumeSegmentationLib.SegmentationDataStructures import Point3D
from VolumeSegmentationLib.SegmentationErrors import ConfigurationError, OutOfBoundsError


class TestBrushFalloff(unittest.TestCase):
    """Tests for brush_falloff."""

    def test_centre_has_full_weight(self):
        self.assertEqual(brush_falloff(0.0, 5.0, 0.0), 1.0)

    def test_edge_has_zero_weight(self):
        self.assertEqual(brush_falloff(5.0, 5.0, 0.8), 0.0)

    def test_linear_falloff(self):
        # falloff starts at 4.0 and reaches 0 at 5.0
        self.assertAlmostEqual(brush_falloff(4.5, 5.0, 0.8), 0.5)
        self.assertEqual(brush_falloff(3.9, 5.0, 0.8), 1.0)

    def test_hard_brush(self):
        self.assertEqual(brush_falloff(4.99, 5.0, 1.0), 1.0)


class TestBrushStroke(unittest.TestCase):
    """Tests for painting strokes into a label map."""

    def setUp(self):
        self.label_map = LabelMap(VolumeGeometry(dimensions=(10, 10, 10)))
        self.locked = []
        self.brush = BrushEngine(
            self.label_map,
            BrushToolConfig(radius=2.5, hardness=1.0),
            locked_labels=lambda: self.locked,
        )

    def test_single_dab_paints_disc(self):
        """A hard circle of radius 2.5 covers 21 voxels in the point's slice."""
        self.brush.start_stroke((5, 5, 5), segment_index=1)
        result = self.brush.end_stroke()

        self.assertEqual(result.affected_voxels, 21)
        self.assertEqual(self.label_map.voxel_count(1), 21)
        self.assertEqual(result.modified_slices, [5])
        self.assertEqual(result.bounding_box.min, Point3D(3, 3, 5))
        self.assertEqual(result.bounding_box.max, Point3D(7, 7, 5))
        self.assertTrue((result.previous_labels == 0).all())
        self.assertFalse(self.brush.is_active)

    def test_stroke_points_respect_spacing(self):
        self.brush.start_stroke((5, 5, 5), segment_index=1)

        self.assertFalse(self.brush.add_stroke_point((5, 5, 5)))
        self.assertTrue(self.brush.add_stroke_point((7, 5, 5)))
        self.assertEqual(len(self.brush.current_stroke.points), 2)

    def test_add_point_without_stroke(self):
        self.assertFalse(self.brush.add_stroke_point((1, 1, 1)))

    def test_square_stroke_covers_union_of_dabs(self):
        self.brush.update_config(shape=BrushShape.SQUARE, radius=1)
        self.brush.start_stroke((3, 5, 5), segment_index=2)
        self.brush.add_stroke_point((6, 5, 5))

        result = self.brush.end_stroke()

        self.assertEqual(result.affected_voxels, 18)
        self.assertEqual(self.label_map.voxel_count(2), 18)

    def test_sphere_mode_extends_through_slices(self):
        self.brush.update_config(radius=1.5, sphere_mode=True)
        self.brush.start_stroke((5, 5, 5), segment_index=1)

        result = self.brush.end_stroke()

        # Offsets with dx^2 + dy^2 + dz^2 <= 2
        self.assertEqual(result.affected_voxels, 19)
        self.assertEqual(result.modified_slices, [4, 5, 6])

    def test_dab_clipped_at_grid_edge(self):
        self.brush.update_config(shape=BrushShape.SQUARE, radius=1)
        self.brush.start_stroke((0, 0, 0), segment_index=1)

        result = self.brush.end_stroke()

        self.assertEqual(result.affected_voxels, 4)

    def test_erase_clears_voxels(self):
        self.brush.start_stroke((5, 5, 5), segment_index=1)
        self.brush.end_stroke()

        self.brush.update_config(mode=BrushMode.ERASE)
        self.brush.start_stroke((5, 5, 5), segment_index=1)
        result = self.brush.end_stroke()

        self.assertEqual(result.affected_voxels, 21)
        self.assertEqual(self.label_map.voxel_count(1), 0)
        self.assertTrue((result.previous_labels == 1).all())

    def test_locked_labels_are_not_overwritten(self):
        self.label_map.set((5, 5, 5), 3)
        self.locked.append(3)

        self.brush.start_stroke((5, 5, 5), segment_index=1)
        result = self.brush.end_stroke()

        self.assertEqual(self.label_map.get((5, 5, 5)), 3)
        self.assertEqual(result.affected_voxels, 20)

    def test_repainting_same_label_changes_nothing(self):
        self.brush.start_stroke((5, 5, 5), segment_index=1)
        self.brush.end_stroke()
        self.brush.start_stroke((5, 5, 5), segment_index=1)

        result = self.brush.end_stroke()

        self.assertEqual(result.affected_voxels, 0)
        self.assertIsNone(result.bounding_box)

    def test_fill_in_slice(self):
        """Fill floods the 4-connected same-label region in the point's slice."""
        self.label_map.array[5, :, 4] = 2  # wall at x=4 in slice z=5
        self.brush.update_config(mode=BrushMode.FILL)

        self.brush.start_stroke((1, 5, 5), segment_index=1)
        result = self.brush.end_stroke()

        self.assertEqual(result.affected_voxels, 40)
        self.assertEqual(result.modified_slices, [5])
        self.assertEqual(self.label_map.get((3, 9, 5)), 1)
        self.assertEqual(self.label_map.get((5, 5, 5)), 0)

    def test_fill_in_3d(self):
        self.label_map.array[5, :, 4] = 2
        self.brush.update_config(mode=BrushMode.FILL, sphere_mode=True)

        self.brush.start_stroke((1, 5, 5), segment_index=1)
        result = self.brush.end_stroke()

        # The wall only blocks slice 5, so the fill reaches around it
        self.assertEqual(result.affected_voxels, 1000 - 10)

    def test_starting_stroke_ends_active_one(self):
        self.brush.start_stroke((2, 2, 2), segment_index=1)
        self.brush.start_stroke((7, 7, 7), segment_index=2)

        self.assertEqual(self.label_map.voxel_count(1), 21)
        self.assertEqual(self.brush.undo_depth, 1)
        self.assertEqual(self.brush.current_stroke.segment_index, 2)

    def test_cancel_stroke_applies_nothing(self):
        self.brush.start_stroke((5, 5, 5), segment_index=1)
        stroke = self.brush.cancel_stroke()

        self.assertIsNotNone(stroke)
        self.assertIsNone(self.brush.end_stroke())
        self.assertEqual(self.label_map.voxel_count(1), 0)

    def test_out_of_bounds_point_raises(self):
        with self.assertRaises(OutOfBoundsError):
            self.brush.start_stroke((10, 0, 0), segment_index=1)

    def test_negative_segment_index_raises(self):
        with self.assertRaises(ConfigurationError):
            self.brush.start_stroke((1, 1, 1), segment_index=-1)

    def test_invalid_config_rejected(self):
        with self.assertRaises(ConfigurationError):
            self.brush.update_config(radius=0)
        self.assertEqual(self.brush.config.radius, 2.5)

    def test_unknown_mode_rejected(self):
        with self.assertRaises(ConfigurationError):
            self.brush.update_config(mode="smudge")
        self.assertIs(self.brush.config.mode, BrushMode.PAINT)

    def test_mode_given_by_value(self):
        self.brush.update_config(mode="erase")
        self.assertIs(self.brush.config.mode, BrushMode.ERASE)

    def test_pressure_scales_radius(self):
        self.brush.update_config(pressure_sensitive=True, radius=4)
        stroke = self.brush.start_stroke((5, 5, 5), segment_index=1, pressure=0.5)
        self.assertEqual(stroke.radius, 2.0)

    def test_hard_radius_five_boundary(self):
        """Voxels at distance >= radius are never painted."""
        label_map = LabelMap(VolumeGeometry(dimensions=(20, 20, 20)))
        brush = BrushEngine(label_map, BrushToolConfig(radius=5, hardness=1.0))

        brush.start_stroke((10, 10, 10), segment_index=1)
        result = brush.end_stroke()

        # 81 lattice points with d^2 <= 25, minus the 12 lying exactly on the circle
        self.assertEqual(result.affected_voxels, 69)
        self.assertEqual(label_map.get((14, 10, 10)), 1)
        self.assertEqual(label_map.get((15, 10, 10)), 0)
        self.assertEqual(label_map.get((13, 14, 10)), 0)
        self.assertEqual(label_map.get((13, 13, 10)), 1)


class TestBrushUndo(unittest.TestCase):
    """Tests for the undo stack."""

    def setUp(self):
        self.label_map = LabelMap(VolumeGeometry(dimensions=(10, 10, 10)))
        self.brush = BrushEngine(self.label_map, BrushToolConfig(radius=1, shape=BrushShape.SQUARE))

    def test_undo_returns_latest_stroke(self):
        self.brush.start_stroke((2, 2, 2), segment_index=1)
        self.brush.end_stroke()
        self.brush.start_stroke((7, 7, 7), segment_index=2)
        self.brush.end_stroke()

        stroke = self.brush.undo()

        self.assertEqual(stroke.segment_index, 2)
        self.assertEqual(self.brush.undo_depth, 1)
        # The label map itself is not reverted by the engine
        self.assertEqual(self.label_map.voxel_count(2), 9)

    def test_restore_from_undo_reverts_labels(self):
        before = self.label_map.snapshot()
        self.brush.start_stroke((2, 2, 2), segment_index=1)
        self.brush.end_stroke()

        stroke = self.brush.undo()
        self.label_map.restore(stroke.result.modified_indices, stroke.result.previous_labels)

        np.testing.assert_array_equal(self.label_map.array, before)

    def test_undo_on_empty_stack(self):
        self.assertIsNone(self.brush.undo())

    def test_undo_stack_is_bounded(self):
        for i in range(UNDO_STACK_SIZE + 5):
            self.brush.start_stroke((i % 10, 5, 5), segment_index=1)
            self.brush.end_stroke()

        self.assertEqual(self.brush.undo_depth, UNDO_STACK_SIZE)

    def test_clear_undo_history(self):
        self.brush.start_stroke((2, 2, 2), segment_index=1)
        self.brush.end_stroke()
        self.brush.clear_undo_history()
        self.assertEqual(self.brush.undo_depth, 0)


class TestBrushPreview(unittest.TestCase):
    """Tests for get_brush_preview."""

    def test_preview_clipped_at_corner(self):
        label_map = LabelMap(VolumeGeometry(dimensions=(10, 10, 10)))
        brush = BrushEngine(label_map, BrushToolConfig(radius=2.5, hardness=1.0))

        preview = brush.get_brush_preview((0, 0, 0))

        self.assertEqual(len(preview.points), 8)
        self.assertEqual(preview.weights, [1.0] * 8)
        self.assertEqual(preview.radius, 2.5)
        self.assertFalse(label_map.array.any())

    def test_soft_preview_weights(self):
        label_map = LabelMap(VolumeGeometry(dimensions=(10, 10, 10)))
        brush = BrushEngine(label_map, BrushToolConfig(radius=3, hardness=0.0))

        preview = brush.get_brush_preview((5, 5, 5))
        weights = dict(zip(preview.points, preview.weights))

        self.assertEqual(weights[Point3D(5, 5, 5)], 1.0)
        self.assertAlmostEqual(weights[Point3D(6, 5, 5)], 2.0 / 3.0)


if __name__ == "__main__":
    unittest.main()
