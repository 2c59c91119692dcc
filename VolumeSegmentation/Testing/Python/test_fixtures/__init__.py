"""Test fixtures and synthetic data generators for VolumeSegmentation tests."""

from .synthetic_volume import (
    create_bimodal_volume,
    create_box_mask,
    create_gradient_volume,
    create_hollow_cube,
    create_noisy_sphere,
    create_uniform_volume,
)

__all__ = [
    "create_uniform_volume",
    "create_bimodal_volume",
    "create_gradient_volume",
    "create_noisy_sphere",
    "create_hollow_cube",
    "create_box_mask",
]
