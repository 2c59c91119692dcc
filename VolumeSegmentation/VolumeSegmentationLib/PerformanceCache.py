"""Cache for derived per-volume data.

Interactive segmentation repeats the same expensive preparation many
times: region growing needs the gradient magnitude of the whole volume,
and threshold suggestions are requested again and again while the user
moves the seed around one structure.

Caching tiers:
- Tier 1 (Gradient): long-lived, kept until the volume changes
- Tier 2 (Threshold suggestions): reused while the seed intensity stays
  within tolerance of the cached one (off by default)
"""

from __future__ import annotations

import logging
import time
from typing import Callable

import numpy as np

from .SegmentationDataStructures import ThresholdSuggestion

logger = logging.getLogger(__name__)


class PerformanceCache:
    """Per-facade cache of gradient volumes and threshold suggestions."""

    def __init__(self, threshold_caching_enabled: bool = False, max_gradients: int = 2):
        """Initialize the cache.

        Args:
            threshold_caching_enabled: Reuse threshold suggestions for seeds
                of similar intensity. Disabled by default for accuracy.
            max_gradients: Number of gradient volumes kept at once.
        """
        self.threshold_caching_enabled = threshold_caching_enabled
        self.max_gradients = max_gradients

        # Tier 1: volume id -> (source array, gradient magnitude)
        self._gradients: dict[str, tuple[np.ndarray, np.ndarray]] = {}

        # Tier 2
        self._suggestion: ThresholdSuggestion | None = None
        self._suggestion_key: tuple | None = None
        self._suggestion_seed_intensity: float | None = None
        self._suggestion_tolerance: float = 0.0

        self.stats = CacheStats()

    def get_or_compute_gradient(
        self,
        volume_id: str,
        volume: np.ndarray,
        compute_func: Callable[[np.ndarray], np.ndarray],
    ) -> np.ndarray:
        """Return the cached gradient for a volume or compute it.

        The entry is only reused while the accessor keeps returning the same
        underlying array for ``volume_id``.

        Args:
            volume_id: Volume identifier.
            volume: Intensity array (z, y, x).
            compute_func: Gradient magnitude function.

        Returns:
            Gradient magnitude array shaped like ``volume``.
        """
        entry = self._gradients.get(volume_id)
        if entry is not None and _same_buffer(entry[0], volume):
            self.stats.gradient_hits += 1
            logger.debug(f"Gradient cache hit for volume '{volume_id}'")
            return entry[1]

        self.stats.gradient_misses += 1
        start_time = time.perf_counter()
        gradient = compute_func(volume)
        elapsed = (time.perf_counter() - start_time) * 1000
        self.stats.total_compute_time_ms += elapsed
        logger.debug(f"Gradient cache miss for volume '{volume_id}': {elapsed:.1f}ms")

        self._gradients.pop(volume_id, None)
        while len(self._gradients) >= self.max_gradients > 0:
            self._gradients.pop(next(iter(self._gradients)))
        if self.max_gradients > 0:
            self._gradients[volume_id] = (volume, gradient)
        return gradient

    def get_or_compute_suggestion(
        self,
        key: tuple,
        seed_intensity: float,
        compute_func: Callable[[], ThresholdSuggestion],
    ) -> ThresholdSuggestion:
        """Return a cached threshold suggestion or compute a new one.

        Args:
            key: Everything except the seed that the suggestion depends on
                (volume id, method, ROI radius, sensitivity).
            seed_intensity: Intensity at the new seed.
            compute_func: Produces a fresh suggestion.

        Returns:
            ThresholdSuggestion.
        """
        if self._can_reuse_suggestion(key, seed_intensity):
            self.stats.threshold_hits += 1
            logger.debug(
                f"Threshold cache hit: seed={seed_intensity:.1f}, "
                f"cached={self._suggestion_seed_intensity:.1f}"
            )
            return self._suggestion

        self.stats.threshold_misses += 1
        suggestion = compute_func()

        self._suggestion = suggestion
        self._suggestion_key = key
        self._suggestion_seed_intensity = seed_intensity
        self._suggestion_tolerance = max(suggestion.std * 1.5, 10.0)
        return suggestion

    def _can_reuse_suggestion(self, key: tuple, seed_intensity: float) -> bool:
        if not self.threshold_caching_enabled or self._suggestion is None:
            return False
        if key != self._suggestion_key or self._suggestion_seed_intensity is None:
            return False
        return abs(seed_intensity - self._suggestion_seed_intensity) <= self._suggestion_tolerance

    def invalidate(self, volume_id: str | None = None):
        """Drop cached data for one volume, or everything when no id is given."""
        if volume_id is None:
            self._gradients.clear()
        else:
            self._gradients.pop(volume_id, None)
        self._suggestion = None
        self._suggestion_key = None
        self._suggestion_seed_intensity = None
        self._suggestion_tolerance = 0.0

    def clear(self):
        """Clear all caches and statistics."""
        self.invalidate()
        self.stats.reset()


def _same_buffer(a: np.ndarray, b: np.ndarray) -> bool:
    if a is b:
        return True
    if a.shape != b.shape or a.dtype != b.dtype or a.strides != b.strides:
        return False
    # Read-only views handed out by accessors share the base buffer
    return a.__array_interface__["data"][0] == b.__array_interface__["data"][0]


class CacheStats:
    """Statistics for cache performance monitoring."""

    def __init__(self):
        self.reset()

    def reset(self):
        """Reset all statistics."""
        self.gradient_hits = 0
        self.gradient_misses = 0
        self.threshold_hits = 0
        self.threshold_misses = 0
        self.total_compute_time_ms = 0.0

    def log_summary(self):
        """Log cache statistics summary."""
        total_gradient = self.gradient_hits + self.gradient_misses
        total_threshold = self.threshold_hits + self.threshold_misses

        if total_gradient > 0:
            logger.debug(f"Gradient cache hit rate: {self.gradient_hits / total_gradient:.1%}")

        if total_threshold > 0:
            logger.debug(
                f"Threshold cache hit rate: {self.threshold_hits / total_threshold:.1%} "
                f"({self.threshold_hits}/{total_threshold})"
            )

        if self.total_compute_time_ms > 0:
            logger.debug(f"Total computation time: {self.total_compute_time_ms:.1f}ms")
