"""Seeded region growing.

Growth is breadth-first from the seed voxels over 26-connected
neighbours. Each unvisited neighbour is scored against the running
statistics of the region grown so far and is either accepted (and queued)
or marked visited-but-excluded so it is never scored again.

Similarity modes:

- ``intensity``: ``|v - mean(region)|`` against the threshold.
- ``gradient``: ``|g - mean_g(region)|`` against the threshold, where g is
  the gradient magnitude from central differences.
- ``adaptive``: ``|v - mean(region)|`` against
  ``t * (1 + min(1, d_seed / radius) * std / |mean|)``, so the acceptance
  window widens with distance from the nearest seed in noisy regions.

One iteration is one dequeued voxel. Every 50 iterations the fractional
growth of the region since the previous check is compared with the
convergence threshold.
"""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from typing import Callable

import numpy as np

from .ConnectivityKernel import neighbor_offsets
from .LabelMap import VolumeGeometry, to_binary_mask
from .ProcessingGuard import ProcessingGuard
from .SegmentationConfig import Connectivity, RegionGrowingConfig, SimilarityMode, StopCriteria
from .SegmentationDataStructures import (
    BoundingBox,
    GrowthOutcome,
    Point3D,
    RegionStatistics,
    VoxelState,
)
from .SegmentationErrors import ConfigurationError

logger = logging.getLogger(__name__)

CONVERGENCE_CHECK_INTERVAL = 50
PROGRESS_INTERVAL = 100
PREVIEW_MAX_ITERATIONS = 100

ProgressCallback = Callable[[int, int, int], None]
"""Called as ``callback(iterations, region_size, queue_size)``."""


def gradient_magnitude(volume: np.ndarray) -> np.ndarray:
    """Gradient magnitude from central differences.

    Voxels on the outer face of the grid have no central difference and
    are left at 0.
    """
    volume = np.asarray(volume, dtype=np.float32)
    gradient = np.zeros(volume.shape, dtype=np.float32)
    if min(volume.shape) < 3:
        return gradient

    inner = (slice(1, -1),) * 3
    gz = (volume[2:, 1:-1, 1:-1] - volume[:-2, 1:-1, 1:-1]) / 2
    gy = (volume[1:-1, 2:, 1:-1] - volume[1:-1, :-2, 1:-1]) / 2
    gx = (volume[1:-1, 1:-1, 2:] - volume[1:-1, 1:-1, :-2]) / 2
    gradient[inner] = np.sqrt(gx * gx + gy * gy + gz * gz)
    return gradient


class _RunningStats:
    """Sum and sum of squares of the region's intensities and gradients."""

    def __init__(self):
        self.count = 0
        self.total = 0.0
        self.total_sq = 0.0
        self.gradient_total = 0.0

    def add(self, value: float, gradient: float):
        self.count += 1
        self.total += value
        self.total_sq += value * value
        self.gradient_total += gradient

    @property
    def mean(self) -> float:
        return self.total / self.count if self.count else 0.0

    @property
    def std(self) -> float:
        if not self.count:
            return 0.0
        variance = self.total_sq / self.count - self.mean**2
        return math.sqrt(max(variance, 0.0))

    @property
    def gradient_mean(self) -> float:
        return self.gradient_total / self.count if self.count else 0.0


class RegionGrowingEngine(ProcessingGuard):
    """Grows regions from seed points.

    ``request_stop`` may be called while a growth is running (for example
    from the progress callback); the run returns its partial region with
    ``converged=False``.

    Usage:
        engine = RegionGrowingEngine()
        outcome = engine.grow(volume, geometry, config)
        if outcome.converged:
            label_map.apply_mask(outcome.grown_mask, segment_index, replace=False)
    """

    def __init__(self):
        self._stop_requested = False

    def request_stop(self):
        """Ask a running growth to stop at the next iteration."""
        if self.is_processing:
            self._stop_requested = True
            logger.info("Region growing stop requested")

    def grow(
        self,
        volume: np.ndarray,
        geometry: VolumeGeometry,
        config: RegionGrowingConfig,
        progress_callback: ProgressCallback | None = None,
        gradient: np.ndarray | None = None,
    ) -> GrowthOutcome:
        """Grow a region from the configured seed points.

        Args:
            volume: Intensity array matching ``geometry``.
            geometry: Volume geometry.
            config: Seeds, similarity, constraints and stop criteria.
            progress_callback: Called every 100 iterations.
            gradient: Precomputed gradient magnitude; computed when omitted.

        Returns:
            GrowthOutcome with the grown mask.

        Raises:
            ConfigurationError: If there are no seed points or the config
                is otherwise invalid.
            OutOfBoundsError: If a seed lies outside the grid.
            BusyError: If a growth is already running on this engine.
        """
        return self._run("region growing", volume, geometry, config, progress_callback, gradient)

    def preview(
        self,
        volume: np.ndarray,
        geometry: VolumeGeometry,
        config: RegionGrowingConfig,
        gradient: np.ndarray | None = None,
    ) -> GrowthOutcome:
        """Run the same growth capped at 100 iterations."""
        capped = StopCriteria(
            max_iterations=min(PREVIEW_MAX_ITERATIONS, config.stop_criteria.max_iterations),
            convergence_threshold=config.stop_criteria.convergence_threshold,
        )
        preview_config = RegionGrowingConfig(
            seed_points=config.seed_points,
            similarity=config.similarity,
            constraints=config.constraints,
            stop_criteria=capped,
        )
        return self._run("region growing preview", volume, geometry, preview_config, None, gradient)

    def _run(
        self,
        operation: str,
        volume: np.ndarray,
        geometry: VolumeGeometry,
        config: RegionGrowingConfig,
        progress_callback: ProgressCallback | None,
        gradient: np.ndarray | None,
    ) -> GrowthOutcome:
        errors = config.validate()
        if errors:
            raise ConfigurationError("; ".join(errors))
        seeds = list(dict.fromkeys(geometry.check_point(p, "Seed point") for p in config.seed_points))
        volume = geometry.check_buffer(volume, "volume")
        if gradient is None:
            gradient = gradient_magnitude(volume)
        else:
            gradient = geometry.check_buffer(gradient, "gradient")

        with self.processing(operation):
            self._stop_requested = False
            try:
                return self._grow(volume, gradient, geometry, config, seeds, progress_callback)
            finally:
                self._stop_requested = False

    def _grow(
        self,
        volume: np.ndarray,
        gradient: np.ndarray,
        geometry: VolumeGeometry,
        config: RegionGrowingConfig,
        seeds: list[Point3D],
        progress_callback: ProgressCallback | None,
    ) -> GrowthOutcome:
        start_time = time.perf_counter()
        max_iterations = config.stop_criteria.max_iterations
        max_region_size = config.constraints.max_region_size or math.inf
        max_distance = config.constraints.max_distance
        offsets = neighbor_offsets(Connectivity.CORNER)

        states: dict[Point3D, VoxelState] = {}
        stats = _RunningStats()
        for seed in seeds:
            value, grad = float(volume[seed.index]), float(gradient[seed.index])
            states[seed] = VoxelState(seed, value, grad, visited=True, in_region=True)
            stats.add(value, grad)

        queue = deque(seeds)
        iterations = 0
        previous_size = stats.count
        final_similarity = 0.0
        converged = None
        cancelled = False
        size_limited = stats.count >= max_region_size

        while queue and iterations < max_iterations and not size_limited:
            if self._stop_requested:
                cancelled = True
                break

            current = queue.popleft()
            for offset in offsets:
                neighbor = Point3D(current.x + offset.x, current.y + offset.y, current.z + offset.z)
                if not geometry.contains(neighbor) or neighbor in states:
                    continue

                value = float(volume[neighbor.index])
                grad = float(gradient[neighbor.index])
                d_seed = min(neighbor.distance_to(s) for s in seeds)

                if d_seed > max_distance:
                    states[neighbor] = VoxelState(neighbor, value, grad)
                    continue

                score, threshold = self._score(value, grad, d_seed, stats, config)
                final_similarity = score

                if score <= threshold:
                    states[neighbor] = VoxelState(neighbor, value, grad, in_region=True)
                    stats.add(value, grad)
                    queue.append(neighbor)
                    if stats.count >= max_region_size:
                        size_limited = True
                        break
                else:
                    states[neighbor] = VoxelState(neighbor, value, grad)

            iterations += 1

            if progress_callback is not None and iterations % PROGRESS_INTERVAL == 0:
                progress_callback(iterations, stats.count, len(queue))

            if iterations % CONVERGENCE_CHECK_INTERVAL == 0:
                growth_rate = (stats.count - previous_size) / previous_size
                if growth_rate < config.stop_criteria.convergence_threshold:
                    logger.debug(
                        f"Region growing converged after {iterations} iterations "
                        f"(region={stats.count}, growth rate={growth_rate:.4f})"
                    )
                    converged = True
                    break
                previous_size = stats.count

        if converged is None:
            converged = iterations < max_iterations and not cancelled

        members = [p for p, s in states.items() if s.in_region]
        outcome = self._outcome(members, volume, geometry, iterations, final_similarity, converged, cancelled)

        elapsed = (time.perf_counter() - start_time) * 1000
        logger.debug(
            f"Region growing finished: {len(members)} voxels, {iterations} iterations, "
            f"converged={converged}, cancelled={cancelled}, size_limited={size_limited}, "
            f"{elapsed:.1f}ms"
        )
        return outcome

    @staticmethod
    def _score(
        value: float,
        grad: float,
        d_seed: float,
        stats: _RunningStats,
        config: RegionGrowingConfig,
    ) -> tuple[float, float]:
        """Return (score, acceptance threshold) for a candidate voxel."""
        similarity = config.similarity
        threshold = similarity.threshold

        if similarity.mode == SimilarityMode.GRADIENT:
            return abs(grad - stats.gradient_mean), threshold

        score = abs(value - stats.mean)
        if similarity.mode == SimilarityMode.ADAPTIVE:
            mean = abs(stats.mean)
            factor = min(1.0, d_seed / similarity.radius)
            spread = stats.std / mean if mean > 0 else 0.0
            threshold = threshold * (1 + factor * spread)
        return score, threshold

    @staticmethod
    def _outcome(
        members: list[Point3D],
        volume: np.ndarray,
        geometry: VolumeGeometry,
        iterations: int,
        final_similarity: float,
        converged: bool,
        cancelled: bool,
    ) -> GrowthOutcome:
        region = np.zeros(geometry.shape, dtype=bool)
        if not members:
            return GrowthOutcome(to_binary_mask(region), iterations, final_similarity, converged, cancelled)

        coords = np.array([(p.x, p.y, p.z) for p in members])
        region[coords[:, 2], coords[:, 1], coords[:, 0]] = True
        values = volume[region].astype(np.float64)

        lo, hi = coords.min(axis=0), coords.max(axis=0)
        bounds = BoundingBox(Point3D(*(int(v) for v in lo)), Point3D(*(int(v) for v in hi)))
        box_voxels = int(np.prod(hi - lo + 1))
        centroid = tuple(float(c) for c in coords.mean(axis=0))

        statistics = RegionStatistics(
            mean_intensity=float(values.mean()),
            standard_deviation=float(values.std()),
            min_intensity=float(values.min()),
            max_intensity=float(values.max()),
            voxel_count=len(members),
            compactness=len(members) / box_voxels,
        )
        return GrowthOutcome(
            grown_mask=to_binary_mask(region),
            iterations=iterations,
            final_similarity=final_similarity,
            converged=converged,
            cancelled=cancelled,
            statistics=statistics,
            bounds=bounds,
            centroid=centroid,
        )
