"""
Mean squared difference metric.

For multi-volume (4D) data the volume axis is included in the same sum,
without any per-volume weighting.
"""

import numpy as np
from typing import Optional

from mrreg.metric.base import Metric, MetricResult, voxel_mask
from mrreg.utils.parallel import chunked_sum


class MeanSquared(Metric):
    """cost = mean((moved - target)^2) over the masked voxels (and volumes)."""

    name = 'diff'

    def evaluate(self,
                 moved: np.ndarray,
                 target: np.ndarray,
                 mask: Optional[np.ndarray] = None,
                 ) -> MetricResult:
        moved = np.asarray(moved, dtype=np.float64)
        target = np.asarray(target, dtype=np.float64)
        if moved.shape != target.shape:
            raise ValueError(f"Sample shapes differ: {moved.shape} vs {target.shape}")

        n_voxels = moved.shape[0]
        n_volumes = int(np.prod(moved.shape[1:])) if moved.ndim > 1 else 1
        include = voxel_mask(mask, (n_voxels,))
        diff = (moved - target).reshape(n_voxels, n_volumes)
        diff[~include] = 0.0

        count = int(include.sum())
        if count == 0:
            zeros = np.zeros_like(moved)
            return MetricResult(0.0, zeros, zeros.copy(), 0)

        total = chunked_sum(lambda s: float(np.sum(diff[s] ** 2)), n_voxels, self.n_threads)
        n_samples = count * n_volumes

        d_moved = (2.0 * diff / n_samples).reshape(moved.shape)
        return MetricResult(total / n_samples, d_moved, -d_moved, count)
