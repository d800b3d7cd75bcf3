"""
Local (windowed) normalised cross-correlation.

Computed over a cubic neighbourhood around every voxel; only defined for
3D images. The per-voxel derivative follows the usual local-CC
approximation that ignores overlap between neighbouring windows.
"""

import numpy as np
from scipy.ndimage import uniform_filter
from typing import Optional

from mrreg.core.exceptions import UnsupportedConfiguration
from mrreg.metric.base import Metric, MetricResult, voxel_mask
from mrreg.utils.parallel import chunked_sum


class CrossCorrelation(Metric):
    """
    cost = -mean(cc), cc = s_ij^2 / (s_ii * s_jj), over the masked voxels.

    Args:
        extent: Odd window size (voxels along each axis)
    """

    name = 'ncc'
    windowed = True
    supports_4d = False
    eps = 1e-10

    def __init__(self, extent: int = 3, n_threads: Optional[int] = None):
        super().__init__(n_threads)
        if extent < 1 or extent % 2 == 0:
            raise ValueError(f"Cross-correlation extent must be odd, got {extent}")
        self.extent = extent

    def local_statistics(self, moved: np.ndarray, target: np.ndarray):
        """Local centred images and (co)variances."""
        size = self.extent
        mu_j = uniform_filter(moved, size=size, mode='constant')
        mu_i = uniform_filter(target, size=size, mode='constant')
        s_ij = uniform_filter(moved * target, size=size, mode='constant') - mu_i * mu_j
        s_ii = uniform_filter(target * target, size=size, mode='constant') - mu_i ** 2
        s_jj = uniform_filter(moved * moved, size=size, mode='constant') - mu_j ** 2
        return target - mu_i, moved - mu_j, s_ij, np.maximum(s_ii, 0), np.maximum(s_jj, 0)

    def evaluate(self,
                 moved: np.ndarray,
                 target: np.ndarray,
                 mask: Optional[np.ndarray] = None,
                 ) -> MetricResult:
        moved = np.asarray(moved, dtype=np.float64)
        target = np.asarray(target, dtype=np.float64)
        if moved.ndim != 3:
            raise UnsupportedConfiguration(
                "cross correlation metric not implemented for data with more than 3 dimensions")
        if moved.shape != target.shape:
            raise ValueError(f"Image shapes differ: {moved.shape} vs {target.shape}")

        include = voxel_mask(mask, moved.shape)
        i_c, j_c, s_ij, s_ii, s_jj = self.local_statistics(moved, target)

        valid = include & (s_ii > self.eps) & (s_jj > self.eps)
        count = int(include.sum())
        if count == 0:
            zeros = np.zeros_like(moved)
            return MetricResult(0.0, zeros, zeros.copy(), 0)

        denom = np.where(valid, s_ii * s_jj, 1.0)
        cc = np.where(valid, s_ij ** 2 / denom, 0.0)
        factor = np.where(valid, 2.0 * s_ij / denom, 0.0)

        flat_cc = cc.ravel()
        total = chunked_sum(lambda s: float(np.sum(flat_cc[s])), flat_cc.size, self.n_threads)

        ratio_j = np.where(valid, s_ij / np.where(valid, s_jj, 1.0), 0.0)
        ratio_i = np.where(valid, s_ij / np.where(valid, s_ii, 1.0), 0.0)
        d_moved = -factor * (i_c - ratio_j * j_c) / count
        d_target = -factor * (j_c - ratio_i * i_c) / count

        return MetricResult(-total / count, d_moved, d_target, count)

    def __repr__(self) -> str:
        return f"CrossCorrelation(extent={self.extent})"
