"""
Robust difference metrics.

The voxel-wise difference is passed through an estimator that grows slower
than the square for large residuals, so outliers have less influence on the
cost and on the gradient. For 4D data L1 and LP act on every volume while L2
acts on the Euclidean norm of the difference vector of each voxel.
"""

from abc import ABC, abstractmethod
import numpy as np
from typing import Optional, Tuple

from mrreg.metric.base import Metric, MetricResult, voxel_mask
from mrreg.utils.parallel import chunked_sum


class Estimator(ABC):
    """Robust estimator rho(residuals) and its derivative."""

    name = 'estimator'
    eps = 1e-6

    @abstractmethod
    def __call__(self, diff: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Args:
            diff: (N, V) residuals

        Returns:
            rho: (N,) per-voxel cost
            slope: (N, V) d(rho)/d(diff)
        """

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class L1(Estimator):
    """Sum of (smoothed) absolute residuals."""

    name = 'l1'

    def __call__(self, diff):
        magnitude = np.sqrt(diff ** 2 + self.eps ** 2)
        return magnitude.sum(axis=1), diff / magnitude


class L2(Estimator):
    """Euclidean norm of the residual vector (not squared)."""

    name = 'l2'

    def __call__(self, diff):
        norm = np.sqrt(np.sum(diff ** 2, axis=1) + self.eps ** 2)
        return norm, diff / norm[:, None]


class LP(Estimator):
    """Sum of |residual|^p with 1 <= p < 2."""

    name = 'lp'

    def __init__(self, power: float = 1.2):
        if not 0 < power <= 2:
            raise ValueError(f"LP power must be in (0, 2], got {power}")
        self.power = power

    def __call__(self, diff):
        squared = diff ** 2 + self.eps ** 2
        rho = squared ** (self.power / 2.0)
        slope = self.power * diff * squared ** (self.power / 2.0 - 1.0)
        return rho.sum(axis=1), slope

    def __repr__(self) -> str:
        return f"LP(power={self.power})"


def get_estimator(name: str, lp_power: float = 1.2) -> Optional[Estimator]:
    """Estimator by name ('none' returns None)."""
    if name == 'none':
        return None
    elif name == 'l1':
        return L1()
    elif name == 'l2':
        return L2()
    elif name == 'lp':
        return LP(lp_power)
    else:
        raise ValueError(f"Unknown robust estimator: {name}")


class RobustDifference(Metric):
    """Mean over voxels of estimator(moved - target); 3D and 4D forms."""

    name = 'robust'

    def __init__(self, estimator: Estimator, n_threads: Optional[int] = None):
        super().__init__(n_threads)
        self.estimator = estimator

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
        include = voxel_mask(mask, (n_voxels,))
        diff = (moved - target).reshape(n_voxels, -1)

        count = int(include.sum())
        if count == 0:
            zeros = np.zeros_like(moved)
            return MetricResult(0.0, zeros, zeros.copy(), 0)

        rho, slope = self.estimator(diff)
        rho[~include] = 0.0
        slope[~include] = 0.0

        total = chunked_sum(lambda s: float(np.sum(rho[s])), n_voxels, self.n_threads)
        d_moved = (slope / count).reshape(moved.shape)
        return MetricResult(total / count, d_moved, -d_moved, count)

    def __repr__(self) -> str:
        return f"RobustDifference({self.estimator!r})"
