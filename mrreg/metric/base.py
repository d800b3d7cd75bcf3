"""
Similarity metric interface.

A metric compares the moving image resampled into the evaluation grid
("moved") with the template ("target") and returns the scalar cost together
with its derivative with respect to every moved and target sample. The
drivers turn these per-voxel derivatives into transform-parameter gradients
(linear stages) or displacement updates (SyN).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
import numpy as np
from typing import Optional


@dataclass
class MetricResult:
    """
    Cost and derivatives of a metric evaluation.

    Attributes:
        cost: Scalar cost (lower is better)
        d_moved: d(cost)/d(moved), same shape as the moved samples
        d_target: d(cost)/d(target), same shape as the target samples
        count: Number of voxels that contributed
    """
    cost: float
    d_moved: np.ndarray
    d_target: np.ndarray
    count: int


class Metric(ABC):
    """Base class for all similarity metrics."""

    name = 'metric'
    # Windowed metrics need the full resampled grid rather than scattered samples
    windowed = False
    supports_4d = True

    def __init__(self, n_threads: Optional[int] = None):
        self.n_threads = n_threads

    @abstractmethod
    def evaluate(self,
                 moved: np.ndarray,
                 target: np.ndarray,
                 mask: Optional[np.ndarray] = None,
                 ) -> MetricResult:
        """
        Evaluate the metric.

        Args:
            moved: (N,) / (N, V) samples, or a full (X, Y, Z) grid for windowed metrics
            target: Template samples, same shape as moved
            mask: Boolean mask over voxels (None = all voxels)

        Returns:
            MetricResult with cost averaged over the contributing voxels
        """

    def __call__(self, moved, target, mask=None) -> MetricResult:
        return self.evaluate(moved, target, mask)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


def voxel_mask(mask: Optional[np.ndarray], shape) -> np.ndarray:
    """Boolean voxel mask broadcastable against samples of the given shape."""
    if mask is None:
        return np.ones(shape, dtype=bool)
    return np.asarray(mask, dtype=bool).reshape(shape)
