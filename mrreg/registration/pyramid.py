"""
Multi-resolution image pyramids.

Levels are ordered coarsest first, following the scale factors of a stage.
"""

from dataclasses import dataclass
import numpy as np
from typing import List, Optional, Sequence

from mrreg.preprocessing.resample import downsample, downsample_mask


@dataclass
class PyramidLevel:
    """One resolution level of an image."""
    scale: float
    image: np.ndarray
    affine: np.ndarray
    mask: Optional[np.ndarray] = None

    @property
    def shape(self):
        return self.image.shape[:3]

    @property
    def voxel_sizes(self) -> np.ndarray:
        return np.linalg.norm(self.affine[:3, :3], axis=0)


def build_pyramid(image: np.ndarray,
                  affine: np.ndarray,
                  scale_factors: Sequence[float],
                  mask: Optional[np.ndarray] = None,
                  ) -> List[PyramidLevel]:
    """
    Downsample an image (and its mask) once per scale factor.

    Args:
        image: (X, Y, Z) or (X, Y, Z, V) array
        affine: Voxel-to-world matrix
        scale_factors: Scale per level, coarsest first
        mask: Optional binary mask on the image grid

    Returns:
        List of PyramidLevel
    """
    levels = []
    for scale in scale_factors:
        data, level_affine = downsample(image, affine, scale)
        level_mask = None
        if mask is not None:
            level_mask = downsample_mask(mask, affine, data.shape[:3], level_affine)
        levels.append(PyramidLevel(float(scale), data, level_affine, level_mask))
    return levels
