"""
Mappings built from the linear halves and the midway displacement fields.

The midway grid shares the shape of image2 and is obtained by pushing the
image2 grid through the half transform, so the image2 grid maps onto it
point by point.

With L1 = half (midway -> image1) and L2 = half inverse (midway -> image2):

    midway x  -> image1:  L1(x + D1(x))
    midway x  -> image2:  L2(x + D2(x))
    image2 y  -> image1:  q = L2^-1(y); p = q + D2inv(q); L1(p + D1(p))
"""

import numpy as np
from typing import Tuple, Optional

from mrreg.transform.linear import LinearTransform
from mrreg.deformation.warp import identity_deformation, sample_field


def _apply(matrix: np.ndarray, points: np.ndarray) -> np.ndarray:
    return points @ matrix[:3, :3].T + matrix[:3, 3]


def midway_grid(shape: Tuple[int, ...],
                affine: np.ndarray,
                transform: LinearTransform,
                ) -> Tuple[Tuple[int, ...], np.ndarray]:
    """Shape and voxel-to-world matrix of the midway grid for a template grid."""
    return tuple(shape[:3]), transform.get_half() @ np.asarray(affine, dtype=np.float64)


def midway_deformation(field: Optional[np.ndarray],
                       linear: np.ndarray,
                       shape: Tuple[int, ...],
                       affine: np.ndarray,
                       ) -> np.ndarray:
    """
    Absolute positions L(x + D(x)) for every voxel of a midway grid.

    Args:
        field: (X, Y, Z, 3) displacement on the midway grid (None = zero)
        linear: 4x4 matrix from midway to image space
        shape, affine: Midway grid

    Returns:
        (X, Y, Z, 3) world positions in image space
    """
    points = identity_deformation(shape, affine)
    if field is not None:
        points = points + field
    return _apply(np.asarray(linear, dtype=np.float64), points)


def compose_halfway_transforms(transform: LinearTransform,
                               d1: np.ndarray,
                               d2_inv: np.ndarray,
                               midway_affine: np.ndarray,
                               shape: Tuple[int, ...],
                               affine: np.ndarray,
                               n_threads: Optional[int] = None,
                               ) -> np.ndarray:
    """
    Deformation from a template grid into image1 through the midway space.

    Args:
        transform: Linear transform (image2 -> image1) defining the halves
        d1: Image1 side displacement on the midway grid
        d2_inv: Inverse of the image2 side displacement
        midway_affine: Voxel-to-world matrix of the midway grid
        shape, affine: Output (image2) grid

    Returns:
        (X, Y, Z, 3) absolute image1 world positions for every output voxel
    """
    grid = identity_deformation(shape, affine)
    q = _apply(transform.get_half(), grid)
    p = q + sample_field(d2_inv, midway_affine, q, n_threads)
    p = p + sample_field(d1, midway_affine, p, n_threads)
    return _apply(transform.get_half(), p)
