"""
Displacement field algebra.

Fields are (X, Y, Z, 3) arrays of world-space (mm) displacements defined on
a grid with a voxel-to-world affine. A field maps a grid point x to
x + field(x). Fields are sampled with trilinear interpolation and clamped
at the grid boundary.
"""

import numpy as np
from scipy.ndimage import map_coordinates, gaussian_filter
from typing import Tuple, Optional

from mrreg.preprocessing.resample import grid_points, world_to_voxel
from mrreg.utils.parallel import chunked_concatenate


def identity_deformation(shape: Tuple[int, ...], affine: np.ndarray) -> np.ndarray:
    """(X, Y, Z, 3) world position of every grid voxel."""
    return grid_points(shape, affine).reshape(tuple(shape[:3]) + (3,))


def displacement_to_deformation(field: np.ndarray, affine: np.ndarray) -> np.ndarray:
    """Absolute positions x + field(x)."""
    return identity_deformation(field.shape, affine) + field


def sample_field(field: np.ndarray,
                 affine: np.ndarray,
                 points: np.ndarray,
                 n_threads: Optional[int] = None,
                 ) -> np.ndarray:
    """
    Interpolate a displacement field at arbitrary world points.

    Args:
        field: (X, Y, Z, 3) displacement field
        affine: Voxel-to-world matrix of the field grid
        points: (..., 3) world coordinates
        n_threads: Worker count

    Returns:
        (..., 3) displacements
    """
    points = np.asarray(points, dtype=np.float64)
    lead_shape = points.shape[:-1]
    voxels = world_to_voxel(affine, points.reshape(-1, 3))

    def sample_chunk(s):
        coords = voxels[s].T
        return np.stack([
            map_coordinates(field[..., c], coords, order=1, mode='nearest')
            for c in range(3)
        ], axis=-1)

    if len(voxels) == 0:
        return np.zeros(lead_shape + (3,))
    return chunked_concatenate(sample_chunk, len(voxels), n_threads).reshape(lead_shape + (3,))


def compose_dvfs(dvf1: np.ndarray,
                 dvf2: np.ndarray,
                 affine: np.ndarray,
                 n_threads: Optional[int] = None,
                 ) -> np.ndarray:
    """
    Compose two displacement fields on the same grid.

    The result applies dvf1 first and then dvf2:
    x -> x + dvf1(x) + dvf2(x + dvf1(x)).

    Args:
        dvf1: (X, Y, Z, 3) first field
        dvf2: (X, Y, Z, 3) second field
        affine: Voxel-to-world matrix of the grid

    Returns:
        (X, Y, Z, 3) composed field
    """
    warped = displacement_to_deformation(dvf1, affine)
    return dvf1 + sample_field(dvf2, affine, warped, n_threads)


def invert_dvf(dvf: np.ndarray,
               affine: np.ndarray,
               initial: Optional[np.ndarray] = None,
               num_iterations: int = 20,
               tolerance: float = 1e-3,
               n_threads: Optional[int] = None,
               ) -> np.ndarray:
    """
    Inverse of a displacement field by fixed-point iteration.

    Solves inv(x) = -dvf(x + inv(x)), starting from `initial` (the previous
    inverse) or from -dvf.

    Args:
        dvf: (X, Y, Z, 3) forward field
        affine: Voxel-to-world matrix of the grid
        initial: Starting estimate of the inverse
        num_iterations: Maximum number of iterations
        tolerance: Stop when the largest update falls below this (voxels)

    Returns:
        (X, Y, Z, 3) inverse field
    """
    inv_dvf = -dvf.copy() if initial is None else np.array(initial, dtype=np.float64)
    grid = identity_deformation(dvf.shape, affine)
    voxel_size = float(np.min(np.linalg.norm(np.asarray(affine)[:3, :3], axis=0)))

    for _ in range(num_iterations):
        updated = -sample_field(dvf, affine, grid + inv_dvf, n_threads)
        change = np.abs(updated - inv_dvf).max() if updated.size else 0.0
        inv_dvf = updated
        if change < tolerance * voxel_size:
            break

    return inv_dvf


def inverse_error(dvf: np.ndarray,
                  inv_dvf: np.ndarray,
                  affine: np.ndarray,
                  n_threads: Optional[int] = None,
                  ) -> float:
    """Largest residual |inv(x) + dvf(x + inv(x))| in mm."""
    composed = compose_dvfs(inv_dvf, dvf, affine, n_threads)
    return float(np.linalg.norm(composed, axis=-1).max()) if composed.size else 0.0


def smooth_field(field: np.ndarray, sigma: float) -> np.ndarray:
    """Gaussian smoothing of every component (sigma in voxels)."""
    if sigma <= 0:
        return field.copy()
    return np.stack([
        gaussian_filter(field[..., c], sigma=sigma, mode='nearest')
        for c in range(field.shape[-1])
    ], axis=-1)


def resample_field(field: np.ndarray,
                   affine_in: np.ndarray,
                   shape_out: Tuple[int, ...],
                   affine_out: np.ndarray,
                   n_threads: Optional[int] = None,
                   ) -> np.ndarray:
    """
    Resample a displacement field onto another grid of the same space.

    Displacements are in world units so values carry over unchanged.
    """
    points = identity_deformation(shape_out, affine_out)
    return sample_field(field, affine_in, points, n_threads)


def compute_displacement_magnitude(field: np.ndarray) -> np.ndarray:
    """(X, Y, Z) displacement magnitude in mm."""
    return np.linalg.norm(field, axis=-1)
