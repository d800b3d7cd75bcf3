"""
Evaluation metrics for registration results.

Jacobian statistics of deformations (folding detection) and global image
similarity measures.
"""

import numpy as np
from typing import Optional


def jacobian_determinant(deformation: np.ndarray,
                         affine: np.ndarray,
                         ) -> np.ndarray:
    """
    Jacobian determinant of a deformation in world units.

    Args:
        deformation: (X, Y, Z, 3) absolute world positions
        affine: Voxel-to-world matrix of the deformation grid

    Returns:
        jac_det: (X, Y, Z) Jacobian determinant at each voxel
    """
    deformation = np.asarray(deformation, dtype=np.float64)
    voxel_jacobian = np.stack(np.gradient(deformation, axis=(0, 1, 2)), axis=-1)
    jacobian = voxel_jacobian @ np.linalg.inv(np.asarray(affine, dtype=np.float64)[:3, :3])
    return np.linalg.det(jacobian)


def jacobian_statistics(jac_det: np.ndarray, mask: Optional[np.ndarray] = None) -> dict:
    """
    Compute statistics of a Jacobian determinant map.

    Args:
        jac_det: Jacobian determinant map
        mask: Optional region to summarise

    Returns:
        Dictionary of Jacobian statistics
    """
    values = jac_det[mask > 0] if mask is not None else jac_det.ravel()
    if values.size == 0:
        return {'mean': float('nan'), 'std': float('nan'), 'min': float('nan'),
                'max': float('nan'), 'num_folding': 0, 'percent_folding': 0.0}

    stats = {
        'mean': float(values.mean()),
        'std': float(values.std()),
        'min': float(values.min()),
        'max': float(values.max()),
        'num_folding': int((values <= 0).sum()),
        'percent_folding': float((values <= 0).mean() * 100),
    }

    return stats


def _spatial_samples(image: np.ndarray, mask: Optional[np.ndarray]) -> np.ndarray:
    """(N, V) samples of a 3D or 4D image, restricted to a spatial mask."""
    image = np.asarray(image, dtype=np.float64)
    samples = image.reshape(image.shape[:3] + (-1,))
    if mask is not None:
        mask = np.asarray(mask)
        if mask.ndim == 4:
            mask = mask[..., 0]
        return samples[mask > 0]
    return samples.reshape(-1, samples.shape[-1])


def mean_squared_error(fixed: np.ndarray,
                       warped: np.ndarray,
                       mask: Optional[np.ndarray] = None,
                       ) -> float:
    """
    Mean squared intensity difference over all voxels and volumes.

    Args:
        fixed: Template image (3D or 4D)
        warped: Moving image resampled onto the template grid
        mask: Optional spatial mask

    Returns:
        MSE value
    """
    diff = _spatial_samples(fixed, mask) - _spatial_samples(warped, mask)
    return float(np.mean(diff ** 2)) if diff.size else float('nan')


def normalized_cross_correlation(fixed: np.ndarray,
                                 warped: np.ndarray,
                                 mask: Optional[np.ndarray] = None,
                                 ) -> float:
    """
    Global normalized cross-correlation, averaged over volumes for 4D images.

    Returns:
        NCC value (higher is better, 1 is perfect)
    """
    f = _spatial_samples(fixed, mask)
    w = _spatial_samples(warped, mask)
    f = f - f.mean(axis=0)
    w = w - w.mean(axis=0)

    numerator = np.sum(f * w, axis=0)
    denominator = np.sqrt(np.sum(f ** 2, axis=0) * np.sum(w ** 2, axis=0))
    ncc = np.where(denominator < 1e-10, 0.0, numerator / np.maximum(denominator, 1e-10))
    return float(ncc.mean()) if ncc.size else 0.0
