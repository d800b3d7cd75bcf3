"""
Reorientation of orientation-encoded (FOD) images.

Each voxel's SH series is represented as a weighted sum of apodised
point-spread functions (aPSFs) centred on the directions of a direction set.
Reorientation rotates those directions with the local rotation and
re-assembles the series from the rotated lobes. With an identity rotation
the series is reproduced exactly.

Only the rotational part of the local Jacobian is used; scaling and shear
do not change orientations.
"""

import numpy as np
from concurrent.futures import ThreadPoolExecutor
from typing import Optional
import warnings

from tqdm import tqdm

from mrreg.core.exceptions import ConfigurationError
from mrreg.fod.sh import n_for_l, l_for_n, is_sh_series, degrees, sh_basis
from mrreg.fod.directions import default_directions
from mrreg.utils.parallel import chunk_slices, get_number_of_threads


# Per-voxel rotations allocate (chunk, directions, coefficients) arrays
REORIENT_CHUNK_SIZE = 2048


def apsf_weights(lmax: int) -> np.ndarray:
    """Hann-type apodisation of every coefficient of an lmax series."""
    l = degrees(lmax).astype(np.float64)
    return 0.5 * (1.0 + np.cos(np.pi * l / (lmax + 2)))


def polar_rotations(jacobians: np.ndarray) -> np.ndarray:
    """
    Rotational part of (..., 3, 3) matrices (closest proper rotations).

    Singular values are discarded; reflections are removed by flipping the
    axis of the smallest singular value.
    """
    jacobians = np.asarray(jacobians, dtype=np.float64)
    U, _, Vt = np.linalg.svd(jacobians)
    rotations = U @ Vt
    flip = np.linalg.det(rotations) < 0
    if np.any(flip):
        U = U.copy()
        U[flip, :, -1] *= -1
        rotations = U @ Vt
    return rotations


def reorientation_rotations(jacobians: np.ndarray) -> np.ndarray:
    """
    Rotations to apply to the signal of a resampled image.

    The resampled image at x is read from the input at T(x); with M the
    Jacobian of T, the signal orientations are carried by M^-1, whose
    rotational part is the transpose of the rotational part of M.
    """
    return np.swapaxes(polar_rotations(jacobians), -1, -2)


class APSFReorienter:
    """
    Reorients SH series with an aPSF representation on a direction set.

    Args:
        lmax: Even band limit of the series being reoriented
        directions: (K, 3) direction set (default: electrostatic set sized for lmax)
    """

    def __init__(self, lmax: int, directions: Optional[np.ndarray] = None):
        if lmax < 0 or lmax % 2:
            raise ConfigurationError(f"lmax must be even and non-negative, got {lmax}")
        self.lmax = lmax
        self.directions = default_directions(lmax) if directions is None else np.asarray(directions, dtype=np.float64)
        self.n_coefficients = n_for_l(lmax)

        if len(self.directions) < self.n_coefficients:
            warnings.warn(f"{len(self.directions)} directions cannot represent lmax={lmax} exactly; "
                          "reorientation will be approximate")

        self.apodisation = apsf_weights(lmax)
        # aPSF lobe centred on each direction, as SH coefficients: (N, K)
        self.lobes = (sh_basis(self.directions, lmax) * self.apodisation).T
        # lobe amplitudes reproducing a series: (K, N)
        self.amplitude_operator = np.linalg.pinv(self.lobes)

    def lobes_for(self, rotation: np.ndarray) -> np.ndarray:
        """(N, K) lobe coefficients after rotating the direction set."""
        rotated = self.directions @ np.asarray(rotation, dtype=np.float64).T
        return (sh_basis(rotated, self.lmax) * self.apodisation).T

    def operator(self, rotation: np.ndarray) -> np.ndarray:
        """(N, N) matrix mapping a series to its rotated version."""
        return self.lobes_for(rotation) @ self.amplitude_operator

    def rotate(self, coefficients: np.ndarray, rotation: np.ndarray) -> np.ndarray:
        """Apply one rotation to (..., N) coefficient vectors."""
        coefficients = np.asarray(coefficients, dtype=np.float64)
        return coefficients @ self.operator(rotation).T

    def rotate_each(self,
                    coefficients: np.ndarray,
                    rotations: np.ndarray,
                    n_threads: Optional[int] = None,
                    verbose: bool = False,
                    ) -> np.ndarray:
        """
        Apply a different rotation to every coefficient vector.

        Args:
            coefficients: (M, N) series
            rotations: (M, 3, 3) rotations
            n_threads: Worker count
            verbose: Show a progress bar

        Returns:
            (M, N) reoriented series
        """
        coefficients = np.asarray(coefficients, dtype=np.float64)
        rotations = np.asarray(rotations, dtype=np.float64)
        amplitudes = coefficients @ self.amplitude_operator.T

        def rotate_chunk(s):
            rotated = np.einsum('mij,kj->mki', rotations[s], self.directions)
            lobes = sh_basis(rotated, self.lmax) * self.apodisation
            return np.einsum('mk,mkn->mn', amplitudes[s], lobes)

        slices = chunk_slices(len(coefficients), REORIENT_CHUNK_SIZE)
        if not slices:
            return np.zeros_like(coefficients)
        n_threads = min(get_number_of_threads(n_threads), len(slices))
        with ThreadPoolExecutor(max_workers=n_threads) as executor:
            results = list(tqdm(executor.map(rotate_chunk, slices),
                                total=len(slices),
                                desc="Reorienting FODs",
                                disable=not verbose))
        return np.concatenate(results, axis=0)


def resolve_lmax(n_volumes: int, lmax: Optional[int] = None, default: int = 4) -> int:
    """
    Band limit to register with for an image holding n_volumes coefficients.

    Raises:
        ConfigurationError: odd lmax, or more coefficients requested than present
    """
    available = l_for_n(n_volumes)
    if lmax is None:
        return min(default, available)
    if lmax < 0 or lmax % 2:
        raise ConfigurationError("the input lmax must be even")
    if n_for_l(lmax) > n_volumes:
        raise ConfigurationError(
            f"not enough SH coefficients in input image for lmax={lmax} "
            f"({n_volumes} volumes, {n_for_l(lmax)} required)")
    return lmax


def is_fod_image(shape, reorientation: bool = True) -> bool:
    """True when a 4D image holds a valid even SH series and reorientation is wanted."""
    return bool(reorientation and len(shape) == 4 and is_sh_series(shape[3]))


def reorient_linear(image: np.ndarray,
                    matrix: np.ndarray,
                    lmax: Optional[int] = None,
                    directions: Optional[np.ndarray] = None,
                    ) -> np.ndarray:
    """
    Reorient an image resampled through a linear transform.

    Args:
        image: (X, Y, Z, N) SH image on the output grid
        matrix: 3x3 linear part of the output-to-input mapping
        lmax: Band limit (default: everything the image holds)
        directions: Direction set override

    Returns:
        Reoriented copy of the image (coefficients beyond lmax untouched)
    """
    image = np.asarray(image, dtype=np.float64)
    lmax = l_for_n(image.shape[-1]) if lmax is None else lmax
    n = n_for_l(lmax)
    rotation = reorientation_rotations(np.asarray(matrix, dtype=np.float64)[:3, :3])

    out = image.copy()
    out[..., :n] = APSFReorienter(lmax, directions).rotate(image[..., :n], rotation)
    return out


def deformation_jacobian(deformation: np.ndarray, affine: np.ndarray) -> np.ndarray:
    """
    Jacobian of a deformation field with respect to world coordinates.

    Args:
        deformation: (X, Y, Z, 3) absolute world positions
        affine: Voxel-to-world matrix of the deformation grid

    Returns:
        (X, Y, Z, 3, 3) with [..., i, j] = d deformation_i / d x_j
    """
    deformation = np.asarray(deformation, dtype=np.float64)
    voxel_jacobian = np.stack(np.gradient(deformation, axis=(0, 1, 2)), axis=-1)
    voxel_to_world = np.asarray(affine, dtype=np.float64)[:3, :3]
    return voxel_jacobian @ np.linalg.inv(voxel_to_world)


def reorient_warp(image: np.ndarray,
                  deformation: np.ndarray,
                  affine: np.ndarray,
                  lmax: Optional[int] = None,
                  directions: Optional[np.ndarray] = None,
                  n_threads: Optional[int] = None,
                  verbose: bool = False,
                  ) -> np.ndarray:
    """
    Reorient an image resampled through a deformation field.

    The local rotation of every voxel comes from the Jacobian of the
    deformation.

    Args:
        image: (X, Y, Z, N) SH image on the deformation grid
        deformation: (X, Y, Z, 3) absolute world positions in the input image
        affine: Voxel-to-world matrix of the deformation grid
        lmax: Band limit (default: everything the image holds)
        directions: Direction set override
        n_threads: Worker count
        verbose: Show a progress bar

    Returns:
        Reoriented copy of the image
    """
    image = np.asarray(image, dtype=np.float64)
    lmax = l_for_n(image.shape[-1]) if lmax is None else lmax
    n = n_for_l(lmax)
    spatial = image.shape[:3]

    rotations = reorientation_rotations(deformation_jacobian(deformation, affine)).reshape(-1, 3, 3)
    coefficients = image[..., :n].reshape(-1, n)

    out = image.copy()
    reoriented = APSFReorienter(lmax, directions).rotate_each(
        coefficients, rotations, n_threads=n_threads, verbose=verbose)
    out[..., :n] = reoriented.reshape(spatial + (n,))
    return out
