"""
Real, antipodally symmetric spherical harmonic series.

Only even degrees are stored; coefficients are ordered by degree l and then
order m = -l..l, so a series of band limit lmax holds
(lmax + 1)(lmax + 2) / 2 coefficients (1, 6, 15, 28, 45, ...).
"""

import math
import numpy as np
from scipy.special import lpmv


def n_for_l(lmax: int) -> int:
    """Number of coefficients of an even series of band limit lmax."""
    return (lmax + 1) * (lmax + 2) // 2


def l_for_n(n_coefficients: int) -> int:
    """Largest even band limit representable with n_coefficients."""
    if n_coefficients < 1:
        return 0
    return 2 * int(math.floor((math.sqrt(1 + 8 * n_coefficients) - 3) / 4))


def is_sh_series(n_coefficients: int) -> bool:
    """True when the count matches an even series exactly (6, 15, 28, ...)."""
    if n_coefficients <= 1:
        return False
    value = (math.sqrt(1 + 8 * n_coefficients) - 3.0) / 4.0
    return abs(value - round(value)) < 1e-9


def index(l: int, m: int) -> int:
    """Position of coefficient (l, m) in the series."""
    return l * (l + 1) // 2 + m


def degrees(lmax: int) -> np.ndarray:
    """Degree l of every coefficient of the series."""
    return np.concatenate([np.full(2 * l + 1, l) for l in range(0, lmax + 1, 2)])


def spherical_to_cartesian(spherical: np.ndarray) -> np.ndarray:
    """
    Unit vectors from (azimuth, inclination) pairs in radians.

    Args:
        spherical: (K, 2) array of [azimuth, inclination from +z]

    Returns:
        (K, 3) unit vectors
    """
    spherical = np.atleast_2d(np.asarray(spherical, dtype=np.float64))
    az, el = spherical[:, 0], spherical[:, 1]
    return np.stack([np.sin(el) * np.cos(az),
                     np.sin(el) * np.sin(az),
                     np.cos(el)], axis=-1)


def cartesian_to_spherical(directions: np.ndarray) -> np.ndarray:
    """(K, 3) vectors to (K, 2) [azimuth, inclination]."""
    directions = np.atleast_2d(np.asarray(directions, dtype=np.float64))
    norm = np.linalg.norm(directions, axis=-1)
    az = np.arctan2(directions[:, 1], directions[:, 0])
    el = np.arccos(np.clip(directions[:, 2] / np.maximum(norm, 1e-12), -1.0, 1.0))
    return np.stack([az, el], axis=-1)


def sh_basis(directions: np.ndarray, lmax: int) -> np.ndarray:
    """
    Evaluate the real even SH basis at a set of directions.

    Args:
        directions: (..., 3) vectors (normalised internally)
        lmax: Even band limit

    Returns:
        (..., N) basis values, N = n_for_l(lmax)
    """
    directions = np.asarray(directions, dtype=np.float64)
    lead_shape = directions.shape[:-1]
    directions = directions.reshape(-1, 3)
    norm = np.maximum(np.linalg.norm(directions, axis=-1), 1e-12)
    cos_theta = np.clip(directions[:, 2] / norm, -1.0, 1.0)
    phi = np.arctan2(directions[:, 1], directions[:, 0])

    basis = np.empty((len(directions), n_for_l(lmax)))
    for l in range(0, lmax + 1, 2):
        for m in range(0, l + 1):
            scale = math.sqrt((2 * l + 1) / (4 * math.pi)
                              * math.exp(math.lgamma(l - m + 1) - math.lgamma(l + m + 1)))
            legendre = scale * lpmv(m, l, cos_theta)
            if m == 0:
                basis[:, index(l, 0)] = legendre
            else:
                basis[:, index(l, m)] = math.sqrt(2.0) * legendre * np.cos(m * phi)
                basis[:, index(l, -m)] = math.sqrt(2.0) * legendre * np.sin(m * phi)
    return basis.reshape(lead_shape + (basis.shape[-1],))


def sh_to_amplitudes(coefficients: np.ndarray, directions: np.ndarray, lmax: int) -> np.ndarray:
    """Sample (..., N) coefficient vectors at (K, 3) directions -> (..., K)."""
    return np.asarray(coefficients) @ sh_basis(directions, lmax).T


def amplitudes_to_sh(amplitudes: np.ndarray, directions: np.ndarray, lmax: int) -> np.ndarray:
    """Least-squares fit of (..., K) amplitudes at (K, 3) directions -> (..., N)."""
    basis = sh_basis(directions, lmax)
    return np.asarray(amplitudes) @ np.linalg.pinv(basis).T
