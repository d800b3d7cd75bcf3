"""
Direction sets used to discretise orientation-encoded signal.

The default set holds 60 antipodally symmetric unit vectors distributed by
electrostatic repulsion, enlarged for band limits above 8. A set is
loaded once per run and never modified.
"""

import numpy as np
from pathlib import Path
from typing import Optional

from mrreg.core.exceptions import ConfigurationError
from mrreg.fod.sh import n_for_l, spherical_to_cartesian


def _spiral(n: int) -> np.ndarray:
    """Golden-angle spiral on the upper hemisphere."""
    k = np.arange(n) + 0.5
    z = 1.0 - k / n
    radius = np.sqrt(1.0 - z ** 2)
    phi = np.pi * (3.0 - np.sqrt(5.0)) * k
    return np.stack([radius * np.cos(phi), radius * np.sin(phi), z], axis=-1)


def electrostatic_repulsion(n: int = 60, iterations: int = 200, step: float = 0.01) -> np.ndarray:
    """
    Antipodally symmetric direction set from electrostatic repulsion.

    Each direction repels every other direction and its antipode; the
    result is deterministic for a given n.

    Args:
        n: Number of directions
        iterations: Relaxation steps
        step: Step size (relative to the mean force)

    Returns:
        (n, 3) unit vectors
    """
    directions = _spiral(n)
    for _ in range(iterations):
        force = np.zeros_like(directions)
        for sign in (1.0, -1.0):
            delta = directions[:, None, :] - sign * directions[None, :, :]
            distance = np.linalg.norm(delta, axis=-1)
            if sign > 0:
                np.fill_diagonal(distance, np.inf)
            force += (delta / np.maximum(distance, 1e-12)[..., None] ** 3).sum(axis=1)
        # keep only the tangential component
        force -= np.sum(force * directions, axis=-1, keepdims=True) * directions
        scale = np.linalg.norm(force, axis=-1).mean()
        if scale <= 0:
            break
        directions = directions + step * force / scale
        directions /= np.linalg.norm(directions, axis=-1, keepdims=True)

    # canonical hemisphere (z >= 0)
    directions[directions[:, 2] < 0] *= -1
    return directions


DEFAULT_NUM_DIRECTIONS = 60

_DIRECTION_SETS = {}


def default_directions(lmax: Optional[int] = None) -> np.ndarray:
    """
    The default direction set (computed once per size, returned read-only).

    The 60-direction set is used whenever it holds at least as many
    directions as an lmax series has coefficients; higher band limits get an
    electrostatic set with twice as many directions as coefficients.
    """
    n = DEFAULT_NUM_DIRECTIONS
    if lmax is not None and n_for_l(lmax) > n:
        n = 2 * n_for_l(lmax)
    if n not in _DIRECTION_SETS:
        directions = electrostatic_repulsion(n)
        directions.setflags(write=False)
        _DIRECTION_SETS[n] = directions
    return _DIRECTION_SETS[n]


def load_directions(path: str) -> np.ndarray:
    """
    Load a direction set from a text file.

    Rows hold either [azimuth, inclination] in radians or cartesian
    [x, y, z] vectors.

    Returns:
        (K, 3) unit vectors (read-only)
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    data = np.atleast_2d(np.loadtxt(path, comments='#', ndmin=2))
    if data.shape[1] == 2:
        directions = spherical_to_cartesian(data)
    elif data.shape[1] == 3:
        norm = np.linalg.norm(data, axis=-1, keepdims=True)
        if np.any(norm < 1e-12):
            raise ConfigurationError(f"direction file {path} contains zero-length vectors")
        directions = data / norm
    else:
        raise ConfigurationError(
            f"direction file {path} must have 2 (spherical) or 3 (cartesian) columns, got {data.shape[1]}")

    directions.setflags(write=False)
    return directions


def get_directions(path: Optional[str] = None, lmax: Optional[int] = None) -> np.ndarray:
    """Direction set override from file, or the default set for lmax."""
    if path is None:
        return default_directions(lmax)
    return load_directions(path)
