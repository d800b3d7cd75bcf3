"""
Linear (rigid / affine) spatial transform with an explicit centre.

A LinearTransform is an immutable snapshot: every "setter" returns a new
instance, and the half transforms are recomputed for each new snapshot.

The transform acts on points as::

    out = matrix @ (in - centre) + centre + translation
        = matrix @ in + offset

It maps points of image2 (template) space into image1 (moving) space. The
half transform maps the midway space into image1 space and the half inverse
maps the midway space into image2 space, so that::

    half o half                   == full
    half_inverse o half_inverse   == full^-1
"""

import numpy as np
from scipy.linalg import sqrtm
from typing import Optional

from mrreg.core.exceptions import NumericalError


def homogeneous(matrix: np.ndarray) -> np.ndarray:
    """Promote a 3x4 or 4x4 matrix to a 4x4 homogeneous matrix."""
    matrix = np.asarray(matrix, dtype=np.float64)
    if matrix.shape == (4, 4):
        return matrix.copy()
    if matrix.shape == (3, 4):
        out = np.eye(4)
        out[:3, :] = matrix
        return out
    raise ValueError(f"Expected a 3x4 or 4x4 matrix, got shape {matrix.shape}")


def half_transform(matrix: np.ndarray) -> np.ndarray:
    """
    Principal square root of a homogeneous 4x4 transform.

    Args:
        matrix: 4x4 (or 3x4) affine matrix

    Returns:
        4x4 matrix H with H @ H == matrix

    Raises:
        NumericalError: if the determinant is not positive or no real,
            well-conditioned square root exists
    """
    full = homogeneous(matrix)
    if not np.all(np.isfinite(full)):
        raise NumericalError("transform contains non-finite values")

    det = np.linalg.det(full)
    if det <= 0:
        raise NumericalError(
            f"transform determinant must be positive to compute the halfway transform (det = {det:.6g})")
    if np.linalg.cond(full) > 1e12:
        raise NumericalError("transform is ill-conditioned, cannot compute the halfway transform")

    root = sqrtm(full)
    if np.iscomplexobj(root):
        scale = max(np.abs(root).max(), 1.0)
        if np.abs(root.imag).max() > 1e-8 * scale:
            raise NumericalError("transform has no real principal square root")
        root = root.real
    root = np.asarray(root, dtype=np.float64)

    if not np.all(np.isfinite(root)):
        raise NumericalError("matrix square root did not converge")

    root[3, :] = (0.0, 0.0, 0.0, 1.0)
    error = np.abs(root @ root - full).max()
    if error > 1e-6 * max(np.abs(full).max(), 1.0):
        raise NumericalError(f"matrix square root is inaccurate (max error {error:.3g})")

    return root


class LinearTransform:
    """
    Immutable rigid or affine transform with a centre of rotation.

    Args:
        matrix: 3x3 linear part (identity if None)
        translation: 3-vector (zero if None)
        centre: 3-vector rotation / scaling origin (zero if None)
    """

    __slots__ = ('_matrix', '_translation', '_centre', '_full', '_half', '_half_inverse')

    def __init__(self,
                 matrix: Optional[np.ndarray] = None,
                 translation: Optional[np.ndarray] = None,
                 centre: Optional[np.ndarray] = None,
                 ):
        matrix = np.eye(3) if matrix is None else np.array(matrix, dtype=np.float64)
        translation = np.zeros(3) if translation is None else np.array(translation, dtype=np.float64)
        centre = np.zeros(3) if centre is None else np.array(centre, dtype=np.float64)

        if matrix.shape != (3, 3):
            raise ValueError(f"matrix must be 3x3, got {matrix.shape}")
        if translation.shape != (3,) or centre.shape != (3,):
            raise ValueError("translation and centre must be 3-vectors")

        for array in (matrix, translation, centre):
            array.setflags(write=False)

        self._matrix = matrix
        self._translation = translation
        self._centre = centre

        full = np.eye(4)
        full[:3, :3] = matrix
        full[:3, 3] = translation + centre - matrix @ centre
        full.setflags(write=False)
        self._full = full

        half = half_transform(full)
        half_inverse = np.linalg.inv(half)
        half_inverse[3, :] = (0.0, 0.0, 0.0, 1.0)
        half.setflags(write=False)
        half_inverse.setflags(write=False)
        self._half = half
        self._half_inverse = half_inverse

    # Constructors

    @classmethod
    def identity(cls, centre: Optional[np.ndarray] = None) -> 'LinearTransform':
        return cls(centre=centre)

    @classmethod
    def from_matrix(cls,
                    matrix: np.ndarray,
                    centre: Optional[np.ndarray] = None,
                    ) -> 'LinearTransform':
        """
        Build from a 3x4 / 4x4 matrix, expressed about the given centre.

        The mapping is preserved exactly; only its decomposition into
        centre and translation changes.
        """
        full = homogeneous(matrix)
        linear = full[:3, :3]
        offset = full[:3, 3]
        centre = np.zeros(3) if centre is None else np.asarray(centre, dtype=np.float64)
        translation = offset - centre + linear @ centre
        return cls(linear, translation, centre)

    # Accessors

    @property
    def matrix(self) -> np.ndarray:
        return self._matrix

    @property
    def translation(self) -> np.ndarray:
        return self._translation

    @property
    def centre(self) -> np.ndarray:
        return self._centre

    @property
    def offset(self) -> np.ndarray:
        return self._full[:3, 3]

    def get_transform(self) -> np.ndarray:
        """4x4 homogeneous matrix of the full transform."""
        return self._full.copy()

    def get_half(self) -> np.ndarray:
        """4x4 homogeneous matrix of the half transform (midway -> image1)."""
        return self._half.copy()

    def get_half_inverse(self) -> np.ndarray:
        """4x4 homogeneous matrix of the half inverse (midway -> image2)."""
        return self._half_inverse.copy()

    def determinant(self) -> float:
        return float(np.linalg.det(self._matrix))

    # Snapshot replacement

    def with_matrix(self, matrix: np.ndarray) -> 'LinearTransform':
        return LinearTransform(matrix, self._translation, self._centre)

    def with_translation(self, translation: np.ndarray) -> 'LinearTransform':
        return LinearTransform(self._matrix, translation, self._centre)

    def with_centre(self, centre: np.ndarray, keep_mapping: bool = False) -> 'LinearTransform':
        """
        Replace the centre.

        With keep_mapping the translation is adjusted so that the mapped
        points stay the same; otherwise the translation is kept and the
        offset is recomputed.
        """
        if keep_mapping:
            return LinearTransform.from_matrix(self._full, centre)
        return LinearTransform(self._matrix, self._translation, centre)

    def with_transform(self, other: 'LinearTransform') -> 'LinearTransform':
        """Copy of another transform (matrix, translation and centre)."""
        return LinearTransform(other.matrix, other.translation, other.centre)

    def inverse(self) -> 'LinearTransform':
        """Inverse transform, about the image of the centre."""
        inv = np.linalg.inv(self._full)
        return LinearTransform.from_matrix(inv, self.apply(self._centre))

    def compose(self, other: 'LinearTransform') -> 'LinearTransform':
        """self o other (apply other first)."""
        return LinearTransform.from_matrix(self._full @ other._full, other.centre)

    # Point mapping

    @staticmethod
    def _apply(matrix: np.ndarray, points: np.ndarray) -> np.ndarray:
        points = np.asarray(points, dtype=np.float64)
        return points @ matrix[:3, :3].T + matrix[:3, 3]

    def apply(self, points: np.ndarray) -> np.ndarray:
        """Map (..., 3) points through the full transform."""
        return self._apply(self._full, points)

    def apply_half(self, points: np.ndarray) -> np.ndarray:
        """Map (..., 3) midway points into image1 space."""
        return self._apply(self._half, points)

    def apply_half_inverse(self, points: np.ndarray) -> np.ndarray:
        """Map (..., 3) midway points into image2 space."""
        return self._apply(self._half_inverse, points)

    def __eq__(self, other) -> bool:
        if not isinstance(other, LinearTransform):
            return NotImplemented
        return (np.array_equal(self._matrix, other._matrix)
                and np.array_equal(self._translation, other._translation)
                and np.array_equal(self._centre, other._centre))

    def __hash__(self):
        return hash((self._matrix.tobytes(), self._translation.tobytes(), self._centre.tobytes()))

    def __repr__(self) -> str:
        return (f"LinearTransform(matrix={self._matrix.tolist()}, "
                f"translation={self._translation.tolist()}, centre={self._centre.tolist()})")
