"""
Initialisation of linear transforms.

Seeds the centre, translation and (for 'moments') rotation of a transform
from the two images before optimisation starts.
"""

import itertools
import numpy as np
from typing import Optional, Tuple, List
import warnings

from mrreg.transform.linear import LinearTransform
from mrreg.transform.models import rotation_from_vector


def _init_volume(image: np.ndarray) -> np.ndarray:
    """3D volume used for initialisation (first volume of 4D data, i.e. l=0 for FODs)."""
    image = np.asarray(image)
    if image.ndim == 4:
        image = image[..., 0]
    return image.astype(np.float64)


def voxel_to_world(affine: np.ndarray, voxels: np.ndarray) -> np.ndarray:
    """Map (..., 3) voxel coordinates to world coordinates."""
    affine = np.asarray(affine, dtype=np.float64)
    return np.asarray(voxels, dtype=np.float64) @ affine[:3, :3].T + affine[:3, 3]


def geometric_centre(shape: Tuple[int, ...], affine: np.ndarray) -> np.ndarray:
    """World position of the centre of the voxel grid."""
    centre_voxel = (np.asarray(shape[:3], dtype=np.float64) - 1.0) / 2.0
    return voxel_to_world(affine, centre_voxel)


def _weights(image: np.ndarray, mask: Optional[np.ndarray]) -> np.ndarray:
    weights = np.clip(_init_volume(image), 0, None)
    if mask is not None:
        weights = weights * (np.asarray(mask) > 0)
    return weights


def centre_of_mass(image: np.ndarray,
                   affine: np.ndarray,
                   mask: Optional[np.ndarray] = None,
                   ) -> np.ndarray:
    """
    Intensity-weighted centroid in world coordinates.

    Falls back to the geometric centre (with a warning) when the image has
    no positive intensity inside the mask.
    """
    weights = _weights(image, mask)
    total = weights.sum()
    if total <= 0:
        warnings.warn("image has no positive intensity, using geometric centre for initialisation")
        return geometric_centre(weights.shape, affine)

    grid = np.indices(weights.shape, dtype=np.float64)
    centroid_voxel = np.array([(g * weights).sum() / total for g in grid])
    return voxel_to_world(affine, centroid_voxel)


def principal_axes(image: np.ndarray,
                   affine: np.ndarray,
                   mask: Optional[np.ndarray] = None,
                   ) -> Tuple[np.ndarray, np.ndarray]:
    """
    Centroid and principal axes of the intensity distribution.

    Returns:
        centroid: (3,) world coordinates
        axes: (3, 3) right-handed axes as columns, largest variance first;
            the sign of each axis is chosen to make the third moment positive
    """
    weights = _weights(image, mask)
    total = weights.sum()
    centroid = centre_of_mass(image, affine, mask)
    if total <= 0:
        return centroid, np.eye(3)

    nonzero = np.nonzero(weights)
    w = weights[nonzero]
    points = voxel_to_world(affine, np.stack(nonzero, axis=-1)) - centroid

    covariance = (points * w[:, None]).T @ points / total
    eigenvalues, eigenvectors = np.linalg.eigh(covariance)
    axes = eigenvectors[:, np.argsort(eigenvalues)[::-1]]

    projections = points @ axes
    skew = (w[:, None] * projections ** 3).sum(axis=0)
    for j in range(3):
        if skew[j] < 0:
            axes[:, j] *= -1

    if np.linalg.det(axes) < 0:
        axes[:, 2] *= -1

    return centroid, axes


def initialise_transform(init_type: str,
                         image1: np.ndarray,
                         affine1: np.ndarray,
                         image2: np.ndarray,
                         affine2: np.ndarray,
                         mask1: Optional[np.ndarray] = None,
                         mask2: Optional[np.ndarray] = None,
                         transform: Optional[LinearTransform] = None,
                         ) -> LinearTransform:
    """
    Initialise a transform mapping image2 space onto image1 space.

    Args:
        init_type: 'mass', 'geometric', 'moments' or 'none'
        image1, affine1: Moving image and its voxel-to-world matrix
        image2, affine2: Template image and its voxel-to-world matrix
        mask1, mask2: Optional masks restricting the initialisation
        transform: Starting transform (identity if None); with 'none' its
            mapping is kept and only re-expressed about the template centre

    Returns:
        Initialised LinearTransform centred on image2
    """
    if transform is None:
        transform = LinearTransform()

    if init_type == 'none':
        centre = geometric_centre(np.shape(image2), affine2)
        return transform.with_centre(centre, keep_mapping=True)

    if init_type == 'mass':
        c1 = centre_of_mass(image1, affine1, mask1)
        c2 = centre_of_mass(image2, affine2, mask2)
        return LinearTransform(transform.matrix, c1 - c2, c2)

    if init_type == 'geometric':
        c1 = geometric_centre(np.shape(image1), affine1)
        c2 = geometric_centre(np.shape(image2), affine2)
        return LinearTransform(transform.matrix, c1 - c2, c2)

    if init_type == 'moments':
        c1, axes1 = principal_axes(image1, affine1, mask1)
        c2, axes2 = principal_axes(image2, affine2, mask2)
        rotation = axes1 @ axes2.T
        return LinearTransform(rotation, c1 - c2, c2)

    raise ValueError(f"Unknown initialisation type: {init_type}")


def global_search_candidates(transform: LinearTransform,
                             angle: float,
                             distance: float,
                             ) -> List[LinearTransform]:
    """
    Coarse grid of starting transforms around an initial guess.

    Rotations of {-angle, 0, +angle} radians about each axis are combined
    with no shift or a shift of +-distance along each axis.

    Returns:
        List of candidate transforms; the first one is the unperturbed guess
    """
    shifts = [np.zeros(3)]
    for axis in range(3):
        for sign in (-1.0, 1.0):
            shift = np.zeros(3)
            shift[axis] = sign * distance
            shifts.append(shift)

    candidates = [transform]
    for angles in itertools.product((0.0, -angle, angle), repeat=3):
        rotation = (rotation_from_vector([angles[0], 0, 0])
                    @ rotation_from_vector([0, angles[1], 0])
                    @ rotation_from_vector([0, 0, angles[2]]))
        for shift in shifts:
            if not any(angles) and not shift.any():
                continue
            candidates.append(LinearTransform(rotation @ transform.matrix,
                                              transform.translation + shift,
                                              transform.centre))
    return candidates
