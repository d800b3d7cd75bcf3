"""
Interpolation and resampling primitives.

Cubic B-spline sampling of (multi-volume) images at arbitrary world
coordinates, gradient images, and reslicing through a linear transform or a
deformation field. All sampling runs chunk-wise on the worker pool.
"""

import numpy as np
from scipy import ndimage
from typing import Tuple, Optional

from mrreg.utils.parallel import chunked_concatenate


def grid_voxels(shape: Tuple[int, ...]) -> np.ndarray:
    """(N, 3) voxel indices of a grid in C order."""
    return np.indices(shape[:3], dtype=np.float64).reshape(3, -1).T


def grid_points(shape: Tuple[int, ...], affine: np.ndarray) -> np.ndarray:
    """(N, 3) world coordinates of every voxel of a grid, in C order."""
    affine = np.asarray(affine, dtype=np.float64)
    return grid_voxels(shape) @ affine[:3, :3].T + affine[:3, 3]


def world_to_voxel(affine: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Map (..., 3) world points to voxel coordinates of the given grid."""
    inverse = np.linalg.inv(np.asarray(affine, dtype=np.float64))
    return np.asarray(points) @ inverse[:3, :3].T + inverse[:3, 3]


def spline_coefficients(image: np.ndarray, order: int = 3) -> np.ndarray:
    """
    B-spline coefficients for repeated cubic sampling.

    4D images are filtered volume by volume along the spatial axes only.
    """
    image = np.asarray(image, dtype=np.float64)
    if order <= 1:
        return image
    if image.ndim == 3:
        return ndimage.spline_filter(image, order=order, mode='mirror')
    coefficients = np.empty_like(image)
    for v in range(image.shape[3]):
        coefficients[..., v] = ndimage.spline_filter(image[..., v], order=order, mode='mirror')
    return coefficients


def inside_grid(voxels: np.ndarray, shape: Tuple[int, ...], tolerance: float = 1e-6) -> np.ndarray:
    """Boolean mask of (N, 3) voxel coordinates lying within the grid."""
    upper = np.asarray(shape[:3], dtype=np.float64) - 1.0
    return np.all((voxels >= -tolerance) & (voxels <= upper + tolerance), axis=-1)


def sample_voxels(data: np.ndarray,
                  voxels: np.ndarray,
                  order: int = 3,
                  prefiltered: bool = True,
                  mode: str = 'mirror',
                  cval: float = 0.0,
                  n_threads: Optional[int] = None,
                  ) -> np.ndarray:
    """
    Interpolate a 3D or 4D array at (N, 3) voxel coordinates.

    Args:
        data: (X, Y, Z) or (X, Y, Z, V) array; spline coefficients when
            order > 1 and prefiltered is True
        voxels: (N, 3) voxel coordinates
        order: Interpolation order (0=nearest, 1=linear, 3=cubic)
        prefiltered: Whether data already holds spline coefficients
        mode: Boundary handling passed to map_coordinates
        cval: Fill value for mode='constant'
        n_threads: Worker count

    Returns:
        (N,) or (N, V) interpolated values
    """
    data = np.asarray(data)
    voxels = np.asarray(voxels, dtype=np.float64)
    prefilter = order > 1 and not prefiltered

    def sample_chunk(s):
        coords = voxels[s].T
        if data.ndim == 3:
            return ndimage.map_coordinates(data, coords, order=order, mode=mode,
                                           cval=cval, prefilter=prefilter)
        return np.stack([
            ndimage.map_coordinates(data[..., v], coords, order=order, mode=mode,
                                    cval=cval, prefilter=prefilter)
            for v in range(data.shape[3])
        ], axis=-1)

    if len(voxels) == 0:
        return np.zeros((0,) + data.shape[3:], dtype=np.float64)
    return chunked_concatenate(sample_chunk, len(voxels), n_threads)


def image_gradient(image: np.ndarray, affine: np.ndarray) -> np.ndarray:
    """
    Spatial gradient of an image in world units.

    Args:
        image: (X, Y, Z) or (X, Y, Z, V) array
        affine: 4x4 voxel-to-world matrix

    Returns:
        (X, Y, Z, 3) or (X, Y, Z, V, 3) gradient
    """
    image = np.asarray(image, dtype=np.float64)
    voxel_gradient = np.stack(np.gradient(image, axis=(0, 1, 2)), axis=-1)
    return gradient_to_world(voxel_gradient, affine)


def gradient_to_world(voxel_gradient: np.ndarray, affine: np.ndarray) -> np.ndarray:
    """Convert (..., 3) voxel-space gradients to world space."""
    to_world = np.linalg.inv(np.asarray(affine, dtype=np.float64)[:3, :3]).T
    return voxel_gradient @ to_world.T


def reslice(image: np.ndarray,
            affine_in: np.ndarray,
            shape_out: Tuple[int, ...],
            affine_out: np.ndarray,
            transform: Optional[np.ndarray] = None,
            order: int = 3,
            cval: float = 0.0,
            n_threads: Optional[int] = None,
            ) -> np.ndarray:
    """
    Resample an image onto another grid through a linear transform.

    Args:
        image: Input (X, Y, Z) or (X, Y, Z, V) array
        affine_in: Voxel-to-world matrix of the input image
        shape_out: Output grid shape (spatial)
        affine_out: Voxel-to-world matrix of the output grid
        transform: 4x4 matrix mapping output world points to input world
            points (identity if None)
        order: Interpolation order
        cval: Value outside the input field of view

    Returns:
        Resampled array of shape shape_out[:3] (+ volumes)
    """
    points = grid_points(shape_out, affine_out)
    if transform is not None:
        transform = np.asarray(transform, dtype=np.float64)
        points = points @ transform[:3, :3].T + transform[:3, 3]
    return _sample_world(image, affine_in, points, shape_out[:3], order, cval, n_threads)


def warp_image(image: np.ndarray,
               affine_in: np.ndarray,
               deformation: np.ndarray,
               order: int = 3,
               cval: float = 0.0,
               n_threads: Optional[int] = None,
               ) -> np.ndarray:
    """
    Resample an image through a deformation field.

    Args:
        image: Input (X, Y, Z) or (X, Y, Z, V) array
        affine_in: Voxel-to-world matrix of the input image
        deformation: (X', Y', Z', 3) absolute world positions in the input
            image for every output voxel

    Returns:
        Warped array on the deformation grid
    """
    shape_out = deformation.shape[:3]
    return _sample_world(image, affine_in, deformation.reshape(-1, 3), shape_out,
                         order, cval, n_threads)


def _sample_world(image, affine_in, points, shape_out, order, cval, n_threads):
    image = np.asarray(image, dtype=np.float64)
    voxels = world_to_voxel(affine_in, points)
    data = spline_coefficients(image, order)
    values = sample_voxels(data, voxels, order=order, prefiltered=True, n_threads=n_threads)
    values[~inside_grid(voxels, image.shape)] = cval
    return values.reshape(tuple(shape_out) + image.shape[3:])


def coarse_grid(shape: Tuple[int, ...],
                affine: np.ndarray,
                scale: float,
                ) -> Tuple[Tuple[int, ...], np.ndarray, np.ndarray]:
    """
    Grid covering the same field of view at a lower resolution.

    Returns:
        shape: Coarse spatial shape
        affine: Voxel-to-world matrix of the coarse grid
        factor: Fine voxels per coarse voxel along each axis
    """
    spatial = np.asarray(shape[:3])
    if scale >= 1.0:
        return tuple(int(n) for n in spatial), np.asarray(affine, dtype=np.float64), np.ones(3)

    new_shape = tuple(int(n) for n in np.maximum(np.ceil(spatial * scale), 1))
    factor = (spatial - 1.0) / np.maximum(np.asarray(new_shape) - 1.0, 1.0)
    factor = np.where(np.asarray(new_shape) > 1, factor, 1.0)

    voxel_to_voxel = np.eye(4)
    voxel_to_voxel[:3, :3] = np.diag(factor)
    return new_shape, np.asarray(affine, dtype=np.float64) @ voxel_to_voxel, factor


def downsample(image: np.ndarray,
               affine: np.ndarray,
               scale: float,
               order: int = 1,
               smooth: bool = True,
               ) -> Tuple[np.ndarray, np.ndarray]:
    """
    Downsample an image by a scale factor in (0, 1].

    The image is Gaussian-smoothed to suppress aliasing and resampled on a
    coarser grid covering the same field of view.

    Returns:
        downsampled: Resampled array
        affine: Voxel-to-world matrix of the coarse grid
    """
    image = np.asarray(image, dtype=np.float64)
    if scale >= 1.0:
        return image, np.asarray(affine, dtype=np.float64)

    new_shape, coarse_affine, factor = coarse_grid(image.shape, affine, scale)

    if smooth:
        sigma = [max((f - 1.0) / 2.0, 0.0) for f in factor] + [0.0] * (image.ndim - 3)
        image = ndimage.gaussian_filter(image, sigma=sigma, mode='nearest')

    voxels = grid_voxels(new_shape) * factor
    data = spline_coefficients(image, order)
    values = sample_voxels(data, voxels, order=order, prefiltered=True, mode='nearest')
    return values.reshape(new_shape + image.shape[3:]), coarse_affine


def downsample_mask(mask: Optional[np.ndarray],
                    affine: np.ndarray,
                    shape_out: Tuple[int, ...],
                    affine_out: np.ndarray,
                    ) -> Optional[np.ndarray]:
    """Nearest-neighbour resampling of a binary mask onto another grid."""
    if mask is None:
        return None
    mask = (np.asarray(mask) > 0).astype(np.float64)
    voxels = world_to_voxel(affine, grid_points(shape_out, affine_out))
    values = sample_voxels(mask, voxels, order=0, prefiltered=True, mode='nearest')
    return values.reshape(tuple(shape_out[:3])) > 0.5
