"""Interpolation and resampling primitives."""

from mrreg.preprocessing.resample import (
    grid_voxels,
    grid_points,
    world_to_voxel,
    spline_coefficients,
    inside_grid,
    sample_voxels,
    image_gradient,
    gradient_to_world,
    reslice,
    warp_image,
    coarse_grid,
    downsample,
    downsample_mask,
)

__all__ = [
    'grid_voxels',
    'grid_points',
    'world_to_voxel',
    'spline_coefficients',
    'inside_grid',
    'sample_voxels',
    'image_gradient',
    'gradient_to_world',
    'reslice',
    'warp_image',
    'coarse_grid',
    'downsample',
    'downsample_mask',
]
