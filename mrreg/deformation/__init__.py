"""Displacement field algebra and midway-space compositions."""

from mrreg.deformation.warp import (
    identity_deformation,
    displacement_to_deformation,
    sample_field,
    compose_dvfs,
    invert_dvf,
    inverse_error,
    smooth_field,
    resample_field,
    compute_displacement_magnitude,
)
from mrreg.deformation.composition import (
    midway_grid,
    midway_deformation,
    compose_halfway_transforms,
)

__all__ = [
    'identity_deformation',
    'displacement_to_deformation',
    'sample_field',
    'compose_dvfs',
    'invert_dvf',
    'inverse_error',
    'smooth_field',
    'resample_field',
    'compute_displacement_magnitude',
    'midway_grid',
    'midway_deformation',
    'compose_halfway_transforms',
]
