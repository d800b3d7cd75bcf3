"""Linear transforms, parameter models and initialisation."""

from mrreg.transform.linear import LinearTransform, half_transform, homogeneous
from mrreg.transform.models import RigidModel, AffineModel, get_model, rotation_from_vector, nearest_rotation
from mrreg.transform.initialisation import (
    initialise_transform,
    centre_of_mass,
    geometric_centre,
    principal_axes,
    global_search_candidates,
    voxel_to_world,
)

__all__ = [
    'LinearTransform',
    'half_transform',
    'homogeneous',
    'RigidModel',
    'AffineModel',
    'get_model',
    'rotation_from_vector',
    'nearest_rotation',
    'initialise_transform',
    'centre_of_mass',
    'geometric_centre',
    'principal_axes',
    'global_search_candidates',
    'voxel_to_world',
]
