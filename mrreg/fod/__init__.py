"""Spherical harmonics, direction sets and FOD reorientation."""

from mrreg.fod.sh import (
    n_for_l,
    l_for_n,
    is_sh_series,
    sh_basis,
    sh_to_amplitudes,
    amplitudes_to_sh,
    spherical_to_cartesian,
    cartesian_to_spherical,
)
from mrreg.fod.directions import (
    electrostatic_repulsion,
    default_directions,
    load_directions,
    get_directions,
)
from mrreg.fod.reorient import (
    APSFReorienter,
    apsf_weights,
    polar_rotations,
    reorientation_rotations,
    resolve_lmax,
    is_fod_image,
    reorient_linear,
    reorient_warp,
    deformation_jacobian,
)

__all__ = [
    'n_for_l',
    'l_for_n',
    'is_sh_series',
    'sh_basis',
    'sh_to_amplitudes',
    'amplitudes_to_sh',
    'spherical_to_cartesian',
    'cartesian_to_spherical',
    'electrostatic_repulsion',
    'default_directions',
    'load_directions',
    'get_directions',
    'APSFReorienter',
    'apsf_weights',
    'polar_rotations',
    'reorientation_rotations',
    'resolve_lmax',
    'is_fod_image',
    'reorient_linear',
    'reorient_warp',
    'deformation_jacobian',
]
