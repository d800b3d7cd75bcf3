"""I/O utilities for images, transforms and warps."""

from mrreg.io.loaders import load_volume, load_nifti, load_dicom_series, load_numpy, load_with_sitk, load_mask
from mrreg.io.savers import save_volume, save_transform, load_transform, save_warps, load_warps

__all__ = [
    'load_volume',
    'load_nifti',
    'load_dicom_series',
    'load_numpy',
    'load_with_sitk',
    'load_mask',
    'save_volume',
    'save_transform',
    'load_transform',
    'save_warps',
    'load_warps',
]
