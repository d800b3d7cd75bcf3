"""
Medical image I/O with voxel-to-world geometry.

Supports NIfTI (nibabel), NumPy archives and any format SimpleITK reads,
including DICOM series. Arrays are returned in (X, Y, Z[, V]) order together
with a 4x4 voxel-to-world matrix in RAS world coordinates.
"""

import numpy as np
import nibabel as nib
import SimpleITK as sitk
from pathlib import Path
from typing import Tuple, Dict, Any, Optional

from mrreg.core.exceptions import DimensionMismatch

# ITK world coordinates are LPS, NIfTI world coordinates are RAS
LPS_TO_RAS = np.diag([-1.0, -1.0, 1.0, 1.0])


def load_volume(path: str) -> Tuple[np.ndarray, Dict[str, Any]]:
    """
    Load an image volume with its geometry.

    Automatically detects format from file extension and loads appropriately.

    Args:
        path: Path to image file or DICOM directory

    Returns:
        volume: (X, Y, Z) or (X, Y, Z, V) array
        metadata: Dictionary containing:
            - affine: 4x4 voxel-to-world matrix
            - spacing: voxel sizes in mm
            - dtype: original data type
            - path: original file path

    Raises:
        ValueError: If file format is not supported
        FileNotFoundError: If file does not exist
        DimensionMismatch: If the image has more than 4 dimensions
    """
    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    if path.is_dir():
        volume, metadata = load_dicom_series(str(path))
    elif path.name.lower().endswith(('.nii', '.nii.gz')):
        volume, metadata = load_nifti(str(path))
    elif path.suffix.lower() in ['.npy', '.npz']:
        volume, metadata = load_numpy(str(path))
    else:
        volume, metadata = load_with_sitk(str(path))

    if volume.ndim > 4:
        raise DimensionMismatch(f"{path}: images with more than 4 dimensions are not supported")
    if volume.ndim < 3:
        raise DimensionMismatch(f"{path}: expected a 3D or 4D image, got {volume.ndim}D")

    return volume, metadata


def _metadata(affine: np.ndarray, dtype, path: str) -> Dict[str, Any]:
    affine = np.asarray(affine, dtype=np.float64)
    return {
        'affine': affine,
        'spacing': tuple(float(s) for s in np.linalg.norm(affine[:3, :3], axis=0)),
        'dtype': dtype,
        'path': str(path),
    }


def load_nifti(path: str) -> Tuple[np.ndarray, Dict[str, Any]]:
    """Load NIfTI format (.nii or .nii.gz)."""
    img = nib.load(path)
    volume = np.asarray(img.dataobj)
    metadata = _metadata(img.affine, volume.dtype, path)
    metadata['header'] = img.header
    return volume, metadata


def _from_sitk(image, path: str) -> Tuple[np.ndarray, Dict[str, Any]]:
    volume = sitk.GetArrayFromImage(image)
    # (Z, Y, X[, V]) -> (X, Y, Z[, V])
    if image.GetNumberOfComponentsPerPixel() > 1:
        volume = np.transpose(volume, (2, 1, 0, 3))
    else:
        volume = np.transpose(volume, (2, 1, 0))

    direction = np.array(image.GetDirection()).reshape(3, 3)
    affine = np.eye(4)
    affine[:3, :3] = direction * np.array(image.GetSpacing())
    affine[:3, 3] = image.GetOrigin()
    return volume, _metadata(LPS_TO_RAS @ affine, volume.dtype, path)


def load_dicom_series(directory: str) -> Tuple[np.ndarray, Dict[str, Any]]:
    """Load DICOM series from directory."""
    reader = sitk.ImageSeriesReader()
    dicom_names = reader.GetGDCMSeriesFileNames(directory)

    if not dicom_names:
        raise ValueError(f"No DICOM series found in {directory}")

    reader.SetFileNames(dicom_names)
    return _from_sitk(reader.Execute(), directory)


def load_numpy(path: str) -> Tuple[np.ndarray, Dict[str, Any]]:
    """
    Load NumPy array (.npy or .npz).

    For .npz files, expects key 'volume' and optionally 'affine'.
    """
    path = Path(path)

    if path.suffix == '.npy':
        volume = np.load(path)
        affine = np.eye(4)
    elif path.suffix == '.npz':
        data = np.load(path)
        volume = data['volume']
        affine = data['affine'] if 'affine' in data else np.eye(4)
    else:
        raise ValueError(f"Unsupported numpy format: {path.suffix}")

    return volume, _metadata(affine, volume.dtype, path)


def load_with_sitk(path: str) -> Tuple[np.ndarray, Dict[str, Any]]:
    """Load image using SimpleITK as fallback."""
    try:
        image = sitk.ReadImage(path)
    except RuntimeError as e:
        raise ValueError(f"Unsupported file format: {Path(path).suffix}. Error: {e}") from e
    return _from_sitk(image, path)


def load_mask(path: str, shape: Optional[Tuple[int, ...]] = None) -> Tuple[np.ndarray, np.ndarray]:
    """
    Load a binary mask (nonzero = included).

    Args:
        path: Mask file
        shape: Expected spatial shape (checked if given)

    Returns:
        mask: Boolean (X, Y, Z) array
        affine: Voxel-to-world matrix
    """
    volume, metadata = load_volume(path)
    if volume.ndim == 4:
        volume = volume[..., 0]
    if shape is not None and volume.shape != tuple(shape[:3]):
        raise DimensionMismatch(f"mask {path} has shape {volume.shape}, expected {tuple(shape[:3])}")
    return volume != 0, metadata['affine']
