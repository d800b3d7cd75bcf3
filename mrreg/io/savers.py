"""
Save registered images, linear transforms and SyN warps.
"""

import json
import numpy as np
import nibabel as nib
import SimpleITK as sitk
from pathlib import Path
from typing import Dict, Any, Optional, Tuple

from mrreg.core.exceptions import DimensionMismatch
from mrreg.io.loaders import LPS_TO_RAS
from mrreg.transform.linear import LinearTransform, homogeneous

# NIfTI extension code for free-text comments
NIFTI_COMMENT_CODE = 6


def _affine(metadata: Optional[Dict[str, Any]]) -> np.ndarray:
    if metadata is None or metadata.get('affine') is None:
        return np.eye(4)
    return np.asarray(metadata['affine'], dtype=np.float64)


def save_volume(path: str,
                volume: np.ndarray,
                metadata: Optional[Dict[str, Any]] = None,
                ) -> None:
    """
    Save an image volume with its geometry.

    Format is determined by file extension.

    Args:
        path: Output file path
        volume: (X, Y, Z) or (X, Y, Z, V) array
        metadata: Dictionary with at least 'affine' (identity if missing)
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if path.name.lower().endswith(('.nii', '.nii.gz')):
        save_nifti(str(path), volume, metadata)
    elif path.suffix.lower() in ['.npy', '.npz']:
        save_numpy(str(path), volume, metadata)
    else:
        save_with_sitk(str(path), volume, metadata)


def save_nifti(path: str,
               volume: np.ndarray,
               metadata: Optional[Dict[str, Any]] = None,
               ) -> None:
    """Save as NIfTI format."""
    img = nib.Nifti1Image(np.asarray(volume, dtype=np.float32), _affine(metadata))
    nib.save(img, path)


def save_numpy(path: str,
               volume: np.ndarray,
               metadata: Optional[Dict[str, Any]] = None,
               ) -> None:
    """Save as NumPy format (.npz with the affine)."""
    path = Path(path)

    if path.suffix == '.npy':
        np.save(path, volume)
    else:
        np.savez(path, volume=volume, affine=_affine(metadata))


def save_with_sitk(path: str,
                   volume: np.ndarray,
                   metadata: Optional[Dict[str, Any]] = None,
                   ) -> None:
    """Save using SimpleITK."""
    volume = np.asarray(volume, dtype=np.float32)
    is_vector = volume.ndim == 4
    if is_vector:
        array = np.transpose(volume, (2, 1, 0, 3))
    else:
        array = np.transpose(volume, (2, 1, 0))
    image = sitk.GetImageFromArray(array, isVector=is_vector)

    affine = LPS_TO_RAS @ _affine(metadata)
    spacing = np.linalg.norm(affine[:3, :3], axis=0)
    image.SetSpacing(spacing.tolist())
    image.SetOrigin(affine[:3, 3].tolist())
    image.SetDirection((affine[:3, :3] / spacing).flatten().tolist())

    sitk.WriteImage(image, path)


def save_transform(path: str, transform, centre: Optional[np.ndarray] = None) -> None:
    """
    Save a linear transform as a text file.

    The 4x4 homogeneous matrix is written row by row; the centre of
    rotation is recorded in a comment line.

    Args:
        path: Output file
        transform: LinearTransform or 3x4 / 4x4 matrix
        centre: Centre to record (the transform's own centre by default)
    """
    if isinstance(transform, LinearTransform):
        matrix = transform.get_transform()
        centre = transform.centre if centre is None else centre
    else:
        matrix = homogeneous(transform)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    header = ''
    if centre is not None:
        header = 'centre: ' + ' '.join(f'{c:.10g}' for c in np.asarray(centre, dtype=np.float64))
    np.savetxt(path, matrix, fmt='%.10g', header=header)


def load_transform(path: str) -> LinearTransform:
    """
    Load a linear transform from a text file holding a 3x4 or 4x4 matrix.

    A 'centre:' comment line, when present, sets the centre of rotation;
    the mapping itself is unaffected.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    centre = None
    with open(path, 'r') as f:
        for line in f:
            stripped = line.strip().lstrip('#').strip()
            if stripped.startswith('centre:'):
                centre = np.array([float(v) for v in stripped[len('centre:'):].split()])

    matrix = np.loadtxt(path, comments='#', ndmin=2)
    if matrix.shape not in [(3, 4), (4, 4)]:
        raise ValueError(f"{path}: expected a 3x4 or 4x4 matrix, got shape {matrix.shape}")
    return LinearTransform.from_matrix(matrix, centre)


def save_warps(path: str,
               warps: np.ndarray,
               affine: np.ndarray,
               transform: LinearTransform,
               ) -> None:
    """
    Save SyN warps as one 5D image.

    Args:
        path: Output file (.nii / .nii.gz, or .npz)
        warps: (X, Y, Z, 3, 4) displacement fields ordered D1, D1^-1, D2, D2^-1
        affine: Midway grid voxel-to-world matrix
        transform: Linear transform whose halves define the midway space
    """
    warps = np.asarray(warps)
    if warps.ndim != 5 or warps.shape[3:] != (3, 4):
        raise DimensionMismatch(f"warps must have shape (X, Y, Z, 3, 4), got {warps.shape}")
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    linear = {
        'linear1': transform.get_half()[:3].tolist(),
        'linear2': transform.get_half_inverse()[:3].tolist(),
        'transform': transform.get_transform()[:3].tolist(),
        'centre': transform.centre.tolist(),
    }

    if path.name.lower().endswith(('.nii', '.nii.gz')):
        img = nib.Nifti1Image(warps.astype(np.float32), np.asarray(affine, dtype=np.float64))
        content = json.dumps(linear).encode('utf-8')
        img.header.extensions.append(nib.nifti1.Nifti1Extension(NIFTI_COMMENT_CODE, content))
        nib.save(img, path)
    else:
        np.savez(path, warps=warps, affine=affine,
                 transform=transform.get_transform(), centre=transform.centre)


def load_warps(path: str) -> Tuple[np.ndarray, np.ndarray, LinearTransform]:
    """
    Load SyN warps written by save_warps.

    Returns:
        warps: (X, Y, Z, 3, 4) fields
        affine: Midway grid voxel-to-world matrix
        transform: Linear transform recorded with the warps
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    if path.name.lower().endswith(('.nii', '.nii.gz')):
        img = nib.load(path)
        warps = np.asarray(img.dataobj, dtype=np.float64)
        affine = img.affine
        linear = None
        for extension in img.header.extensions:
            if extension.get_code() == NIFTI_COMMENT_CODE:
                try:
                    linear = json.loads(extension.get_content())
                except ValueError:
                    continue
                if 'transform' in linear:
                    break
                linear = None
        if linear is None:
            raise ValueError(f"{path}: no linear transform found in the image header")
        transform = LinearTransform.from_matrix(np.array(linear['transform']), linear.get('centre'))
    elif path.suffix == '.npz':
        data = np.load(path)
        warps = data['warps']
        affine = data['affine']
        transform = LinearTransform.from_matrix(data['transform'], data['centre'])
    else:
        raise ValueError(f"Unsupported warp format: {path.suffix}")

    if warps.ndim != 5 or warps.shape[3:] != (3, 4):
        raise DimensionMismatch(
            f"syn initialisation input is not 5D. Input must be from previous syn output ({warps.shape})")
    return warps, affine, transform
