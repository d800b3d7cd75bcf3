"""
Main mrreg registration orchestrator.

Coordinates the rigid, affine and SyN stages and produces the resampled
outputs.
"""

import numpy as np
from typing import Optional, Dict, Any, Union
import warnings
import time

from mrreg.core.config import RegistrationConfig
from mrreg.core.exceptions import DimensionMismatch
from mrreg.deformation.composition import midway_grid
from mrreg.evaluation.metrics import jacobian_determinant, jacobian_statistics
from mrreg.fod import (
    APSFReorienter,
    get_directions,
    is_fod_image,
    n_for_l,
    resolve_lmax,
    reorient_linear,
    reorient_warp,
)
from mrreg.io.savers import load_transform, load_warps
from mrreg.preprocessing.resample import reslice, warp_image
from mrreg.registration.linear import LinearRegistration
from mrreg.registration.syn import SyNRegistration, SyNResult
from mrreg.transform.linear import LinearTransform
from mrreg.transform.initialisation import geometric_centre


def _as_transform(value: Union[str, np.ndarray, LinearTransform, None]) -> Optional[LinearTransform]:
    """Initial transform from a path, a matrix or a LinearTransform."""
    if value is None or isinstance(value, LinearTransform):
        return value
    if isinstance(value, str):
        return load_transform(value)
    return LinearTransform.from_matrix(np.asarray(value, dtype=np.float64))


def check_dimensions(image1: np.ndarray, image2: np.ndarray) -> None:
    """
    Validate the ranks and volume counts of an image pair.

    Raises:
        DimensionMismatch: unsupported rank, differing ranks or differing volume counts
    """
    for name, image in (('image1', image1), ('image2', image2)):
        if image.ndim > 4:
            raise DimensionMismatch(f"{name}: images with more than 4 dimensions are not supported")
        if image.ndim < 3:
            raise DimensionMismatch(f"{name}: expected a 3D or 4D image, got {image.ndim}D")
    if image1.ndim != image2.ndim:
        raise DimensionMismatch("input images do not have the same number of dimensions")
    if image1.ndim == 4 and image1.shape[3] != image2.shape[3]:
        raise DimensionMismatch(
            f"input images do not have the same number of volumes ({image1.shape[3]} vs {image2.shape[3]})")


class MRReg:
    """
    Main mrreg registration class.

    Runs the requested stages strictly in the order rigid -> affine -> SyN,
    each stage seeding the next, and resamples image1 into image2 space
    (and both images into the midway space) with FOD reorientation when the
    images hold SH series.
    """

    def __init__(self, config: Optional[RegistrationConfig] = None):
        """
        Initialize registration system.

        Args:
            config: Registration configuration (uses default if None)
        """
        if config is None:
            config = RegistrationConfig()

        self.config = config

    def register(self,
                 image1: np.ndarray,
                 image2: np.ndarray,
                 affine1: Optional[np.ndarray] = None,
                 affine2: Optional[np.ndarray] = None,
                 mask1: Optional[np.ndarray] = None,
                 mask2: Optional[np.ndarray] = None,
                 ) -> Dict[str, Any]:
        """
        Register image1 (moving) to image2 (template).

        Args:
            image1: Moving image (X, Y, Z) or (X, Y, Z, V)
            image2: Template image, same rank and volume count
            affine1, affine2: Voxel-to-world matrices (identity if None)
            mask1, mask2: Optional binary masks on the image grids

        Returns:
            Dictionary containing:
                - transformed: image1 resampled into image2 space (FOD images keep
                  only the coefficients up to the registration lmax)
                - transformed_midway: (image1, image2) resampled into the midway space
                - midway_affine: voxel-to-world matrix of the midway grid
                - transform: final linear transform (image2 -> image1)
                - rigid / affine: LinearRegistrationResult of each stage (or None)
                - syn: SyNResult (or None)
                - half, half_inverse: 4x4 midway transforms (1tomidway, 2tomidway)
                - warps: (X, Y, Z, 3, 4) SyN fields (or None)
                - jacobian_stats: statistics of the SyN deformation (or None)
                - fod: lmax used for FOD images (or None)
                - timing: per-stage timing
        """
        config = self.config
        stages = config.validate()

        image1 = np.asarray(image1)
        image2 = np.asarray(image2)
        affine1 = np.eye(4) if affine1 is None else np.asarray(affine1, dtype=np.float64)
        affine2 = np.eye(4) if affine2 is None else np.asarray(affine2, dtype=np.float64)
        check_dimensions(image1, image2)
        for name, mask, image in (('mask1', mask1, image1), ('mask2', mask2, image2)):
            if mask is not None and np.shape(mask)[:3] != image.shape[:3]:
                raise DimensionMismatch(f"{name} shape {np.shape(mask)} does not match the image grid")

        timing = {}
        t_start = time.time()

        if config.verbose:
            print("=" * 60)
            print(f"mrreg: {config.type} registration")
            print("=" * 60)

        # FOD detection
        reorienter = None
        directions = None
        lmax = None
        data1, data2 = image1, image2
        if is_fod_image(image1.shape, config.fod.reorientation):
            lmax = resolve_lmax(image1.shape[3], config.fod.lmax)
            reorienter = APSFReorienter(lmax, get_directions(config.fod.directions, lmax))
            directions = reorienter.directions
            n = n_for_l(lmax)
            data1, data2 = image1[..., :n], image2[..., :n]
            if config.verbose:
                print(f"  FOD images detected: registering with lmax={lmax} "
                      f"({n} coefficients, {len(directions)} directions)")
        elif image1.ndim == 4 and config.fod.lmax is not None:
            warnings.warn("lmax has no effect since the input images do not hold SH series "
                          "or reorientation is disabled")

        rigid_init = _as_transform(config.rigid.init_transform)
        affine_init = _as_transform(config.affine.init_transform)
        syn_init = None
        if config.syn.init_warp is not None:
            warps, warp_affine, warp_transform = load_warps(config.syn.init_warp)
            syn_init = SyNResult.from_warps(warps, warp_affine, warp_transform)

        transform = None
        rigid_result = affine_result = syn_result = None

        if stages['rigid']:
            t0 = time.time()
            if config.verbose:
                print("[rigid] Linear registration...")
            rigid_result = LinearRegistration('rigid', config.rigid, config.n_threads,
                                              config.verbose, reorienter).run(
                data1, affine1, data2, affine2, mask1, mask2, init=rigid_init)
            transform = rigid_result.transform
            timing['rigid'] = time.time() - t0

        if stages['affine']:
            t0 = time.time()
            if config.verbose:
                print("[affine] Linear registration...")
            init = transform if transform is not None else (affine_init or rigid_init)
            affine_result = LinearRegistration('affine', config.affine, config.n_threads,
                                               config.verbose, reorienter).run(
                data1, affine1, data2, affine2, mask1, mask2, init=init)
            transform = affine_result.transform
            timing['affine'] = time.time() - t0

        if transform is None:
            if syn_init is not None:
                transform = syn_init.transform
            else:
                transform = (affine_init or rigid_init
                             or LinearTransform.identity(geometric_centre(image2.shape, affine2)))

        if stages['syn']:
            t0 = time.time()
            if config.verbose:
                print("[syn] Non-linear registration...")
            syn_result = SyNRegistration(config.syn, config.n_threads, config.verbose, reorienter).run(
                data1, affine1, data2, affine2, transform, mask1, mask2, init=syn_init)
            transform = syn_result.transform
            timing['syn'] = time.time() - t0

        t0 = time.time()
        if config.verbose:
            print("[output] Resampling...")
        # outputs hold only the coefficients used for registration
        outputs = self._resample_outputs(data1, affine1, data2, affine2, transform,
                                         syn_result, lmax, directions)
        timing['resampling'] = time.time() - t0
        timing['total'] = time.time() - t_start

        if config.verbose:
            print(f"\n{'='*60}")
            print(f"Registration completed in {timing['total']:.2f}s")
            print(f"{'='*60}\n")

        result = {
            'transform': transform,
            'rigid': rigid_result,
            'affine': affine_result,
            'syn': syn_result,
            'half': transform.get_half(),
            'half_inverse': transform.get_half_inverse(),
            'warps': syn_result.warps() if syn_result is not None else None,
            'fod': lmax,
            'timing': timing,
        }
        result.update(outputs)
        return result

    def _resample_outputs(self, image1, affine1, image2, affine2, transform,
                          syn_result, lmax, directions) -> Dict[str, Any]:
        """image1 in image2 space and both images in the midway space."""
        n_threads = self.config.n_threads
        verbose = self.config.verbose
        image1 = np.asarray(image1, dtype=np.float64)
        image2 = np.asarray(image2, dtype=np.float64)
        jacobian_stats = None
        is_fod = lmax is not None

        if syn_result is not None:
            deformation = syn_result.deformation(image2.shape, affine2, n_threads)
            transformed = warp_image(image1, affine1, deformation, n_threads=n_threads)
            if is_fod:
                transformed = reorient_warp(transformed, deformation, affine2, lmax=lmax,
                                            directions=directions, n_threads=n_threads, verbose=verbose)
            jacobian_stats = jacobian_statistics(jacobian_determinant(deformation, affine2))
            if verbose:
                print(f"    Jacobian determinant: mean {jacobian_stats['mean']:.3f}, "
                      f"{jacobian_stats['num_folding']} folded voxels")

            midway_affine = syn_result.affine
            position1, position2 = syn_result.midway_deformations()
            midway1 = warp_image(image1, affine1, position1, n_threads=n_threads)
            midway2 = warp_image(image2, affine2, position2, n_threads=n_threads)
            if is_fod:
                midway1 = reorient_warp(midway1, position1, midway_affine, lmax=lmax,
                                        directions=directions, n_threads=n_threads, verbose=verbose)
                midway2 = reorient_warp(midway2, position2, midway_affine, lmax=lmax,
                                        directions=directions, n_threads=n_threads, verbose=verbose)
        else:
            transformed = reslice(image1, affine1, image2.shape, affine2,
                                  transform.get_transform(), n_threads=n_threads)
            if is_fod:
                transformed = reorient_linear(transformed, transform.matrix, lmax=lmax, directions=directions)

            shape, midway_affine = midway_grid(image2.shape, affine2, transform)
            half, half_inverse = transform.get_half(), transform.get_half_inverse()
            midway1 = reslice(image1, affine1, shape, midway_affine, half, n_threads=n_threads)
            midway2 = reslice(image2, affine2, shape, midway_affine, half_inverse, n_threads=n_threads)
            if is_fod:
                midway1 = reorient_linear(midway1, half[:3, :3], lmax=lmax, directions=directions)
                midway2 = reorient_linear(midway2, half_inverse[:3, :3], lmax=lmax, directions=directions)

        return {
            'transformed': transformed,
            'transformed_midway': (midway1, midway2),
            'midway_affine': midway_affine,
            'jacobian_stats': jacobian_stats,
        }

    def __repr__(self) -> str:
        return f"MRReg(type={self.config.type})"
