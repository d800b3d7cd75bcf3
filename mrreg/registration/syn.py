"""
Symmetric diffeomorphic (SyN) registration.

Both images are warped into a midway space defined by the halves of the
linear transform. Each side owns a displacement field on the midway grid:

    W1(x) = I1(L1(x + D1(x))),   W2(x) = I2(L2(x + D2(x)))

Every iteration computes a demons-style update for each field from the
metric derivatives and the averaged gradient of W1 and W2, smooths the
update, composes it into the field, smooths the field and refreshes its
inverse. A step that increases the cost is undone and the step size is
halved.
"""

from dataclasses import dataclass, field
import numpy as np
import time
from typing import Optional, List, Tuple

from mrreg.core.config import SyNConfig
from mrreg.core.exceptions import DimensionMismatch
from mrreg.deformation.composition import midway_grid, midway_deformation, compose_halfway_transforms
from mrreg.deformation.warp import (
    compose_dvfs,
    invert_dvf,
    inverse_error,
    smooth_field,
    resample_field,
    compute_displacement_magnitude,
)
from mrreg.fod.reorient import APSFReorienter, reorientation_rotations, deformation_jacobian
from mrreg.metric.factory import create_metric
from mrreg.preprocessing.resample import (
    coarse_grid,
    downsample,
    downsample_mask,
    world_to_voxel,
    inside_grid,
    sample_voxels,
    spline_coefficients,
    image_gradient,
)
from mrreg.transform.linear import LinearTransform


@dataclass
class SyNResult:
    """
    Displacement fields on the midway grid, all in world units (mm).

    Attributes:
        transform: Linear transform whose halves define the midway space
        shape: Midway grid shape
        affine: Midway grid voxel-to-world matrix
        d1, d1_inv: Image1 side field and its inverse
        d2, d2_inv: Image2 side field and its inverse
        costs: Final cost at each level
    """
    transform: LinearTransform
    shape: Tuple[int, ...]
    affine: np.ndarray
    d1: np.ndarray
    d1_inv: np.ndarray
    d2: np.ndarray
    d2_inv: np.ndarray
    costs: List[float] = field(default_factory=list)

    def warps(self) -> np.ndarray:
        """(X, Y, Z, 3, 4) bundle ordered D1, D1^-1, D2, D2^-1."""
        return np.stack([self.d1, self.d1_inv, self.d2, self.d2_inv], axis=-1)

    @classmethod
    def from_warps(cls,
                   warps: np.ndarray,
                   affine: np.ndarray,
                   transform: LinearTransform,
                   ) -> 'SyNResult':
        """Unpack a 5D warp bundle."""
        warps = np.asarray(warps, dtype=np.float64)
        if warps.ndim != 5 or warps.shape[3:] != (3, 4):
            raise DimensionMismatch(
                f"syn initialisation input must be 5D with shape (X, Y, Z, 3, 4), got {warps.shape}")
        return cls(transform, warps.shape[:3], np.asarray(affine, dtype=np.float64),
                   warps[..., 0].copy(), warps[..., 1].copy(),
                   warps[..., 2].copy(), warps[..., 3].copy())

    def deformation(self, shape: Tuple[int, ...], affine: np.ndarray,
                    n_threads: Optional[int] = None) -> np.ndarray:
        """Absolute image1 positions for every voxel of an image2 grid."""
        return compose_halfway_transforms(self.transform, self.d1, self.d2_inv,
                                          self.affine, shape, affine, n_threads)

    def midway_deformations(self) -> Tuple[np.ndarray, np.ndarray]:
        """Image1 and image2 positions of every midway voxel."""
        return (midway_deformation(self.d1, self.transform.get_half(), self.shape, self.affine),
                midway_deformation(self.d2, self.transform.get_half_inverse(), self.shape, self.affine))


class _WarpedImage:
    """One image at one level, ready to be sampled through a midway field."""

    def __init__(self, image, affine, mask, scale, linear, reorienter, n_threads):
        data, self.affine = downsample(image, affine, scale)
        self.shape = data.shape[:3]
        self.volumes = data.shape[3:]
        self.coefficients = spline_coefficients(data, order=3)
        self.mask = None
        if mask is not None:
            self.mask = downsample_mask(mask, affine, self.shape, self.affine).astype(np.float64)
        self.linear = linear
        self.reorienter = reorienter
        self.n_threads = n_threads

    def warp(self, field, shape, affine):
        """Warped image and its validity mask on the midway level grid."""
        positions = midway_deformation(field, self.linear, shape, affine)
        voxels = world_to_voxel(self.affine, positions.reshape(-1, 3))
        valid = inside_grid(voxels, self.shape)
        if self.mask is not None:
            valid &= sample_voxels(self.mask, voxels, order=0, mode='nearest',
                                   n_threads=self.n_threads) > 0.5
        values = sample_voxels(self.coefficients, voxels, order=3, n_threads=self.n_threads)

        if self.reorienter is not None:
            rotations = reorientation_rotations(deformation_jacobian(positions, affine)).reshape(-1, 3, 3)
            values = self.reorienter.rotate_each(values, rotations, n_threads=self.n_threads)

        return values.reshape(tuple(shape) + self.volumes), valid.reshape(shape)


class SyNRegistration:
    """
    SyN driver.

    Args:
        config: SyN stage configuration
        n_threads: Worker count
        verbose: Print progress
        reorienter: aPSF reorienter when registering FOD images
    """

    def __init__(self,
                 config: SyNConfig,
                 n_threads: Optional[int] = None,
                 verbose: bool = True,
                 reorienter: Optional[APSFReorienter] = None,
                 ):
        self.config = config
        self.n_threads = n_threads
        self.verbose = verbose
        self.reorienter = reorienter

    def run(self,
            image1: np.ndarray,
            affine1: np.ndarray,
            image2: np.ndarray,
            affine2: np.ndarray,
            transform: Optional[LinearTransform] = None,
            mask1: Optional[np.ndarray] = None,
            mask2: Optional[np.ndarray] = None,
            init: Optional[SyNResult] = None,
            ) -> SyNResult:
        """
        Estimate the midway displacement fields.

        Args:
            image1, affine1: Moving image and voxel-to-world matrix
            image2, affine2: Template image and voxel-to-world matrix
            transform: Linear transform from the previous stages (identity if None)
            mask1, mask2: Optional binary masks
            init: Fields from a previous run; only the full resolution is
                processed and the linear transform of init is used

        Returns:
            SyNResult
        """
        config = self.config
        metric = create_metric(config.metric, 'none', ndim=np.ndim(image1),
                               extent=config.extent, n_threads=self.n_threads)

        if init is not None:
            transform = init.transform
            shape, affine = init.shape, init.affine
            scale_factors = (1.0,)
            max_iter = (int(config.max_iter[0]),)
        else:
            if transform is None:
                transform = LinearTransform()
            shape, affine = midway_grid(np.shape(image2), affine2, transform)
            scale_factors = config.scale_factors
            max_iter = config.per_level('max_iter', len(scale_factors))

        L1 = transform.get_half()
        L2 = transform.get_half_inverse()

        if self.verbose:
            print(f"  syn registration: {len(scale_factors)} level(s), {metric!r}")

        fields = None
        level_shape, level_affine = None, None
        costs = []

        for level, scale in enumerate(scale_factors):
            t0 = time.time()
            new_shape, new_affine, _ = coarse_grid(shape, affine, scale)
            if fields is None:
                if init is not None:
                    fields = [init.d1, init.d1_inv, init.d2, init.d2_inv]
                else:
                    fields = [np.zeros(new_shape + (3,)) for _ in range(4)]
            else:
                fields = [resample_field(f, level_affine, new_shape, new_affine, self.n_threads)
                          for f in fields]
            level_shape, level_affine = new_shape, new_affine

            moving = _WarpedImage(image1, affine1, mask1, scale, L1, self.reorienter, self.n_threads)
            template = _WarpedImage(image2, affine2, mask2, scale, L2, self.reorienter, self.n_threads)

            fields, cost, n_iter = self._run_level(metric, moving, template, fields,
                                                   level_shape, level_affine, int(max_iter[level]))
            costs.append(float(cost))
            if self.verbose:
                d1, d1_inv, d2, d2_inv = fields
                displacement = max(float(compute_displacement_magnitude(f).max()) for f in (d1, d2))
                error = max(inverse_error(d1, d1_inv, level_affine, self.n_threads),
                            inverse_error(d2, d2_inv, level_affine, self.n_threads))
                print(f"    level {level} (scale {scale}): cost {cost:.6g} after "
                      f"{n_iter} iterations ({time.time() - t0:.2f}s)")
                print(f"      max displacement {displacement:.3f} mm, inverse error {error:.3g} mm")

        d1, d1_inv, d2, d2_inv = fields
        if level_shape != tuple(shape):
            d1, d1_inv, d2, d2_inv = [resample_field(f, level_affine, shape, affine, self.n_threads)
                                      for f in fields]

        return SyNResult(transform, tuple(shape), np.asarray(affine), d1, d1_inv, d2, d2_inv, costs)

    def _evaluate(self, metric, moving, template, d1, d2, shape, affine):
        """Cost and per-side updates (before smoothing and normalisation)."""
        w1, valid1 = moving.warp(d1, shape, affine)
        w2, valid2 = template.warp(d2, shape, affine)
        valid = valid1 & valid2

        if metric.windowed:
            result = metric(w1, w2, valid)
        else:
            samples = (-1,) + w1.shape[3:]
            result = metric(w1.reshape(samples), w2.reshape(samples), valid.ravel())
        if result.count == 0:
            return np.inf, None, None

        d_moved = np.asarray(result.d_moved).reshape(w1.shape)
        d_target = np.asarray(result.d_target).reshape(w2.shape)
        gradient = 0.5 * (image_gradient(w1, affine) + image_gradient(w2, affine))
        if w1.ndim == 3:
            u1 = -d_moved[..., None] * gradient
            u2 = -d_target[..., None] * gradient
        else:
            u1 = -np.einsum('xyzv,xyzvk->xyzk', d_moved, gradient)
            u2 = -np.einsum('xyzv,xyzvk->xyzk', d_target, gradient)

        u1[~valid] = 0.0
        u2[~valid] = 0.0
        for u in (u1, u2):
            u[0], u[-1] = 0.0, 0.0
            u[:, 0], u[:, -1] = 0.0, 0.0
            u[:, :, 0], u[:, :, -1] = 0.0, 0.0
        return result.cost, u1, u2

    def _update(self, field, inverse, update, step_mm, affine):
        """Compose a normalised, smoothed update into a field and refresh its inverse."""
        config = self.config
        update = smooth_field(update, config.update_smoothing)
        magnitude = np.linalg.norm(update, axis=-1).max() if update.size else 0.0
        if magnitude > 0:
            update = update * (step_mm / magnitude)
        composed = compose_dvfs(update, field, affine, self.n_threads)
        composed = smooth_field(composed, config.disp_smoothing)
        inverse = invert_dvf(composed, affine, initial=inverse,
                             num_iterations=config.inverse_iterations,
                             tolerance=config.inverse_tolerance,
                             n_threads=self.n_threads)
        return composed, inverse

    def _run_level(self, metric, moving, template, fields, shape, affine, max_iter):
        config = self.config
        d1, d1_inv, d2, d2_inv = fields
        voxel_size = float(np.min(np.linalg.norm(affine[:3, :3], axis=0)))
        step = config.grad_step

        cost, u1, u2 = self._evaluate(metric, moving, template, d1, d2, shape, affine)
        n_iter = 0
        while n_iter < max_iter and u1 is not None:
            n_iter += 1
            c1, c1_inv = self._update(d1, d1_inv, u1, step * voxel_size, affine)
            c2, c2_inv = self._update(d2, d2_inv, u2, step * voxel_size, affine)
            new_cost, new_u1, new_u2 = self._evaluate(metric, moving, template, c1, c2, shape, affine)

            if new_cost <= cost:
                d1, d1_inv, d2, d2_inv = c1, c1_inv, c2, c2_inv
                cost, u1, u2 = new_cost, new_u1, new_u2
            else:
                step *= 0.5
                if step < config.min_grad_step:
                    break

        return [d1, d1_inv, d2, d2_inv], cost, n_iter
