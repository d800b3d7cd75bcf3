"""
Multi-resolution linear (rigid / affine) registration.

The cost is evaluated on the template (image2) grid: every template voxel x
is mapped to T(x) in image1 space, image1 is sampled there with cubic
B-splines and compared with the template value. The metric's per-sample
derivatives are pulled back through the image1 gradient onto the transform
parameters, which are updated by scaled gradient descent with an adaptive
step.
"""

from dataclasses import dataclass, field
import numpy as np
import warnings
import time
from typing import Optional, List

from mrreg.core.config import LinearStageConfig
from mrreg.fod.reorient import APSFReorienter, reorientation_rotations
from mrreg.metric.factory import create_metric
from mrreg.preprocessing.resample import (
    grid_points,
    world_to_voxel,
    inside_grid,
    sample_voxels,
    spline_coefficients,
    image_gradient,
)
from mrreg.registration.pyramid import PyramidLevel, build_pyramid
from mrreg.transform.initialisation import initialise_transform, global_search_candidates
from mrreg.transform.linear import LinearTransform
from mrreg.transform.models import get_model


@dataclass
class LinearRegistrationResult:
    """
    Outcome of a linear stage.

    Attributes:
        transform: Final transform (image2 -> image1)
        initial_transform: Transform after initialisation, before optimisation
        costs: Final cost at each level
        iterations: Iterations run at each level (summed over repetitions)
    """
    transform: LinearTransform
    initial_transform: LinearTransform
    costs: List[float] = field(default_factory=list)
    iterations: List[int] = field(default_factory=list)

    @property
    def final_cost(self) -> float:
        return self.costs[-1] if self.costs else float('nan')


class LevelCost:
    """
    Cost and parameter gradient of a transform at one pyramid level.

    Args:
        moving: Image1 level
        template: Image2 level (its grid is the evaluation grid)
        metric: Active metric
        model: Parameter model
        reorienter: aPSF reorienter for FOD images (None for scalar data)
        density: Fraction of template voxels sampled (ignored by windowed metrics)
        rng: Random generator used for the voxel subset
        n_threads: Worker count
    """

    def __init__(self,
                 moving: PyramidLevel,
                 template: PyramidLevel,
                 metric,
                 model,
                 reorienter: Optional[APSFReorienter] = None,
                 density: float = 1.0,
                 rng: Optional[np.random.Generator] = None,
                 n_threads: Optional[int] = None,
                 ):
        self.metric = metric
        self.model = model
        self.reorienter = reorienter
        self.n_threads = n_threads

        self.shape1 = moving.shape
        self.affine1 = moving.affine
        self.coefficients = spline_coefficients(moving.image, order=3)
        self.n_volumes = moving.image.shape[3] if moving.image.ndim == 4 else 1
        self.gradient = image_gradient(moving.image, moving.affine).reshape(self.shape1 + (-1,))
        self.mask1 = None if moving.mask is None else moving.mask.astype(np.float64)

        points = grid_points(template.shape, template.affine)
        target = template.image.reshape((len(points),) + template.image.shape[3:])
        self.grid_shape = template.shape
        self.mask2 = None

        if metric.windowed:
            self.points = points
            self.target = template.image
            if template.mask is not None:
                self.mask2 = template.mask.ravel()
        else:
            keep = np.ones(len(points), dtype=bool) if template.mask is None else template.mask.ravel()
            indices = np.flatnonzero(keep)
            if density < 1.0 and len(indices) > 0:
                rng = np.random.default_rng() if rng is None else rng
                size = max(int(round(density * len(indices))), 1)
                indices = np.sort(rng.choice(indices, size=size, replace=False))
            self.points = points[indices]
            self.target = target[indices]

        self.voxel_sizes = template.voxel_sizes

    def radius(self, centre: np.ndarray) -> float:
        """RMS distance of the sample points from the transform centre."""
        if len(self.points) == 0:
            return 1.0
        return float(np.sqrt(np.mean(np.sum((self.points - centre) ** 2, axis=-1))))

    def __call__(self, transform: LinearTransform, with_gradient: bool = True):
        """
        Returns:
            cost: Scalar cost (inf when the images do not overlap)
            gradient: Parameter gradient (None if not requested)
        """
        n_points = len(self.points)
        mapped = transform.apply(self.points)
        voxels = world_to_voxel(self.affine1, mapped)
        valid = inside_grid(voxels, self.shape1)
        if self.mask1 is not None:
            valid &= sample_voxels(self.mask1, voxels, order=0, mode='nearest',
                                   n_threads=self.n_threads) > 0.5

        moved = sample_voxels(self.coefficients, voxels, order=3, n_threads=self.n_threads)
        operator = None
        if self.reorienter is not None:
            operator = self.reorienter.operator(reorientation_rotations(transform.matrix))
            moved = moved @ operator.T

        if self.metric.windowed:
            if self.mask2 is not None:
                valid &= self.mask2
            result = self.metric(moved.reshape(self.grid_shape),
                                 np.asarray(self.target, dtype=np.float64),
                                 valid.reshape(self.grid_shape))
        else:
            result = self.metric(moved, self.target, valid)

        if result.count == 0:
            return np.inf, (np.zeros(self.model.n_params) if with_gradient else None)
        if not with_gradient:
            return result.cost, None

        d_moved = np.asarray(result.d_moved).reshape(n_points, -1)
        if operator is not None:
            d_moved = d_moved @ operator
        image_grad = sample_voxels(self.gradient, voxels, order=1, mode='nearest',
                                   n_threads=self.n_threads).reshape(n_points, -1, 3)
        point_gradient = np.einsum('nv,nvk->nk', d_moved, image_grad)
        return result.cost, self.model.gradient(transform, self.points, point_gradient)


class LinearRegistration:
    """
    Rigid or affine registration driver.

    Args:
        stage: 'rigid' or 'affine'
        config: Stage configuration
        n_threads: Worker count
        verbose: Print progress
        reorienter: aPSF reorienter when registering FOD images
    """

    def __init__(self,
                 stage: str,
                 config: LinearStageConfig,
                 n_threads: Optional[int] = None,
                 verbose: bool = True,
                 reorienter: Optional[APSFReorienter] = None,
                 ):
        self.stage = stage
        self.config = config
        self.model = get_model(stage)
        self.n_threads = n_threads
        self.verbose = verbose
        self.reorienter = reorienter

    def run(self,
            image1: np.ndarray,
            affine1: np.ndarray,
            image2: np.ndarray,
            affine2: np.ndarray,
            mask1: Optional[np.ndarray] = None,
            mask2: Optional[np.ndarray] = None,
            init: Optional[LinearTransform] = None,
            ) -> LinearRegistrationResult:
        """
        Register image1 (moving) to image2 (template).

        Args:
            image1, affine1: Moving image and voxel-to-world matrix
            image2, affine2: Template image and voxel-to-world matrix
            mask1, mask2: Optional binary masks on the image grids
            init: Starting transform (a previous stage or a user-supplied
                transform); internal initialisation is skipped whenever one
                is given

        Returns:
            LinearRegistrationResult
        """
        config = self.config
        metric = create_metric(config.metric, config.robust_estimator,
                               ndim=np.ndim(image1), extent=config.extent,
                               lp_power=config.lp_power, n_threads=self.n_threads)

        n_levels = len(config.scale_factors)
        max_iter = config.per_level('max_iter', n_levels)
        repetitions = config.per_level('repetitions', n_levels)
        loop_density = config.per_level('loop_density', n_levels)
        rng = np.random.default_rng(config.seed)

        if init is not None:
            if config.init not in (None, 'none'):
                warnings.warn(f"{self.stage} init '{config.init}' has no effect since the stage "
                              "starts from a supplied transform")
            init_type = 'none'
        else:
            init_type = config.init_type
        transform = initialise_transform(init_type, image1, affine1, image2, affine2,
                                         mask1, mask2, init)
        transform = self.model.project(transform)

        if self.verbose:
            print(f"  {self.stage} registration: {n_levels} level(s), init '{init_type}', {metric!r}")

        pyramid1 = build_pyramid(image1, affine1, config.scale_factors, mask1)
        pyramid2 = build_pyramid(image2, affine2, config.scale_factors, mask2)

        def level_cost(level):
            return LevelCost(pyramid1[level], pyramid2[level], metric, self.model,
                             self.reorienter, loop_density[level], rng, self.n_threads)

        # global search is part of initialisation and runs on the coarsest level
        cost_fn = level_cost(0)
        if config.global_search:
            transform = self._global_search(cost_fn, transform)

        result = LinearRegistrationResult(transform=transform, initial_transform=transform)

        for level in range(n_levels):
            t0 = time.time()
            if level > 0:
                cost_fn = level_cost(level)

            best_transform, best_cost, total_iter = transform, None, 0
            n_repeats = int(repetitions[level]) if int(max_iter[level]) > 0 else 1
            for repeat in range(n_repeats):
                start = transform
                if repeat > 0:
                    start = self.model.perturb(transform, rng, np.deg2rad(5.0),
                                               float(cost_fn.voxel_sizes.mean()))
                candidate, cost, n_iter = self._optimise(cost_fn, start, int(max_iter[level]))
                total_iter += n_iter
                if best_cost is None or cost < best_cost:
                    best_transform, best_cost = candidate, cost

            transform = best_transform
            result.costs.append(float(best_cost))
            result.iterations.append(total_iter)

            if self.verbose:
                print(f"    level {level} (scale {config.scale_factors[level]}): "
                      f"cost {best_cost:.6g} after {total_iter} iterations ({time.time() - t0:.2f}s)")

        result.transform = transform
        return result

    def _global_search(self, cost_fn: LevelCost, transform: LinearTransform) -> LinearTransform:
        """Keep the lowest-cost start among a coarse grid of candidates."""
        angle = np.deg2rad(self.config.global_search_angle)
        distance = 0.1 * cost_fn.radius(transform.centre)
        best, best_cost = transform, None
        for candidate in global_search_candidates(transform, angle, distance):
            candidate = self.model.project(candidate)
            cost, _ = cost_fn(candidate, with_gradient=False)
            if best_cost is None or cost < best_cost:
                best, best_cost = candidate, cost
        if self.verbose:
            print(f"    global search: best start cost {best_cost:.6g}")
        return best

    def _optimise(self, cost_fn: LevelCost, transform: LinearTransform, max_iter: int):
        """
        Scaled gradient descent with an adaptive step.

        A step that lowers the cost is accepted and the step length grows;
        otherwise the step is halved. The iteration cap always applies;
        iteration also stops when the relative improvement falls below the
        tolerance or the step becomes negligible.

        Returns:
            transform, cost, number of iterations run
        """
        if max_iter <= 0:
            cost, _ = cost_fn(transform, with_gradient=False)
            return transform, cost, 0

        voxel_size = float(cost_fn.voxel_sizes.mean())
        step = self.config.init_step * voxel_size
        min_step = 1e-3 * voxel_size
        scales = self.model.scales(cost_fn.radius(transform.centre))

        cost, gradient = cost_fn(transform)
        n_iter = 0
        while n_iter < max_iter:
            n_iter += 1
            scaled = scales * gradient
            norm = np.linalg.norm(scaled)
            if not np.isfinite(norm) or norm == 0:
                break

            candidate = self.model.project(
                self.model.update(transform, -step * scales * scaled / norm))
            new_cost, new_gradient = cost_fn(candidate)

            if new_cost < cost:
                improvement = (cost - new_cost) / max(abs(cost), 1e-12)
                transform, cost, gradient = candidate, new_cost, new_gradient
                step *= 1.5
                if improvement < self.config.relative_tolerance:
                    break
            else:
                step *= 0.5
                if step < min_step:
                    break

        return transform, cost, n_iter
