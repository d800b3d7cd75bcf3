"""
Parameter models for linear registration.

A model describes how the optimiser's parameter vector maps onto a
LinearTransform: how a cost gradient with respect to the mapped points is
projected onto the parameters, and how a parameter step produces the next
transform snapshot.
"""

import numpy as np

from mrreg.transform.linear import LinearTransform


def rotation_from_vector(rotvec: np.ndarray) -> np.ndarray:
    """Rodrigues' formula: rotation matrix from an axis-angle vector."""
    rotvec = np.asarray(rotvec, dtype=np.float64)
    angle = np.linalg.norm(rotvec)
    if angle < 1e-15:
        return np.eye(3)
    k = rotvec / angle
    K = np.array([[0.0, -k[2], k[1]],
                  [k[2], 0.0, -k[0]],
                  [-k[1], k[0], 0.0]])
    return np.eye(3) + np.sin(angle) * K + (1.0 - np.cos(angle)) * (K @ K)


def nearest_rotation(matrix: np.ndarray) -> np.ndarray:
    """Closest proper rotation to a 3x3 matrix (polar decomposition)."""
    U, _, Vt = np.linalg.svd(np.asarray(matrix, dtype=np.float64))
    R = U @ Vt
    if np.linalg.det(R) < 0:
        U[:, -1] *= -1
        R = U @ Vt
    return R


class RigidModel:
    """
    Rotation + translation (6 parameters).

    Rotations are updated multiplicatively with an incremental axis-angle
    vector, so the matrix stays orthonormal:
    parameters = [rotation vector (3), translation (3)].
    """

    name = 'rigid'
    n_params = 6

    def project(self, transform: LinearTransform) -> LinearTransform:
        """Make a transform admissible for this model."""
        return transform.with_matrix(nearest_rotation(transform.matrix))

    def gradient(self,
                 transform: LinearTransform,
                 points: np.ndarray,
                 point_gradient: np.ndarray,
                 ) -> np.ndarray:
        """
        Chain rule from d(cost)/d(mapped point) to d(cost)/d(parameters).

        Args:
            transform: Current transform
            points: (N, 3) points in image2 space
            point_gradient: (N, 3) cost gradient with respect to the mapped points

        Returns:
            (6,) parameter gradient
        """
        rotated = (points - transform.centre) @ transform.matrix.T
        grad = np.empty(self.n_params)
        grad[:3] = np.cross(rotated, point_gradient).sum(axis=0)
        grad[3:] = point_gradient.sum(axis=0)
        return grad

    def update(self, transform: LinearTransform, step: np.ndarray) -> LinearTransform:
        """Apply a parameter step (added to the current parameters)."""
        matrix = rotation_from_vector(step[:3]) @ transform.matrix
        return LinearTransform(matrix, transform.translation + step[3:], transform.centre)

    def scales(self, radius: float) -> np.ndarray:
        """Parameter scales so that unit scaled steps move points comparably."""
        radius = max(radius, 1e-6)
        return np.array([1.0 / radius] * 3 + [1.0] * 3)

    def perturb(self,
                transform: LinearTransform,
                rng: np.random.Generator,
                angle: float,
                distance: float,
                ) -> LinearTransform:
        """Random rotation of at most `angle` radians and shift of at most `distance`."""
        axis = rng.normal(size=3)
        axis /= max(np.linalg.norm(axis), 1e-12)
        shift = rng.uniform(-distance, distance, size=3)
        step = np.concatenate([axis * rng.uniform(-angle, angle), shift])
        return self.update(transform, step)


class AffineModel:
    """
    General linear map + translation (12 parameters).

    parameters = [matrix (9, row-major), translation (3)].
    """

    name = 'affine'
    n_params = 12

    def project(self, transform: LinearTransform) -> LinearTransform:
        return transform

    def gradient(self,
                 transform: LinearTransform,
                 points: np.ndarray,
                 point_gradient: np.ndarray,
                 ) -> np.ndarray:
        relative = points - transform.centre
        grad = np.empty(self.n_params)
        grad[:9] = (point_gradient.T @ relative).ravel()
        grad[9:] = point_gradient.sum(axis=0)
        return grad

    def update(self, transform: LinearTransform, step: np.ndarray) -> LinearTransform:
        matrix = transform.matrix + step[:9].reshape(3, 3)
        return LinearTransform(matrix, transform.translation + step[9:], transform.centre)

    def scales(self, radius: float) -> np.ndarray:
        radius = max(radius, 1e-6)
        return np.array([1.0 / radius] * 9 + [1.0] * 3)

    def perturb(self,
                transform: LinearTransform,
                rng: np.random.Generator,
                angle: float,
                distance: float,
                ) -> LinearTransform:
        axis = rng.normal(size=3)
        axis /= max(np.linalg.norm(axis), 1e-12)
        rotation = rotation_from_vector(axis * rng.uniform(-angle, angle))
        shift = rng.uniform(-distance, distance, size=3)
        return LinearTransform(rotation @ transform.matrix,
                               transform.translation + shift,
                               transform.centre)


def get_model(name: str):
    """Parameter model by stage name ('rigid' or 'affine')."""
    if name == 'rigid':
        return RigidModel()
    elif name == 'affine':
        return AffineModel()
    else:
        raise ValueError(f"Unknown transform model: {name}")
