"""
Unit tests for linear transforms, parameter models and initialisation.
"""

import pytest
import numpy as np

from mrreg.core.exceptions import NumericalError
from mrreg.transform import (
    LinearTransform,
    half_transform,
    RigidModel,
    AffineModel,
    rotation_from_vector,
    nearest_rotation,
    initialise_transform,
    centre_of_mass,
    global_search_candidates,
)


def _example_transform():
    rotation = rotation_from_vector([0.2, -0.3, 0.4])
    scaling = np.diag([1.1, 0.9, 1.05])
    return LinearTransform(rotation @ scaling, [5.0, -3.0, 2.0], [10.0, 20.0, 30.0])


def test_half_squares_to_full():
    """half o half reproduces the full transform."""
    transform = _example_transform()

    half = transform.get_half()
    full = transform.get_transform()

    assert np.abs(half @ half - full).max() < 1e-9


def test_half_inverse_squares_to_inverse():
    """half_inverse o half_inverse reproduces the inverse transform."""
    transform = _example_transform()

    half_inverse = transform.get_half_inverse()
    inverse = np.linalg.inv(transform.get_transform())

    assert np.abs(half_inverse @ half_inverse - inverse).max() < 1e-9


def test_apply_half_points():
    """Mapping a point twice through the half equals the full mapping."""
    transform = _example_transform()
    points = np.random.default_rng(0).normal(size=(10, 3)) * 20

    twice = transform.apply_half(transform.apply_half(points))

    assert np.allclose(twice, transform.apply(points), atol=1e-9)
    back = transform.apply_half_inverse(transform.apply_half_inverse(transform.apply(points)))
    assert np.allclose(back, points, atol=1e-8)


def test_offset_definition():
    """offset = translation + centre - matrix @ centre."""
    transform = _example_transform()

    expected = transform.translation + transform.centre - transform.matrix @ transform.centre

    assert np.allclose(transform.offset, expected)
    point = np.array([1.0, 2.0, 3.0])
    assert np.allclose(transform.apply(point),
                       transform.matrix @ (point - transform.centre) + transform.centre + transform.translation)


def test_negative_determinant_raises():
    """Orientation-reversing transforms have no halfway transform."""
    with pytest.raises(NumericalError):
        LinearTransform(np.diag([-1.0, 1.0, 1.0]))

    with pytest.raises(NumericalError):
        half_transform(np.diag([1.0, 1.0, -2.0, 1.0]))


def test_singular_matrix_raises():
    with pytest.raises(NumericalError):
        LinearTransform(np.diag([1.0, 1.0, 0.0]))


def test_snapshots_are_immutable():
    """Setters return new snapshots and leave the original untouched."""
    transform = _example_transform()
    original = transform.get_transform()

    moved = transform.with_translation([0.0, 0.0, 0.0])

    assert np.array_equal(transform.get_transform(), original)
    assert not np.array_equal(moved.get_transform(), original)
    with pytest.raises(ValueError):
        transform.matrix[0, 0] = 2.0


def test_with_centre_keep_mapping():
    """Re-centring with keep_mapping preserves the mapped points."""
    transform = _example_transform()
    points = np.random.default_rng(1).normal(size=(5, 3))

    recentred = transform.with_centre([0.0, 0.0, 0.0], keep_mapping=True)

    assert np.allclose(recentred.apply(points), transform.apply(points))
    assert np.allclose(recentred.centre, 0.0)


def test_inverse_and_compose():
    transform = _example_transform()

    identity = transform.compose(transform.inverse())

    assert np.allclose(identity.get_transform(), np.eye(4), atol=1e-10)


def test_rigid_model_update_keeps_rotation():
    """Rigid updates keep an orthonormal matrix."""
    model = RigidModel()
    transform = LinearTransform(centre=[1.0, 2.0, 3.0])

    updated = model.update(transform, np.array([0.1, 0.2, -0.1, 1.0, 0.0, 0.0]))

    assert np.allclose(updated.matrix @ updated.matrix.T, np.eye(3), atol=1e-12)
    assert np.isclose(np.linalg.det(updated.matrix), 1.0)
    assert np.allclose(updated.translation, [1.0, 0.0, 0.0])


def test_model_gradients_match_finite_differences():
    """Parameter gradients agree with a numerical derivative of a point cost."""
    rng = np.random.default_rng(2)
    points = rng.normal(size=(20, 3)) * 10
    target = rng.normal(size=(20, 3)) * 10

    def cost(transform):
        return 0.5 * np.sum((transform.apply(points) - target) ** 2)

    for model in (RigidModel(), AffineModel()):
        transform = LinearTransform(rotation_from_vector([0.1, 0.0, 0.2]), [1.0, 2.0, 0.0], [0.5, 0.5, 0.5])
        point_gradient = transform.apply(points) - target
        analytic = model.gradient(transform, points, point_gradient)

        numeric = np.empty(model.n_params)
        h = 1e-6
        for i in range(model.n_params):
            step = np.zeros(model.n_params)
            step[i] = h
            numeric[i] = (cost(model.update(transform, step)) - cost(model.update(transform, -step))) / (2 * h)

        assert np.allclose(analytic, numeric, rtol=1e-4, atol=1e-4)


def test_nearest_rotation():
    rotation = rotation_from_vector([0.3, 0.1, -0.2])

    assert np.allclose(nearest_rotation(rotation @ np.diag([2.0, 1.0, 0.5]) @ rotation.T), np.eye(3), atol=1e-10)


def test_centre_of_mass_initialisation():
    """Mass initialisation aligns the intensity centroids."""
    image1 = np.zeros((20, 20, 20))
    image1[12:16, 8:12, 8:12] = 1.0
    image2 = np.zeros((20, 20, 20))
    image2[6:10, 8:12, 8:12] = 1.0
    affine = np.eye(4)

    transform = initialise_transform('mass', image1, affine, image2, affine)

    c2 = centre_of_mass(image2, affine)
    assert np.allclose(transform.centre, c2)
    assert np.allclose(transform.apply(c2), centre_of_mass(image1, affine))
    assert np.allclose(transform.translation, [6.0, 0.0, 0.0])


def test_none_initialisation_keeps_mapping():
    start = _example_transform()
    image = np.ones((10, 10, 10))

    transform = initialise_transform('none', image, np.eye(4), image, np.eye(4), transform=start)

    assert np.allclose(transform.get_transform(), start.get_transform())
    assert np.allclose(transform.centre, [4.5, 4.5, 4.5])


def test_empty_image_warns():
    with pytest.warns(UserWarning):
        centre = centre_of_mass(np.zeros((5, 5, 5)), np.eye(4))
    assert np.allclose(centre, [2.0, 2.0, 2.0])


def test_global_search_candidates():
    transform = LinearTransform(centre=[1.0, 1.0, 1.0])

    candidates = global_search_candidates(transform, np.deg2rad(15.0), 5.0)

    assert candidates[0] is transform
    assert len(candidates) == 27 * 7
    assert all(np.isclose(c.determinant(), 1.0) for c in candidates)


def test_moments_initialisation():
    """Moments initialisation of a shifted copy gives a pure translation."""
    image1 = np.zeros((24, 24, 24))
    image1[8:16, 10:13, 9:11] = 1.0
    image1[8:10, 13:15, 9:11] = 2.0
    image2 = np.roll(image1, 3, axis=1)
    affine = np.eye(4)

    transform = initialise_transform('moments', image1, affine, image2, affine)

    assert np.allclose(transform.matrix, np.eye(3), atol=1e-8)
    assert np.allclose(transform.translation, [0.0, -3.0, 0.0], atol=1e-8)
