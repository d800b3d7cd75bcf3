"""
Tests for the multi-resolution linear registration driver.
"""

import pytest
import numpy as np

from mrreg.core.config import RigidConfig, AffineConfig
from mrreg.registration import LinearRegistration, build_pyramid
from mrreg.transform import LinearTransform


def _blobs(shape, shift=(0.0, 0.0, 0.0)):
    """Asymmetric sum of Gaussians; shift moves the content by -shift."""
    grid = np.indices(shape, dtype=np.float64)
    centre = (np.asarray(shape, dtype=np.float64) - 1) / 2
    image = np.zeros(shape)
    for offset, sigma, weight in [((0, 0, 0), 6.0, 1.0),
                                  ((6, 3, 0), 3.0, 0.8),
                                  ((-4, 0, 5), 2.5, 0.6)]:
        c = centre + np.asarray(offset) - np.asarray(shift)
        r2 = sum((g - ci) ** 2 for g, ci in zip(grid, c))
        image += weight * np.exp(-r2 / (2 * sigma ** 2))
    return image


def test_zero_iterations_keep_initial_transform():
    """With an iteration cap of 0 the transform stays at its initialised value."""
    image1 = _blobs((32, 32, 32))
    image2 = _blobs((32, 32, 32), shift=(2.0, 0.0, 0.0))
    affine = np.eye(4)

    for stage, config in (('rigid', RigidConfig(scale_factors=(0.5, 1.0), max_iter=(0,))),
                          ('affine', AffineConfig(scale_factors=(1.0,), max_iter=(0,), repetitions=(3,)))):
        result = LinearRegistration(stage, config, verbose=False).run(image1, affine, image2, affine)

        assert np.allclose(result.transform.get_transform(), result.initial_transform.get_transform())
        assert result.iterations == [0] * len(config.scale_factors)


@pytest.mark.slow
def test_identical_images_give_identity():
    """Identical 64^3 images: mass init, one level, 10 iterations -> identity, zero cost."""
    image = _blobs((64, 64, 64))
    affine = np.eye(4)
    config = RigidConfig(scale_factors=(1.0,), max_iter=(10,), init='mass')

    result = LinearRegistration('rigid', config, verbose=False).run(image, affine, image.copy(), affine)

    assert np.allclose(result.transform.matrix, np.eye(3), atol=1e-6)
    assert np.allclose(result.transform.translation, 0.0, atol=1e-4)
    assert result.final_cost < 1e-8


def test_rigid_recovers_translation():
    """image2 = image1 translated by (2, 0, 0) voxels."""
    image1 = _blobs((40, 40, 40))
    image2 = _blobs((40, 40, 40), shift=(2.0, 0.0, 0.0))
    affine = np.eye(4)
    config = RigidConfig(scale_factors=(1.0,), max_iter=(200,), init='geometric')

    result = LinearRegistration('rigid', config, verbose=False).run(image1, affine, image2, affine)

    assert np.allclose(result.transform.translation, [2.0, 0.0, 0.0], atol=0.5)
    assert np.allclose(result.transform.matrix, np.eye(3), atol=0.05)
    assert result.iterations[0] > 0


def test_rigid_translation_world_units():
    """Anisotropic voxels: the recovered translation is in mm."""
    image1 = _blobs((40, 40, 40))
    image2 = _blobs((40, 40, 40), shift=(2.0, 0.0, 0.0))
    affine = np.diag([1.5, 1.0, 1.0, 1.0])
    config = RigidConfig(scale_factors=(0.5, 1.0), max_iter=(100,), init='geometric')

    result = LinearRegistration('rigid', config, verbose=False).run(image1, affine, image2, affine)

    assert np.allclose(result.transform.translation, [3.0, 0.0, 0.0], atol=0.75)


def test_affine_with_subsampling_and_repetitions():
    image1 = _blobs((32, 32, 32))
    image2 = _blobs((32, 32, 32), shift=(1.5, -1.0, 0.0))
    affine = np.eye(4)
    config = AffineConfig(scale_factors=(0.5, 1.0), max_iter=(150,), init='geometric',
                          loop_density=(0.5, 1.0), repetitions=(2, 1))

    result = LinearRegistration('affine', config, verbose=False).run(image1, affine, image2, affine)

    assert len(result.costs) == 2
    assert np.allclose(result.transform.apply(result.transform.centre) - result.transform.centre,
                       [1.5, -1.0, 0.0], atol=0.5)


def test_cross_correlation_metric():
    image1 = _blobs((32, 32, 32))
    image2 = 2.0 * _blobs((32, 32, 32), shift=(1.0, 0.0, 0.0)) + 0.5
    affine = np.eye(4)
    config = RigidConfig(scale_factors=(1.0,), max_iter=(100,), init='geometric', metric='ncc')

    result = LinearRegistration('rigid', config, verbose=False).run(image1, affine, image2, affine)

    assert np.allclose(result.transform.translation, [1.0, 0.0, 0.0], atol=0.5)
    assert result.final_cost < 0


def test_global_search_keeps_valid_start():
    image1 = _blobs((24, 24, 24))
    image2 = _blobs((24, 24, 24), shift=(1.0, 0.0, 0.0))
    affine = np.eye(4)
    config = RigidConfig(scale_factors=(1.0,), max_iter=(50,), global_search=True)

    result = LinearRegistration('rigid', config, verbose=False).run(image1, affine, image2, affine)

    assert np.isclose(result.transform.determinant(), 1.0)
    assert np.allclose(result.transform.translation, [1.0, 0.0, 0.0], atol=0.5)


def test_global_search_is_part_of_initialisation():
    """With a cap of 0 the searched start is both the initial and the final transform."""
    image1 = _blobs((24, 24, 24))
    image2 = _blobs((24, 24, 24), shift=(3.0, 0.0, 0.0))
    affine = np.eye(4)
    config = RigidConfig(scale_factors=(1.0,), max_iter=(0,), global_search=True, init='geometric')

    result = LinearRegistration('rigid', config, verbose=False).run(image1, affine, image2, affine)

    assert result.transform == result.initial_transform
    assert result.iterations == [0]


def test_supplied_transform_overrides_init_type():
    """A stage seeded with a transform keeps it and ignores the init type."""
    image1 = _blobs((24, 24, 24))
    image2 = _blobs((24, 24, 24), shift=(3.0, 0.0, 0.0))
    affine = np.eye(4)
    seed = LinearTransform(translation=[3.0, 0.0, 0.0], centre=[11.5, 11.5, 11.5])
    config = AffineConfig(scale_factors=(1.0,), max_iter=(0,), init='geometric')

    with pytest.warns(UserWarning, match='no effect'):
        result = LinearRegistration('affine', config, verbose=False).run(
            image1, affine, image2, affine, init=seed)

    assert np.allclose(result.initial_transform.get_transform(), seed.get_transform())
    assert np.allclose(result.transform.get_transform(), seed.get_transform())


def test_masks_restrict_evaluation():
    image1 = _blobs((32, 32, 32))
    image2 = _blobs((32, 32, 32), shift=(1.0, 0.0, 0.0))
    mask = np.zeros(image1.shape, dtype=bool)
    mask[6:26, 6:26, 6:26] = True
    affine = np.eye(4)
    config = RigidConfig(scale_factors=(1.0,), max_iter=(100,), init='geometric')

    result = LinearRegistration('rigid', config, verbose=False).run(
        image1, affine, image2, affine, mask1=mask, mask2=mask)

    assert np.allclose(result.transform.translation, [1.0, 0.0, 0.0], atol=0.5)


def test_pyramid_levels():
    image = _blobs((32, 32, 32))
    mask = image > 0.1

    levels = build_pyramid(image, np.eye(4), (0.25, 0.5, 1.0), mask)

    assert [level.shape for level in levels] == [(8, 8, 8), (16, 16, 16), (32, 32, 32)]
    assert levels[-1].image is not None and np.allclose(levels[-1].image, image)
    assert levels[0].mask.shape == (8, 8, 8)
    # the coarse grid spans the same field of view
    corner = levels[0].affine @ np.array([7, 7, 7, 1.0])
    assert np.allclose(corner[:3], [31, 31, 31])
