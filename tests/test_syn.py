"""
Tests for symmetric diffeomorphic registration.
"""

import pytest
import numpy as np
from scipy import ndimage

from mrreg.core.config import SyNConfig
from mrreg.core.exceptions import DimensionMismatch
from mrreg.deformation import identity_deformation, compose_dvfs
from mrreg.registration import SyNRegistration, SyNResult
from mrreg.transform import LinearTransform


def _texture_pair(shape=(32, 32, 32), shift=(1.5, 0.0, 0.0), seed=0):
    """Smooth random texture and a copy sampled at x + shift."""
    pad = 8
    rng = np.random.default_rng(seed)
    big = ndimage.gaussian_filter(rng.normal(size=tuple(n + 2 * pad for n in shape)), 3.0, mode='wrap')
    big /= big.std()

    grid = np.indices(shape, dtype=np.float64) + pad
    image1 = ndimage.map_coordinates(big, grid, order=3, mode='wrap')
    shifted = grid + np.asarray(shift, dtype=np.float64).reshape(3, 1, 1, 1)
    image2 = ndimage.map_coordinates(big, shifted, order=3, mode='wrap')
    return image1, image2


@pytest.mark.slow
def test_syn_recovers_translation():
    """The composed deformation reproduces a uniform shift in the interior."""
    shift = np.array([1.5, 0.0, 0.0])
    image1, image2 = _texture_pair(shift=shift)
    affine = np.eye(4)
    config = SyNConfig(scale_factors=(0.5, 1.0), max_iter=(30,))

    result = SyNRegistration(config, verbose=False).run(image1, affine, image2, affine)

    deformation = result.deformation(image2.shape, affine)
    displacement = deformation - identity_deformation(image2.shape, affine)
    interior = displacement[6:-6, 6:-6, 6:-6]
    assert np.allclose(interior.reshape(-1, 3).mean(axis=0), shift, atol=0.5)
    assert np.median(np.linalg.norm(interior - shift, axis=-1)) < 0.5

    # both sides share the motion symmetrically
    assert np.abs(result.d1 + result.d2)[6:-6, 6:-6, 6:-6].mean() < 0.25
    assert len(result.costs) == 2


@pytest.mark.slow
def test_syn_fields_are_inverse_consistent():
    image1, image2 = _texture_pair(shape=(24, 24, 24), shift=(1.0, 0.5, 0.0), seed=1)
    affine = np.eye(4)
    config = SyNConfig(scale_factors=(1.0,), max_iter=(15,))

    result = SyNRegistration(config, verbose=False).run(image1, affine, image2, affine)

    residual = compose_dvfs(result.d1_inv, result.d1, result.affine)
    assert np.abs(residual[4:-4, 4:-4, 4:-4]).max() < 0.1


def test_zero_iterations_give_zero_fields():
    image1, image2 = _texture_pair(shape=(16, 16, 16))
    affine = np.eye(4)
    config = SyNConfig(scale_factors=(0.5, 1.0), max_iter=(0,))

    result = SyNRegistration(config, verbose=False).run(image1, affine, image2, affine)

    assert result.shape == (16, 16, 16)
    for field in (result.d1, result.d1_inv, result.d2, result.d2_inv):
        assert field.shape == (16, 16, 16, 3)
        assert np.all(field == 0)


def test_verbose_level_report(capsys):
    """Each level reports its displacement and inverse consistency."""
    image1, image2 = _texture_pair(shape=(12, 12, 12))
    affine = np.eye(4)
    config = SyNConfig(scale_factors=(1.0,), max_iter=(1,))

    SyNRegistration(config, verbose=True).run(image1, affine, image2, affine)

    out = capsys.readouterr().out
    assert 'level 0' in out
    assert 'max displacement' in out and 'inverse error' in out


def test_midway_grid_follows_linear_transform():
    image1, image2 = _texture_pair(shape=(12, 12, 12))
    affine = np.eye(4)
    transform = LinearTransform(np.eye(3), [2.0, 0.0, 0.0])

    result = SyNRegistration(SyNConfig(scale_factors=(1.0,), max_iter=(0,)), verbose=False).run(
        image1, affine, image2, affine, transform=transform)

    # the midway grid sits half way along the translation
    assert np.allclose(result.affine[:3, 3], [1.0, 0.0, 0.0])
    positions1, positions2 = result.midway_deformations()
    assert np.allclose(positions1 - positions2, [2.0, 0.0, 0.0])


def test_warps_bundle_round_trip():
    rng = np.random.default_rng(0)
    fields = [rng.normal(size=(6, 7, 8, 3)) for _ in range(4)]
    transform = LinearTransform(translation=[1.0, 2.0, 3.0])
    result = SyNResult(transform, (6, 7, 8), np.eye(4), *fields)

    warps = result.warps()
    restored = SyNResult.from_warps(warps, np.eye(4), transform)

    assert warps.shape == (6, 7, 8, 3, 4)
    assert np.array_equal(restored.d2_inv, fields[3])
    assert restored.shape == (6, 7, 8)


def test_from_warps_rejects_bad_shape():
    with pytest.raises(DimensionMismatch):
        SyNResult.from_warps(np.zeros((6, 7, 8, 3)), np.eye(4), LinearTransform())
    with pytest.raises(DimensionMismatch):
        SyNResult.from_warps(np.zeros((6, 7, 8, 3, 2)), np.eye(4), LinearTransform())


def test_initialisation_from_warps():
    """An initial warp is carried through unchanged when no iterations run."""
    image1, image2 = _texture_pair(shape=(12, 12, 12))
    affine = np.eye(4)
    field = np.zeros((12, 12, 12, 3))
    field[..., 0] = 0.3
    init = SyNResult(LinearTransform(), (12, 12, 12), affine, field, -field, -field, field)

    result = SyNRegistration(SyNConfig(max_iter=(0,)), verbose=False).run(
        image1, affine, image2, affine, init=init)

    assert np.allclose(result.d1, field)
    assert np.allclose(result.d2, -field)
    assert result.costs and len(result.costs) == 1
