"""
End-to-end tests of the registration pipeline and the command-line script.
"""

from pathlib import Path
import runpy

import pytest
import numpy as np
import nibabel as nib
from scipy import ndimage

from mrreg import MRReg, RegistrationConfig
from mrreg.core import (
    RigidConfig,
    AffineConfig,
    SyNConfig,
    DimensionMismatch,
    UnsupportedConfiguration,
    check_dimensions,
)
from mrreg.evaluation import mean_squared_error, normalized_cross_correlation
from mrreg.io import load_transform, load_warps


SCRIPT = Path(__file__).resolve().parent.parent / 'scripts' / 'register_pair.py'


def _smooth_volume(shape, seed=0, volumes=None):
    rng = np.random.default_rng(seed)
    full = tuple(shape) + ((volumes,) if volumes else ())
    sigma = (2.0, 2.0, 2.0, 0.0) if volumes else 2.0
    data = ndimage.gaussian_filter(rng.normal(size=full), sigma)
    return data / data.std()


def test_check_dimensions():
    image3d = np.zeros((4, 4, 4))
    image4d = np.zeros((4, 4, 4, 4))

    check_dimensions(image3d, image3d)
    with pytest.raises(DimensionMismatch):
        check_dimensions(image3d, image4d)
    with pytest.raises(DimensionMismatch):
        check_dimensions(image4d, np.zeros((4, 4, 4, 5)))
    with pytest.raises(DimensionMismatch):
        check_dimensions(np.zeros((4, 4)), np.zeros((4, 4)))


def test_register_rejects_mismatched_images():
    config = RegistrationConfig(type='rigid', verbose=False)

    with pytest.raises(DimensionMismatch):
        MRReg(config).register(np.zeros((8, 8, 8)), np.zeros((8, 8, 8, 2)))


def test_cross_correlation_on_4d_unsupported():
    """ncc on non-FOD 4D data fails before any iteration."""
    image = _smooth_volume((12, 12, 12), volumes=4)
    config = RegistrationConfig(type='rigid', rigid=RigidConfig(metric='ncc'), verbose=False)

    with pytest.raises(UnsupportedConfiguration):
        MRReg(config).register(image, image.copy())


def test_rigid_identical_images():
    image = _smooth_volume((20, 20, 20))
    config = RegistrationConfig(type='rigid',
                                rigid=RigidConfig(scale_factors=(1.0,), max_iter=(10,), init='mass'),
                                verbose=False)

    result = MRReg(config).register(image, image.copy())

    assert np.allclose(result['transform'].get_transform(), np.eye(4), atol=1e-6)
    assert result['rigid'].final_cost < 1e-8
    assert result['affine'] is None and result['syn'] is None and result['warps'] is None
    assert np.allclose(result['transformed'], image, atol=1e-6)
    assert mean_squared_error(image, result['transformed']) < 1e-10
    assert np.isclose(normalized_cross_correlation(image, result['transformed']), 1.0)
    assert np.allclose(result['half'], np.eye(4), atol=1e-6)
    assert set(result['timing']) >= {'rigid', 'resampling', 'total'}


def test_fod_images_are_detected_and_reoriented():
    """Identical lmax=2 FOD images stay unchanged after rigid registration."""
    image = _smooth_volume((14, 14, 14), volumes=6)
    config = RegistrationConfig(type='rigid',
                                rigid=RigidConfig(scale_factors=(1.0,), max_iter=(3,)),
                                verbose=False)

    result = MRReg(config).register(image, image.copy())

    assert result['fod'] == 2
    assert result['transformed'].shape == image.shape
    assert np.allclose(result['transformed'], image, atol=1e-5)


def test_noreorientation_treats_4d_as_plain_volumes():
    image = _smooth_volume((12, 12, 12), volumes=6)
    config = RegistrationConfig(type='rigid',
                                rigid=RigidConfig(scale_factors=(1.0,), max_iter=(2,)),
                                verbose=False)
    config.fod.reorientation = False

    result = MRReg(config).register(image, image.copy())

    assert result['fod'] is None


def test_fod_outputs_keep_registration_lmax():
    """lmax=10 FOD images: outputs hold only the registered coefficients, unchanged by identity."""
    image = _smooth_volume((10, 10, 10), volumes=66)
    config = RegistrationConfig(type='rigid',
                                rigid=RigidConfig(scale_factors=(1.0,), max_iter=(0,)),
                                verbose=False)

    result = MRReg(config).register(image, image.copy())

    assert result['fod'] == 4
    assert result['transformed'].shape == (10, 10, 10, 15)
    assert np.allclose(result['transformed'], image[..., :15], atol=1e-5)


def test_fod_outputs_at_high_lmax_are_unchanged_by_identity():
    image = _smooth_volume((8, 8, 8), volumes=66)
    config = RegistrationConfig(type='rigid',
                                rigid=RigidConfig(scale_factors=(1.0,), max_iter=(0,)),
                                verbose=False)
    config.fod.lmax = 10

    result = MRReg(config).register(image, image.copy())

    assert result['fod'] == 10
    assert np.allclose(result['transformed'], image, atol=1e-5)
    midway1, midway2 = result['transformed_midway']
    assert np.allclose(midway1, image, atol=1e-5)
    assert np.allclose(midway2, image, atol=1e-5)


def test_affine_stage_starts_from_rigid_result():
    """rigid_affine: the affine stage is seeded by the rigid transform, whatever its init type."""
    image1 = _smooth_volume((16, 16, 16), seed=3)
    image2 = ndimage.shift(image1, (1.0, 0.0, 0.0), order=3, mode='nearest')
    config = RegistrationConfig(type='rigid_affine',
                                rigid=RigidConfig(scale_factors=(1.0,), max_iter=(5,)),
                                affine=AffineConfig(scale_factors=(1.0,), max_iter=(0,), init='geometric'),
                                verbose=False)

    with pytest.warns(UserWarning, match='no effect'):
        result = MRReg(config).register(image1, image2)

    rigid = result['rigid'].transform.get_transform()
    assert np.allclose(result['affine'].initial_transform.get_transform(), rigid)
    assert np.allclose(result['transform'].get_transform(), rigid)


@pytest.mark.slow
def test_affine_syn_outputs():
    image1 = _smooth_volume((16, 16, 16), seed=1)
    image2 = ndimage.shift(image1, (0.5, 0.0, 0.0), order=3, mode='nearest')
    affine = np.diag([2.0, 2.0, 2.0, 1.0])
    config = RegistrationConfig(type='affine_syn',
                                affine=AffineConfig(scale_factors=(1.0,), max_iter=(20,)),
                                syn=SyNConfig(scale_factors=(1.0,), max_iter=(5,)),
                                verbose=False)

    result = MRReg(config).register(image1, image2, affine, affine)

    assert result['warps'].shape == (16, 16, 16, 3, 4)
    assert result['transformed'].shape == image2.shape
    midway1, midway2 = result['transformed_midway']
    assert midway1.shape == midway2.shape == image2.shape
    assert result['jacobian_stats']['num_folding'] == 0
    assert result['syn'].transform is result['transform']
    assert np.allclose(result['half'] @ result['half'], result['transform'].get_transform(), atol=1e-8)


def test_command_line(tmp_path):
    main = runpy.run_path(str(SCRIPT), run_name='register_pair')['main']
    image = _smooth_volume((16, 16, 16)).astype(np.float32)
    affine = np.diag([1.5, 1.5, 1.5, 1.0])
    nib.save(nib.Nifti1Image(image, affine), str(tmp_path / 'im1.nii.gz'))
    nib.save(nib.Nifti1Image(image, affine), str(tmp_path / 'im2.nii.gz'))

    code = main([
        str(tmp_path / 'im1.nii.gz'), str(tmp_path / 'im2.nii.gz'),
        '--type', 'rigid',
        '--rigid-scale', '1.0',
        '--rigid-niter', '5',
        '--rigid', str(tmp_path / 'rigid.txt'),
        '--transformed', str(tmp_path / 'out.nii.gz'),
        '--transformed-midway', str(tmp_path / 'mid1.nii.gz'), str(tmp_path / 'mid2.nii.gz'),
        '--quiet',
    ])

    assert code == 0
    assert np.allclose(load_transform(str(tmp_path / 'rigid.txt')).get_transform(), np.eye(4), atol=1e-5)
    out = nib.load(str(tmp_path / 'out.nii.gz'))
    assert out.shape == (16, 16, 16)
    assert np.allclose(out.affine, affine)
    assert (tmp_path / 'mid2.nii.gz').exists()


def test_command_line_rejects_output_for_missing_stage(tmp_path):
    main = runpy.run_path(str(SCRIPT), run_name='register_pair')['main']

    with pytest.raises(SystemExit):
        main([str(tmp_path / 'a.nii'), str(tmp_path / 'b.nii'),
              '--type', 'rigid', '--syn-warp', str(tmp_path / 'w.nii')])


@pytest.mark.slow
def test_command_line_syn_warp(tmp_path):
    main = runpy.run_path(str(SCRIPT), run_name='register_pair')['main']
    image1 = _smooth_volume((16, 16, 16), seed=2).astype(np.float32)
    image2 = ndimage.shift(image1, (0.5, 0.0, 0.0), order=3, mode='nearest').astype(np.float32)
    nib.save(nib.Nifti1Image(image1, np.eye(4)), str(tmp_path / 'im1.nii'))
    nib.save(nib.Nifti1Image(image2, np.eye(4)), str(tmp_path / 'im2.nii'))

    code = main([
        str(tmp_path / 'im1.nii'), str(tmp_path / 'im2.nii'),
        '--type', 'syn',
        '--syn-scale', '0.5,1.0',
        '--syn-niter', '3',
        '--syn-warp', str(tmp_path / 'warps.nii.gz'),
        '--quiet',
    ])

    assert code == 0
    warps, affine, transform = load_warps(str(tmp_path / 'warps.nii.gz'))
    assert warps.shape == (16, 16, 16, 3, 4)
    assert np.allclose(transform.get_transform(), np.eye(4))
