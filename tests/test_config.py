"""
Tests for configuration loading and option validation.
"""

from pathlib import Path

import pytest
import numpy as np

from mrreg.core.config import (
    RegistrationConfig,
    RigidConfig,
    AffineConfig,
    SyNConfig,
    FODConfig,
    broadcast_levels,
    create_default_config,
)
from mrreg.core.exceptions import ConfigurationError


def test_default_stages():
    stages = create_default_config().validate()

    assert stages == {'rigid': False, 'affine': True, 'syn': True}


@pytest.mark.parametrize('reg_type, expected', [
    ('rigid', (True, False, False)),
    ('rigid_syn', (True, False, True)),
    ('rigid_affine_syn', (True, True, True)),
    ('syn', (False, False, True)),
])
def test_stage_flags(reg_type, expected):
    stages = RegistrationConfig(type=reg_type).validate()

    assert (stages['rigid'], stages['affine'], stages['syn']) == expected


def test_unknown_type():
    with pytest.raises(ConfigurationError):
        RegistrationConfig(type='bspline').validate()


def test_option_for_unused_stage():
    """Options of a stage that does not run are rejected."""
    config = RegistrationConfig(type='affine', rigid=RigidConfig(max_iter=(100,)))
    with pytest.raises(ConfigurationError, match='rigid'):
        config.validate()

    config = RegistrationConfig(type='rigid_affine', syn=SyNConfig(grad_step=0.2))
    with pytest.raises(ConfigurationError, match='syn'):
        config.validate()


def test_init_and_init_transform_exclusive():
    config = RegistrationConfig(type='rigid', rigid=RigidConfig(init='mass', init_transform=np.eye(4)))

    with pytest.raises(ConfigurationError):
        config.validate()


def test_rigid_and_affine_init_transforms_exclusive():
    config = RegistrationConfig(type='rigid_affine',
                                rigid=RigidConfig(init_transform=np.eye(4)),
                                affine=AffineConfig(init_transform=np.eye(4)))

    with pytest.raises(ConfigurationError, match='both'):
        config.validate()


def test_affine_init_with_rigid_stage():
    config = RegistrationConfig(type='rigid_affine', affine=AffineConfig(init_transform=np.eye(4)))

    with pytest.raises(ConfigurationError):
        config.validate()


def test_odd_lmax_rejected():
    with pytest.raises(ConfigurationError, match='even'):
        RegistrationConfig(fod=FODConfig(lmax=3)).validate()


def test_level_counts():
    """Per-level options must have one value or one per level."""
    config = RegistrationConfig(type='affine', affine=AffineConfig(scale_factors=(0.5, 1.0), max_iter=(10, 20, 30)))
    with pytest.raises(ConfigurationError):
        config.validate()

    config = RegistrationConfig(type='affine', affine=AffineConfig(loop_density=(1.5,)))
    with pytest.raises(ConfigurationError):
        config.validate()


def test_syn_init_warp_disables_linear_stages():
    config = RegistrationConfig(type='rigid_affine_syn', syn=SyNConfig(init_warp='warps.nii.gz'))

    with pytest.warns(UserWarning):
        stages = config.validate()

    assert stages == {'rigid': False, 'affine': False, 'syn': True}


def test_syn_init_warp_single_iteration_count():
    config = RegistrationConfig(type='syn', syn=SyNConfig(init_warp='warps.nii.gz', max_iter=(10, 20, 30)))

    with pytest.raises(ConfigurationError):
        config.validate()


def test_broadcast_levels():
    assert broadcast_levels((5,), 3) == (5, 5, 5)
    assert broadcast_levels((1, 2), 2) == (1, 2)
    assert broadcast_levels(7, 2) == (7, 7)
    with pytest.raises(ConfigurationError):
        broadcast_levels((1, 2), 3)


def test_yaml_round_trip(tmp_path):
    config = RegistrationConfig(type='rigid_syn',
                                rigid=RigidConfig(max_iter=[50, 100], metric='ncc'),
                                syn=SyNConfig(grad_step=0.3),
                                n_threads=2)
    path = tmp_path / 'config.yaml'

    config.to_yaml(str(path))
    loaded = RegistrationConfig.from_yaml(str(path))

    assert loaded.to_dict() == config.to_dict()
    assert loaded.rigid.max_iter == (50, 100)
    assert loaded.validate() == {'rigid': True, 'affine': False, 'syn': True}


def test_shipped_default_config_matches_defaults():
    path = Path(__file__).resolve().parent.parent / 'configs' / 'default.yaml'

    loaded = RegistrationConfig.from_yaml(str(path))

    assert loaded.to_dict() == create_default_config().to_dict()


def test_yaml_with_empty_sections(tmp_path):
    """Empty stage sections fall back to the stage defaults."""
    path = tmp_path / 'config.yaml'
    path.write_text("type: rigid\nrigid:\naffine:\nsyn:\nfod:\n")

    loaded = RegistrationConfig.from_yaml(str(path))

    assert loaded.type == 'rigid'
    assert loaded.rigid == RigidConfig()
    assert loaded.fod == FODConfig()
