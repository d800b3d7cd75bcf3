"""Core registration components."""

from mrreg.core.config import (
    RegistrationConfig,
    RigidConfig,
    AffineConfig,
    SyNConfig,
    FODConfig,
    create_default_config,
)
from mrreg.core.exceptions import (
    RegistrationError,
    ConfigurationError,
    UnsupportedConfiguration,
    DimensionMismatch,
    NumericalError,
)
from mrreg.core.registration import MRReg, check_dimensions

__all__ = [
    'RegistrationConfig',
    'RigidConfig',
    'AffineConfig',
    'SyNConfig',
    'FODConfig',
    'create_default_config',
    'RegistrationError',
    'ConfigurationError',
    'UnsupportedConfiguration',
    'DimensionMismatch',
    'NumericalError',
    'MRReg',
    'check_dimensions',
]
