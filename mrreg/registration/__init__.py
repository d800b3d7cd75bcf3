"""Registration drivers."""

from mrreg.registration.pyramid import PyramidLevel, build_pyramid
from mrreg.registration.linear import LinearRegistration, LinearRegistrationResult, LevelCost
from mrreg.registration.syn import SyNRegistration, SyNResult

__all__ = [
    'PyramidLevel',
    'build_pyramid',
    'LinearRegistration',
    'LinearRegistrationResult',
    'LevelCost',
    'SyNRegistration',
    'SyNResult',
]
