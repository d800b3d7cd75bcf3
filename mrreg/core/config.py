"""
Configuration system for mrreg.

YAML-loadable dataclasses, one per registration stage. A configuration is
built once, validated against the input images and then handed to the
drivers; drivers never mutate it.
"""

from dataclasses import dataclass, field, asdict, fields
from typing import Tuple, Optional, Dict, Any, Union
import warnings
import yaml
from pathlib import Path

import numpy as np

from mrreg.core.exceptions import ConfigurationError


REGISTRATION_TYPES = (
    'rigid', 'affine', 'syn',
    'rigid_affine', 'rigid_syn', 'affine_syn', 'rigid_affine_syn',
)
INIT_TYPES = ('mass', 'geometric', 'moments', 'none')
LINEAR_METRICS = ('diff', 'ncc')
ROBUST_ESTIMATORS = ('none', 'l1', 'l2', 'lp')

# Fields holding per-level sequences; YAML lists are converted to tuples
_SEQUENCE_FIELDS = ('scale_factors', 'max_iter', 'repetitions', 'loop_density')


def _as_tuple(value):
    if value is None or isinstance(value, (str, np.ndarray)):
        return value
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return (value,)


@dataclass
class LinearStageConfig:
    """Options shared by the rigid and affine stages."""
    scale_factors: Tuple[float, ...] = (0.25, 0.5, 1.0)  # coarsest first
    max_iter: Tuple[int, ...] = (500,)  # per level, single value is broadcast
    init: Optional[str] = None  # 'mass', 'geometric', 'moments', 'none' (None = 'mass')
    init_transform: Optional[Union[str, Any]] = None  # path or 3x4 / 4x4 matrix
    metric: str = 'diff'  # 'diff' (mean squared) or 'ncc'
    robust_estimator: str = 'none'  # 'none', 'l1', 'l2' or 'lp'
    lp_power: float = 1.2
    global_search: bool = False
    global_search_angle: float = 15.0  # degrees
    repetitions: Tuple[int, ...] = (1,)
    loop_density: Tuple[float, ...] = (1.0,)
    init_step: float = 1.0  # voxels
    relative_tolerance: float = 1e-6
    extent: int = 3  # cross-correlation window
    seed: int = 0

    def __post_init__(self):
        for name in _SEQUENCE_FIELDS:
            setattr(self, name, _as_tuple(getattr(self, name)))

    @property
    def init_type(self) -> str:
        """Effective initialisation type."""
        if self.init_transform is not None and self.init is None:
            return 'none'
        return self.init or 'mass'

    def per_level(self, name: str, n_levels: int) -> Tuple:
        """Broadcast a per-level option to the number of pyramid levels."""
        return broadcast_levels(getattr(self, name), n_levels, name)

    def check(self, stage: str) -> None:
        if self.init is not None and self.init not in INIT_TYPES:
            raise ConfigurationError(f"Unknown {stage} initialisation: {self.init}")
        if self.init is not None and self.init_transform is not None:
            raise ConfigurationError(
                f"options {stage} init_transform and {stage} init are mutually exclusive")
        if self.metric not in LINEAR_METRICS:
            raise ConfigurationError(f"Unknown {stage} metric: {self.metric}")
        if self.robust_estimator not in ROBUST_ESTIMATORS:
            raise ConfigurationError(f"Unknown {stage} robust estimator: {self.robust_estimator}")
        if not self.scale_factors or any(s <= 0 for s in self.scale_factors):
            raise ConfigurationError(f"Invalid {stage} scale factors: {self.scale_factors}")
        if any(int(n) < 0 for n in self.max_iter):
            raise ConfigurationError(f"Invalid {stage} iteration counts: {self.max_iter}")
        if any(not 0 < d <= 1 for d in self.loop_density):
            raise ConfigurationError(f"{stage} loop density must be in (0, 1]: {self.loop_density}")
        if any(int(r) < 1 for r in self.repetitions):
            raise ConfigurationError(f"{stage} repetitions must be positive: {self.repetitions}")
        if self.extent < 1 or self.extent % 2 == 0:
            raise ConfigurationError(f"{stage} cross-correlation extent must be odd: {self.extent}")
        n_levels = len(self.scale_factors)
        for name in ('max_iter', 'repetitions', 'loop_density'):
            self.per_level(name, n_levels)


@dataclass
class RigidConfig(LinearStageConfig):
    """Configuration for the rigid (6-DOF) stage."""
    scale_factors: Tuple[float, ...] = (0.5, 1.0)


@dataclass
class AffineConfig(LinearStageConfig):
    """Configuration for the affine (12-DOF) stage."""
    scale_factors: Tuple[float, ...] = (0.25, 0.5, 1.0)


@dataclass
class SyNConfig:
    """Configuration for symmetric diffeomorphic registration."""
    scale_factors: Tuple[float, ...] = (0.25, 0.5, 1.0)
    max_iter: Tuple[int, ...] = (50,)
    update_smoothing: float = 2.0  # voxels
    disp_smoothing: float = 1.0  # voxels
    grad_step: float = 0.5  # voxels
    metric: str = 'diff'
    extent: int = 3
    init_warp: Optional[str] = None  # previously saved 5D warp file
    inverse_iterations: int = 20
    inverse_tolerance: float = 1e-3  # voxels
    min_grad_step: float = 0.01  # voxels

    def __post_init__(self):
        for name in ('scale_factors', 'max_iter'):
            setattr(self, name, _as_tuple(getattr(self, name)))

    def per_level(self, name: str, n_levels: int) -> Tuple:
        return broadcast_levels(getattr(self, name), n_levels, name)

    def check(self) -> None:
        if self.metric not in LINEAR_METRICS:
            raise ConfigurationError(f"Unknown syn metric: {self.metric}")
        if not self.scale_factors or any(s <= 0 for s in self.scale_factors):
            raise ConfigurationError(f"Invalid syn scale factors: {self.scale_factors}")
        if any(int(n) < 0 for n in self.max_iter):
            raise ConfigurationError(f"Invalid syn iteration counts: {self.max_iter}")
        if self.grad_step <= 0:
            raise ConfigurationError(f"syn gradient step must be positive: {self.grad_step}")
        if self.update_smoothing < 0 or self.disp_smoothing < 0:
            raise ConfigurationError("syn smoothing parameters must be non-negative")
        if self.extent < 1 or self.extent % 2 == 0:
            raise ConfigurationError(f"syn cross-correlation extent must be odd: {self.extent}")


@dataclass
class FODConfig:
    """Configuration for orientation-encoded (FOD) images."""
    lmax: Optional[int] = None  # default: 4, capped by the data
    directions: Optional[str] = None  # direction file overriding the default set
    reorientation: bool = True


@dataclass
class RegistrationConfig:
    """Main registration configuration."""
    type: str = 'affine_syn'

    # Sub-configs
    rigid: RigidConfig = field(default_factory=RigidConfig)
    affine: AffineConfig = field(default_factory=AffineConfig)
    syn: SyNConfig = field(default_factory=SyNConfig)
    fod: FODConfig = field(default_factory=FODConfig)

    # Global settings
    n_threads: Optional[int] = None  # None = os.cpu_count()
    verbose: bool = True

    @property
    def do_rigid(self) -> bool:
        return 'rigid' in self.type

    @property
    def do_affine(self) -> bool:
        return 'affine' in self.type

    @property
    def do_syn(self) -> bool:
        return 'syn' in self.type

    def validate(self) -> Dict[str, bool]:
        """
        Check option consistency and resolve which stages actually run.

        Returns:
            Dictionary with the effective 'rigid', 'affine' and 'syn' flags.

        Raises:
            ConfigurationError: on inconsistent or stage-inapplicable options
        """
        if self.type not in REGISTRATION_TYPES:
            raise ConfigurationError(f"Unknown registration type: {self.type}")

        self.rigid.check('rigid')
        self.affine.check('affine')
        self.syn.check()

        _check_unused(self.rigid, RigidConfig(), self.do_rigid, 'rigid')
        _check_unused(self.affine, AffineConfig(), self.do_affine, 'affine')
        _check_unused(self.syn, SyNConfig(), self.do_syn, 'syn')

        if self.rigid.init_transform is not None and self.affine.init_transform is not None:
            raise ConfigurationError(
                "you cannot initialise registrations with both a rigid and affine transformation")
        if self.affine.init_transform is not None and self.do_rigid:
            raise ConfigurationError(
                "you cannot initialise with an affine transform since a rigid registration is being performed")

        if self.fod.lmax is not None and (self.fod.lmax < 0 or self.fod.lmax % 2):
            raise ConfigurationError("the input lmax must be even")

        stages = {'rigid': self.do_rigid, 'affine': self.do_affine, 'syn': self.do_syn}

        if self.syn.init_warp is not None:
            if len(self.syn.max_iter) > 1:
                raise ConfigurationError(
                    "when initialising the syn registration the max number of iterations "
                    "can only be defined for a single level")
            if len(self.syn.scale_factors) > 1 and self.syn.scale_factors != SyNConfig().scale_factors:
                warnings.warn("syn scale factors ignored since only the full resolution will be "
                              "performed when initialising with syn warp")
            if stages['affine']:
                warnings.warn("no affine registration will be performed when initialising with syn non-linear warps")
                stages['affine'] = False
            if stages['rigid']:
                warnings.warn("no rigid registration will be performed when initialising with syn non-linear warps")
                stages['rigid'] = False
            if self.affine.init_transform is not None:
                warnings.warn("affine init_transform has no effect since the syn init warp also "
                              "contains the linear transform in the image header")
            if self.rigid.init_transform is not None:
                warnings.warn("rigid init_transform has no effect since the syn init warp also "
                              "contains the linear transform in the image header")

        return stages

    @classmethod
    def from_yaml(cls, path: str) -> 'RegistrationConfig':
        """
        Load configuration from YAML file.

        Args:
            path: Path to YAML config file

        Returns:
            RegistrationConfig instance
        """
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RegistrationConfig':
        """Build a configuration from nested dictionaries."""
        rigid = RigidConfig(**(data.get('rigid') or {}))
        affine = AffineConfig(**(data.get('affine') or {}))
        syn = SyNConfig(**(data.get('syn') or {}))
        fod = FODConfig(**(data.get('fod') or {}))

        global_settings = {
            k: v for k, v in data.items()
            if k not in ['rigid', 'affine', 'syn', 'fod']
        }

        return cls(rigid=rigid, affine=affine, syn=syn, fod=fod, **global_settings)

    def to_yaml(self, path: str) -> None:
        """
        Save configuration to YAML file.

        Args:
            path: Output path
        """
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary of plain Python types."""
        def plain(obj):
            out = {}
            for key, value in asdict(obj).items():
                if isinstance(value, tuple):
                    value = list(value)
                elif isinstance(value, np.ndarray):
                    value = value.tolist()
                out[key] = value
            return out

        return {
            'type': self.type,
            'rigid': plain(self.rigid),
            'affine': plain(self.affine),
            'syn': plain(self.syn),
            'fod': plain(self.fod),
            'n_threads': self.n_threads,
            'verbose': self.verbose,
        }


def broadcast_levels(values: Tuple, n_levels: int, name: str = 'option') -> Tuple:
    """Broadcast a per-level sequence; a single entry applies to every level."""
    values = _as_tuple(values)
    if len(values) == 1:
        return values * n_levels
    if len(values) != n_levels:
        raise ConfigurationError(
            f"{name} requires either one value or one per resolution level "
            f"({n_levels}), got {len(values)}")
    return values


def _check_unused(stage_config, default, requested: bool, stage: str) -> None:
    """Reject options that were changed for a stage that does not run."""
    if requested:
        return
    for f in fields(stage_config):
        value = getattr(stage_config, f.name)
        default_value = getattr(default, f.name)
        if isinstance(value, np.ndarray) or isinstance(default_value, np.ndarray):
            changed = value is not default_value
        else:
            changed = value != default_value
        if changed:
            raise ConfigurationError(
                f"the {stage} option '{f.name}' was set when no {stage} registration is requested")


def create_default_config() -> RegistrationConfig:
    """Create default configuration."""
    return RegistrationConfig()
