"""
mrreg: symmetric rigid, affine and diffeomorphic registration of 3D and 4D
images, with reorientation of fibre orientation distributions.
"""

__version__ = "0.1.0"

from mrreg.core.registration import MRReg
from mrreg.core.config import RegistrationConfig

__all__ = ["MRReg", "RegistrationConfig", "__version__"]
