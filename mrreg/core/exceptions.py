"""
Error taxonomy for mrreg.

Every error raised by the engine is fatal for the run; nothing is retried.
"""


class RegistrationError(Exception):
    """Base class for all registration errors."""


class ConfigurationError(RegistrationError, ValueError):
    """Mutually exclusive or stage-inapplicable options."""


class UnsupportedConfiguration(ConfigurationError):
    """A metric / dimensionality / estimator combination that is not implemented."""


class DimensionMismatch(RegistrationError, ValueError):
    """Input images differ in rank or in their number of volumes."""


class NumericalError(RegistrationError, ArithmeticError):
    """Matrix square root failure, non-invertible or orientation-reversing transform."""
