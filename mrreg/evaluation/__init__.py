"""Evaluation metrics for registration results."""

from mrreg.evaluation.metrics import (
    jacobian_determinant,
    jacobian_statistics,
    mean_squared_error,
    normalized_cross_correlation,
)

__all__ = [
    'jacobian_determinant',
    'jacobian_statistics',
    'mean_squared_error',
    'normalized_cross_correlation',
]
