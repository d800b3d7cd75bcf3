"""Similarity metrics and robust estimators."""

from mrreg.metric.base import Metric, MetricResult
from mrreg.metric.mean_squared import MeanSquared
from mrreg.metric.cross_correlation import CrossCorrelation
from mrreg.metric.robust import RobustDifference, Estimator, L1, L2, LP, get_estimator
from mrreg.metric.factory import create_metric

__all__ = [
    'Metric',
    'MetricResult',
    'MeanSquared',
    'CrossCorrelation',
    'RobustDifference',
    'Estimator',
    'L1',
    'L2',
    'LP',
    'get_estimator',
    'create_metric',
]
