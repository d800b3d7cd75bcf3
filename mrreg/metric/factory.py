"""Metric selection, done once per stage before any optimisation work."""

from typing import Optional

from mrreg.core.exceptions import UnsupportedConfiguration
from mrreg.metric.base import Metric
from mrreg.metric.mean_squared import MeanSquared
from mrreg.metric.cross_correlation import CrossCorrelation
from mrreg.metric.robust import RobustDifference, get_estimator


def create_metric(metric: str = 'diff',
                  robust_estimator: str = 'none',
                  ndim: int = 3,
                  extent: int = 3,
                  lp_power: float = 1.2,
                  n_threads: Optional[int] = None,
                  ) -> Metric:
    """
    Build the metric for a stage.

    Args:
        metric: 'diff' (mean squared) or 'ncc' (local cross-correlation)
        robust_estimator: 'none', 'l1', 'l2' or 'lp'
        ndim: Image dimensionality (3 or 4)
        extent: Cross-correlation window size
        lp_power: Power of the LP estimator
        n_threads: Worker count for reductions

    Raises:
        UnsupportedConfiguration: cross-correlation on 4D data, or a robust
            estimator combined with cross-correlation
    """
    if metric == 'ncc':
        if ndim > 3:
            raise UnsupportedConfiguration(
                "cross correlation metric not implemented for data with more than 3 dimensions")
        if robust_estimator != 'none':
            raise UnsupportedConfiguration(
                f"robust estimator '{robust_estimator}' cannot be combined with the cross correlation metric")
        return CrossCorrelation(extent=extent, n_threads=n_threads)

    if metric == 'diff':
        estimator = get_estimator(robust_estimator, lp_power)
        if estimator is None:
            return MeanSquared(n_threads=n_threads)
        return RobustDifference(estimator, n_threads=n_threads)

    raise UnsupportedConfiguration(f"Unknown metric: {metric}")
