"""
Model comparison by WAIC, PSIS-LOO and bridge-sampling Bayes factors.
"""

from bayesfit.comparison.bridge import BridgeEstimate, bridge_sampler
from bayesfit.comparison.information_criteria import PointwiseCriterion, loo, waic
from bayesfit.comparison.engine import (
    ComparisonEngine,
    ComparisonResult,
    Difference,
    Metric,
    ModelEstimate,
    RankingRow,
)

__all__ = [
    "BridgeEstimate",
    "bridge_sampler",
    "PointwiseCriterion",
    "loo",
    "waic",
    "ComparisonEngine",
    "ComparisonResult",
    "Difference",
    "Metric",
    "ModelEstimate",
    "RankingRow",
]
