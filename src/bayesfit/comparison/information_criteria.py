"""
WAIC and PSIS-LOO from a fit's pointwise log-likelihood, via ArviZ.

Values are on the deviance scale (-2 * elpd), as brms reports `waic` and
`looic`: lower is better. Standard errors and paired differences are computed
from the pointwise contributions:

    se(IC)        = sqrt(n * var(ic_i))
    se(IC_A-IC_B) = sqrt(n * var(ic_A,i - ic_B,i))
"""

import warnings
from dataclasses import dataclass
from typing import Optional, Tuple

import arviz as az
import numpy as np
from numpy.typing import NDArray

from bayesfit.inference.results import FitResult


@dataclass(frozen=True, eq=False)
class PointwiseCriterion:
    """
    Information criterion of one fit with its pointwise contributions.

    Fields:
        metric: 'waic' or 'looic'
        pointwise: Per-observation contributions (deviance scale)
        p_eff: Effective number of parameters
        warning: ArviZ flagged the estimate as unreliable
        pareto_k: PSIS shape diagnostics per observation (LOO only)
    """

    metric: str
    pointwise: NDArray[np.float64]
    p_eff: float
    warning: bool = False
    pareto_k: Optional[NDArray[np.float64]] = None

    @property
    def n_obs(self) -> int:
        return int(self.pointwise.shape[0])

    @property
    def estimate(self) -> float:
        return float(np.sum(self.pointwise))

    @property
    def se(self) -> float:
        return float(np.sqrt(self.n_obs * np.var(self.pointwise)))

    def bad_pareto_k(self, threshold: float = 0.7) -> Tuple[int, ...]:
        """Observations whose Pareto k exceeds `threshold`."""
        if self.pareto_k is None:
            return ()
        return tuple(int(i) for i in np.flatnonzero(self.pareto_k > threshold))


def to_inference_data(fit: FitResult) -> az.InferenceData:
    """Posterior and log-likelihood groups of a fit, shaped (chain, draw, ...)."""
    log_lik = fit.chain_draws(fit.log_likelihood_matrix)
    posterior = {"theta": fit.chain_draws(fit.draws)} if fit.draws.size else None
    return az.from_dict(posterior=posterior, log_likelihood={"y": log_lik})


def waic(fit: FitResult) -> PointwiseCriterion:
    """Widely applicable information criterion of a successful fit."""
    idata = to_inference_data(fit)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", UserWarning)
        result = az.waic(idata, pointwise=True, scale="deviance")
    return PointwiseCriterion(
        metric="waic",
        pointwise=np.asarray(result["waic_i"], dtype=np.float64).reshape(-1),
        p_eff=float(result["p_waic"]),
        warning=bool(result["warning"]),
    )


def loo(fit: FitResult) -> PointwiseCriterion:
    """Pareto-smoothed importance-sampling leave-one-out criterion."""
    idata = to_inference_data(fit)
    reff = None if fit.draws.size else 1.0
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", UserWarning)
        result = az.loo(idata, pointwise=True, scale="deviance", reff=reff)
    return PointwiseCriterion(
        metric="looic",
        pointwise=np.asarray(result["loo_i"], dtype=np.float64).reshape(-1),
        p_eff=float(result["p_loo"]),
        warning=bool(result["warning"]),
        pareto_k=np.asarray(result["pareto_k"], dtype=np.float64).reshape(-1),
    )


def paired_difference(first: PointwiseCriterion, second: PointwiseCriterion) -> Tuple[float, float]:
    """Difference `first - second` and its standard error from pointwise values."""
    diff = first.pointwise - second.pointwise
    return float(np.sum(diff)), float(np.sqrt(diff.shape[0] * np.var(diff)))
