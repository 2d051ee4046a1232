"""
Posterior summaries and reliability flags.

Key diagnostics:
- ESS (bulk effective sample size): >= 400 recommended
- R-hat (rank-normalized): <= 1.01 indicates convergence
- Divergences: any divergent transition makes every estimate suspect

A parameter failing any of these checks is flagged "unreliable"; the flag is
carried into comparison results so consumers can refuse flagged numbers.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Tuple

import arviz as az
import numpy as np
import pandas as pd
from numpy.typing import NDArray

from bayesfit.inference.results import FitResult

logger = logging.getLogger("bayesfit.diagnostics")


def chain_statistics(values: NDArray[np.float64]) -> Tuple[float, float]:
    """
    Bulk ESS and R-hat of one parameter.

    Parameters
    ----------
    values : NDArray[np.float64]
        Draws of shape (chains, draws_per_chain).

    Returns
    -------
    (ess_bulk, rhat)
        R-hat is NaN for a single chain.
    """
    if np.ptp(values) == 0:
        return float(values.size), 1.0
    ess = float(az.ess(values, method="bulk"))
    rhat = float(az.rhat(values)) if values.shape[0] > 1 else float("nan")
    return ess, rhat


@dataclass(frozen=True)
class ParameterSummary:
    """Posterior summary of one parameter."""

    name: str
    mean: float
    sd: float
    lower: float
    upper: float
    ess_bulk: float
    rhat: float
    unreliable: bool = False
    reasons: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Summary:
    """
    Deterministic summary of a fit.

    Fields:
        label: Model label (spec name or formula)
        credible_level: Coverage of the credible intervals
        parameters: Parameter name -> ParameterSummary
        divergences: Divergent transitions reported by the sampler
        warnings: Sampler warnings carried over from the fit
    """

    label: str
    credible_level: float
    parameters: Mapping[str, ParameterSummary] = field(default_factory=dict)
    divergences: int = 0
    warnings: Tuple[str, ...] = ()

    @property
    def unreliable(self) -> bool:
        return any(p.unreliable for p in self.parameters.values())

    @property
    def unreliable_parameters(self) -> Tuple[str, ...]:
        return tuple(name for name, p in self.parameters.items() if p.unreliable)

    def __getitem__(self, name: str) -> ParameterSummary:
        return self.parameters[name]

    def to_frame(self) -> pd.DataFrame:
        """Table with one row per parameter, brms `posterior_summary` style."""
        lo = f"Q{(1 - self.credible_level) / 2 * 100:g}"
        hi = f"Q{(1 + self.credible_level) / 2 * 100:g}"
        rows = [
            {
                "parameter": p.name,
                "Estimate": p.mean,
                "Est.Error": p.sd,
                lo: p.lower,
                hi: p.upper,
                "Bulk_ESS": p.ess_bulk,
                "Rhat": p.rhat,
                "unreliable": p.unreliable,
            }
            for p in self.parameters.values()
        ]
        return pd.DataFrame(rows).set_index("parameter")


class DiagnosticsExtractor:
    """
    Computes posterior summaries and reliability flags from a FitResult.

    Parameters
    ----------
    credible_level : float
        Coverage of the equal-tailed credible interval. Default 0.95.
    min_ess : float
        Bulk ESS below this flags a parameter. Default 400.
    max_rhat : float
        R-hat above this flags a parameter. Default 1.01.
    """

    def __init__(self, credible_level: float = 0.95, min_ess: float = 400.0, max_rhat: float = 1.01) -> None:
        if not 0.0 < credible_level < 1.0:
            raise ValueError(f"credible_level must be in (0, 1). Got {credible_level}")
        if min_ess <= 0:
            raise ValueError(f"min_ess must be > 0. Got {min_ess}")
        if max_rhat < 1.0:
            raise ValueError(f"max_rhat must be >= 1. Got {max_rhat}")

        self.credible_level = credible_level
        self.min_ess = min_ess
        self.max_rhat = max_rhat

    def summarize(self, fit: FitResult) -> Summary:
        """
        Summarize every parameter of a successful fit.

        Raises
        ------
        SamplerError
            If the fit failed (via FitResult.raise_for_status).
        """
        fit.raise_for_status()

        tail = (1.0 - self.credible_level) / 2.0
        divergences = fit.diagnostics.divergences
        parameters: Dict[str, ParameterSummary] = {}

        for j, name in enumerate(fit.parameter_names):
            draws = fit.draws[:, j]
            ess, rhat = self._chain_stats(fit, name, draws)
            lower, upper = np.quantile(draws, [tail, 1.0 - tail])

            reasons: List[str] = []
            if ess < self.min_ess:
                reasons.append(f"ESS {ess:.0f} < {self.min_ess:g}")
            if np.isfinite(rhat) and rhat > self.max_rhat:
                reasons.append(f"R-hat {rhat:.3f} > {self.max_rhat:g}")
            if divergences > 0:
                reasons.append(f"{divergences} divergent transitions")

            parameters[name] = ParameterSummary(
                name=name,
                mean=float(np.mean(draws)),
                sd=float(np.std(draws, ddof=1)),
                lower=float(lower),
                upper=float(upper),
                ess_bulk=ess,
                rhat=rhat,
                unreliable=bool(reasons),
                reasons=tuple(reasons),
            )

        summary = Summary(
            label=fit.spec.name or str(fit.spec.formula),
            credible_level=self.credible_level,
            parameters=parameters,
            divergences=divergences,
            warnings=fit.diagnostics.warnings,
        )
        if summary.unreliable:
            logger.warning(
                "%s: unreliable estimates for %s", summary.label, ", ".join(summary.unreliable_parameters)
            )
        return summary

    @staticmethod
    def _chain_stats(fit: FitResult, name: str, draws: NDArray[np.float64]) -> Tuple[float, float]:
        ess = fit.diagnostics.ess_bulk.get(name)
        rhat = fit.diagnostics.rhat.get(name)
        if ess is not None and rhat is not None:
            return float(ess), float(rhat)
        return chain_statistics(fit.chain_draws(draws))

    def __repr__(self) -> str:
        return (
            f"DiagnosticsExtractor(credible_level={self.credible_level}, "
            f"min_ess={self.min_ess}, max_rhat={self.max_rhat})"
        )
