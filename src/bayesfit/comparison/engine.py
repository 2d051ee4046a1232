"""
Model comparison: WAIC, PSIS-LOO and Bayes factors over cached fits.

Comparison is only defined between successful fits of the same observations.
Every precondition violation raises a ComparisonError; numbers are never
produced from incomplete or mismatched inputs.

Conventions:
- WAIC and LOOIC are on the deviance scale, lower is better
- Bayes factors compare log marginal likelihoods, higher is better
- pairwise differences are `first - second` in input order
"""

import logging
import threading
import weakref
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from bayesfit.comparison.bridge import BridgeEstimate, bridge_sampler
from bayesfit.comparison.information_criteria import PointwiseCriterion, loo, paired_difference, waic
from bayesfit.errors import ComparisonError, IncompatibleData, IncompleteInputs
from bayesfit.inference.diagnostics import DiagnosticsExtractor
from bayesfit.inference.results import FitResult

logger = logging.getLogger("bayesfit.comparison")

# exp() of anything beyond this overflows a float64
MAX_LOG_BAYES_FACTOR = 700.0

Fits = Union[Sequence[FitResult], Mapping[str, FitResult]]


class Metric(str, Enum):
    """Supported comparison metrics."""

    WAIC = "waic"
    LOOIC = "looic"
    BAYES_FACTOR = "bayes_factor"

    @classmethod
    def parse(cls, value) -> "Metric":
        if isinstance(value, cls):
            return value
        aliases = {"loo": cls.LOOIC, "bf": cls.BAYES_FACTOR, "bayes": cls.BAYES_FACTOR}
        text = str(value).strip().lower()
        if text in aliases:
            return aliases[text]
        try:
            return cls(text)
        except ValueError:
            raise ValueError(
                f"Unknown metric '{value}'. Supported: {', '.join(m.value for m in cls)}"
            ) from None

    @property
    def lower_is_better(self) -> bool:
        return self != Metric.BAYES_FACTOR

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ModelEstimate:
    """Metric value of one model (log marginal likelihood for Bayes factors)."""

    value: float
    se: float
    unreliable: bool = False
    notes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Difference:
    """`first - second` with its standard error."""

    first: str
    second: str
    value: float
    se: float


@dataclass(frozen=True)
class RankingRow:
    """Distance of one model from the best model, in metric units (>= 0)."""

    label: str
    difference: float
    se: float


@dataclass(frozen=True)
class ComparisonResult:
    """
    Outcome of comparing two or more fits.

    Fields:
        metric: Metric used
        estimates: Label -> ModelEstimate, in input order
        pairwise_difference: `first - second` for exactly two models, else None.
            For Bayes factors this is the log Bayes factor of first over second.
        ranking: Models from best to worst with their distance from the best
        bayes_factor: exp(log BF), with the log value clipped to +-700
        extreme: The log Bayes factor was clipped
    """

    metric: Metric
    estimates: Mapping[str, ModelEstimate]
    pairwise_difference: Optional[Difference] = None
    ranking: Tuple[RankingRow, ...] = ()
    bayes_factor: Optional[float] = None
    extreme: bool = False

    @property
    def unreliable(self) -> bool:
        return any(e.unreliable for e in self.estimates.values())

    @property
    def best(self) -> str:
        return self.ranking[0].label

    def to_frame(self) -> pd.DataFrame:
        """One row per model, in ranking order."""
        distance = {row.label: (row.difference, row.se) for row in self.ranking}
        rows = []
        for row in self.ranking:
            est = self.estimates[row.label]
            rows.append({
                "model": row.label,
                str(self.metric): est.value,
                "se": est.se,
                "difference": distance[row.label][0],
                "difference_se": distance[row.label][1],
                "unreliable": est.unreliable,
            })
        return pd.DataFrame(rows).set_index("model")


class ComparisonEngine:
    """
    Compares fits by WAIC, LOOIC or Bayes factor.

    Parameters
    ----------
    extractor : DiagnosticsExtractor, optional
        Source of per-model reliability flags. Default: DiagnosticsExtractor().
    pareto_k_threshold : float
        LOO observations with Pareto k above this make a model unreliable.
        Default 0.7.
    """

    def __init__(self, extractor: Optional[DiagnosticsExtractor] = None,
                 pareto_k_threshold: float = 0.7) -> None:
        if pareto_k_threshold <= 0:
            raise ValueError(f"pareto_k_threshold must be > 0. Got {pareto_k_threshold}")
        self.extractor = extractor or DiagnosticsExtractor()
        self.pareto_k_threshold = pareto_k_threshold
        self._lock = threading.Lock()
        self._marginal: "weakref.WeakKeyDictionary[FitResult, BridgeEstimate]" = weakref.WeakKeyDictionary()

    def compare(self, fits: Fits, metric=Metric.LOOIC) -> ComparisonResult:
        """
        Compare fits on one metric.

        Parameters
        ----------
        fits : sequence of FitResult or mapping label -> FitResult
            Sequences are labelled model_1, model_2, ...
        metric : Metric or str
            'waic', 'looic' ('loo') or 'bayes_factor' ('bf').

        Raises
        ------
        ComparisonError
            Fewer than two fits.
        IncompleteInputs
            A fit failed, or lacks what the metric needs.
        IncompatibleData
            Fits were computed on different observations.
        """
        metric = Metric.parse(metric)
        labelled = self._label(fits)
        self._check_inputs(labelled, metric)

        if metric == Metric.BAYES_FACTOR:
            return self._compare_marginal(labelled)
        return self._compare_criteria(labelled, metric)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def _label(fits: Fits) -> Dict[str, FitResult]:
        if isinstance(fits, Mapping):
            labelled = {str(k): v for k, v in fits.items()}
        else:
            labelled = {f"model_{i + 1}": fit for i, fit in enumerate(fits)}
        if len(labelled) < 2:
            raise ComparisonError(f"Comparison needs at least two fits. Got {len(labelled)}")
        return labelled

    @staticmethod
    def _check_inputs(fits: Mapping[str, FitResult], metric: Metric) -> None:
        failed = [f"{label} ({fit.status})" for label, fit in fits.items() if not fit.ok]
        if failed:
            raise IncompleteInputs(f"Cannot compare failed fits: {', '.join(failed)}")

        (ref_label, ref), *others = fits.items()
        for label, fit in others:
            if fit.spec.data_ref != ref.spec.data_ref:
                raise IncompatibleData(
                    f"{label} was fitted on dataset {fit.spec.data_ref}, "
                    f"{ref_label} on {ref.spec.data_ref}"
                )
            if fit.n_obs != ref.n_obs:
                raise IncompatibleData(
                    f"{label} has {fit.n_obs} observations, {ref_label} has {ref.n_obs}"
                )
            if not np.array_equal(fit.observations, ref.observations):
                raise IncompatibleData(
                    f"{label} and {ref_label} use different observation rows"
                )

        for label, fit in fits.items():
            if metric == Metric.BAYES_FACTOR:
                if fit.log_density is None or fit.unconstrained_draws is None:
                    raise IncompleteInputs(
                        f"{label} carries no unconstrained draws or log density; "
                        f"Bayes factors cannot be estimated"
                    )
                improper = [str(p) for p in fit.spec.priors if not p.distribution.is_proper]
                if improper:
                    raise IncompleteInputs(
                        f"{label} has improper priors ({', '.join(improper)}); "
                        f"marginal likelihoods are undefined"
                    )
            elif fit.log_likelihood_matrix.size == 0:
                raise IncompleteInputs(f"{label} carries no pointwise log-likelihood")

    def _reliability(self, fit: FitResult) -> List[str]:
        summary = self.extractor.summarize(fit)
        notes = []
        if summary.unreliable:
            notes.append(f"unreliable parameters: {', '.join(summary.unreliable_parameters)}")
        return notes

    # ------------------------------------------------------------------
    # WAIC / LOOIC
    # ------------------------------------------------------------------

    def _compare_criteria(self, fits: Mapping[str, FitResult], metric: Metric) -> ComparisonResult:
        compute = waic if metric == Metric.WAIC else loo
        criteria: Dict[str, PointwiseCriterion] = {}
        estimates: Dict[str, ModelEstimate] = {}

        for label, fit in fits.items():
            criterion = compute(fit)
            criteria[label] = criterion
            notes = self._reliability(fit)
            if criterion.warning and metric == Metric.WAIC:
                notes.append("p_waic exceeds 0.4 for some observations")
            bad = criterion.bad_pareto_k(self.pareto_k_threshold)
            if bad:
                notes.append(f"{len(bad)} observations with Pareto k > {self.pareto_k_threshold:g}")
            estimates[label] = ModelEstimate(
                value=criterion.estimate,
                se=criterion.se,
                unreliable=bool(notes),
                notes=tuple(notes),
            )

        order = sorted(criteria, key=lambda label: criteria[label].estimate, reverse=not metric.lower_is_better)
        best = order[0]
        ranking = []
        for label in order:
            diff, se = paired_difference(criteria[label], criteria[best])
            ranking.append(RankingRow(label, diff, se))

        pairwise = None
        if len(fits) == 2:
            first, second = fits
            value, se = paired_difference(criteria[first], criteria[second])
            pairwise = Difference(first, second, value, se)

        result = ComparisonResult(
            metric=metric,
            estimates=estimates,
            pairwise_difference=pairwise,
            ranking=tuple(ranking),
        )
        self._log(result)
        return result

    # ------------------------------------------------------------------
    # Bayes factor
    # ------------------------------------------------------------------

    def marginal_likelihood(self, fit: FitResult) -> BridgeEstimate:
        """Bridge-sampling estimate of log p(y) for one fit, computed once per fit."""
        with self._lock:
            cached = self._marginal.get(fit)
        if cached is not None:
            return cached

        rng = np.random.default_rng(fit.spec.sampler_config.seed)
        estimate = bridge_sampler(fit.unconstrained_draws, fit.log_density, rng=rng)
        if not estimate.converged:
            logger.warning("%s: bridge sampling did not converge after %d iterations",
                           fit.spec, estimate.iterations)
        with self._lock:
            self._marginal[fit] = estimate
        return estimate

    def _compare_marginal(self, fits: Mapping[str, FitResult]) -> ComparisonResult:
        marginal = {label: self.marginal_likelihood(fit) for label, fit in fits.items()}
        estimates: Dict[str, ModelEstimate] = {}
        for label, fit in fits.items():
            notes = self._reliability(fit)
            if not marginal[label].converged:
                notes.append("bridge sampling did not converge")
            estimates[label] = ModelEstimate(
                value=marginal[label].log_marginal_likelihood,
                se=marginal[label].se,
                unreliable=bool(notes),
                notes=tuple(notes),
            )

        metric = Metric.BAYES_FACTOR
        order = sorted(estimates, key=lambda label: estimates[label].value, reverse=not metric.lower_is_better)
        best = estimates[order[0]]
        ranking = tuple(
            RankingRow(label, best.value - estimates[label].value,
                       float(np.hypot(best.se, estimates[label].se)) if label != order[0] else 0.0)
            for label in order
        )

        pairwise = None
        bayes_factor = None
        extreme = False
        if len(fits) == 2:
            first, second = fits
            log_bf = estimates[first].value - estimates[second].value
            pairwise = Difference(first, second, log_bf,
                                  float(np.hypot(estimates[first].se, estimates[second].se)))
            extreme = abs(log_bf) > MAX_LOG_BAYES_FACTOR
            bayes_factor = float(np.exp(np.clip(log_bf, -MAX_LOG_BAYES_FACTOR, MAX_LOG_BAYES_FACTOR)))

        result = ComparisonResult(
            metric=metric,
            estimates=estimates,
            pairwise_difference=pairwise,
            ranking=ranking,
            bayes_factor=bayes_factor,
            extreme=extreme,
        )
        self._log(result)
        return result

    @staticmethod
    def _log(result: ComparisonResult) -> None:
        logger.info(
            "Compared %d models by %s; best: %s%s",
            len(result.estimates), result.metric, result.best,
            " (unreliable estimates present)" if result.unreliable else "",
        )

    def __repr__(self) -> str:
        return f"ComparisonEngine(extractor={self.extractor!r}, pareto_k_threshold={self.pareto_k_threshold})"
