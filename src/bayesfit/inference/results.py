"""
Fit results produced by the sampler adapter and stored by the fit cache.

A FitResult is created once per distinct ModelSpec and never mutated.
Sampler pathologies (divergences, low ESS, poor R-hat) live in `diagnostics`
on a Success result; only hard failures produce a Failed status.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Mapping, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from bayesfit.errors import FitCancelled, SamplerFailed, SamplerTimeout
from bayesfit.spec.builder import ModelSpec


class FailureKind(str, Enum):
    """Why a fit produced no usable draws."""

    SAMPLER_ERROR = "sampler_error"
    INVALID_MODEL = "invalid_model"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class FailureReason:
    """Structured failure cause, enough to decide whether to retry."""

    kind: FailureKind
    message: str = ""

    @property
    def retryable(self) -> bool:
        return self.kind in (FailureKind.TIMEOUT, FailureKind.CANCELLED)

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}" if self.message else str(self.kind)


@dataclass(frozen=True)
class FitStatus:
    """Success, or Failed(reason)."""

    reason: Optional[FailureReason] = None

    @property
    def ok(self) -> bool:
        return self.reason is None

    @classmethod
    def success(cls) -> "FitStatus":
        return cls()

    @classmethod
    def failed(cls, kind: FailureKind, message: str = "") -> "FitStatus":
        return cls(FailureReason(kind, message))

    def __str__(self) -> str:
        return "Success" if self.ok else f"Failed({self.reason})"


@dataclass(frozen=True)
class SamplerDiagnostics:
    """
    Sampler-reported health of a fit.

    Fields:
        divergences: Divergent transitions after warmup
        max_treedepth_hits: Transitions that saturated the tree depth
        ess_bulk: Bulk effective sample size per parameter
        rhat: Rank-normalized R-hat per parameter
        warnings: Human-readable pathology descriptions
    """

    divergences: int = 0
    max_treedepth_hits: int = 0
    ess_bulk: Mapping[str, float] = field(default_factory=dict)
    rhat: Mapping[str, float] = field(default_factory=dict)
    warnings: Tuple[str, ...] = ()


@dataclass(frozen=True, eq=False)
class FitResult:
    """
    Outcome of running one ModelSpec through the sampler.

    Fields:
        spec: ModelSpec that was fitted (back-reference)
        cache_key: CacheKey of `spec`
        status: Success or Failed(reason)
        parameter_names: Column labels of `draws`
        draws: Posterior draws, shape (n_chains * draws_per_chain, n_params), chain-major
        n_chains: Number of chains the draws came from
        diagnostics: Sampler-reported diagnostics
        log_likelihood_matrix: Pointwise log-likelihood, shape (n_draws, n_obs)
        observations: Row positions of the dataset that entered the likelihood
        unconstrained_draws: Draws on the sampler's unconstrained scale
        log_density: Unnormalized log posterior on the unconstrained scale
        elapsed: Wall-clock sampling time (seconds)
    """

    spec: ModelSpec
    cache_key: str
    status: FitStatus
    parameter_names: Tuple[str, ...] = ()
    draws: NDArray[np.float64] = field(default_factory=lambda: np.empty((0, 0)))
    n_chains: int = 0
    diagnostics: SamplerDiagnostics = field(default_factory=SamplerDiagnostics)
    log_likelihood_matrix: NDArray[np.float64] = field(default_factory=lambda: np.empty((0, 0)))
    observations: NDArray[np.int64] = field(default_factory=lambda: np.empty(0, dtype=np.int64))
    unconstrained_draws: Optional[NDArray[np.float64]] = None
    log_density: Optional[Callable[[NDArray[np.float64]], float]] = field(default=None, repr=False)
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status.ok

    @property
    def n_draws(self) -> int:
        return int(self.draws.shape[0])

    @property
    def n_obs(self) -> int:
        return int(self.log_likelihood_matrix.shape[1]) if self.log_likelihood_matrix.ndim == 2 else 0

    def parameter(self, name: str) -> NDArray[np.float64]:
        """Draws of one parameter, shape (n_draws,)."""
        try:
            idx = self.parameter_names.index(name)
        except ValueError:
            raise KeyError(f"Unknown parameter '{name}'. Available: {', '.join(self.parameter_names)}") from None
        return self.draws[:, idx]

    def chain_draws(self, values: NDArray[np.float64]) -> NDArray[np.float64]:
        """Reshape chain-major draws (n_draws, ...) to (n_chains, draws_per_chain, ...)."""
        n_chains = max(self.n_chains, 1)
        return values.reshape((n_chains, values.shape[0] // n_chains) + values.shape[1:])

    def raise_for_status(self) -> "FitResult":
        """Return self for a successful fit, else raise the matching SamplerError."""
        if self.ok:
            return self
        reason = self.status.reason
        message = f"Fit of {self.spec} failed: {reason}"
        if reason.kind == FailureKind.TIMEOUT:
            raise SamplerTimeout(message, reason)
        if reason.kind == FailureKind.CANCELLED:
            raise FitCancelled(message, reason)
        raise SamplerFailed(message, reason)

    @classmethod
    def failure(cls, spec: ModelSpec, cache_key: str, kind: FailureKind, message: str = "",
                elapsed: float = 0.0) -> "FitResult":
        return cls(spec=spec, cache_key=cache_key, status=FitStatus.failed(kind, message),
                   elapsed=elapsed)

    def __repr__(self) -> str:
        return (
            f"FitResult({self.spec}, status={self.status}, draws={self.n_draws}, "
            f"chains={self.n_chains}, divergences={self.diagnostics.divergences})"
        )
