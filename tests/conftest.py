"""
Shared fixtures for cross-component tests.

FakeSampler stands in for PyMC: for gaussian models it draws from the exact
conjugate-style posterior of the least-squares fit, so fits are fast,
deterministic per cache key and still rank models sensibly.
"""

import threading
import time
from typing import Dict, Optional, Set

import numpy as np
import pandas as pd
import pytest
from scipy import stats

from bayesfit.cache.cancellation import current_token
from bayesfit.cache.keys import cache_key
from bayesfit.inference.design import build_design
from bayesfit.inference.results import FailureKind, FitResult, FitStatus, SamplerDiagnostics
from bayesfit.spec.builder import ModelSpec
from bayesfit.spec.data import ColumnKind, DataDescriptor
from bayesfit.spec.families import Family


class FakeSampler:
    """
    Deterministic SamplerAdapter for gaussian population-level models.

    Parameters
    ----------
    delay : float
        Seconds each fit takes (polling the cancel token meanwhile).
    fail_formulas : Set[str], optional
        Canonical formulas whose fits fail with SAMPLER_ERROR.
    """

    def __init__(self, delay: float = 0.0, fail_formulas: Optional[Set[str]] = None) -> None:
        self.delay = delay
        self.fail_formulas = set(fail_formulas or ())
        self.calls = 0
        self._datasets: Dict[str, pd.DataFrame] = {}
        self._lock = threading.Lock()

    def register(self, frame: pd.DataFrame, name: str = "data", kinds: Optional[Dict[str, ColumnKind]] = None) -> DataDescriptor:
        descriptor = DataDescriptor.from_frame(frame, name=name, kinds=kinds)
        self._datasets[descriptor.fingerprint] = frame
        return descriptor

    def fit(self, spec: ModelSpec) -> FitResult:
        with self._lock:
            self.calls += 1
        key = cache_key(spec)

        deadline = time.monotonic() + self.delay
        while time.monotonic() < deadline:
            current_token().raise_if_cancelled()
            time.sleep(0.005)

        if str(spec.formula) in self.fail_formulas:
            return FitResult.failure(spec, key, FailureKind.SAMPLER_ERROR, "initial values rejected")
        if spec.family != Family.GAUSSIAN or spec.formula.groups:
            return FitResult.failure(spec, key, FailureKind.INVALID_MODEL, "FakeSampler fits gaussian fixed effects only")

        design = build_design(spec, self._datasets[spec.data_ref])
        X = np.column_stack([np.ones(design.n_obs), design.X])
        y = design.y
        n, p = X.shape

        beta_hat, *_ = np.linalg.lstsq(X, y, rcond=None)
        resid = y - X @ beta_hat
        sigma_hat = np.sqrt(resid @ resid / (n - p))
        cov = sigma_hat**2 * np.linalg.inv(X.T @ X)

        cfg = spec.sampler_config
        rng = np.random.default_rng(int(key[:8], 16))
        n_draws = cfg.total_draws
        sigma = sigma_hat * np.sqrt((n - p) / rng.chisquare(n - p, n_draws))
        beta = rng.multivariate_normal(beta_hat, cov, n_draws)
        log_lik = stats.norm.logpdf(y[None, :], beta @ X.T, sigma[:, None])

        names = ("b_Intercept",) + tuple(f"b_{c}" for c in design.coefficient_names) + ("sigma",)
        return FitResult(
            spec=spec,
            cache_key=key,
            status=FitStatus.success(),
            parameter_names=names,
            draws=np.column_stack([beta, sigma]),
            n_chains=cfg.chains,
            diagnostics=SamplerDiagnostics(),
            log_likelihood_matrix=log_lik,
            observations=design.observations,
            elapsed=self.delay,
        )


def insulation_frame(n_before: int = 26, n_after: int = 30, seed: int = 101011) -> pd.DataFrame:
    """Gas consumption before/after cavity-wall insulation against outside temperature."""
    rng = np.random.default_rng(seed)
    temp = np.concatenate([rng.uniform(-0.8, 10.2, n_before), rng.uniform(-0.7, 8.8, n_after)])
    after = np.r_[np.zeros(n_before), np.ones(n_after)]
    gas = np.where(after == 1, 4.72 - 0.28 * temp, 6.85 - 0.39 * temp) + rng.normal(0.0, 0.2, temp.size)
    return pd.DataFrame({
        "Insul": pd.Categorical(np.where(after == 1, "After", "Before"), categories=["Before", "After"]),
        "Temp": np.round(temp, 1),
        "Gas": np.round(gas, 2),
    })


@pytest.fixture
def insulation() -> pd.DataFrame:
    return insulation_frame()


@pytest.fixture
def fake_sampler() -> FakeSampler:
    return FakeSampler()


@pytest.fixture
def sampler_factory():
    return FakeSampler


@pytest.fixture
def frame_factory():
    return insulation_frame
