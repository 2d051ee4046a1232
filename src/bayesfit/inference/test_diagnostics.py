"""
Tests for posterior summaries and reliability flags.

All tests use synthetic draws (no sampling):
- well-mixed independent chains (reliable)
- random-walk chains (low ESS, high R-hat)
- divergent fits
"""

import numpy as np
import pandas as pd
import pytest
from numpy.testing import assert_allclose

from bayesfit.errors import SamplerFailed, SamplerTimeout
from bayesfit.inference.diagnostics import DiagnosticsExtractor, chain_statistics
from bayesfit.inference.results import FailureKind, FitResult, FitStatus, SamplerDiagnostics
from bayesfit.spec.builder import ModelSpecBuilder
from bayesfit.spec.data import DataDescriptor


@pytest.fixture
def spec():
    rng = np.random.default_rng(0)
    frame = pd.DataFrame({"y": rng.normal(size=10), "x": rng.normal(size=10)})
    return ModelSpecBuilder().build("y ~ x", DataDescriptor.from_frame(frame), name="linear")


def synthetic_fit(spec, draws: np.ndarray, n_chains: int = 4, divergences: int = 0) -> FitResult:
    return FitResult(
        spec=spec,
        cache_key="0" * 64,
        status=FitStatus.success(),
        parameter_names=("b_Intercept", "b_x", "sigma"),
        draws=draws,
        n_chains=n_chains,
        diagnostics=SamplerDiagnostics(divergences=divergences),
    )


def iid_draws(seed: int = 1, n: int = 2000) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return np.column_stack([
        rng.normal(1.0, 0.1, n),
        rng.normal(-2.0, 0.5, n),
        np.abs(rng.normal(0.0, 1.0, n)) + 0.5,
    ])


class TestChainStatistics:
    """Tests for ESS / R-hat of one parameter."""

    def test_well_mixed(self) -> None:
        """Test that independent chains have high ESS and R-hat near 1."""
        values = np.random.default_rng(5).normal(size=(4, 500))
        ess, rhat = chain_statistics(values)
        assert ess > 1000
        assert rhat < 1.01

    def test_stuck_chains(self) -> None:
        """Test that chains centred at different values give high R-hat."""
        rng = np.random.default_rng(5)
        values = np.stack([rng.normal(loc, 1.0, 500) for loc in (-5.0, 5.0)])
        _, rhat = chain_statistics(values)
        assert rhat > 1.05

    def test_constant_parameter(self) -> None:
        """Test that a constant parameter is not flagged."""
        ess, rhat = chain_statistics(np.ones((2, 100)))
        assert ess == 200
        assert rhat == 1.0

    def test_single_chain(self) -> None:
        """Test that R-hat is undefined for a single chain."""
        _, rhat = chain_statistics(np.random.default_rng(1).normal(size=(1, 400)))
        assert np.isnan(rhat)


class TestDiagnosticsExtractor:
    """Tests for summaries and flags."""

    def test_summary_values(self, spec) -> None:
        """Test posterior mean, sd and equal-tailed interval."""
        draws = iid_draws()
        summary = DiagnosticsExtractor().summarize(synthetic_fit(spec, draws))

        b_x = summary["b_x"]
        assert_allclose(b_x.mean, np.mean(draws[:, 1]))
        assert_allclose(b_x.sd, np.std(draws[:, 1], ddof=1))
        assert_allclose(b_x.lower, np.quantile(draws[:, 1], 0.025))
        assert_allclose(b_x.upper, np.quantile(draws[:, 1], 0.975))
        assert b_x.lower < -2.0 < b_x.upper
        assert summary.label == "linear"

    def test_well_mixed_fit_is_reliable(self, spec) -> None:
        """Test that good draws are not flagged."""
        summary = DiagnosticsExtractor().summarize(synthetic_fit(spec, iid_draws()))
        assert not summary.unreliable
        assert summary.unreliable_parameters == ()

    def test_low_ess_flagged(self, spec) -> None:
        """Test that strongly autocorrelated draws are flagged."""
        rng = np.random.default_rng(2)
        draws = iid_draws()
        walk = np.cumsum(rng.normal(size=(4, 500)), axis=1).reshape(-1)
        draws[:, 1] = walk
        summary = DiagnosticsExtractor().summarize(synthetic_fit(spec, draws))

        assert summary.unreliable
        assert "b_x" in summary.unreliable_parameters
        assert any("ESS" in r for r in summary["b_x"].reasons)
        assert not summary["b_Intercept"].unreliable

    def test_divergences_flag_everything(self, spec) -> None:
        """Test that any divergence makes every parameter unreliable."""
        summary = DiagnosticsExtractor().summarize(synthetic_fit(spec, iid_draws(), divergences=3))
        assert summary.divergences == 3
        assert summary.unreliable_parameters == ("b_Intercept", "b_x", "sigma")

    def test_min_ess_threshold(self, spec) -> None:
        """Test that the ESS threshold is configurable."""
        summary = DiagnosticsExtractor(min_ess=1e6).summarize(synthetic_fit(spec, iid_draws()))
        assert summary.unreliable

    def test_reported_statistics_preferred(self, spec) -> None:
        """Test that sampler-reported ESS / R-hat are used when present."""
        fit = FitResult(
            spec=spec,
            cache_key="0" * 64,
            status=FitStatus.success(),
            parameter_names=("b_Intercept", "b_x", "sigma"),
            draws=iid_draws(),
            n_chains=4,
            diagnostics=SamplerDiagnostics(
                ess_bulk={"b_Intercept": 50.0, "b_x": 3000.0, "sigma": 3000.0},
                rhat={"b_Intercept": 1.0, "b_x": 1.2, "sigma": 1.0},
            ),
        )
        summary = DiagnosticsExtractor().summarize(fit)
        assert summary["b_Intercept"].ess_bulk == 50.0
        assert summary.unreliable_parameters == ("b_Intercept", "b_x")

    def test_credible_level(self, spec) -> None:
        """Test a 90% interval and its table columns."""
        draws = iid_draws()
        summary = DiagnosticsExtractor(credible_level=0.9).summarize(synthetic_fit(spec, draws))
        assert_allclose(summary["sigma"].lower, np.quantile(draws[:, 2], 0.05))

        table = summary.to_frame()
        assert list(table.index) == ["b_Intercept", "b_x", "sigma"]
        assert {"Estimate", "Est.Error", "Q5", "Q95", "Bulk_ESS", "Rhat", "unreliable"} <= set(table.columns)

    def test_failed_fit_raises(self, spec) -> None:
        """Test that summarizing a failed fit raises the matching SamplerError."""
        failed = FitResult.failure(spec, "0" * 64, FailureKind.SAMPLER_ERROR, "boom")
        with pytest.raises(SamplerFailed, match="boom"):
            DiagnosticsExtractor().summarize(failed)

        timed_out = FitResult.failure(spec, "0" * 64, FailureKind.TIMEOUT, "too slow")
        with pytest.raises(SamplerTimeout):
            DiagnosticsExtractor().summarize(timed_out)

    @pytest.mark.parametrize(
        "kwargs", [{"credible_level": 1.0}, {"credible_level": 0.0}, {"min_ess": 0}, {"max_rhat": 0.9}]
    )
    def test_invalid_thresholds(self, kwargs) -> None:
        """Test constructor validation."""
        with pytest.raises(ValueError):
            DiagnosticsExtractor(**kwargs)
