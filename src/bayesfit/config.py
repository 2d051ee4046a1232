"""
Run-level settings for a Workflow.

Values come from keyword arguments or, via `Settings.from_env()`, from
BAYESFIT_* environment variables:

    BAYESFIT_MAX_CONCURRENT_FITS   int     (2)
    BAYESFIT_FIT_TIMEOUT           seconds (unset = no timeout)
    BAYESFIT_CREDIBLE_LEVEL        float   (0.95)
    BAYESFIT_MIN_ESS               float   (400)
    BAYESFIT_MAX_RHAT              float   (1.01)
    BAYESFIT_PARETO_K_THRESHOLD    float   (0.7)
    BAYESFIT_CHAINS, BAYESFIT_ITER, BAYESFIT_WARMUP, BAYESFIT_SEED,
    BAYESFIT_ADAPT_DELTA, BAYESFIT_MAX_TREEDEPTH, BAYESFIT_CORES
                                   default SamplerConfig fields
"""

import os
from dataclasses import dataclass, field, fields
from typing import Mapping, Optional

from bayesfit.spec.builder import SamplerConfig

ENV_PREFIX = "BAYESFIT_"


@dataclass(frozen=True)
class Settings:
    """
    Fields:
        max_concurrent_fits: Fits allowed to sample at the same time
        fit_timeout: Default per-fit timeout in seconds (None = wait indefinitely)
        credible_level: Coverage of reported credible intervals
        min_ess: Bulk ESS below which estimates are flagged unreliable
        max_rhat: R-hat above which estimates are flagged unreliable
        pareto_k_threshold: Pareto k above which LOO estimates are flagged
        default_sampler: Sampler settings used when a model gives none
    """

    max_concurrent_fits: int = 2
    fit_timeout: Optional[float] = None
    credible_level: float = 0.95
    min_ess: float = 400.0
    max_rhat: float = 1.01
    pareto_k_threshold: float = 0.7
    default_sampler: SamplerConfig = field(default_factory=SamplerConfig)

    def __post_init__(self) -> None:
        if self.max_concurrent_fits < 1:
            raise ValueError(f"max_concurrent_fits must be >= 1. Got {self.max_concurrent_fits}")
        if self.fit_timeout is not None and self.fit_timeout <= 0:
            raise ValueError(f"fit_timeout must be > 0 or None. Got {self.fit_timeout}")
        if not 0.0 < self.credible_level < 1.0:
            raise ValueError(f"credible_level must be in (0, 1). Got {self.credible_level}")
        if self.min_ess <= 0:
            raise ValueError(f"min_ess must be > 0. Got {self.min_ess}")
        if self.max_rhat < 1.0:
            raise ValueError(f"max_rhat must be >= 1. Got {self.max_rhat}")
        if self.pareto_k_threshold <= 0:
            raise ValueError(f"pareto_k_threshold must be > 0. Got {self.pareto_k_threshold}")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Settings with any BAYESFIT_* variables in `environ` (default os.environ) applied."""
        env = os.environ if environ is None else environ

        def get(name: str):
            value = env.get(ENV_PREFIX + name.upper())
            return value if value not in (None, "") else None

        values = {}
        for name, convert in (
            ("max_concurrent_fits", int),
            ("fit_timeout", float),
            ("credible_level", float),
            ("min_ess", float),
            ("max_rhat", float),
            ("pareto_k_threshold", float),
        ):
            raw = get(name)
            if raw is not None:
                values[name] = _convert(name, raw, convert)

        sampler_types = {"adapt_delta": float}
        sampler = {}
        for f in fields(SamplerConfig):
            raw = get(f.name)
            if raw is not None:
                sampler[f.name] = _convert(f.name, raw, sampler_types.get(f.name, int))
        if sampler:
            values["default_sampler"] = SamplerConfig.from_options(sampler)

        return cls(**values)


def _convert(name: str, raw: str, convert):
    try:
        return convert(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name.upper()} must be {convert.__name__}. Got {raw!r}") from None
