"""
Run-scoped workflow: register data, build models, fit through the cache,
summarize and compare.

    with Workflow() as wf:
        data = wf.register_data(frame, name="insulation")
        m1 = wf.model("Gas ~ Temp * Insul", data, chains=4, iter=2500, warmup=1000, seed=101011)
        m2 = m1.update(formula="Gas ~ Temp + Insul")
        fit1, fit2 = wf.fit_many([m1, m2])
        print(wf.summarize(fit1).to_frame())
        print(wf.compare([fit1, fit2], "looic").pairwise_difference)

Fits are cached for the lifetime of the Workflow, so re-running a script
against the same Workflow never re-samples an unchanged model.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, List, Mapping, Optional, Union

import pandas as pd

from bayesfit.cache.fit_cache import FitCache
from bayesfit.comparison.engine import ComparisonEngine, ComparisonResult, Fits, Metric
from bayesfit.config import Settings
from bayesfit.inference.diagnostics import DiagnosticsExtractor, Summary
from bayesfit.inference.results import FitResult
from bayesfit.inference.sampler import PyMCSampler, SamplerAdapter
from bayesfit.spec.builder import ModelSpec, ModelSpecBuilder
from bayesfit.spec.data import ColumnKind, DataDescriptor

logger = logging.getLogger("bayesfit")

DataArg = Union[DataDescriptor, pd.DataFrame, str]


class Workflow:
    """
    Facade over the builder, fit cache, sampler, diagnostics and comparison.

    Parameters
    ----------
    sampler : SamplerAdapter, optional
        Fits specs. Default: PyMCSampler with the settings' ESS/R-hat thresholds.
    settings : Settings, optional
        Run-level settings. Default: Settings.from_env().
    """

    def __init__(self, sampler: Optional[SamplerAdapter] = None, settings: Optional[Settings] = None) -> None:
        self.settings = settings or Settings.from_env()
        self.sampler = sampler or PyMCSampler(
            min_ess=self.settings.min_ess, max_rhat=self.settings.max_rhat
        )
        self.builder = ModelSpecBuilder(self.settings.default_sampler)
        self.cache = FitCache(
            max_concurrent_fits=self.settings.max_concurrent_fits,
            default_timeout=self.settings.fit_timeout,
        )
        self.extractor = DiagnosticsExtractor(
            credible_level=self.settings.credible_level,
            min_ess=self.settings.min_ess,
            max_rhat=self.settings.max_rhat,
        )
        self.engine = ComparisonEngine(self.extractor, pareto_k_threshold=self.settings.pareto_k_threshold)
        self._datasets: Dict[str, DataDescriptor] = {}

    def register_data(self, frame: pd.DataFrame, name: str = "data",
                      kinds: Optional[Mapping[str, ColumnKind]] = None) -> DataDescriptor:
        """Make a dataset available to models and the sampler; `kinds` overrides inferred column kinds."""
        register = getattr(self.sampler, "register", None)
        if register is not None:
            descriptor = register(frame, name=name, kinds=kinds)
        else:
            descriptor = DataDescriptor.from_frame(frame, name=name, kinds=kinds)
        self._datasets[name] = descriptor
        return descriptor

    def _descriptor(self, data: DataArg) -> DataDescriptor:
        if isinstance(data, DataDescriptor):
            return data
        if isinstance(data, pd.DataFrame):
            return self.register_data(data)
        try:
            return self._datasets[data]
        except KeyError:
            raise KeyError(
                f"No dataset registered as '{data}'. Registered: {', '.join(self._datasets) or 'none'}"
            ) from None

    def model(self, formula, data: DataArg, family="gaussian", priors: Iterable = (),
              name: str = "", **sampler_options) -> ModelSpec:
        """Build a validated ModelSpec; raises ValidationError on bad input."""
        return self.builder.build(
            formula,
            self._descriptor(data),
            family=family,
            prior_list=priors,
            sampler_options=sampler_options,
            name=name,
        )

    def fit(self, spec: ModelSpec, timeout: Optional[float] = None) -> FitResult:
        """Cached fit of one spec. Failures are returned, not raised."""
        return self.cache.get_or_fit(spec, self.sampler.fit, timeout=timeout)

    def fit_many(self, specs: Iterable[ModelSpec], timeout: Optional[float] = None) -> List[FitResult]:
        """Fit several specs concurrently; results are in input order."""
        specs = list(specs)
        if not specs:
            return []
        with ThreadPoolExecutor(max_workers=len(specs), thread_name_prefix="bayesfit-request") as pool:
            return list(pool.map(lambda spec: self.fit(spec, timeout=timeout), specs))

    def summarize(self, fit: FitResult) -> Summary:
        return self.extractor.summarize(fit)

    def compare(self, fits: Fits, metric=Metric.LOOIC) -> ComparisonResult:
        return self.engine.compare(fits, metric)

    def close(self) -> None:
        self.cache.close()
        logger.debug("Workflow closed: %s", self.cache)

    def __enter__(self) -> "Workflow":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Workflow(sampler={self.sampler!r}, cache={self.cache!r})"
