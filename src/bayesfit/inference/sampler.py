"""
Sampler adapter: runs a ModelSpec through PyMC's NUTS sampler.

The adapter is the only code that talks to the external engine. It translates
the ModelSpec into a PyMC model, samples, and translates the output (or the error)
back into a FitResult:

- sampling pathologies (divergences, tree-depth saturation, low ESS, high
  R-hat) become diagnostics warnings on a Success result
- a model PyMC cannot build gives Failed(INVALID_MODEL)
- MemoryError gives Failed(RESOURCE_EXHAUSTED)
- any other sampling error gives Failed(SAMPLER_ERROR)
- cancellation through the fit cache's token gives Failed(CANCELLED)
"""

import logging
import time
from typing import Callable, Dict, List, Mapping, Optional, Protocol, Tuple

import numpy as np
import pandas as pd
import pymc as pm
from numpy.typing import NDArray

from bayesfit.cache.cancellation import CancelToken, current_token
from bayesfit.cache.keys import cache_key
from bayesfit.errors import FitCancelled
from bayesfit.inference.design import DesignMatrices, build_design
from bayesfit.inference.diagnostics import chain_statistics
from bayesfit.inference.model_builder import ModelBuilder
from bayesfit.inference.results import FailureKind, FitResult, FitStatus, SamplerDiagnostics
from bayesfit.spec.builder import ModelSpec
from bayesfit.spec.data import ColumnKind, DataDescriptor

logger = logging.getLogger("bayesfit.sampler")


class SamplerAdapter(Protocol):
    """Anything that turns a ModelSpec into a FitResult without raising."""

    def fit(self, spec: ModelSpec) -> FitResult:
        ...


class PyMCSampler:
    """
    PyMC NUTS adapter.

    Datasets are registered up front and looked up by fingerprint
    (ModelSpec.data_ref) when a spec is fitted.

    Parameters
    ----------
    datasets : Mapping[str, pd.DataFrame], optional
        Frames keyed by fingerprint. More can be added with `register`.
    min_ess : float
        Bulk ESS below which a warning is attached. Default 400.
    max_rhat : float
        R-hat above which a warning is attached. Default 1.01.
    progressbar : bool
        Show PyMC's progress bar. Default False.
    """

    def __init__(
        self,
        datasets: Optional[Mapping[str, pd.DataFrame]] = None,
        min_ess: float = 400.0,
        max_rhat: float = 1.01,
        progressbar: bool = False,
    ) -> None:
        self._datasets: Dict[str, pd.DataFrame] = dict(datasets or {})
        self.min_ess = min_ess
        self.max_rhat = max_rhat
        self.progressbar = progressbar

    def register(
        self, frame: pd.DataFrame, name: str = "data", kinds: Optional[Mapping[str, ColumnKind]] = None
    ) -> DataDescriptor:
        """Register a dataset and return its descriptor; `kinds` overrides inferred column kinds."""
        descriptor = DataDescriptor.from_frame(frame, name=name, kinds=kinds)
        self._datasets[descriptor.fingerprint] = frame
        logger.debug("Registered dataset %s (%d rows, %s)", name, len(frame), descriptor.fingerprint)
        return descriptor

    def fit(self, spec: ModelSpec) -> FitResult:
        """
        Fit a spec. Never raises for sampler problems; see FitResult.status.

        Returns
        -------
        FitResult
        """
        key = cache_key(spec)
        start = time.perf_counter()

        frame = self._datasets.get(spec.data_ref)
        if frame is None:
            return FitResult.failure(
                spec, key, FailureKind.INVALID_MODEL,
                f"dataset {spec.data_ref} is not registered with the sampler",
            )

        try:
            design = build_design(spec, frame)
            builder = ModelBuilder(spec, design)
            model = builder.build()
        except MemoryError as exc:
            return FitResult.failure(spec, key, FailureKind.RESOURCE_EXHAUSTED, str(exc))
        except Exception as exc:
            logger.warning("Could not build model %s: %s", spec, exc)
            return FitResult.failure(
                spec, key, FailureKind.INVALID_MODEL, f"{type(exc).__name__}: {exc}"
            )

        try:
            idata = self._sample(model, spec, current_token())
        except FitCancelled as exc:
            return FitResult.failure(spec, key, FailureKind.CANCELLED, str(exc),
                                     elapsed=time.perf_counter() - start)
        except MemoryError as exc:
            return FitResult.failure(spec, key, FailureKind.RESOURCE_EXHAUSTED, str(exc),
                                     elapsed=time.perf_counter() - start)
        except Exception as exc:
            logger.warning("Sampling failed for %s: %s", spec, exc)
            return FitResult.failure(spec, key, FailureKind.SAMPLER_ERROR,
                                     f"{type(exc).__name__}: {exc}",
                                     elapsed=time.perf_counter() - start)

        return self._to_result(spec, key, builder, design, model, idata, time.perf_counter() - start)

    def _sample(self, model: pm.Model, spec: ModelSpec, token: CancelToken):
        cfg = spec.sampler_config

        def checkpoint(trace, draw) -> None:
            token.raise_if_cancelled()

        with model:
            return pm.sample(
                draws=cfg.draws_per_chain,
                tune=cfg.warmup,
                chains=cfg.chains,
                cores=cfg.effective_cores,
                random_seed=cfg.seed,
                progressbar=self.progressbar,
                nuts={"target_accept": cfg.adapt_delta, "max_treedepth": cfg.max_treedepth},
                idata_kwargs={"log_likelihood": True, "include_transformed": True},
                compute_convergence_checks=False,
                callback=checkpoint,
                return_inferencedata=True,
            )

    def _to_result(self, spec, key, builder, design: DesignMatrices, model, idata, elapsed) -> FitResult:
        posterior = idata.posterior
        n_chains = int(posterior.sizes["chain"])

        names = tuple(label for _, _, label in builder.parameters)
        columns = []
        for var, index, _ in builder.parameters:
            values = posterior[var].values  # (chain, draw, *shape)
            columns.append(values[(slice(None), slice(None)) + index].reshape(-1))
        draws = np.column_stack(columns) if columns else np.empty((n_chains * posterior.sizes["draw"], 0))

        log_lik = idata.log_likelihood["y"].values
        log_lik = log_lik.reshape(log_lik.shape[0] * log_lik.shape[1], -1)

        unconstrained, log_density = self._unconstrained(model, posterior)
        diagnostics = self._diagnostics(spec, names, draws, n_chains, idata)

        logger.info(
            "Fitted %s in %.1fs: %d draws, %d divergences",
            spec, elapsed, draws.shape[0], diagnostics.divergences,
        )
        return FitResult(
            spec=spec,
            cache_key=key,
            status=FitStatus.success(),
            parameter_names=names,
            draws=draws,
            n_chains=n_chains,
            diagnostics=diagnostics,
            log_likelihood_matrix=log_lik,
            observations=design.observations,
            unconstrained_draws=unconstrained,
            log_density=log_density,
            elapsed=elapsed,
        )

    @staticmethod
    def _unconstrained(model: pm.Model, posterior) -> Tuple[NDArray[np.float64], Callable]:
        """Flatten value-variable draws and wrap the model's log density to match."""
        layout: List[Tuple[str, Tuple[int, ...], int]] = []
        blocks = []
        for value_var in model.value_vars:
            values = posterior[value_var.name].values
            shape = values.shape[2:]
            size = int(np.prod(shape, dtype=int))
            layout.append((value_var.name, shape, size))
            blocks.append(values.reshape(values.shape[0] * values.shape[1], size))
        unconstrained = np.concatenate(blocks, axis=1).astype(np.float64)

        logp_fn = model.compile_logp(jacobian=True)

        def log_density(theta: NDArray[np.float64]) -> float:
            point = {}
            offset = 0
            for name, shape, size in layout:
                point[name] = np.asarray(theta[offset:offset + size], dtype=np.float64).reshape(shape)
                offset += size
            return float(logp_fn(point))

        return unconstrained, log_density

    def _diagnostics(self, spec, names, draws, n_chains, idata) -> SamplerDiagnostics:
        stats = idata.sample_stats
        divergences = int(stats["diverging"].values.sum()) if "diverging" in stats else 0
        if "reached_max_treedepth" in stats:
            treedepth_hits = int(stats["reached_max_treedepth"].values.sum())
        elif "tree_depth" in stats:
            treedepth_hits = int((stats["tree_depth"].values >= spec.sampler_config.max_treedepth).sum())
        else:
            treedepth_hits = 0

        ess_bulk: Dict[str, float] = {}
        rhat: Dict[str, float] = {}
        for j, name in enumerate(names):
            chains = draws[:, j].reshape(n_chains, -1)
            ess_bulk[name], rhat[name] = chain_statistics(chains)

        warnings = []
        if divergences:
            warnings.append(
                f"{divergences} divergent transitions after warmup; "
                f"consider increasing adapt_delta above {spec.sampler_config.adapt_delta}"
            )
        if treedepth_hits:
            warnings.append(
                f"{treedepth_hits} transitions hit max_treedepth={spec.sampler_config.max_treedepth}"
            )
        low_ess = [n for n, v in ess_bulk.items() if v < self.min_ess]
        if low_ess:
            warnings.append(f"Bulk ESS below {self.min_ess:g} for: {', '.join(low_ess)}")
        high_rhat = [n for n, v in rhat.items() if np.isfinite(v) and v > self.max_rhat]
        if high_rhat:
            warnings.append(f"R-hat above {self.max_rhat:g} for: {', '.join(high_rhat)}")

        for message in warnings:
            logger.warning("%s: %s", spec, message)

        return SamplerDiagnostics(
            divergences=divergences,
            max_treedepth_hits=treedepth_hits,
            ess_bulk=ess_bulk,
            rhat=rhat,
            warnings=tuple(warnings),
        )

    def __repr__(self) -> str:
        return f"PyMCSampler(datasets={len(self._datasets)}, min_ess={self.min_ess}, max_rhat={self.max_rhat})"
