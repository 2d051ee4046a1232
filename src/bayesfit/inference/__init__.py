"""
PyMC inference: design matrices, model assembly, NUTS sampling and
posterior diagnostics.

**Usage:**
```python
from bayesfit.inference import DiagnosticsExtractor, PyMCSampler

sampler = PyMCSampler()
data = sampler.register(frame, name="insulation")
fit = sampler.fit(spec)             # FitResult, never raises for sampler problems
summary = DiagnosticsExtractor().summarize(fit)
print(summary.to_frame())
```

**Key Classes:**
- FitResult: Draws, pointwise log-likelihood, diagnostics and status of one fit
- ModelBuilder: PyMC model assembly from a ModelSpec
- PyMCSampler: NUTS sampling adapter
- DiagnosticsExtractor: Posterior summaries with ESS / R-hat / divergence flags
"""

from bayesfit.inference.results import (
    FailureKind,
    FailureReason,
    FitResult,
    FitStatus,
    SamplerDiagnostics,
)
from bayesfit.inference.design import DesignMatrices, build_design
from bayesfit.inference.diagnostics import DiagnosticsExtractor, ParameterSummary, Summary
from bayesfit.inference.model_builder import ModelBuilder
from bayesfit.inference.sampler import PyMCSampler, SamplerAdapter

__all__ = [
    "FailureKind",
    "FailureReason",
    "FitResult",
    "FitStatus",
    "SamplerDiagnostics",
    "DesignMatrices",
    "build_design",
    "DiagnosticsExtractor",
    "ParameterSummary",
    "Summary",
    "ModelBuilder",
    "PyMCSampler",
    "SamplerAdapter",
]
