"""
bayesfit: cached fitting and comparison of Bayesian regression models.

Models are described by validated, canonical specifications, fitted once
each with PyMC's NUTS sampler, summarized with reliability flags and
compared by WAIC, LOOIC or Bayes factor.

**Usage:**
```python
from bayesfit import Workflow

with Workflow() as wf:
    data = wf.register_data(frame, name="insulation")
    m1 = wf.model("Gas ~ Temp * Insul", data, seed=101011)
    m2 = m1.update(formula="Gas ~ Temp + Insul")
    result = wf.compare(wf.fit_many([m1, m2]), metric="looic")
```
"""

from bayesfit.errors import (
    BayesFitError,
    ComparisonError,
    FitCancelled,
    FormulaError,
    IncompatibleData,
    IncompatibleFamily,
    IncompleteInputs,
    InvalidPrior,
    InvalidSamplerConfig,
    SamplerError,
    SamplerFailed,
    SamplerTimeout,
    UnknownPredictor,
    UnsupportedFamily,
    ValidationError,
)
from bayesfit.spec import DataDescriptor, Family, ModelSpec, ModelSpecBuilder, SamplerConfig, prior
from bayesfit.cache import FitCache, cache_key
from bayesfit.inference import DiagnosticsExtractor, FitResult, PyMCSampler, Summary
from bayesfit.comparison import ComparisonEngine, ComparisonResult, Metric
from bayesfit.config import Settings
from bayesfit.workflow import Workflow

__version__ = "0.1.0"

__all__ = [
    # Errors
    "BayesFitError",
    "ComparisonError",
    "FitCancelled",
    "FormulaError",
    "IncompatibleData",
    "IncompatibleFamily",
    "IncompleteInputs",
    "InvalidPrior",
    "InvalidSamplerConfig",
    "SamplerError",
    "SamplerFailed",
    "SamplerTimeout",
    "UnknownPredictor",
    "UnsupportedFamily",
    "ValidationError",
    # Model specs
    "DataDescriptor",
    "Family",
    "ModelSpec",
    "ModelSpecBuilder",
    "SamplerConfig",
    "prior",
    # Fitting
    "FitCache",
    "cache_key",
    "DiagnosticsExtractor",
    "FitResult",
    "PyMCSampler",
    "Summary",
    # Comparison
    "ComparisonEngine",
    "ComparisonResult",
    "Metric",
    # Run
    "Settings",
    "Workflow",
]
