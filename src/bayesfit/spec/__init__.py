"""
Model specifications: formulas, families, priors and sampler settings.

**Usage:**
```python
from bayesfit.spec import DataDescriptor, ModelSpecBuilder, prior

data = DataDescriptor.from_frame(frame, name="insulation")
spec = ModelSpecBuilder().build(
    "Gas ~ Temp * Insul",
    data,
    family="gaussian",
    prior_list=[prior("normal(0, 2)", "b")],
    sampler_options={"chains": 4, "iter": 2500, "warmup": 1000, "seed": 101011},
)
```

**Key Classes:**
- DataDescriptor: Column kinds, factor levels and fingerprint of a dataset
- Formula: Parsed, canonically ordered model formula
- Family: Closed set of outcome families
- PriorDecl: Prior declaration for a parameter class
- SamplerConfig: Chains, iterations, warmup, seed and NUTS tuning
- ModelSpec / ModelSpecBuilder: Validated, canonical model specification
"""

from bayesfit.spec.data import ColumnKind, ColumnSpec, DataDescriptor, frame_fingerprint
from bayesfit.spec.families import Family
from bayesfit.spec.formula import Formula, GroupTerm, Term, parse_formula
from bayesfit.spec.priors import DEFAULT_PRIORS, PriorDecl, PriorDistribution, default_prior, prior
from bayesfit.spec.builder import ModelSpec, ModelSpecBuilder, SamplerConfig

__all__ = [
    # Data
    "ColumnKind",
    "ColumnSpec",
    "DataDescriptor",
    "frame_fingerprint",
    # Formula and family
    "Family",
    "Formula",
    "GroupTerm",
    "Term",
    "parse_formula",
    # Priors
    "DEFAULT_PRIORS",
    "PriorDecl",
    "PriorDistribution",
    "default_prior",
    "prior",
    # Specs
    "ModelSpec",
    "ModelSpecBuilder",
    "SamplerConfig",
]
