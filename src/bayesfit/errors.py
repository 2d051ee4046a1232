"""
Error taxonomy for model building, fitting and comparison.

Three families of errors, matching the three places a workflow can go wrong:

- ValidationError: the model specification is malformed. Raised before any
  sampling is attempted; the caller fixes the input.
- SamplerError: the external sampler could not produce draws. Recorded in
  FitResult.status by the sampler adapter and only raised on demand
  (FitResult.raise_for_status), so one failing model does not abort a batch.
- ComparisonError: comparison preconditions are violated. Always raised,
  never degraded into a number.
"""


class BayesFitError(Exception):
    """Base class for all bayesfit errors."""


# ============================================================================
# VALIDATION
# ============================================================================

class ValidationError(BayesFitError, ValueError):
    """Invalid model specification."""


class FormulaError(ValidationError):
    """Formula text could not be parsed."""


class UnknownPredictor(ValidationError):
    """Formula references a column that is not in the dataset."""

    def __init__(self, name: str, available) -> None:
        self.name = name
        self.available = tuple(available)
        super().__init__(
            f"Formula references unknown column '{name}'. "
            f"Available columns: {', '.join(self.available)}"
        )


class UnsupportedFamily(ValidationError):
    """Family is not a member of the supported closed set."""

    def __init__(self, family, supported) -> None:
        self.family = family
        self.supported = tuple(supported)
        super().__init__(
            f"Unsupported family '{family}'. Supported: {', '.join(self.supported)}"
        )


class IncompatibleFamily(ValidationError):
    """Family does not match the outcome column's kind."""


class InvalidPrior(ValidationError):
    """Prior declaration is malformed or does not apply to the model."""


class InvalidSamplerConfig(ValidationError):
    """Sampler options violate their invariants."""


# ============================================================================
# SAMPLING
# ============================================================================

class SamplerError(BayesFitError, RuntimeError):
    """The sampler could not produce draws for a model."""

    def __init__(self, message: str, reason=None) -> None:
        super().__init__(message)
        self.reason = reason


class SamplerFailed(SamplerError):
    """Hard sampler failure (invalid model, resource exhaustion, crash)."""


class SamplerTimeout(SamplerError):
    """Fit exceeded its timeout. Retry with a fresh request."""


class FitCancelled(SamplerError):
    """Fit was cancelled cooperatively before completion."""


# ============================================================================
# COMPARISON
# ============================================================================

class ComparisonError(BayesFitError, ValueError):
    """Model comparison preconditions violated."""


class IncompatibleData(ComparisonError):
    """Fits were computed on different observations."""


class IncompleteInputs(ComparisonError):
    """At least one fit failed or lacks the inputs the metric requires."""
