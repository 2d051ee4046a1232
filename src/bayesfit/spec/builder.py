"""
ModelSpec builder: validated, canonical model specifications.

A ModelSpec bundles everything that determines a fit:

    formula         parsed and canonically ordered
    data_ref        fingerprint of the dataset (not the data itself)
    family          member of the closed Family set
    priors          resolved declarations, defaults included, canonical order
    sampler_config  chains, iterations, warmup, seed and NUTS tuning

Building is pure and fails fast: every validation error is raised here,
before any sampler is started.
"""

import numbers
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from bayesfit.errors import InvalidPrior, InvalidSamplerConfig, UnknownPredictor, ValidationError
from bayesfit.spec.data import ColumnKind, DataDescriptor
from bayesfit.spec.families import Family, check_outcome
from bayesfit.spec.formula import Formula, GroupTerm, Term, parse_formula
from bayesfit.spec.priors import PriorDecl, PriorDistribution, resolve_priors


def _is_integer(value) -> bool:
    return isinstance(value, numbers.Integral) and not isinstance(value, bool)


@dataclass(frozen=True)
class SamplerConfig:
    """
    NUTS sampler settings for one fit.

    `iter` counts warmup and retained iterations per chain, as in brms, so each
    chain keeps `iter - warmup` draws.
    """

    chains: int = 4
    iter: int = 2000
    warmup: int = 1000
    seed: Optional[int] = None
    adapt_delta: float = 0.8
    max_treedepth: int = 10
    cores: Optional[int] = None

    def __post_init__(self) -> None:
        errors = []
        invalid = set()
        for name, minimum, optional in (
            ("chains", 1, False),
            ("iter", 1, False),
            ("warmup", 0, False),
            ("seed", 0, True),
            ("max_treedepth", 1, False),
            ("cores", 1, True),
        ):
            value = getattr(self, name)
            if value is None and optional:
                continue
            if not _is_integer(value) or value < minimum:
                suffix = " or None" if optional else ""
                errors.append(f"{name} must be an integer >= {minimum}{suffix}, got {value!r}")
                invalid.add(name)
            else:
                # numpy integers are stored as plain ints
                object.__setattr__(self, name, int(value))
        if not invalid & {"iter", "warmup"} and self.warmup >= self.iter:
            errors.append(f"warmup ({self.warmup}) must be < iter ({self.iter})")
        if (isinstance(self.adapt_delta, bool) or not isinstance(self.adapt_delta, numbers.Real)
                or not 0.0 < self.adapt_delta < 1.0):
            errors.append(f"adapt_delta must be in (0, 1), got {self.adapt_delta!r}")
        else:
            object.__setattr__(self, "adapt_delta", float(self.adapt_delta))

        if errors:
            raise InvalidSamplerConfig("Invalid sampler configuration:\n  " + "\n  ".join(errors))

    @property
    def draws_per_chain(self) -> int:
        return self.iter - self.warmup

    @property
    def total_draws(self) -> int:
        return self.draws_per_chain * self.chains

    @property
    def effective_cores(self) -> int:
        return self.cores if self.cores is not None else self.chains

    @classmethod
    def from_options(
        cls, options: Optional[Mapping[str, Any]] = None, base: Optional["SamplerConfig"] = None
    ) -> "SamplerConfig":
        """Overlay option values on `base` (or the defaults), rejecting unknown names."""
        options = dict(options or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise InvalidSamplerConfig(
                f"Unknown sampler option(s): {', '.join(unknown)}. "
                f"Supported: {', '.join(sorted(known))}"
            )
        return replace(base or cls(), **options)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class ModelSpec:
    """Immutable, canonical description of one model fit."""

    formula: Formula
    data_ref: str
    family: Family
    priors: Tuple[PriorDecl, ...]
    sampler_config: SamplerConfig
    coefficient_names: Tuple[str, ...] = ()
    group_effects: Tuple[Tuple[str, Tuple[str, ...]], ...] = ()
    data: Optional[DataDescriptor] = field(default=None, compare=False, repr=False)
    name: str = field(default="", compare=False)

    @property
    def outcome(self) -> str:
        return self.formula.outcome

    def prior_for(self, parameter_class: str, coef: str = "", group: str = "") -> PriorDistribution:
        """Most specific matching prior: (coef, group), then group, then coef, then class."""
        candidates = ((coef, group), ("", group), (coef, ""), ("", ""))
        lookup = {(p.parameter_class, p.coef, p.group): p for p in self.priors}
        for c, g in candidates:
            decl = lookup.get((parameter_class, c, g))
            if decl is not None:
                return decl.distribution
        raise KeyError(f"No prior for class '{parameter_class}' in {self.formula}")

    def canonical(self) -> Dict[str, Any]:
        """Field-ordered plain representation used for cache keys and reports."""
        return {
            "formula": str(self.formula),
            "data_ref": self.data_ref,
            "family": self.family.value,
            "priors": [p.to_dict() for p in self.priors],
            "sampler_config": self.sampler_config.to_dict(),
        }

    def update(self, formula=None, family=None, priors=None, data=None, **sampler_options) -> "ModelSpec":
        """
        Rebuild this spec with some fields changed.

        Priors that were filled in from defaults are re-resolved for the new
        model; explicitly different declarations replace the old ones. Requires
        the ModelSpec to carry its DataDescriptor (set by ModelSpecBuilder).
        """
        descriptor = data or self.data
        if descriptor is None:
            raise ValueError("ModelSpec.update needs the DataDescriptor it was built from")
        return ModelSpecBuilder().build(
            str(self.formula) if formula is None else formula,
            descriptor,
            self.family if family is None else family,
            self.priors if priors is None else priors,
            {**self.sampler_config.to_dict(), **sampler_options},
            name=self.name,
            keep_applicable_only=priors is None,
        )

    def __str__(self) -> str:
        return f"{self.formula} [{self.family}]"


class ModelSpecBuilder:
    """
    Validates raw inputs and produces canonical ModelSpecs.

    Parameters
    ----------
    default_sampler : SamplerConfig, optional
        Sampler settings that options are overlaid on. Default SamplerConfig().
    """

    def __init__(self, default_sampler: Optional[SamplerConfig] = None) -> None:
        self.default_sampler = default_sampler or SamplerConfig()

    def build(
        self,
        raw_formula,
        data_descriptor: DataDescriptor,
        family="gaussian",
        prior_list: Iterable = (),
        sampler_options: Optional[Mapping[str, Any]] = None,
        name: str = "",
        keep_applicable_only: bool = False,
    ) -> ModelSpec:
        """
        Build a ModelSpec.

        Parameters
        ----------
        raw_formula : str or Formula
            Model formula, e.g. "Gas ~ Temp * Insul".
        data_descriptor : DataDescriptor
            Schema and fingerprint of the dataset.
        family : str or Family
            Outcome family.
        prior_list : Iterable
            Prior declarations; missing classes get defaults.
        sampler_options : Mapping, optional
            Overrides for the sampler configuration.
        name : str
            Label for reports. Not part of the cache key.
        keep_applicable_only : bool
            Drop declarations whose class/coef no longer exists (used by update).

        Raises
        ------
        ValidationError
            Any formula, family, prior or sampler-option problem.
        """
        formula = raw_formula if isinstance(raw_formula, Formula) else parse_formula(raw_formula)
        family = Family.parse(family)
        sampler_config = SamplerConfig.from_options(sampler_options, base=self.default_sampler)

        for column in formula.variables:
            if column not in data_descriptor:
                raise UnknownPredictor(column, data_descriptor.columns)
        check_outcome(family, formula.outcome, data_descriptor.column(formula.outcome))
        for group in formula.groups:
            if data_descriptor.column(group.group).kind == ColumnKind.CONTINUOUS:
                raise ValidationError(
                    f"Grouping factor '{group.group}' must be discrete, not continuous"
                )

        coefficients = coefficient_names(formula.terms, data_descriptor)
        group_effects = {
            group.group: group_effect_names(group, data_descriptor) for group in formula.groups
        }
        classes = model_classes(formula, family, coefficients)

        declared = list(prior_list)
        if keep_applicable_only:
            declared = [
                p for p in declared
                if p.parameter_class in classes
                and (not p.coef or p.coef in coefficients or _is_group_effect(p.coef, group_effects))
                and (not p.group or p.group in group_effects)
            ]
        priors = resolve_priors(
            declared,
            classes,
            coefficients=coefficients,
            group_effects=group_effects,
            ordered_cutpoints=family == Family.CUMULATIVE,
        )
        for group in formula.groups:
            if not (group.correlated and group.n_effects > 1):
                continue
            for p in priors:
                if (p.parameter_class == "sd" and p.coef and p.group in ("", group.group)
                        and p.coef in group_effects[group.group]):
                    raise InvalidPrior(
                        f"Correlated effects of '{group.group}' share one sd prior; "
                        f"use '||' for coefficient-specific sd priors. Got {p}"
                    )

        return ModelSpec(
            formula=formula,
            data_ref=data_descriptor.fingerprint,
            family=family,
            priors=priors,
            sampler_config=sampler_config,
            coefficient_names=coefficients,
            group_effects=tuple(sorted(group_effects.items())),
            data=data_descriptor,
            name=name,
        )


def coefficient_names(terms: Tuple[Term, ...], descriptor: DataDescriptor) -> Tuple[str, ...]:
    """Population-level coefficient names after treatment coding of factors."""
    names = []
    for term in terms:
        expanded = [""]
        for factor in term.factors:
            dummies = descriptor.column(factor).dummy_names(factor)
            expanded = [f"{prefix}:{d}" if prefix else d for prefix in expanded for d in dummies]
        names.extend(expanded)
    return tuple(names)


def group_effect_names(group: GroupTerm, descriptor: DataDescriptor) -> Tuple[str, ...]:
    effects = coefficient_names(group.terms, descriptor)
    return (("Intercept",) if group.intercept else ()) + effects


def model_classes(formula: Formula, family: Family, coefficients: Tuple[str, ...]) -> Tuple[str, ...]:
    """Parameter classes that occur in a model, in canonical order."""
    classes = []
    if formula.intercept or family == Family.CUMULATIVE:
        classes.append("Intercept")
    if coefficients:
        classes.append("b")
    if formula.groups:
        classes.append("sd")
    if any(g.correlated and g.n_effects > 1 for g in formula.groups):
        classes.append("cor")
    classes.extend(family.auxiliary_classes)
    return tuple(classes)


def _is_group_effect(coef: str, group_effects: Mapping[str, Tuple[str, ...]]) -> bool:
    return any(coef in effects for effects in group_effects.values())
