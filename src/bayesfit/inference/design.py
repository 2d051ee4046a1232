"""
Design matrices for the linear predictor.

Rows with a missing value in any variable of the formula are dropped, and the
positions of the retained rows are kept as the fit's observation index.
Factors (categorical and ordinal predictors) are treatment-coded against their
first level; interactions are element-wise products of the coded columns.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Tuple

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from bayesfit.errors import ValidationError
from bayesfit.spec.builder import ModelSpec
from bayesfit.spec.data import ColumnSpec, DataDescriptor
from bayesfit.spec.families import Family
from bayesfit.spec.formula import GroupTerm, Term


@dataclass
class GroupDesign:
    """Varying effects of one grouping factor."""

    group: str
    codes: NDArray[np.int64]
    levels: Tuple[str, ...]
    Z: NDArray[np.float64]
    effect_names: Tuple[str, ...]
    correlated: bool

    @property
    def n_levels(self) -> int:
        return len(self.levels)


@dataclass
class DesignMatrices:
    """Outcome, population-level design and group-level designs for one fit."""

    y: NDArray
    X: NDArray[np.float64]
    coefficient_names: Tuple[str, ...]
    observations: NDArray[np.int64]
    groups: List[GroupDesign] = field(default_factory=list)
    n_categories: int = 0

    @property
    def n_obs(self) -> int:
        return int(self.y.shape[0])


def build_design(spec: ModelSpec, frame: pd.DataFrame) -> DesignMatrices:
    """
    Build the design matrices of `spec` from a DataFrame.

    Raises
    ------
    ValidationError
        If no complete rows remain or the outcome cannot be encoded for the family.
    """
    descriptor = spec.data or DataDescriptor.from_frame(frame)
    formula = spec.formula

    mask = frame[list(formula.variables)].notna().all(axis=1).to_numpy()
    if not mask.any():
        raise ValidationError(f"No complete rows for {formula}")
    rows = frame.loc[mask]
    observations = np.flatnonzero(mask).astype(np.int64)

    columns: Dict[str, NDArray[np.float64]] = {}
    for term in formula.terms:
        columns.update(_term_columns(term, rows, descriptor))
    names = tuple(columns)
    if names != spec.coefficient_names:
        raise ValidationError(
            f"Data levels do not match the model: expected coefficients "
            f"{spec.coefficient_names}, data produce {names}"
        )
    X = np.column_stack([columns[n] for n in names]) if names else np.zeros((len(rows), 0))

    outcome_spec = descriptor.column(formula.outcome)
    y, n_categories = _encode_outcome(rows[formula.outcome], outcome_spec, spec.family)

    groups = [_group_design(g, rows, descriptor) for g in formula.groups]
    return DesignMatrices(
        y=y,
        X=X,
        coefficient_names=names,
        observations=observations,
        groups=groups,
        n_categories=n_categories,
    )


def _factor_columns(name: str, series: pd.Series, spec: ColumnSpec) -> Dict[str, NDArray[np.float64]]:
    if spec.is_factor:
        labels = series.astype(str).to_numpy()
        return {
            dummy: (labels == level).astype(np.float64)
            for dummy, level in zip(spec.dummy_names(name), spec.levels[1:])
        }
    return {name: series.to_numpy(dtype=np.float64)}


def _term_columns(term: Term, rows: pd.DataFrame, descriptor: DataDescriptor) -> Dict[str, NDArray[np.float64]]:
    expanded: Dict[str, NDArray[np.float64]] = {"": np.ones(len(rows))}
    for factor in term.factors:
        coded = _factor_columns(factor, rows[factor], descriptor.column(factor))
        expanded = {
            (f"{prefix}:{name}" if prefix else name): values * column
            for prefix, values in expanded.items()
            for name, column in coded.items()
        }
    return expanded


def _group_design(group: GroupTerm, rows: pd.DataFrame, descriptor: DataDescriptor) -> GroupDesign:
    codes, uniques = pd.factorize(rows[group.group], sort=True)
    columns: Dict[str, NDArray[np.float64]] = {}
    if group.intercept:
        columns["Intercept"] = np.ones(len(rows))
    for term in group.terms:
        columns.update(_term_columns(term, rows, descriptor))
    return GroupDesign(
        group=group.group,
        codes=codes.astype(np.int64),
        levels=tuple(str(u) for u in uniques),
        Z=np.column_stack(list(columns.values())),
        effect_names=tuple(columns),
        correlated=group.correlated,
    )


def _encode_outcome(series: pd.Series, spec: ColumnSpec, family: Family) -> Tuple[NDArray, int]:
    if family in (Family.GAUSSIAN, Family.STUDENT):
        return series.to_numpy(dtype=np.float64), 0

    if family == Family.BERNOULLI:
        if spec.numeric:
            y = series.to_numpy().astype(np.int64)
        else:
            y = (series.astype(str).to_numpy() == spec.levels[-1]).astype(np.int64)
        if not np.isin(y, (0, 1)).all():
            raise ValidationError(f"Bernoulli outcome '{series.name}' must be 0/1")
        return y, 0

    if family in (Family.POISSON, Family.NEGBINOMIAL):
        y = series.to_numpy()
        if not np.all(np.equal(np.mod(y, 1), 0)) or (y < 0).any():
            raise ValidationError(f"Count outcome '{series.name}' must be non-negative integers")
        return y.astype(np.int64), 0

    # cumulative: integer category codes 0..K-1 in level order
    labels = series.astype(str).to_numpy()
    lookup = {level: i for i, level in enumerate(spec.levels)}
    try:
        y = np.array([lookup[label] for label in labels], dtype=np.int64)
    except KeyError as exc:
        raise ValidationError(f"Ordinal outcome '{series.name}' has unknown level {exc}") from None
    if len(spec.levels) < 2:
        raise ValidationError(
            f"Ordinal outcome '{series.name}' needs at least 2 levels, got {len(spec.levels)}"
        )
    return y, len(spec.levels)
