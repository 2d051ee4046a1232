"""
PyMC model builder: regression models from a ModelSpec and its design matrices.

The model follows brms conventions:

    eta = b_Intercept + X b + sum_g (Z_g * r_g[group])    # linear predictor
    b_<coef> ~ prior(b, coef)                              # population-level
    r_g = z_g diag(sd_g) L_g^T,  z_g ~ Normal(0, 1)        # group-level (non-centred)
    L_g ~ LKJCholesky(eta) for correlated terms `(1 + x | g)`
    y ~ Family(link^-1(eta), auxiliary parameters)

For the cumulative family the intercept is replaced by ordered cutpoints
(`Intercept`) and `y ~ OrderedLogistic(eta, cutpoints)`.

Priors on the intercept apply to the raw intercept, not to the intercept of
centred predictors as in brms.
"""

from typing import List, Tuple

import numpy as np
import pymc as pm
import pytensor.tensor as pt

from bayesfit.inference.design import DesignMatrices, GroupDesign
from bayesfit.spec.builder import ModelSpec
from bayesfit.spec.families import Family
from bayesfit.spec.priors import PriorDistribution

# (variable name, index into the variable, label in FitResult.parameter_names)
ParameterRef = Tuple[str, Tuple[int, ...], str]

_INVERSE_LINKS = {
    "identity": lambda eta: eta,
    "log": pt.exp,
    "logit": pm.math.invlogit,
}


def prior_distribution(dist: PriorDistribution, positive: bool = False):
    """
    Map a prior declaration to a PyMC distribution class and its arguments.

    Parameters
    ----------
    dist : PriorDistribution
        Declared prior.
    positive : bool
        Parameter is constrained to be positive; location-scale priors become
        their half versions.

    Returns
    -------
    (distribution class, kwargs)
    """
    a = dist.args
    if dist.name == "normal":
        return (pm.HalfNormal, {"sigma": a[1]}) if positive else (pm.Normal, {"mu": a[0], "sigma": a[1]})
    if dist.name == "student_t":
        if positive:
            return pm.HalfStudentT, {"nu": a[0], "sigma": a[2]}
        return pm.StudentT, {"nu": a[0], "mu": a[1], "sigma": a[2]}
    if dist.name == "cauchy":
        return (pm.HalfCauchy, {"beta": a[1]}) if positive else (pm.Cauchy, {"alpha": a[0], "beta": a[1]})
    if dist.name == "exponential":
        return pm.Exponential, {"lam": a[0]}
    if dist.name == "gamma":
        return pm.Gamma, {"alpha": a[0], "beta": a[1]}
    if dist.name == "uniform":
        return pm.Uniform, {"lower": a[0], "upper": a[1]}
    if dist.name == "flat":
        return pm.Flat, {}
    raise ValueError(f"Prior {dist} cannot be used for a scalar parameter")


class ModelBuilder:
    """
    Bayesian regression model builder.

    Attributes
    ----------
    spec : ModelSpec
        ModelSpec being built
    design : DesignMatrices
        Outcome and design matrices
    parameters : List[ParameterRef]
        Posterior quantities reported in FitResult.draws, in order
    model : pm.Model or None
        PyMC model (None until built)
    """

    def __init__(self, spec: ModelSpec, design: DesignMatrices) -> None:
        self.spec = spec
        self.design = design
        self.parameters: List[ParameterRef] = []

    def _prior_rv(self, name: str, parameter_class: str, coef: str = "", group: str = "",
                  positive: bool = False, **kwargs):
        dist = self.spec.prior_for(parameter_class, coef=coef, group=group)
        cls, args = prior_distribution(dist, positive=positive)
        return cls(name, **args, **kwargs)

    def _scalar(self, name: str, parameter_class: str, coef: str = "", group: str = "",
                positive: bool = False):
        rv = self._prior_rv(name, parameter_class, coef=coef, group=group, positive=positive)
        self.parameters.append((name, (), name))
        return rv

    def _build_cutpoints(self):
        """Ordered cutpoints of the cumulative family, shape (K - 1,)."""
        k = self.design.n_categories - 1
        cutpoints = self._prior_rv(
            "Intercept",
            "Intercept",
            shape=(k,),
            transform=pm.distributions.transforms.ordered,
            initval=np.linspace(-1.0, 1.0, k),
        )
        self.parameters.extend(("Intercept", (i,), f"Intercept[{i + 1}]") for i in range(k))
        return cutpoints

    def _build_population(self):
        """Intercept plus X b. Returns the population-level linear predictor."""
        n = self.design.n_obs
        eta = pt.zeros(n)

        if self.spec.formula.intercept and self.spec.family != Family.CUMULATIVE:
            eta = eta + self._scalar("b_Intercept", "Intercept")

        coefficients = [
            self._scalar(f"b_{coef}", "b", coef=coef) for coef in self.design.coefficient_names
        ]
        if coefficients:
            eta = eta + pt.dot(self.design.X, pt.stack(coefficients))
        return eta

    def _build_group(self, g: GroupDesign):
        """Varying effects of one grouping factor. Returns their contribution to eta."""
        k = len(g.effect_names)
        z = pm.Normal(f"z_{g.group}", mu=0.0, sigma=1.0, shape=(g.n_levels, k))

        if g.correlated and k > 1:
            cls, args = prior_distribution(self.spec.prior_for("sd", group=g.group), positive=True)
            eta_lkj = self.spec.prior_for("cor", group=g.group).args[0]
            chol, _, _ = pm.LKJCholeskyCov(
                f"L_{g.group}",
                n=k,
                eta=eta_lkj,
                sd_dist=cls.dist(**args, shape=k),
                compute_corr=True,
            )
            effects = pt.dot(z, chol.T)
            for i, e in enumerate(g.effect_names):
                self.parameters.append((f"L_{g.group}_stds", (i,), f"sd_{g.group}__{e}"))
            for i in range(k):
                for j in range(i + 1, k):
                    label = f"cor_{g.group}__{g.effect_names[i]}__{g.effect_names[j]}"
                    self.parameters.append((f"L_{g.group}_corr", (i, j), label))
        else:
            sds = [
                self._scalar(f"sd_{g.group}__{e}", "sd", coef=e, group=g.group, positive=True)
                for e in g.effect_names
            ]
            effects = z * pt.stack(sds)

        return (g.Z * effects[g.codes]).sum(axis=1)

    def _build_likelihood(self, eta):
        y = self.design.y
        family = self.spec.family

        if family == Family.CUMULATIVE:
            cutpoints = self._build_cutpoints()
            return pm.OrderedLogistic("y", eta=eta, cutpoints=cutpoints, observed=y, compute_p=False)

        mu = _INVERSE_LINKS[family.link](eta)
        if family == Family.GAUSSIAN:
            sigma = self._scalar("sigma", "sigma", positive=True)
            return pm.Normal("y", mu=mu, sigma=sigma, observed=y)
        if family == Family.STUDENT:
            sigma = self._scalar("sigma", "sigma", positive=True)
            nu = self._scalar("nu", "nu", positive=True)
            return pm.StudentT("y", nu=nu, mu=mu, sigma=sigma, observed=y)
        if family == Family.BERNOULLI:
            return pm.Bernoulli("y", p=mu, observed=y)
        if family == Family.POISSON:
            return pm.Poisson("y", mu=mu, observed=y)
        if family == Family.NEGBINOMIAL:
            shape = self._scalar("shape", "shape", positive=True)
            return pm.NegativeBinomial("y", mu=mu, alpha=shape, observed=y)
        raise ValueError(f"No likelihood for family {family}")

    def build(self) -> pm.Model:
        """
        Build the full PyMC model.

        Returns
        -------
        model : pm.Model
            PyMC model with observed variable `y`.
        """
        self.parameters = []
        with pm.Model() as model:
            eta = self._build_population()
            for g in self.design.groups:
                eta = eta + self._build_group(g)
            self._build_likelihood(eta)
        return model

    def __repr__(self) -> str:
        return (
            f"ModelBuilder(spec={self.spec}, n_obs={self.design.n_obs}, "
            f"n_coefficients={len(self.design.coefficient_names)}, groups={len(self.design.groups)})"
        )
