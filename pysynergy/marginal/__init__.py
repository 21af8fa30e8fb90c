"""
Marginal dose-response modeling for two-compound combination experiments.

Jointly fits the two single-compound 4-parameter log-logistic curves
(sharing a baseline) that every null model of non-interaction is built on.
Supports linear equality constraints, biological/power transforms, a chain
of nonlinear least-squares solvers, and GPU-accelerated batch refits for
bootstrap procedures.
"""

from pysynergy.marginal._common import (
    BatchMarginalResult,
    DoseGroups,
    FitAttempt,
    MarginalModel,
    Observations,
    SolverMethod,
)
from pysynergy.marginal._constraints import (
    EqualityConstraints,
    Reparametrization,
    build_constraints,
    reparametrize,
)
from pysynergy.marginal._models import (
    COEF_NAMES,
    curve_direction,
    ll4,
    ll4_inverse,
    on_axis_response,
)
from pysynergy.marginal._transforms import (
    TransformSpec,
    box_cox_transform,
    exponential_growth_transform,
)
from pysynergy.marginal._fit import fit_marginals, fit_marginals_fallback
from pysynergy.marginal._batch import fit_marginals_batch

__all__ = [
    "BatchMarginalResult",
    "DoseGroups",
    "FitAttempt",
    "MarginalModel",
    "Observations",
    "SolverMethod",
    "EqualityConstraints",
    "Reparametrization",
    "build_constraints",
    "reparametrize",
    "COEF_NAMES",
    "curve_direction",
    "ll4",
    "ll4_inverse",
    "on_axis_response",
    "TransformSpec",
    "box_cox_transform",
    "exponential_growth_transform",
    "fit_marginals",
    "fit_marginals_fallback",
    "fit_marginals_batch",
]
