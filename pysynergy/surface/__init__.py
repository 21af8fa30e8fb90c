"""
Null-model comparison and synergy testing of combination experiments.

Predicts the response of a two-compound combination under a null model of
non-interaction (Loewe variants, HSA, Bliss), estimates the residual
variance, and tests the observed deviations globally (meanR) and per dose
pair (maxR), with normal-theory or bootstrap reference distributions and
effect-size confidence intervals.
"""

from pysynergy.surface._nullmodels import (
    NullModel,
    NullPrediction,
    OffAxisComparison,
    effect_direction,
    predict_grid,
    predict_null,
    predict_off_axis,
)
from pysynergy.surface._variance import (
    VarianceEstimate,
    VarianceMethod,
    VarianceTransform,
    estimate_variance,
)
from pysynergy.surface._statistics import (
    MaxRResult,
    MeanRResult,
    StatisticKind,
    maxr,
    meanr,
    residual_covariance,
)
from pysynergy.surface._bootstrap import (
    BootstrapCP,
    BootstrapDistribution,
    BootstrapEffects,
    ErrorDistribution,
    bootstrap_cp,
    bootstrap_effects,
    bootstrap_statistics,
    run_replicates,
    spawn_streams,
)
from pysynergy.surface._confint import (
    ConfidenceIntervalResult,
    confint_bootstrap,
    confint_normal,
)
from pysynergy.surface._surface import ResponseSurface, fit_surface

__all__ = [
    "NullModel",
    "NullPrediction",
    "OffAxisComparison",
    "effect_direction",
    "predict_grid",
    "predict_null",
    "predict_off_axis",
    "VarianceEstimate",
    "VarianceMethod",
    "VarianceTransform",
    "estimate_variance",
    "MaxRResult",
    "MeanRResult",
    "StatisticKind",
    "maxr",
    "meanr",
    "residual_covariance",
    "BootstrapCP",
    "BootstrapDistribution",
    "BootstrapEffects",
    "ErrorDistribution",
    "bootstrap_cp",
    "bootstrap_effects",
    "bootstrap_statistics",
    "run_replicates",
    "spawn_streams",
    "ConfidenceIntervalResult",
    "confint_bootstrap",
    "confint_normal",
    "ResponseSurface",
    "fit_surface",
]
